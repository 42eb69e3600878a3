import datetime as dt

HOLD = dt.timedelta(minutes=10)


def stock(services, warehouse_id, product_id, on_hand):
    return services.ledger.open_record(warehouse_id, product_id, on_hand)


def counters(services, warehouse_id, product_id):
    snapshot = services.ledger.availability(warehouse_id, product_id)
    return snapshot.on_hand, snapshot.reserved


def line(warehouse_id, product_id, quantity):
    return {"warehouse_id": warehouse_id, "product_id": product_id, "quantity": quantity}
