import datetime as dt
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("AUDIT_ENABLED", "false")
os.environ.setdefault("REAPER_ENABLED", "false")
os.environ.setdefault("CHECKOUT_CONSUMER_ENABLED", "false")

import pytest

from inventory import crud
from inventory.database import init_db, make_engine, make_session_factory, session_scope
from inventory.events import InMemoryPublisher
from inventory.services import build_services

from helpers import HOLD


@pytest.fixture()
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'inventory.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def warehouses(session_factory):
    with session_scope(session_factory) as db:
        crud.create_warehouse(db, "W1", "Main warehouse")
        crud.create_warehouse(db, "W2", "Overflow warehouse")
    return ["W1", "W2"]


@pytest.fixture()
def publisher():
    return InMemoryPublisher()


@pytest.fixture()
def services(engine, session_factory, publisher, warehouses):
    services = build_services(
        engine,
        session_factory,
        publisher=publisher,
        hold_duration=HOLD,
        reaper_interval=0.05,
        pending_grace=dt.timedelta(seconds=60),
        low_stock_threshold=2,
    )
    yield services
    services.shutdown(timeout=5)


@pytest.fixture()
def ledger(services):
    return services.ledger


@pytest.fixture()
def manager(services):
    return services.reservations