from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from foodrescue.auth import AccountSession
from foodrescue.config import Settings
from foodrescue.db import init_db
from foodrescue.gateway import BackendGateway
from foodrescue.storage import LocalBlobStorage


def _file_engine(path):
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # Take the write lock up front so concurrent writers queue on the busy
    # timeout instead of failing with a lock-upgrade deadlock.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest.fixture
def engine(tmp_path):
    engine = _file_engine(tmp_path / "foodrescue.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def gateway(session_factory):
    db = session_factory()
    try:
        yield BackendGateway(db)
    finally:
        db.close()


@pytest.fixture
def app_settings(tmp_path) -> Settings:
    return Settings(
        database_url="sqlite://",
        storage_root=str(tmp_path / "storage"),
        storage_public_base_url="http://testserver/storage",
    )


@pytest.fixture
def storage(app_settings):
    return LocalBlobStorage(
        app_settings.storage_root, app_settings.storage_bucket, app_settings.storage_public_base_url
    )


class Seed:
    def __init__(self, gateway: BackendGateway) -> None:
        self.gateway = gateway

    def consumer(self, account_id: str = "consumer-a") -> AccountSession:
        self.gateway.insert_profile(account_id, f"Consumer {account_id}", "consumer")
        return AccountSession(account_id=account_id, role="consumer")

    def partner(self, account_id: str = "partner-a") -> AccountSession:
        self.gateway.insert_profile(account_id, f"Partner {account_id}", "partner")
        return AccountSession(account_id=account_id, role="partner")

    def store(self, owner: AccountSession, name: str = "Roti Bakery") -> int:
        return self.gateway.insert_store(
            owner_id=owner.account_id, name=name, address="Jl. Sudirman 1", latitude=-6.2, longitude=106.8
        )

    def product(
        self,
        store_id: int,
        stock: int = 3,
        discount_price: int = 10000,
        original_price: int = 25000,
        expires_in: timedelta = timedelta(hours=6),
        title: str = "Croissant box",
    ) -> int:
        return self.gateway.insert_product(
            store_id=store_id,
            title=title,
            original_price=original_price,
            discount_price=discount_price,
            stock_quantity=stock,
            expiry_date=datetime.now(timezone.utc) + expires_in,
            co2_saved=Decimal("1.5"),
        )

    def order(
        self, user: AccountSession, product_id: int, pickup_code: str, status: str = "pending", quantity: int = 1
    ) -> int:
        order_id = self.gateway.insert_order(
            user_id=user.account_id,
            product_id=product_id,
            quantity=quantity,
            total_price=quantity * 10000,
            pickup_code=pickup_code,
        )
        if status != "pending":
            self.gateway.set_order_status(order_id, "pending", status)
        return order_id


@pytest.fixture
def seed(gateway) -> Seed:
    return Seed(gateway)
