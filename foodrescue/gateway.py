from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import delete, exists, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from foodrescue.models import Order, Product, Profile, Store


class GatewayError(Exception):
    pass


class ProcedureUnavailable(GatewayError):
    """The remote procedure is missing, disabled or failed for a non-stock reason."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _columns(model) -> list:
    return list(model.__table__.columns)


def decrement_stock(db: Session, p_id: int, qty: int) -> bool:
    # One guarded UPDATE; the WHERE clause re-checks stock at write time.
    result = db.execute(
        update(Product)
        .where(Product.id == p_id, Product.stock_quantity >= qty)
        .values(stock_quantity=Product.stock_quantity - qty)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


PROCEDURES: dict[str, Callable[..., bool]] = {
    "decrement_stock": decrement_stock,
}


class BackendGateway:
    def __init__(self, db: Session, procedures: Optional[dict[str, Callable[..., bool]]] = None) -> None:
        self.db = db
        self.procedures = PROCEDURES if procedures is None else procedures

    @contextmanager
    def _call(self, operation: str, error_cls: type[GatewayError] = GatewayError) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise error_cls(f"{operation} failed: {exc}") from exc

    def ping(self) -> None:
        with self._call("ping"):
            self.db.execute(text("SELECT 1"))

    # ---- row reads ----

    def fetch_product_stock(self, product_id: int) -> Optional[dict]:
        with self._call("fetch_product_stock"):
            row = self.db.execute(
                select(Product.stock_quantity, Product.discount_price).where(Product.id == product_id)
            ).mappings().first()
        return dict(row) if row else None

    def get_product(self, product_id: int) -> Optional[dict]:
        with self._call("get_product"):
            row = self.db.execute(
                select(*_columns(Product)).where(Product.id == product_id)
            ).mappings().first()
        return dict(row) if row else None

    def get_store(self, store_id: int) -> Optional[dict]:
        with self._call("get_store"):
            row = self.db.execute(select(*_columns(Store)).where(Store.id == store_id)).mappings().first()
        return dict(row) if row else None

    def get_profile(self, account_id: str) -> Optional[dict]:
        with self._call("get_profile"):
            row = self.db.execute(
                select(*_columns(Profile)).where(Profile.id == account_id)
            ).mappings().first()
        return dict(row) if row else None

    def get_order(self, order_id: int) -> Optional[dict]:
        with self._call("get_order"):
            row = self.db.execute(select(*_columns(Order)).where(Order.id == order_id)).mappings().first()
        return dict(row) if row else None

    def list_stores(self, owner_id: Optional[str] = None) -> list[dict]:
        query = select(*_columns(Store))
        if owner_id is not None:
            query = query.where(Store.owner_id == owner_id)
        with self._call("list_stores"):
            rows = self.db.execute(query.order_by(Store.id)).mappings().all()
        return [dict(row) for row in rows]

    def list_owned_store_ids(self, owner_id: str) -> list[int]:
        with self._call("list_owned_store_ids"):
            rows = self.db.execute(select(Store.id).where(Store.owner_id == owner_id)).scalars().all()
        return list(rows)

    def list_products(
        self,
        store_ids: Optional[list[int]] = None,
        available_at: Optional[datetime] = None,
        order_by: str = "expiry_date",
        descending: bool = False,
    ) -> list[dict]:
        query = select(
            *_columns(Product),
            Store.name.label("store_name"),
            Store.address.label("store_address"),
        ).join(Store, Store.id == Product.store_id)
        if store_ids is not None:
            query = query.where(Product.store_id.in_(store_ids))
        if available_at is not None:
            query = query.where(Product.stock_quantity > 0, Product.expiry_date > available_at)
        column = getattr(Product, order_by)
        query = query.order_by(column.desc() if descending else column.asc(), Product.id)
        with self._call("list_products"):
            rows = self.db.execute(query).mappings().all()
        return [dict(row) for row in rows]

    def find_orders_by_code(self, pickup_code: str) -> list[dict]:
        query = (
            select(
                *_columns(Order),
                Product.title.label("product_title"),
                Product.store_id.label("store_id"),
                Store.name.label("store_name"),
            )
            .outerjoin(Product, Product.id == Order.product_id)
            .outerjoin(Store, Store.id == Product.store_id)
            .where(Order.pickup_code == pickup_code)
        )
        with self._call("find_orders_by_code"):
            rows = self.db.execute(query).mappings().all()
        return [dict(row) for row in rows]

    def has_pending_order_with_code(self, pickup_code: str) -> bool:
        with self._call("has_pending_order_with_code"):
            found = self.db.execute(
                select(Order.id).where(Order.pickup_code == pickup_code, Order.status == "pending").limit(1)
            ).first()
        return found is not None

    def list_orders_for_user(self, user_id: str) -> list[dict]:
        query = (
            select(
                *_columns(Order),
                Product.title.label("product_title"),
                Product.image_url.label("product_image_url"),
                Store.name.label("store_name"),
            )
            .outerjoin(Product, Product.id == Order.product_id)
            .outerjoin(Store, Store.id == Product.store_id)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        with self._call("list_orders_for_user"):
            rows = self.db.execute(query).mappings().all()
        return [dict(row) for row in rows]

    # ---- row writes ----

    def insert_profile(self, account_id: str, full_name: str, role: str) -> dict:
        with self._call("insert_profile"):
            profile = Profile(id=account_id, full_name=full_name, role=role, created_at=_now())
            self.db.add(profile)
            self.db.flush()
            data = {column.name: getattr(profile, column.key) for column in _columns(Profile)}
        return data

    def _insert(self, operation: str, row: Any) -> int:
        with self._call(operation):
            self.db.add(row)
            self.db.flush()
            new_id = row.id
        return new_id

    def insert_store(self, **values: Any) -> int:
        return self._insert("insert_store", Store(created_at=_now(), **values))

    def insert_product(self, **values: Any) -> int:
        return self._insert("insert_product", Product(created_at=_now(), **values))

    def insert_order(
        self, user_id: str, product_id: int, quantity: int, total_price: int, pickup_code: str
    ) -> int:
        order = Order(
            user_id=user_id,
            product_id=product_id,
            quantity=quantity,
            total_price=total_price,
            pickup_code=pickup_code,
            status="pending",
            created_at=_now(),
        )
        return self._insert("insert_order", order)

    def update_stock_if_unchanged(
        self, product_id: int, new_stock: int, quantity: int, expected_stock: int
    ) -> int:
        with self._call("update_stock_if_unchanged"):
            result = self.db.execute(
                update(Product)
                .where(
                    Product.id == product_id,
                    Product.stock_quantity >= quantity,
                    Product.stock_quantity == expected_stock,
                )
                .values(stock_quantity=new_stock)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    def set_order_status(self, order_id: int, from_status: str, to_status: str) -> int:
        with self._call("set_order_status"):
            result = self.db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == from_status)
                .values(status=to_status)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    def delete_order(self, order_id: int) -> int:
        with self._call("delete_order"):
            result = self.db.execute(
                delete(Order).where(Order.id == order_id).execution_options(synchronize_session=False)
            )
        return result.rowcount

    def delete_product(self, product_id: int) -> int:
        # Settled orders go with the listing; a pending order blocks the whole call.
        pending = exists().where(Order.product_id == product_id, Order.status == "pending")
        with self._call("delete_product"):
            self.db.execute(
                delete(Order)
                .where(Order.product_id == product_id, Order.status != "pending")
                .execution_options(synchronize_session=False)
            )
            result = self.db.execute(
                delete(Product)
                .where(Product.id == product_id, ~pending)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.db.rollback()
        return result.rowcount

    # ---- remote procedures ----

    def call_procedure(self, name: str, **params: Any) -> bool:
        procedure = self.procedures.get(name) if name else None
        if procedure is None:
            raise ProcedureUnavailable(f"procedure {name or '<disabled>'} is not available")
        try:
            with self._call(f"procedure {name}", ProcedureUnavailable):
                result = procedure(self.db, **params)
        except ProcedureUnavailable:
            raise
        except Exception as exc:
            self.db.rollback()
            raise ProcedureUnavailable(f"procedure {name} failed: {exc!r}") from exc
        return result
