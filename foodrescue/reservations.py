from __future__ import annotations

import enum
import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from foodrescue.auth import AccountSession
from foodrescue.config import Settings
from foodrescue.errors import (
    InsufficientStock,
    InvalidQuantity,
    NotAuthenticated,
    OrderCreationFailed,
    Outcome,
    StockCheckFailed,
    StockReservationFailed,
    WorkflowError,
)
from foodrescue.gateway import BackendGateway, GatewayError, ProcedureUnavailable

logger = logging.getLogger(__name__)

PICKUP_CODE_MIN = 100000
PICKUP_CODE_MAX = 999999


def generate_pickup_code(rng: Optional[random.Random] = None) -> str:
    # Convenience lookup key for store staff, not a credential.
    return str((rng or random).randint(PICKUP_CODE_MIN, PICKUP_CODE_MAX))


class StockStatus(enum.Enum):
    RESERVED = "reserved"
    CONFLICT = "conflict"
    UNAVAILABLE = "unavailable"


@dataclass
class StockAttempt:
    status: StockStatus
    strategy: str
    reason: str = ""


@dataclass
class Reservation:
    order_id: int
    pickup_code: str
    product_id: int
    quantity: int
    total_price: int


class AtomicProcedureStrategy:
    """Stock decrement through the server-side ``decrement_stock`` procedure."""

    name = "atomic_procedure"

    def __init__(self, procedure: str) -> None:
        self.procedure = procedure

    def attempt(self, gateway: BackendGateway, product_id: int, quantity: int, fresh_stock: int) -> StockAttempt:
        try:
            reserved = gateway.call_procedure(self.procedure, p_id=product_id, qty=quantity)
        except ProcedureUnavailable as exc:
            return StockAttempt(StockStatus.UNAVAILABLE, self.name, str(exc))
        if not reserved:
            return StockAttempt(StockStatus.CONFLICT, self.name, "Not enough stock left. Please try again.")
        return StockAttempt(StockStatus.RESERVED, self.name)


class ConditionalUpdateStrategy:
    """Write ``fresh_stock - quantity`` only if the row still holds ``fresh_stock``."""

    name = "conditional_update"

    def attempt(self, gateway: BackendGateway, product_id: int, quantity: int, fresh_stock: int) -> StockAttempt:
        try:
            affected = gateway.update_stock_if_unchanged(
                product_id, new_stock=fresh_stock - quantity, quantity=quantity, expected_stock=fresh_stock
            )
        except GatewayError as exc:
            return StockAttempt(StockStatus.UNAVAILABLE, self.name, str(exc))
        if affected == 0:
            return StockAttempt(
                StockStatus.CONFLICT, self.name, "Stock was modified by another user. Please try again."
            )
        return StockAttempt(StockStatus.RESERVED, self.name)


class StockReserver:
    """Runs the stock strategies in order.

    A strategy that is unavailable hands over to the next one. A conflict is
    final: the stock really changed underneath us and trying another write
    path would not change that.
    """

    def __init__(self, strategies: Sequence) -> None:
        self.strategies = list(strategies)

    @classmethod
    def from_settings(cls, settings: Settings) -> "StockReserver":
        return cls([AtomicProcedureStrategy(settings.stock_procedure), ConditionalUpdateStrategy()])

    def reserve_stock(
        self, gateway: BackendGateway, product_id: int, quantity: int, fresh_stock: int
    ) -> StockAttempt:
        attempt = StockAttempt(StockStatus.UNAVAILABLE, "none", "no stock strategy configured")
        for strategy in self.strategies:
            attempt = strategy.attempt(gateway, product_id, quantity, fresh_stock)
            if attempt.status is not StockStatus.UNAVAILABLE:
                return attempt
            logger.warning(
                "stock strategy %s unavailable for product %s: %s", strategy.name, product_id, attempt.reason
            )
        return attempt


class ReservationWorkflow:
    def __init__(
        self,
        gateway: BackendGateway,
        settings: Settings,
        stock_reserver: Optional[StockReserver] = None,
        code_generator: Callable[[], str] = generate_pickup_code,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self.stock_reserver = stock_reserver or StockReserver.from_settings(settings)
        self.code_generator = code_generator

    def reserve(
        self, product_id: int, quantity: int, session: Optional[AccountSession]
    ) -> Outcome[Reservation]:
        try:
            reservation = self._reserve(product_id, quantity, session)
        except WorkflowError as exc:
            logger.warning(
                "reservation of product %s x%s failed: %s", product_id, quantity, exc.code
            )
            return Outcome.failure(exc)
        logger.info(
            "order %s reserved product %s x%s", reservation.order_id, product_id, quantity
        )
        return Outcome.success(reservation)

    def _reserve(self, product_id: int, quantity: int, session: Optional[AccountSession]) -> Reservation:
        if session is None:
            raise NotAuthenticated()
        limit = self.settings.max_items_per_order
        if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= limit:
            raise InvalidQuantity(f"Quantity must be between 1 and {limit}.", maximum=limit)

        try:
            fresh = self.gateway.fetch_product_stock(product_id)
        except GatewayError as exc:
            raise StockCheckFailed() from exc
        if fresh is None:
            raise StockCheckFailed()
        fresh_stock = fresh["stock_quantity"]
        if fresh_stock < quantity:
            raise InsufficientStock(available=fresh_stock)

        pickup_code = self._new_pickup_code()
        total_price = quantity * fresh["discount_price"]
        try:
            order_id = self.gateway.insert_order(
                user_id=session.account_id,
                product_id=product_id,
                quantity=quantity,
                total_price=total_price,
                pickup_code=pickup_code,
            )
        except GatewayError as exc:
            raise OrderCreationFailed() from exc

        try:
            attempt = self.stock_reserver.reserve_stock(self.gateway, product_id, quantity, fresh_stock)
        except Exception as exc:
            logger.exception("stock reservation for order %s raised", order_id)
            self.gateway.db.rollback()
            attempt = StockAttempt(StockStatus.UNAVAILABLE, "none", f"unexpected error: {exc!r}")
        if attempt.status is not StockStatus.RESERVED:
            self._compensate(order_id)
            raise StockReservationFailed(attempt.reason)

        return Reservation(
            order_id=order_id,
            pickup_code=pickup_code,
            product_id=product_id,
            quantity=quantity,
            total_price=total_price,
        )

    def _new_pickup_code(self) -> str:
        code = self.code_generator()
        for _ in range(self.settings.pickup_code_attempts - 1):
            try:
                taken = self.gateway.has_pending_order_with_code(code)
            except GatewayError:
                logger.warning("pickup code collision check failed, keeping drawn code")
                break
            if not taken:
                break
            code = self.code_generator()
        return code

    def _compensate(self, order_id: int) -> None:
        try:
            self.gateway.delete_order(order_id)
        except GatewayError:
            # Not retried; the pending order needs manual cleanup.
            logger.exception("compensating delete of order %s failed, order left orphaned", order_id)
