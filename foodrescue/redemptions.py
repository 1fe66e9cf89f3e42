from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from foodrescue.auth import AccountSession
from foodrescue.errors import (
    AlreadyRedeemed,
    BackendUnavailable,
    CodeNotFound,
    InvalidTransition,
    NotAuthenticated,
    NotAuthorizedForStore,
    OrderCancelled,
    Outcome,
    WorkflowError,
)
from foodrescue.gateway import BackendGateway, GatewayError

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    "pending": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


def check_transition(current: str, target: str) -> None:
    if target not in ORDER_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, target)


@dataclass
class OrderSummary:
    order_id: int
    product_title: str
    quantity: int
    total_price: int
    store_id: int
    store_name: str


def _terminal_error(status: str) -> WorkflowError:
    if status == "completed":
        return AlreadyRedeemed()
    if status == "cancelled":
        return OrderCancelled()
    return InvalidTransition(status, "completed")


class RedemptionService:
    def __init__(self, gateway: BackendGateway) -> None:
        self.gateway = gateway

    def redeem(self, pickup_code: str, session: Optional[AccountSession]) -> Outcome[OrderSummary]:
        try:
            summary = self._redeem(pickup_code, session)
        except WorkflowError as exc:
            logger.warning("redemption by %s failed: %s", session.account_id if session else None, exc.code)
            return Outcome.failure(exc)
        except GatewayError as exc:
            logger.warning("redemption failed on backend call: %s", exc)
            return Outcome.failure(BackendUnavailable())
        logger.info("order %s redeemed at store %s", summary.order_id, summary.store_id)
        return Outcome.success(summary)

    def _redeem(self, pickup_code: str, session: Optional[AccountSession]) -> OrderSummary:
        if session is None:
            raise NotAuthenticated()
        if not session.is_partner:
            raise NotAuthorizedForStore()
        code = (pickup_code or "").strip()
        if len(code) != 6 or not code.isdigit():
            raise CodeNotFound()

        orders = self.gateway.find_orders_by_code(code)
        if not orders:
            raise CodeNotFound()

        owned = set(self.gateway.list_owned_store_ids(session.account_id))
        candidates = [order for order in orders if order["store_id"] in owned]
        if not candidates:
            raise NotAuthorizedForStore()

        # Several orders can share a code; pending ones are the redeemable ones.
        candidates.sort(key=lambda order: (order["status"] == "pending", order["created_at"], order["id"]))
        order = candidates[-1]

        if order["status"] != "pending":
            raise _terminal_error(order["status"])
        check_transition(order["status"], "completed")

        if self.gateway.set_order_status(order["id"], "pending", "completed") == 0:
            current = self.gateway.get_order(order["id"])
            if current is None:
                raise CodeNotFound()
            raise _terminal_error(current["status"])

        return OrderSummary(
            order_id=order["id"],
            product_title=order["product_title"],
            quantity=order["quantity"],
            total_price=order["total_price"],
            store_id=order["store_id"],
            store_name=order["store_name"],
        )
