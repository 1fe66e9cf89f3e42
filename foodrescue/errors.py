from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class WorkflowError(Exception):
    """Base class for failures a workflow reports back to its caller.

    ``code`` is the stable machine-readable name, ``message`` is safe to show
    to the user, ``extra`` carries structured fields (``available`` etc.).
    """

    code = "workflow_error"
    status_code = 400
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: Optional[str] = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message, **self.extra}


class NotAuthenticated(WorkflowError):
    code = "not_authenticated"
    status_code = 401
    default_message = "Please sign in to continue."


class NotPartner(WorkflowError):
    code = "not_partner"
    status_code = 403
    default_message = "Only partner accounts can manage stores and listings."


class InvalidQuantity(WorkflowError):
    code = "invalid_quantity"
    status_code = 422
    default_message = "Quantity is out of range."


class StockCheckFailed(WorkflowError):
    code = "stock_check_failed"
    status_code = 503
    default_message = "Could not verify stock availability. Please try again."


class InsufficientStock(WorkflowError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, available: int) -> None:
        super().__init__(
            f"Only {available} item(s) left in stock. Please reduce your quantity.",
            available=available,
        )
        self.available = available


class OrderCreationFailed(WorkflowError):
    code = "order_creation_failed"
    status_code = 503
    default_message = "Could not create your order. Please try again."


class StockReservationFailed(WorkflowError):
    code = "stock_reservation_failed"
    status_code = 409

    def __init__(self, reason: str) -> None:
        super().__init__(f"Stock update failed: {reason}", reason=reason)
        self.reason = reason


class CodeNotFound(WorkflowError):
    code = "code_not_found"
    status_code = 404
    default_message = "No order found with that pickup code."


class NotAuthorizedForStore(WorkflowError):
    code = "not_authorized_for_store"
    status_code = 403
    default_message = "This order does not belong to any of your stores."


class AlreadyRedeemed(WorkflowError):
    code = "already_redeemed"
    status_code = 409
    default_message = "This order has already been completed."


class OrderCancelled(WorkflowError):
    code = "order_cancelled"
    status_code = 409
    default_message = "This order was cancelled."


class InvalidTransition(WorkflowError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Order cannot move from {current} to {target}.", current=current, target=target
        )


class ProductNotFound(WorkflowError):
    code = "product_not_found"
    status_code = 404
    default_message = "Listing not found."


class ProfileExists(WorkflowError):
    code = "profile_exists"
    status_code = 409
    default_message = "A profile already exists for this account."


class StoreNotFound(WorkflowError):
    code = "store_not_found"
    status_code = 404
    default_message = "Please select one of your stores."


class ListingHasPendingOrders(WorkflowError):
    code = "listing_has_pending_orders"
    status_code = 409
    default_message = "This listing still has pending pickups."


class InvalidListing(WorkflowError):
    code = "invalid_listing"
    status_code = 422


class InvalidImage(WorkflowError):
    code = "invalid_image"
    status_code = 422
    default_message = "Please select a valid image file."


class ImageUploadFailed(WorkflowError):
    code = "image_upload_failed"
    status_code = 503


class BackendUnavailable(WorkflowError):
    code = "backend_unavailable"
    status_code = 503
    default_message = "The service is temporarily unavailable. Please try again."


@dataclass
class Outcome(Generic[T]):
    """Either a value or the error that prevented it."""

    value: Optional[T] = None
    error: Optional[WorkflowError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: WorkflowError) -> "Outcome[T]":
        return cls(error=error)
