from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from foodrescue.auth import AccountSession
from foodrescue.config import Settings
from foodrescue.errors import (
    BackendUnavailable,
    ImageUploadFailed,
    InvalidImage,
    InvalidListing,
    ListingHasPendingOrders,
    NotAuthenticated,
    NotPartner,
    ProductNotFound,
    ProfileExists,
    StoreNotFound,
)
from foodrescue.gateway import BackendGateway, GatewayError
from foodrescue.models import ROLES
from foodrescue.storage import BlobStorage, StorageError

logger = logging.getLogger(__name__)


@dataclass
class ImageUpload:
    filename: str
    content_type: str
    data: bytes


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _require_partner(session: Optional[AccountSession]) -> AccountSession:
    if session is None:
        raise NotAuthenticated()
    if not session.is_partner:
        raise NotPartner()
    return session


def _require_session(session: Optional[AccountSession]) -> AccountSession:
    if session is None:
        raise NotAuthenticated()
    return session


class ListingService:
    def __init__(self, gateway: BackendGateway, storage: BlobStorage, settings: Settings) -> None:
        self.gateway = gateway
        self.storage = storage
        self.settings = settings

    # ---- profiles ----

    def register_profile(self, account_id: Optional[str], full_name: str, role: str) -> dict:
        if not account_id:
            raise NotAuthenticated()
        if role not in ROLES:
            raise InvalidListing(f"Role must be one of: {', '.join(ROLES)}.")
        if not full_name.strip():
            raise InvalidListing("Full name is required.")
        try:
            if self.gateway.get_profile(account_id) is not None:
                raise ProfileExists()
            return self.gateway.insert_profile(account_id, full_name.strip(), role)
        except GatewayError as exc:
            raise BackendUnavailable("Profile setup failed. Please try again.") from exc

    # ---- stores ----

    def register_store(
        self,
        session: Optional[AccountSession],
        name: str,
        address: str,
        latitude: float,
        longitude: float,
    ) -> dict:
        session = _require_partner(session)
        if not name.strip() or not address.strip():
            raise InvalidListing("Store name and address are required.")
        if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
            raise InvalidListing("Latitude must be within [-90, 90] and longitude within [-180, 180].")
        try:
            store_id = self.gateway.insert_store(
                owner_id=session.account_id,
                name=name.strip(),
                address=address.strip(),
                latitude=latitude,
                longitude=longitude,
            )
            return self.gateway.get_store(store_id)
        except GatewayError as exc:
            raise BackendUnavailable("Failed to register store.") from exc

    def list_stores(self, session: Optional[AccountSession] = None, mine: bool = False) -> list[dict]:
        owner_id = None
        if mine:
            owner_id = _require_partner(session).account_id
        try:
            return self.gateway.list_stores(owner_id=owner_id)
        except GatewayError as exc:
            raise BackendUnavailable() from exc

    # ---- listings ----

    def _validate_image(self, image: ImageUpload) -> None:
        if not image.content_type or not image.content_type.startswith("image/"):
            raise InvalidImage()
        if len(image.data) > self.settings.max_image_bytes:
            limit_mb = self.settings.max_image_bytes // (1024 * 1024)
            raise InvalidImage(f"Image must be smaller than {limit_mb}MB.")

    def _upload_image(self, owner_id: str, image: ImageUpload) -> str:
        extension = image.filename.rsplit(".", 1)[-1] if "." in image.filename else "bin"
        millis = int(datetime.now(timezone.utc).timestamp() * 1000)
        path = f"private/{owner_id}/{millis}.{extension.lower()}"
        try:
            self.storage.upload(path, image.data, image.content_type)
        except StorageError as exc:
            raise ImageUploadFailed(f'Image upload failed. Path: "{path}" | Reason: {exc}') from exc
        return path

    def create_listing(
        self,
        session: Optional[AccountSession],
        store_id: int,
        title: str,
        original_price: int,
        discount_price: int,
        stock_quantity: int,
        expiry_date: datetime,
        co2_saved: Decimal,
        description: Optional[str] = None,
        image: Optional[ImageUpload] = None,
    ) -> dict:
        session = _require_partner(session)
        if not title.strip():
            raise InvalidListing("Title is required.")
        if original_price <= 0:
            raise InvalidListing("Original price must be greater than zero.")
        if discount_price < 0 or discount_price >= original_price:
            raise InvalidListing("Discount price must be lower than original price.")
        if stock_quantity < 0:
            raise InvalidListing("Stock quantity cannot be negative.")
        if co2_saved < 0:
            raise InvalidListing("CO2 saved cannot be negative.")
        if image is not None:
            self._validate_image(image)

        try:
            store = self.gateway.get_store(store_id)
        except GatewayError as exc:
            raise BackendUnavailable() from exc
        if store is None or store["owner_id"] != session.account_id:
            raise StoreNotFound()

        image_path = None
        image_url = None
        if image is not None:
            image_path = self._upload_image(session.account_id, image)
            image_url = self.storage.public_url(image_path)

        try:
            product_id = self.gateway.insert_product(
                store_id=store_id,
                title=title.strip(),
                description=description,
                original_price=original_price,
                discount_price=discount_price,
                stock_quantity=stock_quantity,
                expiry_date=_utc(expiry_date),
                co2_saved=co2_saved,
                image_url=image_url,
                image_path=image_path,
            )
        except GatewayError as exc:
            if image_path is not None:
                self._remove_image(image_path)
            raise BackendUnavailable("Could not save the listing. Please try again.") from exc
        return self.get_listing(product_id)

    def _remove_image(self, path: str) -> None:
        try:
            self.storage.remove([path])
        except StorageError:
            logger.exception("could not remove stored image %s", path)

    def get_listing(self, product_id: int) -> dict:
        try:
            product = self.gateway.get_product(product_id)
        except GatewayError as exc:
            raise BackendUnavailable() from exc
        if product is None:
            raise ProductNotFound()
        return product

    def delete_listing(self, session: Optional[AccountSession], product_id: int) -> None:
        session = _require_partner(session)
        try:
            product = self.gateway.get_product(product_id)
            store = self.gateway.get_store(product["store_id"]) if product else None
            if store is None or store["owner_id"] != session.account_id:
                raise ProductNotFound()
            deleted = self.gateway.delete_product(product_id)
            if not deleted and self.gateway.get_product(product_id) is None:
                raise ProductNotFound()
        except GatewayError as exc:
            raise BackendUnavailable("Failed to delete listing. Please try again.") from exc
        if not deleted:
            raise ListingHasPendingOrders()
        if product["image_path"]:
            self._remove_image(product["image_path"])

    def list_available(self, store_id: Optional[int] = None) -> list[dict]:
        store_ids = [store_id] if store_id is not None else None
        try:
            return self.gateway.list_products(store_ids=store_ids, available_at=datetime.now(timezone.utc))
        except GatewayError as exc:
            raise BackendUnavailable() from exc

    def list_partner_listings(self, session: Optional[AccountSession]) -> list[dict]:
        session = _require_partner(session)
        try:
            store_ids = self.gateway.list_owned_store_ids(session.account_id)
            if not store_ids:
                return []
            return self.gateway.list_products(store_ids=store_ids, order_by="created_at", descending=True)
        except GatewayError as exc:
            raise BackendUnavailable() from exc

    def order_history(self, session: Optional[AccountSession]) -> list[dict]:
        session = _require_session(session)
        try:
            return self.gateway.list_orders_for_user(session.account_id)
        except GatewayError as exc:
            raise BackendUnavailable() from exc
