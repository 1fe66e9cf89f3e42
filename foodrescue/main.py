from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from sqlalchemy.orm import Session

from foodrescue.auth import AccountSession, resolve_session
from foodrescue.config import Settings, configure_logging, settings
from foodrescue.db import SessionLocal
from foodrescue.errors import Outcome, WorkflowError
from foodrescue.gateway import BackendGateway, GatewayError
from foodrescue.listings import ImageUpload, ListingService
from foodrescue.redemptions import RedemptionService
from foodrescue.reservations import ReservationWorkflow
from foodrescue.storage import BlobStorage, LocalBlobStorage

configure_logging(settings.log_level)

app = FastAPI(title="Food Rescue")
app.mount("/storage", StaticFiles(directory=settings.storage_root, check_dir=False), name="storage")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def _envelope(data: Any) -> dict:
    return {"data": data, "meta": _meta()}


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail(), "meta": _meta()})


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings() -> Settings:
    return settings


def get_storage(config: Settings = Depends(get_settings)) -> BlobStorage:
    return LocalBlobStorage(config.storage_root, config.storage_bucket, config.storage_public_base_url)


def get_gateway(db: Session = Depends(get_db)) -> BackendGateway:
    return BackendGateway(db)


def get_account_session(
    x_account_id: Optional[str] = Header(default=None),
    gateway: BackendGateway = Depends(get_gateway),
) -> Optional[AccountSession]:
    try:
        return resolve_session(gateway, x_account_id)
    except GatewayError:
        raise HTTPException(status_code=503, detail="session lookup failed")


def get_listing_service(
    gateway: BackendGateway = Depends(get_gateway),
    storage: BlobStorage = Depends(get_storage),
    config: Settings = Depends(get_settings),
) -> ListingService:
    return ListingService(gateway, storage, config)


def _unwrap(outcome: Outcome) -> Any:
    if not outcome.ok:
        raise outcome.error
    return outcome.value


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # SQLite hands back naive values; everything is stored as UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _profile_data(row: dict) -> dict:
    return {
        "account_id": row["id"],
        "full_name": row["full_name"],
        "role": row["role"],
        "avatar_url": row.get("avatar_url"),
    }


def _store_data(row: dict) -> dict:
    return {
        "store_id": row["id"],
        "owner_id": row["owner_id"],
        "name": row["name"],
        "address": row["address"],
        "latitude": row["latitude"],
        "longitude": row["longitude"],
        "image_url": row["image_url"],
    }


def _product_data(row: dict) -> dict:
    data = {
        "product_id": row["id"],
        "store_id": row["store_id"],
        "title": row["title"],
        "description": row["description"],
        "original_price": row["original_price"],
        "discount_price": row["discount_price"],
        "stock_quantity": row["stock_quantity"],
        "expiry_date": _iso(row["expiry_date"]),
        "co2_saved": float(row["co2_saved"]),
        "image_url": row["image_url"],
        "created_at": _iso(row["created_at"]),
    }
    if "store_name" in row:
        data["store"] = {"name": row["store_name"], "address": row["store_address"]}
    return data


def _order_data(row: dict) -> dict:
    return {
        "order_id": row["id"],
        "product_id": row["product_id"],
        "quantity": row["quantity"],
        "total_price": row["total_price"],
        "pickup_code": row["pickup_code"],
        "status": row["status"],
        "created_at": _iso(row["created_at"]),
        "product": {
            "title": row.get("product_title"),
            "image_url": row.get("product_image_url"),
            "store_name": row.get("store_name"),
        },
    }


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check(gateway: BackendGateway = Depends(get_gateway)) -> dict:
    try:
        gateway.ping()
    except GatewayError:
        return {"status": "degraded", "database": "unavailable"}
    return {"status": "healthy", "database": "ok"}


class ProfileCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"full_name": "Rina", "role": "partner"}}}
    full_name: str
    role: str = "consumer"


@app.post("/api/v1/profiles", tags=["Profiles"])
def create_profile(
    payload: ProfileCreate,
    x_account_id: Optional[str] = Header(default=None),
    listings: ListingService = Depends(get_listing_service),
) -> dict:
    profile = listings.register_profile(x_account_id, payload.full_name, payload.role)
    return _envelope(_profile_data(profile))


@app.get("/api/v1/profiles/me", tags=["Profiles"])
def get_my_profile(session: Optional[AccountSession] = Depends(get_account_session)) -> dict:
    if session is None:
        raise HTTPException(status_code=401, detail="not authenticated")
    return _envelope({"account_id": session.account_id, "full_name": session.full_name, "role": session.role})


class StoreCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "Roti Bakery", "address": "Jl. Sudirman 1", "latitude": -6.2, "longitude": 106.8}
        }
    }
    name: str
    address: str
    latitude: float
    longitude: float


@app.post("/api/v1/stores", tags=["Stores"])
def create_store(
    payload: StoreCreate,
    session: Optional[AccountSession] = Depends(get_account_session),
    listings: ListingService = Depends(get_listing_service),
) -> dict:
    store = listings.register_store(session, payload.name, payload.address, payload.latitude, payload.longitude)
    return _envelope(_store_data(store))


@app.get("/api/v1/stores", tags=["Stores"])
def list_stores(listings: ListingService = Depends(get_listing_service)) -> dict:
    return _envelope([_store_data(row) for row in listings.list_stores()])


@app.get("/api/v1/stores/mine", tags=["Stores"])
def list_my_stores(
    session: Optional[AccountSession] = Depends(get_account_session),
    listings: ListingService = Depends(get_listing_service),
) -> dict:
    return _envelope([_store_data(row) for row in listings.list_stores(session, mine=True)])


@app.post("/api/v1/products", tags=["Products"])
def create_product(
    store_id: int = Form(...),
    title: str = Form(...),
    original_price: int = Form(...),
    discount_price: int = Form(...),
    stock_quantity: int = Form(...),
    expiry_date: datetime = Form(...),
    co2_saved: Decimal = Form(default=Decimal("0")),
    description: Optional[str] = Form(default=None),
    image: Optional[UploadFile] = File(default=None),
    session: Optional[AccountSession] = Depends(get_account_session),
    listings: ListingService = Depends(get_listing_service),
) -> dict:
    upload = None
    if image is not None and image.filename:
        upload = ImageUpload(
            filename=image.filename,
            content_type=image.content_type or "",
            data=image.file.read(),
        )
    product = listings.create_listing(
        session,
        store_id=store_id,
        title=title,
        original_price=original_price,
        discount_price=discount_price,
        stock_quantity=stock_quantity,
        expiry_date=expiry_date,
        co2_saved=co2_saved,
        description=description,
        image=upload,
    )
    return _envelope(_product_data(product))


@app.get("/api/v1/products", tags=["Products"])
def list_products(
    store_id: Optional[int] = Query(default=None),
    listings: ListingService = Depends(get_listing_service),
) -> dict:
    return _envelope([_product_data(row) for row in listings.list_available(store_id)])


@app.get("/api/v1/products/mine", tags=["Products"])
def list_my_products(
    session: Optional[AccountSession] = Depends(get_account_session),
    listings: ListingService = Depends(get_listing_service),
) -> dict:
    return _envelope([_product_data(row) for row in listings.list_partner_listings(session)])


@app.get("/api/v1/products/{product_id}", tags=["Products"])
def get_product(product_id: int, listings: ListingService = Depends(get_listing_service)) -> dict:
    return _envelope(_product_data(listings.get_listing(product_id)))


@app.delete("/api/v1/products/{product_id}", tags=["Products"])
def delete_product(
    product_id: int,
    session: Optional[AccountSession] = Depends(get_account_session),
    listings: ListingService = Depends(get_listing_service),
) -> dict:
    listings.delete_listing(session, product_id)
    return _envelope({"product_id": product_id, "deleted": True})


class ReservationCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"product_id": 1, "quantity": 2}}}
    product_id: int
    quantity: int = 1


@app.post("/api/v1/reservations", tags=["Reservations"])
def create_reservation(
    payload: ReservationCreate,
    session: Optional[AccountSession] = Depends(get_account_session),
    gateway: BackendGateway = Depends(get_gateway),
    config: Settings = Depends(get_settings),
) -> dict:
    workflow = ReservationWorkflow(gateway, config)
    reservation = _unwrap(workflow.reserve(payload.product_id, payload.quantity, session))
    return _envelope(
        {
            "order_id": reservation.order_id,
            "pickup_code": reservation.pickup_code,
            "product_id": reservation.product_id,
            "quantity": reservation.quantity,
            "total_price": reservation.total_price,
            "status": "pending",
        }
    )


@app.get("/api/v1/orders", tags=["Orders"])
def list_my_orders(
    session: Optional[AccountSession] = Depends(get_account_session),
    listings: ListingService = Depends(get_listing_service),
) -> dict:
    return _envelope([_order_data(row) for row in listings.order_history(session)])


class RedemptionCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"pickup_code": "482913"}}}
    pickup_code: str


@app.post("/api/v1/redemptions", tags=["Redemptions"])
def redeem_pickup_code(
    payload: RedemptionCreate,
    session: Optional[AccountSession] = Depends(get_account_session),
    gateway: BackendGateway = Depends(get_gateway),
) -> dict:
    summary = _unwrap(RedemptionService(gateway).redeem(payload.pickup_code, session))
    return _envelope(
        {
            "order_id": summary.order_id,
            "product_title": summary.product_title,
            "quantity": summary.quantity,
            "total_price": summary.total_price,
            "store": {"store_id": summary.store_id, "name": summary.store_name},
            "status": "completed",
        }
    )
