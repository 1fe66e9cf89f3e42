import logging

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from foodrescue import config
from foodrescue.config import Settings, configure_logging
from foodrescue.db import init_db
from foodrescue.main import app, get_db, get_settings


def _make_client(tmp_path) -> TestClient:
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    init_db(engine)
    test_settings = Settings(
        database_url="sqlite://",
        storage_root=str(tmp_path / "storage"),
        storage_public_base_url="http://testserver/storage",
    )

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    return TestClient(app)


def _as(account_id: str) -> dict:
    return {"X-Account-Id": account_id}


def _seed_listing(client: TestClient, stock: int = 3) -> int:
    assert client.post(
        "/api/v1/profiles", json={"full_name": "Rina", "role": "partner"}, headers=_as("partner-1")
    ).status_code == 200
    for account_id in ("user-a", "user-b"):
        assert client.post(
            "/api/v1/profiles", json={"full_name": account_id, "role": "consumer"}, headers=_as(account_id)
        ).status_code == 200

    store_resp = client.post(
        "/api/v1/stores",
        json={"name": "Roti Bakery", "address": "Jl. Sudirman 1", "latitude": -6.2, "longitude": 106.8},
        headers=_as("partner-1"),
    )
    assert store_resp.status_code == 200
    store_id = store_resp.json()["data"]["store_id"]

    product_resp = client.post(
        "/api/v1/products",
        data={
            "store_id": str(store_id),
            "title": "Croissant box",
            "original_price": "25000",
            "discount_price": "10000",
            "stock_quantity": str(stock),
            "expiry_date": "2999-01-01T18:00:00+07:00",
            "co2_saved": "1.5",
        },
        files={"image": ("croissant.jpg", b"\xff\xd8\xff\xe0fake", "image/jpeg")},
        headers=_as("partner-1"),
    )
    assert product_resp.status_code == 200
    product = product_resp.json()["data"]
    assert product["image_url"].startswith("http://testserver/storage/product-images/private/partner-1/")
    assert product["expiry_date"] == "2999-01-01T11:00:00+00:00"
    assert product["created_at"].endswith("+00:00")
    return product["product_id"]


def test_health(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        assert client.get("/").json() == {"status": "ok"}
        assert client.get("/health").json() == {"status": "healthy", "database": "ok"}


def test_reserve_and_redeem_flow(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        product_id = _seed_listing(client)

        reserve_resp = client.post(
            "/api/v1/reservations", json={"product_id": product_id, "quantity": 2}, headers=_as("user-a")
        )
        assert reserve_resp.status_code == 200
        reservation = reserve_resp.json()["data"]
        assert reservation["total_price"] == 20000
        assert reservation["status"] == "pending"
        pickup_code = reservation["pickup_code"]
        assert len(pickup_code) == 6 and pickup_code.isdigit()

        product = client.get(f"/api/v1/products/{product_id}").json()["data"]
        assert product["stock_quantity"] == 1

        conflict_resp = client.post(
            "/api/v1/reservations", json={"product_id": product_id, "quantity": 2}, headers=_as("user-b")
        )
        assert conflict_resp.status_code == 409
        detail = conflict_resp.json()["detail"]
        assert detail["code"] == "insufficient_stock"
        assert detail["available"] == 1
        assert "pickup_code" not in conflict_resp.json()

        history = client.get("/api/v1/orders", headers=_as("user-a")).json()["data"]
        assert len(history) == 1
        assert history[0]["pickup_code"] == pickup_code
        assert history[0]["product"]["title"] == "Croissant box"
        assert history[0]["product"]["store_name"] == "Roti Bakery"
        assert client.get("/api/v1/orders", headers=_as("user-b")).json()["data"] == []

        redeem_resp = client.post(
            "/api/v1/redemptions", json={"pickup_code": pickup_code}, headers=_as("partner-1")
        )
        assert redeem_resp.status_code == 200
        summary = redeem_resp.json()["data"]
        assert summary["product_title"] == "Croissant box"
        assert summary["quantity"] == 2
        assert summary["store"]["name"] == "Roti Bakery"

        again_resp = client.post(
            "/api/v1/redemptions", json={"pickup_code": pickup_code}, headers=_as("partner-1")
        )
        assert again_resp.status_code == 409
        assert again_resp.json()["detail"]["code"] == "already_redeemed"


def test_reservation_requires_session(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        product_id = _seed_listing(client)

        anonymous = client.post("/api/v1/reservations", json={"product_id": product_id, "quantity": 1})
        unknown = client.post(
            "/api/v1/reservations", json={"product_id": product_id, "quantity": 1}, headers=_as("ghost")
        )
        too_many = client.post(
            "/api/v1/reservations", json={"product_id": product_id, "quantity": 6}, headers=_as("user-a")
        )

        assert anonymous.status_code == 401
        assert anonymous.json()["detail"]["code"] == "not_authenticated"
        assert unknown.status_code == 401
        assert too_many.status_code == 422
        assert too_many.json()["detail"]["code"] == "invalid_quantity"
        assert client.get(f"/api/v1/products/{product_id}").json()["data"]["stock_quantity"] == 3


def test_partner_only_endpoints(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        _seed_listing(client)

        store_resp = client.post(
            "/api/v1/stores",
            json={"name": "Nope", "address": "Somewhere", "latitude": 0, "longitude": 0},
            headers=_as("user-a"),
        )
        assert store_resp.status_code == 403
        assert store_resp.json()["detail"]["code"] == "not_partner"

        redeem_resp = client.post("/api/v1/redemptions", json={"pickup_code": "123456"}, headers=_as("user-a"))
        assert redeem_resp.status_code == 403

        missing_resp = client.post(
            "/api/v1/redemptions", json={"pickup_code": "123456"}, headers=_as("partner-1")
        )
        assert missing_resp.status_code == 404
        assert missing_resp.json()["detail"]["code"] == "code_not_found"


def test_browse_and_delete_listing(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        product_id = _seed_listing(client, stock=2)

        stores = client.get("/api/v1/stores").json()["data"]
        assert [(store["latitude"], store["longitude"]) for store in stores] == [(-6.2, 106.8)]
        mine = client.get("/api/v1/stores/mine", headers=_as("partner-1")).json()["data"]
        assert len(mine) == 1

        listed = client.get("/api/v1/products").json()["data"]
        assert [row["product_id"] for row in listed] == [product_id]
        assert listed[0]["store"]["name"] == "Roti Bakery"
        assert listed[0]["co2_saved"] == 1.5
        partner_listed = client.get("/api/v1/products/mine", headers=_as("partner-1")).json()["data"]
        assert [row["product_id"] for row in partner_listed] == [product_id]

        assert client.post(
            "/api/v1/reservations", json={"product_id": product_id, "quantity": 2}, headers=_as("user-a")
        ).status_code == 200
        assert client.get("/api/v1/products").json()["data"] == []

        blocked = client.delete(f"/api/v1/products/{product_id}", headers=_as("partner-1"))
        assert blocked.status_code == 409

        code = client.get("/api/v1/orders", headers=_as("user-a")).json()["data"][0]["pickup_code"]
        client.post("/api/v1/redemptions", json={"pickup_code": code}, headers=_as("partner-1"))
        deleted = client.delete(f"/api/v1/products/{product_id}", headers=_as("partner-1"))
        assert deleted.status_code == 200
        assert client.get(f"/api/v1/products/{product_id}").status_code == 404


def test_listing_validation_errors(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        _seed_listing(client)
        store_id = client.get("/api/v1/stores/mine", headers=_as("partner-1")).json()["data"][0]["store_id"]

        resp = client.post(
            "/api/v1/products",
            data={
                "store_id": str(store_id),
                "title": "Too cheap",
                "original_price": "10000",
                "discount_price": "10000",
                "stock_quantity": "1",
                "expiry_date": "2999-01-01T18:00:00Z",
            },
            headers=_as("partner-1"),
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "invalid_listing"
        assert client.get("/api/v1/profiles/me", headers=_as("partner-1")).json()["data"]["role"] == "partner"
        assert client.get("/api/v1/profiles/me").status_code == 401


def test_profile_cannot_be_overwritten(tmp_path) -> None:
    client = _make_client(tmp_path)
    with client:
        _seed_listing(client)

        anonymous = client.post("/api/v1/profiles", json={"full_name": "Mallory", "role": "consumer"})
        assert anonymous.status_code == 401

        again = client.post(
            "/api/v1/profiles", json={"full_name": "Mallory", "role": "consumer"}, headers=_as("partner-1")
        )
        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "profile_exists"

        profile = client.get("/api/v1/profiles/me", headers=_as("partner-1")).json()["data"]
        assert profile["role"] == "partner"
        assert profile["full_name"] == "Rina"


def test_configure_logging_reads_current_level(monkeypatch) -> None:
    monkeypatch.setattr(config, "settings", Settings(log_level="debug"))
    package_logger = logging.getLogger("foodrescue")
    previous = package_logger.level
    try:
        configure_logging()
        assert package_logger.level == logging.DEBUG
        configure_logging("warning")
        assert package_logger.level == logging.WARNING
    finally:
        package_logger.setLevel(previous)
