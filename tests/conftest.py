"""Pytest fixtures for storefront tests."""

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_token
from database import ensure_indexes, get_db, get_optional_db, utcnow
from main import app
from notifications import LogEmailSender, get_email_sender
from schemas import OrderCreateRequest, Product
from storage import LocalImageStorage, get_image_storage


@pytest.fixture
def db():
    """A fresh in-memory database with the production indexes."""
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def mailer():
    return LogEmailSender()


@pytest.fixture
def image_storage(tmp_path):
    return LocalImageStorage(str(tmp_path / "uploads"), "/uploads")


@pytest.fixture
def client(db, mailer, image_storage):
    """Test client wired to the in-memory database."""
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_optional_db] = lambda: db
    app.dependency_overrides[get_email_sender] = lambda: mailer
    app.dependency_overrides[get_image_storage] = lambda: image_storage
    yield TestClient(app)
    app.dependency_overrides.clear()


def _insert_user(db, email, admin=False, **extra):
    now = utcnow()
    doc = {
        "email": email,
        "passwordHash": "not-a-bcrypt-hash",
        "displayName": email.split("@")[0],
        "profile": {},
        "role": "admin" if admin else "user",
        "isAdmin": admin,
        "isActive": True,
        "isEmailVerified": True,
        "createdAt": now,
        "updatedAt": now,
    }
    doc.update(extra)
    db["user"].insert_one(doc)
    return doc


@pytest.fixture
def customer(db):
    return _insert_user(db, "ayesha@mail.com")


@pytest.fixture
def other_customer(db):
    return _insert_user(db, "bilal@mail.com")


@pytest.fixture
def admin(db):
    return _insert_user(db, "owner@mail.com", admin=True)


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_token(user)}"}
    return _headers


@pytest.fixture
def make_product(db):
    """Insert a catalog product; keyword overrides use stored (camelCase) names."""
    def _make(**overrides):
        doc = Product(
            name="Rose Water",
            description="Steam distilled rose water, 250ml bottle",
            price=1000,
            stock=5,
            category="Skincare",
            packaging="Glass bottle",
            currency="PKR",
        ).model_dump(by_alias=True, exclude_none=True)
        doc.update(overrides)
        doc["createdAt"] = doc["updatedAt"] = utcnow()
        return db["product"].insert_one(doc).inserted_id
    return _make


@pytest.fixture
def customer_info():
    return {
        "firstName": "Ayesha",
        "lastName": "Khan",
        "email": "Ayesha@Mail.com",
        "phone": "03001234567",
        "address": "12 Mall Road",
        "city": "Lahore",
        "state": "Punjab",
        "zipCode": "54000",
        "country": "Pakistan",
    }


@pytest.fixture
def order_payload(customer_info):
    """Build an order request body for the given items."""
    def _payload(items, shipping_cost=300, method="cod", shipping_method="standard"):
        shipping = {"method": shipping_method}
        if shipping_cost is not None:
            shipping["cost"] = shipping_cost
        return {
            "customerInfo": customer_info,
            "items": items,
            "payment": {"method": method},
            "shipping": shipping,
        }
    return _payload


@pytest.fixture
def order_request(order_payload):
    """Same as order_payload, validated into an OrderCreateRequest."""
    def _request(items, **kwargs):
        return OrderCreateRequest.model_validate(order_payload(items, **kwargs))
    return _request
