"""
Shared pytest fixtures.

MongoDB is replaced by mongomock, and the media store and payment gateway by
in-memory fakes injected through ``create_app``.
"""

import io
import logging
import threading
from datetime import datetime

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from backend import create_app
from backend.errors import UpstreamFailure
from backend.payments import PaymentGateway
from backend.storage import MediaStore

TEST_JWT_SECRET = "test-secret-key-that-is-long-enough-for-hs256"


class FakeMediaStore(MediaStore):
    def __init__(self):
        self.uploads = []
        self.fail = False
        self.gate = None

    def upload(self, key, data, content_type):
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail:
            raise UpstreamFailure("bucket offline")
        self.uploads.append({"key": key, "data": data, "content_type": content_type})
        return f"https://cdn.example.test/{key}"


class FakePaymentGateway(PaymentGateway):
    def __init__(self):
        self.statuses = {}
        self.calls = []

    def checkout_status(self, checkout_reference):
        self.calls.append(checkout_reference)
        if checkout_reference not in self.statuses:
            raise UpstreamFailure("Unknown checkout")
        return self.statuses[checkout_reference]


# ============================================================================
# COLLABORATORS
# ============================================================================


@pytest.fixture
def db():
    return mongomock.MongoClient().karwaan_test


@pytest.fixture
def media_store():
    return FakeMediaStore()


@pytest.fixture
def gated_media_store(media_store):
    media_store.gate = threading.Event()
    yield media_store
    media_store.gate.set()


@pytest.fixture
def payment_gateway():
    return FakePaymentGateway()


@pytest.fixture
def logger():
    return logging.getLogger("tests")


# ============================================================================
# APPLICATION
# ============================================================================


@pytest.fixture
def app(db, media_store, payment_gateway):
    app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": TEST_JWT_SECRET,
            "MEDIA_UPLOAD_MODE": "sync",
        },
        db=db,
        media_store=media_store,
        payment_gateway=payment_gateway,
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


# ============================================================================
# DATA
# ============================================================================


def make_user(db, role="customer", **fields):
    document = {
        "firstName": fields.pop("firstName", "Asha"),
        "lastName": fields.pop("lastName", "Verma"),
        "email": fields.pop("email", f"{role}-{datetime.utcnow().timestamp()}@example.com"),
        "image": None,
        "phoneNumber": "+91 90000 00000",
        "role": role,
        "isEmailValid": True,
        "createdAt": datetime(2026, 1, 5, 10, 0, 0),
    }
    document.update(fields)
    document["_id"] = db.users.insert_one(document).inserted_id
    return document


def make_product(db, name="Poster", price=100.0, **fields):
    document = {
        "name": name,
        "tags": ["film"],
        "price": price,
        "description": f"{name} description",
        "available": True,
        "media": {"data": None, "url": None, "type": "image"},
        "media_status": "stored",
        "created_at": datetime.utcnow(),
    }
    document.update(fields)
    document["_id"] = db.products.insert_one(document).inserted_id
    return document


def make_order(db, user, products, status="PAYMENT_COMPLETE", amount=None, **fields):
    document = {
        "user_id": user["_id"],
        "products": [product["_id"] for product in products],
        "items": [
            {"product_id": product["_id"], "name": product["name"], "price": product["price"]}
            for product in products
        ],
        "amount": amount if amount is not None else sum(p["price"] for p in products),
        "status": status,
        "version": 0,
        "created_at": datetime.utcnow(),
    }
    document.update(fields)
    document["_id"] = db.orders.insert_one(document).inserted_id
    return document


@pytest.fixture
def admin_user(db):
    return make_user(db, role="admin", firstName="Admin", email="admin@example.com")


@pytest.fixture
def customer(db):
    return make_user(db, firstName="Ravi", email="ravi@example.com")


@pytest.fixture
def auth_headers(app):
    def build(user):
        with app.app_context():
            token = create_access_token(identity=str(user["_id"]))
        return {"Authorization": f"Bearer {token}"}

    return build


@pytest.fixture
def png_upload():
    def build(filename="poster.png", content_type="image/png", payload=b"\x89PNG\r\n\x1a\nfake"):
        return (io.BytesIO(payload), filename, content_type)

    return build


@pytest.fixture
def user_factory(db):
    return lambda **fields: make_user(db, **fields)


@pytest.fixture
def product_factory(db):
    return lambda **fields: make_product(db, **fields)


@pytest.fixture
def order_factory(db):
    return lambda user, products, **fields: make_order(db, user, products, **fields)
