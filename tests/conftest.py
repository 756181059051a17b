from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import create_document, get_db
from schemas import Product, Review, Shop, User

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def db():
    return mongomock.MongoClient(tz_aware=True)["eastlify_test"]


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(name="Amina", email=None, role="shop_owner"):
        email = email or f"{name.lower()}@eastlify.co.ke"
        user = User(name=name, email=email, password_hash="x", role=role)
        return create_document(db, "user", user)
    return _make


@pytest.fixture
def auth_headers():
    def _headers(user_doc):
        token = main.create_access_token({"sub": str(user_doc["_id"]), "role": user_doc["role"]})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_shop(db):
    def _make(owner, name="Silk House", street="1st Avenue", categories=("fashion",), **extra):
        shop = Shop(owner_id=owner["_id"], name=name, street=street, phone="+254700000000",
                    categories=list(categories), **extra)
        doc = create_document(db, "shop", shop)
        db["user"].update_one({"_id": owner["_id"]}, {"$set": {"shop_id": doc["_id"]}})
        return doc
    return _make


@pytest.fixture
def add_review(db):
    def _add(shop, rating, flagged=False, minutes=0, **extra):
        review = Review(shop_id=shop["_id"], rating=rating, is_flagged=flagged, ip_address="10.0.0.1", **extra)
        stamp = BASE_TIME + timedelta(minutes=minutes)
        return create_document(db, "review", {**review.model_dump(), "created_at": stamp, "updated_at": stamp})
    return _add


@pytest.fixture
def add_product(db):
    def _add(shop, name, price, minutes=0, category="fashion", **extra):
        product = Product(shop_id=shop["_id"], name=name, price=price, category=category, **extra)
        stamp = BASE_TIME + timedelta(minutes=minutes)
        return create_document(db, "product", {**product.model_dump(), "created_at": stamp, "updated_at": stamp})
    return _add
