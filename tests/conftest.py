"""
Shared fixtures: an in-memory MongoDB, a temporary upload directory and
authenticated clients.
"""
import os
import tempfile

os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="storefront-uploads-"))
os.environ.setdefault("JWT_SECRET", "test-secret")

import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import database
from auth import create_access_token, get_password_hash
from main import app


@pytest.fixture
def db():
    mock_db = mongomock.MongoClient()["storefront_test"]
    database.ensure_indexes(mock_db)
    app.dependency_overrides[database.get_db] = lambda: mock_db
    yield mock_db
    app.dependency_overrides.clear()


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    target = tmp_path / "uploads"
    target.mkdir()
    monkeypatch.setattr(config, "UPLOAD_DIR", target)
    return target


@pytest.fixture
def client(db, upload_dir):
    return TestClient(app)


def make_user(db, email, role="user", name="Test User", password="secret123"):
    user_id = database.create_document(
        "user",
        {
            "name": name,
            "email": email,
            "password_hash": get_password_hash(password),
            "phone": "555-0100",
            "role": role,
        },
        database=db,
    )
    return user_id


@pytest.fixture
def admin_headers(db):
    user_id = make_user(db, "admin@shop.io", role="admin", name="Admin")
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def user_headers(db):
    user_id = make_user(db, "alice@shop.io", name="Alice")
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def category(db):
    category_id = database.create_document(
        "category",
        {"name": "Phones", "slug": "phones", "description": "Mobile phones", "parent": None, "order": 0},
        database=db,
    )
    return category_id


def insert_product(db, category_id, **fields):
    from bson import ObjectId

    doc = {
        "name": "Product",
        "description": "A product",
        "price": 100.0,
        "original_price": 0,
        "discount": 0,
        "category": ObjectId(category_id),
        "brand": "Acme",
        "stock": 10,
        "images": [],
        "main_image": config.PLACEHOLDER_IMAGE,
        "featured": False,
        "free_shipping": False,
        "specifications": {},
        "sold": 0,
        "average_rating": 0,
        "num_reviews": 0,
        "status": "available",
    }
    doc.update(fields)
    doc.setdefault("slug", doc["name"].lower().replace(" ", "-"))
    return database.create_document("product", doc, database=db)
