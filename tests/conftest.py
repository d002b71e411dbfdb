import mongomock
import pytest
from fastapi.testclient import TestClient

import catalog
import database
import main
from schemas import CurrentUser, Product, UserRole

ADDRESS = {
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "zip": "560001",
    "country": "IN",
}


@pytest.fixture(autouse=True)
def mongo():
    """Fresh in-process MongoDB for every test, with journaled units of work."""
    client = mongomock.MongoClient(tz_aware=True)
    database.configure(client, name="fashion_engine_test", transactions=False)
    yield client
    client.drop_database("fashion_engine_test")


@pytest.fixture
def db(mongo):
    return database.get_db()


@pytest.fixture
def customer():
    return CurrentUser(id="user-1", role=UserRole.CUSTOMER)


@pytest.fixture
def admin():
    return CurrentUser(id="admin-1", role=UserRole.ADMIN)


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def customer_headers(customer):
    return {"Authorization": f"Bearer {main.create_access_token(customer.id, customer.role)}"}


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {main.create_access_token(admin.id, admin.role)}"}


@pytest.fixture
def make_product():
    """Create a product with one variant per ``(sku, stock, price)`` tuple."""

    def _make(*variants, title="Air Runner", images=None):
        product = Product(
            title=title,
            description="Running shoe",
            base_price=variants[0][2],
            category="footwear",
            tags=["running"],
            options=[{"name": "Size", "values": ["41", "42", "43"]}, {"name": "Color", "values": ["Red", "Blue"]}],
            variants=[
                {
                    "sku": sku,
                    "attributes": {"Size": "42", "Color": "Red"},
                    "stock": stock,
                    "price": price,
                    "images": images or [],
                }
                for sku, stock, price in variants
            ],
        )
        return catalog.create_product(database.autocommit(), product)

    return _make


@pytest.fixture
def put_cart(db):
    """Write a cart directly, bypassing the live stock check of cart mutations."""

    def _put(user_id, *lines):
        db["cart"].update_one(
            {"user_id": user_id},
            {"$set": {"items": [
                {"product_id": str(product["_id"]), "variant_sku": sku, "quantity": quantity}
                for product, sku, quantity in lines
            ]}},
            upsert=True,
        )

    return _put


@pytest.fixture
def stock_of(db):
    def _stock(sku):
        product = db["product"].find_one({"variants.sku": sku})
        return catalog.find_variant(product, sku)["stock"]

    return _stock
