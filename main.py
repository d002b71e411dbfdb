import os
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any

import jwt
import structlog
from bson import ObjectId
from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

import carts
import catalog
import database
import orders
from errors import ShopError
from logs import configure_logging
from schemas import (
    CurrentUser,
    OrderStatus,
    Product as ProductSchema,
    ProductOption,
    ProductVariant,
    ShippingAddress,
    UserRole,
)

# ----------------------------------------------------------------------------
# App and Security Setup
# ----------------------------------------------------------------------------

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days
CLIENT_URL = os.getenv("CLIENT_URL", "*")

configure_logging()
logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

app = FastAPI(title="Fashion Engine API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[CLIENT_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------------------------------------------------------------
# Utilities
# ----------------------------------------------------------------------------

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_access_token(user_id: str, role: UserRole = UserRole.CUSTOMER, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": user_id, "role": role.value, "exp": expire}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def oid_str(oid) -> str:
    return str(oid) if isinstance(oid, ObjectId) else oid


def doc_to_public(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = {k: oid_str(v) for k, v in doc.items()}
    if "_id" in doc:
        doc["id"] = doc.pop("_id")
    return doc


def envelope(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": data, "timestamp": now_iso()}


def error_response(request: Request, status_code: int, message: str, data: Any = None) -> JSONResponse:
    body: Dict[str, Any] = {
        "success": False,
        "error": message,
        "timestamp": now_iso(),
        "path": request.url.path,
    }
    if data is not None:
        body["data"] = data
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> CurrentUser:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid authentication")

    uid = payload.get("sub")
    role = payload.get("role", UserRole.CUSTOMER.value)
    if not uid or role not in UserRole.__members__:
        raise HTTPException(status_code=401, detail="Invalid token")
    return CurrentUser(id=uid, role=UserRole(role))


def get_current_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail=f"Access denied. Required role(s): {UserRole.ADMIN.value}. Your role: {user.role.value}",
        )
    return user


# ----------------------------------------------------------------------------
# Error Handlers
# ----------------------------------------------------------------------------

@app.exception_handler(ShopError)
def handle_shop_error(request: Request, exc: ShopError):
    return error_response(request, exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
def handle_http_error(request: Request, exc: StarletteHTTPException):
    return error_response(request, exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
def handle_validation_error(request: Request, exc: RequestValidationError):
    return error_response(request, 400, "Validation failed", {"validationErrors": exc.errors()})


@app.exception_handler(Exception)
def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error", path=request.url.path)
    return error_response(request, 500, "Internal server error")


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shipping_address: ShippingAddress = Field(..., alias="shippingAddress")


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


class AddCartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., alias="productId")
    variant_sku: str = Field(..., min_length=1, alias="variantSku")
    quantity: int = Field(1, ge=1)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class ProductCreateRequest(ProductSchema):
    pass


class ProductUpdateRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1)
    base_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    options: Optional[List[ProductOption]] = None
    variants: Optional[List[ProductVariant]] = Field(None, min_length=1)


# ----------------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------------

@app.post("/orders", status_code=201)
def create_order(body: CreateOrderRequest, current: CurrentUser = Depends(get_current_user)):
    order = orders.create_order(current, body.shipping_address)
    return envelope(doc_to_public(order))


@app.get("/orders")
def list_orders(current: CurrentUser = Depends(get_current_user)):
    return envelope([doc_to_public(o) for o in orders.list_orders(current.id)])


@app.get("/orders/{order_id}")
def get_order(order_id: str, current: CurrentUser = Depends(get_current_user)):
    return envelope(doc_to_public(orders.get_order(current.id, order_id)))


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, body: UpdateOrderStatusRequest, admin: CurrentUser = Depends(get_current_admin)):
    return envelope(doc_to_public(orders.update_order_status(order_id, body.status)))


@app.delete("/orders/{order_id}/cancel")
def cancel_order(order_id: str, current: CurrentUser = Depends(get_current_user)):
    return envelope(doc_to_public(orders.cancel_order(current, order_id)))


@app.get("/admin/orders")
def admin_orders(status: Optional[OrderStatus] = Query(None), admin: CurrentUser = Depends(get_current_admin)):
    return envelope([doc_to_public(o) for o in orders.list_all_orders(status)])


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

@app.get("/cart")
def get_cart(current: CurrentUser = Depends(get_current_user)):
    return envelope(carts.get_cart(database.autocommit(), current.id))


@app.post("/cart/add")
def add_to_cart(body: AddCartRequest, current: CurrentUser = Depends(get_current_user)):
    cart = carts.add_to_cart(database.autocommit(), current.id, body.product_id, body.variant_sku, body.quantity)
    return envelope(cart)


@app.patch("/cart/{sku}")
def update_cart_item(sku: str, body: UpdateCartItemRequest, current: CurrentUser = Depends(get_current_user)):
    return envelope(carts.update_cart_item(database.autocommit(), current.id, sku, body.quantity))


@app.delete("/cart/{sku}")
def remove_cart_item(sku: str, current: CurrentUser = Depends(get_current_user)):
    return envelope(carts.remove_cart_item(database.autocommit(), current.id, sku))


@app.delete("/cart")
def clear_cart(current: CurrentUser = Depends(get_current_user)):
    return envelope(carts.clear_cart(database.autocommit(), current.id))


# ----------------------------------------------------------------------------
# Product Endpoints
# ----------------------------------------------------------------------------

@app.get("/products")
def list_products(
    request: Request,
    search: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    # filters[Color]=Red&filters[Size]=42
    filters = {
        key[len("filters["):-1]: value
        for key, value in request.query_params.items()
        if key.startswith("filters[") and key.endswith("]") and len(key) > len("filters[]")
    }
    result = catalog.list_products(
        database.autocommit(),
        filters=filters,
        search=search,
        category=category,
        min_price=min_price,
        max_price=max_price,
        page=page,
        limit=limit,
    )
    result["products"] = [doc_to_public(p) for p in result["products"]]
    return envelope(result)


@app.get("/products/{product_id}")
def get_product(product_id: str):
    return envelope(doc_to_public(catalog.get_product(database.autocommit(), product_id)))


@app.post("/products", status_code=201)
def create_product(body: ProductCreateRequest, admin: CurrentUser = Depends(get_current_admin)):
    return envelope(doc_to_public(catalog.create_product(database.autocommit(), body)))


@app.patch("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateRequest, admin: CurrentUser = Depends(get_current_admin)):
    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No updates provided")
    return envelope(doc_to_public(catalog.update_product(database.autocommit(), product_id, updates)))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, admin: CurrentUser = Depends(get_current_admin)):
    catalog.delete_product(database.autocommit(), product_id)
    return envelope({"message": "Product deleted successfully"})


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return envelope({"message": "Fashion Engine API running"})


@app.get("/health")
def health():
    try:
        collections = database.get_db().list_collection_names()
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return envelope({"backend": "ok", "db": f"error: {e}"})
    return envelope({"backend": "ok", "db": "ok", "collections": collections})


# ----------------------------------------------------------------------------
# Seed Data (idempotent) and Startup Hook
# ----------------------------------------------------------------------------

SAMPLE_PRODUCTS = [
    {
        "title": "Air Runner 2023",
        "description": "Breathable, lightweight running shoes for everyday training.",
        "base_price": 12000,
        "category": "footwear",
        "tags": ["running", "sports"],
        "options": [
            {"name": "Size", "values": ["41", "42"]},
            {"name": "Color", "values": ["Red", "Blue"]},
        ],
        "variants": [
            {
                "sku": "AIR-RUN-RED-41",
                "attributes": {"Size": "41", "Color": "Red"},
                "stock": 15,
                "price": 12000,
                "images": ["https://images.unsplash.com/photo-1542291026-7eec264c27ff?q=80&w=1200&auto=format&fit=crop"],
            },
            {
                "sku": "AIR-RUN-BLUE-42",
                "attributes": {"Size": "42", "Color": "Blue"},
                "stock": 8,
                "price": 12500,
                "images": [],
            },
        ],
    },
    {
        "title": "Banarasi Silk Saree",
        "description": "Handwoven silk saree with zari border.",
        "base_price": 8500,
        "category": "ethnic",
        "tags": ["saree", "silk"],
        "options": [
            {"name": "Fabric", "values": ["Silk"]},
            {"name": "Color", "values": ["Maroon", "Gold"]},
        ],
        "variants": [
            {
                "sku": "SAREE-SILK-MAROON",
                "attributes": {"Fabric": "Silk", "Color": "Maroon"},
                "stock": 5,
                "price": 8500,
                "images": [],
            },
            {
                "sku": "SAREE-SILK-GOLD",
                "attributes": {"Fabric": "Silk", "Color": "Gold"},
                "stock": 3,
                "price": 9200,
                "images": [],
            },
        ],
    },
]


def seed_data() -> int:
    uow = database.autocommit()
    if uow.db["product"].count_documents({}) > 0:
        return 0
    for p in SAMPLE_PRODUCTS:
        catalog.create_product(uow, ProductSchema(**p))
    logger.info("Seeded demo catalog", products=len(SAMPLE_PRODUCTS))
    return len(SAMPLE_PRODUCTS)


@app.post("/admin/seed")
def trigger_seed(admin: CurrentUser = Depends(get_current_admin)):
    return envelope({"seeded": seed_data()})


@app.on_event("startup")
def on_startup():
    try:
        database.ensure_indexes()
        seed_data()
    except Exception as e:
        # The API still serves requests; checkout will surface storage errors.
        logger.warning("Startup database preparation failed", error=str(e))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
