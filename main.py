import json
import logging
import math
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import database
from auth import (
    Principal,
    admin,
    create_access_token,
    get_password_hash,
    principal_from_doc,
    protect,
    set_token_cookie,
    verify_password,
)
from catalog import (
    category_tree,
    find_product_detail,
    is_descendant,
    list_products as query_products,
    parse_object_id,
    prepare_product,
    product_reviews,
    recompute_rating,
    slugify,
    subcategories,
    to_str_id,
)
from database import create_document, ensure_indexes, get_db, now_utc
from schemas import (
    PRODUCT_STATUSES,
    Category as CategorySchema,
    CategoryPayload,
    CategoryUpdatePayload,
    LoginPayload,
    Product as ProductSchema,
    RegisterPayload,
    Review as ReviewSchema,
    ReviewPayload,
    User as UserSchema,
)
from storage import delete_images, stage_uploads, validate_uploads

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

config.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
app.mount(config.UPLOAD_URL_PREFIX, StaticFiles(directory=str(config.UPLOAD_DIR)), name="uploads")


# Errors

class FieldValidationError(Exception):
    """Request fields failed validation; carries one entry per failing field."""

    def __init__(self, errors: List[Dict[str, Any]]):
        super().__init__("Validation failed")
        self.errors = errors


def field_error(param: str, msg: str) -> Dict[str, Any]:
    return {"msg": msg, "param": param, "location": "body"}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"msg": err.get("msg"), "param": ".".join(loc), "location": (err.get("loc") or ["body"])[0]})
    return JSONResponse(status_code=400, content={"success": False, "errors": errors})


@app.exception_handler(FieldValidationError)
async def field_validation_handler(request, exc: FieldValidationError):
    return JSONResponse(status_code=400, content={"success": False, "errors": exc.errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request, exc: DuplicateKeyError):
    logger.info("Duplicate key rejected: %s", exc.details.get("keyValue") if exc.details else exc)
    return JSONResponse(status_code=400, content={"success": False, "error": "Duplicate field value entered"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Server Error"})


@app.on_event("startup")
def setup_database():
    if database.db is not None:
        ensure_indexes(database.db)


def object_id_or_404(value: str, detail: str) -> ObjectId:
    oid = parse_object_id(value)
    if oid is None:
        raise HTTPException(status_code=404, detail=detail)
    return oid


@app.get("/")
def read_root():
    return {"message": "Storefront backend is running"}


# Auth

@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterPayload, response: Response, db=Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise HTTPException(400, "User already exists")
    user = UserSchema(
        name=payload.name,
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        phone=payload.phone,
    )
    user_id = create_document("user", user, database=db)
    logger.info("Registered account %s", user_id)
    token = create_access_token(user_id)
    set_token_cookie(response, token)
    account = principal_from_doc({"_id": user_id, **user.model_dump()})
    return {"success": True, "token": token, "data": account.model_dump()}


@app.post("/api/auth/login")
def login(payload: LoginPayload, response: Response, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(401, "Invalid credentials")
    token = create_access_token(str(user["_id"]))
    set_token_cookie(response, token)
    return {"success": True, "token": token, "data": principal_from_doc(user).model_dump()}


@app.get("/api/auth/me")
def me(current: Principal = Depends(protect)):
    return {"success": True, "data": current.model_dump()}


@app.get("/api/auth/logout", dependencies=[Depends(protect)])
def logout(response: Response):
    response.delete_cookie("token")
    return {"success": True, "data": {}}


# Categories

def _resolve_parent(db, parent: Optional[str], category_id: Optional[ObjectId] = None) -> Optional[ObjectId]:
    if not parent:
        return None
    parent_id = parse_object_id(parent)
    if parent_id is None or db["category"].find_one({"_id": parent_id}, {"_id": 1}) is None:
        raise FieldValidationError([field_error("parent", "Parent category not found")])
    if category_id is not None and (parent_id == category_id or is_descendant(db, category_id, parent_id)):
        raise FieldValidationError([field_error("parent", "A category cannot be its own parent")])
    return parent_id


def _category_detail(db, category: Optional[dict]) -> dict:
    if category is None:
        raise HTTPException(404, "Category not found")
    category["subcategories"] = subcategories(db, category["_id"])
    return {"success": True, "data": to_str_id(category)}


@app.get("/api/categories")
def list_categories(parent: Optional[str] = None, featured: Optional[str] = None, db=Depends(get_db)):
    query: Dict[str, Any] = {}
    if parent == "root":
        query["parent"] = None
    elif parent:
        query["parent"] = parse_object_id(parent) or parent
    if featured == "true":
        query["featured"] = True
    cats = list(db["category"].find(query).sort([("order", 1), ("name", 1)]))
    return {"success": True, "count": len(cats), "data": [to_str_id(c) for c in cats]}


@app.get("/api/categories/tree")
def get_category_tree(db=Depends(get_db)):
    return {"success": True, "data": [to_str_id(node) for node in category_tree(db)]}


@app.get("/api/categories/slug/{slug}")
def get_category_by_slug(slug: str, db=Depends(get_db)):
    return _category_detail(db, db["category"].find_one({"slug": slug}))


@app.get("/api/categories/{category_id}")
def get_category(category_id: str, db=Depends(get_db)):
    oid = object_id_or_404(category_id, "Category not found")
    return _category_detail(db, db["category"].find_one({"_id": oid}))


@app.post("/api/categories", status_code=201, dependencies=[Depends(admin)])
def create_category(payload: CategoryPayload, db=Depends(get_db)):
    data = payload.model_dump(exclude_none=True)
    data["parent"] = _resolve_parent(db, payload.parent)
    data["slug"] = slugify(payload.name)
    category = CategorySchema(**data)
    category_id = create_document("category", category, database=db)
    logger.info("Created category %s (%s)", category.slug, category_id)
    return {"success": True, "data": to_str_id(db["category"].find_one({"_id": ObjectId(category_id)}))}


@app.put("/api/categories/{category_id}", dependencies=[Depends(admin)])
def update_category(category_id: str, payload: CategoryUpdatePayload, db=Depends(get_db)):
    oid = object_id_or_404(category_id, "Category not found")
    if db["category"].find_one({"_id": oid}, {"_id": 1}) is None:
        raise HTTPException(404, "Category not found")
    update_doc = payload.model_dump(exclude_unset=True, exclude_none=True)
    if "parent" in payload.model_fields_set:
        update_doc["parent"] = _resolve_parent(db, payload.parent, oid)
    if "name" in update_doc:
        update_doc["slug"] = slugify(update_doc["name"])
    update_doc["updated_at"] = now_utc()
    category = db["category"].find_one_and_update(
        {"_id": oid}, {"$set": update_doc}, return_document=ReturnDocument.AFTER
    )
    logger.info("Updated category %s", category_id)
    return {"success": True, "data": to_str_id(category)}


@app.delete("/api/categories/{category_id}", dependencies=[Depends(admin)])
def delete_category(category_id: str, db=Depends(get_db)):
    oid = object_id_or_404(category_id, "Category not found")
    if db["category"].find_one({"_id": oid}, {"_id": 1}) is None:
        raise HTTPException(404, "Category not found")
    if db["product"].find_one({"category": oid}, {"_id": 1}) is not None:
        raise HTTPException(400, "Category still has products")
    if db["category"].find_one({"parent": oid}, {"_id": 1}) is not None:
        raise HTTPException(400, "Category still has subcategories")
    db["category"].delete_one({"_id": oid})
    logger.info("Deleted category %s", category_id)
    return {"success": True, "data": {}}


# Products

class ProductForm:
    """Multipart product fields; every field optional here, required ones are checked per operation."""

    def __init__(
        self,
        name: Optional[str] = Form(None),
        slug: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        price: Optional[str] = Form(None),
        original_price: Optional[str] = Form(None),
        category: Optional[str] = Form(None),
        brand: Optional[str] = Form(None),
        stock: Optional[str] = Form(None),
        sold: Optional[str] = Form(None),
        featured: Optional[str] = Form(None),
        free_shipping: Optional[str] = Form(None),
        status: Optional[str] = Form(None),
        specifications: Optional[str] = Form(None),
        images: Optional[List[UploadFile]] = File(None),
    ):
        self.name = name
        self.slug = slug
        self.description = description
        self.price = price
        self.original_price = original_price
        self.category = category
        self.brand = brand
        self.stock = stock
        self.sold = sold
        self.featured = featured
        self.free_shipping = free_shipping
        self.status = status
        self.specifications = specifications
        self.images = images


REQUIRED_TEXT = {
    "name": "Name is required",
    "description": "Description is required",
    "category": "Category is required",
    "brand": "Brand is required",
}
NUMERIC_FIELDS = {
    "price": ("Price is required", "Price must be a non-negative number", float),
    "stock": ("Stock is required", "Stock must be a non-negative whole number", int),
    "original_price": (None, "Original price must be a non-negative number", float),
    "sold": (None, "Sold must be a non-negative whole number", int),
}
BOOLEAN_VALUES = {"true": True, "1": True, "on": True, "false": False, "0": False, "off": False}
MAX_INT64 = 2 ** 63 - 1


def validate_product_form(db, form: ProductForm, partial: bool) -> Dict[str, Any]:
    """Check and convert submitted product fields.

    On create (`partial=False`) the required fields must be present; on
    update only the fields supplied are checked. Raises FieldValidationError
    listing every failing field.
    """
    errors = []
    data: Dict[str, Any] = {}

    for field, message in REQUIRED_TEXT.items():
        value = getattr(form, field)
        if value is None and partial:
            continue
        if value is None or not value.strip():
            errors.append(field_error(field, message))
        else:
            data[field] = value.strip()

    for field, (required_msg, invalid_msg, cast) in NUMERIC_FIELDS.items():
        value = getattr(form, field)
        if value is None:
            if required_msg and not partial:
                errors.append(field_error(field, required_msg))
            continue
        try:
            number = float(value)
        except ValueError:
            errors.append(field_error(field, invalid_msg))
            continue
        if not math.isfinite(number) or number < 0:
            errors.append(field_error(field, invalid_msg))
        elif cast is int and (not number.is_integer() or number > MAX_INT64):
            errors.append(field_error(field, invalid_msg))
        else:
            data[field] = cast(number)

    for field in ("featured", "free_shipping"):
        value = getattr(form, field)
        if value is None:
            continue
        if value.lower() not in BOOLEAN_VALUES:
            errors.append(field_error(field, f"{field} must be true or false"))
        else:
            data[field] = BOOLEAN_VALUES[value.lower()]

    if form.status is not None:
        if form.status not in PRODUCT_STATUSES:
            errors.append(field_error("status", f"Status must be one of {', '.join(PRODUCT_STATUSES)}"))
        else:
            data["status"] = form.status

    if form.slug:
        data["slug"] = slugify(form.slug)

    if form.specifications:
        try:
            specs = json.loads(form.specifications)
        except json.JSONDecodeError:
            specs = None
        if not isinstance(specs, dict):
            errors.append(field_error("specifications", "Specifications must be a valid JSON object"))
        else:
            data["specifications"] = specs

    if "category" in data:
        category_id = parse_object_id(data["category"])
        if category_id is None or db["category"].find_one({"_id": category_id}, {"_id": 1}) is None:
            errors.append(field_error("category", "Category not found"))
        else:
            data["category"] = category_id

    if errors:
        raise FieldValidationError(errors)
    return data


@app.get("/api/products")
def list_products(
    page: Optional[str] = None,
    limit: Optional[str] = None,
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[str] = Query(None, alias="minPrice"),
    max_price: Optional[str] = Query(None, alias="maxPrice"),
    brand: Optional[str] = None,
    status: Optional[str] = None,
    featured: Optional[str] = None,
    sort: Optional[str] = None,
    db=Depends(get_db),
):
    params = {
        "page": page,
        "limit": limit,
        "search": search,
        "category": category,
        "minPrice": min_price,
        "maxPrice": max_price,
        "brand": brand,
        "status": status,
        "featured": featured,
        "sort": sort,
    }
    products, pagination = query_products(db, params)
    return {
        "success": True,
        "count": len(products),
        "pagination": pagination,
        "data": [to_str_id(p) for p in products],
    }


@app.get("/api/products/slug/{slug}")
def get_product_by_slug(slug: str, db=Depends(get_db)):
    product = find_product_detail(db, {"slug": slug})
    if not product:
        raise HTTPException(404, "Product not found")
    return {"success": True, "data": to_str_id(product)}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    oid = object_id_or_404(product_id, "Product not found")
    product = find_product_detail(db, {"_id": oid})
    if not product:
        raise HTTPException(404, "Product not found")
    return {"success": True, "data": to_str_id(product)}


@app.post("/api/products", status_code=201, dependencies=[Depends(admin)])
def create_product(form: ProductForm = Depends(), db=Depends(get_db)):
    data = validate_product_form(db, form, partial=False)
    files = validate_uploads(form.images)
    staged = stage_uploads(files)
    if staged:
        data["images"] = staged
        data["main_image"] = staged[0]
    try:
        product = ProductSchema(**prepare_product(data))
        product_id = create_document("product", product, database=db)
    except Exception:
        delete_images(staged)
        raise
    logger.info("Created product %s (%s)", product.slug, product_id)
    created = db["product"].find_one({"_id": ObjectId(product_id)})
    return {"success": True, "data": to_str_id(created)}


@app.put("/api/products/{product_id}", dependencies=[Depends(admin)])
def update_product(product_id: str, form: ProductForm = Depends(), db=Depends(get_db)):
    oid = object_id_or_404(product_id, "Product not found")
    existing = db["product"].find_one({"_id": oid})
    if not existing:
        raise HTTPException(404, "Product not found")

    data = validate_product_form(db, form, partial=True)
    files = validate_uploads(form.images)
    staged = stage_uploads(files)
    if staged:
        data["images"] = staged
        data["main_image"] = staged[0]
    prepare_product(data, existing)
    data["updated_at"] = now_utc()
    try:
        product = db["product"].find_one_and_update(
            {"_id": oid}, {"$set": data}, return_document=ReturnDocument.AFTER
        )
    except Exception:
        delete_images(staged)
        raise
    if product is None:
        delete_images(staged)
        raise HTTPException(404, "Product not found")

    # Old images go only after the new record is committed.
    if staged:
        delete_images(existing.get("images", []))
    logger.info("Updated product %s", product_id)
    return {"success": True, "data": to_str_id(product)}


@app.delete("/api/products/{product_id}", dependencies=[Depends(admin)])
def delete_product(product_id: str, db=Depends(get_db)):
    oid = object_id_or_404(product_id, "Product not found")
    product = db["product"].find_one({"_id": oid})
    if not product:
        raise HTTPException(404, "Product not found")
    db["product"].delete_one({"_id": oid})
    delete_images(product.get("images", []))
    logger.info("Deleted product %s", product_id)
    return {"success": True, "data": {}}


# Reviews

@app.get("/api/products/{product_id}/reviews")
def get_reviews(product_id: str, db=Depends(get_db)):
    oid = object_id_or_404(product_id, "Product not found")
    if db["product"].find_one({"_id": oid}, {"_id": 1}) is None:
        raise HTTPException(404, "Product not found")
    reviews = product_reviews(db, oid)
    return {"success": True, "count": len(reviews), "data": [to_str_id(r) for r in reviews]}


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, payload: ReviewPayload, current: Principal = Depends(protect), db=Depends(get_db)):
    oid = object_id_or_404(product_id, "Product not found")
    if db["product"].find_one({"_id": oid}, {"_id": 1}) is None:
        raise HTTPException(404, "Product not found")
    review = ReviewSchema(user=current.object_id, product=oid, rating=payload.rating, comment=payload.comment)
    try:
        review_id = create_document("review", review, database=db)
    except DuplicateKeyError:
        raise HTTPException(400, "Product already reviewed")
    recompute_rating(db, oid)
    return {"success": True, "data": to_str_id(db["review"].find_one({"_id": ObjectId(review_id)}))}


@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, current: Principal = Depends(protect), db=Depends(get_db)):
    oid = object_id_or_404(review_id, "Review not found")
    review = db["review"].find_one({"_id": oid})
    if not review:
        raise HTTPException(404, "Review not found")
    if review["user"] != current.object_id and not current.is_admin:
        raise HTTPException(403, "Not allowed to delete this review")
    db["review"].delete_one({"_id": oid})
    # Recompute against the remaining reviews, after the removal.
    recompute_rating(db, review["product"])
    return {"success": True, "data": {}}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
