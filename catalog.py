"""
Catalog queries and derived fields.

Slug and discount derivation, the product listing query, category and
review expansion, rating aggregation and the category tree.
"""
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from slugify import slugify as _slugify

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 12

SORT_OPTIONS = {
    "newest": [("created_at", -1)],
    "price-low": [("price", 1)],
    "price-high": [("price", -1)],
    "popular": [("sold", -1)],
    "top-rated": [("average_rating", -1)],
}
DEFAULT_SORT = "newest"

CATEGORY_FIELDS = {"name": 1, "slug": 1}


def slugify(name: str) -> str:
    """ASCII lowercase-hyphenated form of a display name: "Điện thoại X" -> "dien-thoai-x"."""
    return _slugify(name, lowercase=True, separator="-")


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def compute_discount(price: Optional[float], original_price: Optional[float], current: int = 0) -> int:
    """Percentage off original_price; keeps `current` unless both prices are positive."""
    if original_price and price and original_price > 0 and price > 0:
        return int(round_half_up((original_price - price) / original_price * 100))
    return current


def prepare_product(data: Dict[str, Any], existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Apply derived product fields at the write boundary.

    The slug is set once from the name and never regenerated on rename.
    The discount is recomputed from the merged prices on every write.
    """
    merged = dict(existing or {})
    merged.update(data)
    if not merged.get("slug"):
        data["slug"] = slugify(merged["name"])
    data["discount"] = compute_discount(
        merged.get("price"), merged.get("original_price"), merged.get("discount", 0)
    )
    return data


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Convert a stored document to its JSON shape: `_id` -> `id`, ObjectIds -> str."""
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        elif key == "password_hash":
            continue
        else:
            out[key] = _jsonable(value)
    return out


def _jsonable(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return to_str_id(value)
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def parse_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


# Product listing

def parse_positive_int(value: Optional[str], default: int) -> int:
    """Leading integer of `value`; absent, non-numeric or < 1 falls back to `default`."""
    if value is None:
        return default
    match = re.match(r"\s*[+-]?\d+", str(value))
    if not match:
        return default
    number = int(match.group())
    return number if number >= 1 else default


def parse_number(value: Optional[str]) -> Optional[float]:
    if value is None or str(value).strip() == "":
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    return None if math.isnan(number) else number


def build_product_filter(db, params: Dict[str, Optional[str]]) -> Dict[str, Any]:
    query: Dict[str, Any] = {}

    if params.get("search"):
        query["name"] = {"$regex": re.escape(params["search"]), "$options": "i"}

    if params.get("category"):
        category_id = parse_object_id(params["category"])
        if category_id is None:
            found = db["category"].find_one({"slug": params["category"]}, {"_id": 1})
            category_id = found["_id"] if found else params["category"]
        query["category"] = category_id

    min_price = parse_number(params.get("minPrice"))
    max_price = parse_number(params.get("maxPrice"))
    if min_price is not None or max_price is not None:
        price_filter = {}
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        query["price"] = price_filter

    if params.get("brand"):
        query["brand"] = params["brand"]
    if params.get("status"):
        query["status"] = params["status"]
    if params.get("featured") == "true":
        query["featured"] = True

    return query


def resolve_sort(sort: Optional[str]) -> List[Tuple[str, int]]:
    return SORT_OPTIONS.get(sort or DEFAULT_SORT, SORT_OPTIONS[DEFAULT_SORT])


def populate_categories(db, products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Replace each product's category reference with {_id, name, slug}."""
    ids = {p["category"] for p in products if isinstance(p.get("category"), ObjectId)}
    if not ids:
        return products
    categories = {c["_id"]: c for c in db["category"].find({"_id": {"$in": list(ids)}}, CATEGORY_FIELDS)}
    for product in products:
        ref = product.get("category")
        if ref in categories:
            product["category"] = categories[ref]
    return products


def list_products(db, params: Dict[str, Optional[str]]) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    page = parse_positive_int(params.get("page"), DEFAULT_PAGE)
    limit = parse_positive_int(params.get("limit"), DEFAULT_LIMIT)
    query = build_product_filter(db, params)

    total = db["product"].count_documents(query)
    cursor = (
        db["product"].find(query)
        .sort(resolve_sort(params.get("sort")))
        .skip((page - 1) * limit)
        .limit(limit)
    )
    products = populate_categories(db, list(cursor))

    pagination = {
        "total": total,
        "pages": math.ceil(total / limit),
        "page": page,
        "limit": limit,
    }
    return products, pagination


# Product detail and reviews

def product_reviews(db, product_id: ObjectId) -> List[Dict[str, Any]]:
    """Reviews of a product, newest first, each author expanded to {_id, name}."""
    reviews = list(db["review"].find({"product": product_id}).sort([("created_at", -1)]))
    user_ids = list({r["user"] for r in reviews})
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": user_ids}}, {"name": 1})} if user_ids else {}
    for review in reviews:
        review["user"] = users.get(review["user"], review["user"])
    return reviews


def find_product_detail(db, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    product = db["product"].find_one(query)
    if product is None:
        return None
    populate_categories(db, [product])
    product["reviews"] = product_reviews(db, product["_id"])
    return product


def recompute_rating(db, product_id: ObjectId) -> Tuple[float, int]:
    """Recompute average_rating and num_reviews of a product from its reviews."""
    stats = list(db["review"].aggregate([
        {"$match": {"product": product_id}},
        {"$group": {"_id": "$product", "avg_rating": {"$avg": "$rating"}, "num_reviews": {"$sum": 1}}},
    ]))
    if stats:
        average = round_half_up(stats[0]["avg_rating"], 1)
        count = stats[0]["num_reviews"]
    else:
        average, count = 0, 0
    db["product"].update_one({"_id": product_id}, {"$set": {"average_rating": average, "num_reviews": count}})
    logger.debug("Rating for product %s recomputed: %s over %s reviews", product_id, average, count)
    return average, count


# Categories

def subcategories(db, category_id: ObjectId) -> List[Dict[str, Any]]:
    return list(db["category"].find({"parent": category_id}).sort([("order", 1), ("name", 1)]))


def category_tree(db) -> List[Dict[str, Any]]:
    """Whole category tree built from an adjacency map, without recursion."""
    categories = list(db["category"].find({}).sort([("order", 1), ("name", 1)]))
    nodes = {c["_id"]: {**c, "subcategories": []} for c in categories}
    roots = []
    for category in categories:
        node = nodes[category["_id"]]
        parent = category.get("parent")
        if parent is not None and parent in nodes:
            nodes[parent]["subcategories"].append(node)
        else:
            roots.append(node)
    return roots


def is_descendant(db, category_id: ObjectId, candidate_parent: ObjectId) -> bool:
    """True when candidate_parent sits anywhere below category_id."""
    current = candidate_parent
    seen = set()
    while current is not None and current not in seen:
        if current == category_id:
            return True
        seen.add(current)
        found = db["category"].find_one({"_id": current}, {"parent": 1})
        current = found.get("parent") if found else None
    return False
