"""
Listing queries over shops, products and reviews.

Every listing returns the same page envelope:
``{items, page, limit, total, total_pages}``. ``total`` is a separate count
over the same predicate as ``items``.
"""

import math
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator
from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database

from database import serialize_doc, to_object_id
from errors import NotFoundError
from ratings import PUBLIC_REVIEW_PROJECTION
from schemas import Review

MAX_LIMIT = 100
# every stored review field except the abuse-tracking ip_address
REVIEW_SORT_FIELDS = tuple(
    ["created_at", "updated_at"] + [f for f in Review.model_fields if f != "ip_address"]
)
NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]
SHOP_OWNER_FIELDS = {"name": 1, "email": 1, "phone": 1}
PRODUCT_SHOP_FIELDS = {"name": 1, "street": 1, "phone": 1}


class ShopFilter(BaseModel):
    category: Optional[str] = None
    street: Optional[str] = None
    search: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=MAX_LIMIT)


class ProductFilter(BaseModel):
    category: Optional[str] = None
    street: Optional[str] = None
    shop: Optional[str] = None
    search: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=MAX_LIMIT)

    @model_validator(mode="after")
    def check_price_range(self):
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise ValueError("min_price cannot exceed max_price")
        return self


class ReviewFilter(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(10, ge=1, le=MAX_LIMIT)
    sort: str = "-created_at"

    @field_validator("sort")
    @classmethod
    def check_sort(cls, v: str) -> str:
        if v.lstrip("-") not in REVIEW_SORT_FIELDS:
            raise ValueError(f"sort must be one of {', '.join(REVIEW_SORT_FIELDS)}, optionally prefixed with '-'")
        return v

    def sort_spec(self) -> List[Tuple[str, int]]:
        direction = DESCENDING if self.sort.startswith("-") else ASCENDING
        return [(self.sort.lstrip("-"), direction), ("_id", direction)]


class AdminReviewFilter(BaseModel):
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=MAX_LIMIT)
    flagged_only: bool = False


def text_match(search: Optional[str], fields: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
    """Case-insensitive literal substring match on any of ``fields``."""
    if not search or not search.strip():
        return None
    pattern = re.escape(search.strip())
    return {"$or": [{f: {"$regex": pattern, "$options": "i"}} for f in fields]}


def paginate(
    collection: Collection,
    query: Dict[str, Any],
    page: int,
    limit: int,
    sort: Optional[List[Tuple[str, int]]] = None,
    projection: Optional[Dict[str, int]] = None,
    serializer: Callable[[Dict[str, Any]], Dict[str, Any]] = serialize_doc,
) -> Dict[str, Any]:
    cursor = collection.find(query, projection).sort(sort or NEWEST_FIRST).skip((page - 1) * limit).limit(limit)
    items = [serializer(doc) for doc in cursor]
    total = collection.count_documents(query)
    return {
        "items": items,
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit),
    }


def _attach(db: Database, items: List[Dict[str, Any]], key: str, collection: str, fields: Dict[str, int]) -> None:
    """Replace ``item[key]`` ids by a small embedded document, like a populate."""
    ids = {to_object_id(item[key]) for item in items if item.get(key)}
    if not ids:
        return
    found = {str(d["_id"]): serialize_doc(d) for d in db[collection].find({"_id": {"$in": list(ids)}}, fields)}
    for item in items:
        ref = item.get(key)
        if ref:
            item[key[: -len("_id")]] = found.get(ref)


def find_shops(db: Database, filters: ShopFilter) -> Dict[str, Any]:
    query: Dict[str, Any] = {"is_active": True}
    if filters.category:
        # equality on an array field matches membership
        query["categories"] = filters.category
    if filters.street:
        query["street"] = filters.street
    search = text_match(filters.search, ("name", "description"))
    if search:
        query.update(search)

    result = paginate(db["shop"], query, filters.page, filters.limit)
    _attach(db, result["items"], "owner_id", "user", SHOP_OWNER_FIELDS)
    return result


def find_products(db: Database, filters: ProductFilter) -> Dict[str, Any]:
    query: Dict[str, Any] = {"is_active": True}
    if filters.category:
        query["category"] = filters.category
    if filters.shop:
        query["shop_id"] = to_object_id(filters.shop, "Shop")
    if filters.street:
        shop_ids = [s["_id"] for s in db["shop"].find({"street": filters.street}, {"_id": 1})]
        if "shop_id" in query:
            shop_ids = [sid for sid in shop_ids if sid == query["shop_id"]]
        query["shop_id"] = {"$in": shop_ids}
    if filters.min_price is not None or filters.max_price is not None:
        price: Dict[str, float] = {}
        if filters.min_price is not None:
            price["$gte"] = filters.min_price
        if filters.max_price is not None:
            price["$lte"] = filters.max_price
        query["price"] = price
    search = text_match(filters.search, ("name", "description", "tags"))
    if search:
        query.update(search)

    result = paginate(db["product"], query, filters.page, filters.limit)
    _attach(db, result["items"], "shop_id", "shop", PRODUCT_SHOP_FIELDS)
    return result


def find_shop_reviews(db: Database, shop_id, filters: ReviewFilter) -> Dict[str, Any]:
    shop_oid = to_object_id(shop_id, "Shop")
    if not db["shop"].find_one({"_id": shop_oid}, {"_id": 1}):
        raise NotFoundError("Shop not found")
    query = {"shop_id": shop_oid, "is_flagged": False}
    result = paginate(
        db["review"], query, filters.page, filters.limit,
        sort=filters.sort_spec(), projection=PUBLIC_REVIEW_PROJECTION,
    )
    _attach(db, result["items"], "user_id", "user", {"name": 1})
    return result


def find_all_reviews(db: Database, filters: AdminReviewFilter) -> Dict[str, Any]:
    query = {"is_flagged": True} if filters.flagged_only else {}
    result = paginate(db["review"], query, filters.page, filters.limit, projection=PUBLIC_REVIEW_PROJECTION)
    _attach(db, result["items"], "user_id", "user", {"name": 1, "email": 1})
    _attach(db, result["items"], "shop_id", "shop", {"name": 1})
    return result
