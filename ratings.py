"""
Shop rating aggregation.

``recompute_shop_rating`` derives rating/total_reviews from the stored
reviews and persists them; ``review_stats`` only reads the cached values.
The aggregator owns exactly those two shop fields.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import serialize_doc, to_object_id
from errors import NotFoundError

logger = logging.getLogger(__name__)

RECENT_REVIEWS = 5
PUBLIC_REVIEW_PROJECTION = {"ip_address": 0}


def average_rating(rating_sum: int, count: int) -> float:
    """Mean rounded half-up to one decimal, 0 when there is nothing to average."""
    if not count:
        return 0.0
    mean = Decimal(rating_sum) / Decimal(count)
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def recompute_shop_rating(db: Database, shop_id) -> Optional[Dict[str, Any]]:
    shop_oid = to_object_id(shop_id, "Shop")
    agg = list(db["review"].aggregate([
        {"$match": {"shop_id": shop_oid, "is_flagged": False}},
        {"$group": {"_id": "$shop_id", "rating_sum": {"$sum": "$rating"}, "count": {"$sum": 1}}},
    ]))
    rating_sum = int(agg[0]["rating_sum"]) if agg else 0
    count = int(agg[0]["count"]) if agg else 0
    snapshot = {"rating": average_rating(rating_sum, count), "total_reviews": count}

    result = db["shop"].update_one({"_id": shop_oid}, {"$set": snapshot})
    if result.matched_count == 0:
        # Reviews can outlive their shop; nothing to update then
        logger.debug("Rating recompute skipped, shop %s no longer exists", shop_oid)
        return None
    logger.info("Shop %s rating=%s total_reviews=%s", shop_oid, snapshot["rating"], count)
    return snapshot


def review_stats(db: Database, shop_id) -> Dict[str, Any]:
    shop_oid = to_object_id(shop_id, "Shop")
    shop = db["shop"].find_one({"_id": shop_oid}, {"rating": 1, "total_reviews": 1})
    if not shop:
        raise NotFoundError("Shop not found")

    match = {"shop_id": shop_oid, "is_flagged": False}
    distribution = {str(star): 0 for star in range(5, 0, -1)}
    for row in db["review"].aggregate([
        {"$match": match},
        {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
    ]):
        distribution[str(row["_id"])] = row["count"]

    recent = db["review"].find(match, PUBLIC_REVIEW_PROJECTION).sort(
        [("created_at", DESCENDING), ("_id", DESCENDING)]
    ).limit(RECENT_REVIEWS)

    return {
        "average_rating": shop.get("rating", 0),
        "total_reviews": shop.get("total_reviews", 0),
        "rating_distribution": distribution,
        "recent_reviews": [serialize_doc(r) for r in recent],
    }
