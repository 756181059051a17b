"""
Review writes. Every write that changes which reviews count towards a shop's
rating calls the aggregator itself before returning.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, now, serialize_doc, to_object_id
from errors import AuthorizationError, NotFoundError, ValidationError, describe_validation_error
from guard import is_admin
from ratings import PUBLIC_REVIEW_PROJECTION, recompute_shop_rating
from schemas import Review

logger = logging.getLogger(__name__)


def _recompute_after_write(db: Database, shop_id, action: str) -> None:
    try:
        recompute_shop_rating(db, shop_id)
    except PyMongoError:
        # The review write already committed; the next recompute repairs it
        logger.warning(
            "ConsistencyGap: rating recompute failed after review %s for shop %s",
            action, shop_id, exc_info=True,
        )


def create_review(
    db: Database,
    shop_id,
    rating: Any,
    review_text: Optional[str] = None,
    interaction_type: Optional[str] = None,
    actor: Optional[Mapping[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> Dict[str, Any]:
    shop_oid = to_object_id(shop_id, "Shop")
    if not db["shop"].find_one({"_id": shop_oid}, {"_id": 1}):
        raise NotFoundError("Shop not found")

    # bool is an int subclass; True must not pass as a 1-star rating
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")

    try:
        review = Review(
            shop_id=shop_oid,
            user_id=to_object_id(actor["id"], "User") if actor else None,
            rating=rating,
            review_text=review_text.strip() if review_text else None,
            interaction_type=interaction_type or None,
            ip_address=ip_address,
        )
    except PydanticValidationError as exc:
        raise ValidationError(describe_validation_error(exc))

    doc = create_document(db, "review", review)
    _recompute_after_write(db, shop_oid, "creation")
    doc.pop("ip_address", None)
    return serialize_doc(doc)


def set_review_flag(db: Database, review_id, flagged: bool, reason: Optional[str] = None) -> Dict[str, Any]:
    review_oid = to_object_id(review_id, "Review")
    update = {
        "is_flagged": flagged,
        "flag_reason": reason.strip() if (flagged and reason) else None,
        "updated_at": now(),
    }
    review = db["review"].find_one_and_update(
        {"_id": review_oid},
        {"$set": update},
        projection=PUBLIC_REVIEW_PROJECTION,
        return_document=ReturnDocument.AFTER,
    )
    if not review:
        raise NotFoundError("Review not found")
    _recompute_after_write(db, review["shop_id"], "flag change")
    return serialize_doc(review)


def flag_review(db: Database, review_id, reason: Optional[str] = None) -> Dict[str, Any]:
    return set_review_flag(db, review_id, True, reason)


def delete_review(db: Database, review_id, actor: Mapping[str, Any]) -> None:
    review_oid = to_object_id(review_id, "Review")
    review = db["review"].find_one({"_id": review_oid}, {"shop_id": 1, "user_id": 1})
    if not review:
        raise NotFoundError("Review not found")
    author = review.get("user_id")
    if not is_admin(actor) and (author is None or str(author) != str(actor.get("id"))):
        raise AuthorizationError("Not authorized to delete this review")

    db["review"].delete_one({"_id": review_oid})
    _recompute_after_write(db, review["shop_id"], "deletion")
