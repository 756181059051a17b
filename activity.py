"""
Activity ledger: call/WhatsApp/sale events against a shop.

Each event variant maps to one handler that returns the counter delta for
the shop. The ledger owns total_calls, sales and orders; it never touches
rating or total_reviews.
"""

import logging
import math
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, serialize_doc, to_object_id
from errors import NotFoundError, ValidationError, describe_validation_error
from guard import assert_owner
from schemas import Activity

logger = logging.getLogger(__name__)

COUNTER_FIELDS = {"total_calls": 1, "sales": 1, "orders": 1}
DEFAULT_ACTIVITY_LIMIT = 10
# pydantic error types raised when the "type" discriminator itself is bad
TAG_ERRORS = ("union_tag_invalid", "union_tag_not_found")


class CallEvent(BaseModel):
    type: Literal["call"]
    detail: Optional[str] = None
    item: Optional[str] = None


class WhatsAppEvent(BaseModel):
    type: Literal["whatsapp"]
    detail: Optional[str] = None
    item: Optional[str] = None


class SaleEvent(BaseModel):
    type: Literal["sale"]
    detail: Optional[str] = None
    item: Optional[str] = None
    amount: float = 0.0

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, v):
        # Anything that is not a non-negative number counts as 0
        if isinstance(v, bool):
            return 0.0
        try:
            amount = float(v)
        except (TypeError, ValueError):
            return 0.0
        if not math.isfinite(amount) or amount < 0:
            return 0.0
        return amount


ActivityEvent = Annotated[Union[CallEvent, WhatsAppEvent, SaleEvent], Field(discriminator="type")]
_event_adapter = TypeAdapter(ActivityEvent)


def parse_event(payload: Mapping[str, Any]):
    try:
        return _event_adapter.validate_python(dict(payload))
    except PydanticValidationError as exc:
        if any(e["type"] in TAG_ERRORS for e in exc.errors()):
            raise ValidationError("Activity type must be one of: call, whatsapp, sale")
        raise ValidationError(describe_validation_error(exc))


def _call_delta(event) -> Dict[str, Any]:
    return {"total_calls": 1}


def _sale_delta(event: SaleEvent) -> Dict[str, Any]:
    return {"sales": event.amount, "orders": 1}


HANDLERS = {
    CallEvent: _call_delta,
    WhatsAppEvent: _call_delta,
    SaleEvent: _sale_delta,
}


def record_activity(
    db: Database,
    shop_id,
    payload: Mapping[str, Any],
    actor: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Apply an activity event to the shop counters and append it to the ledger.

    Calls and WhatsApp taps are public. Sales may only be recorded by the
    shop's owner; that check runs before any write, so a rejected sale
    leaves neither a counter change nor a ledger entry behind.

    The counter increment is the primary effect. If the ledger append fails
    afterwards the request still succeeds and ``activity`` is None.
    """
    event = parse_event(payload)
    shop_oid = to_object_id(shop_id, "Shop")
    shop = db["shop"].find_one({"_id": shop_oid}, {"owner_id": 1})
    if not shop:
        raise NotFoundError("Shop not found")

    if isinstance(event, SaleEvent):
        assert_owner(shop, actor, allow_admin=False, message="Only shop owners can record sales")

    delta = HANDLERS[type(event)](event)
    updated = db["shop"].find_one_and_update(
        {"_id": shop_oid},
        {"$inc": delta},
        projection=COUNTER_FIELDS,
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFoundError("Shop not found")
    logger.info("Shop %s %s recorded: %s", shop_oid, event.type, delta)

    record = Activity(
        shop_id=shop_oid,
        type=event.type,
        detail=event.detail,
        item=event.item,
        amount=getattr(event, "amount", 0.0),
    )
    try:
        activity = serialize_doc(create_document(db, "activity", record))
    except PyMongoError:
        logger.warning(
            "ConsistencyGap: %s counted for shop %s but not logged", event.type, shop_oid, exc_info=True
        )
        activity = None

    return {
        "shop": {
            "total_calls": updated.get("total_calls", 0),
            "sales": updated.get("sales", 0),
            "orders": updated.get("orders", 0),
        },
        "activity": activity,
    }


def list_activities(
    db: Database,
    shop_id,
    actor: Optional[Mapping[str, Any]],
    limit: int = DEFAULT_ACTIVITY_LIMIT,
) -> List[Dict[str, Any]]:
    shop_oid = to_object_id(shop_id, "Shop")
    shop = db["shop"].find_one({"_id": shop_oid}, {"owner_id": 1})
    if not shop:
        raise NotFoundError("Shop not found")
    assert_owner(shop, actor, message="Not authorized to view these activities")

    cursor = db["activity"].find({"shop_id": shop_oid}).sort(
        [("created_at", DESCENDING), ("_id", DESCENDING)]
    ).limit(limit)
    return [serialize_doc(a) for a in cursor]
