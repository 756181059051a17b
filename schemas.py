"""
Database Schemas for the Eastlify directory

Each Pydantic model represents a MongoDB collection.
Collection name is lowercase of the class name.
- User -> "user"
- Shop -> "shop"
- Product -> "product"
- Review -> "review"
- Activity -> "activity" (append-only)
"""

from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

Role = Literal["customer", "shop_owner", "admin"]
InteractionType = Literal["walk-in", "online-inquiry", "repeat-customer", "other"]
ActivityType = Literal["call", "whatsapp", "sale"]

MAX_PRODUCT_IMAGES = 5


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class User(Document):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Unique email address, stored lower-cased")
    phone: Optional[str] = None
    password_hash: str = Field(..., description="Hashed password")
    role: Role = Field("customer", description="Role: customer, shop_owner, admin")
    shop_id: Optional[ObjectId] = Field(None, description="The one shop this user owns")
    is_verified: bool = False


class WorkingHours(BaseModel):
    open: str = "08:00"
    close: str = "18:00"


class Shop(Document):
    owner_id: ObjectId = Field(..., description="Owner user _id, immutable")
    name: str = Field(..., min_length=1, description="Shop name")
    owner_name: Optional[str] = None
    description: Optional[str] = Field(None, max_length=1000)
    categories: List[str] = Field(default_factory=list)
    street: str = Field(..., min_length=1, description="Street location")
    building_floor: Optional[str] = None
    phone: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    whatsapp: Optional[str] = None
    profile_image: Optional[str] = Field(None, description="Image URL")
    cover_image: Optional[str] = Field(None, description="Image URL")
    images: List[str] = Field(default_factory=list)
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    is_active: bool = True
    is_verified: bool = False
    # Aggregate counters: rating/total_reviews belong to the rating
    # aggregator, total_calls/sales/orders to the activity ledger
    rating: float = Field(0.0, ge=0, le=5)
    total_reviews: int = Field(0, ge=0)
    total_calls: int = Field(0, ge=0)
    sales: float = Field(0.0, ge=0)
    orders: int = Field(0, ge=0)


class Variant(BaseModel):
    size: Optional[str] = None
    color: Optional[str] = None
    stock: int = Field(0, ge=0)
    in_stock: bool = True


class Product(Document):
    shop_id: ObjectId = Field(..., description="Owning shop _id, immutable")
    name: str = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=2000)
    price: float = Field(..., ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    category: str = Field(..., min_length=1)
    images: List[str] = Field(default_factory=list, max_length=MAX_PRODUCT_IMAGES)
    stock: int = Field(0, ge=0)
    in_stock: bool = True
    is_active: bool = True
    tags: List[str] = Field(default_factory=list)
    variants: List[Variant] = Field(default_factory=list)
    has_sizes: bool = False
    has_colors: bool = False


class Review(Document):
    shop_id: ObjectId = Field(..., description="Reviewed shop _id, immutable")
    user_id: Optional[ObjectId] = Field(None, description="Absent for anonymous reviews")
    rating: int = Field(..., ge=1, le=5, description="Rating 1-5")
    review_text: Optional[str] = Field(None, max_length=1000)
    interaction_type: Optional[InteractionType] = None
    is_verified: bool = False
    is_flagged: bool = False
    flag_reason: Optional[str] = None
    helpful_count: int = Field(0, ge=0)
    ip_address: Optional[str] = Field(None, description="Abuse tracking only, never returned")


class Activity(Document):
    shop_id: ObjectId
    type: ActivityType
    detail: Optional[str] = None
    item: Optional[str] = None
    amount: float = Field(0.0, ge=0)
