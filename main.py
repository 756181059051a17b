import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import activity
import listing
import ratings
import reviews
from database import create_document, db as default_db, ensure_indexes, get_db, get_documents, now, serialize_doc, to_object_id
from errors import AuthenticationError, AuthorizationError, DomainError, NotFoundError, ValidationError, describe_validation_error
from guard import assert_owner
from schemas import MAX_PRODUCT_IMAGES, InteractionType, Product, Shop, User, Variant, WorkingHours

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("eastlify")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(default_db)
    except PyMongoError as e:
        logger.warning("Could not ensure indexes: %s", e)
    yield


# App setup
app = FastAPI(title="Eastlify API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security
SECRET_KEY = os.getenv("JWT_SECRET", "change-this-secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 30))
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


# Helpers

def hash_password(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    issued = datetime.now(timezone.utc)
    expire = issued + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"iat": issued, "exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def build(model, **params):
    """Validate transport input into ``model``; failures become a 400."""
    try:
        return model(**{k: v for k, v in params.items() if v is not None})
    except PydanticValidationError as exc:
        raise ValidationError(describe_validation_error(exc))

JSON_STRING_FIELDS = ("categories", "working_hours", "tags", "variants", "images")

def clean_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Undo multipart-form quirks before validation.

    Literal "undefined"/"null" strings mean the client had no value, and
    list/object fields may arrive JSON-encoded.
    """
    out = {}
    for key, value in data.items():
        if isinstance(value, str) and value.strip() in ("undefined", "null"):
            continue
        if key in JSON_STRING_FIELDS and isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                raise ValidationError(f"{key}: invalid JSON")
        out[key] = value
    return out

def serialize_user(doc) -> dict:
    user = serialize_doc(doc)
    user.pop("password_hash", None)
    return user

def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# Dependency: current user

def get_optional_user(token: Optional[str] = Depends(oauth2_scheme), db: Database = Depends(get_db)):
    if not token:
        return None
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise AuthenticationError("Not authorized, token failed")
    except JWTError:
        raise AuthenticationError("Not authorized, token failed")

    try:
        user = db["user"].find_one({"_id": to_object_id(user_id)})
    except NotFoundError:
        user = None
    if not user:
        raise AuthenticationError("Not authorized, user not found")
    return serialize_user(user)

def get_current_user(user=Depends(get_optional_user)):
    if user is None:
        raise AuthenticationError("Not authorized, no token")
    return user

# Role guard
def require_role(*roles):
    def _guard(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            raise AuthorizationError("Not authorized as " + " or ".join(roles))
        return user
    return _guard


# Request models
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    password: str = Field(..., min_length=6)
    role: Literal["customer", "shop_owner"] = "shop_owner"
    # Shop owners may register their shop in the same call
    shop_name: Optional[str] = None
    street: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    description: Optional[str] = None

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class ProfileUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)

class ShopIn(BaseModel):
    model_config = ConfigDict(extra="ignore")
    name: str = Field(..., min_length=1)
    owner_name: Optional[str] = None
    description: Optional[str] = Field(None, max_length=1000)
    categories: List[str] = Field(default_factory=list)
    street: str = Field(..., min_length=1)
    building_floor: Optional[str] = None
    phone: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    whatsapp: Optional[str] = None
    profile_image: Optional[str] = None
    cover_image: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    working_hours: Optional[WorkingHours] = None

class ShopUpdate(BaseModel):
    # owner_id and the aggregate counters are not updatable here
    model_config = ConfigDict(extra="ignore")
    name: Optional[str] = Field(None, min_length=1)
    owner_name: Optional[str] = None
    description: Optional[str] = Field(None, max_length=1000)
    categories: Optional[List[str]] = None
    street: Optional[str] = Field(None, min_length=1)
    building_floor: Optional[str] = None
    phone: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    whatsapp: Optional[str] = None
    profile_image: Optional[str] = None
    cover_image: Optional[str] = None
    images: Optional[List[str]] = None
    working_hours: Optional[WorkingHours] = None
    is_active: Optional[bool] = None

class ProductIn(BaseModel):
    model_config = ConfigDict(extra="ignore")
    name: str = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=2000)
    price: float = Field(..., ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    category: str = Field(..., min_length=1)
    images: List[str] = Field(default_factory=list, max_length=MAX_PRODUCT_IMAGES)
    stock: int = Field(0, ge=0)
    in_stock: bool = True
    tags: List[str] = Field(default_factory=list)
    variants: List[Variant] = Field(default_factory=list)
    has_sizes: bool = False
    has_colors: bool = False

class ProductUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, max_length=2000)
    price: Optional[float] = Field(None, ge=0)
    compare_at_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1)
    images: Optional[List[str]] = Field(None, max_length=MAX_PRODUCT_IMAGES)
    stock: Optional[int] = Field(None, ge=0)
    in_stock: Optional[bool] = None
    is_active: Optional[bool] = None
    tags: Optional[List[str]] = None
    variants: Optional[List[Variant]] = None
    has_sizes: Optional[bool] = None
    has_colors: Optional[bool] = None

class ReviewIn(BaseModel):
    shop_id: str
    rating: Any = None
    review_text: Optional[str] = None
    interaction_type: Optional[InteractionType] = None

class FlagIn(BaseModel):
    reason: Optional[str] = None

class ModerationIn(BaseModel):
    flagged: bool
    reason: Optional[str] = None


# Routes
@app.get("/")
def root():
    return {
        "message": "Eastlify API is running",
        "version": app.version,
        "endpoints": {
            "auth": "/api/auth",
            "shops": "/api/shops",
            "products": "/api/products",
            "reviews": "/api/reviews",
        },
    }

@app.get("/health")
def health(db: Database = Depends(get_db)):
    try:
        collections = db.list_collection_names()
        return {"status": "ok", "database": "ok", "collections": collections}
    except PyMongoError as e:
        return {"status": "ok", "database": f"error: {str(e)[:80]}"}


# Auth
def _shop_of(db: Database, user: dict) -> Optional[dict]:
    shop = db["shop"].find_one({"owner_id": to_object_id(user["id"] if "id" in user else user["_id"])})
    return serialize_doc(shop)

@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise ValidationError("User already exists")

    wants_shop = payload.role == "shop_owner" and payload.shop_name
    if wants_shop:
        # Validate the shop before anything is written
        if not payload.phone:
            raise ValidationError("phone: required to register a shop")
        shop_in = build(
            ShopIn, name=payload.shop_name, owner_name=payload.name, street=payload.street,
            categories=payload.categories, description=payload.description,
            phone=payload.phone, email=email,
        )

    user = User(name=payload.name, email=email, phone=payload.phone,
                password_hash=hash_password(payload.password), role=payload.role)
    try:
        user_doc = create_document(db, "user", user)
    except DuplicateKeyError:
        raise ValidationError("User already exists")

    shop_out = None
    if wants_shop:
        shop_doc = create_document(db, "shop", Shop(owner_id=user_doc["_id"], **shop_in.model_dump(exclude_none=True)))
        db["user"].update_one({"_id": user_doc["_id"]}, {"$set": {"shop_id": shop_doc["_id"]}})
        user_doc["shop_id"] = shop_doc["_id"]
        shop_out = serialize_doc(shop_doc)
        logger.info("Registered shop owner %s with shop %s", user_doc["_id"], shop_doc["_id"])

    token = create_access_token({"sub": str(user_doc["_id"]), "role": payload.role})
    return {"access_token": token, "token_type": "bearer", "user": serialize_user(user_doc), "shop": shop_out}

@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise AuthenticationError("Invalid email or password")
    access_token = create_access_token({"sub": str(user["_id"]), "role": user.get("role", "customer")})
    user_out = serialize_user(user)
    user_out["shop"] = _shop_of(db, user)
    return TokenResponse(access_token=access_token, user=user_out)

@app.get("/api/auth/profile")
def get_profile(user=Depends(get_current_user), db: Database = Depends(get_db)):
    return {**user, "shop": _shop_of(db, user)}

@app.put("/api/auth/profile")
def update_profile(payload: dict = Body(...), user=Depends(get_current_user), db: Database = Depends(get_db)):
    update = build(ProfileUpdate, **clean_payload(payload)).model_dump(exclude_none=True)
    if "email" in update:
        update["email"] = update["email"].lower()
        other = db["user"].find_one({"email": update["email"]})
        if other and str(other["_id"]) != user["id"]:
            raise ValidationError("Email already registered")
    if "password" in update:
        update["password_hash"] = hash_password(update.pop("password"))
    update["updated_at"] = now()
    try:
        db["user"].update_one({"_id": to_object_id(user["id"])}, {"$set": update})
    except DuplicateKeyError:
        raise ValidationError("Email already registered")
    u = db["user"].find_one({"_id": to_object_id(user["id"])})
    token = create_access_token({"sub": user["id"], "role": u.get("role", "customer")})
    return {**serialize_user(u), "access_token": token}


# Shops
def _load_shop(db: Database, shop_id: str) -> dict:
    shop = db["shop"].find_one({"_id": to_object_id(shop_id, "Shop")})
    if not shop:
        raise NotFoundError("Shop not found")
    return shop

@app.get("/api/shops")
def list_shops(
    category: Optional[str] = None,
    street: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1),
    limit: int = Query(20),
    db: Database = Depends(get_db),
):
    filters = build(listing.ShopFilter, category=category, street=street, search=search, page=page, limit=limit)
    return listing.find_shops(db, filters)

@app.get("/api/shops/my/shop")
def my_shop(user=Depends(require_role("shop_owner", "admin")), db: Database = Depends(get_db)):
    shop = _shop_of(db, user)
    if not shop:
        raise NotFoundError("You don't have a shop yet")
    return shop

@app.post("/api/shops", status_code=201)
def create_shop(payload: dict = Body(...), user=Depends(require_role("shop_owner", "admin")), db: Database = Depends(get_db)):
    owner_id = to_object_id(user["id"])
    if db["shop"].find_one({"owner_id": owner_id}, {"_id": 1}):
        raise ValidationError("You already have a shop registered")
    shop_in = build(ShopIn, **clean_payload(payload))
    shop = Shop(owner_id=owner_id, **shop_in.model_dump(exclude_none=True))
    try:
        doc = create_document(db, "shop", shop)
    except DuplicateKeyError:
        raise ValidationError("You already have a shop registered")
    db["user"].update_one({"_id": owner_id}, {"$set": {"shop_id": doc["_id"]}})
    logger.info("Shop %s created by %s", doc["_id"], owner_id)
    return serialize_doc(doc)

@app.get("/api/shops/{shop_id}")
def get_shop(shop_id: str, db: Database = Depends(get_db)):
    shop = serialize_doc(_load_shop(db, shop_id))
    owner = db["user"].find_one({"_id": to_object_id(shop["owner_id"])}, {"name": 1, "email": 1, "phone": 1})
    shop["owner"] = serialize_doc(owner)
    return shop

@app.put("/api/shops/{shop_id}")
def update_shop(shop_id: str, payload: dict = Body(...), user=Depends(get_current_user), db: Database = Depends(get_db)):
    shop = _load_shop(db, shop_id)
    assert_owner(shop, user, message="Not authorized to update this shop")
    update = build(ShopUpdate, **clean_payload(payload)).model_dump(exclude_unset=True)
    update["updated_at"] = now()
    db["shop"].update_one({"_id": shop["_id"]}, {"$set": update})
    return serialize_doc(db["shop"].find_one({"_id": shop["_id"]}))

@app.delete("/api/shops/{shop_id}")
def delete_shop(shop_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    shop = _load_shop(db, shop_id)
    assert_owner(shop, user, message="Not authorized to delete this shop")
    db["shop"].delete_one({"_id": shop["_id"]})
    db["product"].delete_many({"shop_id": shop["_id"]})
    db["user"].update_one({"_id": shop["owner_id"]}, {"$set": {"shop_id": None}})
    logger.info("Shop %s deleted by %s", shop["_id"], user["id"])
    return {"message": "Shop removed"}

@app.post("/api/shops/{shop_id}/activity", status_code=201)
def record_activity(shop_id: str, payload: dict = Body(...), user=Depends(get_optional_user), db: Database = Depends(get_db)):
    return activity.record_activity(db, shop_id, clean_payload(payload), user)

@app.post("/api/shops/{shop_id}/sale", status_code=201)
def record_sale(shop_id: str, payload: dict = Body(...), user=Depends(get_current_user), db: Database = Depends(get_db)):
    return activity.record_activity(db, shop_id, {**clean_payload(payload), "type": "sale"}, user)

@app.get("/api/shops/{shop_id}/activities")
def list_activities(shop_id: str, limit: int = Query(activity.DEFAULT_ACTIVITY_LIMIT, ge=1, le=100),
                    user=Depends(get_current_user), db: Database = Depends(get_db)):
    return activity.list_activities(db, shop_id, user, limit)


# Products
def _load_product(db: Database, product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not product:
        raise NotFoundError("Product not found")
    return product

def _assert_product_owner(db: Database, product: dict, user: dict, action: str) -> None:
    shop = db["shop"].find_one({"_id": product["shop_id"]}, {"owner_id": 1})
    # A product whose shop is gone can only be touched by an admin
    assert_owner(shop or {}, user, message=f"Not authorized to {action} this product")

@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    street: Optional[str] = None,
    shop: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    page: int = Query(1),
    limit: int = Query(20),
    db: Database = Depends(get_db),
):
    filters = build(
        listing.ProductFilter, category=category, street=street, shop=shop, search=search,
        min_price=min_price, max_price=max_price, page=page, limit=limit,
    )
    return listing.find_products(db, filters)

@app.get("/api/products/my/products")
def my_products(user=Depends(require_role("shop_owner", "admin")), db: Database = Depends(get_db)):
    shop = _shop_of(db, user)
    if not shop:
        raise NotFoundError("You don't have a shop yet")
    return [serialize_doc(p) for p in get_documents(db, "product", {"shop_id": to_object_id(shop["id"])})]

@app.post("/api/products", status_code=201)
def create_product(payload: dict = Body(...), user=Depends(require_role("shop_owner", "admin")), db: Database = Depends(get_db)):
    shop = db["shop"].find_one({"owner_id": to_object_id(user["id"])}, {"owner_id": 1})
    if not shop:
        raise NotFoundError("You need to create a shop first")
    assert_owner(shop, user)
    product_in = build(ProductIn, **clean_payload(payload))
    doc = create_document(db, "product", Product(shop_id=shop["_id"], **product_in.model_dump()))
    return serialize_doc(doc)

@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    product = serialize_doc(_load_product(db, product_id))
    shop = db["shop"].find_one(
        {"_id": to_object_id(product["shop_id"])},
        {"name": 1, "street": 1, "phone": 1, "email": 1, "whatsapp": 1},
    )
    product["shop"] = serialize_doc(shop)
    return product

@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: dict = Body(...), user=Depends(get_current_user), db: Database = Depends(get_db)):
    product = _load_product(db, product_id)
    _assert_product_owner(db, product, user, "update")
    update = build(ProductUpdate, **clean_payload(payload)).model_dump(exclude_unset=True)
    update["updated_at"] = now()
    db["product"].update_one({"_id": product["_id"]}, {"$set": update})
    return serialize_doc(db["product"].find_one({"_id": product["_id"]}))

@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    product = _load_product(db, product_id)
    _assert_product_owner(db, product, user, "delete")
    db["product"].delete_one({"_id": product["_id"]})
    return {"message": "Product removed"}


# Reviews
@app.post("/api/reviews", status_code=201)
def create_review(payload: ReviewIn, request: Request, user=Depends(get_optional_user), db: Database = Depends(get_db)):
    review = reviews.create_review(
        db, payload.shop_id, payload.rating,
        review_text=payload.review_text, interaction_type=payload.interaction_type,
        actor=user, ip_address=client_ip(request),
    )
    return {"message": "Review submitted successfully", "review": review}

@app.get("/api/reviews/admin")
def admin_reviews(
    page: int = Query(1),
    limit: int = Query(20),
    flagged: bool = False,
    user=Depends(require_role("admin")),
    db: Database = Depends(get_db),
):
    filters = build(listing.AdminReviewFilter, page=page, limit=limit, flagged_only=flagged)
    return listing.find_all_reviews(db, filters)

@app.patch("/api/reviews/admin/{review_id}/flag")
def moderate_review(review_id: str, payload: ModerationIn, user=Depends(require_role("admin")), db: Database = Depends(get_db)):
    return reviews.set_review_flag(db, review_id, payload.flagged, payload.reason)

@app.get("/api/reviews/shop/{shop_id}")
def shop_reviews(shop_id: str, page: int = Query(1), limit: int = Query(10), sort: str = "-created_at",
                 db: Database = Depends(get_db)):
    filters = build(listing.ReviewFilter, page=page, limit=limit, sort=sort)
    return listing.find_shop_reviews(db, shop_id, filters)

@app.get("/api/reviews/shop/{shop_id}/stats")
def shop_review_stats(shop_id: str, db: Database = Depends(get_db)):
    return ratings.review_stats(db, shop_id)

@app.post("/api/reviews/{review_id}/flag")
def flag_review(review_id: str, payload: Optional[FlagIn] = None, db: Database = Depends(get_db)):
    reviews.flag_review(db, review_id, payload.reason if payload else None)
    return {"message": "Review flagged for moderation"}

@app.delete("/api/reviews/{review_id}")
def delete_review(review_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    reviews.delete_review(db, review_id, user)
    return {"deleted": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
