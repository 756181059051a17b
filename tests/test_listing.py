from datetime import timedelta

from bson import ObjectId
import pytest
from pydantic import ValidationError as PydanticValidationError

import listing
from errors import NotFoundError
from listing import AdminReviewFilter, ProductFilter, ReviewFilter, ShopFilter


@pytest.fixture
def owner(make_user):
    return make_user("Amina")


@pytest.fixture
def shop(owner, make_shop):
    return make_shop(owner)


def test_product_price_range_pagination(db, shop, add_product):
    # Scenario E: 25 matching products plus some outside the range
    for i in range(25):
        add_product(shop, f"item-{i:02d}", 100 + i * 16, minutes=i)
    add_product(shop, "cheap", 99, minutes=100)
    add_product(shop, "pricey", 501, minutes=101)

    page = listing.find_products(db, ProductFilter(min_price=100, max_price=500, page=2, limit=10))

    assert page["total"] == 25
    assert page["total_pages"] == 3
    assert (page["page"], page["limit"]) == (2, 10)
    # newest first: positions 11-20 are items 14 down to 5
    assert [p["name"] for p in page["items"]] == [f"item-{i:02d}" for i in range(14, 4, -1)]
    assert page["items"][0]["shop"]["name"] == shop["name"]


def test_price_bounds_are_inclusive_and_optional(db, shop, add_product):
    for price in (50, 100, 500, 900):
        add_product(shop, f"p{price}", price)

    def names(**kw):
        return sorted(p["name"] for p in listing.find_products(db, ProductFilter(**kw))["items"])

    assert names(min_price=100, max_price=500) == ["p100", "p500"]
    assert names(min_price=500) == ["p500", "p900"]
    assert names(max_price=100) == ["p100", "p50"]


def test_inverted_price_range_is_invalid():
    with pytest.raises(PydanticValidationError):
        ProductFilter(min_price=500, max_price=100)


def test_total_is_independent_of_page(db, shop, add_product):
    for i in range(7):
        add_product(shop, f"p{i}", 10, minutes=i)

    for page in (1, 2, 3, 4):
        result = listing.find_products(db, ProductFilter(page=page, limit=3))
        assert result["total"] == 7
        assert result["total_pages"] == 3
    assert len(listing.find_products(db, ProductFilter(page=3, limit=3))["items"]) == 1
    assert listing.find_products(db, ProductFilter(page=4, limit=3))["items"] == []


def test_empty_listing_has_zero_pages(db):
    result = listing.find_shops(db, ShopFilter())
    assert result == {"items": [], "page": 1, "limit": 20, "total": 0, "total_pages": 0}


def test_product_search_covers_name_description_and_tags(db, shop, add_product):
    add_product(shop, "Silk Dirac", 10, description="flowing dress")
    add_product(shop, "Cotton scarf", 10, tags=["SILK-blend"])
    add_product(shop, "Leather belt", 10, description="Handmade in Eastleigh")
    add_product(shop, "Hidden silk", 10, is_active=False)

    result = listing.find_products(db, ProductFilter(search="silk"))
    assert sorted(p["name"] for p in result["items"]) == ["Cotton scarf", "Silk Dirac"]
    assert result["total"] == 2

    assert listing.find_products(db, ProductFilter(search="eastleigh"))["total"] == 1
    assert listing.find_products(db, ProductFilter(search="   "))["total"] == 3


def test_search_is_literal_not_regex(db, shop, add_product):
    add_product(shop, "Phone (refurb)", 10)
    add_product(shop, "Phone refurb", 10)
    result = listing.find_products(db, ProductFilter(search="(refurb)"))
    assert [p["name"] for p in result["items"]] == ["Phone (refurb)"]


def test_product_filters_by_category_shop_and_street(db, owner, make_user, make_shop, add_product):
    first = make_shop(owner, name="A", street="1st Avenue")
    second = make_shop(make_user("Baraka"), name="B", street="2nd Street")
    add_product(first, "shoe", 10, category="shoes")
    add_product(first, "dress", 10, category="fashion")
    add_product(second, "boot", 10, category="shoes")

    def names(**kw):
        return sorted(p["name"] for p in listing.find_products(db, ProductFilter(**kw))["items"])

    assert names(category="shoes") == ["boot", "shoe"]
    assert names(shop=str(first["_id"])) == ["dress", "shoe"]
    assert names(street="2nd Street") == ["boot"]
    assert names(street="2nd Street", shop=str(first["_id"])) == []
    assert names(category="shoes", street="1st Avenue") == ["shoe"]


def test_shop_filters(db, make_user, make_shop):
    make_shop(make_user("A"), name="Silk House", street="1st Avenue", categories=["fashion", "textiles"])
    make_shop(make_user("B"), name="Phone Hub", street="1st Avenue", categories=["electronics"],
              description="Repairs and SILK screen printing")
    make_shop(make_user("C"), name="Shoe Palace", street="2nd Street", categories=["fashion"])
    make_shop(make_user("D"), name="Closed Silk", street="1st Avenue", categories=["fashion"], is_active=False)

    def names(**kw):
        return sorted(s["name"] for s in listing.find_shops(db, ShopFilter(**kw))["items"])

    assert names(category="fashion") == ["Shoe Palace", "Silk House"]
    assert names(street="1st Avenue") == ["Phone Hub", "Silk House"]
    assert names(search="silk") == ["Phone Hub", "Silk House"]
    assert names(category="fashion", street="1st Avenue") == ["Silk House"]


def test_shop_listing_embeds_owner(db, owner, shop):
    item = listing.find_shops(db, ShopFilter())["items"][0]
    assert item["owner"]["name"] == owner["name"]
    assert "password_hash" not in item["owner"]


def test_shop_reviews_exclude_flagged_and_hide_ip(db, shop, add_review):
    for i in range(12):
        add_review(shop, (i % 5) + 1, minutes=i)
    add_review(shop, 1, flagged=True, minutes=50)

    page = listing.find_shop_reviews(db, shop["_id"], ReviewFilter())
    assert page["total"] == 12
    assert page["limit"] == 10
    assert page["total_pages"] == 2
    assert len(page["items"]) == 10
    assert all(not r["is_flagged"] and "ip_address" not in r for r in page["items"])
    assert page["items"][0]["created_at"] > page["items"][-1]["created_at"]


def test_shop_reviews_sorting(db, shop, add_review):
    for i, rating in enumerate((3, 5, 1, 4)):
        add_review(shop, rating, minutes=i)

    def ratings(sort):
        return [r["rating"] for r in listing.find_shop_reviews(db, shop["_id"], ReviewFilter(sort=sort))["items"]]

    assert ratings("-created_at") == [4, 1, 5, 3]
    assert ratings("created_at") == [3, 5, 1, 4]
    assert ratings("-rating") == [5, 4, 3, 1]
    assert ratings("rating") == [1, 3, 4, 5]


def test_review_sort_field_is_restricted():
    with pytest.raises(PydanticValidationError):
        ReviewFilter(sort="-ip_address")


def test_shop_reviews_unknown_shop(db):
    with pytest.raises(NotFoundError):
        listing.find_shop_reviews(db, ObjectId(), ReviewFilter())


def test_admin_review_listing(db, shop, add_review):
    for i in range(3):
        add_review(shop, 4, minutes=i)
    add_review(shop, 1, flagged=True, flag_reason="spam", minutes=9)

    everything = listing.find_all_reviews(db, AdminReviewFilter())
    assert everything["total"] == 4
    assert everything["items"][0]["shop"]["name"] == shop["name"]

    flagged = listing.find_all_reviews(db, AdminReviewFilter(flagged_only=True))
    assert flagged["total"] == 1
    assert flagged["items"][0]["flag_reason"] == "spam"
    assert "ip_address" not in flagged["items"][0]


@pytest.mark.parametrize("kwargs", [{"page": 0}, {"limit": 0}, {"limit": 101}])
def test_pagination_bounds(kwargs):
    with pytest.raises(PydanticValidationError):
        ShopFilter(**kwargs)


@pytest.mark.parametrize("sort", ["-updated_at", "interaction_type", "-is_verified", "helpful_count", "-user_id"])
def test_review_sort_accepts_stored_fields(sort):
    assert ReviewFilter(sort=sort).sort == sort


def test_shop_reviews_sort_by_updated_at(db, shop, add_review):
    first = add_review(shop, 5, minutes=0)
    second = add_review(shop, 2, minutes=1)
    db["review"].update_one({"_id": first["_id"]}, {"$set": {"updated_at": second["updated_at"] + timedelta(hours=1)}})

    items = listing.find_shop_reviews(db, shop["_id"], ReviewFilter(sort="-updated_at"))["items"]
    assert [r["id"] for r in items] == [str(first["_id"]), str(second["_id"])]
