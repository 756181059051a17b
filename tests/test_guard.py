from bson import ObjectId
import pytest

from errors import AuthorizationError
from guard import assert_owner, is_admin

OWNER = ObjectId()


def test_owner_passes_with_str_or_objectid():
    assert_owner({"owner_id": OWNER}, {"id": str(OWNER), "role": "shop_owner"})
    assert_owner({"owner_id": str(OWNER)}, {"id": OWNER, "role": "shop_owner"})


def test_other_user_is_rejected():
    with pytest.raises(AuthorizationError, match="Not authorized"):
        assert_owner({"owner_id": OWNER}, {"id": str(ObjectId()), "role": "shop_owner"})


def test_missing_actor_or_owner_is_rejected():
    with pytest.raises(AuthorizationError):
        assert_owner({"owner_id": OWNER}, None)
    with pytest.raises(AuthorizationError):
        assert_owner({}, {"id": str(OWNER), "role": "shop_owner"})


def test_admin_passes_unless_disallowed():
    admin = {"id": str(ObjectId()), "role": "admin"}
    assert is_admin(admin)
    assert_owner({"owner_id": OWNER}, admin)
    with pytest.raises(AuthorizationError, match="Only shop owners"):
        assert_owner({"owner_id": OWNER}, admin, allow_admin=False, message="Only shop owners can record sales")


def test_custom_owner_field():
    assert_owner({"user_id": OWNER}, {"id": str(OWNER)}, owner_field="user_id")
