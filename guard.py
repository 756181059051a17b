"""
Ownership guard applied before every shop/product mutation, sale recording
and activity read.
"""

from typing import Any, Mapping, Optional

from errors import AuthorizationError


def is_admin(actor: Optional[Mapping[str, Any]]) -> bool:
    return bool(actor) and actor.get("role") == "admin"


def assert_owner(
    resource: Mapping[str, Any],
    actor: Optional[Mapping[str, Any]],
    owner_field: str = "owner_id",
    allow_admin: bool = True,
    message: str = "Not authorized to modify this shop",
) -> None:
    """Raise AuthorizationError unless ``actor`` owns ``resource``.

    ``resource[owner_field]`` is compared as a string against ``actor["id"]``
    so ObjectId and str ids mix freely. Admins pass when ``allow_admin``.
    """
    if not actor:
        raise AuthorizationError(message)
    if allow_admin and is_admin(actor):
        return
    owner = resource.get(owner_field)
    if owner is None or str(owner) != str(actor.get("id")):
        raise AuthorizationError(message)
