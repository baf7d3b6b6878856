"""Centralized authorization policy.

Single place to answer: "Can this user do this action on this resource?"
Replaces per-row database policies with explicit ownership and visibility
checks. Deny when uncertain.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""


class Actions:
    VIEW_POST = "view_post"
    EDIT_POST = "edit_post"
    UNPOST = "unpost"
    PUBLISH_IMAGE = "publish_image"
    CONSUME_FOR_IMAGE = "consume_for_image"
    DELETE_STOCK_IMAGE = "delete_stock_image"
    LIKE = "like"
    COMMENT = "comment"

    EDIT_COMMENT = "edit_comment"
    DELETE_COMMENT = "delete_comment"


def is_authenticated(user: Any) -> bool:
    return bool(getattr(user, "is_authenticated", False))


def is_admin(user: Any) -> bool:
    return is_authenticated(user) and bool(getattr(user, "is_site_admin", False))


def _owns(user: Any, resource: Any) -> bool:
    return is_authenticated(user) and getattr(resource, "user_id", None) == getattr(user, "id", None)


def _publicly_visible(post: Any) -> bool:
    return bool(getattr(post, "is_posted", False)) and getattr(post, "moderation_status", None) == "visible"


def can(user: Any, action: str, resource: Optional[Any] = None, **ctx: Any) -> Decision:
    if resource is None:
        return Decision(False, "not_found")

    if action == Actions.VIEW_POST:
        if _owns(user, resource):
            return Decision(True, "owner")
        if _publicly_visible(resource):
            return Decision(True, "public")
        if is_admin(user) and getattr(resource, "is_posted", False):
            return Decision(True, "admin")
        # Hidden and unposted images are indistinguishable from missing ones
        return Decision(False, "not_found")

    if not is_authenticated(user):
        return Decision(False, "authentication_required")

    if action in (Actions.EDIT_POST, Actions.UNPOST, Actions.PUBLISH_IMAGE, Actions.CONSUME_FOR_IMAGE,
                  Actions.DELETE_STOCK_IMAGE):
        return Decision(True, "owner") if _owns(user, resource) else Decision(False, "not_owner")

    if action in (Actions.LIKE, Actions.COMMENT):
        if _publicly_visible(resource) or _owns(user, resource):
            return Decision(True, "ok")
        return Decision(False, "not_found")

    if action in (Actions.EDIT_COMMENT, Actions.DELETE_COMMENT):
        return Decision(True, "author") if _owns(user, resource) else Decision(False, "not_owner")

    return Decision(False, "unknown_action")


def deny_response(reason: str) -> Tuple[dict, int]:
    """Map a denial reason to a JSON body and status code."""
    if reason == "authentication_required":
        return {"error": reason}, 401
    if reason == "not_found":
        return {"error": "not_found"}, 404
    return {"error": "forbidden", "reason": reason}, 403
