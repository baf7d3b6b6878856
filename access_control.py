from __future__ import annotations

from functools import wraps
from typing import Callable, Any

from flask import jsonify
from flask_login import current_user


def _is_admin() -> bool:
    return bool(getattr(current_user, "is_site_admin", False))


def require_admin(func: Callable[..., Any]) -> Callable[..., Any]:
    """Require an authenticated admin (users.is_admin or ADMIN_USER_IDS)."""
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        if not getattr(current_user, "is_authenticated", False):
            return jsonify({"error": "authentication_required"}), 401
        if not _is_admin():
            return jsonify({"error": "forbidden"}), 403
        return func(*args, **kwargs)
    return wrapper


def require_active(func: Callable[..., Any]) -> Callable[..., Any]:
    """Block suspended accounts and accounts scheduled for deletion."""
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any):
        if not getattr(current_user, "is_authenticated", False):
            return jsonify({"error": "authentication_required"}), 401
        if getattr(current_user, "deactivated_at", None) is not None:
            return jsonify({"error": "account_deactivated"}), 403
        return func(*args, **kwargs)
    return wrapper
