"""
API Utilities - Cursor/offset pagination, query parsing and error responses
"""
import base64
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from flask import request, jsonify

logger = logging.getLogger(__name__)


class CursorPagination:
    """Keyset pagination on (created_at desc, id desc) with opaque "created_at|id" cursors"""

    @staticmethod
    def encode_cursor(last_timestamp: datetime, last_id: Any) -> str:
        raw = f"{last_timestamp.isoformat()}|{last_id}"
        return base64.urlsafe_b64encode(raw.encode()).decode()

    @staticmethod
    def decode_cursor(cursor: str) -> Optional[Tuple[datetime, str]]:
        try:
            raw = base64.urlsafe_b64decode(cursor.encode()).decode()
            ts, last_id = raw.rsplit('|', 1)
            return datetime.fromisoformat(ts), last_id
        except Exception as e:
            logger.warning(f"Failed to decode cursor: {e}")
            return None

    @staticmethod
    def paginate_query(query, id_column, timestamp_column, cursor: str = None, limit: int = 20):
        """
        Apply cursor-based pagination to a SQLAlchemy query

        Returns:
            (items, next_cursor, has_more)
        """
        if cursor:
            decoded = CursorPagination.decode_cursor(cursor)
            if decoded is None:
                raise ValueError("Invalid cursor")
            ts, last_id = decoded
            if id_column.type.python_type is int:
                last_id = int(last_id)
            query = query.filter(
                (timestamp_column < ts) |
                ((timestamp_column == ts) & (id_column < last_id))
            )

        query = query.order_by(timestamp_column.desc(), id_column.desc())
        items = query.limit(limit + 1).all()

        has_more = len(items) > limit
        if has_more:
            items = items[:limit]

        next_cursor = None
        if has_more and items:
            last_item = items[-1]
            next_cursor = CursorPagination.encode_cursor(
                getattr(last_item, timestamp_column.key),
                getattr(last_item, id_column.key),
            )

        return items, next_cursor, has_more


def parse_int_arg(name: str, default: int, minimum: int = None, maximum: int = None,
                  source: Dict = None) -> Tuple[Optional[int], Optional[str]]:
    """Parse an integer query/body parameter and check its bounds. Returns (value, error)."""
    source = request.args if source is None else source
    raw = source.get(name)
    if raw is None or raw == '':
        return default, None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None, f'{name} must be an integer'
    if minimum is not None and value < minimum:
        return None, f'{name} must be >= {minimum}'
    if maximum is not None and value > maximum:
        return None, f'{name} must be <= {maximum}'
    return value, None


def parse_datetime_arg(name: str) -> Tuple[Optional[datetime], Optional[str]]:
    raw = request.args.get(name)
    if not raw:
        return None, None
    try:
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value, None
    except ValueError:
        return None, f'{name} must be an ISO 8601 date'


def get_json_body() -> Dict:
    """Request JSON as a dict; malformed or non-object bodies become {}."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def api_error(message: str, status: int = 400, code: str = None, **extra) -> Tuple:
    """Create a standardized API error response"""
    body = {'error': message}
    if code:
        body['code'] = code
    body.update(extra)
    return jsonify(body), status
