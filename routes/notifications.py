"""
Notifications Routes - like/comment/follow/bonus notifications
"""
import logging
from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user
from app import db
from models import Notification, UserBlock
from utils.api_utils import CursorPagination, parse_int_arg, api_error

logger = logging.getLogger(__name__)

notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')

NOTIFICATION_TYPES = ('like', 'comment', 'follow', 'bonus')


def create_notification(user_id, actor_id, notification_type, entity_type=None, entity_id=None,
                        title=None, body=None, commit=True):
    """Create a notification unless the actor is the recipient or is blocked by them"""
    if notification_type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {notification_type}")
    if actor_id is not None and actor_id == user_id:
        return None
    if actor_id is not None and UserBlock.query.filter_by(blocker_id=user_id, blocked_id=actor_id).first():
        return None

    notification = Notification(
        user_id=user_id,
        actor_id=actor_id,
        type=notification_type,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        title=title,
        body=body,
    )
    db.session.add(notification)
    if commit:
        db.session.commit()
    return notification


@notifications_bp.route('')
@login_required
def list_notifications():
    """Cursor-paginated notifications, newest first"""
    limit, error = parse_int_arg('limit', 20, 1, 100)
    if error:
        return api_error(error)

    query = Notification.query.filter_by(user_id=current_user.id)
    if request.args.get('unread') == '1':
        query = query.filter_by(is_read=False)

    try:
        items, next_cursor, has_more = CursorPagination.paginate_query(
            query,
            id_column=Notification.id,
            timestamp_column=Notification.created_at,
            cursor=request.args.get('cursor'),
            limit=limit,
        )
    except ValueError:
        return api_error('Invalid cursor')

    return jsonify({
        'notifications': [n.to_dict() for n in items],
        'nextCursor': next_cursor,
        'hasMore': has_more,
    })


@notifications_bp.route('/unread-count')
@login_required
def unread_count():
    """Get unread notification count (for navbar badge)"""
    count = Notification.query.filter_by(
        user_id=current_user.id,
        is_read=False
    ).count()
    return jsonify({'count': count})


@notifications_bp.route('/mark-read', methods=['POST'])
@login_required
def mark_read():
    data = request.get_json(silent=True) or {}
    ids = data.get('ids')
    if not isinstance(ids, list) or not ids:
        return api_error('ids must be a non-empty list')
    try:
        ids = [int(i) for i in ids]
    except (TypeError, ValueError):
        return api_error('ids must be integers')

    updated = Notification.query.filter(
        Notification.user_id == current_user.id,
        Notification.id.in_(ids),
    ).update({'is_read': True}, synchronize_session=False)
    db.session.commit()
    return jsonify({'success': True, 'updated': updated})


@notifications_bp.route('/mark-all-read', methods=['POST'])
@login_required
def mark_all_read():
    updated = Notification.query.filter_by(
        user_id=current_user.id,
        is_read=False
    ).update({'is_read': True}, synchronize_session=False)
    db.session.commit()
    return jsonify({'success': True, 'updated': updated})
