"""
Account Routes - deactivation, blocks and the user's own reports
"""
import logging
from datetime import datetime, timedelta
from flask import Blueprint, jsonify
from flask_login import login_required, current_user
from app import db
from models import User, UserBlock, AccountDeletionRequest
from access_control import require_active
from moderation_engine import list_reports, withdraw_report
from utils.api_utils import parse_int_arg, get_json_body, api_error

logger = logging.getLogger(__name__)

account_bp = Blueprint('account', __name__, url_prefix='/api/account')

DELETION_GRACE_PERIOD = timedelta(days=30)
DEACTIVATE_CONFIRM_TEXT = 'DELETE'


@account_bp.route('/deactivate', methods=['POST'])
@login_required
@require_active
def deactivate():
    """Schedule account deletion after the grace period"""
    data = get_json_body()
    if data.get('confirmText') != DEACTIVATE_CONFIRM_TEXT:
        return api_error(f'confirmText must be "{DEACTIVATE_CONFIRM_TEXT}"')

    if current_user.is_email_user:
        password = data.get('password')
        if not isinstance(password, str) or not current_user.check_password(password):
            return api_error('Incorrect password', 401)

    now = datetime.utcnow()
    scheduled_for = now + DELETION_GRACE_PERIOD

    deletion = AccountDeletionRequest.query.filter_by(user_id=current_user.id).first()
    if deletion is None:
        deletion = AccountDeletionRequest(user_id=current_user.id)
        db.session.add(deletion)
    deletion.status = 'scheduled'
    deletion.requested_at = now
    deletion.scheduled_for = scheduled_for
    deletion.cancelled_at = None

    current_user.deactivated_at = now
    db.session.commit()

    logger.info(f"User {current_user.id} scheduled deletion for {scheduled_for.isoformat()}")
    return jsonify({'success': True, 'scheduled_for': scheduled_for.isoformat()})


@account_bp.route('/reactivate', methods=['POST'])
@login_required
def reactivate():
    """Cancel a scheduled deletion"""
    deletion = AccountDeletionRequest.query.filter_by(
        user_id=current_user.id, status='scheduled'
    ).first()
    if deletion is None:
        return api_error('No scheduled deletion')

    deletion.status = 'cancelled'
    deletion.cancelled_at = datetime.utcnow()
    current_user.deactivated_at = None
    db.session.commit()

    logger.info(f"User {current_user.id} cancelled account deletion")
    return jsonify({'success': True})


@account_bp.route('/blocks')
@login_required
def list_blocks():
    blocks = UserBlock.query.filter_by(blocker_id=current_user.id).order_by(
        UserBlock.created_at.desc()
    ).all()
    return jsonify({
        'blocks': [
            {
                'user': b.blocked.to_public_dict() if b.blocked else {'id': b.blocked_id},
                'created_at': b.created_at.isoformat() if b.created_at else None,
            }
            for b in blocks
        ]
    })


@account_bp.route('/blocks/<user_id>', methods=['POST'])
@login_required
@require_active
def block_user(user_id):
    if user_id == current_user.id:
        return api_error('You cannot block yourself')
    if db.session.get(User, user_id) is None:
        return api_error('not_found', 404)

    existing = UserBlock.query.filter_by(blocker_id=current_user.id, blocked_id=user_id).first()
    if existing is None:
        db.session.add(UserBlock(blocker_id=current_user.id, blocked_id=user_id))
        db.session.commit()
    return jsonify({'success': True, 'blocked': True})


@account_bp.route('/blocks/<user_id>', methods=['DELETE'])
@login_required
def unblock_user(user_id):
    UserBlock.query.filter_by(blocker_id=current_user.id, blocked_id=user_id).delete()
    db.session.commit()
    return jsonify({'success': True, 'blocked': False})


@account_bp.route('/reports')
@login_required
def my_reports():
    limit, error = parse_int_arg('limit', 50, 1, 100)
    if error:
        return api_error(error)
    offset, error = parse_int_arg('offset', 0, 0)
    if error:
        return api_error(error)

    items, total = list_reports(limit, offset, reporter_id=current_user.id)
    return jsonify({'reports': items, 'total': total})


@account_bp.route('/reports/<post_id>', methods=['DELETE'])
@login_required
def withdraw_my_report(post_id):
    if not withdraw_report(current_user.id, post_id):
        return api_error('not_found', 404)
    return jsonify({'success': True})
