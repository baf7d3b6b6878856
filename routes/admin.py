"""
Admin Routes - Platform administration
"""
import logging
from datetime import datetime, timedelta
from flask import Blueprint, jsonify, request, Response
from flask_login import login_required, current_user
from sqlalchemy import func, or_
from app import db
from models import (User, GeneratedImage, Comment, CreditTransaction, UserCredits,
                    FreePercoinBatch, ImageJob, AccountDeletionRequest)
from access_control import require_admin
from activity_logger import log_admin_action, query_audit_log, export_audit_csv
from moderation_engine import (apply_moderation_decision, get_moderation_queue,
                               get_aggregated_reports, list_reports)
from utils.api_utils import parse_int_arg, parse_datetime_arg, get_json_body, api_error
from utils.gamification import BonusService
from utils.percoin_ledger import (get_breakdown, grant_admin_bonus, deduct_percoins_admin,
                                  expiration_notification_targets, InsufficientPercoinsError,
                                  PercoinError, PROMO_TYPES)

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')

USER_SORTS = {
    'created_at_desc': User.created_at.desc(),
    'created_at_asc': User.created_at.asc(),
    'nickname_asc': User.nickname.asc(),
    'nickname_desc': User.nickname.desc(),
}
MAX_REASON_LENGTH = 500
DETAIL_ITEM_LIMIT = 50


def _pagination_args(default_limit=50):
    limit, error = parse_int_arg('limit', default_limit, 1, 100)
    if error:
        return None, None, error
    offset, error = parse_int_arg('offset', 0, 0)
    if error:
        return None, None, error
    return limit, offset, None


def _admin_user_dict(user):
    data = user.to_public_dict()
    data.update({
        'email': user.email,
        'auth_provider': user.auth_provider,
        'is_admin': user.is_site_admin,
        'created_at': user.created_at.isoformat() if user.created_at else None,
        'deactivated_at': user.deactivated_at.isoformat() if user.deactivated_at else None,
    })
    return data


def _validate_reason(reason):
    if not isinstance(reason, str) or not 1 <= len(reason.strip()) <= MAX_REASON_LENGTH:
        return None
    return reason.strip()


def _positive_int(value):
    return not isinstance(value, bool) and isinstance(value, int) and value >= 1


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@admin_bp.route('/users')
@login_required
@require_admin
def list_users():
    limit, offset, error = _pagination_args()
    if error:
        return api_error(error)
    sort = request.args.get('sort', 'created_at_desc')
    if sort not in USER_SORTS:
        return api_error(f"sort must be one of {', '.join(USER_SORTS)}")

    query = User.query
    q = (request.args.get('q') or '').strip()
    if q:
        pattern = f"%{q}%"
        query = query.filter(or_(User.id == q, User.nickname.ilike(pattern), User.email.ilike(pattern)))

    total = query.count()
    users = query.order_by(USER_SORTS[sort], User.id.asc()).offset(offset).limit(limit).all()
    return jsonify({
        'users': [_admin_user_dict(u) for u in users],
        'total': total,
        'limit': limit,
        'offset': offset,
    })


@admin_bp.route('/users/search')
@login_required
@require_admin
def search_users():
    q = (request.args.get('q') or '').strip()
    if len(q) < 2:
        return api_error('q must be at least 2 characters')

    users = User.query.filter(
        or_(User.id == q, User.nickname.ilike(f"%{q}%"))
    ).order_by(User.nickname.asc()).limit(20).all()
    return jsonify({'users': [_admin_user_dict(u) for u in users]})


@admin_bp.route('/users/<user_id>')
@login_required
@require_admin
def user_detail(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return api_error('User not found', 404)

    generated = GeneratedImage.query.filter_by(user_id=user_id).order_by(
        GeneratedImage.created_at.desc()).limit(DETAIL_ITEM_LIMIT).all()
    posted = GeneratedImage.query.filter_by(user_id=user_id, is_posted=True).order_by(
        GeneratedImage.posted_at.desc()).limit(DETAIL_ITEM_LIMIT).all()
    comments = Comment.query.filter_by(user_id=user_id).order_by(
        Comment.created_at.desc()).limit(DETAIL_ITEM_LIMIT).all()
    transactions = CreditTransaction.query.filter_by(user_id=user_id).order_by(
        CreditTransaction.created_at.desc(), CreditTransaction.id.desc()).limit(DETAIL_ITEM_LIMIT).all()
    deletion = AccountDeletionRequest.query.filter_by(user_id=user_id, status='scheduled').first()

    return jsonify({
        'user': _admin_user_dict(user),
        'balance': get_breakdown(user_id),
        'deletion_scheduled_for': deletion.scheduled_for.isoformat() if deletion else None,
        'generated_images': [i.to_dict() for i in generated],
        'posts': [i.to_dict() for i in posted],
        'comments': [c.to_dict() for c in comments],
        'transactions': [t.to_dict() for t in transactions],
    })


@admin_bp.route('/users/<user_id>/suspend', methods=['POST'])
@login_required
@require_admin
def suspend_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return api_error('User not found', 404)
    if user.id == current_user.id:
        return api_error('You cannot suspend yourself')

    reason = get_json_body().get('reason')
    user.deactivated_at = user.deactivated_at or datetime.utcnow()
    db.session.commit()

    log_admin_action(current_user.id, 'user_suspend', 'user', user_id,
                     {'reason': reason} if isinstance(reason, str) and reason else None)
    logger.info(f"Admin {current_user.id} suspended user {user_id}")
    return jsonify({'success': True, 'user': _admin_user_dict(user)})


@admin_bp.route('/users/<user_id>/reactivate', methods=['POST'])
@login_required
@require_admin
def reactivate_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        return api_error('User not found', 404)

    user.deactivated_at = None
    deletion = AccountDeletionRequest.query.filter_by(user_id=user_id, status='scheduled').first()
    if deletion is not None:
        deletion.status = 'cancelled'
        deletion.cancelled_at = datetime.utcnow()
    db.session.commit()

    log_admin_action(current_user.id, 'user_reactivate', 'user', user_id)
    return jsonify({'success': True, 'user': _admin_user_dict(user)})


# ---------------------------------------------------------------------------
# Percoin adjustments
# ---------------------------------------------------------------------------

@admin_bp.route('/bonus/grant', methods=['POST'])
@login_required
@require_admin
def grant_bonus():
    data = get_json_body()
    user_id = data.get('user_id')
    amount = data.get('amount')
    reason = _validate_reason(data.get('reason'))
    send_notification = data.get('send_notification', True)

    if not user_id or db.session.get(User, user_id) is None:
        return api_error('User not found', 404)
    if not _positive_int(amount):
        return api_error('amount must be an integer >= 1')
    if reason is None:
        return api_error(f'reason must be 1-{MAX_REASON_LENGTH} characters')
    if not isinstance(send_notification, bool):
        return api_error('send_notification must be a boolean')

    try:
        result = grant_admin_bonus(user_id, amount, reason, current_user.id, send_notification=send_notification)
    except PercoinError as e:
        logger.error(f"Admin bonus grant failed for {user_id}: {e}")
        return api_error(str(e))

    log_admin_action(current_user.id, 'bonus_grant', 'user', user_id, {'amount': amount, 'reason': reason})
    return jsonify({
        'success': True,
        'new_balance': result.balance,
        'transaction_id': result.transaction.id,
        'amount_granted': amount,
    })


@admin_bp.route('/deduction', methods=['POST'])
@login_required
@require_admin
def deduct():
    data = get_json_body()
    user_id = data.get('user_id')
    amount = data.get('amount')
    reason = _validate_reason(data.get('reason'))
    idempotency_key = data.get('idempotency_key')

    if not user_id or db.session.get(User, user_id) is None:
        return api_error('User not found', 404)
    if not _positive_int(amount):
        return api_error('amount must be an integer >= 1')
    if reason is None:
        return api_error(f'reason must be 1-{MAX_REASON_LENGTH} characters')
    if not isinstance(idempotency_key, str) or not idempotency_key.strip():
        return api_error('idempotency_key is required')

    try:
        result = deduct_percoins_admin(user_id, amount, reason, current_user.id, idempotency_key.strip())
    except InsufficientPercoinsError as e:
        return api_error('Insufficient percoins', 400, code='insufficient_percoins',
                         required=e.required, available=e.available)

    if not result.duplicate:
        log_admin_action(current_user.id, 'deduction', 'user', user_id, {'amount': amount, 'reason': reason})
    return jsonify({
        'success': True,
        'new_balance': result.balance,
        'amount_deducted': amount,
        'duplicate': result.duplicate,
    })


# ---------------------------------------------------------------------------
# Bonus defaults
# ---------------------------------------------------------------------------

@admin_bp.route('/bonus-defaults')
@login_required
@require_admin
def get_bonus_defaults():
    return jsonify({'defaults': BonusService.get_bonus_defaults()})


@admin_bp.route('/bonus-defaults', methods=['PATCH'])
@login_required
@require_admin
def update_bonus_defaults():
    entries = get_json_body().get('defaults')
    ok, error = BonusService.update_bonus_defaults(entries)
    if not ok:
        return api_error(error)
    log_admin_action(current_user.id, 'bonus_defaults_update', 'bonus_defaults', None, {'defaults': entries})
    return jsonify({'success': True, 'defaults': BonusService.get_bonus_defaults()})


@admin_bp.route('/streak-defaults')
@login_required
@require_admin
def get_streak_defaults():
    schedule = BonusService.get_streak_schedule()
    return jsonify({'defaults': [{'streak_day': i + 1, 'amount': a} for i, a in enumerate(schedule)]})


@admin_bp.route('/streak-defaults', methods=['PATCH'])
@login_required
@require_admin
def update_streak_defaults():
    entries = get_json_body().get('defaults')
    ok, error = BonusService.update_streak_defaults(entries)
    if not ok:
        return api_error(error)
    log_admin_action(current_user.id, 'bonus_defaults_update', 'streak_defaults', None, {'defaults': entries})
    schedule = BonusService.get_streak_schedule()
    return jsonify({'success': True, 'defaults': [{'streak_day': i + 1, 'amount': a} for i, a in enumerate(schedule)]})


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------

@admin_bp.route('/moderation/queue')
@login_required
@require_admin
def moderation_queue():
    limit, offset, error = _pagination_args()
    if error:
        return api_error(error)
    return jsonify({'items': get_moderation_queue(limit, offset)})


@admin_bp.route('/moderation/posts/<post_id>/decision', methods=['POST'])
@login_required
@require_admin
def moderation_decision(post_id):
    data = get_json_body()
    ok, error, post = apply_moderation_decision(post_id, current_user.id, data.get('action'), data.get('reason'))
    if not ok:
        return api_error(error, 404 if error == 'Post not found' else 400)
    return jsonify({'success': True, 'post': post.to_dict()})


@admin_bp.route('/reports/aggregated')
@login_required
@require_admin
def aggregated_reports():
    limit, offset, error = _pagination_args()
    if error:
        return api_error(error)
    return jsonify(get_aggregated_reports(limit, offset))


@admin_bp.route('/reports')
@login_required
@require_admin
def reports():
    limit, offset, error = _pagination_args()
    if error:
        return api_error(error)
    items, total = list_reports(limit, offset)
    return jsonify({'items': items, 'total': total, 'limit': limit, 'offset': offset})


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

def _audit_query_from_args():
    date_from, error = parse_datetime_arg('date_from')
    if error:
        return None, error
    date_to, error = parse_datetime_arg('date_to')
    if error:
        return None, error
    query = query_audit_log(
        action_type=request.args.get('action_type') or None,
        target_type=request.args.get('target_type') or None,
        date_from=date_from,
        date_to=date_to,
    )
    return query, None


@admin_bp.route('/audit-log')
@login_required
@require_admin
def audit_log():
    limit, offset, error = _pagination_args()
    if error:
        return api_error(error)
    query, error = _audit_query_from_args()
    if error:
        return api_error(error)

    total = query.count()
    entries = query.offset(offset).limit(limit).all()
    return jsonify({'items': [e.to_dict() for e in entries], 'total': total, 'limit': limit, 'offset': offset})


@admin_bp.route('/audit-log/export')
@login_required
@require_admin
def audit_log_export():
    query, error = _audit_query_from_args()
    if error:
        return api_error(error)
    filename = f"admin-audit-log-{datetime.utcnow().strftime('%Y%m%d%H%M%S')}.csv"
    return Response(
        export_audit_csv(query.all()),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )


# ---------------------------------------------------------------------------
# Credits summary and dashboard
# ---------------------------------------------------------------------------

def build_credits_summary():
    """Per-user percoin flow, largest grantees first."""
    rows = {}

    def row_for(user_id):
        if user_id not in rows:
            rows[user_id] = {
                'user_id': user_id,
                'paid_purchased': 0,
                'promo_granted': 0,
                'paid_consumed': 0,
                'promo_consumed': 0,
                'consumption_unknown': 0,
                'admin_deducted': 0,
            }
        return rows[user_id]

    for tx in CreditTransaction.query.yield_per(500):
        row = row_for(tx.user_id)
        if tx.transaction_type == 'purchase':
            row['paid_purchased'] += tx.amount
        elif tx.transaction_type in PROMO_TYPES or (tx.transaction_type == 'refund' and tx.amount > 0):
            row['promo_granted'] += tx.amount
        elif tx.transaction_type == 'consumption':
            meta = tx.meta or {}
            spent = -tx.amount
            from_paid = int(meta.get('from_paid', 0))
            from_promo = int(meta.get('from_promo', 0))
            row['paid_consumed'] += from_paid
            row['promo_consumed'] += from_promo
            row['consumption_unknown'] += max(0, spent - from_paid - from_promo)
        elif tx.transaction_type == 'admin_deduction':
            row['admin_deducted'] += -tx.amount

    nicknames = dict(db.session.query(User.id, User.nickname).filter(User.id.in_(list(rows))).all()) if rows else {}
    users = sorted(rows.values(), key=lambda r: (-(r['paid_purchased'] + r['promo_granted']), r['user_id']))
    for row in users:
        row['nickname'] = nicknames.get(row['user_id'])

    keys = ('paid_purchased', 'promo_granted', 'paid_consumed', 'promo_consumed',
            'consumption_unknown', 'admin_deducted')
    totals = {k: sum(r[k] for r in users) for k in keys}
    return {'users': users, 'totals': totals}


@admin_bp.route('/credits-summary')
@login_required
@require_admin
def credits_summary():
    return jsonify(build_credits_summary())


@admin_bp.route('/dashboard')
@login_required
@require_admin
def dashboard():
    """Platform analytics"""
    now = datetime.utcnow()
    week_ago = now - timedelta(days=7)

    job_counts = dict(
        db.session.query(ImageJob.status, func.count(ImageJob.id)).group_by(ImageJob.status).all()
    )
    balances = db.session.query(
        func.coalesce(func.sum(UserCredits.paid_balance), 0),
        func.coalesce(func.sum(UserCredits.promo_balance), 0),
    ).one()
    expiring_soon = db.session.query(func.coalesce(func.sum(FreePercoinBatch.remaining_amount), 0)).filter(
        FreePercoinBatch.remaining_amount > 0,
        FreePercoinBatch.expire_at > now,
        FreePercoinBatch.expire_at <= now + timedelta(days=7),
    ).scalar()

    return jsonify({
        'users': {
            'total': User.query.count(),
            'new_this_week': User.query.filter(User.created_at >= week_ago).count(),
            'deactivated': User.query.filter(User.deactivated_at.isnot(None)).count(),
        },
        'posts': {
            'total': GeneratedImage.query.filter_by(is_posted=True).count(),
            'this_week': GeneratedImage.query.filter(
                GeneratedImage.is_posted.is_(True), GeneratedImage.posted_at >= week_ago).count(),
            'pending_moderation': GeneratedImage.query.filter_by(moderation_status='pending').count(),
        },
        'percoins': {
            'paid_outstanding': int(balances[0]),
            'promo_outstanding': int(balances[1]),
            'expiring_next_7_days': int(expiring_soon or 0),
        },
        'jobs': {status: job_counts.get(status, 0) for status in ('queued', 'processing', 'succeeded', 'failed')},
    })


@admin_bp.route('/free-percoin/expiration-targets')
@login_required
@require_admin
def expiration_targets():
    days, error = parse_int_arg('days', 7, 1, 31)
    if error:
        return api_error(error)
    return jsonify({'targets': expiration_notification_targets(days=days)})
