"""
Internal Routes - cron-triggered maintenance jobs
"""
import hmac
import logging
from functools import wraps
from flask import Blueprint, jsonify, request, current_app
from ops_jobs import purge_due_accounts, expire_free_percoins, run_generation_worker, DEFAULT_PURGE_LIMIT, MAX_PURGE_LIMIT
from utils.api_utils import parse_int_arg, api_error

logger = logging.getLogger(__name__)

internal_bp = Blueprint('internal', __name__, url_prefix='/api/internal')


def require_cron_secret(*config_keys):
    """Require `Authorization: Bearer <secret>` matching the first configured key."""
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            secret = next((current_app.config.get(k) for k in config_keys if current_app.config.get(k)), None)
            if not secret:
                logger.error(f"{f.__name__} called but no cron secret is configured")
                return api_error('Cron secret is not configured', 500)

            header = request.headers.get('Authorization', '')
            token = header[len('Bearer '):] if header.startswith('Bearer ') else ''
            if not token or not hmac.compare_digest(token, secret):
                return api_error('unauthorized', 401)
            return f(*args, **kwargs)
        return wrapper
    return decorator


@internal_bp.route('/account-purge', methods=['POST'])
@require_cron_secret('ACCOUNT_PURGE_CRON_SECRET', 'CRON_SECRET')
def account_purge():
    limit, error = parse_int_arg('limit', DEFAULT_PURGE_LIMIT, 1, MAX_PURGE_LIMIT)
    if error:
        return api_error(error)
    result = purge_due_accounts(limit=limit)
    logger.info(
        f"Account purge: processed={result['processed_count']} deleted={result['deleted_count']} "
        f"failed={result['failed_count']}"
    )
    return jsonify(result)


@internal_bp.route('/expire-percoins', methods=['POST'])
@require_cron_secret('CRON_SECRET')
def expire_percoins():
    return jsonify({'success': True, 'expired_amount': expire_free_percoins()})


@internal_bp.route('/generation-worker', methods=['POST'])
@require_cron_secret('CRON_SECRET')
def generation_worker():
    limit, error = parse_int_arg('limit', 20, 1, 100)
    if error:
        return api_error(error)
    return jsonify({'success': True, **run_generation_worker(limit=limit)})
