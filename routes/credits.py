"""
Credits Routes - Percoin balance, history, packages and checkout
Integration: stripe connector
"""
import logging
from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from app import db
from models import GeneratedImage
from access_control import require_active
from authorization import can, deny_response, Actions
from utils.api_utils import parse_int_arg, get_json_body, api_error
from utils.percoin_ledger import (
    get_breakdown, list_transactions, list_expiring_batches, deduct_percoins,
    record_mock_purchase, InsufficientPercoinsError, TRANSACTION_FILTERS, TRANSACTIONS_PAGE_SIZE,
)
from utils.stripe_client import (
    PERCOIN_PACKAGES, find_package, package_to_dict, get_price_id,
    is_stripe_configured, get_stripe_client, get_publishable_key,
)

logger = logging.getLogger(__name__)

credits_bp = Blueprint('credits', __name__, url_prefix='/api/credits')


@credits_bp.route('/balance')
@login_required
def balance():
    breakdown = get_breakdown(current_user.id)
    return jsonify({'balance': breakdown['total']})


@credits_bp.route('/breakdown')
@login_required
def breakdown():
    return jsonify(get_breakdown(current_user.id))


@credits_bp.route('/transactions')
@login_required
def transactions():
    """Paged transaction history, 30 per page"""
    filter_type = request.args.get('filter', 'all')
    if filter_type not in TRANSACTION_FILTERS:
        return api_error(f"filter must be one of {', '.join(TRANSACTION_FILTERS)}")
    offset, error = parse_int_arg('offset', 0, 0)
    if error:
        return api_error(error)

    items, has_more = list_transactions(current_user.id, filter_type, offset, TRANSACTIONS_PAGE_SIZE)
    return jsonify({
        'transactions': [t.to_dict() for t in items],
        'hasMore': has_more,
    })


@credits_bp.route('/packages')
def packages():
    return jsonify({
        'packages': [package_to_dict(p) for p in PERCOIN_PACKAGES],
        'mode': 'stripe' if is_stripe_configured() else 'mock',
        'publishableKey': get_publishable_key() or None,
    })


@credits_bp.route('/checkout', methods=['POST'])
@login_required
@require_active
def checkout():
    """Start a purchase; without Stripe a mock checkout URL is returned"""
    package_id = get_json_body().get('packageId')
    if not package_id:
        return api_error('packageId is required')
    package = find_package(package_id)
    if package is None:
        return api_error('Package not found', 404)

    base_url = current_app.config.get('APP_BASE_URL', '').rstrip('/')

    if not is_stripe_configured():
        return jsonify({
            'mode': 'mock',
            'checkoutUrl': f"{base_url}/my-page/credits?mockPurchase=1&packageId={package['id']}",
            'package': package_to_dict(package),
        })

    price_id = get_price_id(package['id'])
    if price_id:
        line_item = {'price': price_id, 'quantity': 1}
    else:
        line_item = {
            'price_data': {
                'currency': 'jpy',
                'unit_amount': package['price_yen'],
                'product_data': {'name': package['name']},
            },
            'quantity': 1,
        }

    try:
        stripe = get_stripe_client()
        session = stripe.checkout.Session.create(
            mode='payment',
            line_items=[line_item],
            success_url=f"{base_url}/my-page/credits?checkout=success",
            cancel_url=f"{base_url}/my-page/credits?checkout=cancel",
            client_reference_id=current_user.id,
            metadata={
                'user_id': current_user.id,
                'package_id': package['id'],
            },
        )
    except Exception as e:
        logger.error(f"Checkout error: {e}")
        return api_error('Unable to start checkout', 502)

    return jsonify({
        'mode': 'stripe',
        'checkoutUrl': session.url,
        'sessionId': session.id,
        'package': package_to_dict(package),
    })


@credits_bp.route('/mock-complete', methods=['POST'])
@login_required
@require_active
def mock_complete():
    """Finish a mock purchase. Disabled once Stripe is configured."""
    if is_stripe_configured():
        return api_error('Mock purchases are disabled', 403)
    package = find_package(get_json_body().get('packageId'))
    if package is None:
        return api_error('Package not found', 404)

    result = record_mock_purchase(current_user.id, package)
    return jsonify({
        'success': True,
        'balance': result.balance,
        'transaction': result.transaction.to_dict(),
    })


@credits_bp.route('/consume', methods=['POST'])
@login_required
@require_active
def consume():
    """Spend percoins on one of the user's generated images"""
    data = get_json_body()
    generation_id = data.get('generationId')
    amount = data.get('credits')

    if not generation_id or isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        return api_error('generationId and a positive integer credits are required')

    image = db.session.get(GeneratedImage, generation_id)
    decision = can(current_user, Actions.CONSUME_FOR_IMAGE, image)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status

    try:
        result = deduct_percoins(
            current_user.id,
            amount,
            related_generation_id=generation_id,
            metadata={'reason': 'image_generation'},
        )
    except InsufficientPercoinsError as e:
        return api_error('Insufficient percoins', 400, code='insufficient_percoins',
                         required=e.required, available=e.available)

    return jsonify({'success': True, 'balance': result.balance})


@credits_bp.route('/free-percoin-expiring')
@login_required
def free_percoin_expiring():
    batches, expiring_this_month = list_expiring_batches(current_user.id)
    return jsonify({
        'batches': [b.to_dict() for b in batches],
        'expiring_this_month': expiring_this_month,
    })
