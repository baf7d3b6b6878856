"""Stripe Webhook Routes - credit percoins when a checkout completes"""
import logging
from flask import Blueprint, request, jsonify, current_app
from app import db
from models import User
from utils.percoin_ledger import record_purchase
from utils.stripe_client import find_package, get_credits_by_price_id, get_stripe_client

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint('webhooks', __name__, url_prefix='/api/stripe')


def _as_dict(obj):
    """Stripe objects expose to_dict(); plain dicts pass through."""
    if type(obj) is dict:
        return obj
    for attr in ('to_dict', 'to_dict_recursive'):
        if hasattr(obj, attr):
            return getattr(obj, attr)()
    return dict(obj)


def _coins_for_session(stripe, session):
    """Percoins bought by a checkout session: metadata package first, then the line item price."""
    metadata = session.get('metadata') or {}
    package = find_package(metadata.get('package_id'))
    if package is not None:
        return package['credits']

    try:
        line_items = stripe.checkout.Session.list_line_items(session['id'], limit=1)
    except Exception as e:
        logger.error(f"Could not load line items for session {session.get('id')}: {e}")
        return None
    for item in _as_dict(line_items).get('data', []):
        price = item.get('price') or {}
        coins = get_credits_by_price_id(price.get('id'))
        if coins:
            return coins
    return None


def handle_checkout_completed(stripe, session):
    metadata = session.get('metadata') or {}
    user_id = metadata.get('user_id') or session.get('client_reference_id')
    payment_intent = session.get('payment_intent')

    if not user_id or db.session.get(User, user_id) is None:
        logger.warning(f"Checkout session {session.get('id')} has no known user")
        return False
    if not payment_intent:
        logger.warning(f"Checkout session {session.get('id')} has no payment intent")
        return False

    coins = _coins_for_session(stripe, session)
    if not coins:
        logger.warning(f"Checkout session {session.get('id')} maps to no percoin package")
        return False

    result = record_purchase(
        user_id,
        coins,
        stripe_payment_intent_id=payment_intent,
        metadata={
            'checkout_session_id': session.get('id'),
            'packageId': metadata.get('package_id'),
            'amount_total': session.get('amount_total'),
        },
    )
    if result.duplicate:
        logger.info(f"Payment intent {payment_intent} already credited")
    return True


@webhooks_bp.route('/webhook', methods=['POST'])
def stripe_webhook():
    """Handle Stripe webhooks for checkout events"""
    endpoint_secret = current_app.config.get('STRIPE_WEBHOOK_SECRET')
    if not endpoint_secret:
        return jsonify({'mode': 'mock', 'handled': True})

    payload = request.get_data()
    sig_header = request.headers.get('Stripe-Signature')

    try:
        stripe = get_stripe_client()
        event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except Exception as e:
        logger.error(f"Webhook verification failed: {e}")
        return jsonify({'error': 'Invalid webhook signature'}), 400

    event_type = event['type']
    handled = False
    if event_type == 'checkout.session.completed':
        handled = handle_checkout_completed(stripe, _as_dict(event['data']['object']))
    else:
        logger.info(f"Ignoring Stripe event {event_type}")

    return jsonify({'received': True, 'handled': handled})
