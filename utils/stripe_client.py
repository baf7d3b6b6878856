"""
Stripe Client - percoin packages, price mapping and the configured Stripe module.

Without STRIPE_SECRET_KEY the credits API runs in mock mode.
"""
import os
import logging
from typing import Any, Dict, Optional

import stripe
from flask import current_app

logger = logging.getLogger(__name__)

PERCOIN_PACKAGES = [
    {'id': 'credit-100', 'name': '100 Percoins', 'credits': 100, 'price_yen': 500},
    {'id': 'credit-220', 'name': '220 Percoins', 'credits': 220, 'price_yen': 1000},
    {'id': 'credit-760', 'name': '760 Percoins', 'credits': 760, 'price_yen': 3000},
    {'id': 'credit-1600', 'name': '1600 Percoins', 'credits': 1600, 'price_yen': 5000},
    {'id': 'credit-4700', 'name': '4700 Percoins', 'credits': 4700, 'price_yen': 10000},
]

GENERATION_PERCOIN_COST = 20

MODEL_PERCOIN_COSTS = {
    'gemini-2.5-flash-image': 20,
    'gemini-3-pro-image-1k': 50,
    'gemini-3-pro-image-2k': 80,
    'gemini-3-pro-image-4k': 100,
}

DEFAULT_GENERATION_MODEL = 'gemini-2.5-flash-image'


def get_percoin_cost(model: Optional[str]) -> int:
    return MODEL_PERCOIN_COSTS.get(model or DEFAULT_GENERATION_MODEL, GENERATION_PERCOIN_COST)


def get_price_id(package_id: str) -> Optional[str]:
    """Stripe price id for a package, from STRIPE_PRICE_CREDIT_<coins>."""
    suffix = package_id.replace('credit-', '')
    return os.environ.get(f'STRIPE_PRICE_CREDIT_{suffix}')


def find_package(package_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not package_id:
        return None
    for package in PERCOIN_PACKAGES:
        if package['id'] == package_id:
            return package
    return None


def package_to_dict(package: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': package['id'],
        'name': package['name'],
        'credits': package['credits'],
        'priceYen': package['price_yen'],
    }


def get_credits_by_price_id(price_id: Optional[str]) -> Optional[int]:
    """Map a Stripe price id back to the number of percoins it buys."""
    if not price_id:
        return None
    for package in PERCOIN_PACKAGES:
        if get_price_id(package['id']) == price_id:
            return package['credits']
    return None


def is_stripe_configured() -> bool:
    return bool(current_app.config.get('STRIPE_SECRET_KEY'))


def get_stripe_client():
    """Get configured Stripe client"""
    secret_key = current_app.config.get('STRIPE_SECRET_KEY')
    if not secret_key:
        raise ValueError('STRIPE_SECRET_KEY is not configured')
    stripe.api_key = secret_key
    return stripe


def get_publishable_key():
    """Get Stripe publishable key for frontend"""
    return os.environ.get('STRIPE_PUBLISHABLE_KEY', '')
