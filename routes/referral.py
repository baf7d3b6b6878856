"""
Referral Routes - referral codes and the first-login referral bonus
"""
import logging
from flask import Blueprint, jsonify, current_app
from flask_login import login_required, current_user
from models import Referral
from utils.referral_system import get_or_create_referral_code, check_first_login

logger = logging.getLogger(__name__)

referral_bp = Blueprint('referral', __name__, url_prefix='/api/referral')


@referral_bp.route('/generate')
@login_required
def generate():
    """Get or create the user's referral code"""
    code = get_or_create_referral_code(current_user)
    base_url = current_app.config.get('APP_BASE_URL', '').rstrip('/')
    return jsonify({
        'referral_code': code,
        'referral_url': f"{base_url}/signup?ref={code}",
    })


@referral_bp.route('/check-first-login')
@login_required
def first_login():
    return jsonify({'bonus_granted': check_first_login(current_user)})


@referral_bp.route('/stats')
@login_required
def stats():
    referrals = Referral.query.filter_by(referrer_id=current_user.id).all()
    return jsonify({
        'total_referrals': len(referrals),
        'rewarded_referrals': sum(1 for r in referrals if r.bonus_granted_at is not None),
    })
