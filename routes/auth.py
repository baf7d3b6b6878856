"""
Authentication Routes - Signup, Login, Logout, Session user
"""
import re
import logging
from flask import Blueprint, request, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from app import db
from models import User, AccountDeletionRequest
from utils.api_utils import get_json_body, api_error
from utils.gamification import BonusService
from utils.rate_limiter import RateLimiter, rate_limit
from utils.referral_system import record_referral, check_first_login, get_or_create_referral_code

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
MIN_PASSWORD_LENGTH = 8
MAX_NICKNAME_LENGTH = 50


def _client_ip():
    ip_address = request.headers.get('X-Forwarded-For', request.remote_addr) or 'unknown'
    return ip_address.split(',')[0].strip()


def _is_suspended(user):
    """Deactivated without a pending self-service deletion means an admin suspension."""
    if user.deactivated_at is None:
        return False
    pending = AccountDeletionRequest.query.filter_by(user_id=user.id, status='scheduled').first()
    return pending is None


def _me_payload(user):
    data = user.to_public_dict()
    data.update({
        'email': user.email,
        'is_admin': user.is_site_admin,
        'referral_code': user.referral_code,
        'streak_days': user.streak_days,
        'tutorial_completed': user.tutorial_completed_at is not None,
        'deactivated_at': user.deactivated_at.isoformat() if user.deactivated_at else None,
    })
    return data


@auth_bp.route('/signup', methods=['POST'])
@rate_limit(limit=RateLimiter.SIGNUP_LIMIT, window=RateLimiter.SIGNUP_WINDOW, key_func=_client_ip)
def signup():
    """Create an email account, grant the signup bonus and log in"""
    data = get_json_body()
    email = str(data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    nickname = str(data.get('nickname') or '').strip()
    referral_code = data.get('referralCode')

    if not EMAIL_RE.match(email):
        return api_error('A valid email is required')
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        return api_error(f'Password must be at least {MIN_PASSWORD_LENGTH} characters')
    if not nickname or len(nickname) > MAX_NICKNAME_LENGTH:
        return api_error(f'Nickname must be 1-{MAX_NICKNAME_LENGTH} characters')
    if User.query.filter_by(email=email).first():
        return api_error('Email already registered', 409)

    try:
        user = User(email=email, nickname=nickname, auth_provider='email')
        user.set_password(password)
        db.session.add(user)
        db.session.flush()
        record_referral(user, referral_code if isinstance(referral_code, str) else None)
        db.session.commit()
    except Exception as e:
        logger.error(f"Signup error: {e}")
        db.session.rollback()
        return api_error('Signup failed', 500)

    get_or_create_referral_code(user)
    bonus = BonusService.grant_signup_bonus(user)

    login_user(user, remember=True)
    logger.info(f"New user {user.id} signed up")
    return jsonify({'user': _me_payload(user), 'signup_bonus': bonus}), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    data = get_json_body()
    email = str(data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    limiter_key = f"{_client_ip()}:{email}"

    allowed, _, reset_time = RateLimiter.check_login_limit(limiter_key)
    if not allowed:
        return api_error('Too many login attempts. Please try again later.', 429)

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        return api_error('Invalid email or password', 401)
    if _is_suspended(user):
        return api_error('This account has been suspended', 403, code='account_suspended')

    RateLimiter.reset_login_limit(limiter_key)
    login_user(user, remember=bool(data.get('remember')))
    referral_bonus = check_first_login(user)

    return jsonify({'user': _me_payload(user), 'referral_bonus_granted': referral_bonus})


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'success': True})


@auth_bp.route('/me')
@login_required
def me():
    return jsonify({'user': _me_payload(current_user)})
