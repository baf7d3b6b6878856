"""
Challenges Routes - Daily login streak and tutorial completion bonuses
"""
import logging
from flask import Blueprint, jsonify
from flask_login import login_required, current_user
from access_control import require_active
from utils.gamification import BonusService

logger = logging.getLogger(__name__)

challenges_bp = Blueprint('challenges', __name__, url_prefix='/api')


@challenges_bp.route('/streak/check')
@login_required
@require_active
def streak_check():
    """Daily check-in; grants the streak bonus once per JST day"""
    amount, streak = BonusService.grant_streak_bonus(current_user)
    return jsonify({'bonus_granted': amount, 'streak_days': streak})


@challenges_bp.route('/streak/schedule')
def streak_schedule():
    schedule = BonusService.get_streak_schedule()
    return jsonify({
        'schedule': [{'streak_day': i + 1, 'amount': amount} for i, amount in enumerate(schedule)]
    })


@challenges_bp.route('/tutorial/complete', methods=['POST'])
@login_required
@require_active
def tutorial_complete():
    return jsonify(BonusService.grant_tour_bonus(current_user))
