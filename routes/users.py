"""
Users Routes - Public profiles, user posts, follow relationships and block status
"""
import logging
from flask import Blueprint, jsonify
from flask_login import login_required, current_user
from app import db
from models import User, Follow, GeneratedImage, UserBlock
from access_control import require_active
from routes.notifications import create_notification
from routes.posts import _feed_query, _serialize_posts
from utils.api_utils import parse_int_arg, api_error

logger = logging.getLogger(__name__)

users_bp = Blueprint('users', __name__, url_prefix='/api/users')


def _get_visible_user(user_id):
    user = db.session.get(User, user_id)
    if user is None or user.deactivated_at is not None:
        return None
    return user


@users_bp.route('/<user_id>')
def profile(user_id):
    """Public profile with follower/following/post counts"""
    user = _get_visible_user(user_id)
    if user is None:
        return api_error('not_found', 404)

    data = user.to_public_dict()
    data.update({
        'follower_count': Follow.query.filter_by(followee_id=user.id).count(),
        'following_count': Follow.query.filter_by(follower_id=user.id).count(),
        'post_count': GeneratedImage.query.filter_by(
            user_id=user.id, is_posted=True, moderation_status='visible'
        ).count(),
        'created_at': user.created_at.isoformat() if user.created_at else None,
    })

    if current_user.is_authenticated:
        data['is_following'] = Follow.query.filter_by(
            follower_id=current_user.id, followee_id=user.id
        ).first() is not None
        data['is_blocked'] = UserBlock.query.filter_by(
            blocker_id=current_user.id, blocked_id=user.id
        ).first() is not None
        data['is_self'] = current_user.id == user.id

    return jsonify({'user': data})


@users_bp.route('/<user_id>/follow', methods=['POST'])
@login_required
@require_active
def follow(user_id):
    if user_id == current_user.id:
        return api_error('You cannot follow yourself')
    user = _get_visible_user(user_id)
    if user is None:
        return api_error('not_found', 404)
    if Follow.query.filter_by(follower_id=current_user.id, followee_id=user_id).first():
        return api_error('Already following')

    db.session.add(Follow(follower_id=current_user.id, followee_id=user_id))
    create_notification(user_id, current_user.id, 'follow', 'user', current_user.id, commit=False)
    db.session.commit()
    logger.info(f"User {current_user.id} followed {user_id}")
    return jsonify({'success': True, 'following': True})


@users_bp.route('/<user_id>/follow', methods=['DELETE'])
@login_required
def unfollow(user_id):
    deleted = Follow.query.filter_by(follower_id=current_user.id, followee_id=user_id).delete()
    db.session.commit()
    if not deleted:
        return api_error('Not following')
    return jsonify({'success': True, 'following': False})


@users_bp.route('/<user_id>/followers')
def followers(user_id):
    user = _get_visible_user(user_id)
    if user is None:
        return api_error('not_found', 404)
    rows = db.session.query(User).join(Follow, Follow.follower_id == User.id).filter(
        Follow.followee_id == user_id,
        User.deactivated_at.is_(None),
    ).order_by(Follow.created_at.desc()).limit(100).all()
    return jsonify({'users': [u.to_public_dict() for u in rows]})


@users_bp.route('/<user_id>/following')
def following(user_id):
    user = _get_visible_user(user_id)
    if user is None:
        return api_error('not_found', 404)
    rows = db.session.query(User).join(Follow, Follow.followee_id == User.id).filter(
        Follow.follower_id == user_id,
        User.deactivated_at.is_(None),
    ).order_by(Follow.created_at.desc()).limit(100).all()
    return jsonify({'users': [u.to_public_dict() for u in rows]})


@users_bp.route('/<user_id>/posts')
def user_posts(user_id):
    """A user's posted images, newest first"""
    user = _get_visible_user(user_id)
    if user is None:
        return api_error('not_found', 404)
    limit, error = parse_int_arg('limit', 20, 1, 100)
    if error:
        return api_error(error)
    offset, error = parse_int_arg('offset', 0, 0)
    if error:
        return api_error(error)

    viewer_id = current_user.id if current_user.is_authenticated else None
    posts = _feed_query(viewer_id).filter(GeneratedImage.user_id == user.id).order_by(
        GeneratedImage.posted_at.desc(), GeneratedImage.id.desc()
    ).offset(offset).limit(limit + 1).all()
    return jsonify({'posts': _serialize_posts(posts[:limit]), 'hasMore': len(posts) > limit})


@users_bp.route('/<user_id>/follow-status')
@login_required
def follow_status(user_id):
    return jsonify({
        'is_following': Follow.query.filter_by(
            follower_id=current_user.id, followee_id=user_id
        ).first() is not None,
        'is_followed_by': Follow.query.filter_by(
            follower_id=user_id, followee_id=current_user.id
        ).first() is not None,
    })


@users_bp.route('/<user_id>/block-status')
@login_required
def block_status(user_id):
    return jsonify({
        'is_blocked': UserBlock.query.filter_by(
            blocker_id=current_user.id, blocked_id=user_id
        ).first() is not None,
        'is_blocked_by': UserBlock.query.filter_by(
            blocker_id=user_id, blocked_id=current_user.id
        ).first() is not None,
    })
