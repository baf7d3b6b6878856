"""
Posts Routes - Feed, posting generated images, likes, comments and reports
"""
import logging
from datetime import datetime
from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user
from sqlalchemy import func
from app import db
from models import GeneratedImage, Like, Comment, Follow, UserBlock, User
from authorization import can, deny_response, Actions
from access_control import require_active
from moderation_engine import submit_report, reported_post_ids, ReportError
from routes.notifications import create_notification
from utils.api_utils import parse_int_arg, get_json_body, api_error
from utils.gamification import BonusService
from utils.jst import previous_day_range, previous_week_range, previous_month_range

logger = logging.getLogger(__name__)

posts_bp = Blueprint('posts', __name__, url_prefix='/api')

FEED_SORTS = ('newest', 'following', 'daily', 'week', 'month')
PERIOD_RANGES = {
    'daily': previous_day_range,
    'week': previous_week_range,
    'month': previous_month_range,
}
MAX_CAPTION_LENGTH = 500
MAX_COMMENT_LENGTH = 200


def _viewer_id():
    return current_user.id if current_user.is_authenticated else None


def _feed_query(viewer_id):
    """Posted, visible images from active accounts, minus blocked users and reported posts."""
    query = GeneratedImage.query.join(User, User.id == GeneratedImage.user_id).filter(
        GeneratedImage.is_posted.is_(True),
        GeneratedImage.moderation_status == 'visible',
        User.deactivated_at.is_(None),
    )
    if viewer_id:
        blocked = db.session.query(UserBlock.blocked_id).filter(UserBlock.blocker_id == viewer_id)
        query = query.filter(GeneratedImage.user_id.notin_(blocked))
        hidden = reported_post_ids(viewer_id)
        if hidden:
            query = query.filter(GeneratedImage.id.notin_(hidden))
    return query


def _counts_for(image_ids):
    if not image_ids:
        return {}, {}
    like_counts = dict(
        db.session.query(Like.image_id, func.count(Like.id))
        .filter(Like.image_id.in_(image_ids)).group_by(Like.image_id).all()
    )
    comment_counts = dict(
        db.session.query(Comment.image_id, func.count(Comment.id))
        .filter(Comment.image_id.in_(image_ids)).group_by(Comment.image_id).all()
    )
    return like_counts, comment_counts


def _serialize_posts(posts):
    ids = [p.id for p in posts]
    like_counts, comment_counts = _counts_for(ids)
    liked = set()
    viewer_id = _viewer_id()
    if viewer_id and ids:
        liked = {
            row[0] for row in db.session.query(Like.image_id)
            .filter(Like.user_id == viewer_id, Like.image_id.in_(ids)).all()
        }
    result = []
    for post in posts:
        data = post.to_dict(like_count=like_counts.get(post.id, 0), comment_count=comment_counts.get(post.id, 0))
        data['liked_by_me'] = post.id in liked
        result.append(data)
    return result


@posts_bp.route('/posts')
def list_posts():
    """Public feed"""
    limit, error = parse_int_arg('limit', 20, 1, 100)
    if error:
        return api_error(error)
    offset, error = parse_int_arg('offset', 0, 0)
    if error:
        return api_error(error)
    sort = request.args.get('sort', 'newest')
    if sort not in FEED_SORTS:
        return api_error(f"sort must be one of {', '.join(FEED_SORTS)}")

    viewer_id = _viewer_id()
    query = _feed_query(viewer_id)

    if sort == 'following':
        if not viewer_id:
            return api_error('authentication_required', 401)
        followees = db.session.query(Follow.followee_id).filter(Follow.follower_id == viewer_id)
        query = query.filter(GeneratedImage.user_id.in_(followees))

    if sort in PERIOD_RANGES:
        start, end = PERIOD_RANGES[sort]()
        range_likes = db.session.query(
            Like.image_id.label('image_id'),
            func.count(Like.id).label('like_count'),
        ).filter(
            Like.created_at >= start,
            Like.created_at < end,
        ).group_by(Like.image_id).subquery()

        query = query.join(range_likes, range_likes.c.image_id == GeneratedImage.id).filter(
            GeneratedImage.posted_at >= start,
            GeneratedImage.posted_at < end,
        ).order_by(range_likes.c.like_count.desc(), GeneratedImage.posted_at.desc())
    else:
        query = query.order_by(GeneratedImage.posted_at.desc(), GeneratedImage.id.desc())

    posts = query.offset(offset).limit(limit + 1).all()
    has_more = len(posts) > limit
    return jsonify({'posts': _serialize_posts(posts[:limit]), 'hasMore': has_more})


@posts_bp.route('/posts', methods=['POST'])
@login_required
@require_active
def create_post():
    """Post one of the user's generated images to the feed"""
    data = get_json_body()
    image_id = data.get('imageId')
    caption = data.get('caption')

    if caption is not None and (not isinstance(caption, str) or len(caption) > MAX_CAPTION_LENGTH):
        return api_error(f'caption must be at most {MAX_CAPTION_LENGTH} characters')

    image = db.session.get(GeneratedImage, image_id) if isinstance(image_id, str) else None
    if image is None:
        return api_error('Image not found', 404)
    decision = can(current_user, Actions.PUBLISH_IMAGE, image)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status
    if image.is_posted:
        return api_error('Image is already posted')
    if image.moderation_status == 'removed':
        return api_error('This image was removed by moderation', 403)

    image.is_posted = True
    image.posted_at = datetime.utcnow()
    image.caption = (caption or '').strip() or None
    db.session.commit()

    bonus = BonusService.grant_daily_post_bonus(current_user, image.id)
    return jsonify({'post': _serialize_posts([image])[0], 'bonus_granted': bonus}), 201


@posts_bp.route('/posts/likes')
def batch_likes():
    """Like state for several posts at once: ?ids=a,b,c"""
    ids = [i for i in request.args.get('ids', '').split(',') if i][:100]
    like_counts, _ = _counts_for(ids)
    liked = set()
    viewer_id = _viewer_id()
    if viewer_id and ids:
        liked = {
            row[0] for row in db.session.query(Like.image_id)
            .filter(Like.user_id == viewer_id, Like.image_id.in_(ids)).all()
        }
    return jsonify({
        'likes': {i: {'liked': i in liked, 'count': like_counts.get(i, 0)} for i in ids}
    })


@posts_bp.route('/posts/<post_id>')
def get_post(post_id):
    post = db.session.get(GeneratedImage, post_id)
    decision = can(current_user, Actions.VIEW_POST, post)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status

    viewer_id = _viewer_id()
    if viewer_id and viewer_id != post.user_id:
        blocked = UserBlock.query.filter_by(blocker_id=viewer_id, blocked_id=post.user_id).first()
        if blocked:
            return api_error('not_found', 404)

    if post.is_posted:
        GeneratedImage.query.filter_by(id=post.id).update(
            {'view_count': GeneratedImage.view_count + 1}, synchronize_session=False
        )
        db.session.commit()
        db.session.refresh(post)

    data = _serialize_posts([post])[0]
    data['is_owner'] = viewer_id == post.user_id
    return jsonify({'post': data})


@posts_bp.route('/posts/<post_id>', methods=['PATCH'])
@login_required
@require_active
def update_post(post_id):
    post = db.session.get(GeneratedImage, post_id)
    decision = can(current_user, Actions.EDIT_POST, post)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status

    caption = get_json_body().get('caption')
    if caption is not None and (not isinstance(caption, str) or len(caption) > MAX_CAPTION_LENGTH):
        return api_error(f'caption must be at most {MAX_CAPTION_LENGTH} characters')

    post.caption = (caption or '').strip() or None
    db.session.commit()
    return jsonify({'post': _serialize_posts([post])[0]})


@posts_bp.route('/posts/<post_id>', methods=['DELETE'])
@login_required
def unpost(post_id):
    """Remove a post from the feed; the generated image stays with its owner"""
    post = db.session.get(GeneratedImage, post_id)
    decision = can(current_user, Actions.UNPOST, post)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status

    post.is_posted = False
    post.posted_at = None
    db.session.commit()
    return jsonify({'success': True})


@posts_bp.route('/posts/<post_id>/like', methods=['POST'])
@login_required
@require_active
def toggle_like(post_id):
    post = db.session.get(GeneratedImage, post_id)
    decision = can(current_user, Actions.LIKE, post)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status

    existing = Like.query.filter_by(user_id=current_user.id, image_id=post_id).first()
    if existing:
        db.session.delete(existing)
        liked = False
    else:
        db.session.add(Like(user_id=current_user.id, image_id=post_id))
        liked = True
        create_notification(post.user_id, current_user.id, 'like', 'post', post_id, commit=False)
    db.session.commit()

    count = Like.query.filter_by(image_id=post_id).count()
    return jsonify({'liked': liked, 'like_count': count})


@posts_bp.route('/posts/<post_id>/comments')
def list_comments(post_id):
    post = db.session.get(GeneratedImage, post_id)
    decision = can(current_user, Actions.VIEW_POST, post)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status

    limit, error = parse_int_arg('limit', 50, 1, 100)
    if error:
        return api_error(error)
    offset, error = parse_int_arg('offset', 0, 0)
    if error:
        return api_error(error)

    comments = Comment.query.filter_by(image_id=post_id).order_by(
        Comment.created_at.asc(), Comment.id.asc()
    ).offset(offset).limit(limit + 1).all()
    return jsonify({
        'comments': [c.to_dict() for c in comments[:limit]],
        'hasMore': len(comments) > limit,
    })


@posts_bp.route('/posts/<post_id>/comments', methods=['POST'])
@login_required
@require_active
def create_comment(post_id):
    post = db.session.get(GeneratedImage, post_id)
    decision = can(current_user, Actions.COMMENT, post)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status

    content = get_json_body().get('content')
    content = content.strip() if isinstance(content, str) else ''
    if not 1 <= len(content) <= MAX_COMMENT_LENGTH:
        return api_error(f'Comment must be 1-{MAX_COMMENT_LENGTH} characters')

    comment = Comment(user_id=current_user.id, image_id=post_id, content=content)
    db.session.add(comment)
    create_notification(post.user_id, current_user.id, 'comment', 'post', post_id, body=content[:100], commit=False)
    db.session.commit()
    return jsonify({'comment': comment.to_dict()}), 201


@posts_bp.route('/comments/<int:comment_id>', methods=['PATCH'])
@login_required
@require_active
def update_comment(comment_id):
    comment = db.session.get(Comment, comment_id)
    decision = can(current_user, Actions.EDIT_COMMENT, comment)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status

    content = get_json_body().get('content')
    content = content.strip() if isinstance(content, str) else ''
    if not 1 <= len(content) <= MAX_COMMENT_LENGTH:
        return api_error(f'Comment must be 1-{MAX_COMMENT_LENGTH} characters')

    comment.content = content
    comment.edited_at = datetime.utcnow()
    db.session.commit()
    return jsonify({'comment': comment.to_dict()})


@posts_bp.route('/comments/<int:comment_id>', methods=['DELETE'])
@login_required
def delete_comment(comment_id):
    comment = db.session.get(Comment, comment_id)
    decision = can(current_user, Actions.DELETE_COMMENT, comment)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status

    db.session.delete(comment)
    db.session.commit()
    return jsonify({'success': True})


@posts_bp.route('/reports/posts', methods=['POST'])
@login_required
@require_active
def report_post():
    data = get_json_body()
    try:
        result = submit_report(
            current_user,
            data.get('postId'),
            data.get('categoryId'),
            data.get('subcategoryId'),
            data.get('details'),
        )
    except ReportError as e:
        return jsonify(e.to_dict()), e.status
    return jsonify(result), 201


@posts_bp.route('/reports/taxonomy')
def report_taxonomy():
    from moderation_engine import REPORT_TAXONOMY
    return jsonify({'categories': REPORT_TAXONOMY})
