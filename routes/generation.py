"""
Generation Routes - async image generation jobs, the user's image library and stock source images
"""
import os
import uuid
import base64
import binascii
import logging
from datetime import datetime
from flask import Blueprint, jsonify, request, current_app, send_from_directory
from flask_login import login_required, current_user
from app import db
from models import ImageJob, GeneratedImage, SourceImageStock, User
from authorization import can, deny_response, Actions
from access_control import require_active
from image_jobs import enqueue_image_job, list_in_progress, MIME_EXTENSIONS
from object_storage_utils import IMAGE_BUCKET, upload_file, download_file, remove_files, public_url
from utils.api_utils import parse_int_arg, get_json_body, api_error
from utils.image_generation import GENERATION_TYPES
from utils.percoin_ledger import InsufficientPercoinsError
from utils.rate_limiter import RateLimiter, rate_limit
from utils.stripe_client import MODEL_PERCOIN_COSTS, DEFAULT_GENERATION_MODEL

logger = logging.getLogger(__name__)

generation_bp = Blueprint('generation', __name__)

MAX_PROMPT_LENGTH = 1000
MAX_SOURCE_IMAGE_BYTES = 10 * 1024 * 1024
MAX_STOCK_IMAGES = 3
MAX_STOCK_NAME_LENGTH = 255
MY_IMAGE_FILTERS = ('all', 'posted', 'unposted')


def _user_key():
    return current_user.id if current_user.is_authenticated else (request.remote_addr or 'unknown')


def _validate_source_image(data):
    """Returns (base64, mime, error)."""
    source = data.get('sourceImageBase64')
    mime_type = data.get('sourceImageMimeType')
    if source in (None, ''):
        return None, None, None
    if not isinstance(source, str):
        return None, None, 'sourceImageBase64 must be a string'
    if mime_type not in MIME_EXTENSIONS:
        return None, None, f"sourceImageMimeType must be one of {', '.join(MIME_EXTENSIONS)}"

    # Accept data URLs as well as bare base64
    if source.startswith('data:') and ',' in source:
        source = source.split(',', 1)[1]
    try:
        decoded = base64.b64decode(source, validate=True)
    except (binascii.Error, ValueError):
        return None, None, 'sourceImageBase64 is not valid base64'
    if len(decoded) > MAX_SOURCE_IMAGE_BYTES:
        return None, None, 'Source image is too large'
    return source, mime_type, None


def _mime_for_path(object_path):
    extension = object_path.rsplit('.', 1)[-1]
    for mime_type, ext in MIME_EXTENSIONS.items():
        if ext == extension:
            return mime_type
    return 'image/png'


@generation_bp.route('/api/generate-async', methods=['POST'])
@login_required
@require_active
@rate_limit(limit=RateLimiter.GENERATION_LIMIT, window=RateLimiter.GENERATION_WINDOW, key_func=_user_key)
def generate_async():
    """Queue an image generation job, charging its percoin cost up front"""
    data = get_json_body()

    prompt = data.get('prompt')
    prompt = prompt.strip() if isinstance(prompt, str) else ''
    if not 1 <= len(prompt) <= MAX_PROMPT_LENGTH:
        return api_error(f'prompt must be 1-{MAX_PROMPT_LENGTH} characters')

    generation_type = data.get('generationType') or 'coordinate'
    if generation_type not in GENERATION_TYPES:
        return api_error(f"generationType must be one of {', '.join(GENERATION_TYPES)}")

    model = data.get('model') or DEFAULT_GENERATION_MODEL
    if model not in MODEL_PERCOIN_COSTS:
        return api_error(f"model must be one of {', '.join(MODEL_PERCOIN_COSTS)}")

    background_change = data.get('backgroundChange', False)
    if not isinstance(background_change, bool):
        return api_error('backgroundChange must be a boolean')

    source_image, mime_type, error = _validate_source_image(data)
    if error:
        return api_error(error)

    stock_id = data.get('sourceImageStockId')
    if stock_id not in (None, ''):
        if source_image:
            return api_error('Pass either sourceImageBase64 or sourceImageStockId')
        stock = db.session.get(SourceImageStock, stock_id) if isinstance(stock_id, str) else None
        if stock is None or stock.user_id != current_user.id:
            return api_error('not_found', 404)
        content = download_file(stock.storage_path)
        if content is None:
            return api_error('Stock image file is missing', 404)
        source_image = base64.b64encode(content).decode()
        mime_type = _mime_for_path(stock.storage_path)
        stock.usage_count += 1
        stock.last_used_at = datetime.utcnow()

    try:
        job = enqueue_image_job(
            user_id=current_user.id,
            prompt=prompt,
            generation_type=generation_type,
            model=model,
            background_change=background_change,
            source_image_base64=source_image,
            source_image_mime_type=mime_type,
        )
    except InsufficientPercoinsError as e:
        return api_error('Insufficient percoins', 400, code='insufficient_percoins',
                         required=e.required, available=e.available)

    return jsonify({'jobId': job.id, 'status': job.status}), 202


@generation_bp.route('/api/generation-status')
@login_required
def generation_status():
    job_id = request.args.get('id')
    if not job_id:
        return api_error('id is required')
    job = db.session.get(ImageJob, job_id)
    if job is None or job.user_id != current_user.id:
        return api_error('not_found', 404)
    return jsonify(job.to_dict())


@generation_bp.route('/api/generation-status/in-progress')
@login_required
def generation_in_progress():
    include_recent = request.args.get('includeRecent') == '1'
    jobs = list_in_progress(current_user.id, include_recent=include_recent)
    return jsonify({'jobs': [job.to_dict() for job in jobs]})


@generation_bp.route(f'/storage/{IMAGE_BUCKET}/<path:object_path>')
def serve_generated_image(object_path):
    """Serve stored images"""
    directory = os.path.join(current_app.config['STORAGE_ROOT'], IMAGE_BUCKET)
    return send_from_directory(directory, object_path, max_age=86400)


@generation_bp.route('/api/my-page/images')
@login_required
def my_images():
    """The current user's generated images, optionally filtered by posted state"""
    image_filter = request.args.get('filter', 'all')
    if image_filter not in MY_IMAGE_FILTERS:
        return api_error(f"filter must be one of {', '.join(MY_IMAGE_FILTERS)}")
    limit, error = parse_int_arg('limit', 20, 1, 100)
    if error:
        return api_error(error)
    offset, error = parse_int_arg('offset', 0, 0)
    if error:
        return api_error(error)

    query = GeneratedImage.query.filter_by(user_id=current_user.id)
    if image_filter == 'posted':
        query = query.filter_by(is_posted=True).order_by(GeneratedImage.posted_at.desc())
    elif image_filter == 'unposted':
        query = query.filter_by(is_posted=False).order_by(GeneratedImage.created_at.desc())
    else:
        query = query.order_by(GeneratedImage.created_at.desc())

    images = query.order_by(GeneratedImage.id.desc()).offset(offset).limit(limit + 1).all()
    return jsonify({
        'images': [image.to_dict() for image in images[:limit]],
        'hasMore': len(images) > limit,
    })


@generation_bp.route('/api/source-image-stocks')
@login_required
def list_stock_images():
    stocks = SourceImageStock.query.filter_by(user_id=current_user.id).order_by(
        SourceImageStock.created_at.desc()
    ).all()
    return jsonify({'stocks': [stock.to_dict() for stock in stocks], 'limit': MAX_STOCK_IMAGES})


@generation_bp.route('/api/source-image-stocks', methods=['POST'])
@login_required
@require_active
def upload_stock_image():
    """Save a source photo for reuse; at most MAX_STOCK_IMAGES per user"""
    data = get_json_body()
    source_image, mime_type, error = _validate_source_image(data)
    if error:
        return api_error(error)
    if source_image is None:
        return api_error('sourceImageBase64 is required')

    name = data.get('name')
    if name is not None and (not isinstance(name, str) or len(name) > MAX_STOCK_NAME_LENGTH):
        return api_error(f'name must be a string of at most {MAX_STOCK_NAME_LENGTH} characters')

    # Serializes concurrent uploads by the same user
    db.session.query(User).filter_by(id=current_user.id).with_for_update().one()
    if SourceImageStock.query.filter_by(user_id=current_user.id).count() >= MAX_STOCK_IMAGES:
        db.session.rollback()
        return api_error(f'You can keep at most {MAX_STOCK_IMAGES} stock images', 400,
                         code='stock_limit_exceeded')

    object_path = f"{current_user.id}/stocks/{uuid.uuid4().hex}.{MIME_EXTENSIONS[mime_type]}"
    if not upload_file(base64.b64decode(source_image), object_path):
        db.session.rollback()
        return api_error('Failed to store image', 500)

    stock = SourceImageStock(
        user_id=current_user.id,
        image_url=public_url(object_path),
        storage_path=object_path,
        name=name,
    )
    db.session.add(stock)
    db.session.commit()
    logger.info(f"User {current_user.id} saved stock image {stock.id}")
    return jsonify({'stock': stock.to_dict()}), 201


@generation_bp.route('/api/source-image-stocks/<stock_id>', methods=['DELETE'])
@login_required
def delete_stock_image(stock_id):
    stock = db.session.get(SourceImageStock, stock_id)
    decision = can(current_user, Actions.DELETE_STOCK_IMAGE, stock)
    if not decision.allowed:
        body, status = deny_response(decision.reason)
        return jsonify(body), status

    _, failed = remove_files([stock.storage_path])
    if failed:
        # The row is removed even when the file is left behind
        logger.error(f"Could not remove stock image file {stock.storage_path}")
    db.session.delete(stock)
    db.session.commit()
    return jsonify({'success': True})
