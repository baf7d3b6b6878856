"""
Object Storage Utilities - Persist generated images under STORAGE_ROOT
"""
import os
import logging
from typing import List, Tuple

from flask import current_app
from werkzeug.utils import safe_join

logger = logging.getLogger(__name__)

IMAGE_BUCKET = 'generated-images'
REMOVE_CHUNK_SIZE = 100


def _storage_root():
    return current_app.config['STORAGE_ROOT']


def _resolve(object_path):
    path = safe_join(_storage_root(), IMAGE_BUCKET, object_path)
    if path is None:
        raise ValueError(f"Invalid object path: {object_path}")
    return path


def upload_file(file_data, object_path):
    """
    Upload a file to object storage

    Args:
        file_data: File bytes or file-like object
        object_path: Path inside the bucket (e.g., '<user_id>/<image_id>.png')

    Returns:
        bool: True if successful, False otherwise
    """
    try:
        if hasattr(file_data, 'read'):
            data = file_data.read()
        else:
            data = file_data

        path = _resolve(object_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as f:
            f.write(data)
        logger.info(f"Uploaded to object storage: {object_path}")
        return True
    except (OSError, ValueError) as e:
        logger.error(f"Failed to upload to object storage: {e}")
        return False


def download_file(object_path):
    """
    Download a file from object storage

    Returns:
        bytes: File content or None if not found
    """
    try:
        with open(_resolve(object_path), 'rb') as f:
            return f.read()
    except (OSError, ValueError):
        logger.debug(f"Object not found in storage: {object_path}")
        return None


def public_url(object_path):
    base = current_app.config.get('APP_BASE_URL', '').rstrip('/')
    return f"{base}/storage/{IMAGE_BUCKET}/{object_path}"


def remove_files(object_paths: List[str], chunk_size: int = REMOVE_CHUNK_SIZE) -> Tuple[int, List[str]]:
    """
    Delete objects in chunks

    Returns:
        (removed_count, failed_paths)
    """
    removed = 0
    failed = []
    for start in range(0, len(object_paths), chunk_size):
        chunk = object_paths[start:start + chunk_size]
        for object_path in chunk:
            try:
                os.remove(_resolve(object_path))
                removed += 1
            except FileNotFoundError:
                # Already gone
                removed += 1
            except (OSError, ValueError) as e:
                logger.error(f"Failed to delete {object_path}: {e}")
                failed.append(object_path)
        logger.info(f"Removed storage chunk of {len(chunk)} objects")
    return removed, failed
