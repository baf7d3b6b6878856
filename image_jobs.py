from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from flask import current_app

from app import db
from models import ImageJob, GeneratedImage, CreditTransaction
from object_storage_utils import upload_file, public_url
from utils.image_generation import ImageGenerationClient
from utils.percoin_ledger import deduct_percoins, refund_percoins
from utils.stripe_client import get_percoin_cost, DEFAULT_GENERATION_MODEL

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RECENT_WINDOW = timedelta(minutes=5)
RECENT_LIMIT = 10

MIME_EXTENSIONS = {
    'image/png': 'png',
    'image/jpeg': 'jpg',
    'image/webp': 'webp',
}


def enqueue_image_job(
    *,
    user_id: str,
    prompt: str,
    generation_type: str = 'coordinate',
    model: Optional[str] = None,
    background_change: bool = False,
    source_image_base64: Optional[str] = None,
    source_image_mime_type: Optional[str] = None,
) -> ImageJob:
    """Create a queued job and charge its percoin cost in one transaction.

    Raises InsufficientPercoinsError without creating the job.
    """
    model = model or DEFAULT_GENERATION_MODEL
    cost = get_percoin_cost(model)
    job = ImageJob(
        user_id=user_id,
        prompt_text=prompt,
        generation_type=generation_type,
        model=model,
        background_change=background_change,
        source_image_base64=source_image_base64,
        source_image_mime_type=source_image_mime_type,
        status='queued',
        attempts=0,
        percoin_cost=cost,
    )
    db.session.add(job)
    db.session.flush()

    deduct_percoins(
        user_id,
        cost,
        related_generation_id=job.id,
        metadata={'reason': 'image_generation', 'model': model},
        commit=False,
    )
    db.session.commit()
    logger.info(f"Queued image job {job.id} for user {user_id} ({cost} percoins)")
    return job


def _refund_job(job: ImageJob) -> None:
    consumption = CreditTransaction.query.filter_by(
        related_generation_id=job.id, transaction_type='consumption'
    ).first()
    if consumption is None:
        return
    result = refund_percoins(consumption, reason='generation_failed')
    if not result.duplicate:
        logger.info(f"Refunded {-consumption.amount} percoins for failed job {job.id}")


def claim_job(job_id: str) -> bool:
    """Move a job from queued to processing in a single conditional UPDATE.

    Returns False when another worker got there first.
    """
    claimed = ImageJob.query.filter(
        ImageJob.id == job_id, ImageJob.status == 'queued'
    ).update(
        {
            ImageJob.status: 'processing',
            ImageJob.started_at: datetime.utcnow(),
            ImageJob.attempts: ImageJob.attempts + 1,
        },
        synchronize_session=False,
    )
    db.session.commit()
    return claimed == 1


def process_job(job_id: str, client: Optional[ImageGenerationClient] = None) -> Optional[ImageJob]:
    """Execute a queued job synchronously (used by the worker)."""
    claimed = claim_job(job_id)
    job: ImageJob | None = db.session.get(ImageJob, job_id)
    if job is None:
        raise ValueError("job not found")
    if not claimed:
        return job
    db.session.refresh(job)

    client = client or ImageGenerationClient(current_app.config.get('GEMINI_API_KEY'))

    try:
        image_bytes, mime_type = client.generate(
            job.prompt_text,
            job.model,
            generation_type=job.generation_type,
            background_change=bool(job.background_change),
            source_image_base64=job.source_image_base64,
            source_image_mime_type=job.source_image_mime_type,
        )

        image = GeneratedImage(
            user_id=job.user_id,
            prompt=job.prompt_text,
            generation_type=job.generation_type,
            model=job.model,
        )
        db.session.add(image)
        db.session.flush()

        object_path = f"{job.user_id}/{image.id}.{MIME_EXTENSIONS.get(mime_type, 'png')}"
        if not upload_file(image_bytes, object_path):
            raise RuntimeError("failed to store generated image")
        image.storage_path = object_path
        image.image_url = public_url(object_path)

        job.status = 'succeeded'
        job.result_image_id = image.id
        job.error_message = None
        job.source_image_base64 = None
        job.completed_at = datetime.utcnow()
        db.session.commit()
        logger.info(f"Image job {job.id} succeeded")
        return job
    except Exception as e:
        db.session.rollback()
        job = db.session.get(ImageJob, job_id)
        job.error_message = str(e)
        if job.attempts < MAX_ATTEMPTS:
            job.status = 'queued'
            db.session.commit()
            logger.warning(f"Image job {job.id} attempt {job.attempts} failed, will retry: {e}")
            return job

        job.status = 'failed'
        job.completed_at = datetime.utcnow()
        db.session.commit()
        logger.error(f"Image job {job.id} failed after {job.attempts} attempts: {e}")
        _refund_job(job)
        return job


def process_queue(limit: int = 20, client: Optional[ImageGenerationClient] = None) -> Dict[str, int]:
    """Run up to ``limit`` queued jobs, oldest first."""
    job_ids = [
        job.id for job in ImageJob.query.filter_by(status='queued')
        .order_by(ImageJob.created_at.asc()).limit(limit).all()
    ]
    counts = {'processed': 0, 'succeeded': 0, 'failed': 0, 'retrying': 0}
    for job_id in job_ids:
        job = process_job(job_id, client=client)
        counts['processed'] += 1
        if job.status == 'succeeded':
            counts['succeeded'] += 1
        elif job.status == 'failed':
            counts['failed'] += 1
        else:
            counts['retrying'] += 1
    return counts


def list_in_progress(user_id: str, include_recent: bool = False, now: Optional[datetime] = None) -> List[ImageJob]:
    now = now or datetime.utcnow()
    jobs = ImageJob.query.filter(
        ImageJob.user_id == user_id,
        ImageJob.status.in_(('queued', 'processing')),
    ).order_by(ImageJob.created_at.desc()).all()

    if include_recent:
        recent = ImageJob.query.filter(
            ImageJob.user_id == user_id,
            ImageJob.status.in_(('succeeded', 'failed')),
            ImageJob.completed_at >= now - RECENT_WINDOW,
        ).order_by(ImageJob.completed_at.desc()).limit(RECENT_LIMIT).all()
        jobs.extend(recent)
    return jobs
