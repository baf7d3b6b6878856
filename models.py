import uuid
from datetime import datetime
from flask import current_app
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from app import db


def new_uuid():
    return str(uuid.uuid4())


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(256))
    auth_provider = db.Column(db.String(30), default='email', nullable=False)
    nickname = db.Column(db.String(50), nullable=False)
    bio = db.Column(db.Text)
    avatar_url = db.Column(db.String(500))
    is_admin = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deactivated_at = db.Column(db.DateTime)

    # Bonus bookkeeping
    referral_code = db.Column(db.String(20), unique=True)
    referred_by_id = db.Column(db.String(36), db.ForeignKey('users.id'))
    first_login_at = db.Column(db.DateTime)
    tutorial_completed_at = db.Column(db.DateTime)
    streak_days = db.Column(db.Integer, default=0, nullable=False)
    last_streak_login_at = db.Column(db.DateTime)
    last_daily_post_bonus_at = db.Column(db.DateTime)

    # Relationships
    images = db.relationship('GeneratedImage', back_populates='owner', lazy='dynamic')
    comments = db.relationship('Comment', back_populates='author', lazy='dynamic')
    credits = db.relationship('UserCredits', back_populates='user', uselist=False)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    @property
    def is_email_user(self):
        return self.auth_provider == 'email'

    @property
    def is_deactivated(self):
        return self.deactivated_at is not None

    @property
    def is_site_admin(self):
        """Admins come from the users table or the ADMIN_USER_IDS setting."""
        if self.is_admin:
            return True
        return self.id in current_app.config.get('ADMIN_USER_IDS', [])

    def to_public_dict(self):
        return {
            'id': self.id,
            'nickname': self.nickname,
            'bio': self.bio,
            'avatar_url': self.avatar_url,
        }

    def __repr__(self):
        return f'<User {self.nickname}>'


class UserCredits(db.Model):
    """Cached percoin balances. Only utils.percoin_ledger writes these."""
    __tablename__ = 'user_credits'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), unique=True, nullable=False)
    balance = db.Column(db.Integer, default=0, nullable=False)
    paid_balance = db.Column(db.Integer, default=0, nullable=False)
    promo_balance = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User', back_populates='credits')

    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='ck_user_credits_balance_non_negative'),
        db.CheckConstraint('paid_balance >= 0', name='ck_user_credits_paid_non_negative'),
        db.CheckConstraint('promo_balance >= 0', name='ck_user_credits_promo_non_negative'),
    )


class CreditTransaction(db.Model):
    __tablename__ = 'credit_transactions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    transaction_type = db.Column(db.String(30), nullable=False, index=True)
    stripe_payment_intent_id = db.Column(db.String(255), unique=True)
    related_generation_id = db.Column(db.String(36), index=True)
    idempotency_key = db.Column(db.String(255), unique=True)
    expire_at = db.Column(db.DateTime)
    meta = db.Column('metadata', db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'amount': self.amount,
            'transaction_type': self.transaction_type,
            'related_generation_id': self.related_generation_id,
            'expire_at': self.expire_at.isoformat() if self.expire_at else None,
            'metadata': self.meta or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class FreePercoinBatch(db.Model):
    __tablename__ = 'free_percoin_batches'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('credit_transactions.id'))
    source = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    remaining_amount = db.Column(db.Integer, nullable=False)
    granted_at = db.Column(db.DateTime, default=datetime.utcnow)
    expire_at = db.Column(db.DateTime, nullable=False, index=True)

    __table_args__ = (
        db.CheckConstraint('remaining_amount >= 0', name='ck_free_batch_remaining_non_negative'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'source': self.source,
            'amount': self.amount,
            'remaining_amount': self.remaining_amount,
            'granted_at': self.granted_at.isoformat() if self.granted_at else None,
            'expire_at': self.expire_at.isoformat(),
        }


class PercoinBonusDefault(db.Model):
    __tablename__ = 'percoin_bonus_defaults'

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.String(30), unique=True, nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PercoinStreakDefault(db.Model):
    __tablename__ = 'percoin_streak_defaults'

    id = db.Column(db.Integer, primary_key=True)
    streak_day = db.Column(db.Integer, unique=True, nullable=False)
    amount = db.Column(db.Integer, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class GeneratedImage(db.Model):
    """A generated image; once posted it becomes a feed post."""
    __tablename__ = 'generated_images'

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    image_url = db.Column(db.String(500))
    storage_path = db.Column(db.String(500))
    prompt = db.Column(db.Text)
    generation_type = db.Column(db.String(30), default='coordinate')
    model = db.Column(db.String(50))
    caption = db.Column(db.String(500))
    is_posted = db.Column(db.Boolean, default=False, nullable=False)
    posted_at = db.Column(db.DateTime, index=True)
    view_count = db.Column(db.Integer, default=0, nullable=False)
    moderation_status = db.Column(db.String(20), default='visible', nullable=False)
    moderation_reason = db.Column(db.String(300))
    moderation_updated_at = db.Column(db.DateTime)
    moderation_approved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    owner = db.relationship('User', back_populates='images')
    likes = db.relationship('Like', back_populates='image', lazy='dynamic')
    comments = db.relationship('Comment', back_populates='image', lazy='dynamic')

    @property
    def is_visible(self):
        return self.moderation_status == 'visible'

    def to_dict(self, like_count=None, comment_count=None):
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'image_url': self.image_url,
            'prompt': self.prompt,
            'generation_type': self.generation_type,
            'model': self.model,
            'caption': self.caption,
            'is_posted': self.is_posted,
            'posted_at': self.posted_at.isoformat() if self.posted_at else None,
            'view_count': self.view_count,
            'moderation_status': self.moderation_status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if self.owner is not None:
            data['user'] = self.owner.to_public_dict()
        if like_count is not None:
            data['like_count'] = like_count
        if comment_count is not None:
            data['comment_count'] = comment_count
        return data


class Like(db.Model):
    __tablename__ = 'likes'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    image_id = db.Column(db.String(36), db.ForeignKey('generated_images.id'), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    image = db.relationship('GeneratedImage', back_populates='likes')

    __table_args__ = (db.UniqueConstraint('user_id', 'image_id', name='unique_user_image_like'),)


class Comment(db.Model):
    __tablename__ = 'comments'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    image_id = db.Column(db.String(36), db.ForeignKey('generated_images.id'), nullable=False, index=True)
    content = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    edited_at = db.Column(db.DateTime)

    author = db.relationship('User', back_populates='comments')
    image = db.relationship('GeneratedImage', back_populates='comments')

    def to_dict(self):
        return {
            'id': self.id,
            'image_id': self.image_id,
            'content': self.content,
            'user': self.author.to_public_dict() if self.author else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'edited_at': self.edited_at.isoformat() if self.edited_at else None,
        }


class Follow(db.Model):
    __tablename__ = 'follows'

    id = db.Column(db.Integer, primary_key=True)
    follower_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    followee_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (db.UniqueConstraint('follower_id', 'followee_id', name='unique_follow_relationship'),)


class UserBlock(db.Model):
    __tablename__ = 'user_blocks'

    id = db.Column(db.Integer, primary_key=True)
    blocker_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    blocked_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    blocked = db.relationship('User', foreign_keys=[blocked_id])

    __table_args__ = (db.UniqueConstraint('blocker_id', 'blocked_id', name='unique_user_block'),)


class PostReport(db.Model):
    __tablename__ = 'post_reports'

    id = db.Column(db.Integer, primary_key=True)
    reporter_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    post_id = db.Column(db.String(36), db.ForeignKey('generated_images.id'), nullable=False, index=True)
    category_id = db.Column(db.String(30), nullable=False)
    subcategory_id = db.Column(db.String(30), nullable=False)
    details = db.Column(db.String(300))
    weight = db.Column(db.Float, default=1.0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    post = db.relationship('GeneratedImage')

    __table_args__ = (db.UniqueConstraint('reporter_id', 'post_id', name='unique_reporter_post'),)


class ModerationAuditLog(db.Model):
    __tablename__ = 'moderation_audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    post_id = db.Column(db.String(36), nullable=False, index=True)
    actor_id = db.Column(db.String(36))
    action = db.Column(db.String(30), nullable=False)  # pending, approve, reject
    reason = db.Column(db.String(300))
    meta = db.Column('metadata', db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class AdminAuditLog(db.Model):
    __tablename__ = 'admin_audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    admin_user_id = db.Column(db.String(36), nullable=False)
    action_type = db.Column(db.String(50), nullable=False, index=True)
    target_type = db.Column(db.String(30))
    target_id = db.Column(db.String(64))
    meta = db.Column('metadata', db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'admin_user_id': self.admin_user_id,
            'action_type': self.action_type,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'metadata': self.meta or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Notification(db.Model):
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    actor_id = db.Column(db.String(36), db.ForeignKey('users.id'))
    type = db.Column(db.String(20), nullable=False)  # like, comment, follow, bonus
    entity_type = db.Column(db.String(20))
    entity_id = db.Column(db.String(64))
    title = db.Column(db.String(200))
    body = db.Column(db.String(500))
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    actor = db.relationship('User', foreign_keys=[actor_id])

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'actor': self.actor.to_public_dict() if self.actor else None,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'title': self.title,
            'body': self.body,
            'is_read': self.is_read,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ImageJob(db.Model):
    __tablename__ = 'image_jobs'

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    prompt_text = db.Column(db.Text, nullable=False)
    input_image_url = db.Column(db.String(500))
    source_image_base64 = db.Column(db.Text)
    source_image_mime_type = db.Column(db.String(50))
    generation_type = db.Column(db.String(30), default='coordinate', nullable=False)
    model = db.Column(db.String(50))
    background_change = db.Column(db.Boolean, default=False)
    status = db.Column(db.String(20), default='queued', nullable=False, index=True)
    result_image_id = db.Column(db.String(36))
    error_message = db.Column(db.Text)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    percoin_cost = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'status': self.status,
            'prompt_text': self.prompt_text,
            'generation_type': self.generation_type,
            'model': self.model,
            'background_change': self.background_change,
            'result_image_id': self.result_image_id,
            'error_message': self.error_message,
            'attempts': self.attempts,
            'percoin_cost': self.percoin_cost,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


class SourceImageStock(db.Model):
    """A user's saved source photo, reusable across generations."""
    __tablename__ = 'source_image_stocks'

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    image_url = db.Column(db.String(500), nullable=False)
    storage_path = db.Column(db.String(500), nullable=False)
    name = db.Column(db.String(255))
    usage_count = db.Column(db.Integer, default=0, nullable=False)
    last_used_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'image_url': self.image_url,
            'storage_path': self.storage_path,
            'name': self.name,
            'usage_count': self.usage_count,
            'last_used_at': self.last_used_at.isoformat() if self.last_used_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class AccountDeletionRequest(db.Model):
    __tablename__ = 'account_deletion_requests'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), unique=True, nullable=False)
    status = db.Column(db.String(20), default='scheduled', nullable=False)  # scheduled, cancelled, completed
    requested_at = db.Column(db.DateTime, default=datetime.utcnow)
    scheduled_for = db.Column(db.DateTime, nullable=False, index=True)
    cancelled_at = db.Column(db.DateTime)


class AccountForfeitureLedger(db.Model):
    """Kept after the user row is gone."""
    __tablename__ = 'account_forfeiture_ledger'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(36), nullable=False)
    email_hash = db.Column(db.String(64), nullable=False)
    paid_balance = db.Column(db.Integer, default=0, nullable=False)
    promo_balance = db.Column(db.Integer, default=0, nullable=False)
    forfeited_at = db.Column(db.DateTime, default=datetime.utcnow)


class Referral(db.Model):
    __tablename__ = 'referrals'

    id = db.Column(db.Integer, primary_key=True)
    referrer_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False)
    referred_id = db.Column(db.String(36), db.ForeignKey('users.id'), unique=True, nullable=False)
    referral_code = db.Column(db.String(20), nullable=False)
    bonus_granted_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
