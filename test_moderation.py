"""
Tests for report submission, weighting, thresholds and admin decisions.
"""
import pytest
from datetime import datetime, timedelta

from app import db
from models import User, GeneratedImage, PostReport, ModerationAuditLog, AdminAuditLog
from moderation_engine import (
    submit_report, withdraw_report, apply_moderation_decision, compute_reporter_weight,
    get_report_threshold, get_aggregated_reports, get_moderation_queue, list_reports,
    reported_post_ids, ReportError, SHORT_WINDOW_LIMIT, DAILY_WINDOW_LIMIT,
)


def make_post(owner_id, posted_at=None, **fields):
    post = GeneratedImage(
        user_id=owner_id,
        image_url='http://testserver/storage/generated-images/x.png',
        prompt='a jacket',
        is_posted=True,
        posted_at=posted_at or datetime.utcnow(),
        **fields
    )
    db.session.add(post)
    db.session.commit()
    return post


def make_reporters(make_user, count, created_at=None):
    ids = [make_user(f'reporter{i}') for i in range(count)]
    if created_at is not None:
        for user_id in ids:
            db.session.get(User, user_id).created_at = created_at
        db.session.commit()
    return [db.session.get(User, user_id) for user_id in ids]


class TestSubmitReport:
    def test_report_is_recorded_and_hidden_for_reporter(self, ctx, test_user, other_user):
        post = make_post(test_user)
        reporter = db.session.get(User, other_user)
        result = submit_report(reporter, post.id, 'spam_fraud', 'spam', 'buy now')
        assert result['isHiddenForReporter'] is True
        assert result['postModerationStatus'] == 'visible'
        assert reported_post_ids(other_user) == [post.id]

    def test_invalid_category_rejected(self, ctx, test_user, other_user):
        post = make_post(test_user)
        with pytest.raises(ReportError) as exc:
            submit_report(db.session.get(User, other_user), post.id, 'spam_fraud', 'gore')
        assert exc.value.status == 400

    def test_own_post_rejected(self, ctx, test_user):
        post = make_post(test_user)
        with pytest.raises(ReportError):
            submit_report(db.session.get(User, test_user), post.id, 'other', 'other')

    def test_unposted_image_is_not_found(self, ctx, test_user, other_user):
        post = make_post(test_user)
        post.is_posted = False
        db.session.commit()
        with pytest.raises(ReportError) as exc:
            submit_report(db.session.get(User, other_user), post.id, 'other', 'other')
        assert exc.value.status == 404

    def test_duplicate_report_rejected(self, ctx, test_user, other_user):
        post = make_post(test_user)
        reporter = db.session.get(User, other_user)
        submit_report(reporter, post.id, 'other', 'other')
        with pytest.raises(ReportError):
            submit_report(reporter, post.id, 'other', 'other')

    def test_details_length_limit(self, ctx, test_user, other_user):
        post = make_post(test_user)
        with pytest.raises(ReportError):
            submit_report(db.session.get(User, other_user), post.id, 'other', 'other', 'x' * 301)

    def test_short_window_rate_limit(self, ctx, test_user, other_user):
        reporter = db.session.get(User, other_user)
        posts = [make_post(test_user) for _ in range(SHORT_WINDOW_LIMIT + 1)]
        for post in posts[:SHORT_WINDOW_LIMIT]:
            submit_report(reporter, post.id, 'other', 'other')
        with pytest.raises(ReportError) as exc:
            submit_report(reporter, posts[-1].id, 'other', 'other')
        assert exc.value.status == 429
        assert exc.value.code == 'REPORT_RATE_LIMIT_SHORT'

    def test_daily_rate_limit(self, ctx, test_user, other_user):
        reporter = db.session.get(User, other_user)
        posts = [make_post(test_user) for _ in range(DAILY_WINDOW_LIMIT + 1)]
        first_at = datetime.utcnow() - timedelta(hours=20)
        # 20 minutes apart, so the 10 minute window never fills up
        for i, post in enumerate(posts[:DAILY_WINDOW_LIMIT]):
            submit_report(reporter, post.id, 'other', 'other', now=first_at + timedelta(minutes=20 * i))
        with pytest.raises(ReportError) as exc:
            submit_report(reporter, posts[-1].id, 'other', 'other')
        assert exc.value.status == 429
        assert exc.value.code == 'REPORT_RATE_LIMIT_DAILY'
        assert exc.value.to_dict() == {'error': 'Daily report limit reached.', 'errorCode': 'REPORT_RATE_LIMIT_DAILY'}

        # Reports older than 24 hours no longer count
        later = first_at + timedelta(hours=24, minutes=1)
        assert submit_report(reporter, posts[-1].id, 'other', 'other', now=later)['isHiddenForReporter'] is True


    def test_withdraw_report(self, ctx, test_user, other_user):
        post = make_post(test_user)
        submit_report(db.session.get(User, other_user), post.id, 'other', 'other')
        assert withdraw_report(other_user, post.id) is True
        assert withdraw_report(other_user, post.id) is False
        assert PostReport.query.count() == 0


class TestWeightsAndThreshold:
    def test_new_account_weighs_half(self, ctx, test_user):
        user = db.session.get(User, test_user)
        assert compute_reporter_weight(user) == 0.5

    def test_trusted_active_poster_capped(self, ctx, test_user):
        user = db.session.get(User, test_user)
        user.created_at = datetime.utcnow() - timedelta(days=60)
        db.session.commit()
        for _ in range(10):
            make_post(test_user)
        assert compute_reporter_weight(user) == 1.5

    def test_threshold_has_floor(self, ctx):
        assert get_report_threshold() == 3

    def test_recent_reports_move_post_to_pending(self, ctx, make_user, test_user):
        post = make_post(test_user)
        reporters = make_reporters(make_user, 3)
        statuses = [submit_report(r, post.id, 'other', 'other')['postModerationStatus'] for r in reporters]
        assert statuses == ['visible', 'visible', 'pending']
        assert post.moderation_reason == 'report_threshold'
        assert ModerationAuditLog.query.filter_by(post_id=post.id, action='pending').count() == 1

    def test_old_weighted_reports_move_post_to_pending(self, ctx, make_user, test_user):
        post = make_post(test_user)
        reporters = make_reporters(make_user, 3, created_at=datetime.utcnow() - timedelta(days=40))
        earlier = datetime.utcnow() - timedelta(hours=2)
        submit_report(reporters[0], post.id, 'other', 'other', now=earlier)
        submit_report(reporters[1], post.id, 'other', 'other', now=earlier)
        # 1.25 * 3 = 3.75 >= 3 even though only one report is recent
        assert submit_report(reporters[2], post.id, 'other', 'other')['postModerationStatus'] == 'pending'


class TestDecisions:
    def test_approve_resets_report_counting(self, ctx, make_user, test_user, admin_user):
        post = make_post(test_user)
        reporters = make_reporters(make_user, 4)
        for reporter in reporters[:3]:
            submit_report(reporter, post.id, 'other', 'other', now=datetime.utcnow() - timedelta(minutes=1))
        assert post.moderation_status == 'pending'

        ok, error, post = apply_moderation_decision(post.id, admin_user, 'approve')
        assert ok and error is None
        assert post.moderation_status == 'visible'

        # Reports made before the approval no longer count
        result = submit_report(reporters[3], post.id, 'other', 'other')
        assert result['postModerationStatus'] == 'visible'
        assert AdminAuditLog.query.filter_by(action_type='moderation_approve').count() == 1

    def test_reject_removes_post(self, ctx, test_user, admin_user):
        post = make_post(test_user)
        ok, _, post = apply_moderation_decision(post.id, admin_user, 'reject', 'copyright')
        assert ok
        assert post.moderation_status == 'removed'
        assert post.moderation_reason == 'copyright'
        entry = AdminAuditLog.query.filter_by(action_type='moderation_reject').one()
        assert entry.target_id == post.id

    def test_invalid_decision(self, ctx, test_user, admin_user):
        post = make_post(test_user)
        assert apply_moderation_decision(post.id, admin_user, 'delete')[0] is False
        assert apply_moderation_decision('missing', admin_user, 'approve')[1] == 'Post not found'


class TestAdminViews:
    def test_queue_and_aggregates(self, ctx, make_user, test_user):
        post = make_post(test_user)
        quiet_post = make_post(test_user)
        reporters = make_reporters(make_user, 3)
        for reporter in reporters:
            submit_report(reporter, post.id, 'sexual', 'adult_sexual')
        submit_report(reporters[0], quiet_post.id, 'other', 'other')

        queue = get_moderation_queue()
        assert [item['id'] for item in queue] == [post.id]
        assert queue[0]['report_count'] == 3

        aggregated = get_aggregated_reports()
        assert aggregated['total'] == 2
        assert aggregated['threshold'] == 3
        by_post = {item['postId']: item for item in aggregated['items']}
        assert by_post[post.id]['overThreshold'] is True
        assert by_post[quiet_post.id]['overThreshold'] is False

        items, total = list_reports()
        assert total == 4
        assert items[0]['categoryLabel'] in ('Sexual content', 'Other')
