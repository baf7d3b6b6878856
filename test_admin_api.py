"""
Tests for the admin API.
"""
import csv
import io
from datetime import datetime, timedelta

from app import db
from conftest import login
from models import (User, GeneratedImage, AdminAuditLog, Notification, FreePercoinBatch,
                    AccountDeletionRequest)
from utils.percoin_ledger import record_purchase, grant_promo, deduct_percoins, get_balance


def create_post(app, owner_id, **fields):
    with app.app_context():
        post = GeneratedImage(user_id=owner_id, prompt='a scarf', is_posted=True,
                              posted_at=datetime.utcnow(), **fields)
        db.session.add(post)
        db.session.commit()
        return post.id


def audit_actions(app):
    with app.app_context():
        return [e.action_type for e in AdminAuditLog.query.order_by(AdminAuditLog.id).all()]


class TestAccess:
    def test_anonymous_gets_401(self, client):
        response = client.get('/api/admin/users')
        assert response.status_code == 401

    def test_non_admin_gets_403(self, authenticated_client):
        assert authenticated_client.get('/api/admin/users').status_code == 403
        assert authenticated_client.post('/api/admin/bonus/grant', json={}).status_code == 403

    def test_admin_user_ids_config(self, app, client, test_user):
        app.config['ADMIN_USER_IDS'] = [test_user]
        login(client, test_user)
        assert client.get('/api/admin/users').status_code == 200


class TestUsers:
    def test_list_search_and_sort(self, admin_client, test_user, other_user):
        data = admin_client.get('/api/admin/users?sort=nickname_asc').get_json()
        assert [u['nickname'] for u in data['users']] == ['admin', 'alice', 'bob']
        assert data['total'] == 3

        data = admin_client.get('/api/admin/users?q=ALI').get_json()
        assert [u['id'] for u in data['users']] == [test_user]

        assert admin_client.get('/api/admin/users?sort=random').status_code == 400
        assert admin_client.get('/api/admin/users?limit=0').status_code == 400

    def test_search_requires_two_characters(self, admin_client, other_user):
        assert admin_client.get('/api/admin/users/search?q=b').status_code == 400
        users = admin_client.get('/api/admin/users/search?q=bo').get_json()['users']
        assert [u['id'] for u in users] == [other_user]

    def test_user_detail(self, app, admin_client, test_user):
        with app.app_context():
            record_purchase(test_user, 100, stripe_payment_intent_id='pi_detail')
        create_post(app, test_user)

        data = admin_client.get(f'/api/admin/users/{test_user}').get_json()
        assert data['user']['email'] == 'alice@example.com'
        assert data['balance']['total'] == 100
        assert len(data['posts']) == 1
        assert len(data['transactions']) == 1
        assert data['deletion_scheduled_for'] is None
        assert admin_client.get('/api/admin/users/missing').status_code == 404

    def test_suspend_and_reactivate(self, app, admin_client, admin_user, test_user):
        assert admin_client.post(f'/api/admin/users/{admin_user}/suspend').status_code == 400

        response = admin_client.post(f'/api/admin/users/{test_user}/suspend', json={'reason': 'spam'})
        assert response.get_json()['user']['deactivated_at'] is not None

        with app.app_context():
            db.session.add(AccountDeletionRequest(
                user_id=test_user, scheduled_for=datetime.utcnow() + timedelta(days=30)))
            db.session.commit()

        admin_client.post(f'/api/admin/users/{test_user}/reactivate')
        with app.app_context():
            assert db.session.get(User, test_user).deactivated_at is None
            assert AccountDeletionRequest.query.filter_by(user_id=test_user).one().status == 'cancelled'
            entry = AdminAuditLog.query.filter_by(action_type='user_suspend').one()
            assert entry.target_id == test_user
            assert entry.meta == {'reason': 'spam'}
        assert audit_actions(app) == ['user_suspend', 'user_reactivate']


class TestPercoinAdjustments:
    def test_grant_bonus(self, app, admin_client, test_user):
        response = admin_client.post('/api/admin/bonus/grant', json={
            'user_id': test_user, 'amount': 40, 'reason': 'Campaign winner',
        })
        data = response.get_json()
        assert data['success'] is True
        assert data['new_balance'] == 40
        assert data['amount_granted'] == 40

        with app.app_context():
            assert Notification.query.filter_by(user_id=test_user, type='bonus').count() == 1
            assert FreePercoinBatch.query.filter_by(user_id=test_user).one().source == 'admin_bonus'
            entry = AdminAuditLog.query.filter_by(action_type='bonus_grant').one()
            assert entry.meta == {'amount': 40, 'reason': 'Campaign winner'}

    def test_grant_bonus_without_notification(self, app, admin_client, test_user):
        admin_client.post('/api/admin/bonus/grant', json={
            'user_id': test_user, 'amount': 5, 'reason': 'Quiet grant', 'send_notification': False,
        })
        with app.app_context():
            assert Notification.query.count() == 0

    def test_grant_bonus_validation(self, admin_client, test_user):
        post = lambda body: admin_client.post('/api/admin/bonus/grant', json=body).status_code
        assert post({'user_id': 'missing', 'amount': 5, 'reason': 'x'}) == 404
        assert post({'user_id': test_user, 'amount': 0, 'reason': 'x'}) == 400
        assert post({'user_id': test_user, 'amount': 2.5, 'reason': 'x'}) == 400
        assert post({'user_id': test_user, 'amount': True, 'reason': 'x'}) == 400
        assert post({'user_id': test_user, 'amount': 5, 'reason': '   '}) == 400
        assert post({'user_id': test_user, 'amount': 5, 'reason': 'x' * 501}) == 400
        assert post({'user_id': test_user, 'amount': 5, 'reason': 'x', 'send_notification': 'yes'}) == 400

    def test_deduction_is_idempotent(self, app, admin_client, test_user):
        with app.app_context():
            record_purchase(test_user, 100, stripe_payment_intent_id='pi_deduct')

        body = {'user_id': test_user, 'amount': 30, 'reason': 'Chargeback', 'idempotency_key': 'abc-1'}
        first = admin_client.post('/api/admin/deduction', json=body).get_json()
        second = admin_client.post('/api/admin/deduction', json=body).get_json()
        assert first == {'success': True, 'new_balance': 70, 'amount_deducted': 30, 'duplicate': False}
        assert second['duplicate'] is True
        assert second['new_balance'] == 70
        assert audit_actions(app) == ['deduction']

    def test_same_key_for_different_users(self, app, admin_client, test_user, other_user):
        with app.app_context():
            record_purchase(test_user, 100, stripe_payment_intent_id='pi_deduct_a')
            record_purchase(other_user, 100, stripe_payment_intent_id='pi_deduct_b')

        for user_id in (test_user, other_user):
            body = {'user_id': user_id, 'amount': 10, 'reason': 'Chargeback', 'idempotency_key': 'batch-7'}
            data = admin_client.post('/api/admin/deduction', json=body).get_json()
            assert data['duplicate'] is False
            assert data['new_balance'] == 90


    def test_deduction_validation(self, admin_client, test_user):
        body = {'user_id': test_user, 'amount': 30, 'reason': 'Chargeback'}
        assert admin_client.post('/api/admin/deduction', json=body).status_code == 400

        body['idempotency_key'] = 'abc-2'
        response = admin_client.post('/api/admin/deduction', json=body)
        assert response.status_code == 400
        assert response.get_json()['code'] == 'insufficient_percoins'


class TestDefaults:
    def test_bonus_defaults(self, app, admin_client):
        defaults = admin_client.get('/api/admin/bonus-defaults').get_json()['defaults']
        assert {d['source']: d['amount'] for d in defaults}['signup_bonus'] == 50

        response = admin_client.patch('/api/admin/bonus-defaults', json={
            'defaults': [{'source': 'signup_bonus', 'amount': 80}],
        })
        assert response.status_code == 200
        assert {d['source']: d['amount'] for d in response.get_json()['defaults']}['signup_bonus'] == 80
        assert audit_actions(app) == ['bonus_defaults_update']

        assert admin_client.patch('/api/admin/bonus-defaults', json={
            'defaults': [{'source': 'bogus', 'amount': 80}],
        }).status_code == 400

    def test_streak_defaults(self, admin_client):
        schedule = admin_client.get('/api/admin/streak-defaults').get_json()['defaults']
        assert schedule[0] == {'streak_day': 1, 'amount': 10}

        updated = [dict(entry, amount=15) for entry in schedule]
        response = admin_client.patch('/api/admin/streak-defaults', json={'defaults': updated})
        assert all(entry['amount'] == 15 for entry in response.get_json()['defaults'])

        assert admin_client.patch('/api/admin/streak-defaults', json={'defaults': updated[:3]}).status_code == 400


class TestModeration:
    def test_decision_endpoint(self, app, admin_client, test_user):
        post_id = create_post(app, test_user, moderation_status='pending')

        queue = admin_client.get('/api/admin/moderation/queue').get_json()['items']
        assert [item['id'] for item in queue] == [post_id]

        response = admin_client.post(f'/api/admin/moderation/posts/{post_id}/decision',
                                     json={'action': 'reject', 'reason': 'nudity'})
        assert response.get_json()['post']['moderation_status'] == 'removed'

        assert admin_client.post('/api/admin/moderation/posts/missing/decision',
                                 json={'action': 'approve'}).status_code == 404
        assert admin_client.post(f'/api/admin/moderation/posts/{post_id}/decision',
                                 json={'action': 'ban'}).status_code == 400

    def test_report_listings(self, app, client, admin_user, test_user, other_user):
        post_id = create_post(app, test_user)
        login(client, other_user)
        client.post('/api/reports/posts', json={'postId': post_id, 'categoryId': 'other', 'subcategoryId': 'other'})

        login(client, admin_user)
        aggregated = client.get('/api/admin/reports/aggregated').get_json()
        assert aggregated['items'][0]['postId'] == post_id
        reports = client.get('/api/admin/reports').get_json()
        assert reports['total'] == 1


class TestAuditLog:
    def test_filters_and_export(self, app, admin_client, admin_user, test_user):
        admin_client.post(f'/api/admin/users/{test_user}/suspend', json={'reason': 'said "hi", twice'})
        admin_client.post(f'/api/admin/users/{test_user}/reactivate')

        data = admin_client.get('/api/admin/audit-log').get_json()
        assert data['total'] == 2
        assert data['items'][0]['action_type'] == 'user_reactivate'

        data = admin_client.get('/api/admin/audit-log?action_type=user_suspend').get_json()
        assert [i['action_type'] for i in data['items']] == ['user_suspend']

        tomorrow = (datetime.utcnow() + timedelta(days=1)).strftime('%Y-%m-%d')
        assert admin_client.get(f'/api/admin/audit-log?date_from={tomorrow}').get_json()['total'] == 0
        assert admin_client.get('/api/admin/audit-log?date_from=yesterday').status_code == 400

        response = admin_client.get('/api/admin/audit-log/export?action_type=user_suspend')
        assert response.mimetype == 'text/csv'
        assert 'attachment; filename=admin-audit-log-' in response.headers['Content-Disposition']
        rows = list(csv.reader(io.StringIO(response.get_data(as_text=True))))
        assert rows[0][3] == 'action_type'
        assert len(rows) == 2
        assert rows[1][2] == admin_user
        assert 'said \\"hi\\", twice' in rows[1][6]


class TestReporting:
    def test_credits_summary_splits_buckets(self, app, admin_client, test_user):
        with app.app_context():
            record_purchase(test_user, 100, stripe_payment_intent_id='pi_summary')
            grant_promo(test_user, 20, 'signup_bonus')
            deduct_percoins(test_user, 30)
        admin_client.post('/api/admin/deduction', json={
            'user_id': test_user, 'amount': 5, 'reason': 'Correction', 'idempotency_key': 'sum-1',
        })

        data = admin_client.get('/api/admin/credits-summary').get_json()
        row = data['users'][0]
        assert row['user_id'] == test_user
        assert row['nickname'] == 'alice'
        assert row['paid_purchased'] == 100
        assert row['promo_granted'] == 20
        assert row['promo_consumed'] == 20
        assert row['paid_consumed'] == 10
        assert row['consumption_unknown'] == 0
        assert row['admin_deducted'] == 5
        assert data['totals']['paid_purchased'] == 100

    def test_dashboard(self, app, admin_client, test_user):
        create_post(app, test_user)
        create_post(app, test_user, moderation_status='pending')
        with app.app_context():
            record_purchase(test_user, 100, stripe_payment_intent_id='pi_dash')

        data = admin_client.get('/api/admin/dashboard').get_json()
        assert data['users']['total'] == 2
        assert data['posts']['total'] == 2
        assert data['posts']['pending_moderation'] == 1
        assert data['percoins']['paid_outstanding'] == 100
        assert data['jobs'] == {'queued': 0, 'processing': 0, 'succeeded': 0, 'failed': 0}

    def test_expiration_targets(self, app, admin_client, test_user, other_user):
        now = datetime.utcnow()
        with app.app_context():
            db.session.add(FreePercoinBatch(user_id=test_user, source='admin_bonus', amount=10,
                                            remaining_amount=10, expire_at=now + timedelta(days=3)))
            db.session.add(FreePercoinBatch(user_id=other_user, source='admin_bonus', amount=10,
                                            remaining_amount=10, expire_at=now + timedelta(days=20)))
            db.session.commit()

        targets = admin_client.get('/api/admin/free-percoin/expiration-targets').get_json()['targets']
        assert [t['user_id'] for t in targets] == [test_user]
        assert targets[0]['expiring_amount'] == 10

        targets = admin_client.get('/api/admin/free-percoin/expiration-targets?days=31').get_json()['targets']
        assert len(targets) == 2
        assert admin_client.get('/api/admin/free-percoin/expiration-targets?days=32').status_code == 400
