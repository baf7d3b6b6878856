"""
Tests for the credits API and the Stripe webhook.

Stripe is mocked; no network calls are made.
"""
from unittest.mock import patch, MagicMock

from app import db
from conftest import login
from models import GeneratedImage, CreditTransaction
from utils.percoin_ledger import record_purchase, grant_promo, get_balance


def create_image(app, owner_id, posted=False):
    with app.app_context():
        image = GeneratedImage(user_id=owner_id, prompt='a coat', is_posted=posted)
        db.session.add(image)
        db.session.commit()
        return image.id


def fund(app, user_id, paid=0, promo=0):
    with app.app_context():
        if paid:
            record_purchase(user_id, paid, stripe_payment_intent_id=f'pi_fund_{user_id}')
        if promo:
            grant_promo(user_id, promo, 'admin_bonus')


class TestReadEndpoints:
    def test_requires_login(self, client):
        response = client.get('/api/credits/balance')
        assert response.status_code == 401
        assert response.get_json() == {'error': 'authentication_required'}

    def test_balance_and_breakdown(self, app, authenticated_client, test_user):
        fund(app, test_user, paid=100, promo=20)
        assert authenticated_client.get('/api/credits/balance').get_json() == {'balance': 120}
        assert authenticated_client.get('/api/credits/breakdown').get_json() == {
            'total': 120, 'regular': 100, 'period_limited': 20,
        }

    def test_transactions_paging_and_filter(self, app, authenticated_client, test_user):
        fund(app, test_user, paid=100, promo=20)
        data = authenticated_client.get('/api/credits/transactions').get_json()
        assert len(data['transactions']) == 2
        assert data['hasMore'] is False

        data = authenticated_client.get('/api/credits/transactions?filter=regular').get_json()
        assert [t['transaction_type'] for t in data['transactions']] == ['purchase']

        assert authenticated_client.get('/api/credits/transactions?filter=bogus').status_code == 400
        assert authenticated_client.get('/api/credits/transactions?offset=-1').status_code == 400

    def test_packages_in_mock_mode(self, client):
        data = client.get('/api/credits/packages').get_json()
        assert data['mode'] == 'mock'
        assert data['packages'][0] == {'id': 'credit-100', 'name': '100 Percoins', 'credits': 100, 'priceYen': 500}

    def test_free_percoin_expiring(self, app, authenticated_client, test_user):
        fund(app, test_user, promo=20)
        data = authenticated_client.get('/api/credits/free-percoin-expiring').get_json()
        assert len(data['batches']) == 1
        assert data['batches'][0]['remaining_amount'] == 20
        assert 'expiring_this_month' in data


class TestCheckout:
    def test_missing_and_unknown_package(self, authenticated_client):
        assert authenticated_client.post('/api/credits/checkout', json={}).status_code == 400
        assert authenticated_client.post('/api/credits/checkout', json={'packageId': 'nope'}).status_code == 404

    def test_mock_checkout_and_completion(self, app, authenticated_client, test_user):
        response = authenticated_client.post('/api/credits/checkout', json={'packageId': 'credit-220'})
        data = response.get_json()
        assert data['mode'] == 'mock'
        assert data['checkoutUrl'].startswith('http://testserver/')
        assert 'mockPurchase=1&packageId=credit-220' in data['checkoutUrl']
        assert data['package']['credits'] == 220

        response = authenticated_client.post('/api/credits/mock-complete', json={'packageId': 'credit-220'})
        assert response.status_code == 200
        assert response.get_json()['balance'] == 220

    @patch('routes.credits.get_stripe_client')
    def test_stripe_checkout_session(self, mock_client, app, authenticated_client, test_user):
        app.config['STRIPE_SECRET_KEY'] = 'sk_test_123'
        session = MagicMock(url='https://checkout.stripe.com/c/pay/cs_1', id='cs_1')
        mock_client.return_value.checkout.Session.create.return_value = session

        response = authenticated_client.post('/api/credits/checkout', json={'packageId': 'credit-100'})
        data = response.get_json()
        assert data['mode'] == 'stripe'
        assert data['checkoutUrl'] == session.url
        assert data['sessionId'] == 'cs_1'

        kwargs = mock_client.return_value.checkout.Session.create.call_args.kwargs
        assert kwargs['metadata'] == {'user_id': test_user, 'package_id': 'credit-100'}
        assert kwargs['mode'] == 'payment'

    def test_mock_complete_disabled_with_stripe(self, app, authenticated_client):
        app.config['STRIPE_SECRET_KEY'] = 'sk_test_123'
        response = authenticated_client.post('/api/credits/mock-complete', json={'packageId': 'credit-100'})
        assert response.status_code == 403


class TestConsume:
    def test_validation(self, authenticated_client):
        assert authenticated_client.post('/api/credits/consume', json={'generationId': 'x', 'credits': 0}).status_code == 400
        assert authenticated_client.post('/api/credits/consume', json={'generationId': 'x', 'credits': 5}).status_code == 404

    def test_other_users_image_forbidden(self, app, authenticated_client, other_user):
        image_id = create_image(app, other_user)
        response = authenticated_client.post('/api/credits/consume', json={'generationId': image_id, 'credits': 5})
        assert response.status_code == 403

    def test_insufficient_balance(self, app, authenticated_client, test_user):
        image_id = create_image(app, test_user)
        response = authenticated_client.post('/api/credits/consume', json={'generationId': image_id, 'credits': 5})
        assert response.status_code == 400
        assert response.get_json()['code'] == 'insufficient_percoins'

    def test_successful_consume(self, app, authenticated_client, test_user):
        fund(app, test_user, paid=50)
        image_id = create_image(app, test_user)
        response = authenticated_client.post('/api/credits/consume', json={'generationId': image_id, 'credits': 20})
        assert response.get_json() == {'success': True, 'balance': 30}
        with app.app_context():
            tx = CreditTransaction.query.filter_by(transaction_type='consumption').one()
            assert tx.related_generation_id == image_id
            assert tx.meta['reason'] == 'image_generation'


class TestStripeWebhook:
    def completed_event(self, user_id, payment_intent='pi_hook', package_id='credit-760'):
        return {
            'type': 'checkout.session.completed',
            'data': {'object': {
                'id': 'cs_hook',
                'payment_intent': payment_intent,
                'amount_total': 3000,
                'client_reference_id': user_id,
                'metadata': {'user_id': user_id, 'package_id': package_id},
            }},
        }

    def test_mock_mode_without_secret(self, client):
        response = client.post('/api/stripe/webhook', data=b'{}')
        assert response.get_json() == {'mode': 'mock', 'handled': True}

    @patch('routes.webhooks.get_stripe_client')
    def test_bad_signature(self, mock_client, app, client):
        app.config['STRIPE_WEBHOOK_SECRET'] = 'whsec_test'
        app.config['STRIPE_SECRET_KEY'] = 'sk_test_123'
        mock_client.return_value.Webhook.construct_event.side_effect = ValueError('bad signature')
        response = client.post('/api/stripe/webhook', data=b'{}', headers={'Stripe-Signature': 'nope'})
        assert response.status_code == 400

    @patch('routes.webhooks.get_stripe_client')
    def test_checkout_completed_credits_once(self, mock_client, app, client, test_user):
        app.config['STRIPE_WEBHOOK_SECRET'] = 'whsec_test'
        app.config['STRIPE_SECRET_KEY'] = 'sk_test_123'
        mock_client.return_value.Webhook.construct_event.return_value = self.completed_event(test_user)

        first = client.post('/api/stripe/webhook', data=b'{}', headers={'Stripe-Signature': 't=1,v1=x'})
        second = client.post('/api/stripe/webhook', data=b'{}', headers={'Stripe-Signature': 't=1,v1=x'})
        assert first.get_json()['handled'] is True
        assert second.status_code == 200

        with app.app_context():
            assert get_balance(test_user) == 760
            assert CreditTransaction.query.filter_by(stripe_payment_intent_id='pi_hook').count() == 1

    @patch.dict('os.environ', {'STRIPE_PRICE_CREDIT_1600': 'price_1600'})
    @patch('routes.webhooks.get_stripe_client')
    def test_coins_from_line_item_price(self, mock_client, app, client, test_user):
        app.config['STRIPE_WEBHOOK_SECRET'] = 'whsec_test'
        app.config['STRIPE_SECRET_KEY'] = 'sk_test_123'
        event = self.completed_event(test_user, payment_intent='pi_price', package_id=None)
        stripe_mock = mock_client.return_value
        stripe_mock.Webhook.construct_event.return_value = event
        stripe_mock.checkout.Session.list_line_items.return_value = {'data': [{'price': {'id': 'price_1600'}}]}

        client.post('/api/stripe/webhook', data=b'{}', headers={'Stripe-Signature': 't=1,v1=x'})
        with app.app_context():
            assert get_balance(test_user) == 1600

    @patch('routes.webhooks.get_stripe_client')
    def test_other_events_ignored(self, mock_client, app, client):
        app.config['STRIPE_WEBHOOK_SECRET'] = 'whsec_test'
        app.config['STRIPE_SECRET_KEY'] = 'sk_test_123'
        mock_client.return_value.Webhook.construct_event.return_value = {'type': 'invoice.paid', 'data': {'object': {}}}
        response = client.post('/api/stripe/webhook', data=b'{}', headers={'Stripe-Signature': 't=1,v1=x'})
        assert response.get_json() == {'received': True, 'handled': False}


def test_me_returns_logged_in_user(app, client, test_user):
    login(client, test_user)
    assert client.get('/api/auth/me').get_json()['user']['id'] == test_user
