"""
Tests for the percoin ledger: buckets, spend order, expiry, idempotency.

Run with: pytest test_percoin_ledger.py -v
"""
import pytest
from datetime import datetime, timedelta

from app import db
from models import CreditTransaction, FreePercoinBatch, UserCredits, AccountForfeitureLedger, User
from utils.jst import end_of_jst_month, jst_date, previous_week_range, previous_month_range
from utils.percoin_ledger import (
    apply_transaction, record_purchase, deduct_percoins, refund_percoins, grant_promo,
    grant_admin_bonus, deduct_percoins_admin, expire_batches, get_breakdown, get_balance,
    forfeit_account, hash_email, list_transactions, list_expiring_batches,
    expiration_notification_targets, promo_expiry_for,
    InvalidAmountError, InsufficientPercoinsError, DuplicateOperationError,
)


class TestBalances:
    def test_new_user_has_zero_balance(self, ctx, test_user):
        assert get_breakdown(test_user) == {'total': 0, 'regular': 0, 'period_limited': 0}

    def test_purchase_goes_to_paid_bucket(self, ctx, test_user):
        result = record_purchase(test_user, 220, stripe_payment_intent_id='pi_1')
        assert result.balance == 220
        assert not result.duplicate
        assert get_breakdown(test_user) == {'total': 220, 'regular': 220, 'period_limited': 0}

    def test_promo_creates_expiring_batch(self, ctx, test_user):
        now = datetime(2025, 1, 15, 3, 0)
        grant_promo(test_user, 50, 'signup_bonus')
        batch = FreePercoinBatch.query.filter_by(user_id=test_user).one()
        assert batch.amount == 50
        assert batch.remaining_amount == 50
        assert batch.source == 'signup_bonus'
        assert get_breakdown(test_user)['period_limited'] == 50
        assert promo_expiry_for(now) == end_of_jst_month(now, months_ahead=6)

    def test_promo_expiry_is_end_of_jst_month_six_months_later(self):
        # 2025-01-31 20:00 UTC is already February 1st in Tokyo
        granted = datetime(2025, 1, 31, 20, 0)
        expiry = promo_expiry_for(granted)
        # End of August 2025 JST = 2025-08-31 14:59:59 UTC
        assert expiry == datetime(2025, 8, 31, 14, 59, 59)

    def test_cached_balance_matches_buckets(self, ctx, test_user):
        record_purchase(test_user, 100, stripe_payment_intent_id='pi_cache')
        grant_promo(test_user, 30, 'streak')
        deduct_percoins(test_user, 40)
        account = UserCredits.query.filter_by(user_id=test_user).one()
        assert account.balance == account.paid_balance + account.promo_balance == 90


class TestSpending:
    def test_promo_spent_before_paid(self, ctx, test_user):
        record_purchase(test_user, 100, stripe_payment_intent_id='pi_2')
        grant_promo(test_user, 30, 'signup_bonus')

        result = deduct_percoins(test_user, 50, related_generation_id='gen-1')
        assert result.balance == 80
        assert result.transaction.meta['from_promo'] == 30
        assert result.transaction.meta['from_paid'] == 20
        assert get_breakdown(test_user) == {'total': 80, 'regular': 80, 'period_limited': 0}

    def test_earliest_expiring_batch_spent_first(self, ctx, test_user):
        soon = datetime.utcnow() + timedelta(days=3)
        later = datetime.utcnow() + timedelta(days=90)
        apply_transaction(test_user, 10, 'admin_bonus', expire_at=later)
        apply_transaction(test_user, 10, 'streak', expire_at=soon)

        deduct_percoins(test_user, 5)
        batches = {b.source: b.remaining_amount for b in FreePercoinBatch.query.filter_by(user_id=test_user)}
        assert batches == {'streak': 5, 'admin_bonus': 10}

    def test_insufficient_balance_writes_nothing(self, ctx, test_user):
        grant_promo(test_user, 10, 'signup_bonus')
        with pytest.raises(InsufficientPercoinsError) as exc:
            deduct_percoins(test_user, 11)
        assert exc.value.required == 11
        assert exc.value.available == 10
        assert CreditTransaction.query.filter_by(transaction_type='consumption').count() == 0
        assert get_balance(test_user) == 10

    @pytest.mark.parametrize('amount', [0, -5, 1.5, True, '10'])
    def test_invalid_amounts_rejected(self, ctx, test_user, amount):
        with pytest.raises(InvalidAmountError):
            deduct_percoins(test_user, amount)

    def test_sign_must_match_type(self, ctx, test_user):
        with pytest.raises(InvalidAmountError):
            apply_transaction(test_user, -10, 'purchase')
        with pytest.raises(InvalidAmountError):
            apply_transaction(test_user, 10, 'consumption')
        with pytest.raises(InvalidAmountError):
            apply_transaction(test_user, 10, 'made_up_type')


class TestIdempotency:
    def test_duplicate_payment_intent_is_noop(self, ctx, test_user):
        first = record_purchase(test_user, 100, stripe_payment_intent_id='pi_dup')
        second = record_purchase(test_user, 100, stripe_payment_intent_id='pi_dup')
        assert second.duplicate
        assert second.transaction.id == first.transaction.id
        assert get_balance(test_user) == 100

    def test_duplicate_idempotency_key_raises(self, ctx, test_user):
        grant_promo(test_user, 10, 'signup_bonus', idempotency_key='signup_bonus:x')
        with pytest.raises(DuplicateOperationError) as exc:
            grant_promo(test_user, 10, 'signup_bonus', idempotency_key='signup_bonus:x')
        assert exc.value.existing is not None
        assert get_balance(test_user) == 10

    def test_admin_deduction_applied_once_per_key(self, ctx, test_user, admin_user):
        record_purchase(test_user, 100, stripe_payment_intent_id='pi_adm')
        first = deduct_percoins_admin(test_user, 30, 'abuse', admin_user, 'key-1')
        replay = deduct_percoins_admin(test_user, 30, 'abuse', admin_user, 'key-1')
        assert not first.duplicate
        assert replay.duplicate
        assert get_balance(test_user) == 70
        assert CreditTransaction.query.filter_by(transaction_type='admin_deduction').count() == 1

    def test_admin_deduction_key_is_scoped_per_user(self, ctx, test_user, other_user, admin_user):
        record_purchase(test_user, 100, stripe_payment_intent_id='pi_adm_a')
        record_purchase(other_user, 100, stripe_payment_intent_id='pi_adm_b')
        first = deduct_percoins_admin(test_user, 30, 'abuse', admin_user, 'shared-key')
        second = deduct_percoins_admin(other_user, 30, 'abuse', admin_user, 'shared-key')
        assert not first.duplicate
        assert not second.duplicate
        assert get_balance(test_user) == 70
        assert get_balance(other_user) == 70


class TestRefunds:
    def test_refund_returns_coins_to_original_buckets(self, ctx, test_user):
        record_purchase(test_user, 100, stripe_payment_intent_id='pi_ref')
        grant_promo(test_user, 20, 'signup_bonus')
        consumption = deduct_percoins(test_user, 50).transaction

        result = refund_percoins(consumption)
        assert result.balance == 120
        assert result.transaction.meta['to_paid'] == 30
        assert result.transaction.meta['to_promo'] == 20
        breakdown = get_breakdown(test_user)
        assert breakdown['regular'] == 100
        assert breakdown['period_limited'] == 20

    def test_refund_only_once(self, ctx, test_user):
        record_purchase(test_user, 100, stripe_payment_intent_id='pi_ref2')
        consumption = deduct_percoins(test_user, 20).transaction
        refund_percoins(consumption)
        again = refund_percoins(consumption)
        assert again.duplicate
        assert get_balance(test_user) == 100

    def test_only_consumptions_refundable(self, ctx, test_user):
        purchase = record_purchase(test_user, 100, stripe_payment_intent_id='pi_ref3').transaction
        with pytest.raises(InvalidAmountError):
            refund_percoins(purchase)


class TestExpiration:
    def test_expired_batches_excluded_from_balance(self, ctx, test_user):
        apply_transaction(test_user, 40, 'admin_bonus', expire_at=datetime.utcnow() + timedelta(days=1))
        later = datetime.utcnow() + timedelta(days=2)
        assert get_balance(test_user, now=later) == 0

    def test_expire_batches_records_expiration(self, ctx, test_user):
        apply_transaction(test_user, 40, 'admin_bonus', expire_at=datetime.utcnow() + timedelta(days=1))
        record_purchase(test_user, 10, stripe_payment_intent_id='pi_exp')

        expired = expire_batches(now=datetime.utcnow() + timedelta(days=2))
        assert expired == 40
        tx = CreditTransaction.query.filter_by(transaction_type='expiration').one()
        assert tx.amount == -40
        account = UserCredits.query.filter_by(user_id=test_user).one()
        assert account.promo_balance == 0
        assert account.balance == 10

    def test_spend_sweeps_expired_first(self, ctx, test_user):
        apply_transaction(test_user, 40, 'admin_bonus', expire_at=datetime.utcnow() + timedelta(seconds=1))
        with pytest.raises(InsufficientPercoinsError):
            apply_transaction(test_user, -10, 'consumption', now=datetime.utcnow() + timedelta(days=1))

    def test_list_expiring_batches(self, ctx, test_user):
        now = datetime(2025, 3, 10, 0, 0)
        this_month = end_of_jst_month(now) - timedelta(days=1)
        apply_transaction(test_user, 15, 'streak', expire_at=this_month, now=now)
        apply_transaction(test_user, 25, 'admin_bonus', expire_at=now + timedelta(days=120), now=now)

        batches, expiring = list_expiring_batches(test_user, now=now)
        assert [b.remaining_amount for b in batches] == [15, 25]
        assert expiring == 15

    def test_expiration_notification_targets(self, ctx, test_user, other_user):
        now = datetime.utcnow()
        apply_transaction(test_user, 15, 'streak', expire_at=now + timedelta(days=3))
        apply_transaction(other_user, 15, 'streak', expire_at=now + timedelta(days=30))

        targets = expiration_notification_targets(days=7, now=now)
        assert [t['user_id'] for t in targets] == [test_user]
        assert targets[0]['expiring_amount'] == 15


class TestAdminAndForfeiture:
    def test_admin_bonus_notifies_user(self, ctx, test_user, admin_user):
        from models import Notification
        result = grant_admin_bonus(test_user, 25, 'event prize', admin_user)
        assert result.balance == 25
        notification = Notification.query.filter_by(user_id=test_user).one()
        assert notification.type == 'bonus'

    def test_admin_bonus_without_notification(self, ctx, test_user, admin_user):
        from models import Notification
        grant_admin_bonus(test_user, 25, 'quiet', admin_user, send_notification=False)
        assert Notification.query.filter_by(user_id=test_user).count() == 0

    def test_forfeit_account_records_and_zeroes_balance(self, ctx, test_user):
        record_purchase(test_user, 100, stripe_payment_intent_id='pi_forf')
        grant_promo(test_user, 20, 'signup_bonus')
        user = db.session.get(User, test_user)

        entry = forfeit_account(user, 'salt')
        db.session.commit()

        assert entry.paid_balance == 100
        assert entry.promo_balance == 20
        assert entry.email_hash == hash_email('ALICE@example.com ', 'salt')
        assert AccountForfeitureLedger.query.count() == 1
        assert get_balance(test_user) == 0
        assert CreditTransaction.query.filter_by(transaction_type='forfeiture').one().amount == -120

    def test_forfeit_account_without_transaction(self, ctx, test_user):
        record_purchase(test_user, 100, stripe_payment_intent_id='pi_forf_purge')
        user = db.session.get(User, test_user)

        entry = forfeit_account(user, 'salt', record_transaction=False)
        db.session.commit()

        assert entry.paid_balance == 100
        assert CreditTransaction.query.filter_by(transaction_type='forfeiture').count() == 0


class TestTransactionHistory:
    def test_filters_and_paging(self, ctx, test_user):
        record_purchase(test_user, 500, stripe_payment_intent_id='pi_hist')
        grant_promo(test_user, 10, 'signup_bonus')
        for i in range(35):
            deduct_percoins(test_user, 1, related_generation_id=f'gen-{i}')

        items, has_more = list_transactions(test_user, 'all', 0)
        assert len(items) == 30
        assert has_more

        items, has_more = list_transactions(test_user, 'all', 30)
        assert len(items) == 7
        assert not has_more

        regular, _ = list_transactions(test_user, 'regular', 0)
        assert [t.transaction_type for t in regular] == ['purchase']

        limited, _ = list_transactions(test_user, 'period_limited', 0)
        assert [t.transaction_type for t in limited] == ['signup_bonus']

        usage, _ = list_transactions(test_user, 'usage', 0, limit=100)
        assert len(usage) == 35


def test_jst_date_rolls_over_at_fifteen_utc():
    assert jst_date(datetime(2025, 1, 1, 14, 59)) == datetime(2025, 1, 1).date()
    assert jst_date(datetime(2025, 1, 1, 15, 0)) == datetime(2025, 1, 2).date()


def test_previous_week_runs_sunday_to_sunday_in_jst():
    # Wednesday 2025-03-12 12:00 JST
    start, end = previous_week_range(datetime(2025, 3, 12, 3, 0))
    assert start == datetime(2025, 3, 1, 15, 0)
    assert end == datetime(2025, 3, 8, 15, 0)

    # Sunday midnight JST already belongs to the new week
    assert previous_week_range(datetime(2025, 3, 8, 15, 0)) == (start, end)
    assert previous_week_range(datetime(2025, 3, 8, 14, 59)) == (start - timedelta(days=7), start)


def test_previous_month_range_crosses_year_end():
    assert previous_month_range(datetime(2025, 1, 1, 0, 0)) == (
        datetime(2024, 11, 30, 15, 0), datetime(2024, 12, 31, 15, 0),
    )
    assert previous_month_range(datetime(2025, 2, 28, 15, 0)) == (
        datetime(2025, 1, 31, 15, 0), datetime(2025, 2, 28, 15, 0),
    )
