"""
Domain Auto-Renewal Tests
Charge-then-renew ordering, declines, reconciliation records and the fallback file
"""

import json
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from services.enom import as_utc
from services.exceptions import EnomAPIError, StripeAPIError
from services.renewal_processor import DomainRenewalProcessor

PRICING_ROW = {'tld': 'com', 'price_renew': Decimal('15.00'), 'cost_renew': Decimal('10.00')}

DB_FUNCTIONS = (
    'get_auto_renew_candidates', 'get_domains_missing_payment_method', 'get_tld_pricing',
    'disable_domain_auto_renew', 'update_domain_expiration', 'record_balance_transaction',
    'log_activity', 'create_reconciliation_record', 'get_open_reconciliation_record',
)

@pytest.fixture
def db():
    """Patch every database call the renewal processor makes"""
    mocks = {name: AsyncMock() for name in DB_FUNCTIONS}
    mocks['get_auto_renew_candidates'].return_value = []
    mocks['get_domains_missing_payment_method'].return_value = []
    mocks['get_tld_pricing'].return_value = PRICING_ROW
    mocks['get_open_reconciliation_record'].return_value = None
    mocks['create_reconciliation_record'].return_value = 77

    patchers = [patch(f'services.renewal_processor.{name}', mock) for name, mock in mocks.items()]
    patchers.append(patch('services.balance_manager.record_balance_transaction', AsyncMock()))
    for p in patchers:
        p.start()
    yield mocks
    for p in patchers:
        p.stop()

@pytest.fixture
def processor(fake_enom, mock_stripe, mock_notifier):
    return DomainRenewalProcessor(enom=fake_enom, stripe=mock_stripe, notifier=mock_notifier)

def one_year_later(domain) -> str:
    expiration = as_utc(domain['expiration_date'])
    return expiration.replace(year=expiration.year + 1).strftime('%m/%d/%Y %I:%M:%S %p')

def templates_sent(notifier):
    return [call.args[0] for call in notifier.send.await_args_list]


@pytest.mark.asyncio
class TestRenewalSuccess:
    """Test the happy path: charge, renew, persist, notify"""

    async def test_successful_renewal_persists_new_expiration(self, db, processor, fake_enom, mock_stripe,
                                                             mock_notifier, test_domain):
        fake_enom.renewal_expiration = one_year_later(test_domain)

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'renewed'
        assert result['payment_reference_id'] == 'pi_test_success'
        mock_stripe.charge_customer.assert_awaited_once()
        assert fake_enom.count('renew_domain') == 1

        domain_id, new_expiration = db['update_domain_expiration'].await_args.args
        assert domain_id == test_domain['id']
        assert new_expiration == as_utc(fake_enom.renewal_expiration)
        assert new_expiration > as_utc(test_domain['expiration_date'])

        audit = db['record_balance_transaction'].await_args.kwargs
        assert audit['transaction_type'] == 'renewal'
        assert audit['payment_reference_id'] == 'pi_test_success'
        assert templates_sent(mock_notifier) == ['renewal_confirmation']
        db['create_reconciliation_record'].assert_not_awaited()

    async def test_charge_uses_retail_price_and_registry_gets_cost(self, db, processor, fake_enom, mock_stripe,
                                                                  test_domain):
        fake_enom.balance = Decimal('5.00')
        fake_enom.renewal_expiration = one_year_later(test_domain)

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'renewed'
        charge_args = mock_stripe.charge_customer.await_args
        assert charge_args.args[0] == test_domain['stripe_customer_id']
        assert charge_args.args[1] == Decimal('15.00')
        assert charge_args.args[2] == test_domain['default_payment_method_id']
        # Balance 5.00 against cost 10.00 forces a minimum refill first
        assert fake_enom.count('refill_account') == 1
        assert fake_enom.calls[1][1][0] == Decimal('25')

    async def test_stored_auto_renew_payment_method_wins(self, db, processor, mock_stripe, domain_factory, fake_enom):
        domain = domain_factory(auto_renew_payment_method_id='pm_dedicated')
        fake_enom.renewal_expiration = one_year_later(domain)

        await processor.process_domain_renewal(domain)

        assert mock_stripe.charge_customer.await_args.args[2] == 'pm_dedicated'

    async def test_registry_calls_use_domain_mode(self, db, processor, fake_enom, domain_factory):
        domain = domain_factory(registry_mode='production')
        fake_enom.renewal_expiration = one_year_later(domain)

        result = await processor.process_domain_renewal(domain)

        assert result['status'] == 'renewed'
        assert fake_enom.modes() == {'production'}

    async def test_expiration_update_failure_keeps_renewal(self, db, processor, fake_enom, test_domain,
                                                          alert_severities):
        fake_enom.renewal_expiration = one_year_later(test_domain)
        db['update_domain_expiration'].side_effect = RuntimeError("database down")

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'renewed'
        assert alert_severities() == ['ERROR']
        db['create_reconciliation_record'].assert_not_awaited()


@pytest.mark.asyncio
class TestPaymentFailures:
    """Test that a failed charge never reaches the registry"""

    async def test_decline_disables_auto_renew_without_registry_calls(self, db, processor, fake_enom,
                                                                      mock_stripe, mock_notifier, test_domain):
        mock_stripe.charge_customer.return_value = {
            'success': False, 'declined': True, 'requires_action': False,
            'payment_reference_id': 'pi_declined', 'error': 'Your card was declined.',
        }

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'payment_declined'
        assert fake_enom.calls == []
        db['disable_domain_auto_renew'].assert_awaited_once_with(test_domain['id'])
        assert templates_sent(mock_notifier) == ['renewal_declined']
        assert db['log_activity'].await_args.args[1] == 'auto_renewal_payment_failed'
        assert processor.get_stats()['payment_declined'] == 1

    async def test_authentication_required_counts_as_decline(self, db, processor, fake_enom, mock_stripe,
                                                             test_domain):
        mock_stripe.charge_customer.return_value = {
            'success': False, 'declined': False, 'requires_action': True,
            'payment_reference_id': 'pi_sca', 'error': 'Payment requires customer authentication',
        }

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'payment_declined'
        db['disable_domain_auto_renew'].assert_awaited_once()
        assert fake_enom.calls == []

    async def test_processor_error_keeps_auto_renew(self, db, processor, fake_enom, mock_stripe, mock_notifier,
                                                    test_domain):
        mock_stripe.charge_customer.return_value = {
            'success': False, 'declined': False, 'requires_action': False,
            'payment_reference_id': 'pi_canceled', 'error': 'Payment not completed (status: canceled)',
        }

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'payment_failed'
        db['disable_domain_auto_renew'].assert_not_awaited()
        assert fake_enom.calls == []
        assert templates_sent(mock_notifier) == ['renewal_failed']
        db['create_reconciliation_record'].assert_not_awaited()

    async def test_rejected_request_is_charge_error(self, db, processor, fake_enom, mock_stripe, mock_notifier,
                                                    test_domain, alert_severities):
        mock_stripe.charge_customer.side_effect = StripeAPIError(
            "No such payment_method", status_code=400, stripe_code='resource_missing', outcome_unknown=False
        )

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'charge_error'
        assert fake_enom.calls == []
        assert alert_severities() == ['WARNING']
        db['create_reconciliation_record'].assert_not_awaited()
        mock_notifier.send.assert_not_awaited()

    async def test_missing_customer_notifies_instead_of_charging(self, db, processor, mock_stripe, mock_notifier,
                                                                 domain_factory):
        domain = domain_factory(stripe_customer_id=None)

        result = await processor.process_domain_renewal(domain)

        assert result['status'] == 'no_payment_method'
        mock_stripe.charge_customer.assert_not_awaited()
        assert templates_sent(mock_notifier) == ['payment_method_required']


@pytest.mark.asyncio
class TestReconciliation:
    """Test that a charge without a renewal always leaves a record behind"""

    async def test_registry_failure_after_charge_creates_one_record(self, db, processor, fake_enom, mock_stripe,
                                                                    test_domain, alert_severities, alerts):
        fake_enom.errors['renew_domain'] = [EnomAPIError("Domain is locked at the registry", command='Extend')]

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'reconciliation_required'
        assert result['reconciliation_id'] == 77
        db['create_reconciliation_record'].assert_awaited_once()
        record = db['create_reconciliation_record'].await_args.kwargs
        assert record['domain_id'] == test_domain['id']
        assert record['payment_reference_id'] == 'pi_test_success'
        assert record['amount_charged'] == Decimal('15.00')
        assert record['action'] == 'renew'
        assert 'locked' in record['error']

        assert alert_severities() == ['CRITICAL']
        assert alerts.send_alert.await_args.args[1] == 'renewal'
        db['update_domain_expiration'].assert_not_awaited()
        assert db['log_activity'].await_args.args[1] == 'auto_renewal_enom_failed'

    async def test_open_record_blocks_second_charge(self, db, processor, fake_enom, mock_stripe, test_domain,
                                                    reconciliation_factory):
        fake_enom.errors['renew_domain'] = [EnomAPIError("Registry timeout", command='Extend')]
        await processor.process_domain_renewal(test_domain)

        db['get_open_reconciliation_record'].return_value = reconciliation_factory(id=77, domain_id=test_domain['id'])
        rerun = await processor.process_domain_renewal(test_domain)

        assert rerun['status'] == 'skipped'
        assert rerun['reason'] == 'unresolved_reconciliation'
        assert rerun['reconciliation_id'] == 77
        assert mock_stripe.charge_customer.await_count == 1
        assert fake_enom.count('renew_domain') == 1

    async def test_database_failure_writes_fallback_file(self, db, processor, fake_enom, mock_stripe, test_domain,
                                                         alert_severities, tmp_path):
        fake_enom.errors['renew_domain'] = [EnomAPIError("Registry timeout", command='Extend')]
        db['create_reconciliation_record'].side_effect = RuntimeError("connection refused")

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'reconciliation_required'
        assert result['reconciliation_id'] is None

        lines = (tmp_path / 'reconciliation_fallback.jsonl').read_text().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record['domain_id'] == test_domain['id']
        assert record['payment_reference_id'] == 'pi_test_success'
        assert record['amount_charged'] == '15.00'
        assert record['requires_manual_resolution'] is True

        # One alert for the unpersisted record, one for the charge without renewal
        assert alert_severities() == ['CRITICAL', 'CRITICAL']

        rerun = await processor.process_domain_renewal(test_domain)
        assert rerun['status'] == 'skipped'
        assert mock_stripe.charge_customer.await_count == 1

    async def test_registry_error_confirmed_by_verification_is_not_reconciled(self, db, processor, fake_enom,
                                                                             test_domain):
        fake_enom.renewal_expiration = one_year_later(test_domain)
        fake_enom.apply_renewal_on_error = True
        fake_enom.errors['renew_domain'] = [EnomAPIError("Connection reset", command='Extend')]

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'renewed'
        assert result['workflow']['outcome'] == 'confirmed_via_verification'
        db['create_reconciliation_record'].assert_not_awaited()


@pytest.mark.asyncio
class TestUnknownChargeOutcome:
    """Test that a charge which may have gone through is recorded and blocks re-charging"""

    async def test_charge_timeout_is_recorded(self, db, processor, fake_enom, mock_stripe, mock_notifier,
                                              test_domain, alert_severities, alerts):
        mock_stripe.charge_customer.side_effect = asyncio.TimeoutError()

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'charge_unknown'
        assert result['reconciliation_id'] == 77
        assert fake_enom.calls == []
        record = db['create_reconciliation_record'].await_args.kwargs
        assert record['action'] == 'charge_unknown'
        assert record['domain_id'] == test_domain['id']
        assert record['amount_charged'] == Decimal('15.00')
        assert record['payment_reference_id'] == processor.idempotency_key(test_domain, Decimal('15.00'))
        assert 'Timed out' in record['error']

        assert alert_severities() == ['CRITICAL']
        assert alerts.send_alert.await_args.args[1] == 'payment'
        assert db['log_activity'].await_args.args[1] == 'auto_renewal_charge_unknown'
        db['disable_domain_auto_renew'].assert_not_awaited()
        mock_notifier.send.assert_not_awaited()
        assert processor.get_stats()['reconciliation_required'] == 1

    async def test_server_error_is_recorded(self, db, processor, fake_enom, mock_stripe, test_domain):
        mock_stripe.charge_customer.side_effect = StripeAPIError("Internal error", status_code=500)

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'charge_unknown'
        assert db['create_reconciliation_record'].await_args.kwargs['action'] == 'charge_unknown'
        assert fake_enom.calls == []

    async def test_processing_intent_is_recorded_with_intent_id(self, db, processor, fake_enom, mock_stripe,
                                                                mock_notifier, test_domain):
        mock_stripe.charge_customer.return_value = {
            'success': False, 'declined': False, 'requires_action': False, 'pending': True,
            'payment_reference_id': 'pi_processing', 'error': 'Payment not settled (status: processing)',
        }

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'charge_unknown'
        assert result['payment_reference_id'] == 'pi_processing'
        record = db['create_reconciliation_record'].await_args.kwargs
        assert record['payment_reference_id'] == 'pi_processing'
        assert record['details']['idempotency_key'] == processor.idempotency_key(test_domain, Decimal('15.00'))
        assert fake_enom.calls == []
        db['disable_domain_auto_renew'].assert_not_awaited()
        mock_notifier.send.assert_not_awaited()

    async def test_recorded_unknown_charge_blocks_next_run(self, db, processor, mock_stripe, test_domain,
                                                           reconciliation_factory):
        mock_stripe.charge_customer.side_effect = asyncio.TimeoutError()
        await processor.process_domain_renewal(test_domain)

        db['get_open_reconciliation_record'].return_value = reconciliation_factory(
            id=77, domain_id=test_domain['id'], action='charge_unknown'
        )
        rerun = await processor.process_domain_renewal(test_domain)

        assert rerun['status'] == 'skipped'
        assert mock_stripe.charge_customer.await_count == 1

    async def test_unknown_charge_falls_back_to_file(self, db, processor, mock_stripe, test_domain,
                                                     alert_severities, tmp_path):
        mock_stripe.charge_customer.side_effect = StripeAPIError("Connection reset")
        db['create_reconciliation_record'].side_effect = RuntimeError("connection refused")

        result = await processor.process_domain_renewal(test_domain)

        assert result['status'] == 'charge_unknown'
        assert result['reconciliation_id'] is None
        lines = (tmp_path / 'reconciliation_fallback.jsonl').read_text().splitlines()
        record = json.loads(lines[0])
        assert record['action'] == 'charge_unknown'
        assert record['requires_manual_resolution'] is True
        assert alert_severities() == ['CRITICAL', 'CRITICAL']

        rerun = await processor.process_domain_renewal(test_domain)
        assert rerun['status'] == 'skipped'
        assert mock_stripe.charge_customer.await_count == 1


@pytest.mark.asyncio
class TestRenewalRun:
    """Test candidate selection for one autoRenew run"""

    async def test_only_eligible_domains_are_processed(self, db, processor, fake_enom, mock_stripe, domain_factory):
        due = domain_factory()
        fake_enom.renewal_expiration = one_year_later(due)
        other_mode = domain_factory(registry_mode='production')
        far_out = domain_factory(expiration_date=datetime.now(timezone.utc) + timedelta(days=90))
        inactive = domain_factory(status='suspended')
        db['get_auto_renew_candidates'].return_value = [due, other_mode, far_out, inactive]

        summary = await processor.process_all_renewals()

        assert summary['mode'] == 'test'
        assert summary['stats']['renewed'] == 1
        assert summary['stats']['skipped'] == 3
        assert [r['domain'] for r in summary['results']] == [f"{due['domain_name']}.com"]
        assert mock_stripe.charge_customer.await_count == 1
        db['get_auto_renew_candidates'].assert_awaited_once_with('test', 30)

    async def test_domains_without_payment_method_are_notified(self, db, processor, mock_notifier, domain_factory):
        db['get_domains_missing_payment_method'].return_value = [
            domain_factory(default_payment_method_id=None, stripe_customer_id=None)
        ]

        summary = await processor.process_all_renewals()

        assert summary['stats']['no_payment_method'] == 1
        assert templates_sent(mock_notifier) == ['payment_method_required']

    async def test_candidate_query_error_propagates(self, db, processor):
        db['get_auto_renew_candidates'].side_effect = RuntimeError("database unavailable")

        with pytest.raises(RuntimeError):
            await processor.process_all_renewals()


class TestEligibilityAndIdempotency:
    """Test eligibility rules and charge idempotency keys"""

    def test_eligibility_window(self, processor, domain_factory):
        now = datetime.now(timezone.utc)
        assert processor.is_eligible_for_auto_renew(domain_factory(), 'test', now) is True
        assert processor.is_eligible_for_auto_renew(domain_factory(auto_renew=False), 'test', now) is False
        assert processor.is_eligible_for_auto_renew(domain_factory(), 'production', now) is False
        assert processor.is_eligible_for_auto_renew(
            domain_factory(expiration_date=now - timedelta(days=2)), 'test', now) is False
        assert processor.is_eligible_for_auto_renew(
            domain_factory(default_payment_method_id=None), 'test', now) is False
        assert processor.is_eligible_for_auto_renew(
            domain_factory(default_payment_method_id=None, auto_renew_payment_method_id='pm_x'), 'test', now) is True

    def test_idempotency_key_is_stable(self, domain_factory):
        domain = domain_factory()
        first = DomainRenewalProcessor.idempotency_key(domain, Decimal('15.00'))
        second = DomainRenewalProcessor.idempotency_key(dict(domain), Decimal('15.0'))
        assert first == second
        assert first.startswith(f"domain-renewal-{domain['id']}-")

    def test_idempotency_key_changes_with_expiration_and_amount(self, domain_factory):
        domain = domain_factory()
        key = DomainRenewalProcessor.idempotency_key(domain, Decimal('15.00'))
        next_year = dict(domain, expiration_date=domain['expiration_date'] + timedelta(days=365))
        assert DomainRenewalProcessor.idempotency_key(next_year, Decimal('15.00')) != key
        assert DomainRenewalProcessor.idempotency_key(domain, Decimal('16.00')) != key
