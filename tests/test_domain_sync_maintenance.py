"""
Domain Sync and Maintenance Job Tests
Registry refresh, transfer polling, expiration notices and housekeeping
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import database
from services.domain_sync import (
    sync_domains, sync_pending_transfers, derive_domain_status, map_transfer_status
)
from services.exceptions import EnomAPIError
from services.maintenance import (
    send_expiration_notifications, clean_expired_cart_items, expire_push_requests, days_until
)
from utils.domain_locks import domain_lock

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
@patch('services.domain_sync.update_domain_sync_data', new_callable=AsyncMock)
@patch('services.domain_sync.get_domains_to_sync', new_callable=AsyncMock)
class TestDomainSync:
    """Test the domainSync job"""

    async def test_sync_updates_registry_fields_only(self, mock_get, mock_update, fake_enom, domain_factory):
        domain = domain_factory(auto_renew=True)
        mock_get.return_value = [domain]

        summary = await sync_domains(enom=fake_enom)

        assert summary == {'mode': 'test', 'synced': 1, 'skipped': 0, 'failed': 0}
        mock_get.assert_awaited_once_with('test', 50)
        args, kwargs = mock_update.await_args
        assert args == (domain['id'],)
        assert 'auto_renew' not in kwargs
        assert kwargs['expiration_date'] == datetime(2030, 8, 18, 23, 59, tzinfo=timezone.utc)
        assert kwargs['privacy_enabled'] is True
        assert kwargs['lock_status'] is True
        assert kwargs['nameservers'] == ['ns1.example-dns.com', 'ns2.example-dns.com']
        assert kwargs['registry_domain_id'] == '152533676'
        assert kwargs['status'] == 'active'

    async def test_past_expiration_marks_expired(self, mock_get, mock_update, fake_enom, domain_factory):
        mock_get.return_value = [domain_factory()]
        fake_enom.full_data = {'expiration_date': '1/2/2020 11:59:00 PM'}

        await sync_domains(enom=fake_enom)

        assert mock_update.await_args.kwargs['status'] == 'expired'

    async def test_empty_nameservers_are_not_written(self, mock_get, mock_update, fake_enom, domain_factory):
        mock_get.return_value = [domain_factory()]
        fake_enom.full_data = {'nameservers': []}

        await sync_domains(enom=fake_enom)

        assert mock_update.await_args.kwargs['nameservers'] is None

    async def test_one_failure_does_not_stop_the_batch(self, mock_get, mock_update, fake_enom, domain_factory):
        mock_get.return_value = [domain_factory(), domain_factory(), domain_factory()]
        fake_enom.errors['get_full_domain_data'] = [None, EnomAPIError("Domain not found", command='GetDomainInfo')]

        summary = await sync_domains(enom=fake_enom)

        assert summary['synced'] == 2
        assert summary['failed'] == 1
        assert mock_update.await_count == 2

    async def test_each_domain_uses_its_own_mode(self, mock_get, mock_update, fake_enom, domain_factory):
        mock_get.return_value = [domain_factory(registry_mode='production')]

        await sync_domains(enom=fake_enom)

        assert fake_enom.modes() == {'production'}

    async def test_suspended_domain_write_is_skipped(self, mock_get, mock_update, fake_enom, domain_factory):
        mock_get.return_value = [domain_factory()]
        mock_update.return_value = False

        summary = await sync_domains(enom=fake_enom)

        assert summary['synced'] == 0
        assert summary['skipped'] == 1
        assert summary['failed'] == 0

    async def test_sync_waits_for_domain_lock(self, mock_get, mock_update, fake_enom, domain_factory):
        domain = domain_factory()
        mock_get.return_value = [domain]

        async with domain_lock(domain['id'], 'suspend'):
            task = asyncio.create_task(sync_domains(enom=fake_enom))
            for _ in range(5):
                await asyncio.sleep(0)
            assert fake_enom.count('get_full_domain_data') == 0
            mock_update.assert_not_awaited()

        summary = await task
        assert summary['synced'] == 1
        assert fake_enom.count('get_full_domain_data') == 1

    async def test_sync_update_guards_suspended_rows(self, mock_get, mock_update):
        with patch('database.execute_update', AsyncMock(return_value=0)) as mock_execute:
            updated = await database.update_domain_sync_data(
                7, expiration_date=None, privacy_enabled=False, lock_status=True,
                nameservers=['ns1.quarantine.example'], registry_domain_id=None, status='active',
            )

        assert updated is False
        query = mock_execute.await_args.args[0]
        assert "status <> 'suspended'" in query
        assert 'auto_renew' not in query


@pytest.mark.asyncio
@patch('services.domain_sync.get_user_by_id', new_callable=AsyncMock)
@patch('services.domain_sync.activate_transferred_domain', new_callable=AsyncMock)
@patch('services.domain_sync.update_transfer_status', new_callable=AsyncMock)
@patch('services.domain_sync.get_pending_domain_transfers', new_callable=AsyncMock)
class TestTransferSync:
    """Test the syncTransfers job"""

    async def test_completed_transfer_activates_and_emails(self, mock_pending, mock_update, mock_activate,
                                                          mock_user, fake_enom, mock_notifier,
                                                          transfer_factory, test_user):
        transfer = transfer_factory(user_id=test_user['id'])
        mock_pending.return_value = [transfer]
        mock_user.return_value = test_user
        fake_enom.transfer_statuses[transfer['registry_transfer_id']] = {
            'status': 'Completed', 'status_description': 'Transfer successful'
        }

        with patch('services.domain_sync.get_notification_service', return_value=mock_notifier):
            summary = await sync_pending_transfers(enom=fake_enom)

        assert summary == {'updated': 1}
        mock_update.assert_awaited_once_with(transfer['id'], 'completed', 'Transfer successful')
        mock_activate.assert_awaited_once_with(transfer['domain_name'], 'net')
        template, recipient, data = mock_notifier.send.await_args.args
        assert template == 'transfer_complete'
        assert recipient == test_user['email']
        assert data['domain'] == f"{transfer['domain_name']}.net"

    async def test_unchanged_and_unsubmitted_transfers_are_left_alone(self, mock_pending, mock_update,
                                                                       mock_activate, mock_user, fake_enom,
                                                                       mock_notifier, transfer_factory):
        processing = transfer_factory(status='processing')
        unsubmitted = transfer_factory(registry_transfer_id=None)
        mock_pending.return_value = [processing, unsubmitted]

        with patch('services.domain_sync.get_notification_service', return_value=mock_notifier):
            summary = await sync_pending_transfers(enom=fake_enom)

        assert summary == {'updated': 0}
        assert fake_enom.count('get_transfer_status') == 1
        mock_update.assert_not_awaited()
        mock_activate.assert_not_awaited()

    async def test_cancelled_transfer_is_failed(self, mock_pending, mock_update, mock_activate, mock_user,
                                                fake_enom, mock_notifier, transfer_factory):
        transfer = transfer_factory()
        mock_pending.return_value = [transfer]
        fake_enom.transfer_statuses[transfer['registry_transfer_id']] = {'status': 'Cancelled', 'status_description': None}

        with patch('services.domain_sync.get_notification_service', return_value=mock_notifier):
            await sync_pending_transfers(enom=fake_enom)

        mock_update.assert_awaited_once_with(transfer['id'], 'failed', None)
        mock_activate.assert_not_awaited()
        mock_notifier.send.assert_not_awaited()


class TestStatusMapping:
    """Test registry status mapping"""

    def test_derive_domain_status(self):
        assert derive_domain_status('Registered', NOW + timedelta(days=1), NOW) == 'active'
        assert derive_domain_status('Registered', NOW - timedelta(days=1), NOW) == 'expired'
        assert derive_domain_status('Expired', NOW + timedelta(days=30), NOW) == 'expired'
        assert derive_domain_status(None, None, NOW) == 'active'

    def test_map_transfer_status(self):
        assert map_transfer_status('Completed', 'pending') == 'completed'
        assert map_transfer_status('canceled', 'pending') == 'failed'
        assert map_transfer_status('Pending', 'pending') == 'processing'
        assert map_transfer_status('Awaiting auth', 'pending') == 'pending'


@pytest.mark.asyncio
@patch('services.maintenance.get_expiring_domains_without_auto_renew', new_callable=AsyncMock)
@patch('services.maintenance.get_app_setting', new_callable=AsyncMock)
class TestExpirationNotifications:
    """Test the expirationNotifications job"""

    async def test_only_notice_days_are_emailed(self, mock_setting, mock_expiring, mock_notifier, domain_factory):
        mock_setting.return_value = None
        in_7 = domain_factory(expiration_date=NOW + timedelta(days=7))
        in_8 = domain_factory(expiration_date=NOW + timedelta(days=8))
        in_1 = domain_factory(expiration_date=NOW + timedelta(hours=20))
        mock_expiring.return_value = [in_7, in_8, in_1]

        summary = await send_expiration_notifications(notifier=mock_notifier, now=NOW)

        assert summary == {'checked': 3, 'sent': 2}
        mock_expiring.assert_awaited_once_with(30)
        sent = [call.args[2] for call in mock_notifier.send.await_args_list]
        assert [data['days_left'] for data in sent] == [7, 1]
        assert sent[0]['domain'] == f"{in_7['domain_name']}.com"
        assert sent[0]['renew_link'] == f"https://example.com/dashboard?renew={in_7['domain_name']}.com"
        assert sent[0]['expiration_date'] == 'June 08, 2025'

    async def test_threshold_setting(self, mock_setting, mock_expiring, mock_notifier):
        mock_setting.return_value = '14'
        mock_expiring.return_value = []

        await send_expiration_notifications(notifier=mock_notifier, now=NOW)
        mock_expiring.assert_awaited_once_with(14)

        mock_setting.return_value = 'two weeks'
        mock_expiring.reset_mock()
        await send_expiration_notifications(notifier=mock_notifier, now=NOW)
        mock_expiring.assert_awaited_once_with(30)

    async def test_failed_delivery_is_not_counted(self, mock_setting, mock_expiring, mock_notifier, domain_factory):
        mock_setting.return_value = None
        mock_expiring.return_value = [domain_factory(expiration_date=NOW + timedelta(days=3))]
        mock_notifier.send.return_value = False

        summary = await send_expiration_notifications(notifier=mock_notifier, now=NOW)

        assert summary == {'checked': 1, 'sent': 0}


@pytest.mark.asyncio
class TestHousekeeping:
    """Test cart cleanup and push-request expiry"""

    async def test_clean_cart(self):
        with patch('services.maintenance.delete_expired_cart_items', AsyncMock(return_value=4)):
            assert await clean_expired_cart_items() == 4

    async def test_expire_push_requests(self):
        rows = [{'id': 1, 'domain_name': 'alpha', 'tld': 'com'}, {'id': 2, 'domain_name': 'beta', 'tld': 'io'}]
        with patch('services.maintenance.expire_pending_push_requests', AsyncMock(return_value=rows)):
            assert await expire_push_requests() == 2
        with patch('services.maintenance.expire_pending_push_requests', AsyncMock(return_value=[])):
            assert await expire_push_requests() == 0

    def test_days_until_rounds_up(self):
        assert days_until(NOW + timedelta(days=6, hours=1), NOW) == 7
        assert days_until(NOW + timedelta(days=7), NOW) == 7
