"""
Shared test fixtures and configuration for the domain reseller worker test suite
Factories for domain rows, an in-memory registry double and alert/lock isolation
"""

import pytest
import factory
from factory.faker import Faker
from factory.declarations import Sequence, LazyFunction
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock
import logging

import admin_alerts
from utils.domain_locks import reset_domain_locks

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)

test_env_vars = {
    'ENOM_ENV': 'test',
    'RENEWAL_DOMAIN_DELAY_SECONDS': '0',
    'DOMAIN_SYNC_DELAY_SECONDS': '0',
    'REGISTRY_CALL_TIMEOUT': '5',
    'SCHEDULER_TIMEZONE': 'America/New_York',
}

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """No real database, no SMTP, fallback file under tmp"""
    for key, value in test_env_vars.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv('DATABASE_URL', raising=False)
    monkeypatch.delenv('SMTP_PASS', raising=False)
    monkeypatch.delenv('ADMIN_API_TOKEN', raising=False)
    monkeypatch.setenv('RECONCILIATION_FALLBACK_PATH', str(tmp_path / 'reconciliation_fallback.jsonl'))
    yield

@pytest.fixture(autouse=True)
def alerts(monkeypatch):
    """Replace the global admin alert system; tests assert on send_alert calls"""
    system = MagicMock()
    system.send_alert = AsyncMock(return_value=True)
    monkeypatch.setattr(admin_alerts, '_admin_alert_system', system)
    return system

@pytest.fixture(autouse=True)
def clean_domain_locks():
    reset_domain_locks()
    yield
    reset_domain_locks()

# Test data factories
class UserFactory(factory.Factory):  # type: ignore[misc]
    """Factory for creating test user rows"""
    class Meta:  # type: ignore[misc]
        model = dict

    id = Sequence(lambda n: 1000 + n)
    username = Faker('user_name')
    email = Faker('email')
    full_name = Faker('name')
    stripe_customer_id = Sequence(lambda n: f'cus_test{n:06d}')
    default_payment_method_id = Sequence(lambda n: f'pm_test{n:06d}')

class DomainFactory(factory.Factory):  # type: ignore[misc]
    """Factory for domain rows joined with their owner, as the auto-renew query returns them"""
    class Meta:  # type: ignore[misc]
        model = dict

    id = Sequence(lambda n: 1 + n)
    user_id = Sequence(lambda n: 1000 + n)
    domain_name = Sequence(lambda n: f'example{n}')
    tld = 'com'
    status = 'active'
    expiration_date = LazyFunction(lambda: utcnow() + timedelta(days=10))
    auto_renew = True
    privacy_enabled = False
    lock_status = True
    nameservers = LazyFunction(lambda: ['ns1.example-dns.com', 'ns2.example-dns.com'])
    suspended_original_nameservers = None
    registry_mode = 'test'
    registry_domain_id = Sequence(lambda n: str(150000000 + n))
    auto_renew_payment_method_id = None
    last_synced_at = None
    email = Faker('email')
    username = Faker('user_name')
    stripe_customer_id = Sequence(lambda n: f'cus_test{n:06d}')
    default_payment_method_id = Sequence(lambda n: f'pm_test{n:06d}')

class TransferFactory(factory.Factory):  # type: ignore[misc]
    """Factory for domain_transfers rows"""
    class Meta:  # type: ignore[misc]
        model = dict

    id = Sequence(lambda n: 1 + n)
    user_id = Sequence(lambda n: 1000 + n)
    domain_name = Sequence(lambda n: f'moving{n}')
    tld = 'net'
    registry_transfer_id = Sequence(lambda n: str(9000 + n))
    registry_mode = 'test'
    status = 'pending'
    created_at = LazyFunction(utcnow)

class ReconciliationRecordFactory(factory.Factory):  # type: ignore[misc]
    """Factory for reconciliation_records rows"""
    class Meta:  # type: ignore[misc]
        model = dict

    id = Sequence(lambda n: 1 + n)
    domain_id = 1
    user_id = 1000
    domain_name = 'example0.com'
    action = 'renew'
    payment_reference_id = Sequence(lambda n: f'pi_test{n:06d}')
    amount_charged = Decimal('15.00')
    error = 'renew failed: Registry timeout'
    requires_manual_resolution = True
    resolved_at = None
    created_at = LazyFunction(utcnow)

class FakeEnom:
    """
    In-memory stand-in for EnomService

    Balance moves with refills (net of the card fee) and paid actions. Queue
    failures per method in ``errors``; each call pops the next entry and
    raises it when it is an exception.
    """

    def __init__(self, balance: str = '100.00', fee_percent: str = '0.05'):
        self.balance = Decimal(balance)
        self.fee_percent = Decimal(fee_percent)
        self.action_cost = Decimal('0')
        self.credit_refills = True
        self.errors: Dict[str, List[Optional[BaseException]]] = {}
        self.calls: List[tuple] = []

        self.expiration: Optional[str] = None
        self.renewal_expiration: Optional[str] = '1/15/2027 11:59:00 PM'
        self.apply_renewal_on_error = False
        self.domain_status = 'Registered'
        self.pending_transfers: List[Dict[str, Any]] = []
        self.transfer_statuses: Dict[str, Dict[str, Any]] = {}
        self.nameservers = ['ns1.example-dns.com', 'ns2.example-dns.com']
        self.privacy = {'purchased': False, 'enabled': False}
        self.auto_enable_privacy = False
        self.full_data: Dict[str, Any] = {}

    def _call(self, name: str, *args, mode=None):
        self.calls.append((name, args, mode))
        queue = self.errors.get(name)
        if queue:
            error = queue.pop(0)
            if error is not None:
                raise error

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def modes(self) -> set:
        return {call[2] for call in self.calls}

    async def get_balance(self, *, mode):
        self._call('get_balance', mode=mode)
        return self.balance

    async def refill_account(self, amount, *, mode):
        self._call('refill_account', amount, mode=mode)
        if self.credit_refills:
            self.balance += Decimal(amount) * (1 - self.fee_percent)
        return {'success': True, 'requested_amount': Decimal(amount), 'transaction_id': 'TX123'}

    async def register_domain(self, params, *, mode):
        self._call('register_domain', params, mode=mode)
        self.balance -= self.action_cost
        return {'success': True, 'order_id': 'ORD1', 'domain_name': f"{params['sld']}.{params['tld']}"}

    async def renew_domain(self, sld, tld, years=1, *, mode):
        try:
            self._call('renew_domain', sld, tld, years, mode=mode)
        except BaseException:
            if self.apply_renewal_on_error:
                self.balance -= self.action_cost
                self.expiration = self.renewal_expiration
            raise
        self.balance -= self.action_cost
        self.expiration = self.renewal_expiration
        return {'success': True, 'order_id': 'ORD2', 'domain_name': f"{sld}.{tld}",
                'new_expiration': self.renewal_expiration}

    async def initiate_transfer(self, params, *, mode):
        self._call('initiate_transfer', params, mode=mode)
        self.balance -= self.action_cost
        return {'success': True, 'transfer_order_id': '777'}

    async def get_pending_transfers(self, *, mode):
        self._call('get_pending_transfers', mode=mode)
        return list(self.pending_transfers)

    async def get_transfer_status(self, transfer_order_id, *, mode):
        self._call('get_transfer_status', transfer_order_id, mode=mode)
        return self.transfer_statuses.get(transfer_order_id, {'status': 'Pending', 'status_description': None})

    async def get_domain_info(self, sld, tld, *, mode):
        self._call('get_domain_info', sld, tld, mode=mode)
        return {'domain_name': f"{sld}.{tld}", 'domain_name_id': '1', 'status': self.domain_status,
                'expiration_date': self.expiration}

    async def get_full_domain_data(self, sld, tld, *, mode):
        self._call('get_full_domain_data', sld, tld, mode=mode)
        data = {
            'domain_name_id': '152533676',
            'expiration_date': '8/18/2030 11:59:00 PM',
            'status': 'Registered',
            'nameservers': list(self.nameservers),
            'lock_status': True,
            'privacy_enabled': True,
        }
        data.update(self.full_data)
        return data

    async def get_nameservers(self, sld, tld, *, mode):
        self._call('get_nameservers', sld, tld, mode=mode)
        return list(self.nameservers)

    async def update_nameservers(self, sld, tld, nameservers, *, mode):
        self._call('update_nameservers', sld, tld, list(nameservers), mode=mode)
        self.nameservers = list(nameservers)
        return {'success': True}

    async def get_privacy_status(self, sld, tld, *, mode):
        self._call('get_privacy_status', sld, tld, mode=mode)
        return dict(self.privacy)

    async def purchase_privacy(self, sld, tld, years=1, *, mode):
        self._call('purchase_privacy', sld, tld, years, mode=mode)
        self.balance -= self.action_cost
        self.privacy['purchased'] = True
        if self.auto_enable_privacy:
            self.privacy['enabled'] = True
        return {'success': True, 'order_id': 'ORD3', 'domain_name': f"{sld}.{tld}"}

    async def set_whois_privacy(self, sld, tld, enable, *, mode):
        self._call('set_whois_privacy', sld, tld, enable, mode=mode)
        self.privacy['enabled'] = bool(enable)
        return {'success': True, 'domain_name': f"{sld}.{tld}", 'privacy_enabled': enable}

    async def close(self):
        pass

@pytest.fixture
def fake_enom():
    return FakeEnom()

@pytest.fixture
def mock_notifier():
    notifier = MagicMock()
    notifier.send = AsyncMock(return_value=True)
    return notifier

@pytest.fixture
def mock_stripe():
    stripe = MagicMock()
    stripe.charge_customer = AsyncMock(return_value={
        'success': True,
        'declined': False,
        'requires_action': False,
        'pending': False,
        'payment_reference_id': 'pi_test_success',
        'error': None,
    })
    stripe.close = AsyncMock()
    return stripe

@pytest.fixture
def test_domain():
    """Generate test domain data"""
    return DomainFactory()

@pytest.fixture
def test_user():
    """Generate test user data"""
    return UserFactory()

@pytest.fixture
def domain_factory():
    return DomainFactory

@pytest.fixture
def transfer_factory():
    return TransferFactory

@pytest.fixture
def reconciliation_factory():
    return ReconciliationRecordFactory

@pytest.fixture
def alert_severities(alerts):
    """Severities of the admin alerts raised so far, in order"""
    def _severities() -> List[str]:
        return [call.args[0].value for call in alerts.send_alert.await_args_list]
    return _severities
