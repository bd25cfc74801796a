"""
eNom reseller API integration
Reseller balance, refills, paid domain actions, nameservers and WHOIS privacy

Every public method takes an explicit ``mode`` ('test' or 'production'). The
test and production registries are disjoint namespaces, so callers pass the
mode recorded on the domain, never the process-wide setting.
"""

import os
import re
import asyncio
import logging
import httpx
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Any, Union

from pricing_utils import to_decimal, format_money
from performance_monitor import OperationTimer
from services.exceptions import EnomAPIError
from utils.environment import REGISTRY_MODES, get_env_float

logger = logging.getLogger(__name__)

ENOM_HOSTS = {
    'production': 'reseller.enom.com',
    'test': 'resellertest.enom.com',
}

# Commands safe to repeat on a timeout. Paid commands are never retried here.
READ_ONLY_COMMANDS = {
    'GetBalance', 'GetDomainInfo', 'GetDNS', 'GetRegLock', 'GetRenew',
    'GetWPPSInfo', 'TP_GetOrderDetail', 'TP_GetOrder', 'GetDomainExp',
}

ENOM_DATE_FORMATS = (
    '%m/%d/%Y %I:%M:%S %p',
    '%m/%d/%Y %H:%M:%S',
    '%m/%d/%Y',
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%dT%H:%M:%S',
    '%Y-%m-%d',
)

def parse_enom_date(value: Optional[str]) -> Optional[datetime]:
    """Parse registry dates such as '8/18/2026 11:59:00 PM' into aware UTC datetimes"""
    if not value:
        return None
    text = value.strip()
    for fmt in ENOM_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    logger.warning(f"⚠️ Unrecognized eNom date format: {value!r}")
    return None

def as_utc(value: Union[datetime, date, str, None]) -> Optional[datetime]:
    """Normalize database and registry date values to aware UTC datetimes"""
    if value is None:
        return None
    if isinstance(value, str):
        return parse_enom_date(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

class EnomService:
    """eNom reseller API client (ResponseType=Text)"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.credentials = {mode: self._load_credentials(mode) for mode in REGISTRY_MODES}
        self.request_timeout = get_env_float('ENOM_HTTP_TIMEOUT', 30.0)
        self._client = client

        configured = [mode for mode, creds in self.credentials.items() if creds['uid']]
        if configured:
            logger.info(f"🔧 eNom service initialized with credentials for: {', '.join(configured)}")
        else:
            logger.info("🔧 eNom service initialized (missing credentials)")

    def _load_credentials(self, mode: str) -> Dict[str, Optional[str]]:
        prefix = f"ENOM_{mode.upper()}_"
        uid = os.getenv(prefix + 'UID')
        pw = os.getenv(prefix + 'PW')
        # Legacy single credential set belongs to whichever mode ENOM_ENV names
        if not uid and os.getenv('ENOM_ENV', 'test').lower() == mode:
            uid = os.getenv('ENOM_UID')
            pw = os.getenv('ENOM_PW')
        return {'uid': uid, 'pw': pw}

    def is_available(self, mode: str) -> bool:
        creds = self.credentials.get(mode) or {}
        return bool(creds.get('uid') and creds.get('pw'))

    def _init_client(self):
        if self._client is None or self._client.is_closed:
            timeout = httpx.Timeout(
                connect=5.0,
                read=self.request_timeout,
                write=10.0,
                pool=5.0
            )
            self._client = httpx.AsyncClient(timeout=timeout)

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    @staticmethod
    def sanitize_url(url: str) -> str:
        """Strip credentials from a request URL before logging it"""
        url = re.sub(r'pw=[^&]+', 'pw=***REDACTED***', url)
        return re.sub(r'uid=[^&]+', 'uid=***', url)

    @staticmethod
    def parse_text_response(text: str) -> Dict[str, str]:
        """Parse eNom Text responses (Key=Value per line, ';' comments)"""
        result: Dict[str, str] = {}
        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line or line.startswith(';') or '=' not in line:
                continue
            key, _, value = line.partition('=')
            result[key.strip()] = value.strip()
        return result

    async def request(self, command: str, params: Optional[Dict[str, Any]] = None, *, mode: str) -> Dict[str, str]:
        """
        Execute an eNom command

        Args:
            command: eNom command name
            params: Command parameters
            mode: Registry mode whose credentials and endpoint to use

        Returns:
            Dict: Parsed response fields

        Raises:
            EnomAPIError: On transport errors or ErrCount > 0
        """
        if mode not in REGISTRY_MODES:
            raise ValueError(f"Invalid registry mode: {mode}")
        if not self.is_available(mode):
            raise EnomAPIError(f"eNom credentials not configured for {mode} mode", command=command)

        creds = self.credentials[mode]
        query = {
            'command': command,
            'uid': creds['uid'],
            'pw': creds['pw'],
            'ResponseType': 'Text',
        }
        query.update({k: v for k, v in (params or {}).items() if v is not None})
        url = f"https://{ENOM_HOSTS[mode]}/interface.asp"

        self._init_client()
        attempts = 3 if command in READ_ONLY_COMMANDS else 1

        for attempt in range(attempts):
            try:
                with OperationTimer(f"eNom {command} ({mode})"):
                    response = await self._client.get(url, params=query)
                break
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                if attempt + 1 >= attempts:
                    logger.error(f"❌ eNom {command} ({mode}) transport failure: {e}")
                    raise EnomAPIError(f"eNom request failed: {e}", command=command) from e
                delay = 1.0 * (2 ** attempt)
                logger.warning(f"⚠️ eNom {command} timeout (attempt {attempt + 1}/{attempts}), retrying in {delay}s")
                await asyncio.sleep(delay)

        if response.status_code != 200:
            logger.error(f"❌ eNom {command} HTTP {response.status_code}: {self.sanitize_url(str(response.request.url))}")
            raise EnomAPIError(f"eNom HTTP {response.status_code}", command=command)

        data = self.parse_text_response(response.text)
        err_count = int(data.get('ErrCount', '0') or 0)
        if err_count > 0:
            errors = [data.get(f'Err{i}', '') for i in range(1, err_count + 1)]
            message = '; '.join(e for e in errors if e) or 'Unknown eNom error'
            logger.error(f"❌ eNom {command} ({mode}) error: {message}")
            raise EnomAPIError(message, command=command, errors=errors)

        return data

    # ------------------------------------------------------------------
    # Balance management
    # ------------------------------------------------------------------

    async def get_balance(self, *, mode: str) -> Decimal:
        """Available reseller balance in USD"""
        data = await self.request('GetBalance', mode=mode)
        return to_decimal(data.get('AvailableBalance') or data.get('Balance'), Decimal('0'))

    async def refill_account(self, amount: Decimal, *, mode: str) -> Dict[str, Any]:
        """Refill the reseller balance from the credit card on file"""
        amount = to_decimal(amount)
        data = await self.request('RefillAccount', {'Amount': f"{amount:.2f}"}, mode=mode)
        logger.info(f"💰 eNom refill of {format_money(amount)} submitted ({mode})")
        return {
            'success': True,
            'requested_amount': amount,
            'transaction_id': data.get('TransactionID') or data.get('OrderID'),
        }

    # ------------------------------------------------------------------
    # Paid actions
    # ------------------------------------------------------------------

    async def register_domain(self, params: Dict[str, Any], *, mode: str) -> Dict[str, Any]:
        sld, tld = params['sld'], params['tld']
        request_params = {'sld': sld, 'tld': tld, 'NumYears': params.get('years', 1)}
        for index, ns in enumerate(params.get('nameservers') or [], start=1):
            request_params[f'NS{index}'] = ns
        if not params.get('nameservers'):
            request_params['UseDNS'] = 'default'
        for role, prefix in (('registrant', 'Registrant'), ('admin', 'Admin'), ('tech', 'Tech'), ('billing', 'AuxBilling')):
            contact = params.get(role) or params.get('registrant')
            if contact:
                request_params.update(self.format_contact(contact, prefix))

        data = await self.request('Purchase', request_params, mode=mode)
        return {
            'success': True,
            'order_id': data.get('OrderID'),
            'domain_name': f"{sld}.{tld}",
        }

    async def renew_domain(self, sld: str, tld: str, years: int = 1, *, mode: str) -> Dict[str, Any]:
        data = await self.request('Extend', {'sld': sld, 'tld': tld, 'NumYears': years}, mode=mode)
        return {
            'success': True,
            'order_id': data.get('OrderID'),
            'domain_name': f"{sld}.{tld}",
            'new_expiration': data.get('ExpirationDate') or data.get('DomainExpDate'),
        }

    async def initiate_transfer(self, params: Dict[str, Any], *, mode: str) -> Dict[str, Any]:
        sld, tld = params['sld'], params['tld']
        request_params = {
            'sld': sld,
            'tld': tld,
            'AuthInfo': params['auth_code'],
            'DomainPassword': params['auth_code'],
            'NumYears': params.get('years', 1),
            'OrderType': 'AutoVerification',
        }
        registrant = params.get('registrant')
        if registrant:
            request_params.update(self.format_contact(registrant, 'Registrant'))

        data = await self.request('TP_CreateOrder', request_params, mode=mode)
        return {
            'success': True,
            'transfer_order_id': data.get('TransferOrderID') or data.get('transferorderid'),
            'order_id': data.get('OrderID'),
            'domain_name': f"{sld}.{tld}",
            'status': data.get('TransferStatus') or 'pending',
        }

    async def get_transfer_status(self, transfer_order_id: str, *, mode: str) -> Dict[str, Any]:
        data = await self.request('TP_GetOrderDetail', {'TransferOrderID': transfer_order_id}, mode=mode)
        return {
            'transfer_order_id': transfer_order_id,
            'status': data.get('TransferStatus') or data.get('Status'),
            'status_description': data.get('StatusDesc') or data.get('StatusDescription'),
            'domain_name': data.get('DomainName'),
        }

    async def get_pending_transfers(self, *, mode: str) -> List[Dict[str, Any]]:
        data = await self.request('TP_GetOrder', {}, mode=mode)
        transfers = []
        count = int(data.get('OrderCount', '0') or 0)
        for i in range(1, count + 1):
            transfers.append({
                'transfer_order_id': data.get(f'TransferOrderID{i}'),
                'domain_name': data.get(f'DomainName{i}'),
                'status': data.get(f'StatusDesc{i}'),
            })
        return transfers

    # ------------------------------------------------------------------
    # Domain data
    # ------------------------------------------------------------------

    async def get_domain_info(self, sld: str, tld: str, *, mode: str) -> Dict[str, Any]:
        data = await self.request('GetDomainInfo', {'sld': sld, 'tld': tld}, mode=mode)
        return {
            'domain_name': f"{sld}.{tld}",
            'domain_name_id': data.get('domainnameid'),
            'status': data.get('registrationstatus') or 'Unknown',
            'expiration_date': data.get('expiration'),
        }

    async def get_nameservers(self, sld: str, tld: str, *, mode: str) -> List[str]:
        data = await self.request('GetDNS', {'sld': sld, 'tld': tld}, mode=mode)
        return [data[f'DNS{i}'] for i in range(1, 14) if data.get(f'DNS{i}')]

    async def get_full_domain_data(self, sld: str, tld: str, *, mode: str) -> Dict[str, Any]:
        """Domain info, nameservers, lock, auto-renew and privacy in parallel"""
        result: Dict[str, Any] = {
            'domain_name': f"{sld}.{tld}",
            'expiration_date': None,
            'status': None,
            'lock_status': False,
            'privacy_enabled': False,
            'nameservers': [],
        }

        info, dns, lock, wpps = await asyncio.gather(
            self.request('GetDomainInfo', {'sld': sld, 'tld': tld}, mode=mode),
            self.request('GetDNS', {'sld': sld, 'tld': tld}, mode=mode),
            self.request('GetRegLock', {'sld': sld, 'tld': tld}, mode=mode),
            self.request('GetWPPSInfo', {'sld': sld, 'tld': tld}, mode=mode),
            return_exceptions=True
        )

        if isinstance(info, Exception):
            # Without domain info the sync has nothing authoritative to write
            raise info
        result['domain_name_id'] = info.get('domainnameid')
        result['expiration_date'] = info.get('expiration')
        result['status'] = info.get('registrationstatus') or 'Unknown'

        if not isinstance(dns, Exception):
            result['nameservers'] = [dns[f'DNS{i}'] for i in range(1, 14) if dns.get(f'DNS{i}')]
        if not isinstance(lock, Exception):
            result['lock_status'] = lock.get('RegLock') == '1' or lock.get('reg-lock') == '1'
        if not isinstance(wpps, Exception):
            result['privacy_enabled'] = wpps.get('WPPSEnabled') == '1'

        return result

    async def update_nameservers(self, sld: str, tld: str, nameservers: List[str], *, mode: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {'sld': sld, 'tld': tld}
        for index, ns in enumerate(nameservers, start=1):
            params[f'NS{index}'] = ns
        await self.request('ModifyNS', params, mode=mode)
        return {'success': True, 'domain_name': f"{sld}.{tld}", 'nameservers': list(nameservers)}

    # ------------------------------------------------------------------
    # WHOIS privacy
    # ------------------------------------------------------------------

    async def get_privacy_status(self, sld: str, tld: str, *, mode: str) -> Dict[str, bool]:
        data = await self.request('GetWPPSInfo', {'sld': sld, 'tld': tld}, mode=mode)
        return {
            'purchased': data.get('WPPSExists') == '1',
            'enabled': data.get('WPPSEnabled') == '1',
        }

    async def purchase_privacy(self, sld: str, tld: str, years: int = 1, *, mode: str) -> Dict[str, Any]:
        data = await self.request('PurchaseServices', {
            'sld': sld,
            'tld': tld,
            'Service': 'WPPS',
            'NumYears': years,
        }, mode=mode)
        return {'success': True, 'order_id': data.get('OrderID'), 'domain_name': f"{sld}.{tld}"}

    async def set_whois_privacy(self, sld: str, tld: str, enable: bool, *, mode: str) -> Dict[str, Any]:
        command = 'EnableServices' if enable else 'DisableServices'
        await self.request(command, {'sld': sld, 'tld': tld, 'Service': 'WPPS'}, mode=mode)
        return {'success': True, 'domain_name': f"{sld}.{tld}", 'privacy_enabled': enable}

    @staticmethod
    def format_contact(contact: Dict[str, Any], prefix: str) -> Dict[str, Any]:
        fields = {
            'FirstName': contact.get('first_name'),
            'LastName': contact.get('last_name'),
            'OrganizationName': contact.get('organization'),
            'Address1': contact.get('address1'),
            'Address2': contact.get('address2'),
            'City': contact.get('city'),
            'StateProvince': contact.get('state'),
            'PostalCode': contact.get('postal_code'),
            'Country': contact.get('country'),
            'Phone': contact.get('phone'),
            'EmailAddress': contact.get('email'),
        }
        return {f"{prefix}{key}": value for key, value in fields.items() if value}

_enom_service: Optional[EnomService] = None

def get_enom_service() -> EnomService:
    """Get the global eNom service instance"""
    global _enom_service
    if _enom_service is None:
        _enom_service = EnomService()
    return _enom_service
