"""
Domain suspension service
Status transitions with nameserver quarantine and restore

Suspending a domain points it at the quarantine nameservers and keeps the
previous set as a snapshot on the domain row. Leaving the suspended state
pushes the snapshot back and clears it. The snapshot is written before the
registry is touched and survives any failed push.
"""

import json
import asyncio
import logging
from typing import Dict, List, Optional, Any

from database import (
    get_domain_by_id, get_app_setting, update_domain_status, update_domain_nameservers,
    save_nameserver_snapshot, clear_nameserver_snapshot
)
from admin_alerts import send_warning_alert
from services.enom import EnomService, get_enom_service
from services.exceptions import DomainNotFoundError
from utils.domain_locks import domain_lock
from utils.environment import get_domain_registry_mode, get_env_list, get_env_float

logger = logging.getLogger(__name__)

DOMAIN_STATUSES = ('active', 'pending', 'suspended', 'expired')
DEFAULT_SUSPENDED_NAMESERVERS = ['ns1.suspended.worxtech.biz', 'ns2.suspended.worxtech.biz']
MIN_NAMESERVERS = 2

def parse_nameserver_list(value) -> Optional[List[str]]:
    """Nameserver columns arrive as JSON lists, JSON strings or comma-separated text"""
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith('['):
            value = json.loads(text)
        else:
            value = text.split(',')
    return [str(ns).strip() for ns in value if str(ns).strip()]

class DomainSuspensionService:
    """Domain status controller with nameserver quarantine"""

    def __init__(self, enom: Optional[EnomService] = None):
        self.enom = enom or get_enom_service()
        self.call_timeout = get_env_float('REGISTRY_CALL_TIMEOUT', 30.0)

    async def get_quarantine_nameservers(self) -> List[str]:
        setting = await get_app_setting('suspended_nameservers')
        nameservers = parse_nameserver_list(setting) if setting else None
        if not nameservers:
            nameservers = get_env_list('SUSPENDED_NAMESERVERS', DEFAULT_SUSPENDED_NAMESERVERS)
        return nameservers

    async def _push_nameservers(self, domain: Dict[str, Any], nameservers: List[str]) -> Optional[str]:
        """Push a nameserver set to the registry; returns an error message on failure"""
        try:
            await asyncio.wait_for(
                self.enom.update_nameservers(
                    domain['domain_name'], domain['tld'], nameservers,
                    mode=get_domain_registry_mode(domain)
                ),
                timeout=self.call_timeout,
            )
            return None
        except asyncio.TimeoutError:
            return f"Registry call timed out after {self.call_timeout}s"
        except Exception as e:
            return str(e)

    async def change_status(self, domain_id: int, new_status: str) -> Dict[str, Any]:
        """
        Change a domain's status, swapping nameservers on the suspension edges

        Args:
            domain_id: Domain row id
            new_status: One of active, pending, suspended, expired

        Returns:
            Dict: success, domain_id, old_status, new_status, nameserver_action,
            nameservers_pushed and an optional warning
        """
        if new_status not in DOMAIN_STATUSES:
            raise ValueError(f"Invalid domain status: {new_status}")

        async with domain_lock(domain_id, 'status change'):
            domain = await get_domain_by_id(domain_id)
            if not domain:
                raise DomainNotFoundError(domain_id)

            old_status = domain.get('status')
            result: Dict[str, Any] = {
                'success': True,
                'domain_id': domain_id,
                'old_status': old_status,
                'new_status': new_status,
                'nameserver_action': 'none',
                'nameservers_pushed': False,
            }

            if old_status == new_status:
                logger.info(f"ℹ️ Domain {domain_id} already {new_status} - no nameserver change")
                return result

            if new_status == 'suspended':
                await self._quarantine(domain, result)
            elif old_status == 'suspended':
                await self._restore(domain, result)

            await update_domain_status(domain_id, new_status)
            logger.info(f"✅ Domain {domain['domain_name']}.{domain['tld']} status {old_status} → {new_status}")
            return result

    async def _quarantine(self, domain: Dict[str, Any], result: Dict[str, Any]):
        full_domain = f"{domain['domain_name']}.{domain['tld']}"
        quarantine = await self.get_quarantine_nameservers()

        existing_snapshot = parse_nameserver_list(domain.get('suspended_original_nameservers'))
        if existing_snapshot is not None:
            logger.info(f"📸 Keeping existing nameserver snapshot for {full_domain}: {existing_snapshot}")
        else:
            current = parse_nameserver_list(domain.get('nameservers')) or []
            if not current:
                try:
                    current = await asyncio.wait_for(
                        self.enom.get_nameservers(domain['domain_name'], domain['tld'],
                                                  mode=get_domain_registry_mode(domain)),
                        timeout=self.call_timeout,
                    )
                except Exception as e:
                    logger.warning(f"⚠️ Could not read registry nameservers for {full_domain}: {e}")
            await save_nameserver_snapshot(domain['id'], current)
            logger.info(f"📸 Saved nameserver snapshot for {full_domain}: {current}")

        error = await self._push_nameservers(domain, quarantine)
        if error:
            logger.warning(f"⚠️ Failed to push quarantine nameservers for {full_domain}: {error}")
            result['nameserver_action'] = 'quarantine_failed'
            result['warning'] = f"Domain suspended but nameservers were not changed: {error}"
            await send_warning_alert(
                "Suspension",
                f"Quarantine nameservers not applied to {full_domain}",
                "suspension",
                {'domain_id': domain['id'], 'error': error}
            )
            return

        await update_domain_nameservers(domain['id'], quarantine)
        result['nameserver_action'] = 'quarantined'
        result['nameservers_pushed'] = True
        logger.info(f"🔒 Quarantine nameservers applied to {full_domain}")

    async def _restore(self, domain: Dict[str, Any], result: Dict[str, Any]):
        full_domain = f"{domain['domain_name']}.{domain['tld']}"
        snapshot = parse_nameserver_list(domain.get('suspended_original_nameservers'))

        if snapshot is None:
            logger.info(f"ℹ️ No nameserver snapshot for {full_domain} - nothing to restore")
            return

        if len(snapshot) < MIN_NAMESERVERS:
            logger.warning(f"⚠️ Invalid nameserver snapshot for {full_domain} ({snapshot}) - restore skipped")
            result['nameserver_action'] = 'restore_skipped'
            result['warning'] = "Nameserver snapshot has fewer than two entries; restore skipped"
            return

        error = await self._push_nameservers(domain, snapshot)
        if error:
            logger.warning(f"⚠️ Failed to restore nameservers for {full_domain}: {error}")
            result['nameserver_action'] = 'restore_failed'
            result['warning'] = f"Nameservers not restored, snapshot kept for retry: {error}"
            await send_warning_alert(
                "Suspension",
                f"Original nameservers not restored for {full_domain}",
                "suspension",
                {'domain_id': domain['id'], 'snapshot': snapshot, 'error': error}
            )
            return

        await clear_nameserver_snapshot(domain['id'], snapshot)
        result['nameserver_action'] = 'restored'
        result['nameservers_pushed'] = True
        result['nameservers'] = snapshot
        logger.info(f"🔓 Original nameservers restored for {full_domain}: {snapshot}")

    async def retry_nameserver_restore(self, domain_id: int) -> Dict[str, Any]:
        """Retry pushing the snapshot for a domain that left suspension with a failed restore"""
        async with domain_lock(domain_id, 'nameserver restore'):
            domain = await get_domain_by_id(domain_id)
            if not domain:
                raise DomainNotFoundError(domain_id)

            result: Dict[str, Any] = {
                'success': True,
                'domain_id': domain_id,
                'old_status': domain.get('status'),
                'new_status': domain.get('status'),
                'nameserver_action': 'none',
                'nameservers_pushed': False,
            }
            if domain.get('status') == 'suspended':
                result['success'] = False
                result['warning'] = "Domain is still suspended"
                return result

            await self._restore(domain, result)
            if result['nameserver_action'] == 'restore_failed':
                result['success'] = False
            return result

_suspension_service: Optional[DomainSuspensionService] = None

def get_suspension_service() -> DomainSuspensionService:
    global _suspension_service
    if _suspension_service is None:
        _suspension_service = DomainSuspensionService()
    return _suspension_service
