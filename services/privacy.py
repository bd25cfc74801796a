"""
WHOIS privacy provisioning
Purchase-then-enable flow with idempotent short-circuiting

The registry tracks two facts per domain: whether privacy was ever purchased
(billable) and whether it is currently enabled (free to toggle once bought).
Both are re-read from the registry before any mutating call.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Dict, Optional, Any

from database import get_domain_by_id, get_tld_pricing, set_domain_privacy, record_balance_transaction
from admin_alerts import send_warning_alert
from pricing_utils import to_decimal
from services.balance_manager import SmartActionOrchestrator
from services.enom import EnomService, get_enom_service
from services.exceptions import DomainNotFoundError
from utils.domain_locks import domain_lock
from utils.environment import get_domain_registry_mode, get_env_float

logger = logging.getLogger(__name__)

class PrivacyService:
    """WHOIS privacy controller for a single domain at a time"""

    def __init__(self, enom: Optional[EnomService] = None,
                 orchestrator: Optional[SmartActionOrchestrator] = None):
        self.enom = enom or get_enom_service()
        self.orchestrator = orchestrator or SmartActionOrchestrator(enom=self.enom)
        self.call_timeout = get_env_float('REGISTRY_CALL_TIMEOUT', 30.0)

    async def _bounded(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.call_timeout)

    async def _privacy_cost(self, tld: str) -> Optional[Decimal]:
        try:
            pricing = await get_tld_pricing(tld)
        except Exception as e:
            logger.warning(f"⚠️ Could not load privacy pricing for .{tld}: {e}")
            return None
        if not pricing or pricing.get('cost_privacy') is None:
            return None
        cost = to_decimal(pricing['cost_privacy'])
        return cost if cost > 0 else None

    async def set_privacy(self, domain_id: int, enabled: bool, years: int = 1) -> Dict[str, Any]:
        """
        Enable or disable WHOIS privacy for a domain

        Args:
            domain_id: Domain row id
            enabled: Desired privacy state
            years: Purchase term when privacy has never been bought

        Returns:
            Dict: success, cost_incurred, purchased, enabled, action and an
            optional warning or error
        """
        async with domain_lock(domain_id, 'privacy change'):
            domain = await get_domain_by_id(domain_id)
            if not domain:
                raise DomainNotFoundError(domain_id)

            sld, tld = domain['domain_name'], domain['tld']
            mode = get_domain_registry_mode(domain)

            if not enabled:
                result = await self._disable(sld, tld, mode)
            else:
                result = await self._enable(domain, sld, tld, years, mode)

            if result['success']:
                await set_domain_privacy(domain_id, bool(result['enabled']))
            return result

    async def _disable(self, sld: str, tld: str, mode: str) -> Dict[str, Any]:
        full_domain = f"{sld}.{tld}"
        result = {'success': True, 'cost_incurred': False, 'purchased': None,
                  'enabled': False, 'action': 'disabled'}
        try:
            await self._bounded(self.enom.set_whois_privacy(sld, tld, False, mode=mode))
        except Exception as e:
            logger.error(f"❌ Failed to disable privacy for {full_domain}: {e}")
            result.update(success=False, enabled=None, action='disable_failed', error=str(e))
            return result
        logger.info(f"🔓 WHOIS privacy disabled for {full_domain}")
        return result

    async def _enable(self, domain: Dict[str, Any], sld: str, tld: str, years: int,
                      mode: str) -> Dict[str, Any]:
        full_domain = f"{sld}.{tld}"
        status = await self._bounded(self.enom.get_privacy_status(sld, tld, mode=mode))

        if status.get('purchased') and status.get('enabled'):
            logger.info(f"ℹ️ WHOIS privacy already enabled for {full_domain}")
            return {'success': True, 'cost_incurred': False, 'purchased': True,
                    'enabled': True, 'action': 'none'}

        if status.get('purchased'):
            try:
                await self._bounded(self.enom.set_whois_privacy(sld, tld, True, mode=mode))
            except Exception as e:
                logger.error(f"❌ Failed to enable purchased privacy for {full_domain}: {e}")
                return {'success': False, 'cost_incurred': False, 'purchased': True,
                        'enabled': False, 'action': 'enable_failed', 'error': str(e)}
            logger.info(f"🔒 WHOIS privacy enabled for {full_domain} (already purchased)")
            return {'success': True, 'cost_incurred': False, 'purchased': True,
                    'enabled': True, 'action': 'enabled'}

        purchase_error = await self._purchase(domain, sld, tld, years, mode)
        if purchase_error:
            return {'success': False, 'cost_incurred': False, 'purchased': False,
                    'enabled': False, 'action': 'purchase_failed', 'error': purchase_error}

        result = {'success': True, 'cost_incurred': True, 'purchased': True,
                  'enabled': False, 'action': 'purchased'}

        # Purchase may or may not auto-enable depending on the registry
        try:
            status = await self._bounded(self.enom.get_privacy_status(sld, tld, mode=mode))
        except Exception as e:
            logger.warning(f"⚠️ Could not re-read privacy status for {full_domain}: {e}")
            status = {'purchased': True, 'enabled': False}

        if status.get('enabled'):
            result['enabled'] = True
            logger.info(f"🔒 WHOIS privacy purchased and auto-enabled for {full_domain}")
            return result

        try:
            await self._bounded(self.enom.set_whois_privacy(sld, tld, True, mode=mode))
            result['enabled'] = True
            logger.info(f"🔒 WHOIS privacy purchased and enabled for {full_domain}")
        except Exception as e:
            logger.warning(f"⚠️ Privacy purchased for {full_domain} but enabling failed: {e}")
            result['warning'] = f"Privacy purchased but not enabled; retry enabling later: {e}"
            await send_warning_alert(
                "Privacy",
                f"WHOIS privacy purchased but not enabled for {full_domain}",
                "privacy",
                {'domain_id': domain['id'], 'error': str(e)}
            )
        return result

    async def _purchase(self, domain: Dict[str, Any], sld: str, tld: str, years: int,
                        mode: str) -> Optional[str]:
        """Buy privacy for the domain; returns an error message on failure"""
        full_domain = f"{sld}.{tld}"
        cost = await self._privacy_cost(tld)

        if cost is not None:
            workflow = await self.orchestrator.smart_privacy_purchase(sld, tld, years, cost * years, mode=mode)
            if not workflow.success:
                logger.error(f"❌ Privacy purchase failed for {full_domain}: "
                             f"{workflow.error_code} - {workflow.error}")
                return workflow.error or workflow.error_code
            try:
                await record_balance_transaction(
                    'privacy', cost * years,
                    balance_before=workflow.balance_before,
                    balance_after=workflow.balance_after,
                    domain_name=full_domain,
                    registry_mode=mode,
                    initiated_by=domain.get('user_id'),
                    auto_refill=workflow.refill_decision is not None and workflow.refill_decision.needs_refill,
                )
            except Exception as e:
                logger.error(f"❌ Failed to record privacy transaction for {full_domain}: {e}")
            logger.info(f"💰 WHOIS privacy purchased for {full_domain} (${cost * years})")
            return None

        try:
            await self._bounded(self.enom.purchase_privacy(sld, tld, years, mode=mode))
        except Exception as e:
            logger.error(f"❌ Privacy purchase failed for {full_domain}: {e}")
            return str(e)
        logger.info(f"💰 WHOIS privacy purchased for {full_domain} (no reseller cost configured)")
        return None

_privacy_service: Optional[PrivacyService] = None

def get_privacy_service() -> PrivacyService:
    global _privacy_service
    if _privacy_service is None:
        _privacy_service = PrivacyService()
    return _privacy_service
