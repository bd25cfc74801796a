"""
Domain Renewal Processor Service
Unattended auto-renewal: charge the customer, renew at the registry, persist and notify

Per domain the flow is strictly ordered:
    1. charge the customer's stored payment method (retail renewal price)
    2. renew at the registry through the balance-aware orchestrator (registry cost)
    3. update expiration, write the audit row, send the confirmation

A registry failure after a successful charge, or a charge whose outcome is
unknown, always leaves a reconciliation record behind: a database row, or a
line in the local fallback file when the database write itself fails.
"""

import os
import json
import asyncio
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Any

from database import (
    get_auto_renew_candidates, get_domains_missing_payment_method, get_tld_pricing,
    disable_domain_auto_renew, update_domain_expiration, record_balance_transaction,
    log_activity, create_reconciliation_record, get_open_reconciliation_record
)
from pricing_utils import get_tld_prices, format_money, round_money
from admin_alerts import send_critical_alert, send_error_alert, send_warning_alert
from services.balance_manager import SmartActionOrchestrator, WorkflowResult
from services.enom import EnomService, get_enom_service, as_utc
from services.exceptions import StripeAPIError
from services.stripe_payments import StripeService, get_stripe_service
from services.notifications import NotificationService, get_notification_service
from utils.domain_locks import domain_lock
from utils.environment import get_registry_mode, get_domain_registry_mode, get_env_int, get_env_float

logger = logging.getLogger(__name__)

class DomainRenewalProcessor:
    """
    Auto-renewal processor for domains with the local auto_renew flag set
    Processes eligible domains one at a time with a fixed delay between them
    """

    def __init__(self, enom: Optional[EnomService] = None, stripe: Optional[StripeService] = None,
                 notifier: Optional[NotificationService] = None,
                 orchestrator: Optional[SmartActionOrchestrator] = None):
        self.enom = enom or get_enom_service()
        self.stripe = stripe or get_stripe_service()
        self.notifier = notifier or get_notification_service()
        self.orchestrator = orchestrator or SmartActionOrchestrator(enom=self.enom)

        self.lookahead_days = get_env_int('AUTO_RENEW_LOOKAHEAD_DAYS', 30)
        self.domain_delay = get_env_float('RENEWAL_DOMAIN_DELAY_SECONDS', 2.0)
        self.charge_timeout = get_env_float('PAYMENT_CALL_TIMEOUT', 30.0)
        self.fallback_path = os.getenv('RECONCILIATION_FALLBACK_PATH', 'reconciliation_fallback.jsonl')
        self.stats: Dict[str, int] = {}
        self._reset_stats()

        logger.info(f"🔄 DomainRenewalProcessor initialized: lookahead={self.lookahead_days}d, delay={self.domain_delay}s")

    def _reset_stats(self):
        self.stats = {
            'processed': 0,
            'renewed': 0,
            'failed': 0,
            'payment_declined': 0,
            'reconciliation_required': 0,
            'skipped': 0,
            'no_payment_method': 0,
        }

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()

    def is_eligible_for_auto_renew(self, domain: Dict[str, Any], current_mode: str,
                                   now: Optional[datetime] = None) -> bool:
        """
        Check whether a domain qualifies for unattended renewal in this run

        Eligible when active, locally flagged for auto-renew, expiring within the
        lookahead window, a payment method is on file, and the domain belongs to
        the registry mode this process operates in.
        """
        now = now or datetime.now(timezone.utc)
        if domain.get('status') != 'active' or not domain.get('auto_renew'):
            return False

        expiration = as_utc(domain.get('expiration_date'))
        if expiration is None:
            return False
        window_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if not window_start <= expiration <= window_start + timedelta(days=self.lookahead_days):
            return False

        if not self._payment_method_for(domain):
            return False

        return (domain.get('registry_mode') or 'test') == current_mode

    @staticmethod
    def _payment_method_for(domain: Dict[str, Any]) -> Optional[str]:
        return domain.get('auto_renew_payment_method_id') or domain.get('default_payment_method_id')

    @staticmethod
    def idempotency_key(domain: Dict[str, Any], amount: Decimal) -> str:
        """Same domain, same expiration, same amount: same charge"""
        expiration = as_utc(domain.get('expiration_date'))
        material = f"{domain['id']}:{expiration.isoformat() if expiration else ''}:{round_money(amount)}"
        return f"domain-renewal-{domain['id']}-{hashlib.sha256(material.encode()).hexdigest()[:32]}"

    async def process_all_renewals(self) -> Dict[str, Any]:
        """
        Main entry point for the autoRenew job

        Eligibility queries run before any side effect, so their errors
        propagate to the scheduler.
        """
        mode = get_registry_mode()
        self._reset_stats()
        logger.info(f"🔄 Starting domain auto-renewal run ({mode} mode)")

        candidates = await get_auto_renew_candidates(mode, self.lookahead_days)
        now = datetime.now(timezone.utc)
        eligible = []
        for domain in candidates:
            if self.is_eligible_for_auto_renew(domain, mode, now):
                eligible.append(domain)
            else:
                self.stats['skipped'] += 1

        logger.info(f"📊 Found {len(eligible)} domains to auto-renew")

        results = []
        for index, domain in enumerate(eligible):
            results.append(await self.process_domain_renewal(domain))
            if self.domain_delay > 0 and index < len(eligible) - 1:
                await asyncio.sleep(self.domain_delay)

        await self._notify_missing_payment_methods(mode)

        logger.info(f"✅ Auto-renewal complete - renewed: {self.stats['renewed']}, failed: {self.stats['failed']}, "
                    f"declined: {self.stats['payment_declined']}, reconciliation: {self.stats['reconciliation_required']}, "
                    f"no payment method: {self.stats['no_payment_method']}")

        return {'status': 'success', 'mode': mode, 'stats': self.get_stats(), 'results': results}

    async def process_domain_renewal(self, domain: Dict[str, Any]) -> Dict[str, Any]:
        async with domain_lock(domain['id'], 'auto-renew'):
            return await self._renew_domain(domain)

    async def _renew_domain(self, domain: Dict[str, Any]) -> Dict[str, Any]:
        sld, tld = domain['domain_name'], domain['tld']
        full_domain = f"{sld}.{tld}"
        domain_mode = get_domain_registry_mode(domain)
        self.stats['processed'] += 1

        # Never charge again while an earlier charge is unreconciled
        open_record = await get_open_reconciliation_record(domain['id'])
        if open_record or await self._has_fallback_record(domain['id']):
            logger.warning(f"⏭️ Skipping {full_domain}: unresolved reconciliation record")
            self.stats['skipped'] += 1
            return {
                'domain': full_domain,
                'status': 'skipped',
                'reason': 'unresolved_reconciliation',
                'reconciliation_id': open_record.get('id') if open_record else None,
            }

        customer_price, registry_cost = get_tld_prices(await get_tld_pricing(tld))
        payment_method_id = self._payment_method_for(domain)
        customer_id = domain.get('stripe_customer_id')

        if not customer_id or not payment_method_id:
            self.stats['no_payment_method'] += 1
            await self._notify(domain, 'payment_method_required', {
                'domain': full_domain,
                'expiration_date': self._display_date(domain.get('expiration_date')),
            })
            return {'domain': full_domain, 'status': 'no_payment_method'}

        logger.info(f"🔄 Processing {full_domain} - customer: {format_money(customer_price)}, "
                    f"registry: {format_money(registry_cost)} ({domain_mode})")

        # 1. Charge the customer
        idempotency_key = self.idempotency_key(domain, customer_price)
        try:
            charge = await asyncio.wait_for(
                self.stripe.charge_customer(
                    customer_id,
                    customer_price,
                    payment_method_id,
                    description=f"Domain renewal: {full_domain} (1 year)",
                    idempotency_key=idempotency_key,
                    metadata={'domain_id': domain['id'], 'domain': full_domain, 'type': 'auto_renewal'},
                ),
                timeout=self.charge_timeout,
            )
        except StripeAPIError as e:
            if not e.outcome_unknown:
                return await self._handle_charge_error(domain, full_domain, customer_price, str(e))
            return await self._handle_unknown_charge(domain, full_domain, domain_mode, customer_price,
                                                     idempotency_key, None, str(e))
        except Exception as e:
            # A timed-out request may still have been processed by Stripe
            reason = f"Timed out after {self.charge_timeout}s" if isinstance(e, asyncio.TimeoutError) else str(e)
            return await self._handle_unknown_charge(domain, full_domain, domain_mode, customer_price,
                                                     idempotency_key, None, reason)

        if charge.get('pending'):
            return await self._handle_unknown_charge(domain, full_domain, domain_mode, customer_price,
                                                     idempotency_key, charge.get('payment_reference_id'),
                                                     charge.get('error') or 'Payment not settled')

        if not charge.get('success'):
            return await self._handle_charge_failure(domain, full_domain, charge)

        payment_reference = charge.get('payment_reference_id')
        logger.info(f"💳 Payment succeeded for {full_domain} ({payment_reference}), renewing at registry")

        # 2. Renew at the registry; any failure from here on is reconciled, never retried
        try:
            workflow = await self.orchestrator.smart_renewal(
                sld, tld, 1, registry_cost,
                mode=domain_mode,
                current_expiration=domain.get('expiration_date'),
            )
        except Exception as e:
            workflow = WorkflowResult(action='renew')
            workflow.fail(None, 'registry_action_failed', f"Renewal orchestration error: {e}")

        if not workflow.success:
            return await self._handle_registry_failure(domain, full_domain, domain_mode, customer_price,
                                                       payment_reference, workflow)

        # 3. Persist and notify; failures here never undo the renewal
        new_expiration = await self._resolve_new_expiration(domain, workflow, domain_mode)
        await self._persist_renewal(domain, full_domain, domain_mode, customer_price,
                                    payment_reference, new_expiration, workflow)

        self.stats['renewed'] += 1
        logger.info(f"✅ Successfully renewed {full_domain}")
        return {
            'domain': full_domain,
            'status': 'renewed',
            'payment_reference_id': payment_reference,
            'new_expiration': new_expiration.isoformat() if new_expiration else None,
            'workflow': workflow.to_dict(),
        }

    async def _handle_charge_failure(self, domain: Dict[str, Any], full_domain: str,
                                     charge: Dict[str, Any]) -> Dict[str, Any]:
        error = charge.get('error') or 'Payment failed'
        declined = bool(charge.get('declined') or charge.get('requires_action'))
        logger.warning(f"⚠️ Payment failed for {full_domain}: {error}")

        if declined:
            self.stats['payment_declined'] += 1
            try:
                await disable_domain_auto_renew(domain['id'])
                logger.info(f"🔕 Disabled auto-renew for {full_domain} after payment failure")
            except Exception as e:
                logger.error(f"❌ Failed to disable auto-renew for {full_domain}: {e}")
                await send_error_alert(
                    "AutoRenew",
                    f"Could not disable auto-renew for {full_domain} after a declined charge",
                    "database",
                    {'domain_id': domain['id'], 'error': str(e)}
                )
        else:
            self.stats['failed'] += 1

        await self._notify(domain, 'renewal_declined' if declined else 'renewal_failed', {
            'domain': full_domain,
            'error': error,
            'expiration_date': self._display_date(domain.get('expiration_date')),
        })

        try:
            await log_activity(domain.get('user_id'), 'auto_renewal_payment_failed', 'domain', domain['id'], {
                'domain': full_domain,
                'error': error,
                'requires_action': bool(charge.get('requires_action')),
                'payment_reference_id': charge.get('payment_reference_id'),
            })
        except Exception as e:
            logger.warning(f"⚠️ Failed to log payment failure for {full_domain}: {e}")

        return {
            'domain': full_domain,
            'status': 'payment_declined' if declined else 'payment_failed',
            'error': error,
        }

    async def _handle_charge_error(self, domain: Dict[str, Any], full_domain: str, amount: Decimal,
                                   reason: str) -> Dict[str, Any]:
        """Stripe refused the request before charging; nothing to reconcile"""
        self.stats['failed'] += 1
        logger.error(f"❌ Charge error for {full_domain}: {reason}")
        await send_warning_alert(
            "AutoRenew",
            f"Charge for {full_domain} could not be completed: {reason}",
            "payment",
            {'domain_id': domain['id'], 'amount': str(amount)}
        )
        return {'domain': full_domain, 'status': 'charge_error', 'error': reason}

    async def _handle_unknown_charge(self, domain: Dict[str, Any], full_domain: str, mode: str, amount: Decimal,
                                     idempotency_key: str, payment_reference: Optional[str],
                                     reason: str) -> Dict[str, Any]:
        """
        The customer may have been charged. Record it so no later run charges
        again before someone checks the PaymentIntent.
        """
        reference = payment_reference or idempotency_key
        logger.error(f"🚨 Charge outcome unknown for {full_domain} ({reference}): {reason}")
        self.stats['reconciliation_required'] += 1

        record_id = await self._record_reconciliation(
            domain, full_domain, mode, amount, reference,
            action='charge_unknown',
            error=reason,
            details={'idempotency_key': idempotency_key, 'payment_intent_id': payment_reference},
        )

        try:
            await log_activity(domain.get('user_id'), 'auto_renewal_charge_unknown', 'domain', domain['id'], {
                'domain': full_domain,
                'payment_reference_id': reference,
                'amount': str(amount),
                'error': reason,
                'reconciliation_id': record_id,
                'requires_manual_resolution': True,
            })
        except Exception as e:
            logger.warning(f"⚠️ Failed to write activity log for {full_domain}: {e}")

        await send_critical_alert(
            "AutoRenew",
            f"Charge of {format_money(amount)} for {full_domain} has an unknown outcome; "
            f"renewal is held until it is reconciled",
            "payment",
            {
                'domain_id': domain['id'],
                'payment_reference_id': reference,
                'idempotency_key': idempotency_key,
                'error': reason,
                'reconciliation_id': record_id,
                'registry_mode': mode,
            }
        )

        return {
            'domain': full_domain,
            'status': 'charge_unknown',
            'error': reason,
            'reconciliation_id': record_id,
            'payment_reference_id': reference,
        }

    async def _handle_registry_failure(self, domain: Dict[str, Any], full_domain: str, mode: str,
                                       amount: Decimal, payment_reference: Optional[str],
                                       workflow: WorkflowResult) -> Dict[str, Any]:
        error = workflow.error or 'Registry renewal failed'
        logger.error(f"🚨 Registry renewal failed for {full_domain} after payment {payment_reference} succeeded: {error}")
        self.stats['reconciliation_required'] += 1

        record_id = await self._record_reconciliation(
            domain, full_domain, mode, amount, payment_reference,
            action='renew',
            error=workflow.error,
            details={'steps': [s.to_dict() for s in workflow.steps], 'error_code': workflow.error_code},
        )
        workflow.reconciliation_id = record_id

        try:
            await log_activity(domain.get('user_id'), 'auto_renewal_enom_failed', 'domain', domain['id'], {
                'domain': full_domain,
                'payment_reference_id': payment_reference,
                'customer_charged': str(amount),
                'error': error,
                'error_code': workflow.error_code,
                'reconciliation_id': record_id,
                'requires_manual_resolution': True,
            })
        except Exception as e:
            logger.warning(f"⚠️ Failed to write activity log for {full_domain}: {e}")

        await send_critical_alert(
            "AutoRenew",
            f"Customer charged {format_money(amount)} but registry renewal failed for {full_domain}",
            "renewal",
            {
                'domain_id': domain['id'],
                'payment_reference_id': payment_reference,
                'error': error,
                'error_code': workflow.error_code,
                'reconciliation_id': record_id,
                'registry_mode': mode,
            }
        )

        return {
            'domain': full_domain,
            'status': 'reconciliation_required',
            'error': error,
            'reconciliation_id': record_id,
            'payment_reference_id': payment_reference,
            'workflow': workflow.to_dict(),
        }

    async def _record_reconciliation(self, domain: Dict[str, Any], full_domain: str, mode: str,
                                     amount: Decimal, payment_reference: Optional[str], action: str,
                                     error: Optional[str], details: Dict[str, Any]) -> Optional[int]:
        """Database row, else a line in the fallback file; returns the row id when stored in the database"""
        try:
            record_id = await create_reconciliation_record(
                domain_id=domain['id'],
                user_id=domain.get('user_id'),
                domain_name=full_domain,
                action=action,
                payment_reference_id=payment_reference,
                amount_charged=amount,
                error=error,
                registry_mode=mode,
                details=details,
            )
            logger.info(f"📝 Reconciliation record #{record_id} created for {full_domain}")
            return record_id
        except Exception as db_error:
            logger.error(f"💥 Reconciliation record for {full_domain} could not be stored in the database: {db_error}")
            record = {
                'domain_id': domain['id'],
                'user_id': domain.get('user_id'),
                'domain_name': full_domain,
                'action': action,
                'payment_reference_id': payment_reference,
                'amount_charged': str(amount),
                'registry_mode': mode,
                'error': error,
                'details': details,
                'requires_manual_resolution': True,
                'created_at': datetime.now(timezone.utc).isoformat(),
            }
            written = await self._write_fallback_record(record)
            await send_critical_alert(
                "AutoRenew",
                f"Reconciliation record for {full_domain} written to fallback file"
                if written else f"Reconciliation record for {full_domain} could not be persisted anywhere",
                "database",
                {'record': record, 'database_error': str(db_error), 'fallback_path': self.fallback_path}
            )
            return None

    async def _write_fallback_record(self, record: Dict[str, Any]) -> bool:
        def _append():
            with open(self.fallback_path, 'a', encoding='utf-8') as fh:
                fh.write(json.dumps(record, default=str) + '\n')

        try:
            await asyncio.to_thread(_append)
            logger.warning(f"📝 Reconciliation record appended to {self.fallback_path}")
            return True
        except OSError as e:
            logger.critical(f"🚨 UNRECORDED RECONCILIATION: {json.dumps(record, default=str)} ({e})")
            return False

    async def _has_fallback_record(self, domain_id: int) -> bool:
        def _scan() -> bool:
            if not os.path.exists(self.fallback_path):
                return False
            with open(self.fallback_path, encoding='utf-8') as fh:
                for line in fh:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except ValueError:
                        continue
                    if record.get('domain_id') == domain_id and not record.get('resolved_at'):
                        return True
            return False

        return await asyncio.to_thread(_scan)

    async def _resolve_new_expiration(self, domain: Dict[str, Any], workflow: WorkflowResult,
                                      mode: str) -> Optional[datetime]:
        action_result = workflow.action_result or {}
        new_expiration = as_utc(action_result.get('new_expiration'))
        if new_expiration:
            return new_expiration

        try:
            info = await self.enom.get_domain_info(domain['domain_name'], domain['tld'], mode=mode)
            new_expiration = as_utc(info.get('expiration_date'))
        except Exception as e:
            logger.warning(f"⚠️ Could not read new expiration for {domain['domain_name']}.{domain['tld']}: {e}")

        previous = as_utc(domain.get('expiration_date'))
        if new_expiration and (previous is None or new_expiration > previous):
            return new_expiration
        if previous is not None:
            # Registry did not report a date; move the local date forward so the next run does not re-charge
            try:
                return previous.replace(year=previous.year + 1)
            except ValueError:
                return previous + timedelta(days=365)
        return new_expiration

    async def _persist_renewal(self, domain: Dict[str, Any], full_domain: str, mode: str, amount: Decimal,
                               payment_reference: Optional[str], new_expiration: Optional[datetime],
                               workflow: WorkflowResult):
        if new_expiration:
            try:
                await update_domain_expiration(domain['id'], new_expiration)
            except Exception as e:
                logger.error(f"❌ Failed to update expiration for {full_domain}: {e}")
                await send_error_alert(
                    "AutoRenew",
                    f"{full_domain} renewed but the local expiration date was not updated",
                    "database",
                    {'domain_id': domain['id'], 'new_expiration': new_expiration.isoformat(), 'error': str(e)}
                )

        try:
            await record_balance_transaction(
                transaction_type='renewal',
                amount=amount,
                balance_before=workflow.balance_before,
                balance_after=workflow.balance_after,
                domain_name=full_domain,
                registry_mode=mode,
                initiated_by=domain.get('user_id'),
                auto_refill=workflow.refill_result is not None,
                payment_reference_id=payment_reference,
                notes='Auto-renewal (customer charged via Stripe)',
            )
        except Exception as e:
            logger.warning(f"⚠️ Failed to record renewal transaction for {full_domain}: {e}")

        await self._notify(domain, 'renewal_confirmation', {
            'domain': full_domain,
            'years': 1,
            'new_expiration': self._display_date(new_expiration) if new_expiration else 'N/A',
            'cost': format_money(amount),
        })

    async def _notify_missing_payment_methods(self, mode: str):
        try:
            domains = await get_domains_missing_payment_method(mode, self.lookahead_days)
        except Exception as e:
            logger.error(f"❌ Failed to query domains without a payment method: {e}")
            return

        if domains:
            logger.info(f"💳 {len(domains)} domains have auto-renew but no payment method")
        for domain in domains:
            self.stats['no_payment_method'] += 1
            await self._notify(domain, 'payment_method_required', {
                'domain': f"{domain['domain_name']}.{domain['tld']}",
                'expiration_date': self._display_date(domain.get('expiration_date')),
            })

    async def _notify(self, domain: Dict[str, Any], template: str, data: Dict[str, Any]) -> bool:
        try:
            return await self.notifier.send(template, domain.get('email'), data)
        except Exception as e:
            logger.error(f"❌ Notification '{template}' failed for domain {domain.get('id')}: {e}")
            return False

    @staticmethod
    def _display_date(value) -> str:
        parsed = as_utc(value)
        return parsed.strftime('%B %d, %Y') if parsed else 'N/A'

_renewal_processor: Optional[DomainRenewalProcessor] = None

def get_renewal_processor() -> DomainRenewalProcessor:
    global _renewal_processor
    if _renewal_processor is None:
        _renewal_processor = DomainRenewalProcessor()
    return _renewal_processor

async def process_all_domain_renewals() -> Dict[str, Any]:
    """Process all domain auto-renewals - main entry point for the scheduler"""
    return await get_renewal_processor().process_all_renewals()
