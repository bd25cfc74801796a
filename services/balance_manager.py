"""
Reseller balance management
Refill calculation and balance-aware paid registry actions

The registry debits paid actions (register, renew, transfer, privacy) from a
pre-paid reseller balance. A card refill of X only credits X * (1 - fee), so
the orchestrator computes the gross refill, tops up, re-checks the balance and
only then performs the action.
"""

import os
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pricing_utils import to_decimal, round_money, round_up_to_cents, format_money
from services.enom import EnomService, get_enom_service, as_utc
from services.exceptions import exception_for_code
from utils.environment import get_env_float
from database import record_balance_transaction

logger = logging.getLogger(__name__)

CC_FEE_PERCENT = Decimal('0.05')
MIN_REFILL = Decimal('25.00')

STEP_STARTED = 'started'
STEP_COMPLETED = 'completed'
STEP_FAILED = 'failed'

def get_refill_fee_percent() -> Decimal:
    return to_decimal(os.getenv('ENOM_REFILL_FEE_PERCENT'), CC_FEE_PERCENT)

def get_min_refill() -> Decimal:
    return to_decimal(os.getenv('ENOM_MIN_REFILL'), MIN_REFILL)

@dataclass(frozen=True)
class RefillDecision:
    """Outcome of the refill calculation for one (cost, balance) pair"""
    needs_refill: bool
    shortfall: Decimal
    refill_amount: Decimal
    fee_amount: Decimal
    net_after_fee: Decimal
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'needs_refill': self.needs_refill,
            'shortfall': float(round_money(self.shortfall)),
            'refill_amount': float(round_money(self.refill_amount)),
            'fee_amount': float(round_money(self.fee_amount)),
            'net_after_fee': float(round_money(self.net_after_fee)),
            'reason': self.reason,
        }

def calculate_refill_needed(cost, balance, fee_percent=None, min_refill=None) -> RefillDecision:
    """
    Decide whether the reseller balance must be refilled before spending ``cost``

    Args:
        cost: Registry cost of the action
        balance: Current available reseller balance
        fee_percent: Card processing fee deducted from refills (0.05 = 5%)
        min_refill: Smallest refill the registry accepts

    Returns:
        RefillDecision: refill_amount is the gross amount to request so that
        the net credit covers the shortfall
    """
    cost = to_decimal(cost)
    balance = to_decimal(balance)
    fee_percent = get_refill_fee_percent() if fee_percent is None else to_decimal(fee_percent)
    min_refill = get_min_refill() if min_refill is None else to_decimal(min_refill)

    if cost < 0:
        raise ValueError(f"Cost cannot be negative: {cost}")
    if not Decimal('0') <= fee_percent < Decimal('1'):
        raise ValueError(f"Fee percent must be in [0, 1): {fee_percent}")
    if min_refill < 0:
        raise ValueError(f"Minimum refill cannot be negative: {min_refill}")

    zero = Decimal('0')
    if balance >= cost:
        return RefillDecision(False, zero, zero, zero, zero, 'Balance sufficient')

    shortfall = cost - balance
    gross = shortfall / (Decimal('1') - fee_percent)

    if gross > min_refill:
        refill_amount = round_up_to_cents(gross)
        reason = 'Refilling exact amount needed'
    else:
        refill_amount = min_refill
        reason = f'Refilling minimum amount ({format_money(min_refill)})'

    fee_amount = refill_amount * fee_percent
    return RefillDecision(
        needs_refill=True,
        shortfall=shortfall,
        refill_amount=refill_amount,
        fee_amount=fee_amount,
        net_after_fee=refill_amount - fee_amount,
        reason=reason,
    )

@dataclass
class WorkflowStep:
    step: str
    status: str = STEP_STARTED
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'step': self.step, 'status': self.status}
        if self.error:
            data['error'] = self.error
        return data

@dataclass
class WorkflowResult:
    """Step-by-step record of one orchestrated action"""
    action: str
    steps: List[WorkflowStep] = field(default_factory=list)
    success: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    balance_before: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None
    refill_decision: Optional[RefillDecision] = None
    refill_result: Optional[Dict[str, Any]] = None
    action_result: Optional[Dict[str, Any]] = None
    dry_run: bool = False
    message: Optional[str] = None
    outcome: Optional[str] = None
    reconciliation_id: Optional[int] = None

    def start_step(self, name: str) -> WorkflowStep:
        step = WorkflowStep(name)
        self.steps.append(step)
        return step

    def complete_step(self, step: WorkflowStep):
        step.status = STEP_COMPLETED
        step.completed_at = datetime.now(timezone.utc)

    def fail(self, step: Optional[WorkflowStep], error_code: str, error: str) -> 'WorkflowResult':
        if step is not None:
            step.status = STEP_FAILED
            step.completed_at = datetime.now(timezone.utc)
            step.error = error
        self.success = False
        self.error = error
        self.error_code = error_code
        return self

    def step_names(self) -> List[str]:
        return [s.step for s in self.steps]

    def raise_for_error(self):
        """Raise the taxonomy exception for a failed result"""
        if not self.success:
            raise exception_for_code(self.error_code, self.error or f"{self.action} failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action,
            'success': self.success,
            'error': self.error,
            'error_code': self.error_code,
            'dry_run': self.dry_run,
            'message': self.message,
            'outcome': self.outcome,
            'steps': [s.to_dict() for s in self.steps],
            'balance_before': float(self.balance_before) if self.balance_before is not None else None,
            'balance_after': float(self.balance_after) if self.balance_after is not None else None,
            'refill': self.refill_decision.to_dict() if self.refill_decision else None,
            'action_result': self.action_result,
            'reconciliation_id': self.reconciliation_id,
        }

class SmartActionOrchestrator:
    """Balance check, conditional refill, paid action, final balance"""

    def __init__(self, enom: Optional[EnomService] = None, fee_percent=None, min_refill=None,
                 call_timeout: Optional[float] = None):
        self.enom = enom or get_enom_service()
        self.fee_percent = get_refill_fee_percent() if fee_percent is None else to_decimal(fee_percent)
        self.min_refill = get_min_refill() if min_refill is None else to_decimal(min_refill)
        self.call_timeout = call_timeout if call_timeout is not None else get_env_float('REGISTRY_CALL_TIMEOUT', 30.0)

    async def _bounded(self, awaitable: Awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.call_timeout)

    def _failure_code(self, error: BaseException, default: str) -> str:
        return 'timeout' if isinstance(error, asyncio.TimeoutError) else default

    def _describe(self, error: BaseException) -> str:
        if isinstance(error, asyncio.TimeoutError):
            return f"Timed out after {self.call_timeout}s"
        return str(error) or error.__class__.__name__

    async def execute(self, action: str, cost, perform: Callable[[], Awaitable[Dict[str, Any]]], *,
                      mode: str, auto_refill: bool = True, dry_run: bool = False,
                      verify: Optional[Callable[[], Awaitable[Optional[Dict[str, Any]]]]] = None,
                      domain_name: Optional[str] = None) -> WorkflowResult:
        """
        Run a paid registry action against the reseller balance

        Args:
            action: Step name for the paid action (purchase, renew, transfer, privacy_purchase)
            cost: Registry cost debited by the action
            perform: Coroutine factory performing the paid action
            mode: Registry mode the balance and action belong to
            auto_refill: Allow a card refill when the balance is short
            dry_run: Only check balance and compute the refill
            verify: Queried once if the action errors; returns the action
                result when the registry shows it took effect, else None

        Returns:
            WorkflowResult: never raises for step failures
        """
        cost = to_decimal(cost)
        if cost <= 0:
            raise ValueError(f"{action}: cost must be positive, got {cost}")

        label = domain_name or action
        result = WorkflowResult(action=action, dry_run=dry_run)

        # 1. Current balance
        step = result.start_step('get_balance')
        try:
            result.balance_before = await self._bounded(self.enom.get_balance(mode=mode))
            result.complete_step(step)
        except Exception as e:
            logger.error(f"❌ {label}: balance query failed ({mode}): {self._describe(e)}")
            return result.fail(step, self._failure_code(e, 'balance_unavailable'),
                               f"Balance query failed: {self._describe(e)}")

        # 2. Refill decision
        decision = calculate_refill_needed(cost, result.balance_before, self.fee_percent, self.min_refill)
        result.refill_decision = decision

        # 3. Refill disallowed
        if decision.needs_refill and not auto_refill:
            logger.warning(f"⚠️ {label}: insufficient balance {format_money(result.balance_before)} "
                           f"for cost {format_money(cost)} and auto-refill disabled")
            return result.fail(None, 'insufficient_balance',
                               f"Insufficient balance. Need {format_money(cost)}, have {format_money(result.balance_before)}")

        if dry_run:
            result.success = True
            result.outcome = 'dry_run'
            result.message = 'Dry run completed'
            logger.info(f"🔍 {label}: dry run completed (refill needed: {decision.needs_refill})")
            return result

        # 4. Refill and verify
        if decision.needs_refill:
            step = result.start_step('refill')
            logger.info(f"💰 {label}: refilling {format_money(decision.refill_amount)} ({decision.reason})")
            try:
                result.refill_result = await self._bounded(
                    self.enom.refill_account(decision.refill_amount, mode=mode)
                )
                result.complete_step(step)
            except Exception as e:
                logger.error(f"❌ {label}: refill failed: {self._describe(e)}")
                return result.fail(step, self._failure_code(e, 'refill_failed'),
                                   f"Refill failed: {self._describe(e)}")

            step = result.start_step('verify_refill')
            try:
                refilled_balance = await self._bounded(self.enom.get_balance(mode=mode))
            except Exception as e:
                logger.error(f"❌ {label}: could not verify refill: {self._describe(e)}")
                return result.fail(step, 'refill_unverified', f"Refill could not be verified: {self._describe(e)}")

            await self._record_refill(decision, result.balance_before, refilled_balance, mode)

            if refilled_balance < cost:
                logger.error(f"❌ {label}: balance {format_money(refilled_balance)} still below "
                             f"{format_money(cost)} after refill")
                return result.fail(step, 'refill_unverified',
                                   f"Balance still insufficient after refill: {format_money(refilled_balance)}")
            result.complete_step(step)

        # 5. Paid action
        step = result.start_step(action)
        action_error = None
        try:
            action_result = await self._bounded(perform())
            if isinstance(action_result, dict) and action_result.get('success') is False:
                action_error = RuntimeError(action_result.get('error') or f"{action} reported failure")
            else:
                result.action_result = action_result
        except Exception as e:
            action_error = e

        if action_error is not None:
            logger.warning(f"⚠️ {label}: {action} reported error: {self._describe(action_error)}")
            confirmed = None
            if verify is not None:
                verify_step = result.start_step('verify_action')
                try:
                    confirmed = await self._bounded(verify())
                    result.complete_step(verify_step)
                except Exception as e:
                    verify_step.status = STEP_FAILED
                    verify_step.error = self._describe(e)
                    logger.error(f"❌ {label}: verification query failed: {self._describe(e)}")

            if not confirmed:
                logger.error(f"❌ {label}: {action} failed: {self._describe(action_error)}")
                return result.fail(step, self._failure_code(action_error, 'registry_action_failed'),
                                   f"{action} failed: {self._describe(action_error)}")

            logger.info(f"✅ {label}: {action} confirmed via verification despite reported error")
            result.action_result = confirmed
            result.outcome = 'confirmed_via_verification'
            result.message = f"{action} confirmed via verification"
        else:
            result.outcome = 'completed'
            result.message = f"{action} completed"

        result.complete_step(step)
        result.success = True

        # 6. Final balance; a failure here does not undo the action
        step = result.start_step('final_balance')
        try:
            result.balance_after = await self._bounded(self.enom.get_balance(mode=mode))
            result.complete_step(step)
        except Exception as e:
            step.status = STEP_FAILED
            step.error = self._describe(e)
            logger.warning(f"⚠️ {label}: final balance query failed: {self._describe(e)}")

        logger.info(f"✅ {label}: {action} succeeded ({mode})")
        return result

    async def _record_refill(self, decision: RefillDecision, balance_before: Decimal, balance_after: Decimal, mode: str):
        try:
            await record_balance_transaction(
                transaction_type='refill',
                amount=round_money(decision.refill_amount),
                fee_amount=round_money(decision.fee_amount),
                net_amount=round_money(decision.net_after_fee),
                balance_before=balance_before,
                balance_after=balance_after,
                auto_refill=True,
                registry_mode=mode,
                notes=decision.reason,
            )
        except Exception as e:
            logger.warning(f"⚠️ Failed to record refill transaction: {e}")

    # ------------------------------------------------------------------
    # Specializations
    # ------------------------------------------------------------------

    async def smart_purchase(self, params: Dict[str, Any], cost, *, mode: str,
                             auto_refill: bool = True, dry_run: bool = False) -> WorkflowResult:
        sld, tld = params['sld'], params['tld']

        async def verify():
            info = await self.enom.get_domain_info(sld, tld, mode=mode)
            if str(info.get('status', '')).lower() in ('registered', 'active'):
                return {'success': True, 'domain_name': f"{sld}.{tld}", 'verified': True}
            return None

        return await self.execute(
            'purchase', cost, lambda: self.enom.register_domain(params, mode=mode),
            mode=mode, auto_refill=auto_refill, dry_run=dry_run, verify=verify,
            domain_name=f"{sld}.{tld}",
        )

    async def smart_renewal(self, sld: str, tld: str, years: int, cost, *, mode: str,
                            current_expiration=None, auto_refill: bool = True,
                            dry_run: bool = False) -> WorkflowResult:
        previous = as_utc(current_expiration)
        verify = None

        if previous is not None:
            async def verify():
                info = await self.enom.get_domain_info(sld, tld, mode=mode)
                registry_expiration = as_utc(info.get('expiration_date'))
                if registry_expiration and registry_expiration > previous:
                    return {
                        'success': True,
                        'domain_name': f"{sld}.{tld}",
                        'new_expiration': info.get('expiration_date'),
                        'verified': True,
                    }
                return None

        return await self.execute(
            'renew', cost, lambda: self.enom.renew_domain(sld, tld, years, mode=mode),
            mode=mode, auto_refill=auto_refill, dry_run=dry_run, verify=verify,
            domain_name=f"{sld}.{tld}",
        )

    async def smart_transfer(self, params: Dict[str, Any], cost, *, mode: str,
                             auto_refill: bool = True, dry_run: bool = False) -> WorkflowResult:
        sld, tld = params['sld'], params['tld']
        full_domain = f"{sld}.{tld}".lower()

        async def verify():
            for transfer in await self.enom.get_pending_transfers(mode=mode):
                if (transfer.get('domain_name') or '').lower() == full_domain:
                    return {
                        'success': True,
                        'domain_name': full_domain,
                        'transfer_order_id': transfer.get('transfer_order_id'),
                        'verified': True,
                    }
            return None

        return await self.execute(
            'transfer', cost, lambda: self.enom.initiate_transfer(params, mode=mode),
            mode=mode, auto_refill=auto_refill, dry_run=dry_run, verify=verify,
            domain_name=full_domain,
        )

    async def smart_privacy_purchase(self, sld: str, tld: str, years: int, cost, *, mode: str,
                                     auto_refill: bool = True) -> WorkflowResult:
        async def verify():
            status = await self.enom.get_privacy_status(sld, tld, mode=mode)
            if status.get('purchased'):
                return {'success': True, 'domain_name': f"{sld}.{tld}", 'verified': True}
            return None

        return await self.execute(
            'privacy_purchase', cost, lambda: self.enom.purchase_privacy(sld, tld, years, mode=mode),
            mode=mode, auto_refill=auto_refill, verify=verify,
            domain_name=f"{sld}.{tld}",
        )
