"""
Stripe payment service for unattended renewal charges
Off-session PaymentIntent confirmation against a stored payment method
"""

import os
import logging
import httpx
from decimal import Decimal
from typing import Dict, Optional, Any

from pricing_utils import money_to_cents, format_money
from services.exceptions import StripeAPIError
from utils.environment import get_env_float

logger = logging.getLogger(__name__)

# Stripe error codes that mean the customer has to step in
AUTHENTICATION_CODES = {'authentication_required', 'card_authentication_required'}
# PaymentIntent states where the money may still move
PENDING_STATUSES = {'processing', 'requires_capture'}

class StripeService:
    """Customer charge collector backed by the Stripe REST API"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self.secret_key = os.getenv('STRIPE_SECRET_KEY')
        self.base_url = os.getenv('STRIPE_API_BASE', 'https://api.stripe.com/v1').rstrip('/')
        self.request_timeout = get_env_float('STRIPE_HTTP_TIMEOUT', 20.0)
        self._client = client

        if self.secret_key:
            logger.info("🔧 Stripe service initialized with secret key")
        else:
            logger.info("🔧 Stripe service initialized (missing credentials)")

    def is_available(self) -> bool:
        return bool(self.secret_key)

    def _init_client(self):
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(connect=5.0, read=self.request_timeout, write=10.0, pool=5.0)
            )

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def charge_customer(self, customer_id: str, amount: Decimal, payment_method_id: str,
                              description: str = '', idempotency_key: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None,
                              currency: str = 'usd') -> Dict[str, Any]:
        """
        Charge a stored payment method off-session

        Args:
            customer_id: Stripe customer ID
            amount: Charge amount in dollars
            payment_method_id: Stored Stripe payment method
            description: Statement description
            idempotency_key: Replays of the same key return the original PaymentIntent
            metadata: Extra metadata stored on the PaymentIntent

        Returns:
            Dict: success, declined, requires_action, pending, payment_reference_id, error.
            pending means the PaymentIntent has not settled either way.

        Raises:
            StripeAPIError: Transport failures and non-card API errors;
                outcome_unknown tells whether a charge may have happened
        """
        if not self.is_available():
            raise StripeAPIError("Stripe secret key not configured", outcome_unknown=False)

        form: Dict[str, Any] = {
            'amount': money_to_cents(amount),
            'currency': currency,
            'customer': customer_id,
            'payment_method': payment_method_id,
            'off_session': 'true',
            'confirm': 'true',
            'description': description,
        }
        for key, value in (metadata or {}).items():
            form[f'metadata[{key}]'] = str(value)

        headers = {'Authorization': f'Bearer {self.secret_key}'}
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key

        self._init_client()
        try:
            response = await self._client.post(f"{self.base_url}/payment_intents", data=form, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"❌ Stripe charge request failed for customer {customer_id}: {e}")
            raise StripeAPIError(f"Stripe request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code == 200:
            return self._result_from_intent(payload, amount)

        error = payload.get('error') or {}
        error_code = error.get('code')
        intent = error.get('payment_intent') or {}
        message = error.get('message') or f"Stripe HTTP {response.status_code}"

        if error.get('type') == 'card_error' or response.status_code == 402:
            requires_action = (error_code in AUTHENTICATION_CODES
                               or intent.get('status') == 'requires_action')
            logger.warning(f"⚠️ Stripe charge {'requires authentication' if requires_action else 'declined'} "
                           f"for customer {customer_id}: {error_code or message}")
            return {
                'success': False,
                'declined': not requires_action,
                'requires_action': requires_action,
                'pending': False,
                'payment_reference_id': intent.get('id'),
                'error': message,
                'error_code': error_code,
            }

        # 5xx and idempotency conflicts (409) may hide a processed charge
        outcome_unknown = response.status_code >= 500 or response.status_code == 409
        logger.error(f"❌ Stripe API error {response.status_code} for customer {customer_id}: {message}")
        raise StripeAPIError(message, status_code=response.status_code, stripe_code=error_code,
                             outcome_unknown=outcome_unknown)

    def _result_from_intent(self, intent: Dict[str, Any], amount: Decimal) -> Dict[str, Any]:
        status = intent.get('status')
        reference = intent.get('id')

        if status == 'succeeded':
            logger.info(f"✅ Stripe charge succeeded: {reference} ({format_money(amount)})")
            return {
                'success': True,
                'declined': False,
                'requires_action': False,
                'pending': False,
                'payment_reference_id': reference,
                'error': None,
            }

        if status in PENDING_STATUSES:
            logger.warning(f"⏳ Stripe PaymentIntent {reference} has not settled (status: {status})")
            return {
                'success': False,
                'declined': False,
                'requires_action': False,
                'pending': True,
                'payment_reference_id': reference,
                'error': f"Payment not settled (status: {status})",
            }

        requires_action = status in ('requires_action', 'requires_confirmation')
        logger.warning(f"⚠️ Stripe PaymentIntent {reference} ended in status {status}")
        return {
            'success': False,
            'declined': status == 'requires_payment_method',
            'requires_action': requires_action,
            'pending': False,
            'payment_reference_id': reference,
            'error': f"Payment not completed (status: {status})",
        }

_stripe_service: Optional[StripeService] = None

def get_stripe_service() -> StripeService:
    """Get the global Stripe service instance"""
    global _stripe_service
    if _stripe_service is None:
        _stripe_service = StripeService()
    return _stripe_service
