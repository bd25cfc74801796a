"""
Domain reseller exceptions

Error taxonomy shared by the balance orchestrator, auto-renewal workflow,
registry/payment adapters and the job scheduler.
"""

from typing import Optional


class DomainResellerError(Exception):
    """Base exception for reseller operations."""

    code = 'error'

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def __str__(self):
        return self.message


class InsufficientBalanceError(DomainResellerError):
    """Reseller balance cannot cover the action and refilling is not allowed."""

    code = 'insufficient_balance'


class RefillVerificationError(InsufficientBalanceError):
    """A refill reported success but the re-queried balance is still short."""

    code = 'refill_unverified'


class RefillFailedError(DomainResellerError):
    """The credit card refill of the reseller balance failed."""

    code = 'refill_failed'


class PaymentDeclinedError(DomainResellerError):
    """Customer charge was declined or needs customer authentication."""

    code = 'payment_declined'

    def __init__(self, message: str, requires_action: bool = False):
        super().__init__(message)
        self.requires_action = requires_action


class RegistryActionFailedError(DomainResellerError):
    """The paid registry action (register, renew, transfer, privacy) failed."""

    code = 'registry_action_failed'


class NotificationFailedError(DomainResellerError):
    """An email notification could not be delivered. Logged, never escalated."""

    code = 'notification_failed'


class ScheduleHandlerError(DomainResellerError):
    """Wraps an exception raised by a scheduled job handler."""

    code = 'schedule_handler_error'

    def __init__(self, job_name: str, original: BaseException):
        super().__init__(f"{job_name}: {original}")
        self.job_name = job_name
        self.original = original


class JobNotFoundError(DomainResellerError):
    """Manual trigger for a job name that was never scheduled."""

    code = 'job_not_found'

    def __init__(self, job_name: str):
        super().__init__(f"Job not found: {job_name}")
        self.job_name = job_name


class DomainNotFoundError(DomainResellerError):
    """Requested domain id does not exist."""

    code = 'domain_not_found'

    def __init__(self, domain_id):
        super().__init__(f"Domain not found: {domain_id}")
        self.domain_id = domain_id


class EnomAPIError(DomainResellerError):
    """Registry API returned an error response or could not be reached."""

    code = 'registry_api_error'

    def __init__(self, message: str, command: Optional[str] = None, errors: Optional[list] = None):
        super().__init__(message)
        self.command = command
        self.errors = errors or []

    def __str__(self):
        if self.command:
            return f"[{self.command}] {self.message}"
        return self.message


class StripeAPIError(DomainResellerError):
    """Payment processor API error other than a card decline."""

    code = 'payment_api_error'

    def __init__(self, message: str, status_code: Optional[int] = None, stripe_code: Optional[str] = None,
                 outcome_unknown: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.stripe_code = stripe_code
        # False only when no charge can have happened
        self.outcome_unknown = outcome_unknown


ERROR_CODE_EXCEPTIONS = {
    InsufficientBalanceError.code: InsufficientBalanceError,
    RefillVerificationError.code: RefillVerificationError,
    RefillFailedError.code: RefillFailedError,
    RegistryActionFailedError.code: RegistryActionFailedError,
    PaymentDeclinedError.code: PaymentDeclinedError,
}


def exception_for_code(code: Optional[str], message: str) -> DomainResellerError:
    """Build the taxonomy exception matching a WorkflowResult error code"""
    exc_class = ERROR_CODE_EXCEPTIONS.get(code or '', DomainResellerError)
    if exc_class is DomainResellerError:
        return DomainResellerError(message, code=code)
    return exc_class(message)
