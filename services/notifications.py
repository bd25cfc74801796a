"""
Customer and admin email notifications
Plain-text templates delivered over SMTP; delivery failures are logged, never raised
"""

import os
import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Dict, Any, Optional, Tuple

from brand_config import get_platform_name, get_support_email, get_site_url
from utils.environment import get_env_int, get_env_bool

logger = logging.getLogger(__name__)

TEMPLATES: Dict[str, Tuple[str, str]] = {
    'renewal_confirmation': (
        "Domain Renewed: {domain}",
        "Your domain {domain} has been renewed for {years} year(s).\n\n"
        "New expiration date: {new_expiration}\n"
        "Amount charged: {cost}\n\n"
        "Manage your domains at {site_url}/dashboard"
    ),
    'renewal_declined': (
        "Action Required: {domain} renewal failed",
        "We were unable to automatically renew {domain}.\n\n"
        "Reason: {error}\n"
        "Current expiration date: {expiration_date}\n\n"
        "Auto-renew has been turned off for this domain. Please update your payment "
        "method and renew manually at {site_url}/dashboard before the domain expires."
    ),
    'renewal_failed': (
        "Renewal delayed: {domain}",
        "We could not complete the automatic renewal of {domain} today.\n\n"
        "Reason: {error}\n"
        "Current expiration date: {expiration_date}\n\n"
        "Auto-renew is still on and we will try again on the next run. To renew now, "
        "visit {site_url}/dashboard."
    ),
    'payment_method_required': (
        "Action Required: add a payment method for {domain}",
        "Auto-renew is enabled for {domain}, which expires on {expiration_date}, "
        "but there is no payment method on file.\n\n"
        "Add a payment method at {site_url}/dashboard so the domain can renew automatically."
    ),
    'transfer_complete': (
        "Transfer Complete: {domain}",
        "Your transfer of {domain} to {platform_name} is complete.\n\n"
        "The domain is now active in your account: {site_url}/dashboard"
    ),
    'domain_expiring': (
        "Action Required: {domain} expires in {days_left} days",
        "Your domain {domain} expires in {days_left} days ({expiration_date}).\n\n"
        "If it is not renewed your website and email will stop working and the domain "
        "may become available for others to register.\n\n"
        "Renew now: {renew_link}"
    ),
    'admin_alert': (
        "[{platform_name} {severity}] {component}: {title}",
        "{message}\n\n"
        "Category: {category}\n"
        "Time: {timestamp}\n\n"
        "{details}"
    ),
}

class _TemplateData(dict):
    """Missing template fields render as empty strings"""

    def __missing__(self, key):
        return ''

class NotificationService:
    """SMTP email sender keyed by template name"""

    def __init__(self):
        self.host = os.getenv('SMTP_HOST', 'smtp.gmail.com')
        self.port = get_env_int('SMTP_PORT', 587)
        self.user = os.getenv('SMTP_USER')
        self.password = os.getenv('SMTP_PASS')
        self.use_ssl = get_env_bool('SMTP_SECURE', False)
        self.timeout = get_env_int('SMTP_TIMEOUT', 20)
        self.from_address = os.getenv('SMTP_FROM') or get_support_email()
        self.from_name = os.getenv('SMTP_FROM_NAME') or get_platform_name()

        if self.password:
            logger.info(f"🔧 Notification service initialized (SMTP via {self.host}:{self.port})")
        else:
            logger.info("🔧 Notification service initialized (no SMTP password, emails are logged only)")

    def is_configured(self) -> bool:
        return bool(self.password)

    def render(self, template: str, data: Optional[Dict[str, Any]] = None) -> Tuple[str, str]:
        """Render (subject, body) for a template"""
        if template not in TEMPLATES:
            raise KeyError(f"Unknown notification template: {template}")

        values = _TemplateData(
            platform_name=get_platform_name(),
            support_email=get_support_email(),
            site_url=get_site_url(),
        )
        values.update({k: '' if v is None else v for k, v in (data or {}).items()})

        subject_format, body_format = TEMPLATES[template]
        subject = subject_format.format_map(values)
        body = body_format.format_map(values)
        body += f"\n\nQuestions? Contact us at {values['support_email']}\n{values['platform_name']}"
        # Subjects are single header lines
        return ' '.join(subject.split()), body

    async def send(self, template: str, to: Optional[str], data: Optional[Dict[str, Any]] = None) -> bool:
        """
        Send a templated email

        Returns:
            bool: True when delivered (or logged in console mode); never raises
        """
        if not to:
            logger.warning(f"⚠️ Notification '{template}' skipped: no recipient")
            return False

        try:
            subject, body = self.render(template, data)
        except Exception as e:
            logger.error(f"❌ Failed to render notification '{template}': {e}")
            return False

        if not self.is_configured():
            logger.info(f"📧 [console] To: {to} | Subject: {subject}\n{body}")
            return True

        message = EmailMessage()
        message['From'] = formataddr((self.from_name, self.from_address))
        message['To'] = to
        message['Subject'] = subject
        message['Message-ID'] = make_msgid()
        message.set_content(body)

        try:
            await asyncio.to_thread(self._deliver, message)
            logger.info(f"📧 Notification '{template}' sent to {to}")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to send notification '{template}' to {to}: {e}")
            return False

    def _deliver(self, message: EmailMessage):
        if self.use_ssl:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.login(self.user or self.from_address, self.password)
                smtp.send_message(message)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                smtp.login(self.user or self.from_address, self.password)
                smtp.send_message(message)

_notification_service: Optional[NotificationService] = None

def get_notification_service() -> NotificationService:
    """Get the global notification service instance"""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
