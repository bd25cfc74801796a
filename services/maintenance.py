"""
Housekeeping jobs
Cart cleanup, push-request expiry and expiration notices
"""

import logging
import math
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from database import (
    delete_expired_cart_items, get_app_setting, get_expiring_domains_without_auto_renew
)
from database import expire_push_requests as expire_pending_push_requests
from services.enom import as_utc
from services.notifications import NotificationService, get_notification_service
from utils.environment import get_frontend_url

logger = logging.getLogger(__name__)

EXPIRATION_NOTICE_DAYS = (30, 14, 7, 3, 1)
DEFAULT_EXPIRING_DOMAIN_DAYS = 30

def days_until(expiration: datetime, now: Optional[datetime] = None) -> int:
    """Whole days left, rounded up"""
    now = now or datetime.now(timezone.utc)
    return math.ceil((as_utc(expiration) - now).total_seconds() / 86400)

async def clean_expired_cart_items() -> int:
    removed = await delete_expired_cart_items()
    logger.info(f"🧹 Cart cleanup: removed {removed} expired cart items")
    return removed

async def expire_push_requests() -> int:
    expired = await expire_pending_push_requests()
    if not expired:
        logger.info("ℹ️ No expired push requests found")
        return 0

    for row in expired:
        logger.info(f"⌛ Expired push for {row['domain_name']}.{row['tld']} (request #{row['id']})")
    logger.info(f"✅ Expired {len(expired)} push request(s)")
    return len(expired)

async def send_expiration_notifications(notifier: Optional[NotificationService] = None,
                                        now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Email owners of domains without auto-renew as expiry approaches

    Only domains exactly 30, 14, 7, 3 or 1 days out get a notice, so a daily
    run sends each reminder once. The lookahead comes from the
    'expiring_domain_days' app setting.
    """
    notifier = notifier or get_notification_service()
    now = now or datetime.now(timezone.utc)

    setting = await get_app_setting('expiring_domain_days')
    try:
        threshold = int(setting) if setting else DEFAULT_EXPIRING_DOMAIN_DAYS
    except ValueError:
        logger.warning(f"⚠️ Invalid expiring_domain_days setting: {setting!r}")
        threshold = DEFAULT_EXPIRING_DOMAIN_DAYS

    domains = await get_expiring_domains_without_auto_renew(threshold)
    site_url = get_frontend_url()

    sent = 0
    for domain in domains:
        full_domain = f"{domain['domain_name']}.{domain['tld']}"
        try:
            left = days_until(domain['expiration_date'], now)
            if left not in EXPIRATION_NOTICE_DAYS:
                continue
            delivered = await notifier.send('domain_expiring', domain.get('email'), {
                'domain': full_domain,
                'days_left': left,
                'expiration_date': as_utc(domain['expiration_date']).strftime('%B %d, %Y'),
                'renew_link': f"{site_url}/dashboard?renew={full_domain}",
            })
            if delivered:
                sent += 1
        except Exception as e:
            logger.error(f"❌ Failed to send expiration notice for {full_domain}: {e}")

    logger.info(f"📧 Expiration notices sent: {sent} (checked {len(domains)} domains)")
    return {'checked': len(domains), 'sent': sent}
