"""Default recurring jobs for the worker"""

import logging
from typing import List, Tuple

from services.domain_sync import sync_domains, sync_pending_transfers
from services.job_scheduler import JobScheduler, JobHandler
from services.maintenance import clean_expired_cart_items, expire_push_requests, send_expiration_notifications
from services.renewal_processor import process_all_domain_renewals

logger = logging.getLogger(__name__)

# Cron expressions are evaluated in SCHEDULER_TIMEZONE (America/New_York by default)
DEFAULT_JOBS: List[Tuple[str, str, JobHandler]] = [
    ('domainSync', '0 0,6,12,18 * * *', sync_domains),
    ('expirationNotifications', '0 0 * * *', send_expiration_notifications),
    ('cleanCart', '0 * * * *', clean_expired_cart_items),
    ('syncTransfers', '0 */2 * * *', sync_pending_transfers),
    ('autoRenew', '0 3 * * *', process_all_domain_renewals),
    ('expirePushRequests', '30 * * * *', expire_push_requests),
]

def register_default_jobs(scheduler: JobScheduler) -> JobScheduler:
    for name, expression, handler in DEFAULT_JOBS:
        scheduler.schedule(name, expression, handler)
    logger.info(f"✅ Registered {len(DEFAULT_JOBS)} default jobs")
    return scheduler
