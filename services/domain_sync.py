"""
Registry synchronization jobs
Domain data refresh and pending transfer polling against eNom
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from database import (
    get_domains_to_sync, update_domain_sync_data, get_pending_domain_transfers,
    update_transfer_status, activate_transferred_domain, get_user_by_id
)
from performance_monitor import monitor_performance
from services.enom import EnomService, get_enom_service, parse_enom_date
from services.notifications import get_notification_service
from utils.domain_locks import domain_lock
from utils.environment import get_registry_mode, get_domain_registry_mode, get_env_int, get_env_float

logger = logging.getLogger(__name__)

TRANSFER_STATUS_MAP = {
    'completed': 'completed',
    'cancelled': 'failed',
    'canceled': 'failed',
    'failed': 'failed',
    'processing': 'processing',
    'pending': 'processing',
}

def derive_domain_status(registry_status: Optional[str], expiration_date: Optional[datetime],
                         now: Optional[datetime] = None) -> str:
    """Local status from registry data: expired if the registry says so or the date has passed"""
    now = now or datetime.now(timezone.utc)
    if (registry_status or '').strip().lower() == 'expired':
        return 'expired'
    if expiration_date is not None and expiration_date < now:
        return 'expired'
    return 'active'

def map_transfer_status(registry_status: Optional[str], current: str) -> str:
    return TRANSFER_STATUS_MAP.get((registry_status or '').strip().lower(), current)

@monitor_performance("domain_sync")
async def sync_domains(enom: Optional[EnomService] = None) -> Dict[str, Any]:
    """
    Refresh registry data for domains of the current mode not synced in six hours

    Expiration, status, privacy, lock and nameservers come from the registry;
    the local auto_renew flag is left alone since it drives this system's
    renewal job, not the registry's.
    """
    enom = enom or get_enom_service()
    mode = get_registry_mode()
    batch_size = get_env_int('DOMAIN_SYNC_BATCH_SIZE', 50)
    delay = get_env_float('DOMAIN_SYNC_DELAY_SECONDS', 0.5)

    domains = await get_domains_to_sync(mode, batch_size)
    logger.info(f"🔄 Domain sync ({mode}): {len(domains)} domains to sync")

    synced = 0
    failed = 0
    skipped = 0
    for domain in domains:
        full_domain = f"{domain['domain_name']}.{domain['tld']}"
        try:
            async with domain_lock(domain['id'], 'sync'):
                data = await enom.get_full_domain_data(
                    domain['domain_name'], domain['tld'], mode=get_domain_registry_mode(domain)
                )
                expiration = parse_enom_date(data.get('expiration_date'))
                status = derive_domain_status(data.get('status'), expiration)

                # Suspended rows are left alone; their nameservers are the quarantine set
                updated = await update_domain_sync_data(
                    domain['id'],
                    expiration_date=expiration,
                    privacy_enabled=bool(data.get('privacy_enabled')),
                    lock_status=bool(data.get('lock_status')),
                    nameservers=data.get('nameservers') or None,
                    registry_domain_id=data.get('domain_name_id'),
                    status=status,
                )
            if updated:
                synced += 1
                logger.debug(f"✅ Synced {full_domain} ({status})")
            else:
                skipped += 1
                logger.info(f"⏭️ Skipped sync write for {full_domain}: suspended or removed")
        except Exception as e:
            failed += 1
            logger.error(f"❌ Failed to sync {full_domain}: {e}")

        if delay > 0:
            await asyncio.sleep(delay)

    logger.info(f"✅ Domain sync complete - synced: {synced}, skipped: {skipped}, failed: {failed}")
    return {'mode': mode, 'synced': synced, 'skipped': skipped, 'failed': failed}

@monitor_performance("transfer_sync")
async def sync_pending_transfers(enom: Optional[EnomService] = None) -> Dict[str, Any]:
    """Poll registry status for pending transfers; completed ones activate the domain"""
    enom = enom or get_enom_service()
    notifier = get_notification_service()

    transfers = await get_pending_domain_transfers()
    logger.info(f"🔄 Transfer sync: {len(transfers)} pending transfers")

    updated = 0
    for transfer in transfers:
        transfer_id = transfer.get('registry_transfer_id')
        if not transfer_id:
            continue

        full_domain = f"{transfer['domain_name']}.{transfer['tld']}"
        try:
            registry = await enom.get_transfer_status(
                transfer_id, mode=get_domain_registry_mode(transfer)
            )
            new_status = map_transfer_status(registry.get('status'), transfer['status'])
            if new_status == transfer['status']:
                continue

            await update_transfer_status(transfer['id'], new_status, registry.get('status_description'))
            updated += 1
            logger.info(f"🔄 Transfer {full_domain}: {transfer['status']} → {new_status}")

            if new_status == 'completed':
                await activate_transferred_domain(transfer['domain_name'], transfer['tld'])
                user = await get_user_by_id(transfer['user_id']) if transfer.get('user_id') else None
                if user and user.get('email'):
                    await notifier.send('transfer_complete', user['email'], {
                        'domain': full_domain,
                        'username': user.get('username') or '',
                    })
        except Exception as e:
            logger.error(f"❌ Failed to sync transfer {transfer_id} ({full_domain}): {e}")

    logger.info(f"✅ Transfer sync complete - updated: {updated}")
    return {'updated': updated}
