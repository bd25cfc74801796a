"""
Per-domain advisory locks

Serializes auto-renewal, suspension, privacy changes and registry sync
touching the same domain inside this process. Locks are created lazily and live for the
process lifetime; there is one small lock object per domain id touched.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

logger = logging.getLogger(__name__)

_domain_locks: Dict[int, asyncio.Lock] = {}

def get_domain_lock(domain_id: int) -> asyncio.Lock:
    lock = _domain_locks.get(domain_id)
    if lock is None:
        lock = asyncio.Lock()
        _domain_locks[domain_id] = lock
    return lock

@asynccontextmanager
async def domain_lock(domain_id: int, operation: str = 'operation'):
    """Hold the advisory lock for a domain while an operation runs"""
    lock = get_domain_lock(domain_id)
    if lock.locked():
        logger.info(f"🔒 Domain {domain_id} busy - {operation} waiting for lock")
    async with lock:
        yield

def reset_domain_locks():
    _domain_locks.clear()
