"""Environment and registry-mode configuration helpers"""

import os
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)

REGISTRY_MODES = ('test', 'production')
DEFAULT_DOMAIN_MODE = 'test'

def get_registry_mode() -> str:
    """
    Get the process-wide registry operating mode

    Only used to decide which domains a job run should touch. Registry calls
    for a specific domain always use that domain's own recorded mode.

    Returns:
        str: 'test' or 'production'
    """
    mode = os.getenv('ENOM_ENV', 'test').strip().lower()
    if mode not in REGISTRY_MODES:
        logger.warning(f"⚠️ Unknown ENOM_ENV '{mode}' - falling back to test mode")
        return 'test'
    return mode

def get_domain_registry_mode(domain: dict) -> str:
    """Registry mode a domain was created under (legacy rows without one are test domains)"""
    mode = (domain.get('registry_mode') or DEFAULT_DOMAIN_MODE).strip().lower()
    if mode not in REGISTRY_MODES:
        raise ValueError(f"Domain {domain.get('id')} has invalid registry mode: {mode}")
    return mode

def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}: {value} - using {default}")
        return default

def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}: {value} - using {default}")
        return default

def get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')

def get_env_list(name: str, default: Optional[List[str]] = None) -> List[str]:
    """Parse a comma-separated environment variable into a list of trimmed values"""
    value = os.getenv(name, '')
    items = [item.strip() for item in value.split(',') if item.strip()]
    if not items and default is not None:
        return list(default)
    return items

def get_frontend_url() -> str:
    return os.getenv('FRONTEND_URL', 'https://example.com').rstrip('/')
