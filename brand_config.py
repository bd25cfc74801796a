"""
Brand configuration utility for white-label customization
Handles configurable branding used in customer and admin notifications
"""

import os
import logging
from typing import Dict, Any

logger = logging.getLogger(__name__)

class BrandConfig:
    """Configuration class for white-label branding settings"""

    _instance = None
    _initialized = False

    def __new__(cls):
        """Singleton pattern to ensure consistent configuration"""
        if cls._instance is None:
            cls._instance = super(BrandConfig, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        # Only initialize once to prevent inconsistent environment variable loading
        if BrandConfig._initialized:
            return

        self.platform_name = self._sanitize_config_value(os.getenv('PLATFORM_NAME') or 'WorxTech', 'WorxTech')
        self.support_email = self._sanitize_config_value(os.getenv('SUPPORT_EMAIL') or 'support@worxtech.biz', 'support@worxtech.biz')
        self.site_url = (os.getenv('FRONTEND_URL') or 'https://example.com').rstrip('/')

        BrandConfig._initialized = True
        logger.debug(f"🔧 Brand configuration initialized: platform='{self.platform_name}'")

    def _sanitize_config_value(self, value: str, fallback: str) -> str:
        """
        Sanitize configuration values that end up in email subjects

        Args:
            value: Raw configuration value from environment
            fallback: Safe fallback value

        Returns:
            Sanitized configuration value
        """
        if not value or not isinstance(value, str):
            return fallback

        value = value.strip()

        # Header injection guard
        if '\n' in value or '\r' in value or len(value) > 100:
            logger.warning(f"🚨 Rejected unsafe configuration value, using fallback: '{fallback}'")
            return fallback

        return value

    def get_config_info(self) -> Dict[str, Any]:
        """Get current brand configuration for logging/debugging"""
        return {
            'platform_name': self.platform_name,
            'support_email': self.support_email,
            'site_url': self.site_url
        }

def get_brand_config() -> BrandConfig:
    return BrandConfig()

def get_platform_name() -> str:
    """Get configured platform name"""
    return get_brand_config().platform_name

def get_support_email() -> str:
    return get_brand_config().support_email

def get_site_url() -> str:
    return get_brand_config().site_url
