"""
Admin alert system for the domain reseller worker

Centralized operator notifications for failures that need a human:
charged-but-unrenewed domains, reconciliation fallbacks, registry and
payment outages, scheduler handler errors.

Features:
- Severity levels (CRITICAL, ERROR, WARNING, INFO)
- Rate limiting to prevent alert floods during an outage
- Duplicate suppression by fingerprint
- Email delivery to ADMIN_ALERT_EMAILS
- Persistence in the admin_alerts table
"""

import os
import json
import logging
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any, Union
from enum import Enum
from dataclasses import dataclass, asdict

from database import execute_update
from utils.environment import get_env_int, get_env_list, get_env_bool

logger = logging.getLogger(__name__)

class AlertSeverity(Enum):
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"

class AlertCategory(Enum):
    RENEWAL = "renewal"
    PAYMENT = "payment"
    REGISTRY = "registry"
    SUSPENSION = "suspension"
    PRIVACY = "privacy"
    SCHEDULER = "scheduler"
    DATABASE = "database"
    SYSTEM_HEALTH = "system_health"

SEVERITY_ORDER = [AlertSeverity.INFO, AlertSeverity.WARNING, AlertSeverity.ERROR, AlertSeverity.CRITICAL]

@dataclass
class Alert:
    """Structured alert data"""
    severity: AlertSeverity
    category: AlertCategory
    component: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    fingerprint: Optional[str] = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)
        if self.fingerprint is None:
            content = f"{self.severity.value}:{self.category.value}:{self.component}:{self.message}"
            self.fingerprint = hashlib.md5(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['severity'] = self.severity.value
        data['category'] = self.category.value
        data['timestamp'] = self.timestamp.isoformat() if self.timestamp else None
        return data

class AdminAlertConfig:
    """Alert configuration from the environment"""

    def __init__(self):
        self.rate_limit_window = get_env_int('ALERT_RATE_LIMIT_WINDOW', 300)
        self.max_alerts_per_window = get_env_int('ALERT_MAX_PER_WINDOW', 10)
        self.suppression_window = get_env_int('ALERT_SUPPRESSION_WINDOW', 3600)
        self.recipients = get_env_list('ADMIN_ALERT_EMAILS', [])
        self.alerts_enabled = get_env_bool('ADMIN_ALERTS_ENABLED', True)

        try:
            self.min_severity = AlertSeverity(os.getenv('ALERT_MIN_SEVERITY', 'WARNING').upper())
        except ValueError:
            logger.warning("⚠️ Invalid ALERT_MIN_SEVERITY, using WARNING")
            self.min_severity = AlertSeverity.WARNING

        if not self.recipients:
            logger.warning("⚠️ No ADMIN_ALERT_EMAILS configured - alerts will be logged only")

        logger.info(f"✅ Admin alert config: enabled={self.alerts_enabled}, "
                    f"recipients={len(self.recipients)}, min_severity={self.min_severity.value}")

class AdminAlertSystem:
    """Admin alert delivery with rate limiting and deduplication"""

    def __init__(self, config: Optional[AdminAlertConfig] = None, notifier=None):
        self.config = config or AdminAlertConfig()
        self._notifier = notifier
        self._suppressed_alerts: Dict[str, datetime] = {}
        self._rate_limit_tracker: List[datetime] = []
        self._storage_initialized = False

    @property
    def notifier(self):
        if self._notifier is None:
            from services.notifications import get_notification_service
            self._notifier = get_notification_service()
        return self._notifier

    async def _init_alert_storage(self):
        try:
            await execute_update("""
                CREATE TABLE IF NOT EXISTS admin_alerts (
                    id SERIAL PRIMARY KEY,
                    severity VARCHAR(20) NOT NULL,
                    category VARCHAR(50) NOT NULL,
                    component VARCHAR(100) NOT NULL,
                    message TEXT NOT NULL,
                    details JSONB,
                    fingerprint VARCHAR(32) NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                    sent_at TIMESTAMPTZ,
                    suppressed BOOLEAN DEFAULT FALSE
                )
            """)
            await execute_update("""
                CREATE INDEX IF NOT EXISTS idx_admin_alerts_fingerprint
                ON admin_alerts(fingerprint)
            """)
            self._storage_initialized = True
        except Exception as e:
            logger.error(f"❌ Failed to initialize admin alert storage: {e}")

    def _is_rate_limited(self) -> bool:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.config.rate_limit_window)
        self._rate_limit_tracker = [ts for ts in self._rate_limit_tracker if ts > cutoff]
        return len(self._rate_limit_tracker) >= self.config.max_alerts_per_window

    def _is_suppressed(self, fingerprint: str) -> bool:
        suppressed_until = self._suppressed_alerts.get(fingerprint)
        if suppressed_until is None:
            return False
        if datetime.now(timezone.utc) > suppressed_until:
            del self._suppressed_alerts[fingerprint]
            return False
        return True

    def _suppress_alert(self, fingerprint: str):
        self._suppressed_alerts[fingerprint] = (
            datetime.now(timezone.utc) + timedelta(seconds=self.config.suppression_window)
        )

    @staticmethod
    def _format_details(details: Optional[Dict[str, Any]]) -> str:
        if not details:
            return ''
        lines = ['Details:']
        for key, value in details.items():
            if isinstance(value, dict):
                value = json.dumps(value, indent=2, default=str)
            elif isinstance(value, (list, tuple)):
                value = ', '.join(str(v) for v in value)
            lines.append(f"  - {key}: {value}")
        return '\n'.join(lines)

    async def _deliver(self, alert: Alert) -> int:
        sent = 0
        data = {
            'severity': alert.severity.value,
            'component': alert.component,
            'title': alert.message[:80],
            'message': alert.message,
            'category': alert.category.value,
            'timestamp': alert.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC'),
            'details': self._format_details(alert.details),
        }
        for recipient in self.config.recipients:
            if await self.notifier.send('admin_alert', recipient, data):
                sent += 1
        return sent

    async def _store_alert(self, alert: Alert, sent: bool) -> bool:
        if not self._storage_initialized:
            await self._init_alert_storage()
        try:
            await execute_update("""
                INSERT INTO admin_alerts
                (severity, category, component, message, details, fingerprint, sent_at, suppressed)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                alert.severity.value,
                alert.category.value,
                alert.component,
                alert.message,
                json.dumps(alert.details, default=str) if alert.details else None,
                alert.fingerprint,
                alert.timestamp if sent else None,
                not sent
            ))
            return True
        except Exception as e:
            logger.error(f"❌ Failed to store admin alert: {e}")
            return False

    async def send_alert(
        self,
        severity: Union[AlertSeverity, str],
        category: Union[AlertCategory, str],
        component: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Send an admin alert with rate limiting and deduplication

        Args:
            severity: Alert severity level
            category: Alert category
            component: Component that generated the alert
            message: Human-readable alert message
            details: Additional structured data

        Returns:
            bool: True if the alert was delivered to at least one recipient
        """
        try:
            if isinstance(severity, str):
                severity = AlertSeverity(severity.upper())
            if isinstance(category, str):
                try:
                    category = AlertCategory(category.lower())
                except ValueError:
                    category = AlertCategory.SYSTEM_HEALTH

            # Every alert reaches the application log, delivered or not
            log_level = logging.CRITICAL if severity == AlertSeverity.CRITICAL else getattr(logging, severity.value, logging.WARNING)
            logger.log(log_level, f"🚨 ADMIN ALERT ({severity.value}): [{component}] {message}")

            if not self.config.alerts_enabled:
                return False
            if SEVERITY_ORDER.index(severity) < SEVERITY_ORDER.index(self.config.min_severity):
                return False

            alert = Alert(severity=severity, category=category, component=component,
                          message=message, details=details)

            if self._is_suppressed(alert.fingerprint):
                logger.debug(f"Alert suppressed (duplicate): {component}: {message}")
                await self._store_alert(alert, sent=False)
                return False

            if self._is_rate_limited():
                logger.warning(f"⚠️ Admin alerts rate limited - not delivering: {component}: {message}")
                await self._store_alert(alert, sent=False)
                return False

            sent_count = await self._deliver(alert)
            self._rate_limit_tracker.append(datetime.now(timezone.utc))
            self._suppress_alert(alert.fingerprint)
            await self._store_alert(alert, sent=sent_count > 0)

            if sent_count == 0 and self.config.recipients:
                logger.error(f"❌ Failed to deliver admin alert to any recipient: {component}: {message}")
            return sent_count > 0

        except Exception as e:
            logger.error(f"❌ Admin alert system error: {e}")
            logger.error(f"🚨 ALERT (failed to send): [{component}] {message}")
            return False

_admin_alert_system: Optional[AdminAlertSystem] = None

def get_admin_alert_system() -> AdminAlertSystem:
    """Get or create the global admin alert system instance"""
    global _admin_alert_system
    if _admin_alert_system is None:
        _admin_alert_system = AdminAlertSystem()
    return _admin_alert_system

async def send_critical_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    return await get_admin_alert_system().send_alert(AlertSeverity.CRITICAL, category, component, message, details)

async def send_error_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    return await get_admin_alert_system().send_alert(AlertSeverity.ERROR, category, component, message, details)

async def send_warning_alert(component: str, message: str, category: str = "system_health", details: Optional[Dict[str, Any]] = None):
    return await get_admin_alert_system().send_alert(AlertSeverity.WARNING, category, component, message, details)
