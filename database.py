"""
PostgreSQL database functions for the domain reseller worker
Direct database connections with raw SQL queries for transparency

Errors propagate to the caller. Workflows decide which failures are tolerable
(e.g. an audit row) and which are not (e.g. a reconciliation record).
"""

import os
import json
import time
import asyncio
import logging
import threading
import psycopg2
import psycopg2.pool
import psycopg2.extensions
from psycopg2.extras import RealDictCursor
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, List, Any

from utils.environment import get_env_int

logger = logging.getLogger(__name__)

_connection_pool = None
_pool_lock = threading.Lock()
_last_pool_recreation = 0.0

DEAD_CONNECTION_MARKERS = ('connection closed', 'server closed', 'ssl connection', 'timeout', 'broken pipe')

def _pool_kwargs() -> Dict[str, Any]:
    database_url = os.getenv('DATABASE_URL')
    if not database_url:
        raise ValueError("DATABASE_URL environment variable not found")
    return {
        'dsn': database_url,
        'cursor_factory': RealDictCursor,
        'connect_timeout': 5,
        # Server-side bound on every statement
        'options': f"-c statement_timeout={get_env_int('DB_STATEMENT_TIMEOUT_MS', 30000)}",
        'keepalives_idle': 600,
        'keepalives_interval': 30,
        'keepalives_count': 3,
    }

def get_connection_pool():
    """Get or create the database connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                minconn = int(os.getenv('DB_POOL_MIN', '2'))
                maxconn = int(os.getenv('DB_POOL_MAX', '20'))
                _connection_pool = psycopg2.pool.ThreadedConnectionPool(minconn, maxconn, **_pool_kwargs())
                logger.info(f"✅ Database connection pool created ({minconn}-{maxconn} connections)")
    return _connection_pool

def recreate_connection_pool() -> bool:
    """Recreate the pool after dead connections (at most once every 10 seconds)"""
    global _connection_pool, _last_pool_recreation

    now = time.time()
    if now - _last_pool_recreation < 10:
        logger.debug("🔄 Pool recreation rate limited - skipping")
        return False

    with _pool_lock:
        if _connection_pool is not None:
            try:
                _connection_pool.closeall()
            except Exception as close_error:
                logger.warning(f"⚠️ Error closing existing pool: {close_error}")
            _connection_pool = None
        _last_pool_recreation = now

    try:
        get_connection_pool()
        logger.info("✅ Database connection pool recreated")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to recreate connection pool: {e}")
        return False

def close_connection_pool():
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔄 Database connection pool closed")

def get_connection():
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn

def return_connection(conn, is_broken: bool = False):
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except Exception as e:
        logger.debug(f"Returning connection to pool failed, closing directly: {e}")
        try:
            conn.close()
        except Exception:
            pass

def _is_dead_connection(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in DEAD_CONNECTION_MARKERS)

async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a SELECT (or UPDATE ... RETURNING) and return rows, retrying dead connections"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    results = cursor.fetchall() if cursor.description else []
                    return [dict(row) for row in results]
            except psycopg2.extensions.QueryCanceledError as e:
                logger.error(f"⏱️ Database query cancelled (statement timeout): {e}")
                raise
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                if conn is not None:
                    return_connection(conn, is_broken=True)
                    conn = None
                if _is_dead_connection(e):
                    logger.warning(f"🔄 Detected dead connection, recreating pool: {e}")
                    recreate_connection_pool()
                if attempt < max_retries - 1:
                    logger.warning(f"Database connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + attempt * 0.5)
                    continue
                logger.error(f"💥 All database connection attempts failed after {max_retries} retries: {e}")
                raise
            except Exception as e:
                logger.error(f"Database query error: {e}")
                raise
            finally:
                if conn is not None:
                    return_connection(conn)
        return []

    return await asyncio.to_thread(_execute)

async def execute_update(query: str, params: Optional[tuple] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE and return affected rows (no retries to prevent duplicates)"""
    return await asyncio.to_thread(_execute_write, query, params, False)

async def execute_insert_returning_id(query: str, params: Optional[tuple] = None) -> Optional[int]:
    """Execute an INSERT ... RETURNING id once; a dropped connection raises instead of re-inserting"""
    return await asyncio.to_thread(_execute_write, query, params, True)

def _execute_write(query: str, params: Optional[tuple], returning_id: bool):
    conn = None
    broken = False
    try:
        conn = get_connection()
        with conn.cursor() as cursor:
            cursor.execute(query, params)
            if returning_id:
                row = cursor.fetchone()
                return row['id'] if row else None
            return cursor.rowcount
    except psycopg2.extensions.QueryCanceledError as e:
        logger.error(f"⏱️ Database write cancelled (statement timeout): {e}")
        raise
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        broken = True
        if _is_dead_connection(e):
            logger.warning(f"🔄 Detected dead connection on write, recreating pool: {e}")
        logger.error(f"💥 Database write connection failed: {e}")
        raise
    except Exception as e:
        logger.error(f"💥 Database write failed: {e}")
        raise
    finally:
        if conn is not None:
            return_connection(conn, is_broken=broken)
        if broken:
            recreate_connection_pool()

async def check_database_health() -> bool:
    try:
        rows = await execute_query("SELECT 1 AS ok")
        return bool(rows and rows[0].get('ok') == 1)
    except Exception as e:
        logger.warning(f"⚠️ Database health check failed: {e}")
        return False

def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)

async def init_database():
    """Create tables the worker reads and writes if they don't exist"""

    def _init():
        conn = get_connection()
        try:
            with conn.cursor() as cursor:
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS users (
                        id SERIAL PRIMARY KEY,
                        username VARCHAR(30) UNIQUE NOT NULL,
                        email VARCHAR(255) UNIQUE NOT NULL,
                        full_name VARCHAR(100),
                        stripe_customer_id VARCHAR(255),
                        default_payment_method_id VARCHAR(255),
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS domains (
                        id SERIAL PRIMARY KEY,
                        user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
                        domain_name VARCHAR(255) NOT NULL,
                        tld VARCHAR(20) NOT NULL,
                        status VARCHAR(20) DEFAULT 'pending'
                            CHECK (status IN ('active', 'pending', 'suspended', 'expired')),
                        registration_date TIMESTAMPTZ,
                        expiration_date TIMESTAMPTZ,
                        auto_renew BOOLEAN DEFAULT true,
                        privacy_enabled BOOLEAN DEFAULT false,
                        lock_status BOOLEAN DEFAULT true,
                        nameservers JSONB DEFAULT '[]',
                        suspended_original_nameservers JSONB,
                        registry_mode VARCHAR(20) DEFAULT 'test',
                        registry_domain_id VARCHAR(100),
                        auto_renew_payment_method_id VARCHAR(255),
                        last_synced_at TIMESTAMPTZ,
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE (domain_name, tld)
                    )
                """)
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_domains_registry_mode ON domains(registry_mode)")
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_domains_expiration ON domains(expiration_date)")

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS tld_pricing (
                        id SERIAL PRIMARY KEY,
                        tld VARCHAR(20) UNIQUE NOT NULL,
                        cost_register DECIMAL(10,2) NOT NULL,
                        cost_renew DECIMAL(10,2) NOT NULL,
                        cost_transfer DECIMAL(10,2) NOT NULL,
                        price_register DECIMAL(10,2) NOT NULL,
                        price_renew DECIMAL(10,2) NOT NULL,
                        price_transfer DECIMAL(10,2) NOT NULL,
                        price_privacy DECIMAL(10,2) DEFAULT 9.99,
                        cost_privacy DECIMAL(10,2) DEFAULT 8.00,
                        is_active BOOLEAN DEFAULT true
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS reconciliation_records (
                        id SERIAL PRIMARY KEY,
                        domain_id INTEGER REFERENCES domains(id) ON DELETE SET NULL,
                        user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                        domain_name VARCHAR(255) NOT NULL,
                        action VARCHAR(50) NOT NULL,
                        payment_reference_id VARCHAR(255),
                        amount_charged DECIMAL(10,2) NOT NULL,
                        registry_mode VARCHAR(20),
                        error TEXT,
                        details JSONB,
                        requires_manual_resolution BOOLEAN NOT NULL DEFAULT true,
                        resolved_at TIMESTAMPTZ,
                        resolution_note TEXT,
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_reconciliation_open
                    ON reconciliation_records(domain_id) WHERE resolved_at IS NULL
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS balance_transactions (
                        id SERIAL PRIMARY KEY,
                        transaction_type VARCHAR(50) NOT NULL,
                        amount DECIMAL(10,2) NOT NULL,
                        fee_amount DECIMAL(10,2) DEFAULT 0,
                        net_amount DECIMAL(10,2),
                        balance_before DECIMAL(10,2),
                        balance_after DECIMAL(10,2),
                        domain_name VARCHAR(255),
                        registry_mode VARCHAR(20),
                        initiated_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
                        auto_refill BOOLEAN DEFAULT false,
                        payment_reference_id VARCHAR(255),
                        notes TEXT,
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                cursor.execute("CREATE INDEX IF NOT EXISTS idx_balance_transactions_created ON balance_transactions(created_at DESC)")

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS activity_logs (
                        id SERIAL PRIMARY KEY,
                        user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                        action VARCHAR(100) NOT NULL,
                        entity_type VARCHAR(50),
                        entity_id INTEGER,
                        details JSONB,
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS cart_items (
                        id SERIAL PRIMARY KEY,
                        user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
                        item_type VARCHAR(30) NOT NULL,
                        domain_name VARCHAR(255) NOT NULL,
                        tld VARCHAR(20) NOT NULL,
                        years INTEGER DEFAULT 1,
                        price DECIMAL(10,2) NOT NULL,
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                        expires_at TIMESTAMPTZ DEFAULT (CURRENT_TIMESTAMP + INTERVAL '24 hours')
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS domain_transfers (
                        id SERIAL PRIMARY KEY,
                        user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
                        domain_name VARCHAR(255) NOT NULL,
                        tld VARCHAR(20) NOT NULL,
                        registry_transfer_id VARCHAR(100),
                        registry_mode VARCHAR(20) DEFAULT 'test',
                        status VARCHAR(30) DEFAULT 'pending',
                        transfer_completed_at TIMESTAMPTZ,
                        error_message TEXT,
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS domain_push_requests (
                        id SERIAL PRIMARY KEY,
                        domain_id INTEGER NOT NULL REFERENCES domains(id) ON DELETE CASCADE,
                        from_user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        to_user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                        status VARCHAR(20) DEFAULT 'pending',
                        expires_at TIMESTAMPTZ,
                        responded_at TIMESTAMPTZ,
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS app_settings (
                        key VARCHAR(100) PRIMARY KEY,
                        value TEXT NOT NULL,
                        description TEXT,
                        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                cursor.execute("""
                    INSERT INTO app_settings (key, value, description) VALUES
                        ('expiring_domain_days', '30', 'Days before expiration to start sending notices'),
                        ('push_timeout_days', '7', 'Days before a pending domain push request expires')
                    ON CONFLICT (key) DO NOTHING
                """)

            logger.info("✅ Database tables initialized")
        finally:
            return_connection(conn)

    await asyncio.to_thread(_init)

# ----------------------------------------------------------------------
# Settings and users
# ----------------------------------------------------------------------

async def get_app_setting(key: str, default: Optional[str] = None) -> Optional[str]:
    rows = await execute_query("SELECT value FROM app_settings WHERE key = %s", (key,))
    return rows[0]['value'] if rows else default

async def get_user_by_id(user_id: int) -> Optional[Dict]:
    rows = await execute_query(
        "SELECT id, username, email, full_name, stripe_customer_id, default_payment_method_id FROM users WHERE id = %s",
        (user_id,)
    )
    return rows[0] if rows else None

async def get_tld_pricing(tld: str) -> Optional[Dict]:
    rows = await execute_query(
        "SELECT tld, price_renew, cost_renew, price_privacy, cost_privacy FROM tld_pricing WHERE tld = %s",
        (tld.lower(),)
    )
    return rows[0] if rows else None

# ----------------------------------------------------------------------
# Domains
# ----------------------------------------------------------------------

async def get_domain_by_id(domain_id: int) -> Optional[Dict]:
    rows = await execute_query("SELECT * FROM domains WHERE id = %s", (domain_id,))
    return rows[0] if rows else None

async def update_domain_status(domain_id: int, status: str) -> bool:
    updated = await execute_update(
        "UPDATE domains SET status = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
        (status, domain_id)
    )
    return updated > 0

async def update_domain_nameservers(domain_id: int, nameservers: List[str]) -> bool:
    updated = await execute_update(
        "UPDATE domains SET nameservers = %s::jsonb, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
        (_json(list(nameservers)), domain_id)
    )
    return updated > 0

async def save_nameserver_snapshot(domain_id: int, nameservers: List[str]) -> bool:
    """Store the pre-suspension nameservers; an existing snapshot is never overwritten"""
    updated = await execute_update(
        """
        UPDATE domains SET suspended_original_nameservers = %s::jsonb, updated_at = CURRENT_TIMESTAMP
        WHERE id = %s AND suspended_original_nameservers IS NULL
        """,
        (_json(list(nameservers)), domain_id)
    )
    return updated > 0

async def clear_nameserver_snapshot(domain_id: int, restored_nameservers: List[str]) -> bool:
    updated = await execute_update(
        """
        UPDATE domains SET suspended_original_nameservers = NULL, nameservers = %s::jsonb,
               updated_at = CURRENT_TIMESTAMP
        WHERE id = %s
        """,
        (_json(list(restored_nameservers)), domain_id)
    )
    return updated > 0

async def set_domain_privacy(domain_id: int, enabled: bool) -> bool:
    updated = await execute_update(
        "UPDATE domains SET privacy_enabled = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
        (enabled, domain_id)
    )
    return updated > 0

async def disable_domain_auto_renew(domain_id: int) -> bool:
    updated = await execute_update(
        "UPDATE domains SET auto_renew = false, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
        (domain_id,)
    )
    return updated > 0

async def update_domain_expiration(domain_id: int, expiration_date: datetime) -> bool:
    updated = await execute_update(
        "UPDATE domains SET expiration_date = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s",
        (expiration_date, domain_id)
    )
    return updated > 0

AUTO_RENEW_SELECT = """
    SELECT d.*, u.email, u.username, u.stripe_customer_id, u.default_payment_method_id
    FROM domains d
    JOIN users u ON d.user_id = u.id
    WHERE d.status = 'active'
      AND d.auto_renew = true
      AND COALESCE(d.registry_mode, 'test') = %s
      AND d.expiration_date BETWEEN CURRENT_DATE AND CURRENT_DATE + make_interval(days => %s)
"""

async def get_auto_renew_candidates(mode: str, lookahead_days: int) -> List[Dict]:
    """Active auto-renew domains of this registry mode expiring soon, with a payment method on file"""
    return await execute_query(
        AUTO_RENEW_SELECT + """
          AND (u.default_payment_method_id IS NOT NULL OR d.auto_renew_payment_method_id IS NOT NULL)
        ORDER BY d.expiration_date ASC
        """,
        (mode, lookahead_days)
    )

async def get_domains_missing_payment_method(mode: str, lookahead_days: int) -> List[Dict]:
    return await execute_query(
        AUTO_RENEW_SELECT + """
          AND u.default_payment_method_id IS NULL
          AND d.auto_renew_payment_method_id IS NULL
        ORDER BY d.expiration_date ASC
        """,
        (mode, lookahead_days)
    )

async def get_domains_to_sync(mode: str, limit: int = 50) -> List[Dict]:
    return await execute_query(
        """
        SELECT id, user_id, domain_name, tld, status, registry_mode FROM domains
        WHERE status IN ('active', 'pending')
          AND COALESCE(registry_mode, 'test') = %s
          AND (last_synced_at IS NULL OR last_synced_at < NOW() - INTERVAL '6 hours')
        ORDER BY last_synced_at ASC NULLS FIRST
        LIMIT %s
        """,
        (mode, limit)
    )

async def update_domain_sync_data(domain_id: int, expiration_date: Optional[datetime], privacy_enabled: bool,
                                  lock_status: bool, nameservers: Optional[List[str]], registry_domain_id: Optional[str],
                                  status: str) -> bool:
    """Write registry data; the local auto_renew flag is never touched and suspended rows are skipped"""
    updated = await execute_update(
        """
        UPDATE domains SET
            expiration_date = COALESCE(%s, expiration_date),
            privacy_enabled = %s,
            lock_status = %s,
            nameservers = COALESCE(%s::jsonb, nameservers),
            registry_domain_id = COALESCE(%s, registry_domain_id),
            status = %s,
            last_synced_at = CURRENT_TIMESTAMP,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = %s AND status <> 'suspended'
        """,
        (expiration_date, privacy_enabled, lock_status, _json(list(nameservers)) if nameservers else None,
         registry_domain_id, status, domain_id)
    )
    return updated > 0

async def get_expiring_domains_without_auto_renew(days_threshold: int) -> List[Dict]:
    return await execute_query(
        """
        SELECT d.*, u.email, u.username
        FROM domains d
        JOIN users u ON d.user_id = u.id
        WHERE d.status = 'active'
          AND d.auto_renew = false
          AND d.expiration_date BETWEEN CURRENT_DATE AND CURRENT_DATE + make_interval(days => %s)
        ORDER BY d.expiration_date ASC
        """,
        (days_threshold,)
    )

# ----------------------------------------------------------------------
# Reconciliation records
# ----------------------------------------------------------------------

async def create_reconciliation_record(domain_id: Optional[int], user_id: Optional[int], domain_name: str,
                                       action: str, payment_reference_id: Optional[str], amount_charged: Decimal,
                                       error: Optional[str], registry_mode: Optional[str] = None,
                                       details: Optional[Dict[str, Any]] = None) -> int:
    """Persist a charged-but-not-fulfilled action. Raises if the row is not written."""
    record_id = await execute_insert_returning_id(
        """
        INSERT INTO reconciliation_records
            (domain_id, user_id, domain_name, action, payment_reference_id, amount_charged,
             registry_mode, error, details, requires_manual_resolution)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, true)
        RETURNING id
        """,
        (domain_id, user_id, domain_name, action, payment_reference_id, amount_charged,
         registry_mode, error, _json(details or {}))
    )
    if record_id is None:
        raise RuntimeError(f"Reconciliation record for {domain_name} was not persisted")
    return record_id

async def get_open_reconciliation_record(domain_id: int) -> Optional[Dict]:
    rows = await execute_query(
        """
        SELECT * FROM reconciliation_records
        WHERE domain_id = %s AND resolved_at IS NULL
        ORDER BY created_at DESC LIMIT 1
        """,
        (domain_id,)
    )
    return rows[0] if rows else None

async def list_reconciliation_records(include_resolved: bool = False, limit: int = 100) -> List[Dict]:
    where = "" if include_resolved else "WHERE resolved_at IS NULL"
    return await execute_query(
        f"SELECT * FROM reconciliation_records {where} ORDER BY created_at DESC LIMIT %s",
        (limit,)
    )

async def resolve_reconciliation_record(record_id: int, note: str) -> bool:
    updated = await execute_update(
        """
        UPDATE reconciliation_records
        SET resolved_at = CURRENT_TIMESTAMP, resolution_note = %s, requires_manual_resolution = false
        WHERE id = %s AND resolved_at IS NULL
        """,
        (note, record_id)
    )
    return updated > 0

# ----------------------------------------------------------------------
# Audit rows
# ----------------------------------------------------------------------

async def record_balance_transaction(transaction_type: str, amount: Decimal, fee_amount: Decimal = Decimal('0'),
                                     net_amount: Optional[Decimal] = None, balance_before: Optional[Decimal] = None,
                                     balance_after: Optional[Decimal] = None, domain_name: Optional[str] = None,
                                     registry_mode: Optional[str] = None, initiated_by: Optional[int] = None,
                                     auto_refill: bool = False, payment_reference_id: Optional[str] = None,
                                     notes: Optional[str] = None) -> Optional[int]:
    return await execute_insert_returning_id(
        """
        INSERT INTO balance_transactions
            (transaction_type, amount, fee_amount, net_amount, balance_before, balance_after,
             domain_name, registry_mode, initiated_by, auto_refill, payment_reference_id, notes)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (transaction_type, amount, fee_amount, net_amount, balance_before, balance_after,
         domain_name, registry_mode, initiated_by, auto_refill, payment_reference_id, notes)
    )

async def get_balance_transactions(limit: int = 50) -> List[Dict]:
    return await execute_query(
        "SELECT * FROM balance_transactions ORDER BY created_at DESC LIMIT %s",
        (limit,)
    )

async def log_activity(user_id: Optional[int], action: str, entity_type: Optional[str] = None,
                       entity_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None) -> bool:
    updated = await execute_update(
        """
        INSERT INTO activity_logs (user_id, action, entity_type, entity_id, details)
        VALUES (%s, %s, %s, %s, %s::jsonb)
        """,
        (user_id, action, entity_type, entity_id, _json(details or {}))
    )
    return updated > 0

# ----------------------------------------------------------------------
# Maintenance
# ----------------------------------------------------------------------

async def delete_expired_cart_items() -> int:
    return await execute_update("DELETE FROM cart_items WHERE expires_at < CURRENT_TIMESTAMP")

async def get_pending_domain_transfers() -> List[Dict]:
    return await execute_query(
        """
        SELECT * FROM domain_transfers
        WHERE status IN ('pending', 'processing')
        ORDER BY created_at ASC
        """
    )

async def update_transfer_status(transfer_id: int, status: str, status_description: Optional[str]) -> bool:
    updated = await execute_update(
        """
        UPDATE domain_transfers SET
            status = %s,
            transfer_completed_at = CASE WHEN %s = 'completed' THEN CURRENT_TIMESTAMP ELSE NULL END,
            error_message = %s,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = %s
        """,
        (status, status, status_description, transfer_id)
    )
    return updated > 0

async def activate_transferred_domain(domain_name: str, tld: str) -> bool:
    updated = await execute_update(
        "UPDATE domains SET status = 'active', updated_at = CURRENT_TIMESTAMP WHERE domain_name = %s AND tld = %s",
        (domain_name, tld)
    )
    return updated > 0

async def expire_push_requests() -> List[Dict]:
    """Expire pending push requests past expires_at and return the expired rows"""
    return await execute_query(
        """
        UPDATE domain_push_requests p
        SET status = 'expired', responded_at = CURRENT_TIMESTAMP
        FROM domains d
        WHERE p.domain_id = d.id
          AND p.status = 'pending'
          AND p.expires_at IS NOT NULL
          AND p.expires_at < CURRENT_TIMESTAMP
        RETURNING p.id, p.domain_id, p.from_user_id, p.to_user_id, d.domain_name, d.tld
        """
    )
