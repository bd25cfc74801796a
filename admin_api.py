"""
Admin HTTP API for the domain reseller worker
Job status and manual triggers, reconciliation, domain status/privacy, reseller balance
"""

import os
import hmac
import json
import time
import logging
import functools
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from database import (
    check_database_health, list_reconciliation_records, resolve_reconciliation_record,
    record_balance_transaction, get_balance_transactions
)
from pricing_utils import to_decimal
from services.balance_manager import calculate_refill_needed, get_min_refill
from services.enom import EnomService, get_enom_service
from services.exceptions import DomainNotFoundError, EnomAPIError, JobNotFoundError
from services.job_scheduler import JobScheduler
from services.privacy import PrivacyService, get_privacy_service
from services.suspension import DomainSuspensionService, get_suspension_service
from utils.environment import REGISTRY_MODES, get_registry_mode

logger = logging.getLogger(__name__)

# Keep access logs for errors only
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

SCHEDULER_KEY = web.AppKey('scheduler', JobScheduler)
ENOM_KEY = web.AppKey('enom', EnomService)
SUSPENSION_KEY = web.AppKey('suspension', DomainSuspensionService)
PRIVACY_KEY = web.AppKey('privacy', PrivacyService)

_dumps = functools.partial(json.dumps, default=str)
_admin_server: Optional[web.AppRunner] = None

def json_response(data: Any, status: int = 200) -> Response:
    return web.json_response(data, status=status, dumps=_dumps)

def error_response(message: str, status: int) -> Response:
    return json_response({'error': message}, status=status)

def verify_admin_token(request_headers) -> bool:
    """Check the bearer token against ADMIN_API_TOKEN"""
    expected_token = os.getenv('ADMIN_API_TOKEN')
    if not expected_token:
        logger.error("🛡️ ADMIN AUTH FAILURE: ADMIN_API_TOKEN not set - admin routes disabled")
        return False

    header = request_headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        logger.warning("🛡️ ADMIN AUTH FAILURE: Missing bearer token")
        return False

    if not hmac.compare_digest(header[len('Bearer '):].strip(), expected_token):
        logger.warning("🛡️ ADMIN AUTH FAILURE: Token mismatch")
        return False
    return True

@web.middleware
async def admin_auth_middleware(request: Request, handler):
    if request.path.startswith('/admin') and not verify_admin_token(request.headers):
        return error_response('Unauthorized', 401)
    try:
        return await handler(request)
    except EnomAPIError as e:
        logger.error(f"❌ Registry error on {request.method} {request.path}: {e}")
        return error_response(f'Registry error: {e}', 502)

async def _read_json(request: Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, ValueError):
        raise web.HTTPBadRequest(text=_dumps({'error': 'Invalid JSON body'}), content_type='application/json')
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text=_dumps({'error': 'JSON object expected'}), content_type='application/json')
    return body

def _parse_amount(value: Any, field: str) -> Decimal:
    try:
        amount = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise web.HTTPBadRequest(text=_dumps({'error': f'Invalid {field}'}), content_type='application/json')
    if not amount.is_finite():
        raise web.HTTPBadRequest(text=_dumps({'error': f'Invalid {field}'}), content_type='application/json')
    return amount

def _parse_mode(value: Optional[str]) -> str:
    mode = (value or get_registry_mode()).strip().lower()
    if mode not in REGISTRY_MODES:
        raise web.HTTPBadRequest(text=_dumps({'error': f'Invalid mode: {mode}'}), content_type='application/json')
    return mode

def _int_param(request: Request, name: str) -> int:
    try:
        return int(request.match_info[name])
    except ValueError:
        raise web.HTTPBadRequest(text=_dumps({'error': f'Invalid {name}'}), content_type='application/json')

# ----------------------------------------------------------------------
# Health and jobs
# ----------------------------------------------------------------------

async def health_handler(request: Request) -> Response:
    scheduler = request.app[SCHEDULER_KEY]
    try:
        database_ok = await check_database_health()
    except Exception as e:
        logger.warning(f"⚠️ Health check database probe failed: {e}")
        database_ok = False

    healthy = database_ok and scheduler.is_running
    return json_response({
        'status': 'healthy' if healthy else 'degraded',
        'service': 'domain_reseller_worker',
        'timestamp': time.time(),
        'checks': {
            'database': database_ok,
            'scheduler': scheduler.is_running,
            'registry_mode': get_registry_mode(),
        },
    }, status=200 if healthy else 503)

async def list_jobs_handler(request: Request) -> Response:
    return json_response({'jobs': request.app[SCHEDULER_KEY].get_status()})

async def run_job_handler(request: Request) -> Response:
    scheduler = request.app[SCHEDULER_KEY]
    name = request.match_info['name']
    try:
        started = await scheduler.trigger(name)
    except JobNotFoundError as e:
        return error_response(str(e), 404)

    status = next(job for job in scheduler.get_status() if job['name'] == name)
    if not started:
        return json_response({'triggered': False, 'reason': 'already_running', 'job': status}, status=409)
    return json_response({'triggered': True, 'job': status})

# ----------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------

async def list_reconciliation_handler(request: Request) -> Response:
    include_resolved = request.query.get('include_resolved', '').lower() in ('1', 'true', 'yes')
    records = await list_reconciliation_records(include_resolved=include_resolved)
    return json_response({'records': records, 'count': len(records)})

async def resolve_reconciliation_handler(request: Request) -> Response:
    record_id = _int_param(request, 'id')
    body = await _read_json(request)
    note = (body.get('note') or '').strip()
    if not note:
        return error_response('Resolution note required', 400)

    if not await resolve_reconciliation_record(record_id, note):
        return error_response('Open reconciliation record not found', 404)
    logger.info(f"✅ Reconciliation record {record_id} resolved: {note}")
    return json_response({'success': True, 'id': record_id})

# ----------------------------------------------------------------------
# Domains
# ----------------------------------------------------------------------

async def domain_status_handler(request: Request) -> Response:
    domain_id = _int_param(request, 'id')
    body = await _read_json(request)
    try:
        result = await request.app[SUSPENSION_KEY].change_status(domain_id, body.get('status'))
    except ValueError as e:
        return error_response(str(e), 400)
    except DomainNotFoundError as e:
        return error_response(str(e), 404)
    return json_response(result)

async def domain_privacy_handler(request: Request) -> Response:
    domain_id = _int_param(request, 'id')
    body = await _read_json(request)
    if 'enabled' not in body:
        return error_response('enabled required', 400)
    try:
        years = int(body.get('years', 1))
    except (TypeError, ValueError):
        return error_response('Invalid years', 400)

    try:
        result = await request.app[PRIVACY_KEY].set_privacy(domain_id, bool(body['enabled']), years=years)
    except DomainNotFoundError as e:
        return error_response(str(e), 404)
    return json_response(result, status=200 if result['success'] else 502)

# ----------------------------------------------------------------------
# Reseller balance
# ----------------------------------------------------------------------

async def balance_handler(request: Request) -> Response:
    mode = _parse_mode(request.query.get('mode'))
    balance = await request.app[ENOM_KEY].get_balance(mode=mode)
    transactions = await get_balance_transactions(limit=50)
    return json_response({'mode': mode, 'balance': balance, 'transactions': transactions})

async def calculate_refill_handler(request: Request) -> Response:
    body = await _read_json(request)
    cost = _parse_amount(body.get('cost'), 'cost')
    if cost <= 0:
        return error_response('Valid cost required', 400)
    mode = _parse_mode(body.get('mode'))

    if body.get('balance') is not None:
        balance = _parse_amount(body['balance'], 'balance')
    else:
        balance = await request.app[ENOM_KEY].get_balance(mode=mode)

    decision = calculate_refill_needed(cost, balance)
    return json_response({'mode': mode, 'current_balance': float(balance), 'cost': float(cost), **decision.to_dict()})

async def refill_handler(request: Request) -> Response:
    body = await _read_json(request)
    amount = _parse_amount(body.get('amount'), 'amount')
    min_refill = get_min_refill()
    if amount < min_refill:
        return error_response(f'Minimum refill amount is ${min_refill}', 400)
    mode = _parse_mode(body.get('mode'))
    enom = request.app[ENOM_KEY]

    balance_before = await enom.get_balance(mode=mode)
    refill = await enom.refill_account(amount, mode=mode)
    try:
        balance_after = await enom.get_balance(mode=mode)
    except EnomAPIError as e:
        logger.warning(f"⚠️ Balance re-read after manual refill failed: {e}")
        balance_after = None

    await record_balance_transaction(
        'refill', amount,
        balance_before=balance_before,
        balance_after=balance_after,
        registry_mode=mode,
        notes='Manual refill from admin API',
    )
    logger.info(f"💰 Manual refill of ${amount} ({mode}): {balance_before} → {balance_after}")
    return json_response({
        'success': True,
        'mode': mode,
        'refill': refill,
        'balance_before': balance_before,
        'balance_after': balance_after,
    })

def create_admin_app(scheduler: JobScheduler, enom: Optional[EnomService] = None,
                     suspension: Optional[DomainSuspensionService] = None,
                     privacy: Optional[PrivacyService] = None) -> web.Application:
    app = web.Application(middlewares=[admin_auth_middleware])
    app[SCHEDULER_KEY] = scheduler
    app[ENOM_KEY] = enom or get_enom_service()
    app[SUSPENSION_KEY] = suspension or get_suspension_service()
    app[PRIVACY_KEY] = privacy or get_privacy_service()

    app.router.add_get('/health', health_handler)
    app.router.add_get('/admin/jobs', list_jobs_handler)
    app.router.add_post('/admin/jobs/{name}/run', run_job_handler)
    app.router.add_get('/admin/reconciliation', list_reconciliation_handler)
    app.router.add_post('/admin/reconciliation/{id}/resolve', resolve_reconciliation_handler)
    app.router.add_post('/admin/domains/{id}/status', domain_status_handler)
    app.router.add_put('/admin/domains/{id}/privacy', domain_privacy_handler)
    app.router.add_get('/admin/balance', balance_handler)
    app.router.add_post('/admin/balance/calculate', calculate_refill_handler)
    app.router.add_post('/admin/balance/refill', refill_handler)
    return app

async def start_admin_server(scheduler: JobScheduler, port: int = 8080) -> web.AppRunner:
    """Start the admin API in the current event loop"""
    global _admin_server

    try:
        runner = web.AppRunner(create_admin_app(scheduler))
        await runner.setup()
        site = web.TCPSite(runner, '0.0.0.0', port)
        await site.start()
        _admin_server = runner
        logger.info(f"✅ Admin API started on http://0.0.0.0:{port}")
        return runner
    except Exception as e:
        logger.error(f"❌ Failed to start admin API: {e}")
        raise

async def stop_admin_server():
    global _admin_server
    if _admin_server:
        await _admin_server.cleanup()
        _admin_server = None
    logger.info("✅ Admin API stopped")
