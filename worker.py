#!/usr/bin/env python3
"""
Domain reseller worker - single event loop
Runs the recurring job scheduler and the admin API in one asyncio loop
"""

import os
import sys
import signal
import asyncio
import logging
import argparse

logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=getattr(logging, os.getenv('LOG_LEVEL', 'INFO').upper(), logging.INFO)
)

# Registry and payment URLs carry credentials in query strings
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
logging.getLogger("apscheduler").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from brand_config import get_platform_name
from database import init_database, close_connection_pool
from services.enom import get_enom_service
from services.job_scheduler import JobScheduler
from services.scheduled_jobs import register_default_jobs
from services.stripe_payments import get_stripe_service
from utils.environment import get_registry_mode, get_env_bool, get_env_int

shutdown_requested = False

def signal_handler(signum, frame):
    """Handle shutdown signals gracefully"""
    global shutdown_requested
    shutdown_requested = True
    logger.info(f"🛑 Shutdown signal received ({signum}), initiating graceful shutdown...")

def build_scheduler() -> JobScheduler:
    return register_default_jobs(JobScheduler())

async def run_single_job(name: str) -> bool:
    """One-shot manual run of a scheduled job, then exit"""
    await init_database()
    scheduler = build_scheduler()
    try:
        await scheduler.trigger(name)
        status = next(job for job in scheduler.get_status() if job['name'] == name)
        for error in status['recent_errors']:
            logger.error(f"❌ {name}: {error['type']}: {error['message']}")
        return not status['recent_errors']
    finally:
        await get_enom_service().close()
        await get_stripe_service().close()
        close_connection_pool()

async def main_worker_loop() -> bool:
    """Main worker loop - scheduler and admin API share the event loop"""
    global shutdown_requested

    scheduler = None
    admin_runner = None

    try:
        logger.info("🔄 Initializing database...")
        await init_database()

        logger.info(f"🚀 {get_platform_name()} domain worker starting (registry mode: {get_registry_mode()})")

        scheduler = build_scheduler()
        if get_env_bool('SCHEDULER_ENABLED', True):
            scheduler.start()
        else:
            logger.warning("⚠️ SCHEDULER_ENABLED=false - jobs run only on manual trigger")

        from admin_api import start_admin_server
        admin_runner = await start_admin_server(scheduler, port=get_env_int('ADMIN_API_PORT', 8080))

        status_counter = 0
        while not shutdown_requested:
            await asyncio.sleep(1)
            status_counter += 1
            if status_counter % 300 == 0:
                running = [job['name'] for job in scheduler.get_status() if job['running']]
                logger.info(f"⏰ Worker running - active jobs: {', '.join(running) or 'none'}")

        logger.info("🛑 Shutdown requested - cleaning up...")
        return True

    except Exception as runtime_error:
        logger.error(f"❌ Worker runtime error: {runtime_error}")
        logger.error("💥 FAIL FAST: Exiting for supervisor restart")
        return False
    finally:
        try:
            if scheduler is not None:
                await scheduler.stop()
            if admin_runner is not None:
                from admin_api import stop_admin_server
                await stop_admin_server()
            await get_enom_service().close()
            await get_stripe_service().close()
            close_connection_pool()
            logger.info("✅ Cleanup completed")
        except Exception as cleanup_error:
            logger.warning(f"⚠️ Cleanup error: {cleanup_error}")

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Domain reseller job worker")
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--run-job', metavar='NAME', help='run one scheduled job now and exit')
    group.add_argument('--list-jobs', action='store_true', help='list scheduled jobs and exit')
    return parser.parse_args(argv)

def main(argv=None) -> int:
    """Main entry point"""
    args = parse_args(argv)

    if args.list_jobs:
        for job in build_scheduler().get_status():
            print(f"{job['name']:<26} {job['schedule']:<20} next: {job['next_run']}")
        return 0

    if args.run_job:
        logger.info(f"👤 Manual run of job {args.run_job}")
        try:
            ok = asyncio.run(run_single_job(args.run_job))
        except Exception as e:
            logger.error(f"💥 Job run failed: {e}")
            return 1
        return 0 if ok else 1

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("🚀 Starting domain reseller worker...")
    result = asyncio.run(main_worker_loop())
    logger.info("✅ Worker stopped normally" if result else "⚠️ Worker stopped with error")
    return 0 if result else 1

if __name__ == '__main__':
    sys.exit(main())
