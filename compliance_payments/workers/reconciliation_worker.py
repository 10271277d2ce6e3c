"""
Reconciliation background worker.

Runs the reconciliation sweep on a fixed interval so transactions whose
webhook never arrived still reach a terminal status.
"""
import argparse
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from compliance_payments.config import get_settings
from compliance_payments.core.reconciliation import ReconciliationEngine, ReconciliationError
from compliance_payments.database.connection import close_db
from compliance_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation_sweep(engine: ReconciliationEngine) -> Optional[Dict[str, int]]:
    """
    Run one sweep.

    Returns:
        Optional[Dict[str, int]]: Sweep counts, or None if the sweep could not run
    """
    logger.info("scheduled_reconciliation_started")

    try:
        result = await engine.sweep()
    except ReconciliationError as e:
        logger.error("scheduled_reconciliation_failed", error=str(e))
        return None

    logger.info("scheduled_reconciliation_completed", **result)

    if result["errors"] > 0:
        logger.warning(
            "reconciliation_errors_detected",
            errors=result["errors"],
            checked=result["checked"],
        )

    return result


async def start_reconciliation_worker(
    interval_seconds: Optional[int] = None,
    engine: Optional[ReconciliationEngine] = None,
    stop_event: Optional[asyncio.Event] = None,
    run_once: bool = False,
) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Seconds between sweeps (RECONCILIATION_INTERVAL_SECONDS by default)
        engine: Optional reconciliation engine
        stop_event: Optional event that stops the loop when set
        run_once: Run a single sweep and return
    """
    settings = get_settings()
    interval = interval_seconds or settings.reconciliation_interval_seconds
    engine = engine or ReconciliationEngine()
    stop_event = stop_event or asyncio.Event()

    logger.info("reconciliation_worker_starting", interval_seconds=interval, run_once=run_once)

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        stop_event.set()

    if not run_once:
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not stop_event.is_set():
            await run_reconciliation_sweep(engine)

            if run_once:
                break

            # Sleep until the next run, waking early on shutdown
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    finally:
        await engine.paystack_client.close()
        logger.info("reconciliation_worker_stopped")


async def _main(interval_seconds: Optional[int], run_once: bool) -> None:
    setup_logging()
    try:
        await start_reconciliation_worker(interval_seconds=interval_seconds, run_once=run_once)
    finally:
        await close_db()


def cli() -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="Reconciliation worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between reconciliation sweeps"
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(_main(args.interval, args.once))


if __name__ == "__main__":
    cli()
