"""Subscription reconciliation worker.

Expires lapsed subscriptions, rolls over auto-renewing local ones, refreshes
Stripe-billed ones from Stripe, and repairs users' active-subscription
pointers.

Usage::

    # Run once
    python -m app.workers.subscription_sweeper --once

    # Run continuously (interval from SUBSCRIPTION_SWEEP_INTERVAL_SECONDS)
    python -m app.workers.subscription_sweeper
"""

import argparse
import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.billing.dependencies import get_billing_provider
from app.billing.reconciliation import SweepReport, run_sweep
from app.billing.stripe_client import BillingProvider
from app.config import settings

logger = logging.getLogger(__name__)


class SubscriptionSweeperWorker:
    """Runs the reconciliation sweep once or on a fixed interval."""

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        provider: BillingProvider | None = None,
    ):
        if session_factory is None:
            from app.database import async_session_factory

            session_factory = async_session_factory
        self.session_factory = session_factory
        self.provider = provider or get_billing_provider()

    async def run_once(self) -> SweepReport:
        report = await run_sweep(self.session_factory, self.provider)
        if report.failed:
            logger.error("%d subscription(s) failed to reconcile: %s", len(report.failed), report.failed)
        return report

    async def run_forever(self, interval_seconds: int) -> None:
        """Sweep, sleep, repeat. A failed pass is logged and the loop continues."""
        logger.info("Starting subscription sweeper with %ss interval", interval_seconds)
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep cycle failed")
            await asyncio.sleep(interval_seconds)

    async def shutdown(self) -> None:
        from app.database import engine

        await engine.dispose()
        logger.info("SubscriptionSweeperWorker shutdown complete")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Subscription reconciliation worker")
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.subscription_sweep_interval_seconds,
        help="Seconds between sweeps when running continuously",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    worker = SubscriptionSweeperWorker()
    try:
        if args.once:
            report = await worker.run_once()
            print(
                f"Sweep complete: expired={report.expired} renewed={report.renewed} "
                f"reconciled={report.reconciled} pointers_repaired={report.pointers_repaired} "
                f"skipped={report.skipped} failed={len(report.failed)}"
            )
        else:
            await worker.run_forever(args.interval)
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    finally:
        await worker.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
