"""
Notification sweeper background worker.

Periodically re-attempts notification jobs whose retries were exhausted,
up to a bounded number of re-deliveries per job. Orders are never touched.
"""
import argparse
import asyncio
import signal
from typing import Any

import structlog

from order_reconciliation.api.dependencies import get_dispatcher, get_store
from order_reconciliation.config import get_settings
from order_reconciliation.core.notifications import NotificationDispatcher, RecipientRole
from order_reconciliation.database.connection import close_db, init_db
from order_reconciliation.database.store import OrderStore
from order_reconciliation.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


class NotificationSweeper:
    """
    Re-delivers failed notifications.

    Args:
        store: Order store holding notification logs
        dispatcher: Dispatcher used to re-send a single job
        batch_size: Jobs fetched per poll
        poll_interval_seconds: Wait between polls when there is nothing to do
        max_redeliveries: Re-delivery budget per job
    """

    def __init__(
        self,
        store: OrderStore,
        dispatcher: NotificationDispatcher,
        batch_size: int = 50,
        poll_interval_seconds: float = 60.0,
        max_redeliveries: int = 3,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_redeliveries = max_redeliveries
        self._running = False

    async def process_batch(self) -> int:
        """
        Re-attempt one batch of failed jobs.

        Returns:
            int: Number of jobs delivered in this batch
        """
        logs = await self.store.list_failed_notifications(
            limit=self.batch_size, max_redeliveries=self.max_redeliveries
        )
        if not logs:
            return 0

        delivered = 0
        for log in logs:
            order = await self.store.get_by_order_number(log.order_number)
            if order is None:
                logger.warning("notification_sweep_order_missing", order_number=log.order_number)
                await self.store.mark_redelivery(log.id, False, "order not found")
                continue

            result = await self.dispatcher.send(
                order, RecipientRole(log.recipient_role), log.recipient, log.template
            )
            await self.store.mark_redelivery(log.id, result.sent, result.error)
            if result.sent:
                delivered += 1

        logger.info(
            "notification_sweep_batch_processed",
            total=len(logs),
            delivered=delivered,
            failed=len(logs) - delivered,
        )
        return delivered

    async def start(self) -> None:
        """Poll until stopped."""
        self._running = True
        logger.info("notification_sweeper_started")
        try:
            while self._running:
                try:
                    await self.process_batch()
                except Exception as e:
                    logger.error("notification_sweeper_error", error=str(e))
                await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("notification_sweeper_stopped")

    def stop(self) -> None:
        self._running = False
        logger.info("notification_sweeper_stop_requested")


async def start_notification_sweeper(once: bool = False) -> None:
    """
    Start the notification sweeper worker.

    Args:
        once: Process a single batch and exit
    """
    setup_logging()
    settings = get_settings()
    await init_db()

    sweeper = NotificationSweeper(
        store=get_store(),
        dispatcher=get_dispatcher(),
        poll_interval_seconds=settings.notification_sweep_interval_seconds,
        max_redeliveries=settings.notification_sweep_max_redeliveries,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("notification_sweeper_shutdown_signal_received", signal=sig)
        sweeper.stop()

    try:
        if once:
            delivered = await sweeper.process_batch()
            logger.info("notification_sweep_once_completed", delivered=delivered)
            return

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)
        await sweeper.start()
    finally:
        await close_db()


def main() -> None:
    """Command line entry point."""
    parser = argparse.ArgumentParser(description="Notification sweeper worker")
    parser.add_argument(
        "--once", action="store_true", help="Process one batch of failed notifications and exit"
    )
    args = parser.parse_args()

    asyncio.run(start_notification_sweeper(once=args.once))


if __name__ == "__main__":
    main()
