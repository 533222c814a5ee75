"""
Order store built on the orders table's unique constraints.

insert_if_absent is the race resolution point between the two order
writers: a uniqueness violation on the idempotency key (or on the secondary
payment reference) means the other writer won, and the winning row is
returned instead of an error.
"""
import random
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import structlog
from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_reconciliation.core.models import GatewayKind, IdempotencyKey
from order_reconciliation.database.models import BankTransferRequest, NotificationLog, Order

logger = structlog.get_logger(__name__)

MAX_ORDER_NUMBER_ATTEMPTS = 5


def generate_order_number(prefix: str = "VPC", now: Optional[datetime] = None) -> str:
    """``PREFIX-YYYYMMDD-NNNN`` with a random suffix in 1000-9999 (UTC date)."""
    now = now or datetime.now(timezone.utc)
    return f"{prefix}-{now:%Y%m%d}-{random.randint(1000, 9999)}"


def generate_bank_reference(now: Optional[datetime] = None) -> str:
    """``BT-YYYYMMDD-XXXXXX`` with six random uppercase alphanumerics."""
    now = now or datetime.now(timezone.utc)
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"BT-{now:%Y%m%d}-{suffix}"


@dataclass(frozen=True)
class Created:
    order: Order


@dataclass(frozen=True)
class AlreadyExists:
    order: Order


InsertResult = Union[Created, AlreadyExists]


def _column_values(order: Order) -> Dict[str, Any]:
    values = {}
    for attr in inspect(Order).column_attrs:
        value = getattr(order, attr.key)
        if value is not None:
            values[attr.key] = value
    return values


class OrderStore:
    """
    Keyed access to orders, bank transfer requests and notification logs.

    Args:
        session_factory: Async session factory; each operation uses its own session
        order_number_prefix: Prefix used when an order number must be regenerated
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        order_number_prefix: str = "VPC",
    ):
        self.session_factory = session_factory
        self.order_number_prefix = order_number_prefix

    async def find_by_idempotency_key(self, key: IdempotencyKey) -> Optional[Order]:
        """Primary lookup by ``(gateway_kind, provider_reference)``."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order).where(
                    Order.gateway_kind == key.gateway_kind.value,
                    Order.provider_reference == key.provider_reference,
                )
            )
            return result.scalar_one_or_none()

    async def find_by_secondary_key(self, reference: str) -> Optional[Order]:
        """
        Secondary lookup by the underlying payment id.

        Matches either an order's secondary reference or a card-intent order
        whose provider reference is that id.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order).where(Order.secondary_reference == reference)
            )
            order = result.scalar_one_or_none()
            if order is not None:
                return order
            result = await session.execute(
                select(Order).where(
                    Order.gateway_kind == "card_intent",
                    Order.provider_reference == reference,
                )
            )
            return result.scalar_one_or_none()

    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order).where(Order.order_number == order_number)
            )
            return result.scalar_one_or_none()

    async def insert_if_absent(self, order: Order) -> InsertResult:
        """
        Insert ``order`` unless another writer already created it.

        Returns:
            Created with the inserted row, or AlreadyExists with the winner

        Raises:
            IntegrityError: If the insert keeps failing for another reason
            SQLAlchemyError: On any other store failure
        """
        values = _column_values(order)
        key = IdempotencyKey(GatewayKind(order.gateway_kind), order.provider_reference)
        secondary = values.get("secondary_reference")

        for attempt in range(1, MAX_ORDER_NUMBER_ATTEMPTS + 1):
            candidate = Order(**values)
            async with self.session_factory() as session:
                session.add(candidate)
                try:
                    await session.commit()
                except IntegrityError as e:
                    await session.rollback()
                    conflict_error = e
                else:
                    logger.info(
                        "order_inserted",
                        order_number=candidate.order_number,
                        gateway_kind=candidate.gateway_kind,
                        provider_reference=candidate.provider_reference,
                    )
                    return Created(candidate)

            existing = await self.find_by_idempotency_key(key)
            if existing is None and secondary:
                existing = await self.find_by_secondary_key(secondary)
            if existing is not None:
                logger.info(
                    "order_insert_conflict",
                    order_number=existing.order_number,
                    gateway_kind=key.gateway_kind.value,
                    provider_reference=key.provider_reference,
                )
                return AlreadyExists(existing)

            # Nothing matches our keys, so the order number collided
            logger.warning(
                "order_number_collision",
                order_number=values.get("order_number"),
                attempt=attempt,
            )
            values["order_number"] = generate_order_number(self.order_number_prefix)

        raise conflict_error

    async def save_bank_transfer_request(
        self, request: BankTransferRequest
    ) -> BankTransferRequest:
        async with self.session_factory() as session:
            session.add(request)
            await session.commit()
            return request

    async def get_bank_transfer_request(self, reference: str) -> Optional[BankTransferRequest]:
        async with self.session_factory() as session:
            return await session.get(BankTransferRequest, reference)

    async def record_notification(
        self,
        order_number: str,
        recipient_role: str,
        recipient: Optional[str],
        template: str,
        attempts: int,
        success: bool,
        last_error: Optional[str] = None,
    ) -> NotificationLog:
        """Persist one notification job outcome."""
        log = NotificationLog(
            order_number=order_number,
            recipient_role=recipient_role,
            recipient=recipient,
            template=template,
            attempts=attempts,
            success=success,
            last_error=last_error,
            redeliveries=0,
        )
        async with self.session_factory() as session:
            session.add(log)
            await session.commit()
            return log

    async def list_failed_notifications(
        self, limit: int = 100, max_redeliveries: int = 3
    ) -> List[NotificationLog]:
        """Failed jobs that still have re-delivery budget, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(NotificationLog)
                .where(
                    NotificationLog.success.is_(False),
                    NotificationLog.recipient.is_not(None),
                    NotificationLog.redeliveries < max_redeliveries,
                )
                .order_by(NotificationLog.created_at, NotificationLog.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def mark_redelivery(
        self, log_id: int, success: bool, error: Optional[str] = None
    ) -> None:
        async with self.session_factory() as session:
            log = await session.get(NotificationLog, log_id)
            if log is None:
                return
            log.redeliveries += 1
            log.success = success
            log.last_error = error
            await session.commit()
