"""
Tests for the order store.
"""
import re
from datetime import datetime, timezone

import pytest

from order_reconciliation.core.models import GatewayKind, IdempotencyKey
from order_reconciliation.database.models import BankTransferRequest, Order
from order_reconciliation.database.store import (
    AlreadyExists,
    Created,
    OrderStore,
    generate_bank_reference,
    generate_order_number,
)


def make_order(
    order_number: str = "VPC-20240101-1234",
    gateway_kind: str = "card_session",
    provider_reference: str = "cs_test_123",
    secondary_reference: str | None = None,
) -> Order:
    return Order(
        order_number=order_number,
        gateway_kind=gateway_kind,
        provider_reference=provider_reference,
        secondary_reference=secondary_reference,
        status="paid",
        customer_id="guest_cs_test_123",
        customer_email="buyer@example.com",
        customer_name="Ada Buyer",
        line_items=[{"product_id": "cpu1", "name": "CPU X", "quantity": 1, "unit_price": 199.99}],
        shipping_address=None,
        total_minor=19999,
        currency="GBP",
        source="front_door",
    )


class TestIdentifiers:
    """Order numbers and bank references."""

    @pytest.mark.unit
    def test_order_number_format(self) -> None:
        now = datetime(2024, 3, 9, 23, 59, tzinfo=timezone.utc)

        number = generate_order_number("VPC", now=now)

        assert re.fullmatch(r"VPC-20240309-\d{4}", number)
        assert 1000 <= int(number.rsplit("-", 1)[1]) <= 9999

    @pytest.mark.unit
    def test_bank_reference_format(self) -> None:
        reference = generate_bank_reference(now=datetime(2024, 3, 9, tzinfo=timezone.utc))

        assert re.fullmatch(r"BT-20240309-[A-Z0-9]{6}", reference)


class TestInsertIfAbsent:
    """Insert and conflict resolution."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insert_then_find(self, store: OrderStore) -> None:
        outcome = await store.insert_if_absent(make_order())

        assert isinstance(outcome, Created)
        assert outcome.order.id is not None
        found = await store.find_by_idempotency_key(
            IdempotencyKey(GatewayKind.CARD_SESSION, "cs_test_123")
        )
        assert found.id == outcome.order.id
        assert (await store.get_by_order_number("VPC-20240101-1234")).id == outcome.order.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_key_returns_existing(self, store: OrderStore) -> None:
        first = await store.insert_if_absent(make_order())

        second = await store.insert_if_absent(make_order(order_number="VPC-20240101-5678"))

        assert isinstance(second, AlreadyExists)
        assert second.order.id == first.order.id
        assert second.order.order_number == "VPC-20240101-1234"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_secondary_reference_conflict_returns_existing(self, store: OrderStore) -> None:
        first = await store.insert_if_absent(
            make_order(secondary_reference="pi_test_123")
        )

        second = await store.insert_if_absent(
            make_order(
                order_number="VPC-20240101-5678",
                gateway_kind="card_intent",
                provider_reference="pi_test_123",
                secondary_reference="pi_test_123",
            )
        )

        assert isinstance(second, AlreadyExists)
        assert second.order.id == first.order.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_order_number_collision_regenerates(self, store: OrderStore) -> None:
        await store.insert_if_absent(make_order())

        outcome = await store.insert_if_absent(make_order(provider_reference="cs_test_other"))

        assert isinstance(outcome, Created)
        assert outcome.order.order_number != "VPC-20240101-1234"
        assert outcome.order.order_number.startswith("VPC-")
        assert outcome.order.provider_reference == "cs_test_other"


class TestSecondaryLookup:
    """Lookup by the underlying payment id."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_matches_secondary_reference(self, store: OrderStore) -> None:
        await store.insert_if_absent(make_order(secondary_reference="pi_test_123"))

        found = await store.find_by_secondary_key("pi_test_123")

        assert found.provider_reference == "cs_test_123"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_matches_card_intent_reference(self, store: OrderStore) -> None:
        await store.insert_if_absent(
            make_order(gateway_kind="card_intent", provider_reference="pi_test_999")
        )

        found = await store.find_by_secondary_key("pi_test_999")

        assert found.gateway_kind == "card_intent"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_no_match(self, store: OrderStore) -> None:
        assert await store.find_by_secondary_key("pi_unknown") is None


class TestBankTransferRequests:
    """Awaiting-transfer requests."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_save_and_get(self, store: OrderStore) -> None:
        await store.save_bank_transfer_request(
            BankTransferRequest(
                reference="BT-20240309-ABC123",
                customer_email="buyer@example.com",
                customer_name="Ada Buyer",
                amount_minor=149999,
                currency="GBP",
                cart=[{"id": "gpu", "name": "GPU Y", "price": 1499.99, "quantity": 1}],
                shipping_address={"line1": "1 High Street", "city": "London"},
            )
        )

        request = await store.get_bank_transfer_request("BT-20240309-ABC123")

        assert request.amount_minor == 149999
        assert request.cart[0]["id"] == "gpu"
        assert await store.get_bank_transfer_request("BT-UNKNOWN") is None


class TestNotificationLogs:
    """Notification outcomes and re-delivery bookkeeping."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_notifications_until_budget_spent(self, store: OrderStore) -> None:
        await store.record_notification(
            "VPC-20240101-1234", "customer", "buyer@example.com", "customer_confirmation", 1, True
        )
        failed = await store.record_notification(
            "VPC-20240101-1234", "business", "orders@vortexpcs.com", "business_new_order", 3, False,
            last_error="421 try again later",
        )

        pending = await store.list_failed_notifications(max_redeliveries=2)
        assert [log.id for log in pending] == [failed.id]

        await store.mark_redelivery(failed.id, success=False, error="still down")
        await store.mark_redelivery(failed.id, success=False, error="still down")

        assert await store.list_failed_notifications(max_redeliveries=2) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_successful_redelivery_clears_entry(self, store: OrderStore) -> None:
        failed = await store.record_notification(
            "VPC-20240101-1234", "business", "orders@vortexpcs.com", "business_new_order", 3, False
        )

        await store.mark_redelivery(failed.id, success=True)

        assert await store.list_failed_notifications() == []
