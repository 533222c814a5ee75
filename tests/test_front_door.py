"""
Tests for the reconciliation front door.
"""
import httpx
import pytest

from order_reconciliation.core.front_door import (
    FailureReason,
    FrontDoorState,
    ReconciliationFrontDoor,
    ReturnParams,
)
from order_reconciliation.core.models import CartItem, GatewayKind
from order_reconciliation.core.normalizer import GatewayNormalizer
from order_reconciliation.core.reconciler import ReconciliationError
from order_reconciliation.database.models import BankTransferRequest
from order_reconciliation.integrations.errors import ProviderUnavailableError
from order_reconciliation.integrations.paypal_client import PayPalClient

from fakes import encode, make_checkout_session, make_payment_intent, paypal_handler, paypal_order

HAPPY_PATH = [
    FrontDoorState.IDLE,
    FrontDoorState.EXTRACTING,
    FrontDoorState.NORMALIZING,
    FrontDoorState.RECONCILING,
    FrontDoorState.NOTIFYING,
    FrontDoorState.DONE,
]


@pytest.fixture
def front_door(store, executor, stripe_client, reconciler, dispatcher) -> ReconciliationFrontDoor:
    normalizer = GatewayNormalizer(store, executor, stripe_client=stripe_client)
    return ReconciliationFrontDoor(normalizer, reconciler, dispatcher)


class TestReturnParams:
    """Reference extraction from return URLs."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "params,expected",
        [
            (ReturnParams(session_id="cs_1"), (GatewayKind.CARD_SESSION, "cs_1")),
            (ReturnParams(payment_intent="pi_1"), (GatewayKind.CARD_INTENT, "pi_1")),
            (ReturnParams(token="EC-1"), (GatewayKind.WALLET, "EC-1")),
            (ReturnParams(reference="BT-1"), (GatewayKind.BANK_TRANSFER, "BT-1")),
            (
                ReturnParams(session_id="cs_1", payment_intent="pi_1"),
                (GatewayKind.CARD_SESSION, "cs_1"),
            ),
            (
                ReturnParams(gateway=GatewayKind.WALLET, reference=" EC-2 "),
                (GatewayKind.WALLET, "EC-2"),
            ),
        ],
    )
    def test_extract(self, params: ReturnParams, expected) -> None:
        assert params.extract() == expected

    @pytest.mark.unit
    def test_nothing_to_extract(self) -> None:
        assert ReturnParams().extract() is None
        assert ReturnParams(session_id="   ").extract() is None
        assert ReturnParams(gateway=GatewayKind.CARD_INTENT, session_id="cs_1").extract() is None


class TestFrontDoor:
    """End-to-end pipeline runs."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_card_session_done(self, front_door, stripe_client, mail_transport) -> None:
        stripe_client.sessions["cs_test_123"] = make_checkout_session(
            metadata={"cart": encode([{"id": "cpu1", "n": "CPU X", "p": 199.99}])}
        )

        result = await front_door.run(ReturnParams(session_id="cs_test_123"))

        assert result.ok
        assert result.transitions == HAPPY_PATH
        assert result.created is True
        assert result.order.status == "paid"
        assert result.total_display == "£199.99"
        assert result.order.line_items[0]["unit_price"] == 199.99
        assert result.notifications.customer.sent
        assert [mail["template"] for mail in mail_transport.sent] == [
            "customer_confirmation",
            "business_new_order",
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_wallet_capture_is_not_a_bank_transfer(
        self, store, executor, reconciler, dispatcher, mail_transport
    ) -> None:
        transport = httpx.MockTransport(
            paypal_handler(httpx.Response(201, json=paypal_order(capture_status="PENDING")))
        )
        async with httpx.AsyncClient(transport=transport) as http:
            paypal = PayPalClient("client", "secret", "https://paypal.test", http_client=http)
            normalizer = GatewayNormalizer(store, executor, paypal_client=paypal)
            front_door = ReconciliationFrontDoor(normalizer, reconciler, dispatcher)

            result = await front_door.run(ReturnParams(token="5O190127TN364715T"))

        assert result.ok
        assert result.order.gateway_kind == "wallet"
        assert result.order.status == "pending_payment"
        assert [mail["template"] for mail in mail_transport.sent] == [
            "customer_payment_processing",
            "business_payment_pending",
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_card_intent_with_embedded_manifest(self, front_door, stripe_client, store) -> None:
        stripe_client.intents["pi_test_123"] = make_payment_intent(
            metadata={"cart": encode([{"id": "cpu1", "n": "CPU X", "p": 199.99}])}
        )

        result = await front_door.run(ReturnParams(payment_intent="pi_test_123"))

        assert result.ok
        assert result.transitions == HAPPY_PATH
        assert result.gateway_kind is GatewayKind.CARD_INTENT
        assert result.order.total_minor == 19999
        assert result.order.currency == "GBP"
        assert len(result.order.line_items) == 1
        item = result.order.line_items[0]
        assert (item["product_id"], item["name"], item["unit_price"], item["quantity"]) == (
            "cpu1",
            "CPU X",
            199.99,
            1,
        )
        stored = await store.find_by_secondary_key("pi_test_123")
        assert stored.id == result.order.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeat_return_finds_same_order(self, front_door, stripe_client) -> None:
        stripe_client.sessions["cs_test_123"] = make_checkout_session()

        first = await front_door.run(ReturnParams(session_id="cs_test_123"))
        second = await front_door.run(ReturnParams(session_id="cs_test_123"))

        assert second.ok
        assert second.created is False
        assert second.order.id == first.order.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_live_cart_is_used(self, front_door, stripe_client) -> None:
        stripe_client.sessions["cs_test_123"] = make_checkout_session()
        cart = [CartItem(id="gpu", name="GPU Y", price=199.99)]

        result = await front_door.run(
            ReturnParams(session_id="cs_test_123"), cart_snapshot=cart, customer_id="user_42"
        )

        assert result.order.line_items[0]["product_id"] == "gpu"
        assert result.order.customer_id == "user_42"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_reference(self, front_door) -> None:
        result = await front_door.run(ReturnParams())

        assert result.state is FrontDoorState.FAILED
        assert result.failure_reason is FailureReason.NO_PAYMENT_REFERENCE
        assert result.transitions == [
            FrontDoorState.IDLE,
            FrontDoorState.EXTRACTING,
            FrontDoorState.FAILED,
        ]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bank_transfer_never_calls_provider(
        self, front_door, store, stripe_client, mail_transport
    ) -> None:
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

        result = await front_door.run(
            ReturnParams(gateway=GatewayKind.BANK_TRANSFER, reference="BT-20240309-ABC123")
        )

        assert result.ok
        assert stripe_client.calls == []
        assert result.order.status == "pending_payment"
        assert result.order.source == "bank_transfer"
        assert result.order.shipping_address["country"] == "GB"
        assert [mail["template"] for mail in mail_transport.sent] == [
            "customer_awaiting_transfer",
            "business_awaiting_transfer",
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_not_found(self, front_door) -> None:
        result = await front_door.run(ReturnParams(session_id="cs_missing"))

        assert result.failure_reason is FailureReason.PAYMENT_NOT_FOUND

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_not_complete(self, front_door, stripe_client) -> None:
        stripe_client.sessions["cs_test_123"] = make_checkout_session(
            status="open", payment_status="unpaid"
        )

        result = await front_door.run(ReturnParams(session_id="cs_test_123"))

        assert result.failure_reason is FailureReason.PAYMENT_NOT_COMPLETE
        assert result.order is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_unavailable(self, front_door, stripe_client) -> None:
        stripe_client.errors["cs_test_123"] = [
            ProviderUnavailableError("timeout", 504) for _ in range(3)
        ]

        result = await front_door.run(ReturnParams(session_id="cs_test_123"))

        assert result.failure_reason is FailureReason.PROVIDER_UNAVAILABLE
        assert "check your email" in result.message

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconciliation_failure_says_payment_received(
        self, front_door, stripe_client, mocker
    ) -> None:
        stripe_client.sessions["cs_test_123"] = make_checkout_session()
        mocker.patch.object(
            front_door.reconciler,
            "reconcile",
            side_effect=ReconciliationError("store down", mocker.sentinel.confirmation),
        )

        result = await front_door.run(ReturnParams(session_id="cs_test_123"))

        assert result.failure_reason is FailureReason.RECONCILIATION_FAILED
        assert "payment was received" in result.message
        assert result.transitions[-2:] == [FrontDoorState.RECONCILING, FrontDoorState.FAILED]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_notification_crash_still_done(self, front_door, stripe_client, mocker) -> None:
        stripe_client.sessions["cs_test_123"] = make_checkout_session()
        mocker.patch.object(
            front_door.dispatcher, "dispatch", side_effect=RuntimeError("mail pool exploded")
        )

        result = await front_door.run(ReturnParams(session_id="cs_test_123"))

        assert result.ok
        assert result.transitions == HAPPY_PATH
        assert result.notifications is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, front_door, mocker) -> None:
        mocker.patch.object(
            front_door.normalizer, "normalize", side_effect=KeyError("boom")
        )

        result = await front_door.run(ReturnParams(session_id="cs_test_123"))

        assert result.failure_reason is FailureReason.INTERNAL_ERROR
        assert "could not confirm your payment" in result.message
        assert "payment was received" not in result.message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_error_after_confirmation_keeps_payment_message(
        self, front_door, stripe_client, mocker
    ) -> None:
        stripe_client.sessions["cs_test_123"] = make_checkout_session()
        mocker.patch.object(front_door.reconciler, "reconcile", side_effect=KeyError("boom"))

        result = await front_door.run(ReturnParams(session_id="cs_test_123"))

        assert result.failure_reason is FailureReason.INTERNAL_ERROR
        assert "payment was received" in result.message
