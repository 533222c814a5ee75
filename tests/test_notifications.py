"""
Tests for the notification dispatcher and email templates.
"""
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from order_reconciliation.core.notifications import (
    NotificationDispatcher,
    NotificationStatus,
    RecipientRole,
    build_context,
    select_template,
)
from order_reconciliation.database.models import NotificationLog
from order_reconciliation.integrations.email_templates import get_template
from order_reconciliation.integrations.mail import MailDeliveryError

from fakes import FakeMailTransport, make_order

BUSINESS = "orders@vortexpcs.com"


def bank_transfer_order():
    return make_order(
        status="pending_payment", gateway_kind="bank_transfer", provider_reference="BT-20240309-K7Q2ZP"
    )


class TestTemplates:
    """Template selection and rendering."""

    @pytest.mark.unit
    def test_paid_order_templates(self) -> None:
        order = make_order()

        assert select_template(order, RecipientRole.CUSTOMER) == "customer_confirmation"
        assert select_template(order, RecipientRole.BUSINESS) == "business_new_order"

    @pytest.mark.unit
    def test_bank_transfer_templates(self) -> None:
        order = bank_transfer_order()

        assert select_template(order, RecipientRole.CUSTOMER) == "customer_awaiting_transfer"
        assert select_template(order, RecipientRole.BUSINESS) == "business_awaiting_transfer"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "gateway_kind,reference",
        [("wallet", "5O190127TN364715T"), ("card_intent", "pi_test_123"), ("card_session", "cs_test_123")],
    )
    def test_pending_provider_payment_templates(self, gateway_kind: str, reference: str) -> None:
        order = make_order(
            status="pending_payment", gateway_kind=gateway_kind, provider_reference=reference
        )

        assert select_template(order, RecipientRole.CUSTOMER) == "customer_payment_processing"
        assert select_template(order, RecipientRole.BUSINESS) == "business_payment_pending"

    @pytest.mark.unit
    def test_context(self) -> None:
        context = build_context(make_order())

        assert context["total_display"] == "£199.99"
        assert context["currency_symbol"] == "£"
        assert context["payment_reference"] == "cs_test_123"

    @pytest.mark.unit
    def test_rendered_subjects(self) -> None:
        context = build_context(make_order())

        customer = get_template("customer_confirmation").render(context)
        business = get_template("business_new_order").render(context)

        assert customer["subject"] == "Order Confirmation - VPC-20240309-4821"
        assert business["subject"] == "New Order: VPC-20240309-4821 - £199.99"
        assert "1 x CPU X @ £199.99" in customer["text"]
        assert "<html>" in business["html"]

    @pytest.mark.unit
    def test_awaiting_transfer_mentions_reference(self) -> None:
        context = build_context(bank_transfer_order())

        rendered = get_template("customer_awaiting_transfer").render(context)

        assert "awaiting bank transfer" in rendered["subject"]
        assert "BT-20240309-K7Q2ZP" in rendered["text"]
        assert "Sort code" in rendered["text"]

    @pytest.mark.unit
    def test_payment_processing_has_no_bank_details(self) -> None:
        context = build_context(
            make_order(status="pending_payment", gateway_kind="wallet", provider_reference="5O190127TN364715T")
        )

        customer = get_template("customer_payment_processing").render(context)
        business = get_template("business_payment_pending").render(context)

        assert "payment processing" in customer["subject"]
        assert "Sort code" not in customer["text"]
        assert "transfer" not in customer["text"]
        assert "bank transfer" not in business["subject"]
        assert "5O190127TN364715T" in business["text"]

    @pytest.mark.unit
    def test_unknown_template(self) -> None:
        with pytest.raises(ValueError):
            get_template("newsletter")


class TestDispatch:
    """Independent customer and business jobs."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_both_sent(self, dispatcher, mail_transport: FakeMailTransport) -> None:
        result = await dispatcher.dispatch(make_order())

        assert result.customer.sent
        assert result.business.sent
        assert [mail["recipient"] for mail in mail_transport.sent] == [
            "buyer@example.com",
            BUSINESS,
        ]
        assert mail_transport.sent[0]["template"] == "customer_confirmation"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_wallet_order_gets_processing_mails(
        self, dispatcher, mail_transport: FakeMailTransport
    ) -> None:
        order = make_order(
            status="pending_payment", gateway_kind="wallet", provider_reference="5O190127TN364715T"
        )

        result = await dispatcher.dispatch(order)

        assert result.customer.sent
        assert [mail["template"] for mail in mail_transport.sent] == [
            "customer_payment_processing",
            "business_payment_pending",
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_business_failure_does_not_affect_customer(
        self, executor, transient_mail_error
    ) -> None:
        transport = FakeMailTransport(failures={BUSINESS: transient_mail_error})
        dispatcher = NotificationDispatcher(transport, executor, BUSINESS)

        result = await dispatcher.dispatch(make_order())

        assert result.customer.status is NotificationStatus.SENT
        assert result.customer.attempts == 1
        assert result.business.status is NotificationStatus.FAILED
        assert result.business.attempts == 3
        assert transport.attempts == {"buyer@example.com": 1, BUSINESS: 3}
        assert "421" in result.business.error

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_customer_failure_does_not_block_business(self, executor) -> None:
        transport = FakeMailTransport(
            failures={"buyer@example.com": MailDeliveryError("550 mailbox unavailable", retryable=False)}
        )
        dispatcher = NotificationDispatcher(transport, executor, BUSINESS)

        result = await dispatcher.dispatch(make_order())

        assert result.customer.status is NotificationStatus.FAILED
        assert result.customer.attempts == 1
        assert result.business.sent

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_customer_email_is_skipped(
        self, dispatcher, mail_transport: FakeMailTransport
    ) -> None:
        result = await dispatcher.dispatch(make_order(customer_email=None))

        assert result.customer.status is NotificationStatus.SKIPPED
        assert result.business.sent
        assert [mail["recipient"] for mail in mail_transport.sent] == [BUSINESS]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_transport_error_is_reported(self, executor) -> None:
        transport = FakeMailTransport(failures={BUSINESS: RuntimeError("template exploded")})
        dispatcher = NotificationDispatcher(transport, executor, BUSINESS)

        result = await dispatcher.dispatch(make_order())

        assert result.business.status is NotificationStatus.FAILED
        assert result.business.error == "template exploded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_outcomes_are_logged(
        self, executor, store, session_factory, transient_mail_error
    ) -> None:
        transport = FakeMailTransport(failures={BUSINESS: transient_mail_error})
        dispatcher = NotificationDispatcher(transport, executor, BUSINESS, store=store)

        await dispatcher.dispatch(make_order())

        async with session_factory() as session:
            logs = (
                await session.execute(select(NotificationLog).order_by(NotificationLog.id))
            ).scalars().all()
        assert [(log.recipient_role, log.success, log.attempts) for log in logs] == [
            ("customer", True, 1),
            ("business", False, 3),
        ]
        assert logs[1].template == "business_new_order"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_log_write_failure_keeps_outcome(self, dispatcher, mocker) -> None:
        mocker.patch.object(
            dispatcher.store,
            "record_notification",
            side_effect=OperationalError("INSERT", {}, Exception("disk full")),
        )

        result = await dispatcher.dispatch(make_order())

        assert result.customer.sent
        assert result.business.sent
