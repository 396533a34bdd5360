"""
Tests for the built-in payment tools.

Tests the quote/approve/verify conversation an AI client has with the
server before retrying a paid tool.
"""

from dataclasses import replace

import pytest
from conftest import DEVELOPER, PAYER, WALLET

from toolgate.exceptions import (
    MissingParameterError,
    PaymentNotFoundError,
    PaymentReferenceError,
    ToolNotFoundError,
)
from toolgate.models.domain import CallerContext
from toolgate.services.invocation import PAYMENT_ARGUMENT
from toolgate.services.payment_tools import (
    APPROVE_PAYMENT,
    GET_BALANCE,
    GET_PAYMENT_TRANSACTION,
    VERIFY_PAYMENT,
    PaymentTools,
    retry_instruction,
)


@pytest.fixture
def payment_tools(services) -> PaymentTools:
    return services.tools.payment_tools


class TestGetBalance:
    """Tests for get_balance."""

    @pytest.mark.asyncio
    async def test_without_ledger_account(self, payment_tools, payer):
        result = await payment_tools.call(DEVELOPER, GET_BALANCE, {}, payer)

        assert result.success is True
        assert result.data["has_balance_account"] is False
        assert result.data["action_required"] == "deposit_required"

    @pytest.mark.asyncio
    async def test_with_ledger_account(self, payment_tools, ledger, payer):
        await ledger.deposit(PAYER, 25)

        result = await payment_tools.call(DEVELOPER, GET_BALANCE, {}, payer)

        assert result.data == {
            "has_balance_account": True,
            "deposited_minor": 25,
            "spent_minor": 0,
            "available_minor": 25,
        }

    @pytest.mark.asyncio
    async def test_reflects_spending(self, services, payment_tools, ledger, payer, paid_tool):
        await ledger.deposit(PAYER, 10)
        await services.tools.invoke(DEVELOPER, "forecast", {"city": "Oslo"}, payer)

        result = await payment_tools.call(DEVELOPER, GET_BALANCE, {}, payer)

        assert result.data["spent_minor"] == 2
        assert result.data["available_minor"] == 8


class TestGetPaymentTransaction:
    """Tests for quoting a payment."""

    @pytest.mark.asyncio
    async def test_free_tool_needs_no_payment(self, payment_tools, payer, free_tool):
        result = await payment_tools.call(
            DEVELOPER, GET_PAYMENT_TRANSACTION, {"tool_name": "weather"}, payer
        )
        assert result.data == {"payment_required": False, "tool": "weather"}

    @pytest.mark.asyncio
    async def test_paid_tool_quote(self, payment_tools, ledger, payer, paid_tool):
        await ledger.deposit(PAYER, 9)

        result = await payment_tools.call(
            DEVELOPER, GET_PAYMENT_TRANSACTION, {"tool_name": "forecast"}, payer
        )

        details = result.data["payment_details"]
        assert result.data["payment_required"] is True
        assert details["status"] == "pending"
        assert details["amount_minor"] == 2
        assert details["recipient_wallet"] == WALLET
        assert details["payment_id"] in result.data["next_step"]
        assert result.data["available_minor"] == 9
        assert ledger.transfer_calls == 0

    @pytest.mark.asyncio
    async def test_missing_tool_name(self, payment_tools, payer):
        with pytest.raises(MissingParameterError) as exc_info:
            await payment_tools.call(DEVELOPER, GET_PAYMENT_TRANSACTION, {}, payer)
        assert exc_info.value.parameter == "tool_name"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, payment_tools, payer):
        with pytest.raises(ToolNotFoundError):
            await payment_tools.call(
                DEVELOPER, GET_PAYMENT_TRANSACTION, {"tool_name": "nope"}, payer
            )


class TestApproveAndVerify:
    """Tests for the approve/verify/retry sequence."""

    async def quote(self, payment_tools, payer) -> str:
        result = await payment_tools.call(
            DEVELOPER, GET_PAYMENT_TRANSACTION, {"tool_name": "forecast"}, payer
        )
        return result.data["payment_details"]["payment_id"]

    @pytest.mark.asyncio
    async def test_approve_settles_and_points_to_retry(
        self, payment_tools, ledger, payer, paid_tool
    ):
        await ledger.deposit(PAYER, 10)
        payment_id = await self.quote(payment_tools, payer)

        result = await payment_tools.call(
            DEVELOPER, APPROVE_PAYMENT, {"payment_id": payment_id}, payer
        )

        assert result.data["payment_details"]["status"] == "completed"
        assert result.data["payment_details"]["tx_reference"]
        assert result.data["next_action"] == retry_instruction(payment_id)
        assert PAYMENT_ARGUMENT in result.data["next_action"]
        assert ledger.total_settled() == 2

    @pytest.mark.asyncio
    async def test_approve_twice_charges_once(self, payment_tools, ledger, payer, paid_tool):
        await ledger.deposit(PAYER, 10)
        payment_id = await self.quote(payment_tools, payer)

        await payment_tools.call(DEVELOPER, APPROVE_PAYMENT, {"payment_id": payment_id}, payer)
        await payment_tools.call(DEVELOPER, APPROVE_PAYMENT, {"payment_id": payment_id}, payer)

        assert ledger.total_settled() == 2

    @pytest.mark.asyncio
    async def test_verify_settled_payment(self, payment_tools, ledger, payer, paid_tool):
        await ledger.deposit(PAYER, 10)
        payment_id = await self.quote(payment_tools, payer)
        await payment_tools.call(DEVELOPER, APPROVE_PAYMENT, {"payment_id": payment_id}, payer)

        result = await payment_tools.call(
            DEVELOPER, VERIFY_PAYMENT, {"payment_id": payment_id}, payer
        )

        assert result.data["payment_verified"] is True
        assert result.data["ledger_status"] == "confirmed"
        assert result.data["next_action"] == retry_instruction(payment_id)

    @pytest.mark.asyncio
    async def test_verify_rejects_transfer_the_ledger_reports_failed(
        self, payment_tools, ledger, payer, paid_tool
    ):
        await ledger.deposit(PAYER, 10)
        payment_id = await self.quote(payment_tools, payer)
        await payment_tools.call(DEVELOPER, APPROVE_PAYMENT, {"payment_id": payment_id}, payer)
        lookup = ledger.get_transaction

        async def reversed_on_ledger(tx_reference):
            return replace(await lookup(tx_reference), status="failed")

        ledger.get_transaction = reversed_on_ledger

        result = await payment_tools.call(
            DEVELOPER, VERIFY_PAYMENT, {"payment_id": payment_id}, payer
        )

        assert result.data["payment_verified"] is False
        assert result.data["ledger_status"] == "failed"
        assert "next_action" not in result.data
        assert "the ledger reports failed" in result.message

    @pytest.mark.asyncio
    async def test_verify_pending_payment(self, payment_tools, payer, paid_tool):
        payment_id = await self.quote(payment_tools, payer)

        result = await payment_tools.call(
            DEVELOPER, VERIFY_PAYMENT, {"payment_id": payment_id}, payer
        )

        assert result.data["payment_verified"] is False
        assert result.data["ledger_status"] is None
        assert "next_action" not in result.data
        assert "pending" in result.message

    @pytest.mark.asyncio
    async def test_verify_unknown_payment(self, payment_tools, payer):
        with pytest.raises(PaymentNotFoundError):
            await payment_tools.call(
                DEVELOPER, VERIFY_PAYMENT, {"payment_id": "pay_unknown"}, payer
            )

    @pytest.mark.asyncio
    async def test_other_principal_cannot_approve(self, payment_tools, ledger, payer, paid_tool):
        await ledger.deposit(PAYER, 10)
        payment_id = await self.quote(payment_tools, payer)
        intruder = CallerContext(principal="intruder", scopes=("mcp:tools",), client_id=None)

        with pytest.raises(PaymentReferenceError) as exc_info:
            await payment_tools.call(
                DEVELOPER, APPROVE_PAYMENT, {"payment_id": payment_id}, intruder
            )

        assert exc_info.value.action_required == "payment_owner_mismatch"
        assert ledger.transfer_calls == 0

    @pytest.mark.asyncio
    async def test_full_conversation_then_retry(
        self, services, payment_tools, ledger, upstream, payer, paid_tool
    ):
        """Quote, approve, then call the tool with the payment ID: one charge in total."""
        await ledger.deposit(PAYER, 10)
        payment_id = await self.quote(payment_tools, payer)
        await payment_tools.call(DEVELOPER, APPROVE_PAYMENT, {"payment_id": payment_id}, payer)

        outcome = await services.tools.invoke(
            DEVELOPER, "forecast", {"city": "Oslo", PAYMENT_ARGUMENT: payment_id}, payer
        )

        assert outcome.result.success is True
        assert outcome.receipt.payment_id == payment_id
        assert outcome.receipt.reused is True
        assert ledger.total_settled() == 2
        assert len(upstream.requests) == 1
