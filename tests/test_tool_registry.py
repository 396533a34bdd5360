"""
Tests for the Tool Registry.

Tests publishing, listing and invoking tools, including the ordering of
parameter validation, payment and the outbound call.
"""

import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from conftest import DEVELOPER, PAYER, make_tool_spec

from toolgate.exceptions import (
    MissingParameterError,
    NoLedgerAccountError,
    ReservedToolNameError,
    ToolAlreadyExistsError,
    ToolNotFoundError,
)
from toolgate.models.records import (
    HttpMethod,
    ParameterLocation,
    ToolParameter,
    ToolRecord,
    ToolSpec,
)
from toolgate.services.invocation import PAYMENT_ARGUMENT
from toolgate.services.payment_tools import RESERVED_TOOL_NAMES
from toolgate.services.tool_registry import tool_input_schema


class TestToolSpecValidation:
    """Tests for the tool specification model."""

    def test_paid_tool_requires_wallet(self):
        with pytest.raises(ValueError):
            ToolSpec(name="paid", url="https://api.example", price_minor=5)

    def test_name_must_be_plain(self):
        with pytest.raises(ValueError):
            ToolSpec(name="has spaces", url="https://api.example")

    def test_url_must_be_absolute(self):
        with pytest.raises(ValueError):
            ToolSpec(name="relative", url="/v1/things")

    def test_path_parameters(self):
        spec = make_tool_spec(
            url="https://api.example/{a}/x/{b}",
            parameters=[
                ToolParameter(name="a", location=ParameterLocation.PATH),
                ToolParameter(name="b", location=ParameterLocation.PATH),
            ],
        )
        assert spec.path_parameters() == {"a", "b"}

    def test_placeholder_needs_declared_parameter(self):
        with pytest.raises(ValueError, match="city"):
            ToolSpec(name="weather", url="https://api.example/weather/{city}")

    def test_placeholder_must_be_path_parameter(self):
        with pytest.raises(ValueError):
            ToolSpec(
                name="weather",
                url="https://api.example/weather/{city}",
                parameters=[ToolParameter(name="city", location=ParameterLocation.QUERY)],
            )

    def test_optional_path_parameter_needs_default(self):
        optional = ToolParameter(name="city", location=ParameterLocation.PATH, required=False)
        with pytest.raises(ValueError):
            ToolSpec(
                name="weather", url="https://api.example/weather/{city}", parameters=[optional]
            )

        defaulted = optional.model_copy(update={"default": "Oslo"})
        spec = ToolSpec(
            name="weather", url="https://api.example/weather/{city}", parameters=[defaulted]
        )
        assert spec.path_parameters() == {"city"}


class TestManagement:
    """Tests for add/remove/get/list."""

    @pytest.mark.asyncio
    async def test_add_and_get(self, services):
        record = await services.tools.add(DEVELOPER, make_tool_spec("weather"))

        assert record.owner == DEVELOPER
        assert record.active is True
        assert record.call_count == 0
        assert record.tool_id == f"{DEVELOPER}/weather"
        fetched = await services.tools.get(DEVELOPER, "weather")
        assert fetched.url == record.url

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, services, free_tool):
        with pytest.raises(ToolAlreadyExistsError):
            await services.tools.add(DEVELOPER, make_tool_spec("weather"))

    @pytest.mark.asyncio
    async def test_same_name_for_different_owners(self, services, free_tool):
        record = await services.tools.add("another-dev", make_tool_spec("weather"))
        assert record.owner == "another-dev"

    @pytest.mark.asyncio
    async def test_owner_containing_separator_is_listed_apart(self, services):
        await services.tools.add("a", make_tool_spec("weather"))
        await services.tools.add("a:b", make_tool_spec("forecast"))

        assert [t.name for t in await services.tools.list_for_owner("a")] == ["weather"]
        assert [t.name for t in await services.tools.list_for_owner("a:b")] == ["forecast"]
        assert await services.tools.get("a", "b:forecast") is None
        assert await services.tools.get("a:b", "forecast") is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", sorted(RESERVED_TOOL_NAMES))
    async def test_reserved_names_rejected(self, services, name):
        with pytest.raises(ReservedToolNameError):
            await services.tools.add(DEVELOPER, make_tool_spec(name))

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, services, free_tool):
        assert await services.tools.remove(DEVELOPER, "weather") is True
        assert await services.tools.remove(DEVELOPER, "weather") is False
        assert await services.tools.get(DEVELOPER, "weather") is None

    @pytest.mark.asyncio
    async def test_list_for_owner_is_scoped(self, services, free_tool, paid_tool):
        await services.tools.add("another-dev", make_tool_spec("other"))
        names = [t.name for t in await services.tools.list_for_owner(DEVELOPER)]
        assert names == ["forecast", "weather"]

    @pytest.mark.asyncio
    async def test_set_active(self, services, free_tool):
        record = await services.tools.set_active(DEVELOPER, "weather", False)
        assert record.active is False
        assert (await services.tools.get(DEVELOPER, "weather")).active is False

    @pytest.mark.asyncio
    async def test_set_active_on_missing_tool(self, services):
        with pytest.raises(ToolNotFoundError):
            await services.tools.set_active(DEVELOPER, "missing", True)


class TestDescriptors:
    """Tests for MCP tool descriptors."""

    @pytest.mark.asyncio
    async def test_payment_tools_always_listed(self, services):
        names = [d["name"] for d in await services.tools.list_tools("nobody")]
        assert set(names) == RESERVED_TOOL_NAMES

    @pytest.mark.asyncio
    async def test_inactive_tools_hidden(self, services, free_tool, paid_tool):
        await services.tools.set_active(DEVELOPER, "weather", False)
        names = [d["name"] for d in await services.tools.list_tools(DEVELOPER)]
        assert "weather" not in names
        assert "forecast" in names

    @pytest.mark.asyncio
    async def test_paid_tool_exposes_payment_argument(self, services, free_tool, paid_tool):
        descriptors = {d["name"]: d for d in await services.tools.list_tools(DEVELOPER)}

        paid_schema = descriptors["forecast"]["inputSchema"]
        assert PAYMENT_ARGUMENT in paid_schema["properties"]
        assert PAYMENT_ARGUMENT not in paid_schema.get("required", [])
        assert "price: 2" in descriptors["forecast"]["description"]
        assert PAYMENT_ARGUMENT not in descriptors["weather"]["inputSchema"]["properties"]

    def test_input_schema_required_and_defaults(self):
        spec = make_tool_spec("weather")
        now = datetime.now(UTC)
        record = ToolRecord(**spec.model_dump(), owner=DEVELOPER, created_at=now, updated_at=now)
        schema = tool_input_schema(record)

        assert schema["required"] == ["city"]
        assert schema["properties"]["units"]["default"] == "metric"


class TestInvoke:
    """Tests for tool invocation."""

    @pytest.mark.asyncio
    async def test_free_tool_executes_immediately(
        self, services, ledger, upstream, payer, free_tool
    ):
        """A free tool runs without any payment reference or ledger account."""
        outcome = await services.tools.invoke(DEVELOPER, "weather", {"city": "Oslo"}, payer)

        assert outcome.result.success is True
        assert outcome.receipt is None
        assert ledger.transfer_calls == 0
        [request] = upstream.requests
        assert request.url.path == "/weather/Oslo"
        assert dict(request.url.params) == {"units": "metric"}

    @pytest.mark.asyncio
    async def test_successful_call_increments_counter(self, services, payer, free_tool):
        await services.tools.invoke(DEVELOPER, "weather", {"city": "Oslo"}, payer)
        await services.tools.invoke(DEVELOPER, "weather", {"city": "Rome"}, payer)
        assert (await services.tools.get(DEVELOPER, "weather")).call_count == 2

    @pytest.mark.asyncio
    async def test_failed_call_does_not_increment_counter(
        self, services, upstream, payer, free_tool
    ):
        upstream.responder = lambda request: httpx.Response(500, json={"error": "boom"})
        outcome = await services.tools.invoke(DEVELOPER, "weather", {"city": "Oslo"}, payer)

        assert outcome.result.success is False
        assert (await services.tools.get(DEVELOPER, "weather")).call_count == 0

    @pytest.mark.asyncio
    async def test_unknown_tool(self, services, payer):
        with pytest.raises(ToolNotFoundError):
            await services.tools.invoke(DEVELOPER, "missing", {}, payer)

    @pytest.mark.asyncio
    async def test_inactive_tool(self, services, payer, free_tool):
        await services.tools.set_active(DEVELOPER, "weather", False)
        with pytest.raises(ToolNotFoundError):
            await services.tools.invoke(DEVELOPER, "weather", {"city": "Oslo"}, payer)

    @pytest.mark.asyncio
    async def test_missing_parameter_checked_before_payment(
        self, services, ledger, upstream, payer, paid_tool
    ):
        """A call that cannot be made is never charged."""
        await ledger.deposit(PAYER, 10)

        with pytest.raises(MissingParameterError) as exc_info:
            await services.tools.invoke(DEVELOPER, "forecast", {}, payer)

        assert exc_info.value.parameter == "city"
        assert ledger.transfer_calls == 0
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_unfilled_url_placeholder_checked_before_payment(
        self, services, ledger, upstream, payer
    ):
        """A stored tool whose URL names an undeclared placeholder is refused before payment."""
        await ledger.deposit(PAYER, 10)
        now = datetime.now(UTC)
        stale = ToolRecord.model_construct(
            name="forecast",
            description="",
            url="https://api.example/forecast/{city}",
            method=HttpMethod.GET,
            parameters=[],
            headers={},
            timeout_seconds=None,
            price_minor=2,
            recipient_wallet="wallet-dev",
            owner=DEVELOPER,
            active=True,
            call_count=0,
            created_at=now,
            updated_at=now,
        )

        with patch.object(services.tools, "get", AsyncMock(return_value=stale)):
            with pytest.raises(MissingParameterError) as exc_info:
                await services.tools.invoke(DEVELOPER, "forecast", {}, payer)

        assert exc_info.value.parameter == "city"
        assert ledger.transfer_calls == 0
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_unpaid_call_never_reaches_upstream(self, services, upstream, payer, paid_tool):
        with pytest.raises(NoLedgerAccountError):
            await services.tools.invoke(DEVELOPER, "forecast", {"city": "Oslo"}, payer)
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_paid_call_settles_then_executes(
        self, services, ledger, upstream, payer, paid_tool
    ):
        await ledger.deposit(PAYER, 10)
        outcome = await services.tools.invoke(DEVELOPER, "forecast", {"city": "Oslo"}, payer)

        assert outcome.result.success is True
        assert outcome.receipt.amount_minor == 2
        assert ledger.total_settled() == 2
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_payment_id_reuse_does_not_recharge_or_forward(
        self, services, ledger, upstream, payer, paid_tool
    ):
        await ledger.deposit(PAYER, 10)
        first = await services.tools.invoke(DEVELOPER, "forecast", {"city": "Oslo"}, payer)

        second = await services.tools.invoke(
            DEVELOPER,
            "forecast",
            {"city": "Oslo", PAYMENT_ARGUMENT: first.receipt.payment_id},
            payer,
        )

        assert second.receipt.reused is True
        assert ledger.transfer_calls == 1
        assert PAYMENT_ARGUMENT not in str(upstream.requests[-1].url)

    @pytest.mark.asyncio
    async def test_paid_upstream_failure_is_still_charged(
        self, services, ledger, upstream, payer, paid_tool
    ):
        """Settlement happens before the call; an upstream error does not refund."""
        await ledger.deposit(PAYER, 10)
        upstream.responder = lambda request: httpx.Response(503, text="down")

        outcome = await services.tools.invoke(DEVELOPER, "forecast", {"city": "Oslo"}, payer)

        assert outcome.result.success is False
        assert outcome.result.failure_reason == "upstream_error"
        assert outcome.receipt is not None
        assert ledger.total_settled() == 2

    @pytest.mark.asyncio
    async def test_reserved_name_routes_to_payment_tools(self, services, ledger, payer):
        await ledger.deposit(PAYER, 7)
        outcome = await services.tools.invoke(DEVELOPER, "get_balance", {}, payer)

        assert outcome.result.success is True
        assert outcome.result.data["available_minor"] == 7

    @pytest.mark.asyncio
    async def test_body_method_sends_arguments(self, services, upstream, payer):
        await services.tools.add(
            DEVELOPER,
            make_tool_spec(
                "create_note",
                method=HttpMethod.POST,
                url="https://api.example/notes",
                parameters=[ToolParameter(name="text", location=ParameterLocation.BODY)],
            ),
        )
        await services.tools.invoke(DEVELOPER, "create_note", {"text": "hello"}, payer)

        assert json.loads(upstream.requests[0].content) == {"text": "hello"}
