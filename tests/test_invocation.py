"""
Tests for the Invocation Executor.

Tests outbound request construction and the result envelope, with the
upstream API replaced by httpx.MockTransport.
"""

import json
from datetime import UTC, datetime

import httpx
import pytest

from toolgate.models.records import (
    HttpMethod,
    ParameterLocation,
    ToolParameter,
    ToolRecord,
)
from toolgate.services.invocation import PAYMENT_ARGUMENT, InvocationExecutor


def make_tool(**overrides) -> ToolRecord:
    now = datetime.now(UTC)
    fields = {
        "name": "lookup",
        "url": "https://api.example/items/{item_id}",
        "method": HttpMethod.GET,
        "parameters": [
            ToolParameter(name="item_id", location=ParameterLocation.PATH),
            ToolParameter(name="fields", required=False),
        ],
        "owner": "dev",
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    return ToolRecord(**fields)


def executor_for(handler, **kwargs) -> InvocationExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return InvocationExecutor(client, **kwargs)


class TestBuildRequest:
    """Tests for outbound request construction."""

    @pytest.fixture
    def executor(self) -> InvocationExecutor:
        return InvocationExecutor(httpx.AsyncClient())

    def test_path_parameters_are_url_encoded(self, executor):
        request = executor.build_request(make_tool(), {"item_id": "a b/c"}, 30)
        assert request.url.raw_path.decode() == "/items/a%20b%2Fc"

    def test_get_strips_path_parameters_from_query(self, executor):
        request = executor.build_request(make_tool(), {"item_id": "42", "fields": "name"}, 30)
        assert request.method == "GET"
        assert dict(request.url.params) == {"fields": "name"}

    def test_payment_argument_never_forwarded(self, executor):
        request = executor.build_request(
            make_tool(), {"item_id": "42", PAYMENT_ARGUMENT: "pay_abc"}, 30
        )
        assert PAYMENT_ARGUMENT not in str(request.url)

    def test_post_sends_json_body(self, executor):
        tool = make_tool(
            url="https://api.example/items",
            method=HttpMethod.POST,
            parameters=[ToolParameter(name="title", location=ParameterLocation.BODY)],
        )
        request = executor.build_request(tool, {"title": "hi", PAYMENT_ARGUMENT: "pay_x"}, 30)

        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"title": "hi"}

    def test_configured_content_type_wins(self, executor):
        tool = make_tool(
            url="https://api.example/items",
            method=HttpMethod.PUT,
            headers={"Content-Type": "application/vnd.api+json"},
        )
        request = executor.build_request(tool, {}, 30)
        assert request.headers["Content-Type"] == "application/vnd.api+json"

    def test_header_parameters_become_headers(self, executor):
        tool = make_tool(
            parameters=[
                ToolParameter(name="item_id", location=ParameterLocation.PATH),
                ToolParameter(name="X-Api-Version", location=ParameterLocation.HEADER),
            ]
        )
        request = executor.build_request(tool, {"item_id": "1", "X-Api-Version": "2"}, 30)

        assert request.headers["X-Api-Version"] == "2"
        assert "X-Api-Version" not in dict(request.url.params)

    def test_defaults_fill_missing_arguments(self, executor):
        tool = make_tool(
            parameters=[
                ToolParameter(name="item_id", location=ParameterLocation.PATH),
                ToolParameter(name="units", required=False, default="metric"),
            ]
        )
        request = executor.build_request(tool, {"item_id": "1"}, 30)
        assert dict(request.url.params) == {"units": "metric"}

    def test_timeout_is_applied(self, executor):
        request = executor.build_request(make_tool(), {"item_id": "1"}, 7.5)
        assert request.extensions["timeout"]["read"] == 7.5

    def test_timeout_for_caps_tool_setting(self):
        executor = InvocationExecutor(
            httpx.AsyncClient(), default_timeout_seconds=30, max_timeout_seconds=60
        )
        assert executor.timeout_for(make_tool()) == 30
        assert executor.timeout_for(make_tool(timeout_seconds=5)) == 5
        assert executor.timeout_for(make_tool(timeout_seconds=600)) == 60


class TestExecute:
    """Tests for the result envelope."""

    @pytest.mark.asyncio
    async def test_success_with_json_body(self):
        executor = executor_for(lambda request: httpx.Response(200, json={"id": 42}))
        result = await executor.execute(make_tool(), {"item_id": "42"})

        assert result.success is True
        assert result.status_code == 200
        assert result.data == {"id": 42}
        assert result.message == "Successfully called lookup"
        assert result.failure_reason is None

    @pytest.mark.asyncio
    async def test_text_body_is_kept_as_text(self):
        executor = executor_for(lambda request: httpx.Response(200, text="plain answer"))
        result = await executor.execute(make_tool(), {"item_id": "1"})
        assert result.data == "plain answer"

    @pytest.mark.asyncio
    async def test_empty_body(self):
        executor = executor_for(lambda request: httpx.Response(204))
        result = await executor.execute(make_tool(), {"item_id": "1"})
        assert result.success is True
        assert result.data is None

    @pytest.mark.asyncio
    async def test_upstream_error_status(self):
        executor = executor_for(lambda request: httpx.Response(404, json={"detail": "nope"}))
        result = await executor.execute(make_tool(), {"item_id": "1"})

        assert result.success is False
        assert result.status_code == 404
        assert result.data == {"detail": "nope"}
        assert result.failure_reason == "upstream_error"
        assert "404" in result.message

    @pytest.mark.asyncio
    async def test_timeout_is_a_distinct_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        executor = executor_for(handler)
        result = await executor.execute(make_tool(timeout_seconds=3), {"item_id": "1"})

        assert result.success is False
        assert result.status_code == 504
        assert result.failure_reason == "timeout"
        assert "timed out after 3 seconds" in result.message

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        executor = executor_for(handler)
        result = await executor.execute(make_tool(), {"item_id": "1"})

        assert result.success is False
        assert result.status_code == 502
        assert result.failure_reason == "transport_error"
