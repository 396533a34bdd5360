"""
Invocation Executor - performs the outbound HTTP call behind a tool.

Never raises for upstream problems: every outcome, including timeouts
and connection failures, comes back as a ToolResult envelope.
"""

import time
from typing import Any
from urllib.parse import quote

import httpx

from toolgate.models.domain import ToolResult
from toolgate.models.records import ParameterLocation, ToolRecord
from toolgate.observability.logging import get_logger
from toolgate.observability.metrics import metrics

logger = get_logger(__name__)

PAYMENT_ARGUMENT = "_payment_id"


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class InvocationExecutor:
    """Turns a tool record plus arguments into one HTTP request."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        default_timeout_seconds: float = 30.0,
        max_timeout_seconds: float = 120.0,
    ) -> None:
        self.http_client = http_client
        self.default_timeout_seconds = default_timeout_seconds
        self.max_timeout_seconds = max_timeout_seconds

    def timeout_for(self, tool: ToolRecord) -> float:
        return min(tool.timeout_seconds or self.default_timeout_seconds, self.max_timeout_seconds)

    def build_request(
        self, tool: ToolRecord, arguments: dict[str, Any], timeout: float
    ) -> httpx.Request:
        """
        Build the outbound request.

        Path placeholders are filled (URL-encoded) from the arguments; GET and
        DELETE send the rest as query parameters, body methods send all
        arguments as JSON. Header parameters become request headers.
        """
        args = {k: v for k, v in arguments.items() if k != PAYMENT_ARGUMENT}
        for param in tool.parameters:
            if param.name not in args and param.default is not None:
                args[param.name] = param.default

        headers = dict(tool.headers)
        for param in tool.parameters:
            if param.location == ParameterLocation.HEADER and param.name in args:
                headers[param.name] = str(args.pop(param.name))

        path_params = tool.path_parameters()
        url = tool.url
        for name in path_params:
            if name in args:
                url = url.replace(f"{{{name}}}", quote(str(args[name]), safe=""))

        if tool.method.has_body:
            headers.setdefault("Content-Type", "application/json")
            return self.http_client.build_request(
                tool.method.value, url, json=args, headers=headers, timeout=timeout
            )

        query = {k: v for k, v in args.items() if k not in path_params}
        return self.http_client.build_request(
            tool.method.value, url, params=query, headers=headers, timeout=timeout
        )

    async def execute(self, tool: ToolRecord, arguments: dict[str, Any]) -> ToolResult:
        timeout = self.timeout_for(tool)
        request = self.build_request(tool, arguments, timeout)

        logger.info("tool_call_started", tool=tool.tool_id, method=tool.method.value, url=tool.url)
        start = time.perf_counter()
        try:
            response = await self.http_client.send(request)
        except httpx.TimeoutException:
            message = f"Request to {tool.url} timed out after {timeout:g} seconds"
            logger.warning("tool_call_timed_out", tool=tool.tool_id, timeout_seconds=timeout)
            metrics.record_tool_invocation("timeout", time.perf_counter() - start)
            return ToolResult(
                success=False,
                status_code=504,
                data=None,
                message=message,
                failure_reason="timeout",
            )
        except httpx.HTTPError as e:
            logger.error("tool_call_transport_error", tool=tool.tool_id, error=str(e))
            metrics.record_tool_invocation("transport_error", time.perf_counter() - start)
            return ToolResult(
                success=False,
                status_code=502,
                data=None,
                message=f"Error calling API: {e}",
                failure_reason="transport_error",
            )

        duration = time.perf_counter() - start
        data = _decode_body(response)
        if response.is_success:
            logger.info("tool_call_succeeded", tool=tool.tool_id, status=response.status_code)
            metrics.record_tool_invocation("success", duration)
            return ToolResult(
                success=True,
                status_code=response.status_code,
                data=data,
                message=f"Successfully called {tool.name}",
            )

        logger.warning("tool_call_failed", tool=tool.tool_id, status=response.status_code)
        metrics.record_tool_invocation("upstream_error", duration)
        return ToolResult(
            success=False,
            status_code=response.status_code,
            data=data,
            message=f"API call failed with status {response.status_code}",
            failure_reason="upstream_error",
        )
