"""
Tool Registry - per-owner catalogue of published tools.

Tools are stored under `tool:{owner}:{name}` with the owner percent-encoded,
so one owner's key prefix never matches another's. Invocation order is fixed:
required-parameter check, then the payment gate, then the outbound call,
so a caller is never charged for a call that could not have been made.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

from toolgate.exceptions import (
    ConcurrencyError,
    MissingParameterError,
    ReservedToolNameError,
    ToolAlreadyExistsError,
    ToolNotFoundError,
)
from toolgate.models.domain import CallerContext, InvocationOutcome
from toolgate.models.records import ToolRecord, ToolSpec
from toolgate.observability.logging import get_logger
from toolgate.observability.tracing import add_span_attributes, trace_operation
from toolgate.services.invocation import PAYMENT_ARGUMENT, InvocationExecutor
from toolgate.services.payment_gate import PaymentGate
from toolgate.services.payment_tools import (
    PAYMENT_TOOL_DESCRIPTORS,
    RESERVED_TOOL_NAMES,
    PaymentTools,
)
from toolgate.stores.kv import KeyValueStore

logger = get_logger(__name__)

TOOL_PREFIX = "tool:"
MAX_CAS_ATTEMPTS = 16


def tool_input_schema(tool: ToolRecord) -> dict[str, Any]:
    """JSON schema for a tool's arguments as advertised over MCP."""
    properties: dict[str, Any] = {}
    required: list[str] = []
    for param in tool.parameters:
        schema: dict[str, Any] = {"type": param.type}
        if param.description:
            schema["description"] = param.description
        if param.default is not None:
            schema["default"] = param.default
        properties[param.name] = schema
        if param.required:
            required.append(param.name)

    if tool.price_minor > 0:
        properties[PAYMENT_ARGUMENT] = {
            "type": "string",
            "description": (
                f"Optional payment ID of a completed payment for this tool. "
                f"Without it each call costs {tool.price_minor} from your balance."
            ),
        }

    input_schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        input_schema["required"] = required
    return input_schema


class ToolRegistry:
    """Service for publishing, listing and invoking tools."""

    def __init__(
        self,
        store: KeyValueStore,
        gate: PaymentGate,
        executor: InvocationExecutor,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.gate = gate
        self.executor = executor
        self.payment_tools = PaymentTools(gate, self)
        self._clock = clock

    @staticmethod
    def _owner_prefix(owner: str) -> str:
        return f"{TOOL_PREFIX}{quote(owner, safe='')}:"

    @classmethod
    def _key(cls, owner: str, name: str) -> str:
        return f"{cls._owner_prefix(owner)}{name}"

    async def add(self, owner: str, spec: ToolSpec) -> ToolRecord:
        """
        Publish a tool for `owner`.

        Raises:
            ReservedToolNameError: the name belongs to a built-in payment tool
            ToolAlreadyExistsError: owner already has a tool with this name
        """
        if spec.name in RESERVED_TOOL_NAMES:
            raise ReservedToolNameError(spec.name)

        now = self._clock()
        record = ToolRecord(**spec.model_dump(), owner=owner, created_at=now, updated_at=now)
        key = self._key(owner, spec.name)
        if not await self.store.set_if_absent(key, record.model_dump_json()):
            raise ToolAlreadyExistsError(owner, spec.name)

        logger.info(
            "tool_added",
            owner=owner,
            tool=spec.name,
            method=spec.method.value,
            price_minor=spec.price_minor,
        )
        return record

    async def remove(self, owner: str, name: str) -> bool:
        removed = await self.store.delete(self._key(owner, name))
        if removed:
            logger.info("tool_removed", owner=owner, tool=name)
        return removed

    async def get(self, owner: str, name: str) -> ToolRecord | None:
        raw = await self.store.get(self._key(owner, name))
        return ToolRecord.model_validate_json(raw) if raw else None

    async def list_for_owner(self, owner: str) -> list[ToolRecord]:
        """All of an owner's tools, active or not, ordered by name."""
        return [
            ToolRecord.model_validate_json(raw)
            for _, raw in await self.store.scan(self._owner_prefix(owner))
        ]

    async def set_active(self, owner: str, name: str, active: bool) -> ToolRecord:
        return await self._update(owner, name, lambda r: {"active": active})

    async def record_call(self, owner: str, name: str) -> ToolRecord:
        return await self._update(owner, name, lambda r: {"call_count": r.call_count + 1})

    async def _update(
        self, owner: str, name: str, changes: Callable[[ToolRecord], dict[str, Any]]
    ) -> ToolRecord:
        key = self._key(owner, name)
        for _ in range(MAX_CAS_ATTEMPTS):
            raw = await self.store.get(key)
            if raw is None:
                raise ToolNotFoundError(owner, name)
            record = ToolRecord.model_validate_json(raw)
            updated = record.model_copy(update={**changes(record), "updated_at": self._clock()})
            if await self.store.compare_and_set(key, raw, updated.model_dump_json()):
                return updated
        raise ConcurrencyError(f"tool {owner}/{name}")

    async def list_tools(self, owner: str) -> list[dict[str, Any]]:
        """MCP descriptors: the payment tools, then the owner's active tools."""
        descriptors = [dict(d) for d in PAYMENT_TOOL_DESCRIPTORS]
        for tool in await self.list_for_owner(owner):
            if not tool.active:
                continue
            description = tool.description or f"{tool.method.value} {tool.url}"
            if tool.price_minor > 0:
                description = f"{description} (price: {tool.price_minor} per call)"
            descriptors.append(
                {
                    "name": tool.name,
                    "description": description,
                    "inputSchema": tool_input_schema(tool),
                }
            )
        return descriptors

    async def invoke(
        self, owner: str, name: str, arguments: dict[str, Any], caller: CallerContext
    ) -> InvocationOutcome:
        """
        Run one tool call on behalf of `caller`.

        Raises:
            ToolNotFoundError: no active tool `name` for `owner`
            MissingParameterError: a required argument is absent (nothing is charged)
            PaymentRequiredError: the call is not paid for
            SettlementFailureError: settlement failed and was compensated
            SettlementPendingError: the ledger outcome is unknown; the payment stays processing
        """
        if name in RESERVED_TOOL_NAMES:
            result = await self.payment_tools.call(owner, name, arguments, caller)
            return InvocationOutcome(result=result)

        tool = await self.get(owner, name)
        if tool is None or not tool.active:
            raise ToolNotFoundError(owner, name)

        for param in tool.parameters:
            if param.required and param.default is None and param.name not in arguments:
                raise MissingParameterError(tool.name, param.name)
        defaults = {p.name for p in tool.parameters if p.default is not None}
        for placeholder in sorted(tool.path_parameters()):
            if placeholder not in arguments and placeholder not in defaults:
                raise MissingParameterError(tool.name, placeholder)

        with trace_operation(
            "tool_invocation", tool=tool.tool_id, principal=caller.principal
        ) as span:
            payment_id = arguments.get(PAYMENT_ARGUMENT)
            receipt = await self.gate.authorize(
                caller, tool, str(payment_id) if payment_id else None
            )
            if receipt is not None:
                add_span_attributes(span, payment_id=receipt.payment_id, reused=receipt.reused)

            start = time.perf_counter()
            result = await self.executor.execute(tool, arguments)
            logger.info(
                "tool_invoked",
                tool=tool.tool_id,
                principal=caller.principal,
                success=result.success,
                status=result.status_code,
                payment_id=receipt.payment_id if receipt else None,
                duration_ms=int((time.perf_counter() - start) * 1000),
            )

        if result.success:
            try:
                await self.record_call(owner, name)
            except (ToolNotFoundError, ConcurrencyError) as e:
                # The call already happened; a lost counter update is not a failure.
                logger.warning("tool_call_count_not_recorded", tool=tool.tool_id, error=str(e))
        return InvocationOutcome(result=result, receipt=receipt)
