"""
Payment Tools - built-in MCP tools every authenticated caller can use.

These names are reserved: no owner can publish a tool that shadows them.
They talk to the Payment Gate and the ledger, never to an upstream API.
"""

from typing import Any, Protocol

from toolgate.exceptions import MissingParameterError, ToolNotFoundError
from toolgate.models.domain import CallerContext, ToolResult
from toolgate.models.records import PaymentRecord, PaymentStatus, ToolRecord
from toolgate.observability.logging import get_logger
from toolgate.services.payment_gate import PaymentGate

logger = get_logger(__name__)

GET_BALANCE = "get_balance"
GET_PAYMENT_TRANSACTION = "get_payment_transaction"
APPROVE_PAYMENT = "approve_payment"
VERIFY_PAYMENT = "verify_payment"

RESERVED_TOOL_NAMES = frozenset(
    {GET_BALANCE, GET_PAYMENT_TRANSACTION, APPROVE_PAYMENT, VERIFY_PAYMENT}
)

PAYMENT_ID_SCHEMA = {
    "type": "string",
    "description": "Payment ID returned by get_payment_transaction or a 402 response",
}

PAYMENT_TOOL_DESCRIPTORS: list[dict[str, Any]] = [
    {
        "name": GET_BALANCE,
        "description": (
            "Check your ledger balance. Shows deposited, spent and available funds "
            "for paying tools on this server."
        ),
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": GET_PAYMENT_TRANSACTION,
        "description": (
            "Get a payment quote for a paid tool. Returns a payment_id to pass to "
            "approve_payment. Payment goes from your balance to the tool's developer."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "tool_name": {"type": "string", "description": "Name of the tool to pay for"},
            },
            "required": ["tool_name"],
        },
    },
    {
        "name": APPROVE_PAYMENT,
        "description": (
            "Approve and settle a quoted payment. Approving the same payment again "
            "never charges twice."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {"payment_id": PAYMENT_ID_SCHEMA},
            "required": ["payment_id"],
        },
    },
    {
        "name": VERIFY_PAYMENT,
        "description": (
            "Verify that a payment was settled on the ledger. Call this after "
            "approve_payment if you are unsure whether it went through."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {"payment_id": PAYMENT_ID_SCHEMA},
            "required": ["payment_id"],
        },
    },
]


class ToolLookup(Protocol):
    async def get(self, owner: str, name: str) -> ToolRecord | None: ...


def retry_instruction(payment_id: str) -> str:
    return f'Call the original tool again with _payment_id: "{payment_id}"'


def _payment_details(record: PaymentRecord) -> dict[str, Any]:
    return {
        "payment_id": record.payment_id,
        "tool": record.tool_name,
        "owner": record.tool_owner,
        "amount_minor": record.amount_minor,
        "recipient_wallet": record.recipient_wallet,
        "status": record.status.value,
        "tx_reference": record.tx_reference,
    }


def _required_argument(tool_name: str, arguments: dict[str, Any], name: str) -> str:
    value = arguments.get(name)
    if value is None or value == "":
        raise MissingParameterError(tool_name, name)
    return str(value)


class PaymentTools:
    """Dispatches calls to the reserved payment tools."""

    def __init__(self, gate: PaymentGate, tools: ToolLookup) -> None:
        self.gate = gate
        self.tools = tools

    @staticmethod
    def is_reserved(name: str) -> bool:
        return name in RESERVED_TOOL_NAMES

    async def call(
        self, owner: str, name: str, arguments: dict[str, Any], caller: CallerContext
    ) -> ToolResult:
        logger.info("payment_tool_called", tool=name, owner=owner, principal=caller.principal)
        if name == GET_BALANCE:
            return await self.get_balance(caller)
        if name == GET_PAYMENT_TRANSACTION:
            tool_name = _required_argument(name, arguments, "tool_name")
            return await self.get_payment_transaction(owner, tool_name, caller)
        if name == APPROVE_PAYMENT:
            payment_id = _required_argument(name, arguments, "payment_id")
            return await self.approve_payment(payment_id, caller)
        if name == VERIFY_PAYMENT:
            payment_id = _required_argument(name, arguments, "payment_id")
            return await self.verify_payment(payment_id, caller)
        raise ToolNotFoundError(owner, name)

    async def get_balance(self, caller: CallerContext) -> ToolResult:
        snapshot = await self.gate.balances.get(caller.principal, refresh=True)
        if snapshot is None:
            return ToolResult(
                success=True,
                status_code=200,
                data={
                    "has_balance_account": False,
                    "action_required": "deposit_required",
                    "message": (
                        "You do not have a ledger account yet. Deposit funds with the "
                        "ledger service, then call get_balance again."
                    ),
                },
                message="No ledger account",
            )
        return ToolResult(
            success=True,
            status_code=200,
            data={
                "has_balance_account": True,
                "deposited_minor": snapshot.deposited_minor,
                "spent_minor": snapshot.spent_minor,
                "available_minor": snapshot.available_minor,
            },
            message=f"Available balance: {snapshot.available_minor}",
        )

    async def get_payment_transaction(
        self, owner: str, tool_name: str, caller: CallerContext
    ) -> ToolResult:
        tool = await self.tools.get(owner, tool_name)
        if tool is None or not tool.active:
            raise ToolNotFoundError(owner, tool_name)

        if tool.price_minor <= 0:
            return ToolResult(
                success=True,
                status_code=200,
                data={"payment_required": False, "tool": tool.name},
                message=f"{tool.name} is free to call; no payment is needed",
            )

        record = await self.gate.create_quote(caller, tool)
        snapshot = await self.gate.balances.get(caller.principal)
        return ToolResult(
            success=True,
            status_code=200,
            data={
                "payment_required": True,
                "payment_details": _payment_details(record),
                "available_minor": snapshot.available_minor if snapshot else None,
                "next_step": f'Call approve_payment with payment_id "{record.payment_id}"',
            },
            message=(
                f"Approve this payment to pay {record.amount_minor} "
                f"to the developer of {tool.name}"
            ),
        )

    async def approve_payment(self, payment_id: str, caller: CallerContext) -> ToolResult:
        record = await self.gate.approve(caller, payment_id)
        return ToolResult(
            success=True,
            status_code=200,
            data={
                "payment_details": _payment_details(record),
                "next_action": retry_instruction(record.payment_id),
            },
            message=f"Payment {record.payment_id} settled",
        )

    async def verify_payment(self, payment_id: str, caller: CallerContext) -> ToolResult:
        record, transaction = await self.gate.verify(caller, payment_id)
        verified = (
            record.status == PaymentStatus.COMPLETED
            and transaction is not None
            and transaction.confirmed
        )
        data: dict[str, Any] = {
            "payment_verified": verified,
            "payment_details": _payment_details(record),
            "ledger_status": transaction.status if transaction else None,
        }
        if verified:
            data["next_action"] = retry_instruction(record.payment_id)
            message = "Payment verified on the ledger. You can now use the tool."
        elif transaction is not None:
            message = (
                f"Payment {record.payment_id} is {record.status.value}; "
                f"the ledger reports {transaction.status}"
            )
        else:
            message = f"Payment {record.payment_id} is {record.status.value}"
        return ToolResult(success=True, status_code=200, data=data, message=message)
