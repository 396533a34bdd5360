"""
Payment Gate - settles a paid tool invocation at most once.

Flow for a call without a payment reference:
    balance check (cache, refreshed before denying)
    -> PaymentRecord(processing) -> local pre-deduction
    -> ledger transfer (idempotency key = payment_id, bounded by a timeout)
    -> PaymentRecord(completed) | compensate and PaymentRecord(failed)
       | replay, then PaymentRecord(processing) left for reconciliation

The local balance snapshot is a hint. The ledger's own atomic decrement is
what prevents overspend.

A transfer whose outcome the ledger did not report (missed deadline, 5xx,
dropped connection) is replayed once under the same idempotency key. Only a
definite refusal reverses the local pre-deduction and marks the payment
failed. If the replay is also inconclusive the payment stays `processing`
and is reconciled later, on the next reference to it or by the sweeper.
"""

import secrets
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import NoReturn

from toolgate.exceptions import (
    ConcurrencyError,
    InsufficientBalanceError,
    LedgerError,
    LedgerInsufficientFundsError,
    NoLedgerAccountError,
    PaymentNotFoundError,
    PaymentNotSettledError,
    PaymentReferenceError,
    PaymentStateError,
    SettlementFailureError,
    SettlementPendingError,
)
from toolgate.models.domain import CallerContext, SettlementReceipt
from toolgate.models.records import (
    ALLOWED_PAYMENT_TRANSITIONS,
    BalanceSnapshot,
    PaymentRecord,
    PaymentStatus,
    ToolRecord,
)
from toolgate.observability.logging import get_logger
from toolgate.observability.metrics import metrics
from toolgate.observability.tracing import trace_operation
from toolgate.services.ledger import LedgerClient, LedgerTransaction, with_deadline
from toolgate.stores.kv import KeyValueStore

logger = get_logger(__name__)

PAYMENT_PREFIX = "payment:"
BALANCE_PREFIX = "balance:"
MAX_CAS_ATTEMPTS = 16
# A settlement in flight can spend one deadline on the transfer and one on its replay.
RECONCILE_AFTER_DEADLINES = 2


def new_payment_id() -> str:
    return f"pay_{secrets.token_hex(12)}"


class BalanceCache:
    """
    Short-lived mirror of ledger balances, keyed by principal.

    Reads are lock-free and may be stale. Adjustments are compare-and-set
    loops so concurrent holds on the same principal are not lost.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ledger: LedgerClient,
        ttl_seconds: float = 30.0,
        ledger_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.ttl_seconds = ttl_seconds
        self.ledger_timeout_seconds = ledger_timeout_seconds
        self._clock = clock

    @staticmethod
    def _key(principal: str) -> str:
        return f"{BALANCE_PREFIX}{principal}"

    async def get(self, principal: str, refresh: bool = False) -> BalanceSnapshot | None:
        """
        Return the payer's snapshot, or None if they have no ledger account.

        Raises:
            LedgerError: refresh was needed and the ledger could not answer
        """
        if not refresh:
            raw = await self.store.get(self._key(principal))
            if raw is not None:
                return BalanceSnapshot.model_validate_json(raw)

        balance = await with_deadline(
            self.ledger.balance_of(principal), "balance_of", self.ledger_timeout_seconds
        )
        if balance is None:
            await self.store.delete(self._key(principal))
            return None

        snapshot = BalanceSnapshot(
            principal=principal,
            deposited_minor=balance.deposited_minor,
            spent_minor=balance.spent_minor,
            fetched_at=self._clock(),
        )
        await self.store.set(
            self._key(principal), snapshot.model_dump_json(), ttl_seconds=self.ttl_seconds
        )
        return snapshot

    async def adjust(self, principal: str, spent_delta: int) -> bool:
        """
        Add spent_delta to the cached spent total.

        Returns False when there is no cached snapshot to adjust.
        """
        key = self._key(principal)
        for _ in range(MAX_CAS_ATTEMPTS):
            raw = await self.store.get(key)
            if raw is None:
                return False
            snapshot = BalanceSnapshot.model_validate_json(raw)
            adjusted = snapshot.model_copy(
                update={"spent_minor": snapshot.spent_minor + spent_delta}
            )
            if await self.store.compare_and_set(key, raw, adjusted.model_dump_json()):
                return True
        logger.warning("balance_adjust_abandoned", principal=principal, delta=spent_delta)
        return False

    async def invalidate(self, principal: str) -> None:
        await self.store.delete(self._key(principal))


class PaymentGate:
    """Guards paid tool invocations and runs the quote/approve flow."""

    def __init__(
        self,
        store: KeyValueStore,
        ledger: LedgerClient,
        balances: BalanceCache,
        ledger_timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.balances = balances
        self.ledger_timeout_seconds = ledger_timeout_seconds
        self._clock = clock

    @staticmethod
    def _key(payment_id: str) -> str:
        return f"{PAYMENT_PREFIX}{payment_id}"

    async def get_payment(self, payment_id: str) -> PaymentRecord | None:
        raw = await self.store.get(self._key(payment_id))
        return PaymentRecord.model_validate_json(raw) if raw else None

    # ========================================================================
    # Gate
    # ========================================================================

    async def authorize(
        self, caller: CallerContext, tool: ToolRecord, payment_id: str | None = None
    ) -> SettlementReceipt | None:
        """
        Make sure a call to `tool` is paid for.

        Returns None for free tools, otherwise the receipt of the payment
        covering this call.

        Raises:
            PaymentRequiredError: the call is not paid for (HTTP 402)
            SettlementFailureError: the ledger transfer failed and was compensated
            SettlementPendingError: the transfer outcome is unknown (HTTP 402, processing)
        """
        if tool.price_minor <= 0:
            return None

        if payment_id:
            return await self._check_reference(caller, tool, payment_id)
        return await self._settle_new(caller, tool)

    async def _check_reference(
        self, caller: CallerContext, tool: ToolRecord, payment_id: str
    ) -> SettlementReceipt:
        record = await self.get_payment(payment_id)
        if record is None:
            self._count_payment_required("invalid_payment")
            raise PaymentReferenceError(
                payment_id, "invalid_payment", f"Payment {payment_id} does not exist"
            )
        if record.payer != caller.principal:
            self._count_payment_required("payment_owner_mismatch")
            raise PaymentReferenceError(
                payment_id,
                "payment_owner_mismatch",
                f"Payment {payment_id} was made by a different user",
            )
        if record.tool_id != tool.tool_id:
            self._count_payment_required("payment_tool_mismatch")
            raise PaymentReferenceError(
                payment_id,
                "payment_tool_mismatch",
                f"Payment {payment_id} was made for {record.tool_id}, not {tool.tool_id}",
            )
        if self._awaiting_reconcile(record):
            record = await self.reconcile(payment_id)
        if record.status != PaymentStatus.COMPLETED:
            self._count_payment_required(PaymentNotSettledError.action_required)
            raise PaymentNotSettledError(payment_id, record.status.value)

        logger.info("payment_reference_accepted", payment_id=payment_id, tool=tool.tool_id)
        return SettlementReceipt(
            payment_id=record.payment_id,
            amount_minor=record.amount_minor,
            tx_reference=record.tx_reference or "",
            reused=True,
        )

    async def _settle_new(self, caller: CallerContext, tool: ToolRecord) -> SettlementReceipt:
        await self._ensure_funds(caller.principal, tool.price_minor)

        now = self._clock()
        record = PaymentRecord(
            payment_id=new_payment_id(),
            payer=caller.principal,
            tool_owner=tool.owner,
            tool_name=tool.name,
            recipient_wallet=tool.recipient_wallet or "",
            amount_minor=tool.price_minor,
            status=PaymentStatus.PROCESSING,
            created_at=now,
            updated_at=now,
        )
        raw = record.model_dump_json()
        if not await self.store.set_if_absent(self._key(record.payment_id), raw):
            raise ConcurrencyError(f"payment {record.payment_id}")

        completed = await self._settle(record, raw)
        return SettlementReceipt(
            payment_id=completed.payment_id,
            amount_minor=completed.amount_minor,
            tx_reference=completed.tx_reference or "",
        )

    async def _ensure_funds(self, principal: str, amount_minor: int) -> BalanceSnapshot:
        snapshot = await self.balances.get(principal)
        if snapshot is None or snapshot.available_minor < amount_minor:
            # Never deny on a stale snapshot.
            snapshot = await self.balances.get(principal, refresh=True)

        if snapshot is None:
            self._count_payment_required(NoLedgerAccountError.action_required)
            raise NoLedgerAccountError(principal, amount_minor)
        if snapshot.available_minor < amount_minor:
            self._count_payment_required(InsufficientBalanceError.action_required)
            raise InsufficientBalanceError(snapshot.available_minor, amount_minor)
        return snapshot

    # ========================================================================
    # Settlement core
    # ========================================================================

    async def _transfer(self, record: PaymentRecord) -> str:
        with trace_operation(
            "ledger_transfer", payment_id=record.payment_id, amount_minor=record.amount_minor
        ):
            return await with_deadline(
                self.ledger.transfer(
                    payer=record.payer,
                    recipient_wallet=record.recipient_wallet,
                    amount_minor=record.amount_minor,
                    idempotency_key=record.payment_id,
                ),
                "transfer",
                self.ledger_timeout_seconds,
            )

    async def _settle(self, record: PaymentRecord, raw: str) -> PaymentRecord:
        """
        Transfer funds for a record this caller has moved to `processing`.

        Only the caller that won the write to `processing` may call this.
        Every transfer it sends, replay included, carries the payment_id as
        idempotency key, so the ledger moves funds at most once per payment.

        Raises:
            InsufficientBalanceError: the ledger refused the transfer
            SettlementFailureError: the ledger confirmed nothing moved
            SettlementPendingError: the outcome is still unknown
        """
        start = time.perf_counter()
        held = await self.balances.adjust(record.payer, record.amount_minor)

        try:
            tx_reference = await self._transfer(record)
        except LedgerInsufficientFundsError as e:
            await self._refuse(record, raw, held, start, e)
        except LedgerError as e:
            if e.outcome_known:
                await self._fail(record, raw, held, start, e)
            tx_reference = await self._replay(record, raw, held, start, e)
        except Exception as e:
            logger.error(
                "settlement_unexpected_error",
                payment_id=record.payment_id,
                error=str(e),
                exc_info=True,
            )
            tx_reference = await self._replay(record, raw, held, start, e)

        return await self._complete(record, raw, tx_reference, start)

    async def _replay(
        self, record: PaymentRecord, raw: str, held: bool, start: float, cause: Exception
    ) -> str:
        """
        Send the transfer again under the same idempotency key.

        The ledger answers with the transfer the first attempt made, makes it
        now, or refuses; a refusal is the only proof that nothing moved.
        """
        logger.warning(
            "settlement_outcome_unknown", payment_id=record.payment_id, error=str(cause)
        )
        try:
            return await self._transfer(record)
        except LedgerInsufficientFundsError as e:
            await self._refuse(record, raw, held, start, e)
        except LedgerError as e:
            if e.outcome_known:
                await self._fail(record, raw, held, start, e)
            self._leave_processing(record, start, e)
        except Exception as e:
            self._leave_processing(record, start, e)

    def _leave_processing(self, record: PaymentRecord, start: float, cause: Exception) -> NoReturn:
        # The hold stays: the funds may already have moved.
        metrics.record_settlement("pending", record.amount_minor, time.perf_counter() - start)
        logger.error(
            "settlement_left_processing",
            payment_id=record.payment_id,
            payer=record.payer,
            amount_minor=record.amount_minor,
            error=str(cause),
        )
        raise SettlementPendingError(record.payment_id, str(cause)) from cause

    async def _complete(
        self, record: PaymentRecord, raw: str, tx_reference: str, start: float
    ) -> PaymentRecord:
        now = self._clock()
        completed = record.model_copy(
            update={
                "status": PaymentStatus.COMPLETED,
                "tx_reference": tx_reference,
                "updated_at": now,
                "completed_at": now,
            }
        )
        await self._transition(raw, record, completed)
        metrics.record_settlement("completed", record.amount_minor, time.perf_counter() - start)
        logger.info(
            "payment_settled",
            payment_id=record.payment_id,
            payer=record.payer,
            tool=record.tool_id,
            amount_minor=record.amount_minor,
            tx_reference=tx_reference,
        )
        return completed

    async def _refuse(
        self,
        record: PaymentRecord,
        raw: str,
        held: bool,
        start: float,
        error: LedgerInsufficientFundsError,
    ) -> NoReturn:
        await self._compensate(record, raw, held, str(error))
        metrics.record_settlement(
            "insufficient_funds", record.amount_minor, time.perf_counter() - start
        )
        available = await self._available_after_refusal(record.payer)
        self._count_payment_required(InsufficientBalanceError.action_required)
        raise InsufficientBalanceError(available, record.amount_minor) from error

    async def _fail(
        self, record: PaymentRecord, raw: str, held: bool, start: float, error: LedgerError
    ) -> NoReturn:
        await self._compensate(record, raw, held, str(error))
        metrics.record_settlement("failed", record.amount_minor, time.perf_counter() - start)
        raise SettlementFailureError(record.payment_id, record.amount_minor, str(error)) from error

    async def _compensate(self, record: PaymentRecord, raw: str, held: bool, reason: str) -> None:
        if held:
            await self.balances.adjust(record.payer, -record.amount_minor)
        failed = record.model_copy(
            update={
                "status": PaymentStatus.FAILED,
                "error_message": reason,
                "updated_at": self._clock(),
            }
        )
        await self._transition(raw, record, failed)
        logger.warning(
            "payment_failed",
            payment_id=record.payment_id,
            payer=record.payer,
            refunded_minor=record.amount_minor if held else 0,
            reason=reason,
        )

    async def _available_after_refusal(self, principal: str) -> int:
        try:
            snapshot = await self.balances.get(principal, refresh=True)
        except LedgerError as e:
            logger.warning("balance_refresh_failed", principal=principal, error=str(e))
            return 0
        return snapshot.available_minor if snapshot else 0

    async def _transition(
        self, expected_raw: str, current: PaymentRecord, target: PaymentRecord
    ) -> str:
        if target.status not in ALLOWED_PAYMENT_TRANSITIONS[current.status]:
            raise PaymentStateError(current.payment_id, current.status.value, target.status.value)
        new_raw = target.model_dump_json()
        key = self._key(current.payment_id)
        if not await self.store.compare_and_set(key, expected_raw, new_raw):
            raise ConcurrencyError(f"payment {current.payment_id}")
        return new_raw

    @staticmethod
    def _count_payment_required(action_required: str) -> None:
        metrics.payment_required_total.labels(action_required=action_required).inc()

    # ========================================================================
    # Reconciliation
    # ========================================================================

    def _awaiting_reconcile(self, record: PaymentRecord) -> bool:
        """True for a `processing` payment no settlement can still be working on."""
        if record.status != PaymentStatus.PROCESSING:
            return False
        in_flight = timedelta(seconds=self.ledger_timeout_seconds * RECONCILE_AFTER_DEADLINES)
        return self._clock() - record.updated_at >= in_flight

    async def reconcile(self, payment_id: str) -> PaymentRecord:
        """
        Resolve a `processing` payment whose transfer outcome was never learned.

        Replays the transfer under the payment's idempotency key. The payment
        completes if the ledger reports the transfer, fails if the ledger
        refuses it, and stays `processing` if the ledger still gives no answer.
        Payments in any other state are returned unchanged.
        """
        raw = await self.store.get(self._key(payment_id))
        if raw is None:
            raise PaymentNotFoundError(payment_id)
        record = PaymentRecord.model_validate_json(raw)
        if record.status != PaymentStatus.PROCESSING:
            return record

        start = time.perf_counter()
        try:
            tx_reference = await self._transfer(record)
        except LedgerError as e:
            if not e.outcome_known:
                logger.warning("payment_reconcile_deferred", payment_id=payment_id, error=str(e))
                return record
            failed = record.model_copy(
                update={
                    "status": PaymentStatus.FAILED,
                    "error_message": str(e),
                    "updated_at": self._clock(),
                }
            )
            try:
                await self._transition(raw, record, failed)
            except ConcurrencyError:
                return await self._current(payment_id)
            # The hold was never released; let the next read fetch the ledger's figure.
            await self.balances.invalidate(record.payer)
            metrics.record_settlement("failed", record.amount_minor, time.perf_counter() - start)
            logger.warning("payment_reconciled", payment_id=payment_id, status="failed")
            return failed

        try:
            completed = await self._complete(record, raw, tx_reference, start)
        except ConcurrencyError:
            return await self._current(payment_id)
        logger.info("payment_reconciled", payment_id=payment_id, status="completed")
        return completed

    async def reconcile_stale(self) -> int:
        """Reconcile every `processing` payment left behind. Returns how many resolved."""
        resolved = 0
        for _, raw in await self.store.scan(PAYMENT_PREFIX):
            record = PaymentRecord.model_validate_json(raw)
            if not self._awaiting_reconcile(record):
                continue
            current = await self.reconcile(record.payment_id)
            if current.status != PaymentStatus.PROCESSING:
                resolved += 1
        return resolved

    async def _current(self, payment_id: str) -> PaymentRecord:
        record = await self.get_payment(payment_id)
        if record is None:
            raise PaymentNotFoundError(payment_id)
        return record

    # ========================================================================
    # Quote / approve / verify
    # ========================================================================

    async def create_quote(self, caller: CallerContext, tool: ToolRecord) -> PaymentRecord:
        """Create a pending payment for `tool` that approve() can settle later."""
        now = self._clock()
        record = PaymentRecord(
            payment_id=new_payment_id(),
            payer=caller.principal,
            tool_owner=tool.owner,
            tool_name=tool.name,
            recipient_wallet=tool.recipient_wallet or "",
            amount_minor=tool.price_minor,
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        raw = record.model_dump_json()
        if not await self.store.set_if_absent(self._key(record.payment_id), raw):
            raise ConcurrencyError(f"payment {record.payment_id}")
        logger.info(
            "payment_quoted",
            payment_id=record.payment_id,
            payer=caller.principal,
            tool=tool.tool_id,
            amount_minor=record.amount_minor,
        )
        return record

    async def approve(self, caller: CallerContext, payment_id: str) -> PaymentRecord:
        """
        Settle a pending payment.

        Approving a completed payment returns it unchanged. When two approvals
        race, exactly one moves the record to `processing` and transfers; the
        other sees `processing` or `completed`.
        """
        key = self._key(payment_id)
        for _ in range(MAX_CAS_ATTEMPTS):
            raw = await self.store.get(key)
            if raw is None:
                raise PaymentNotFoundError(payment_id)
            record = PaymentRecord.model_validate_json(raw)
            if record.payer != caller.principal:
                raise PaymentReferenceError(
                    payment_id,
                    "payment_owner_mismatch",
                    f"Payment {payment_id} was made by a different user",
                )

            if self._awaiting_reconcile(record):
                record = await self.reconcile(payment_id)
            if record.status == PaymentStatus.COMPLETED:
                return record
            if record.status == PaymentStatus.FAILED:
                raise PaymentStateError(
                    payment_id, record.status.value, PaymentStatus.PROCESSING.value
                )
            if record.status == PaymentStatus.PROCESSING:
                raise PaymentNotSettledError(payment_id, record.status.value)

            await self._ensure_funds(record.payer, record.amount_minor)
            processing = record.model_copy(
                update={"status": PaymentStatus.PROCESSING, "updated_at": self._clock()}
            )
            processing_raw = processing.model_dump_json()
            if await self.store.compare_and_set(key, raw, processing_raw):
                return await self._settle(processing, processing_raw)
            logger.debug("payment_approval_race_lost", payment_id=payment_id)
        raise ConcurrencyError(f"payment {payment_id}")

    async def verify(
        self, caller: CallerContext, payment_id: str
    ) -> tuple[PaymentRecord, LedgerTransaction | None]:
        """Return the payment and, when it has a ledger reference, the ledger's view of it."""
        record = await self.get_payment(payment_id)
        if record is None:
            raise PaymentNotFoundError(payment_id)
        if record.payer != caller.principal:
            raise PaymentReferenceError(
                payment_id,
                "payment_owner_mismatch",
                f"Payment {payment_id} was made by a different user",
            )
        if self._awaiting_reconcile(record):
            record = await self.reconcile(payment_id)
        if not record.tx_reference:
            return record, None
        transaction = await with_deadline(
            self.ledger.get_transaction(record.tx_reference),
            "get_transaction",
            self.ledger_timeout_seconds,
        )
        return record, transaction
