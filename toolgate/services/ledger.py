"""
Ledger Collaborator - Provider-agnostic interface to the external ledger.

NO DICTIONARIES - All data uses strongly typed models.

The ledger is the system of record for funds. Its own atomic decrement
is the only thing that prevents overspend; the gateway's balance cache
is a hint in front of it.
"""

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Protocol, TypeVar

import httpx

from toolgate.exceptions import LedgerError, LedgerInsufficientFundsError, LedgerTimeoutError
from toolgate.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSACTION_CONFIRMED = "confirmed"


async def with_deadline(call: Awaitable[T], operation: str, timeout_seconds: float) -> T:
    """Await a ledger call, converting a missed deadline into LedgerTimeoutError."""
    try:
        return await asyncio.wait_for(call, timeout=timeout_seconds)
    except TimeoutError as e:
        logger.warning(
            "ledger_call_timed_out", operation=operation, timeout_seconds=timeout_seconds
        )
        raise LedgerTimeoutError(operation, timeout_seconds) from e


@dataclass(frozen=True)
class LedgerBalance:
    """A payer's funds as reported by the ledger."""

    deposited_minor: int
    spent_minor: int

    @property
    def available_minor(self) -> int:
        return self.deposited_minor - self.spent_minor


@dataclass(frozen=True)
class LedgerTransaction:
    """A transfer as reported by the ledger."""

    tx_reference: str
    status: str
    payer: str
    recipient: str
    amount_minor: int

    @property
    def confirmed(self) -> bool:
        return self.status == TRANSACTION_CONFIRMED


class LedgerClient(Protocol):
    """
    Ledger protocol.

    Any ledger backend (custodial HTTP service, on-chain relayer, test
    double) must implement this interface.
    """

    async def balance_of(self, principal: str) -> LedgerBalance | None:
        """
        Return the payer's balance, or None if they have no ledger account.

        Raises:
            LedgerError: If the ledger cannot answer
        """
        ...

    async def transfer(
        self, payer: str, recipient_wallet: str, amount_minor: int, idempotency_key: str
    ) -> str:
        """
        Move amount_minor from the payer's tracked funds to recipient_wallet.

        Replaying the same idempotency_key must not move funds twice.

        Returns:
            Ledger transaction reference

        Raises:
            LedgerInsufficientFundsError: The ledger's own balance check refused it
            LedgerError: Any other failure
        """
        ...

    async def get_transaction(self, tx_reference: str) -> LedgerTransaction | None:
        """Look up a transfer by reference."""
        ...


class HttpLedgerClient:
    """Ledger client for a custodial ledger service speaking JSON over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._http_client

    async def balance_of(self, principal: str) -> LedgerBalance | None:
        try:
            response = await self.http_client.get(f"/v1/accounts/{principal}/balance")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json()
            return LedgerBalance(
                deposited_minor=int(data["deposited_minor"]),
                spent_minor=int(data["spent_minor"]),
            )
        except httpx.HTTPStatusError as e:
            logger.error(
                "ledger_balance_failed", status=e.response.status_code, text=e.response.text[:200]
            )
            raise LedgerError(f"balance lookup failed with status {e.response.status_code}") from e
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error("ledger_balance_error", error=str(e))
            raise LedgerError(f"balance lookup failed: {e}") from e

    async def transfer(
        self, payer: str, recipient_wallet: str, amount_minor: int, idempotency_key: str
    ) -> str:
        try:
            response = await self.http_client.post(
                "/v1/transfers",
                json={
                    "payer": payer,
                    "recipient": recipient_wallet,
                    "amount_minor": amount_minor,
                },
                headers={"Idempotency-Key": idempotency_key},
            )
            if response.status_code in (409, 422) and "insufficient_funds" in response.text:
                raise LedgerInsufficientFundsError(payer, amount_minor)
            response.raise_for_status()
            return str(response.json()["tx_reference"])
        except httpx.HTTPStatusError as e:
            logger.error(
                "ledger_transfer_failed",
                status=e.response.status_code,
                text=e.response.text[:200],
                idempotency_key=idempotency_key,
            )
            # A 5xx may have been raised after the transfer committed.
            raise LedgerError(
                f"transfer failed with status {e.response.status_code}",
                outcome_known=e.response.status_code < 500,
            ) from e
        except httpx.TimeoutException as e:
            logger.error("ledger_transfer_timeout", idempotency_key=idempotency_key)
            raise LedgerTimeoutError("transfer", self.timeout_seconds) from e
        except httpx.ConnectError as e:
            logger.error(
                "ledger_transfer_unreachable", error=str(e), idempotency_key=idempotency_key
            )
            raise LedgerError(f"transfer failed: {e}") from e
        except (httpx.HTTPError, KeyError, ValueError) as e:
            # Sent, but no usable answer came back.
            logger.error("ledger_transfer_error", error=str(e), idempotency_key=idempotency_key)
            raise LedgerError(f"transfer failed: {e}", outcome_known=False) from e

    async def get_transaction(self, tx_reference: str) -> LedgerTransaction | None:
        try:
            response = await self.http_client.get(f"/v1/transactions/{tx_reference}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json()
            return LedgerTransaction(
                tx_reference=tx_reference,
                status=str(data["status"]),
                payer=str(data["payer"]),
                recipient=str(data["recipient"]),
                amount_minor=int(data["amount_minor"]),
            )
        except httpx.HTTPStatusError as e:
            raise LedgerError(
                f"transaction lookup failed with status {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise LedgerError(f"transaction lookup failed: {e}") from e

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()


class InMemoryLedger:
    """
    Process-local ledger for development and tests.

    Transfers decrement under a lock, so concurrent transfers can never
    overdraw an account, and replay the original result for a repeated
    idempotency key.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, LedgerBalance] = {}
        self._transactions: dict[str, LedgerTransaction] = {}
        self._by_idempotency_key: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self.transfer_calls = 0

    async def deposit(self, principal: str, amount_minor: int) -> LedgerBalance:
        """Credit a payer's account, creating it on first deposit."""
        async with self._lock:
            current = self._accounts.get(principal, LedgerBalance(0, 0))
            updated = LedgerBalance(current.deposited_minor + amount_minor, current.spent_minor)
            self._accounts[principal] = updated
            return updated

    async def balance_of(self, principal: str) -> LedgerBalance | None:
        async with self._lock:
            return self._accounts.get(principal)

    async def transfer(
        self, payer: str, recipient_wallet: str, amount_minor: int, idempotency_key: str
    ) -> str:
        async with self._lock:
            self.transfer_calls += 1
            existing = self._by_idempotency_key.get(idempotency_key)
            if existing is not None:
                return existing

            account = self._accounts.get(payer)
            if account is None or account.available_minor < amount_minor:
                raise LedgerInsufficientFundsError(payer, amount_minor)

            self._accounts[payer] = LedgerBalance(
                account.deposited_minor, account.spent_minor + amount_minor
            )
            tx_reference = f"tx_{len(self._transactions) + 1:08d}"
            self._transactions[tx_reference] = LedgerTransaction(
                tx_reference=tx_reference,
                status=TRANSACTION_CONFIRMED,
                payer=payer,
                recipient=recipient_wallet,
                amount_minor=amount_minor,
            )
            self._by_idempotency_key[idempotency_key] = tx_reference
            return tx_reference

    async def get_transaction(self, tx_reference: str) -> LedgerTransaction | None:
        async with self._lock:
            return self._transactions.get(tx_reference)

    def total_settled(self) -> int:
        """Sum of all transferred amounts."""
        return sum(tx.amount_minor for tx in self._transactions.values())

    async def close(self) -> None:
        return None
