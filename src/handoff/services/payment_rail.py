"""Payment rail adapters for refund transfers.

The rail is an opaque external ledger: it accepts a transfer request with
an idempotency key and answers with a transaction reference and an
outcome, which may still be pending. Two adapters:

- SandboxPaymentRail: deterministic, in-process, for development and tests
- HTTPPaymentRail: JSON over HTTP with bearer auth (httpx)

Outcome callbacks from the rail are authenticated with an HMAC-SHA256
signature over the raw body.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

import httpx

from handoff.core.config import PaymentRailMode

if TYPE_CHECKING:
    from collections.abc import Awaitable
    from decimal import Decimal

    from handoff.core.config import PaymentRailSettings

logger = logging.getLogger(__name__)


class TransferStatus(str, Enum):
    """Outcome reported by the rail."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True, slots=True)
class TransferResult:
    """Rail answer for one transfer.

    Attributes:
        transaction_ref: Rail-side reference (receipt id / transaction hash).
        status: Outcome so far.
        detail: Failure reason or rail message.
    """

    transaction_ref: str
    status: TransferStatus
    detail: str | None = None


class PaymentRailError(Exception):
    """Transport or protocol failure talking to the rail.

    ``retryable`` is False when the rail definitively refused the request
    (4xx) and resubmitting the same request cannot succeed.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message)


class PaymentRail(Protocol):
    """Contract both adapters implement."""

    async def transfer(
        self,
        *,
        destination: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> TransferResult: ...

    async def get_transfer(self, transaction_ref: str) -> TransferResult: ...

    async def close(self) -> None: ...


@dataclass
class SandboxPaymentRail:
    """In-process rail with scripted outcomes.

    Destinations starting with ``fail:`` fail and ``pending:`` stay pending
    for ``pending_polls`` lookups before succeeding; everything else
    succeeds immediately. Replaying an idempotency key returns the original
    result.
    """

    pending_polls: int = 1
    transfers: dict[str, TransferResult] = field(default_factory=dict)
    _by_ref: dict[str, str] = field(default_factory=dict)
    _polls: dict[str, int] = field(default_factory=dict)

    async def transfer(
        self,
        *,
        destination: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> TransferResult:
        if idempotency_key in self.transfers:
            return self.transfers[idempotency_key]

        ref = "sbx_" + hashlib.sha256(idempotency_key.encode()).hexdigest()[:24]
        if destination.startswith("fail:"):
            result = TransferResult(ref, TransferStatus.FAILED, "Destination rejected by sandbox")
        elif destination.startswith("pending:"):
            result = TransferResult(ref, TransferStatus.PENDING)
        else:
            result = TransferResult(ref, TransferStatus.SUCCEEDED)

        self.transfers[idempotency_key] = result
        self._by_ref[ref] = idempotency_key
        logger.info(
            "Sandbox transfer: ref=%s, amount=%s %s, status=%s",
            ref,
            amount,
            currency,
            result.status.value,
        )
        return result

    async def get_transfer(self, transaction_ref: str) -> TransferResult:
        key = self._by_ref.get(transaction_ref)
        if key is None:
            msg = f"Unknown transfer {transaction_ref}"
            raise PaymentRailError(msg, retryable=False)

        result = self.transfers[key]
        if result.status == TransferStatus.PENDING:
            self._polls[transaction_ref] = self._polls.get(transaction_ref, 0) + 1
            if self._polls[transaction_ref] >= self.pending_polls:
                result = TransferResult(transaction_ref, TransferStatus.SUCCEEDED)
                self.transfers[key] = result
        return result

    async def close(self) -> None:
        pass


class HTTPPaymentRail:
    """Client for a JSON payment rail API.

    Endpoints:
        POST /v1/transfers            create (Idempotency-Key header)
        GET  /v1/transfers/{ref}      poll
    """

    def __init__(
        self,
        settings: PaymentRailSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._settings.base_url,
                timeout=float(self._settings.timeout),
                headers={
                    "Authorization": f"Bearer {self._settings.api_key.get_secret_value()}",
                    "Accept": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def transfer(
        self,
        *,
        destination: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> TransferResult:
        client = await self._get_client()
        response = await self._request(
            client.post(
                "/v1/transfers",
                json={"destination": destination, "amount": str(amount), "currency": currency},
                headers={"Idempotency-Key": idempotency_key},
            )
        )
        return self._parse(response)

    async def get_transfer(self, transaction_ref: str) -> TransferResult:
        client = await self._get_client()
        response = await self._request(client.get(f"/v1/transfers/{transaction_ref}"))
        return self._parse(response)

    async def _request(self, pending: Awaitable[httpx.Response]) -> httpx.Response:
        try:
            response = await pending
        except httpx.RequestError as e:
            msg = f"Payment rail request failed: {e}"
            raise PaymentRailError(msg) from e

        if response.status_code >= 500:
            msg = f"Payment rail returned status {response.status_code}"
            raise PaymentRailError(msg)
        if response.status_code >= 400:
            msg = f"Payment rail refused request: {response.status_code} {response.text[:200]}"
            raise PaymentRailError(msg, retryable=False)
        return response

    def _parse(self, response: httpx.Response) -> TransferResult:
        try:
            body = response.json()
            return TransferResult(
                transaction_ref=str(body["id"]),
                status=TransferStatus(body["status"]),
                detail=body.get("failure_reason"),
            )
        except (ValueError, KeyError, TypeError) as e:
            msg = f"Malformed payment rail response: {e}"
            raise PaymentRailError(msg) from e


def sign_callback(body: bytes, secret: str) -> str:
    """Signature header value the rail sends with outcome callbacks."""
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_callback_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Constant-time check of a callback signature."""
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign_callback(body, secret), signature)


def build_payment_rail(settings: PaymentRailSettings) -> PaymentRail:
    """Instantiate the adapter selected by configuration."""
    if settings.mode == PaymentRailMode.HTTP:
        return HTTPPaymentRail(settings)
    return SandboxPaymentRail()
