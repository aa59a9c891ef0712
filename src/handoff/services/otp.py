"""OTP challenge engine for physical handoffs.

A delivery agent proves co-presence with the customer by entering a
6-digit code that only the customer received. The engine:

- issues a code, superseding any active challenge of the same purpose
- sends it through the notification channel once the issuing transaction
  has committed, and returns a receipt that never contains the code
- verifies submissions in constant time, consuming the challenge on success
- rejects expired challenges with a distinct error
- withdraws a challenge after too many wrong submissions

Codes are stored only as SHA-256 digests salted with the challenge id.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select

from handoff.core.clock import utcnow
from handoff.db.models.otp import OTPChallenge
from handoff.services.errors import (
    ExternalDependencyError,
    OTPExpiredError,
    OTPMismatchError,
)
from handoff.services.notifications import NotificationError

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from handoff.core.clock import Clock
    from handoff.core.config import NotificationChannelKind, OTPSettings
    from handoff.db.models.base import OTPPurpose
    from handoff.services.notifications import NotificationChannel

logger = logging.getLogger(__name__)

OTP_LENGTH = 6
DEFAULT_VALIDITY_MINUTES = 15
DEFAULT_MAX_ATTEMPTS = 5

_MESSAGES = {
    "delivery": "Your delivery code for order {ref} is {code}. Share it with the agent at handoff.",
    "pickup": "Your return pickup code for order {ref} is {code}. Share it with the agent at pickup.",
}


def generate_code() -> str:
    """Uniformly random zero-padded 6-digit code."""
    return f"{secrets.randbelow(10**OTP_LENGTH):0{OTP_LENGTH}d}"


def digest_code(challenge_id: uuid.UUID, code: str) -> str:
    """Salted digest stored in place of the code."""
    return hashlib.sha256(f"{challenge_id}:{code}".encode()).hexdigest()


@dataclass(frozen=True, slots=True)
class OTPReceipt:
    """Acknowledgement returned to the issuing agent. Carries no code."""

    challenge_id: uuid.UUID
    order_id: uuid.UUID
    purpose: OTPPurpose
    issued_at: datetime
    expires_at: datetime
    channel: NotificationChannelKind
    message_id: str


@dataclass(frozen=True, slots=True)
class OTPDispatch:
    """An issued challenge whose message has not been sent yet.

    The message carries the code; keep it in memory only until ``send()``.
    """

    challenge_id: uuid.UUID
    order_id: uuid.UUID
    purpose: OTPPurpose
    issued_at: datetime
    expires_at: datetime
    contact: str = field(repr=False)
    message: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class OTPVerification:
    """Successful verification."""

    challenge_id: uuid.UUID
    order_id: uuid.UUID
    purpose: OTPPurpose
    verified_at: datetime


class OTPEngine:
    """Issues and verifies OTP challenges.

    Callers are expected to hold the order row lock, so issue and verify
    for the same order never interleave. Sending happens after commit, once
    the lock is released.

    Example:
        engine = OTPEngine(session, channel)
        dispatch = await engine.issue(order.order_id, OTPPurpose.DELIVERY,
                                      contact=order.customer_contact,
                                      reference=order.order_number)
        await session.commit()
        receipt = await engine.send(dispatch)
        await engine.verify(order.order_id, OTPPurpose.DELIVERY, "482193")
    """

    def __init__(
        self,
        session: AsyncSession,
        channel: NotificationChannel,
        *,
        validity_minutes: int = DEFAULT_VALIDITY_MINUTES,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Clock = utcnow,
        code_generator: Callable[[], str] = generate_code,
    ) -> None:
        self._session = session
        self._channel = channel
        self._validity = timedelta(minutes=validity_minutes)
        self._max_attempts = max_attempts
        self._clock = clock
        self._generate = code_generator

    @classmethod
    def from_settings(
        cls,
        session: AsyncSession,
        channel: NotificationChannel,
        settings: OTPSettings,
        **kwargs,
    ) -> OTPEngine:
        return cls(
            session,
            channel,
            validity_minutes=settings.validity_minutes,
            max_attempts=settings.max_attempts,
            **kwargs,
        )

    async def active_challenge(
        self,
        order_id: uuid.UUID,
        purpose: OTPPurpose,
    ) -> OTPChallenge | None:
        """Locked fetch of the unconsumed, unsuperseded challenge, if any."""
        query = (
            select(OTPChallenge)
            .where(
                OTPChallenge.order_id == order_id,
                OTPChallenge.purpose == purpose,
                OTPChallenge.consumed_at.is_(None),
                OTPChallenge.superseded_at.is_(None),
            )
            .with_for_update()
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def has_verified(self, order_id: uuid.UUID, purpose: OTPPurpose) -> bool:
        """True if a challenge of this purpose was consumed for the order."""
        query = (
            select(OTPChallenge.challenge_id)
            .where(
                OTPChallenge.order_id == order_id,
                OTPChallenge.purpose == purpose,
                OTPChallenge.consumed_at.is_not(None),
            )
            .limit(1)
        )
        result = await self._session.execute(query)
        return result.scalar_one_or_none() is not None

    async def issue(
        self,
        order_id: uuid.UUID,
        purpose: OTPPurpose,
        *,
        contact: str,
        reference: str | None = None,
        issued_by: str | None = None,
    ) -> OTPDispatch:
        """Record a fresh challenge and compose the customer's message.

        Nothing is sent here; the caller commits, then passes the result to
        ``send()``.

        Args:
            order_id: Order the code is bound to.
            purpose: Delivery or pickup.
            contact: Customer's registered contact.
            reference: Human order reference for the message.
            issued_by: Agent who asked for the code.

        Returns:
            The pending message for ``send()``.
        """
        now = self._clock()

        prior = await self.active_challenge(order_id, purpose)
        if prior is not None:
            prior.superseded_at = now
            # The partial unique index needs the old row retired before the insert
            await self._session.flush()
            logger.info(
                "OTP challenge superseded",
                extra={
                    "order_id": str(order_id),
                    "purpose": purpose.value,
                    "challenge_id": str(prior.challenge_id),
                },
            )

        code = self._generate()
        challenge_id = uuid.uuid4()
        challenge = OTPChallenge(
            challenge_id=challenge_id,
            order_id=order_id,
            purpose=purpose,
            code_digest=digest_code(challenge_id, code),
            issued_at=now,
            expires_at=now + self._validity,
            issued_by=issued_by,
            failed_attempts=0,
        )
        self._session.add(challenge)
        await self._session.flush()

        logger.info(
            "OTP issued",
            extra={
                "order_id": str(order_id),
                "purpose": purpose.value,
                "challenge_id": str(challenge_id),
                "expires_at": challenge.expires_at.isoformat(),
            },
        )
        return OTPDispatch(
            challenge_id=challenge_id,
            order_id=order_id,
            purpose=purpose,
            issued_at=now,
            expires_at=challenge.expires_at,
            contact=contact,
            message=_MESSAGES[purpose.value].format(ref=reference or order_id, code=code),
        )

    async def send(self, dispatch: OTPDispatch) -> OTPReceipt:
        """Send an issued code to the customer.

        Call after the issuing transaction has committed. If the send fails
        the challenge stays on file unknown to anyone; issuing again
        supersedes it.

        Raises:
            ExternalDependencyError: If the channel fails to send.
        """
        try:
            ack = await self._channel.send(dispatch.contact, dispatch.message)
        except NotificationError as e:
            logger.error(
                "OTP notification failed",
                extra={
                    "order_id": str(dispatch.order_id),
                    "purpose": dispatch.purpose.value,
                    "challenge_id": str(dispatch.challenge_id),
                    "error": str(e),
                },
            )
            raise ExternalDependencyError(
                "Could not deliver the code to the customer",
                dependency="notification_channel",
                detail=str(e),
            ) from e

        return OTPReceipt(
            challenge_id=dispatch.challenge_id,
            order_id=dispatch.order_id,
            purpose=dispatch.purpose,
            issued_at=dispatch.issued_at,
            expires_at=dispatch.expires_at,
            channel=ack.channel,
            message_id=ack.message_id,
        )

    async def verify(
        self,
        order_id: uuid.UUID,
        purpose: OTPPurpose,
        submitted_code: str,
    ) -> OTPVerification:
        """Check a submitted code and consume the challenge on success.

        A wrong code leaves the challenge active (minus one attempt) and
        raises OTPMismatchError with ``preserve_writes`` set, so the caller
        commits the attempt counter before surfacing the error.

        Raises:
            OTPMismatchError: No active challenge, or wrong code.
            OTPExpiredError: The active challenge is past its validity window.
        """
        now = self._clock()
        challenge = await self.active_challenge(order_id, purpose)
        if challenge is None:
            raise OTPMismatchError(
                f"No active {purpose.value} code for this order; request a new one",
                purpose=purpose,
            )

        if now >= challenge.expires_at:
            raise OTPExpiredError(
                f"The {purpose.value} code has expired; request a new one",
                purpose=purpose,
                expired_at=challenge.expires_at.isoformat(),
            )

        expected = challenge.code_digest
        actual = digest_code(challenge.challenge_id, submitted_code)
        if not hmac.compare_digest(expected, actual):
            challenge.failed_attempts += 1
            remaining = max(self._max_attempts - challenge.failed_attempts, 0)
            if remaining == 0:
                challenge.superseded_at = now
            await self._session.flush()

            logger.warning(
                "OTP mismatch",
                extra={
                    "order_id": str(order_id),
                    "purpose": purpose.value,
                    "attempts_remaining": remaining,
                },
            )
            error = OTPMismatchError(
                "Incorrect code" if remaining else "Incorrect code; too many attempts, request a new one",
                purpose=purpose,
                attempts_remaining=remaining,
            )
            error.preserve_writes = True
            raise error

        challenge.consumed_at = now
        await self._session.flush()

        logger.info(
            "OTP verified",
            extra={
                "order_id": str(order_id),
                "purpose": purpose.value,
                "challenge_id": str(challenge.challenge_id),
            },
        )
        return OTPVerification(
            challenge_id=challenge.challenge_id,
            order_id=order_id,
            purpose=purpose,
            verified_at=now,
        )
