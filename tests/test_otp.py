"""Tests for the OTP challenge engine.

Tests cover:
- Code generation and digest storage
- Issue: supersedes the previous challenge; sending is a separate step
  and the receipt never carries the code
- Verify: success consumes, wrong code counts attempts, expiry is distinct
- Notification failures surface as external dependency errors
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from handoff.core.config import NotificationChannelKind
from handoff.db.models.base import OTPPurpose
from handoff.db.models.otp import OTPChallenge
from handoff.services.errors import ExternalDependencyError, OTPExpiredError, OTPMismatchError
from handoff.services.notifications import NotificationError
from handoff.services.otp import OTP_LENGTH, digest_code, generate_code


def _issued(store, order_id):
    return [c for c in store.all(OTPChallenge) if c.order_id == order_id]


class TestCodeGeneration:
    """Tests for code generation and hashing."""

    def test_generate_code_is_six_digits(self):
        """Codes are zero-padded 6-digit strings."""
        for _ in range(50):
            code = generate_code()
            assert len(code) == OTP_LENGTH
            assert code.isdigit()

    def test_digest_is_salted_by_challenge(self):
        """The same code hashes differently for different challenges."""
        assert digest_code(uuid.uuid4(), "482193") != digest_code(uuid.uuid4(), "482193")


class TestIssue:
    """Tests for issuing codes."""

    @pytest.mark.asyncio
    async def test_issue_then_send_returns_receipt(self, otp_engine, outbox, store, clock):
        """The customer receives the code on send; the receipt does not contain it."""
        order_id = uuid.uuid4()

        dispatch = await otp_engine.issue(
            order_id, OTPPurpose.DELIVERY, contact="asha@example.com", reference="ORD-1"
        )
        assert outbox.outbox == []
        receipt = await otp_engine.send(dispatch)

        assert outbox.outbox == [
            (
                "asha@example.com",
                "Your delivery code for order ORD-1 is 482193. Share it with the agent at handoff.",
            )
        ]
        assert receipt.purpose == OTPPurpose.DELIVERY
        assert receipt.expires_at == clock.now + timedelta(minutes=15)
        assert receipt.channel == NotificationChannelKind.LOG
        assert not hasattr(receipt, "code")

        (challenge,) = _issued(store, order_id)
        assert challenge.code_digest == digest_code(challenge.challenge_id, "482193")
        assert challenge.failed_attempts == 0

    @pytest.mark.asyncio
    async def test_reissue_supersedes_previous_challenge(self, otp_engine, store, clock):
        """Only the newest code stays active."""
        order_id = uuid.uuid4()
        first = await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")
        clock.advance(minutes=2)
        second = await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")

        challenges = {c.challenge_id: c for c in _issued(store, order_id)}
        assert challenges[first.challenge_id].superseded_at == clock.now
        assert challenges[second.challenge_id].is_active

    @pytest.mark.asyncio
    async def test_purposes_are_independent(self, otp_engine, store):
        """A pickup code does not supersede a delivery code."""
        order_id = uuid.uuid4()
        await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")
        await otp_engine.issue(order_id, OTPPurpose.PICKUP, contact="a@example.com")

        assert all(c.is_active for c in _issued(store, order_id))

    @pytest.mark.asyncio
    async def test_channel_failure_is_external_dependency_error(self, otp_engine):
        """A failed send surfaces as ExternalDependencyError."""
        otp_engine._channel = AsyncMock()
        otp_engine._channel.send.side_effect = NotificationError("SMTP error: 421")

        dispatch = await otp_engine.issue(
            uuid.uuid4(), OTPPurpose.DELIVERY, contact="a@example.com"
        )

        with pytest.raises(ExternalDependencyError) as exc_info:
            await otp_engine.send(dispatch)
        assert exc_info.value.context["dependency"] == "notification_channel"


class TestVerify:
    """Tests for verifying codes."""

    @pytest.mark.asyncio
    async def test_correct_code_consumes_challenge(self, otp_engine, store, clock):
        """Verification succeeds once and consumes the challenge."""
        order_id = uuid.uuid4()
        await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")

        verification = await otp_engine.verify(order_id, OTPPurpose.DELIVERY, "482193")

        (challenge,) = _issued(store, order_id)
        assert verification.challenge_id == challenge.challenge_id
        assert challenge.consumed_at == clock.now
        assert await otp_engine.has_verified(order_id, OTPPurpose.DELIVERY)

    @pytest.mark.asyncio
    async def test_code_is_single_use(self, otp_engine):
        """Replaying a consumed code fails."""
        order_id = uuid.uuid4()
        await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")
        await otp_engine.verify(order_id, OTPPurpose.DELIVERY, "482193")

        with pytest.raises(OTPMismatchError):
            await otp_engine.verify(order_id, OTPPurpose.DELIVERY, "482193")

    @pytest.mark.asyncio
    async def test_superseded_code_is_rejected(self, otp_engine, store):
        """Only the newest code verifies."""
        order_id = uuid.uuid4()
        codes = iter(["111111", "222222"])
        otp_engine._generate = lambda: next(codes)
        await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")
        await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")

        with pytest.raises(OTPMismatchError):
            await otp_engine.verify(order_id, OTPPurpose.DELIVERY, "111111")
        await otp_engine.verify(order_id, OTPPurpose.DELIVERY, "222222")

    @pytest.mark.asyncio
    async def test_wrong_code_counts_attempt_and_preserves_writes(self, otp_engine, store):
        """A wrong code keeps the challenge active and asks for a commit."""
        order_id = uuid.uuid4()
        await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")

        with pytest.raises(OTPMismatchError) as exc_info:
            await otp_engine.verify(order_id, OTPPurpose.DELIVERY, "000000")

        (challenge,) = _issued(store, order_id)
        assert challenge.failed_attempts == 1
        assert challenge.is_active
        assert exc_info.value.preserve_writes is True
        assert exc_info.value.context["attempts_remaining"] == 4

    @pytest.mark.asyncio
    async def test_attempts_exhausted_withdraws_challenge(self, otp_engine, store):
        """After max_attempts wrong codes even the right code fails."""
        order_id = uuid.uuid4()
        await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")

        for _ in range(5):
            with pytest.raises(OTPMismatchError):
                await otp_engine.verify(order_id, OTPPurpose.DELIVERY, "000000")

        (challenge,) = _issued(store, order_id)
        assert challenge.superseded_at is not None
        with pytest.raises(OTPMismatchError):
            await otp_engine.verify(order_id, OTPPurpose.DELIVERY, "482193")

    @pytest.mark.asyncio
    async def test_expired_code_raises_expired(self, otp_engine, clock):
        """A code past its validity raises OTPExpiredError, even if correct."""
        order_id = uuid.uuid4()
        await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")
        clock.advance(minutes=15)

        with pytest.raises(OTPExpiredError):
            await otp_engine.verify(order_id, OTPPurpose.DELIVERY, "482193")

    @pytest.mark.asyncio
    async def test_code_valid_just_before_expiry(self, otp_engine, clock):
        """A code is still accepted one second before it expires."""
        order_id = uuid.uuid4()
        await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")
        clock.advance(minutes=14, seconds=59)

        await otp_engine.verify(order_id, OTPPurpose.DELIVERY, "482193")

    @pytest.mark.asyncio
    async def test_padded_code_is_not_the_code(self, otp_engine, store):
        """Only the exact six digits verify; surrounding whitespace is a mismatch."""
        order_id = uuid.uuid4()
        await otp_engine.issue(order_id, OTPPurpose.DELIVERY, contact="a@example.com")

        with pytest.raises(OTPMismatchError):
            await otp_engine.verify(order_id, OTPPurpose.DELIVERY, " 482193 ")

        (challenge,) = _issued(store, order_id)
        assert challenge.failed_attempts == 1
        assert challenge.consumed_at is None

    @pytest.mark.asyncio
    async def test_verify_without_challenge(self, otp_engine):
        """Verifying when no code was issued is a mismatch."""
        with pytest.raises(OTPMismatchError) as exc_info:
            await otp_engine.verify(uuid.uuid4(), OTPPurpose.PICKUP, "482193")
        assert exc_info.value.preserve_writes is False
