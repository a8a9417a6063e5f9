"""Unit tests for the password-reset code registry."""

from datetime import datetime, timedelta, timezone

import pytest

from iamcore.service.otp import OTPRegistry, OTPVerification


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return OTPRegistry(ttl_minutes=15, length=6, clock=clock)


class TestIssue:
    async def test_code_shape(self, registry):
        """Test that codes are fixed-length digit strings."""
        code = await registry.issue("alice@example.com")

        assert len(code) == 6
        assert code.isdigit()

    async def test_configured_length(self, clock):
        registry = OTPRegistry(length=8, clock=clock)

        code = await registry.issue("alice@example.com")

        assert len(code) == 8

    async def test_reissue_supersedes_previous_code(self, registry):
        """Test that only the latest code for an email is live."""
        first = await registry.issue("alice@example.com")
        second = await registry.issue("alice@example.com")
        if first == second:
            pytest.skip("two random codes collided")

        assert await registry.verify("alice@example.com", first) == OTPVerification.MISMATCH
        assert await registry.verify("alice@example.com", second) == OTPVerification.VALID

    async def test_email_is_normalized(self, registry):
        code = await registry.issue("  Alice@Example.COM ")

        assert await registry.verify("alice@example.com", code) == OTPVerification.VALID


class TestVerify:
    async def test_unknown_email(self, registry):
        assert await registry.verify("nobody@example.com", "123456") == OTPVerification.NOT_FOUND

    async def test_valid_just_before_expiry(self, registry, clock):
        code = await registry.issue("alice@example.com")

        clock.advance(minutes=14, seconds=59)

        assert await registry.verify("alice@example.com", code) == OTPVerification.VALID

    async def test_expired_just_after_expiry(self, registry, clock):
        """Test that a correct code is rejected past the fifteen minute window."""
        code = await registry.issue("alice@example.com")

        clock.advance(minutes=15, seconds=1)

        assert await registry.verify("alice@example.com", code) == OTPVerification.EXPIRED
        # Expired records are evicted on sight
        assert await registry.verify("alice@example.com", code) == OTPVerification.NOT_FOUND

    async def test_mismatch_keeps_code_live(self, registry):
        code = await registry.issue("alice@example.com")
        wrong = "000000" if code != "000000" else "111111"

        assert await registry.verify("alice@example.com", wrong) == OTPVerification.MISMATCH
        assert await registry.verify("alice@example.com", code) == OTPVerification.VALID

    async def test_verify_does_not_consume(self, registry):
        """Test that verification marks the record but leaves it in place."""
        code = await registry.issue("alice@example.com")

        assert await registry.verify("alice@example.com", code) == OTPVerification.VALID
        assert await registry.verify("alice@example.com", code) == OTPVerification.VALID

        record = await registry.peek("alice@example.com")
        assert record is not None
        assert record.verified is True


class TestPeekAndConsume:
    async def test_peek_unverified(self, registry):
        await registry.issue("alice@example.com")

        record = await registry.peek("alice@example.com")

        assert record.verified is False
        assert record.code_hash
        assert record.expires_at - record.issued_at == timedelta(minutes=15)

    async def test_peek_expired_returns_none(self, registry, clock):
        await registry.issue("alice@example.com")
        clock.advance(minutes=16)

        assert await registry.peek("alice@example.com") is None

    async def test_consume_removes_record(self, registry):
        code = await registry.issue("alice@example.com")
        await registry.verify("alice@example.com", code)

        await registry.consume("alice@example.com")

        assert await registry.peek("alice@example.com") is None
        assert await registry.verify("alice@example.com", code) == OTPVerification.NOT_FOUND

    async def test_reissue_after_verify_resets_verified_flag(self, registry):
        code = await registry.issue("alice@example.com")
        await registry.verify("alice@example.com", code)

        await registry.issue("alice@example.com")

        record = await registry.peek("alice@example.com")
        assert record.verified is False

    def test_record_round_trips_through_dict(self, clock):
        from iamcore.service.otp import OTPRecord

        record = OTPRecord(
            email="alice@example.com",
            code_hash="abc",
            issued_at=clock.now,
            expires_at=clock.now + timedelta(minutes=15),
            verified=True,
        )

        assert OTPRecord.from_dict(record.to_dict()) == record
