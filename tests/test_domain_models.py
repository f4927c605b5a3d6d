"""
Tests for domain models and enums.
"""

from datetime import UTC, date, datetime, timedelta
from uuid import uuid4

import pytest
from conftest import make_request, make_user
from hypothesis import given, settings
from hypothesis import strategies as st

from faucet.exceptions import InvalidTransitionError
from faucet.models.domain import (
    Identity,
    LimitConfigUpdate,
    MintOutcome,
    MintRequest,
    QuotaSnapshot,
    normalize_handle,
)
from faucet.models.enums import Channel, MintStatus, Role

# ============================================================================
# Enums
# ============================================================================


class TestEnums:
    """Parsing and terminal states."""

    @pytest.mark.parametrize("raw", ["web", "WEB", " Web "])
    def test_channel_parse_ignores_case(self, raw):
        assert Channel.parse(raw) == Channel.WEB

    def test_role_parse_unknown(self):
        """Unknown names raise ValueError."""
        with pytest.raises(ValueError, match="Unknown role"):
            Role.parse("superuser")

    def test_status_parse_passthrough(self):
        assert MintStatus.parse(MintStatus.FAILED) is MintStatus.FAILED

    def test_terminal_states(self):
        """Only completed and failed are terminal."""
        assert {status for status in MintStatus if status.is_terminal} == {
            MintStatus.COMPLETED,
            MintStatus.FAILED,
        }


# ============================================================================
# Identity and User
# ============================================================================


class TestIdentity:
    def test_blank_handle_rejected(self):
        with pytest.raises(ValueError):
            Identity(channel=Channel.TELEGRAM, handle="   ")

    def test_user_key_is_lower_cased(self):
        """User.key matches the storage uniqueness key."""
        user = make_user(handle="MixedCase", channel=Channel.DISCORD)
        assert user.key == ("discord", "mixedcase")

    def test_normalize_handle(self):
        assert normalize_handle("  Alice ") == "alice"


# ============================================================================
# MintRequest State Machine
# ============================================================================


class TestMintRequest:
    """Invariants and transitions."""

    def test_new_request_is_pending(self):
        request = MintRequest.new(uuid4(), Channel.WEB, 50)

        assert request.status == MintStatus.PENDING
        assert request.attempt == 0
        assert request.processed_at is None
        assert request.tx_reference is None

    @pytest.mark.parametrize("amount", [0, -1])
    def test_amount_must_be_positive(self, amount):
        with pytest.raises(ValueError, match="positive"):
            MintRequest.new(uuid4(), Channel.WEB, amount)

    def test_full_success_path(self):
        """pending -> processing -> completed."""
        processing = MintRequest.new(uuid4(), Channel.WEB, 10).start_processing()
        completed = processing.complete("tx-1")

        assert processing.status == MintStatus.PROCESSING
        assert processing.attempt == 1
        assert completed.status == MintStatus.COMPLETED
        assert completed.tx_reference == "tx-1"
        assert completed.error is None
        assert completed.processed_at is not None

    def test_hold_inline(self):
        """Held requests count the attempt but leave processed_at for the outcome."""
        held = MintRequest.new(uuid4(), Channel.WEB, 10).hold_inline()

        assert held.status == MintStatus.PROCESSING
        assert held.attempt == 1
        assert held.processed_at is None
        assert held.complete("tx-1").processed_at is not None

    def test_hold_inline_only_from_pending(self):
        processing = MintRequest.new(uuid4(), Channel.WEB, 10).start_processing()

        with pytest.raises(InvalidTransitionError):
            processing.hold_inline()

    def test_failure_path(self):
        failed = MintRequest.new(uuid4(), Channel.WEB, 10).start_processing().fail("rejected")

        assert failed.status == MintStatus.FAILED
        assert failed.error == "rejected"
        assert failed.tx_reference is None

    def test_empty_failure_reason_is_filled(self):
        failed = MintRequest.new(uuid4(), Channel.WEB, 10).fail("")
        assert failed.error == "unknown error"

    @pytest.mark.parametrize("status", [MintStatus.COMPLETED, MintStatus.FAILED])
    def test_no_transition_out_of_terminal(self, status):
        """Terminal requests never move again."""
        request = make_request(make_user(), status=status)

        with pytest.raises(InvalidTransitionError):
            request.start_processing()
        with pytest.raises(InvalidTransitionError):
            request.complete("tx")
        with pytest.raises(InvalidTransitionError):
            request.fail("again")

    def test_completed_requires_tx_reference(self):
        with pytest.raises(ValueError, match="tx_reference"):
            MintRequest(
                id=uuid4(),
                user_id=uuid4(),
                channel=Channel.WEB,
                amount=1,
                status=MintStatus.COMPLETED,
                requested_at=datetime.now(UTC),
                processed_at=datetime.now(UTC),
            )

    def test_pending_cannot_carry_processed_at(self):
        with pytest.raises(ValueError, match="processed_at"):
            MintRequest(
                id=uuid4(),
                user_id=uuid4(),
                channel=Channel.WEB,
                amount=1,
                status=MintStatus.PENDING,
                requested_at=datetime.now(UTC),
                processed_at=datetime.now(UTC),
            )

    def test_day_uses_utc(self):
        """A request just before UTC midnight belongs to that UTC day."""
        late = datetime(2026, 1, 15, 23, 59, tzinfo=UTC)
        request = make_request(make_user(), requested_at=late)
        assert request.day == date(2026, 1, 15)

    @given(
        amount=st.integers(min_value=1, max_value=10**12),
        succeed=st.booleans(),
        retries=st.integers(min_value=0, max_value=5),
    )
    @settings(max_examples=100)
    def test_terminal_invariants_hold(self, amount, succeed, retries):
        """Completed <=> tx_reference, failed <=> error, terminal => processed_at."""
        request = MintRequest.new(uuid4(), Channel.TELEGRAM, amount)
        for _ in range(retries + 1):
            request = request.start_processing(datetime.now(UTC) + timedelta(seconds=1))
        final = request.complete("tx") if succeed else request.fail("err")

        assert final.attempt == retries + 1
        assert final.processed_at is not None
        assert (final.status == MintStatus.COMPLETED) == (final.tx_reference is not None)
        assert (final.status == MintStatus.FAILED) == (final.error is not None)


class TestMintOutcome:
    def test_requires_terminal_request(self):
        with pytest.raises(ValueError, match="terminal"):
            MintOutcome(MintRequest.new(uuid4(), Channel.WEB, 1))

    def test_mirrors_request(self):
        completed = MintRequest.new(uuid4(), Channel.WEB, 1).start_processing().complete("tx-9")
        outcome = MintOutcome(completed)
        assert outcome.status == MintStatus.COMPLETED
        assert outcome.tx_reference == "tx-9"


# ============================================================================
# Snapshots and Updates
# ============================================================================


class TestQuotaSnapshot:
    def test_remaining(self):
        assert QuotaSnapshot(minted_today=80, cap=150).remaining == 70

    def test_remaining_saturates_at_zero(self):
        assert QuotaSnapshot(minted_today=200, cap=150).remaining == 0

    def test_uncapped(self):
        assert QuotaSnapshot(minted_today=10_000, cap=None).remaining is None


class TestLimitConfigUpdate:
    def test_items_skip_unset(self):
        update = LimitConfigUpdate(default_amount=50, admin_daily_cap=900)
        assert update.items() == [("default_amount", 50), ("admin_daily_cap", 900)]
        assert not update.is_empty

    def test_empty(self):
        assert LimitConfigUpdate().is_empty

    def test_non_positive_rejected(self):
        with pytest.raises(ValueError, match="privileged_amount"):
            LimitConfigUpdate(privileged_amount=0)
