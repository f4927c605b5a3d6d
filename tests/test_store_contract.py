"""
Storage contract tests.

Every test runs against each backend through the parametrized `store`
fixture: memory always, PostgreSQL and MongoDB when their test URLs are set.
"""

import asyncio
from dataclasses import replace
from datetime import UTC, date, datetime, timedelta
from uuid import uuid4

import pytest
from conftest import make_request, make_user

from faucet.exceptions import InvalidTransitionError
from faucet.models.domain import MintOutcome
from faucet.models.enums import Channel, MintStatus, Role

# ============================================================================
# Identity Store
# ============================================================================


class TestIdentityStore:
    """upsert / find / set_role."""

    async def test_find_is_case_insensitive(self, store):
        """Handles are compared lower-cased."""
        user = make_user(handle="Alice")
        await store.upsert_user(user)

        found = await store.find_user("web", "ALICE")

        assert found is not None
        assert found.id == user.id
        assert found.handle == "alice"

    async def test_find_missing_returns_none(self, store):
        """Unknown identities are not created by lookups."""
        assert await store.find_user("telegram", "nobody") is None

    async def test_same_handle_on_other_channel_is_a_different_user(self, store):
        """Identity key is (channel, handle)."""
        web = make_user(handle="bob", channel=Channel.WEB)
        discord = make_user(handle="bob", channel=Channel.DISCORD)
        await store.upsert_user(web)
        await store.upsert_user(discord)

        assert (await store.find_user("web", "bob")).id == web.id
        assert (await store.find_user("discord", "bob")).id == discord.id

    async def test_upsert_keeps_original_id(self, store):
        """A second upsert updates attributes but never the id."""
        first = make_user(handle="carol")
        await store.upsert_user(first)

        second = replace(make_user(handle="carol"), role=Role.PRIVILEGED, domain="example.org")
        stored = await store.upsert_user(second)

        assert stored.id == first.id
        assert stored.role == Role.PRIVILEGED

        found = await store.find_user("web", "carol")
        assert found.id == first.id
        assert found.role == Role.PRIVILEGED
        assert found.domain == "example.org"

    async def test_concurrent_upserts_leave_one_record(self, store):
        """Racing upserts for one identity never corrupt or duplicate it."""
        candidates = [make_user(handle="dave") for _ in range(10)]

        stored = await asyncio.gather(*(store.upsert_user(user) for user in candidates))

        found = await store.find_user("web", "dave")
        assert found is not None
        assert found.id in {user.id for user in candidates}
        assert {user.id for user in stored} == {found.id}

    async def test_set_role(self, store, saved_user):
        """set_role changes only the role."""
        await store.set_role(saved_user.id, Role.ADMIN)

        found = await store.find_user("web", saved_user.handle)
        assert found.role == Role.ADMIN
        assert found.id == saved_user.id


# ============================================================================
# Mint Ledger
# ============================================================================


class TestMintLedger:
    """enqueue / claim / update_status / record_outcome."""

    async def test_enqueue_is_idempotent(self, store, saved_user):
        """Enqueueing the same id twice leaves exactly one request."""
        request = make_request(saved_user, amount=25)
        await store.enqueue(request)
        await store.enqueue(replace(request, amount=99))

        found = await store.find_request(request.id)
        assert found.amount == 25

        assert (await store.claim_next_pending()).id == request.id
        assert await store.claim_next_pending() is None

    async def test_claim_returns_oldest_first(self, store, saved_user):
        """Claims are ordered by requested_at ascending."""
        now = datetime.now(UTC)
        newest = make_request(saved_user, requested_at=now - timedelta(seconds=10))
        oldest = make_request(saved_user, requested_at=now - timedelta(seconds=30))
        middle = make_request(saved_user, requested_at=now - timedelta(seconds=20))
        for request in (newest, oldest, middle):
            await store.enqueue(request)

        claimed = [await store.claim_next_pending() for _ in range(3)]

        assert [request.id for request in claimed] == [oldest.id, middle.id, newest.id]

    async def test_claim_marks_processing(self, store, saved_user):
        """A claim stamps processed_at and counts the attempt."""
        request = make_request(saved_user)
        await store.enqueue(request)

        claimed = await store.claim_next_pending()

        assert claimed.status == MintStatus.PROCESSING
        assert claimed.processed_at is not None
        assert claimed.attempt == 1
        assert (await store.find_request(request.id)).status == MintStatus.PROCESSING

    async def test_claim_on_empty_ledger(self, store):
        """Nothing pending means None."""
        assert await store.claim_next_pending() is None

    async def test_concurrent_claims_never_share_a_request(self, store, saved_user):
        """N concurrent claimers over M pending requests get each request exactly once."""
        pending = [make_request(saved_user) for _ in range(5)]
        for request in pending:
            await store.enqueue(request)

        results = await asyncio.gather(*(store.claim_next_pending() for _ in range(12)))

        claimed_ids = [request.id for request in results if request is not None]
        assert len(claimed_ids) == len(set(claimed_ids)) == 5
        assert set(claimed_ids) == {request.id for request in pending}

    async def test_stale_processing_is_reclaimed(self, store, saved_user):
        """A request processing past the visibility timeout is claimable again."""
        stale = make_request(
            saved_user,
            status=MintStatus.PROCESSING,
            processed_at=datetime.now(UTC) - timedelta(hours=1),
            attempt=1,
        )
        await store.enqueue(stale)

        reclaimed = await store.claim_next_pending()

        assert reclaimed.id == stale.id
        assert reclaimed.attempt == 2

    async def test_recent_processing_is_not_reclaimed(self, store, saved_user):
        """A worker still inside the timeout keeps its request."""
        await store.enqueue(
            make_request(
                saved_user,
                status=MintStatus.PROCESSING,
                processed_at=datetime.now(UTC) - timedelta(seconds=5),
                attempt=1,
            )
        )

        assert await store.claim_next_pending() is None

    async def test_inline_processing_is_never_claimed(self, store, saved_user):
        """update_status leaves processed_at unset, so workers skip the row."""
        request = make_request(saved_user)
        await store.enqueue(request)
        await store.update_status(request.id, MintStatus.PROCESSING)

        assert await store.claim_next_pending() is None

    async def test_held_insert_is_never_claimed(self, store, saved_user):
        """A claim issued right after insert_processing finds nothing."""
        held = make_request(saved_user).hold_inline()
        await store.insert_processing(held)

        assert await store.claim_next_pending() is None
        found = await store.find_request(held.id)
        assert found.status == MintStatus.PROCESSING
        assert found.processed_at is None
        assert found.attempt == 1

    async def test_held_insert_races_claimers(self, store, saved_user):
        """Claims running alongside the insert never see the row."""
        held = make_request(saved_user).hold_inline()

        results = await asyncio.gather(
            store.insert_processing(held),
            *(store.claim_next_pending() for _ in range(4)),
        )

        assert results[1:] == [None] * 4
        assert (await store.find_request(held.id)).attempt == 1

    async def test_held_insert_rejects_existing_id(self, store, saved_user):
        """The id is written once; a second insert reports the stored state."""
        request = make_request(saved_user)
        await store.enqueue(request)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await store.insert_processing(request.hold_inline())

        assert exc_info.value.current == MintStatus.PENDING
        assert (await store.find_request(request.id)).status == MintStatus.PENDING

    async def test_held_insert_requires_held_request(self, store, saved_user):
        """Pending requests go through enqueue."""
        with pytest.raises(ValueError):
            await store.insert_processing(make_request(saved_user))

    async def test_update_status_only_moves_pending_forward(self, store, saved_user):
        """processing -> processing is rejected."""
        request = make_request(saved_user)
        await store.enqueue(request)
        await store.update_status(request.id, MintStatus.PROCESSING)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await store.update_status(request.id, MintStatus.PROCESSING)

        assert exc_info.value.current == MintStatus.PROCESSING
        assert (await store.find_request(request.id)).attempt == 1

    async def test_update_status_rejects_terminal_targets(self, store, saved_user):
        """Terminal states go through record_outcome."""
        request = make_request(saved_user)
        await store.enqueue(request)

        with pytest.raises(ValueError):
            await store.update_status(request.id, MintStatus.COMPLETED)

    async def test_update_status_missing_request(self, store):
        """Unknown ids are a transition error with no current state."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            await store.update_status(uuid4(), MintStatus.PROCESSING)

        assert exc_info.value.current is None

    async def test_record_outcome_writes_all_fields(self, store, saved_user):
        """Status, tx_reference, processed_at and attempt land together."""
        request = make_request(saved_user)
        await store.enqueue(request)
        claimed = await store.claim_next_pending()

        completed = claimed.complete("tx-abc")
        await store.record_outcome(MintOutcome(completed))

        found = await store.find_request(request.id)
        assert found.status == MintStatus.COMPLETED
        assert found.tx_reference == "tx-abc"
        assert found.error is None
        assert found.processed_at is not None
        assert found.attempt == 1

    async def test_record_outcome_is_idempotent(self, store, saved_user):
        """Replaying the same terminal outcome succeeds."""
        request = make_request(saved_user)
        await store.enqueue(request)
        failed = request.start_processing().fail("boom")

        await store.record_outcome(MintOutcome(failed))
        await store.record_outcome(MintOutcome(failed))

        found = await store.find_request(request.id)
        assert found.status == MintStatus.FAILED
        assert found.error == "boom"

    async def test_terminal_request_is_not_resurrected(self, store, saved_user):
        """A failed request cannot become completed."""
        request = make_request(saved_user)
        await store.enqueue(request)
        processing = request.start_processing()
        await store.record_outcome(MintOutcome(processing.fail("boom")))

        with pytest.raises(InvalidTransitionError) as exc_info:
            await store.record_outcome(MintOutcome(processing.complete("tx-late")))

        assert exc_info.value.current == MintStatus.FAILED
        assert (await store.find_request(request.id)).status == MintStatus.FAILED

    async def test_record_outcome_missing_request(self, store, saved_user):
        """Outcomes for unknown requests are rejected."""
        orphan = make_request(saved_user).start_processing().complete("tx-x")

        with pytest.raises(InvalidTransitionError):
            await store.record_outcome(MintOutcome(orphan))

    async def test_terminal_requests_are_not_claimed(self, store, saved_user):
        """Completed and failed rows stay put."""
        await store.enqueue(make_request(saved_user, status=MintStatus.COMPLETED))
        await store.enqueue(make_request(saved_user, status=MintStatus.FAILED))

        assert await store.claim_next_pending() is None


# ============================================================================
# Quota Ledger
# ============================================================================


class TestQuotaLedger:
    """record_mint / record_success / fetch_quota."""

    async def test_first_mint_creates_row(self, store, saved_user):
        """minted_total starts at the first amount."""
        today = date(2026, 3, 1)
        await store.record_mint(saved_user.id, today, 40)

        quota = await store.fetch_quota(saved_user.id, today)
        assert quota.minted_total == 40
        assert quota.success_count == 0

    async def test_mints_accumulate_per_day(self, store, saved_user):
        """Days are independent."""
        day_one, day_two = date(2026, 3, 1), date(2026, 3, 2)
        await store.record_mint(saved_user.id, day_one, 40)
        await store.record_mint(saved_user.id, day_one, 15)
        await store.record_mint(saved_user.id, day_two, 7)

        assert (await store.fetch_quota(saved_user.id, day_one)).minted_total == 55
        assert (await store.fetch_quota(saved_user.id, day_two)).minted_total == 7

    async def test_concurrent_mints_are_atomic(self, store, saved_user):
        """No increment is lost under concurrency."""
        today = date(2026, 3, 1)

        await asyncio.gather(*(store.record_mint(saved_user.id, today, 3) for _ in range(20)))

        assert (await store.fetch_quota(saved_user.id, today)).minted_total == 60

    async def test_record_success_creates_row_with_zero_total(self, store, saved_user):
        """success_count can arrive before any debit."""
        today = date(2026, 3, 1)
        await store.record_success(saved_user.id, today)
        await store.record_success(saved_user.id, today)

        quota = await store.fetch_quota(saved_user.id, today)
        assert quota.success_count == 2
        assert quota.minted_total == 0

    async def test_fetch_missing_quota(self, store, saved_user):
        """No row means None, not zero."""
        assert await store.fetch_quota(saved_user.id, date(2026, 3, 1)) is None


# ============================================================================
# Reporting
# ============================================================================


class TestReporting:
    """daily_summary / log_failure / list_failures."""

    async def test_daily_summary_aggregates_per_channel(self, store, saved_user):
        """Two completed (10, 20) and one failed (5) on one channel."""
        day = date(2026, 1, 15)
        noon = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
        await store.enqueue(make_request(saved_user, 10, MintStatus.COMPLETED, requested_at=noon))
        await store.enqueue(
            make_request(saved_user, 20, MintStatus.COMPLETED, requested_at=noon + timedelta(hours=1))
        )
        await store.enqueue(
            make_request(saved_user, 5, MintStatus.FAILED, requested_at=noon + timedelta(hours=2))
        )

        rows = await store.daily_summary(day)

        assert len(rows) == 1
        assert rows[0].channel == "web"
        assert rows[0].total_amount == 35
        assert rows[0].success_count == 2
        assert rows[0].failure_count == 1

    async def test_daily_summary_window_is_half_open(self, store, saved_user):
        """[day 00:00, day+1 00:00) in UTC."""
        day = date(2026, 1, 15)
        start = datetime(2026, 1, 15, tzinfo=UTC)
        await store.enqueue(make_request(saved_user, 1, requested_at=start))
        await store.enqueue(make_request(saved_user, 2, requested_at=start - timedelta(seconds=1)))
        await store.enqueue(make_request(saved_user, 4, requested_at=start + timedelta(days=1)))

        rows = await store.daily_summary(day)

        assert [row.total_amount for row in rows] == [1]

    async def test_daily_summary_sorted_by_channel(self, store, saved_user):
        """One row per channel, alphabetical."""
        noon = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
        for channel in (Channel.WEB, Channel.DISCORD, Channel.TELEGRAM):
            await store.enqueue(make_request(saved_user, 3, requested_at=noon, channel=channel))

        rows = await store.daily_summary(date(2026, 1, 15))

        assert [row.channel for row in rows] == ["discord", "telegram", "web"]
        assert all(row.success_count == 0 and row.failure_count == 0 for row in rows)

    async def test_daily_summary_empty_day(self, store):
        """No requests, no rows."""
        assert await store.daily_summary(date(2020, 1, 1)) == []

    async def test_failure_log_is_append_only(self, store, saved_user):
        """Entries accumulate and filter by request."""
        first = make_request(saved_user, status=MintStatus.FAILED)
        second = make_request(saved_user, status=MintStatus.FAILED)
        await store.enqueue(first)
        await store.enqueue(second)
        now = datetime.now(UTC)

        await store.log_failure(first.id, now, "timeout")
        await store.log_failure(first.id, now, "timeout again")
        await store.log_failure(second.id, now, "rejected")

        assert len(await store.list_failures()) == 3
        reasons = [failure.reason for failure in await store.list_failures(first.id)]
        assert reasons == ["timeout", "timeout again"]


# ============================================================================
# Config Store
# ============================================================================


class TestConfigStore:
    """get_config / set_config / list_configs."""

    async def test_set_and_get(self, store):
        """Values round trip with their description."""
        await store.set_config("limits.default_amount", "250", description="User ceiling")

        entry = await store.get_config("limits.default_amount")
        assert entry.value == "250"
        assert entry.description == "User ceiling"

    async def test_overwrite_is_last_write_wins(self, store):
        """created_at stays, updated_at moves, description survives."""
        await store.set_config("limits.default_daily_cap", "500", description="User cap")
        original = await store.get_config("limits.default_daily_cap")

        await store.set_config("limits.default_daily_cap", "800")
        entry = await store.get_config("limits.default_daily_cap")

        assert entry.value == "800"
        assert entry.description == "User cap"
        assert entry.updated_at >= original.updated_at
        assert abs(entry.created_at - original.created_at) < timedelta(milliseconds=1)

    async def test_get_missing(self, store):
        assert await store.get_config("limits.nope") is None

    async def test_list_sorted_by_key(self, store):
        """Listing is ordered by key."""
        await store.set_config("b", "2")
        await store.set_config("a", "1")

        assert [entry.key for entry in await store.list_configs()] == ["a", "b"]
