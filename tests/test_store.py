from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from walletlookup.schemas.jobs import JobOptions
from walletlookup.services.records import CacheEntry, ChunkProgress, HistoryEntry
from walletlookup.services.repository import RepositoryConflictError, RepositoryNotFoundError

WALLETS = ["0x" + "a" * 40, "0x" + "b" * 40]


def _progress(processed: int) -> ChunkProgress:
    return ChunkProgress(
        processed_count=processed,
        twitter_found=0,
        farcaster_found=0,
        any_social_found=0,
        cache_hits=0,
        partial_results=[{"wallet": WALLETS[processed - 1]}],
    )


def test_concurrent_claims_hand_a_job_to_exactly_one_worker(store) -> None:
    async def run():
        await store.create_job(wallets=WALLETS, original_data={}, options=JobOptions())
        return await asyncio.gather(
            store.claim_jobs("worker-a", 5, 60),
            store.claim_jobs("worker-b", 5, 60),
        )

    first, second = asyncio.run(run())
    assert len(first) + len(second) == 1
    claimed = (first or second)[0]
    assert claimed.status == "processing"
    assert claimed.attempt == 1


def test_claims_are_oldest_first_and_bounded(store, clock) -> None:
    async def run():
        ids = []
        for _ in range(3):
            job = await store.create_job(wallets=WALLETS, original_data={}, options=JobOptions())
            ids.append(job.id)
            clock.advance(seconds=1)
        claimed = await store.claim_jobs("worker-a", 2, 60)
        return ids, [job.id for job in claimed]

    ids, claimed = asyncio.run(run())
    assert claimed == ids[:2]


def test_claim_job_respects_live_lease_until_it_expires(store, clock) -> None:
    async def run():
        job = await store.create_job(wallets=WALLETS, original_data={}, options=JobOptions())
        await store.claim_job(job.id, "worker-a", 60)
        with pytest.raises(RepositoryConflictError):
            await store.claim_job(job.id, "worker-b", 60)
        clock.advance(seconds=61)
        return await store.claim_job(job.id, "worker-b", 60)

    taken_over = asyncio.run(run())
    assert taken_over.lease_owner == "worker-b"
    assert taken_over.attempt == 2


def test_save_chunk_progress_is_conditional_on_owner_and_count(store) -> None:
    async def run():
        job = await store.create_job(wallets=WALLETS, original_data={}, options=JobOptions())
        await store.claim_job(job.id, "worker-a", 60)
        with pytest.raises(RepositoryConflictError):
            await store.save_chunk_progress(job.id, "worker-b", expected_processed_count=0, progress=_progress(1))
        with pytest.raises(RepositoryConflictError):
            await store.save_chunk_progress(job.id, "worker-a", expected_processed_count=1, progress=_progress(1))
        saved = await store.save_chunk_progress(job.id, "worker-a", expected_processed_count=0, progress=_progress(1))
        # Released after the chunk; a stale retry of the same chunk must not double-advance.
        with pytest.raises(RepositoryConflictError):
            await store.save_chunk_progress(job.id, "worker-a", expected_processed_count=0, progress=_progress(1))
        return saved

    saved = asyncio.run(run())
    assert saved.processed_count == 1
    assert saved.lease_owner is None
    assert saved.partial_results == [{"wallet": WALLETS[0]}]


def test_terminal_jobs_cannot_be_claimed_or_failed(store) -> None:
    async def run():
        job = await store.create_job(wallets=WALLETS[:1], original_data={}, options=JobOptions())
        await store.claim_job(job.id, "worker-a", 60)
        await store.complete_job(job.id, "worker-a", expected_processed_count=0, progress=_progress(1))
        with pytest.raises(RepositoryConflictError):
            await store.claim_job(job.id, "worker-a", 60)
        assert await store.claim_jobs("worker-a", 5, 60) == []
        assert await store.fail_job(job.id, "late failure") is None
        return await store.get_job(job.id)

    job = asyncio.run(run())
    assert job.status == "completed"
    assert job.completed_at is not None
    assert job.error_message is None


def test_release_expired_leases_only_touches_lapsed_processing_jobs(store, clock) -> None:
    async def run():
        expiring = await store.create_job(wallets=WALLETS, original_data={}, options=JobOptions())
        await store.claim_job(expiring.id, "worker-a", 10)
        live = await store.create_job(wallets=WALLETS, original_data={}, options=JobOptions())
        await store.claim_job(live.id, "worker-a", 600)
        clock.advance(seconds=30)
        released = await store.release_expired_leases(100)
        return released, await store.get_job(expiring.id), await store.get_job(live.id)

    released, expiring, live = asyncio.run(run())
    assert released == 1
    assert expiring.lease_owner is None
    assert expiring.status == "processing"
    assert live.lease_owner == "worker-a"


def test_unknown_job_raises_not_found(store) -> None:
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(store.get_job("missing"))


def test_counter_increment_refuses_to_exceed_limit(store) -> None:
    start = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    async def run():
        first = await store.increment_counter("key", "minute", start, 4, 5)
        refused = await store.increment_counter("key", "minute", start, 2, 5)
        await store.decrement_counter("key", "minute", start, 3)
        return first, refused, await store.read_counter("key", "minute", start)

    assert asyncio.run(run()) == (4, None, 1)


def test_touch_cache_entries_counts_lookups_without_resetting_staleness(store) -> None:
    stale_at = datetime(2026, 2, 1, tzinfo=timezone.utc)
    store.cache[WALLETS[0]] = CacheEntry(wallet=WALLETS[0], stale_at=stale_at, lookup_count=2)

    async def run():
        await store.touch_cache_entries([WALLETS[0], WALLETS[1]], now=stale_at - timedelta(days=5))
        return await store.get_cache_entries(WALLETS)

    entries = asyncio.run(run())
    assert set(entries) == {WALLETS[0]}
    assert entries[WALLETS[0]].lookup_count == 3
    assert entries[WALLETS[0]].stale_at == stale_at


def test_record_history_entry_stores_a_copy(store) -> None:
    entry = HistoryEntry(
        name="manual export",
        user_id="user-1",
        job_id="job-1",
        wallet_count=1,
        twitter_found=0,
        farcaster_found=1,
        results=[{"wallet": WALLETS[0], "farcaster": "alice"}],
    )

    history_id = asyncio.run(store.record_history_entry(entry))
    entry.results.append({"wallet": WALLETS[1]})

    assert history_id
    assert store.history[0].results == [{"wallet": WALLETS[0], "farcaster": "alice"}]


def test_merge_cache_entries_records_field_changes(store) -> None:
    first_seen = datetime(2026, 1, 1, tzinfo=timezone.utc)
    later = first_seen + timedelta(days=40)

    async def run():
        await store.merge_cache_entries(
            [CacheEntry(wallet=WALLETS[0], farcaster="alice", sources=["neynar"], last_attempt_at=first_seen)]
        )
        await store.merge_cache_entries(
            [CacheEntry(wallet=WALLETS[0], farcaster="alice2", lens="alice.lens", sources=["web3bio"], last_attempt_at=later)]
        )
        await store.merge_cache_entries([CacheEntry(wallet=WALLETS[0], sources=["neynar"], last_attempt_at=later)])
        return await store.list_cache_changes(WALLETS[0]), await store.list_cache_changes(WALLETS[1])

    changes, untouched = asyncio.run(run())
    assert [(change.field, change.old_value, change.new_value, change.change_source) for change in changes] == [
        ("farcaster", None, "alice", "neynar"),
        ("farcaster", "alice", "alice2", "web3bio"),
        ("lens", None, "alice.lens", "web3bio"),
    ]
    assert [change.changed_at for change in changes] == [first_seen, later, later]
    assert untouched == []
