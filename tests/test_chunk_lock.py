from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from backend.chunk_lock import ChunkLock, DenialReason, LockDenied, try_acquire, utcnow
from db.crud import get_draft, set_draft_status
from db.models import DraftChunk

from conftest import OTHER_USER_ID, USER_ID


def chunk_row(engine, draft_id, index):
    with engine.connect() as conn:
        return conn.execute(
            select(DraftChunk).where(DraftChunk.draft_id == draft_id, DraftChunk.chunk_index == index)
        ).one()


def set_chunk(engine, draft_id, index, **values):
    with engine.begin() as conn:
        conn.execute(
            update(DraftChunk)
            .where(DraftChunk.draft_id == draft_id, DraftChunk.chunk_index == index)
            .values(**values)
        )


def test_acquires_pending_chunk(db_engine, make_draft):
    draft_id = make_draft([(1, 2), (3, 4)])
    now = utcnow()

    lock = try_acquire(db_engine, draft_id, 1, USER_ID, "req-a", now=now)

    assert isinstance(lock, ChunkLock)
    assert (lock.start_page, lock.end_page) == (3, 4)
    assert lock.locked_at == now
    assert lock.total_chunks == 2
    row = chunk_row(db_engine, draft_id, 1)
    assert row.status == "processing"
    assert row.locked_by == "req-a"
    assert row.locked_at == now
    draft = get_draft(db_engine, draft_id)
    assert draft.current_chunk == 1
    assert draft.status == "processing"


def test_second_acquisition_conflicts(db_engine, make_draft):
    draft_id = make_draft([(1, 2)])
    now = utcnow()
    assert isinstance(try_acquire(db_engine, draft_id, 0, USER_ID, "req-a", now=now), ChunkLock)

    denied = try_acquire(db_engine, draft_id, 0, USER_ID, "req-b", now=now + timedelta(seconds=1))

    assert isinstance(denied, LockDenied)
    assert denied.reason is DenialReason.CONFLICT
    assert denied.retry_after == 5
    assert chunk_row(db_engine, draft_id, 0).locked_by == "req-a"


def test_at_most_one_concurrent_winner(db_engine, make_draft):
    draft_id = make_draft([(1, 2)])
    now = utcnow()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(
            lambda n: try_acquire(db_engine, draft_id, 0, USER_ID, f"req-{n}", now=now),
            range(8),
        ))

    winners = [result for result in results if isinstance(result, ChunkLock)]
    losers = [result for result in results if isinstance(result, LockDenied)]
    assert len(winners) == 1
    assert all(loser.reason is DenialReason.CONFLICT for loser in losers)
    assert chunk_row(db_engine, draft_id, 0).locked_by == winners[0].requester_id


@pytest.mark.parametrize("age, acquired", [(59, False), (60, False), (61, True)])
def test_stale_lock_recovery(db_engine, make_draft, age, acquired):
    draft_id = make_draft([(1, 2)])
    locked_at = utcnow()
    try_acquire(db_engine, draft_id, 0, USER_ID, "req-a", now=locked_at)

    result = try_acquire(db_engine, draft_id, 0, USER_ID, "req-b", now=locked_at + timedelta(seconds=age))

    assert isinstance(result, ChunkLock) is acquired
    expected_holder = "req-b" if acquired else "req-a"
    assert chunk_row(db_engine, draft_id, 0).locked_by == expected_holder


def test_errored_chunk_is_retryable_and_error_cleared(db_engine, make_draft):
    draft_id = make_draft([(1, 2)])
    set_chunk(db_engine, draft_id, 0, status="error", error="boom")

    lock = try_acquire(db_engine, draft_id, 0, USER_ID, "req-a")

    assert isinstance(lock, ChunkLock)
    row = chunk_row(db_engine, draft_id, 0)
    assert row.status == "processing"
    assert row.error is None


def test_done_chunk_is_reported_already_done(db_engine, make_draft):
    draft_id = make_draft([(1, 2)])
    set_chunk(db_engine, draft_id, 0, status="done")

    denied = try_acquire(db_engine, draft_id, 0, USER_ID, "req-a")

    assert isinstance(denied, LockDenied)
    assert denied.reason is DenialReason.ALREADY_DONE
    assert chunk_row(db_engine, draft_id, 0).status == "done"


def test_other_users_draft_is_not_found(db_engine, make_draft):
    draft_id = make_draft([(1, 2)])

    denied = try_acquire(db_engine, draft_id, 0, OTHER_USER_ID, "req-a")

    assert denied.reason is DenialReason.NOT_FOUND
    assert chunk_row(db_engine, draft_id, 0).status == "pending"


def test_missing_draft_and_chunk(db_engine, make_draft):
    draft_id = make_draft([(1, 2)])

    assert try_acquire(db_engine, "missing", 0, USER_ID).reason is DenialReason.NOT_FOUND
    denied = try_acquire(db_engine, draft_id, 7, USER_ID)
    assert denied.reason is DenialReason.NOT_FOUND
    assert denied.message == "Chunk not found"


def test_negative_index_is_rejected(db_engine, make_draft):
    draft_id = make_draft([(1, 2)])
    with pytest.raises(ValueError):
        try_acquire(db_engine, draft_id, -1, USER_ID)


def test_completed_draft_keeps_status_on_retry(db_engine, make_draft):
    draft_id = make_draft([(1, 2), (3, 4)])
    set_chunk(db_engine, draft_id, 1, status="error", error="boom")
    set_draft_status(db_engine, draft_id, "completed")

    assert isinstance(try_acquire(db_engine, draft_id, 1, USER_ID), ChunkLock)
    assert get_draft(db_engine, draft_id).status == "completed"
