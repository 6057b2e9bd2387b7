"""Per-chunk processing lease on a draft.

A chunk is locked by one conditional UPDATE: it only matches a chunk that is
pending, errored, or processing under a lease older than the lock timeout.
The row count of that statement decides the winner, so concurrent requests
for the same chunk need no lock outside the database. A lease that is never
released (crashed worker, dropped client) simply goes stale and is taken over.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.engine import Engine

from backend.config import LOCK_TIMEOUT_SECONDS, RETRY_AFTER_SECONDS
from db.models import Draft, DraftChunk

log = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_requester_id() -> str:
    return uuid.uuid4().hex


class DenialReason(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_DONE = "already_done"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class ChunkLock:
    draft_id: str
    chunk_index: int
    requester_id: str
    locked_at: datetime
    start_page: int
    end_page: int
    pdf_key: Optional[str]
    total_chunks: int


@dataclass(frozen=True)
class LockDenied:
    reason: DenialReason
    message: str
    retry_after: Optional[int] = None


def try_acquire(
    engine: Engine,
    draft_id: str,
    chunk_index: int,
    user_id: str,
    requester_id: Optional[str] = None,
    now: Optional[datetime] = None,
    lock_timeout: int = LOCK_TIMEOUT_SECONDS,
) -> Union[ChunkLock, LockDenied]:
    if chunk_index < 0:
        raise ValueError("chunk_index must be non-negative")
    requester_id = requester_id or new_requester_id()
    now = now or utcnow()
    stale_before = now - timedelta(seconds=lock_timeout)

    owned_draft = select(Draft.id).where(Draft.id == draft_id, Draft.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(
            update(DraftChunk)
            .where(
                DraftChunk.draft_id == draft_id,
                DraftChunk.chunk_index == chunk_index,
                DraftChunk.draft_id.in_(owned_draft),
                or_(
                    DraftChunk.status.in_(("pending", "error")),
                    and_(DraftChunk.status == "processing", DraftChunk.locked_at < stale_before),
                ),
            )
            .values(status="processing", locked_at=now, locked_by=requester_id, error=None)
        )
        if result.rowcount == 1:
            conn.execute(
                update(Draft)
                .where(Draft.id == draft_id)
                .values(
                    current_chunk=chunk_index,
                    status=case((Draft.status == "completed", "completed"), else_="processing"),
                )
            )
            row = conn.execute(
                select(
                    DraftChunk.start_page,
                    DraftChunk.end_page,
                    Draft.pdf_key,
                    Draft.total_chunks,
                )
                .join(Draft, Draft.id == DraftChunk.draft_id)
                .where(DraftChunk.draft_id == draft_id, DraftChunk.chunk_index == chunk_index)
            ).one()
            log.info("Locked chunk %d of draft %s (%s)", chunk_index, draft_id, requester_id)
            return ChunkLock(
                draft_id=draft_id,
                chunk_index=chunk_index,
                requester_id=requester_id,
                locked_at=now,
                start_page=row.start_page,
                end_page=row.end_page,
                pdf_key=row.pdf_key,
                total_chunks=row.total_chunks,
            )

    return _explain_denial(engine, draft_id, chunk_index, user_id)


def _explain_denial(engine: Engine, draft_id: str, chunk_index: int, user_id: str) -> LockDenied:
    with engine.connect() as conn:
        owned = conn.execute(
            select(Draft.id).where(Draft.id == draft_id, Draft.user_id == user_id)
        ).first()
        if owned is None:
            return LockDenied(DenialReason.NOT_FOUND, "Draft not found")
        chunk_status = conn.execute(
            select(DraftChunk.status).where(
                DraftChunk.draft_id == draft_id,
                DraftChunk.chunk_index == chunk_index,
            )
        ).scalar_one_or_none()

    if chunk_status is None:
        return LockDenied(DenialReason.NOT_FOUND, "Chunk not found")
    if chunk_status == "done":
        return LockDenied(DenialReason.ALREADY_DONE, "Chunk already processed")
    log.info("Chunk %d of draft %s is locked by another request", chunk_index, draft_id)
    return LockDenied(
        DenialReason.CONFLICT,
        "Chunk is being processed by another request",
        retry_after=RETRY_AFTER_SECONDS,
    )
