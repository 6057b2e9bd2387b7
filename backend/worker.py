"""Process one chunk of a draft: lock, carve pages, extract, dedupe, commit.

``ChunkExtractionWorker.process_chunk`` never raises for pipeline failures;
every path ends in a ``ChunkResult`` the HTTP layer can map directly.

Failure handling is deliberately uneven:

* a missing PDF reference or a storage fetch error leaves the chunk
  ``processing``; the lease goes stale and a later call retries it cleanly;
* anything that fails once pages are being carved, including cancellation
  and a draft deleted mid-flight, marks the chunk ``error`` so it can be
  retried at once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from sqlalchemy.engine import Engine

from backend.cancellation import CancelToken, OperationCancelled
from backend.chunk_lock import ChunkLock, DenialReason, LockDenied, try_acquire, utcnow
from backend.completion import Progress, progress_from_state, update_draft_completion
from backend.config import EXTRACTION_RETRY_BUDGET, LOCK_TIMEOUT_SECONDS
from backend.dedup import DuplicateIndex
from backend.pdf_chunks import extract_page_range
from backend.questions import Question, question_from_row, question_to_dict, question_to_row
from db.crud import (
    LeaseLost,
    commit_chunk_questions,
    draft_exists,
    load_chunk_states,
    load_questions,
    mark_chunk_error,
)

log = logging.getLogger(__name__)


class DraftGone(Exception):
    pass


class ChunkOutcome(str, Enum):
    PROCESSED = "processed"
    ALREADY_DONE = "already_done"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    ABORTED = "aborted"
    PDF_UNAVAILABLE = "pdf_unavailable"
    STORAGE_ERROR = "storage_error"
    FAILED = "failed"
    INTERNAL_ERROR = "internal_error"


@dataclass
class ChunkResult:
    outcome: ChunkOutcome
    questions: list[Question] = field(default_factory=list)
    progress: Optional[Progress] = None
    error: Optional[str] = None
    message: Optional[str] = None
    retry_after: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.outcome in (ChunkOutcome.PROCESSED, ChunkOutcome.ALREADY_DONE)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.message:
            payload["message"] = self.message
        if self.error:
            payload["error"] = self.error
        if self.success:
            payload["questions"] = [question_to_dict(q) for q in self.questions]
        if self.progress is not None:
            payload["progress"] = self.progress.to_dict()
        if self.retry_after is not None:
            # Milliseconds, matching what polling clients already expect.
            payload["retryAfter"] = self.retry_after * 1000
        return payload


class ChunkExtractionWorker:
    def __init__(
        self,
        engine: Engine,
        storage,
        extractor,
        *,
        lock_timeout: int = LOCK_TIMEOUT_SECONDS,
        retry_budget: int = EXTRACTION_RETRY_BUDGET,
    ):
        self.engine = engine
        self.storage = storage
        self.extractor = extractor
        self.lock_timeout = lock_timeout
        self.retry_budget = retry_budget

    async def _progress(self, draft_id: str) -> Optional[Progress]:
        state = await asyncio.to_thread(load_chunk_states, self.engine, draft_id)
        return progress_from_state(state) if state else None

    async def process_chunk(
        self,
        draft_id: str,
        chunk_index: int,
        user_id: str,
        cancel_token: Optional[CancelToken] = None,
        requester_id: Optional[str] = None,
    ) -> ChunkResult:
        try:
            lock = await asyncio.to_thread(
                try_acquire,
                self.engine,
                draft_id,
                chunk_index,
                user_id,
                requester_id,
                None,
                self.lock_timeout,
            )
        except Exception:
            log.exception("Lock acquisition failed for chunk %d of draft %s", chunk_index, draft_id)
            return ChunkResult(ChunkOutcome.INTERNAL_ERROR, error="Failed to process chunk")
        if isinstance(lock, LockDenied):
            try:
                return await self._denied(draft_id, lock)
            except Exception:
                log.exception("Could not load progress for draft %s", draft_id)
                return ChunkResult(ChunkOutcome.INTERNAL_ERROR, error="Failed to process chunk")

        if cancel_token is not None and cancel_token.cancelled:
            log.info("Request for chunk %d of draft %s aborted before work started", chunk_index, draft_id)
            return ChunkResult(ChunkOutcome.ABORTED, error="Request aborted")

        if not lock.pdf_key:
            log.error("Draft %s has no PDF reference", draft_id)
            return ChunkResult(ChunkOutcome.PDF_UNAVAILABLE, error="PDF not available")

        try:
            pdf_bytes = await asyncio.to_thread(self.storage.get_bytes, lock.pdf_key)
        except Exception:
            log.exception("Failed to fetch PDF %s for draft %s", lock.pdf_key, draft_id)
            return ChunkResult(ChunkOutcome.STORAGE_ERROR, error="Failed to fetch PDF")

        try:
            return await self._extract_and_commit(lock, pdf_bytes, cancel_token)
        except Exception as exc:
            return await self._fail(lock, exc)

    async def _denied(self, draft_id: str, denied: LockDenied) -> ChunkResult:
        if denied.reason is DenialReason.NOT_FOUND:
            return ChunkResult(ChunkOutcome.NOT_FOUND, error=denied.message)
        if denied.reason is DenialReason.ALREADY_DONE:
            return ChunkResult(
                ChunkOutcome.ALREADY_DONE,
                message=denied.message,
                progress=await self._progress(draft_id),
            )
        return ChunkResult(
            ChunkOutcome.CONFLICT,
            error=denied.message,
            retry_after=denied.retry_after,
        )

    async def _extract_and_commit(
        self,
        lock: ChunkLock,
        pdf_bytes: bytes,
        cancel_token: Optional[CancelToken],
    ) -> ChunkResult:
        chunk_pdf = await asyncio.to_thread(extract_page_range, pdf_bytes, lock.start_page, lock.end_page)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if not await asyncio.to_thread(draft_exists, self.engine, lock.draft_id):
            raise DraftGone("Draft was deleted or cancelled")

        extracted = await self.extractor.extract(chunk_pdf, self.retry_budget, cancel_token)

        existing_rows = await asyncio.to_thread(load_questions, self.engine, lock.draft_id)
        index = DuplicateIndex(question_from_row(row) for row in existing_rows)
        new_questions = index.filter_new(extracted)

        await asyncio.to_thread(
            commit_chunk_questions,
            self.engine,
            lock.draft_id,
            lock.chunk_index,
            lock.requester_id,
            [question_to_row(q) for q in new_questions],
        )
        log.info(
            "Chunk %d of draft %s done %.1fs after locking: %d extracted, %d new",
            lock.chunk_index, lock.draft_id, (utcnow() - lock.locked_at).total_seconds(),
            len(extracted), len(new_questions),
        )

        progress = await asyncio.to_thread(update_draft_completion, self.engine, lock.draft_id)
        return ChunkResult(ChunkOutcome.PROCESSED, questions=new_questions, progress=progress)

    async def _fail(self, lock: ChunkLock, exc: Exception) -> ChunkResult:
        message = str(exc) or type(exc).__name__
        if isinstance(exc, LeaseLost):
            log.warning("Lost the lease on chunk %d of draft %s: %s", lock.chunk_index, lock.draft_id, message)
        elif isinstance(exc, (OperationCancelled, DraftGone)):
            log.info("Chunk %d of draft %s abandoned: %s", lock.chunk_index, lock.draft_id, message)
        else:
            log.warning("Chunk %d of draft %s failed: %s", lock.chunk_index, lock.draft_id, message)

        progress = Progress(processed=0, total=lock.total_chunks, errors=0, is_complete=False, total_questions=0)
        try:
            progress = await self._progress(lock.draft_id) or progress
            marked = await asyncio.to_thread(
                mark_chunk_error,
                self.engine,
                lock.draft_id,
                lock.chunk_index,
                lock.requester_id,
                message,
            )
        except Exception:
            log.exception("Could not record the failure of chunk %d of draft %s", lock.chunk_index, lock.draft_id)
        else:
            if not marked:
                log.info("Chunk %d of draft %s left as is; lease no longer held", lock.chunk_index, lock.draft_id)
            else:
                try:
                    await asyncio.to_thread(update_draft_completion, self.engine, lock.draft_id)
                except Exception:
                    log.exception("Could not update completion of draft %s", lock.draft_id)
        return ChunkResult(ChunkOutcome.FAILED, error=message, progress=progress)
