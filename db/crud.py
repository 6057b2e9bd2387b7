from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, func, insert, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, selectinload

from db.models import Base, Draft, DraftChunk, DraftQuestion


class LeaseLost(Exception):
    """The chunk is no longer held by the requester that tried to write it."""


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)

    with engine.begin() as conn:
        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS idx_drafts_user_status_created
            ON drafts (user_id, status, created_at);
        """))

        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS idx_drafts_expires_at
            ON drafts (expires_at);
        """))

        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS idx_draft_chunks_draft_status
            ON draft_chunks (draft_id, status);
        """))

        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS idx_draft_questions_draft
            ON draft_questions (draft_id);
        """))


def done_count_subquery(draft_id: str):
    return (
        select(func.count(DraftChunk.id))
        .where(DraftChunk.draft_id == draft_id, DraftChunk.status == "done")
        .scalar_subquery()
    )


def create_draft(
    engine: Engine,
    *,
    draft_id: str,
    user_id: str,
    title: str,
    file_name: str,
    file_size: int,
    total_pages: int,
    pdf_key: str,
    chunk_ranges: list[tuple[int, int]],
    expires_at: datetime,
    category_id: Optional[str] = None,
) -> Draft:
    with Session(engine, expire_on_commit=False) as session:
        draft = Draft(
            id=draft_id,
            user_id=user_id,
            title=title,
            category_id=category_id,
            file_name=file_name,
            file_size=file_size,
            total_pages=total_pages,
            pdf_key=pdf_key,
            status="pending",
            total_chunks=len(chunk_ranges),
            processed_chunks=0,
            current_chunk=0,
            expires_at=expires_at,
        )
        draft.chunks = [
            DraftChunk(chunk_index=index, start_page=start, end_page=end, status="pending")
            for index, (start, end) in enumerate(chunk_ranges)
        ]
        session.add(draft)
        session.commit()
        return draft


def get_draft(engine: Engine, draft_id: str, user_id: Optional[str] = None) -> Optional[Draft]:
    with Session(engine) as session:
        query = (
            select(Draft)
            .options(selectinload(Draft.chunks), selectinload(Draft.questions))
            .where(Draft.id == draft_id)
        )
        if user_id is not None:
            query = query.where(Draft.user_id == user_id)
        return session.execute(query).scalar_one_or_none()


def list_drafts(engine: Engine, user_id: str) -> list[Draft]:
    with Session(engine) as session:
        rows = session.execute(
            select(Draft)
            .where(Draft.user_id == user_id)
            .order_by(Draft.created_at.desc(), Draft.id)
        ).scalars().all()
        return list(rows)


def delete_draft(engine: Engine, draft_id: str, user_id: str) -> Optional[Draft]:
    with Session(engine, expire_on_commit=False) as session:
        draft = (
            session.query(Draft)
            .filter(Draft.id == draft_id, Draft.user_id == user_id)
            .first()
        )
        if draft is None:
            return None
        session.delete(draft)
        session.commit()
        return draft


def draft_exists(engine: Engine, draft_id: str) -> bool:
    with engine.connect() as conn:
        found = conn.execute(select(Draft.id).where(Draft.id == draft_id)).first()
    return found is not None


def load_questions(engine: Engine, draft_id: str) -> list[DraftQuestion]:
    with Session(engine) as session:
        rows = session.execute(
            select(DraftQuestion)
            .where(DraftQuestion.draft_id == draft_id)
            .order_by(DraftQuestion.id)
        ).scalars().all()
        return list(rows)


def load_chunk_states(engine: Engine, draft_id: str) -> dict[str, Any]:
    """Authoritative per-chunk statuses plus the counters needed for progress."""
    with engine.connect() as conn:
        draft_row = conn.execute(
            select(Draft.total_chunks, Draft.status).where(Draft.id == draft_id)
        ).first()
        if draft_row is None:
            return {}
        chunk_rows = conn.execute(
            select(DraftChunk.chunk_index, DraftChunk.status, DraftChunk.error)
            .where(DraftChunk.draft_id == draft_id)
            .order_by(DraftChunk.chunk_index)
        ).all()
        question_count = conn.execute(
            select(func.count(DraftQuestion.id)).where(DraftQuestion.draft_id == draft_id)
        ).scalar_one()
    return {
        "total": draft_row.total_chunks,
        "status": draft_row.status,
        "chunks": [
            {"index": row.chunk_index, "status": row.status, "error": row.error}
            for row in chunk_rows
        ],
        "question_count": int(question_count or 0),
    }


def commit_chunk_questions(
    engine: Engine,
    draft_id: str,
    chunk_index: int,
    requester_id: str,
    question_rows: list[dict[str, Any]],
) -> None:
    """Append questions and mark the chunk done in one transaction.

    The chunk update only matches while ``requester_id`` still holds the
    processing lease; otherwise the inserted questions are rolled back and
    ``LeaseLost`` is raised.
    """
    with engine.begin() as conn:
        if question_rows:
            conn.execute(
                insert(DraftQuestion),
                [dict(row, draft_id=draft_id, chunk_index=chunk_index) for row in question_rows],
            )
        result = conn.execute(
            update(DraftChunk)
            .where(
                DraftChunk.draft_id == draft_id,
                DraftChunk.chunk_index == chunk_index,
                DraftChunk.status == "processing",
                DraftChunk.locked_by == requester_id,
            )
            .values(status="done", error=None)
        )
        if result.rowcount != 1:
            raise LeaseLost(f"Chunk {chunk_index} of draft {draft_id} is no longer locked by this request")
        conn.execute(
            update(Draft)
            .where(Draft.id == draft_id)
            .values(processed_chunks=done_count_subquery(draft_id))
        )


def mark_chunk_error(
    engine: Engine,
    draft_id: str,
    chunk_index: int,
    requester_id: str,
    message: str,
) -> bool:
    with engine.begin() as conn:
        result = conn.execute(
            update(DraftChunk)
            .where(
                DraftChunk.draft_id == draft_id,
                DraftChunk.chunk_index == chunk_index,
                DraftChunk.status == "processing",
                DraftChunk.locked_by == requester_id,
            )
            .values(status="error", error=message)
        )
    return result.rowcount == 1


def set_draft_status(
    engine: Engine,
    draft_id: str,
    status: str,
    *,
    processed: Optional[int] = None,
) -> bool:
    values: dict[str, Any] = {"status": status}
    if processed is not None:
        values["processed_chunks"] = processed
    with engine.begin() as conn:
        result = conn.execute(
            update(Draft)
            .where(and_(Draft.id == draft_id, Draft.status != "completed", Draft.status != status))
            .values(**values)
        )
    return result.rowcount == 1

