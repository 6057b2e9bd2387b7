import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy.engine import Engine

from db.crud import load_chunk_states, set_draft_status

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Completion:
    total: int
    done: int
    errors: int
    question_count: int

    @property
    def all_attempted(self) -> bool:
        return self.done + self.errors >= self.total

    @property
    def is_complete(self) -> bool:
        return self.all_attempted and self.question_count > 0

    @property
    def exhausted(self) -> bool:
        """Every chunk is terminal but nothing was extracted."""
        return self.all_attempted and self.question_count == 0


def compute_completion(statuses: Iterable[str], total: int, question_count: int) -> Completion:
    statuses = list(statuses)
    return Completion(
        total=total,
        done=sum(1 for status in statuses if status == "done"),
        errors=sum(1 for status in statuses if status == "error"),
        question_count=question_count,
    )


@dataclass(frozen=True)
class Progress:
    processed: int
    total: int
    errors: int
    is_complete: bool
    total_questions: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "total": self.total,
            "errors": self.errors,
            "isComplete": self.is_complete,
            "totalQuestions": self.total_questions,
        }


def progress_from_state(state: dict[str, Any]) -> Progress:
    completion = compute_completion(
        (chunk["status"] for chunk in state["chunks"]),
        state["total"],
        state["question_count"],
    )
    return Progress(
        processed=completion.done,
        total=completion.total,
        errors=completion.errors,
        # A completed draft stays complete even while an errored chunk is retried.
        is_complete=completion.is_complete or state["status"] == "completed",
        total_questions=completion.question_count,
    )


def update_draft_completion(engine: Engine, draft_id: str) -> Progress:
    state = load_chunk_states(engine, draft_id)
    if not state:
        return Progress(processed=0, total=0, errors=0, is_complete=False, total_questions=0)

    completion = compute_completion(
        (chunk["status"] for chunk in state["chunks"]),
        state["total"],
        state["question_count"],
    )
    if completion.is_complete:
        if set_draft_status(engine, draft_id, "completed", processed=completion.done):
            log.info(
                "Draft %s completed: %d/%d chunks done, %d errored, %d question(s)",
                draft_id, completion.done, completion.total, completion.errors, completion.question_count,
            )
        state["status"] = "completed"
    elif completion.exhausted:
        if set_draft_status(engine, draft_id, "error"):
            log.warning("Draft %s finished all chunks without extracting any question", draft_id)
    return progress_from_state(state)
