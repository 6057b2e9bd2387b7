from sqlalchemy import update

from backend.completion import compute_completion, progress_from_state, update_draft_completion
from db.crud import get_draft, load_chunk_states
from db.models import DraftChunk, DraftQuestion


def set_statuses(engine, draft_id, statuses):
    with engine.begin() as conn:
        for index, status in enumerate(statuses):
            conn.execute(
                update(DraftChunk)
                .where(DraftChunk.draft_id == draft_id, DraftChunk.chunk_index == index)
                .values(status=status)
            )


class TestComputeCompletion:
    def test_counts_terminal_states(self):
        completion = compute_completion(["done", "error", "processing", "pending"], 4, 3)
        assert (completion.done, completion.errors) == (1, 1)
        assert completion.all_attempted is False
        assert completion.is_complete is False

    def test_complete_when_all_terminal_and_questions_exist(self):
        completion = compute_completion(["done", "error", "done"], 3, 2)
        assert completion.all_attempted is True
        assert completion.is_complete is True

    def test_all_errored_never_completes(self):
        completion = compute_completion(["error", "error"], 2, 0)
        assert completion.all_attempted is True
        assert completion.is_complete is False
        assert completion.exhausted is True

    def test_done_without_questions_never_completes(self):
        completion = compute_completion(["done", "done"], 2, 0)
        assert completion.is_complete is False
        assert completion.exhausted is True


def test_progress_stays_complete_for_completed_draft():
    state = {
        "total": 2,
        "status": "completed",
        "chunks": [{"index": 0, "status": "done"}, {"index": 1, "status": "processing"}],
        "question_count": 4,
    }
    progress = progress_from_state(state)
    assert progress.is_complete is True
    assert progress.to_dict() == {
        "processed": 1,
        "total": 2,
        "errors": 0,
        "isComplete": True,
        "totalQuestions": 4,
    }


def test_update_marks_exhausted_draft_as_error(db_engine, make_draft):
    draft_id = make_draft([(1, 2), (3, 4)])
    set_statuses(db_engine, draft_id, ["error", "error"])

    progress = update_draft_completion(db_engine, draft_id)

    assert progress.is_complete is False
    assert progress.errors == 2
    assert get_draft(db_engine, draft_id).status == "error"


def test_update_normalizes_processed_count_on_completion(db_engine, make_draft):
    draft_id = make_draft([(1, 2), (3, 4)])
    set_statuses(db_engine, draft_id, ["done", "error"])
    with db_engine.begin() as conn:
        conn.execute(
            DraftQuestion.__table__.insert(),
            [{
                "draft_id": draft_id,
                "question_type": "single",
                "question_text": "2 + 2?",
                "options": ["3", "4"],
                "correct_index": 1,
            }],
        )

    progress = update_draft_completion(db_engine, draft_id)

    assert progress.is_complete is True
    draft = get_draft(db_engine, draft_id)
    assert draft.status == "completed"
    assert draft.processed_chunks == 1
    assert load_chunk_states(db_engine, draft_id)["question_count"] == 1


def test_update_on_missing_draft(db_engine):
    progress = update_draft_completion(db_engine, "missing")
    assert progress.total == 0
    assert progress.is_complete is False
