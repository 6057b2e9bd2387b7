"""Shared fixtures: a SQLite database per test, fake storage and a scripted extractor.

Test PDFs are generated with pymupdf; every page carries the text
``Page <n>`` so the scripted extractor can tell which chunk it was given.
"""

import asyncio
import logging
import re
import sys
from datetime import timedelta
from typing import Optional

import pymupdf
import pytest

from backend.cancellation import run_cancellable
from backend.chunk_lock import utcnow
from backend.questions import parse_question
from backend.storage import StorageError
from backend.worker import ChunkExtractionWorker
from db.crud import create_draft, create_schema
from db.engine import build_engine

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)

USER_ID = "user-1"
OTHER_USER_ID = "user-2"

_PAGE_RE = re.compile(r"Page (\d+)")


def make_pdf(pages: int) -> bytes:
    doc = pymupdf.open()
    try:
        for number in range(1, pages + 1):
            page = doc.new_page()
            page.insert_text((72, 72), f"Page {number}")
        return doc.tobytes()
    finally:
        doc.close()


def page_numbers(pdf_bytes: bytes) -> list[int]:
    doc = pymupdf.open(stream=pdf_bytes, filetype="pdf")
    try:
        numbers = []
        for page in doc:
            match = _PAGE_RE.search(page.get_text())
            numbers.append(int(match.group(1)) if match else -1)
        return numbers
    finally:
        doc.close()


def single(question: str, options: list[str], correct: int = 0) -> dict:
    return {"type": "single", "question": question, "options": options, "correctIndex": correct}


def multiple(question: str, options: list[str], correct: list[int]) -> dict:
    return {"type": "multiple", "question": question, "options": options, "correctIndexes": correct}


class FakeStorage:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_reads = False
        self.deleted: list[str] = []
        self.on_read = None

    def put_bytes(self, key: str, data: bytes, content_type: str = "application/pdf") -> None:
        self.objects[key] = data

    def get_bytes(self, key: str) -> bytes:
        if self.fail_reads:
            raise StorageError(f"Failed to fetch {key}: connection reset")
        if self.on_read is not None:
            self.on_read(key)
        try:
            return self.objects[key]
        except KeyError as exc:
            raise StorageError(f"Failed to fetch {key}: missing") from exc

    def delete(self, key: str) -> None:
        self.deleted.append(key)
        self.objects.pop(key, None)


class ScriptedExtractor:
    """Returns canned questions keyed by the first page of the chunk it receives."""

    def __init__(self, by_first_page: Optional[dict[int, list[dict]]] = None):
        self.by_first_page = by_first_page or {}
        self.calls: list[dict] = []
        self.error: Optional[Exception] = None
        self.hold: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None
        self.during = None

    async def extract(self, pdf_bytes, retry_budget, cancel_token=None):
        pages = page_numbers(pdf_bytes)
        self.calls.append({"pages": pages, "retry_budget": retry_budget})
        if self.entered is not None:
            self.entered.set()
        if self.hold is not None:
            await run_cancellable(self.hold.wait(), cancel_token)
        if self.during is not None:
            self.during()
        if self.error is not None:
            raise self.error
        return [parse_question(item) for item in self.by_first_page.get(pages[0], [])]


@pytest.fixture()
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'drafts.db'}")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def storage():
    return FakeStorage()


@pytest.fixture()
def extractor():
    return ScriptedExtractor()


@pytest.fixture()
def worker(db_engine, storage, extractor):
    return ChunkExtractionWorker(db_engine, storage, extractor)


@pytest.fixture()
def make_draft(db_engine, storage):
    counter = {"n": 0}

    def _make(
        chunk_ranges: list[tuple[int, int]],
        total_pages: Optional[int] = None,
        user_id: str = USER_ID,
        pdf_key: Optional[str] = None,
    ) -> str:
        counter["n"] += 1
        total_pages = total_pages or max(end for _, end in chunk_ranges)
        draft_id = f"draft{counter['n']:04d}"
        if pdf_key is None:
            pdf_key = f"drafts/{user_id}/{draft_id}.pdf"
            storage.put_bytes(pdf_key, make_pdf(total_pages))
        create_draft(
            db_engine,
            draft_id=draft_id,
            user_id=user_id,
            title=f"Draft {counter['n']}",
            file_name="source.pdf",
            file_size=1024,
            total_pages=total_pages,
            pdf_key=pdf_key,
            chunk_ranges=chunk_ranges,
            expires_at=utcnow() + timedelta(hours=48),
        )
        return draft_id

    return _make
