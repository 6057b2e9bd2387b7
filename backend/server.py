from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError
import asyncio
import contextlib
import logging
import uuid
from datetime import timedelta
from pathlib import Path
from sqlalchemy.engine import Engine
from db.engine import engine
from db.crud import create_draft, create_schema, delete_draft, get_draft, list_drafts, load_chunk_states
from db.models import Draft
from backend.cancellation import CancelToken, watch_disconnect
from backend.chunk_lock import utcnow
from backend.completion import progress_from_state
from backend.config import CORS_ORIGINS, DRAFT_EXPIRY_HOURS, LOG_LEVEL, MAX_FILE_SIZE
from backend.extraction import GeminiQuestionExtractor
from backend.pdf_chunks import InvalidPdfError, count_pages, plan_chunks
from backend.questions import question_from_row, question_to_dict
from backend.storage import StorageError, create_storage, generate_pdf_key
from backend.worker import ChunkExtractionWorker, ChunkOutcome, ChunkResult
from threading import Lock
from typing import Any, Optional

log = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

class ProcessChunkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chunk_index: StrictInt = Field(alias="chunkIndex", ge=0)

_services_lock = Lock()
_storage = None
_extractor: Optional[GeminiQuestionExtractor] = None

@app.on_event("startup")
def initialize_schema() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    create_schema(engine)


def get_engine() -> Engine:
    return engine


def get_storage():
    global _storage
    with _services_lock:
        if _storage is None:
            _storage = create_storage()
        return _storage


def get_extractor() -> GeminiQuestionExtractor:
    global _extractor
    with _services_lock:
        if _extractor is None:
            _extractor = GeminiQuestionExtractor()
        return _extractor


def get_worker(
    db_engine: Engine = Depends(get_engine),
    storage=Depends(get_storage),
    extractor=Depends(get_extractor),
) -> ChunkExtractionWorker:
    return ChunkExtractionWorker(db_engine, storage, extractor)


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def serialize_chunk(chunk) -> dict[str, Any]:
    data = {
        "index": chunk.chunk_index,
        "startPage": chunk.start_page,
        "endPage": chunk.end_page,
        "status": chunk.status,
    }
    if chunk.error:
        data["error"] = chunk.error
    if chunk.locked_at:
        data["lockedAt"] = chunk.locked_at.isoformat()
    return data


def serialize_draft(draft: Draft, include_details: bool = True) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": draft.id,
        "title": draft.title,
        "categoryId": draft.category_id,
        "status": draft.status,
        "pdfData": {
            "fileName": draft.file_name,
            "fileSize": draft.file_size,
            "totalPages": draft.total_pages,
        },
        "chunks": {
            "total": draft.total_chunks,
            "processed": draft.processed_chunks,
            "current": draft.current_chunk,
        },
        "createdAt": draft.created_at.isoformat() if draft.created_at else None,
        "expiresAt": draft.expires_at.isoformat() if draft.expires_at else None,
    }
    if include_details:
        data["chunks"]["chunkDetails"] = [serialize_chunk(chunk) for chunk in draft.chunks]
        data["questions"] = [question_to_dict(question_from_row(row)) for row in draft.questions]
    return data


def chunk_response(result: ChunkResult) -> JSONResponse:
    payload = result.to_payload()
    if result.outcome is ChunkOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.error or "Draft not found")
    if result.outcome is ChunkOutcome.CONFLICT:
        headers = {"Retry-After": str(result.retry_after)} if result.retry_after is not None else None
        return JSONResponse(status_code=409, content=payload, headers=headers)
    if result.outcome is ChunkOutcome.ABORTED:
        return JSONResponse(status_code=499, content=payload)
    if result.outcome is ChunkOutcome.PDF_UNAVAILABLE:
        return JSONResponse(status_code=400, content=payload)
    if result.outcome in (ChunkOutcome.STORAGE_ERROR, ChunkOutcome.INTERNAL_ERROR):
        return JSONResponse(status_code=500, content=payload)
    # processed, already done, and soft extraction failures
    return JSONResponse(status_code=200, content=payload)

@app.get("/test")
def test_connection():
    return {"status": "ok"}


@app.post("/drafts")
async def create_draft_from_upload(
    title: str = Form(...),
    category_id: Optional[str] = Form(None, alias="categoryId"),
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
    db_engine: Engine = Depends(get_engine),
    storage=Depends(get_storage),
):
    title = " ".join(title.split())
    if not title:
        raise HTTPException(status_code=400, detail="Title is required.")
    if len(title) > 200:
        raise HTTPException(status_code=400, detail="Title must be at most 200 characters.")

    filename = file.filename or ""
    if not filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=400, detail=f"Only PDF files are supported: {filename}")

    file_bytes = await file.read()
    if not file_bytes:
        raise HTTPException(status_code=400, detail="Uploaded PDF is empty.")
    if len(file_bytes) > MAX_FILE_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"File size exceeds {MAX_FILE_SIZE // (1024 * 1024)}MB limit",
        )

    try:
        total_pages = count_pages(file_bytes)
        chunk_ranges = plan_chunks(total_pages)
    except (InvalidPdfError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Invalid PDF file") from exc

    pdf_key = generate_pdf_key(user_id, filename)
    try:
        await asyncio.to_thread(storage.put_bytes, pdf_key, file_bytes)
    except StorageError as exc:
        log.exception("PDF upload failed for %s", pdf_key)
        raise HTTPException(status_code=500, detail="Failed to upload PDF") from exc

    draft = await asyncio.to_thread(
        lambda: create_draft(
            db_engine,
            draft_id=uuid.uuid4().hex,
            user_id=user_id,
            title=title,
            category_id=(category_id or None),
            file_name=Path(filename).name,
            file_size=len(file_bytes),
            total_pages=total_pages,
            pdf_key=pdf_key,
            chunk_ranges=chunk_ranges,
            expires_at=utcnow() + timedelta(hours=DRAFT_EXPIRY_HOURS),
        )
    )
    log.info("Created draft %s: %d page(s) in %d chunk(s)", draft.id, total_pages, len(chunk_ranges))
    return {
        "draftId": draft.id,
        "title": draft.title,
        "chunks": {
            "total": len(chunk_ranges),
            "chunkDetails": [
                {"index": index, "startPage": start, "endPage": end, "status": "pending"}
                for index, (start, end) in enumerate(chunk_ranges)
            ],
        },
        "totalPages": total_pages,
        "expiresAt": draft.expires_at.isoformat(),
    }


@app.get("/drafts")
def list_user_drafts(
    user_id: str = Depends(get_current_user_id),
    db_engine: Engine = Depends(get_engine),
):
    drafts = list_drafts(db_engine, user_id)
    return {"drafts": [serialize_draft(draft, include_details=False) for draft in drafts]}


@app.get("/drafts/{draft_id}")
def get_user_draft(
    draft_id: str,
    user_id: str = Depends(get_current_user_id),
    db_engine: Engine = Depends(get_engine),
):
    draft = get_draft(db_engine, draft_id, user_id)
    if draft is None:
        raise HTTPException(status_code=404, detail="Draft not found")
    return {"draft": serialize_draft(draft)}


@app.get("/drafts/{draft_id}/progress")
def get_draft_progress(
    draft_id: str,
    user_id: str = Depends(get_current_user_id),
    db_engine: Engine = Depends(get_engine),
):
    if get_draft(db_engine, draft_id, user_id) is None:
        raise HTTPException(status_code=404, detail="Draft not found")
    state = load_chunk_states(db_engine, draft_id)
    if not state:
        raise HTTPException(status_code=404, detail="Draft not found")
    return {
        "status": state["status"],
        "progress": progress_from_state(state).to_dict(),
        "chunks": state["chunks"],
    }


@app.delete("/drafts/{draft_id}")
def delete_user_draft(
    draft_id: str,
    user_id: str = Depends(get_current_user_id),
    db_engine: Engine = Depends(get_engine),
    storage=Depends(get_storage),
):
    draft = delete_draft(db_engine, draft_id, user_id)
    if draft is None:
        raise HTTPException(status_code=404, detail="Draft not found")
    if draft.pdf_key:
        try:
            storage.delete(draft.pdf_key)
        except StorageError:
            log.exception("Failed to delete PDF %s for draft %s", draft.pdf_key, draft_id)
    return {"success": True}


@app.post("/drafts/{draft_id}/process-chunk")
async def process_draft_chunk(
    draft_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    worker: ChunkExtractionWorker = Depends(get_worker),
):
    try:
        body = await request.json()
    except Exception as exc:
        raise HTTPException(status_code=400, detail="Invalid or empty request body") from exc
    try:
        payload = ProcessChunkRequest.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Valid chunkIndex is required") from exc

    cancel_token = CancelToken()
    watcher = asyncio.create_task(watch_disconnect(request, cancel_token))
    try:
        result = await worker.process_chunk(draft_id, payload.chunk_index, user_id, cancel_token)
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
    return chunk_response(result)
