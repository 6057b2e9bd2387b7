"""Question extraction from PDF chunks with Gemini."""

import asyncio
import json
import logging
import re
from typing import Optional

from pydantic import ValidationError

from backend.cancellation import CancelToken, OperationCancelled, run_cancellable
from backend.config import GEMINI_KEYS, GEMINI_MODEL
from backend.questions import Question, parse_question

log = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 1.0

EXTRACTION_PROMPT = """
You are given a section of an educational PDF. Extract every quiz question it contains.

Rules:
- Extract existing questions first. Only when the content holds no questions at all,
  write exactly 10 easy-to-medium questions based strictly on the content, in the
  same language as the content.
- Keep the original wording. Keep text that refers to figures or images, but do not
  describe the images themselves.
- A question that expects a typed answer becomes a single-choice question with four
  plausible options, one of them correct.
- The question text must not contain the options or the answer.
- Options must not start with enumeration markers such as "a)", "A.", "1." or "(b)".

Return only a JSON array, no other text:
[
  {"question": "...", "type": "single", "options": ["...", "..."], "correctIndex": 0},
  {"question": "...", "type": "multiple", "options": ["...", "..."], "correctIndexes": [0, 2]}
]
"""

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


class ExtractionError(Exception):
    pass


class InvalidResponseFormat(ExtractionError):
    """The model answered, but not with a usable JSON array. Not retried."""


def parse_extraction_response(text: str) -> list[Question]:
    match = _JSON_ARRAY_RE.search(text or "")
    if not match:
        raise InvalidResponseFormat("No valid JSON array found in response")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        # Usually a truncated reply; another attempt may return it whole.
        raise ExtractionError(f"Malformed JSON in response: {exc}") from exc
    if not isinstance(payload, list) or not payload:
        raise InvalidResponseFormat("Invalid questions format")

    questions: list[Question] = []
    for i, item in enumerate(payload, start=1):
        try:
            questions.append(parse_question(item))
        except ValidationError as exc:
            log.warning("Question %d dropped: %s", i, exc.errors()[0].get("msg", exc))
    if not questions:
        raise ExtractionError("No valid questions in chunk")
    return questions


class GeminiQuestionExtractor:
    def __init__(self, api_keys: Optional[list[str]] = None, model: str = GEMINI_MODEL):
        self.api_keys = list(api_keys if api_keys is not None else GEMINI_KEYS)
        self.model = model
        self._key_index = 0

    def _next_key(self) -> str:
        key = self.api_keys[self._key_index % len(self.api_keys)]
        self._key_index = (self._key_index + 1) % len(self.api_keys)
        return key

    async def _generate(self, api_key: str, pdf_bytes: bytes) -> str:
        from google import genai
        from google.genai import types

        client = genai.Client(api_key=api_key)
        resp = await client.aio.models.generate_content(
            model=self.model,
            contents=[
                types.Part.from_bytes(data=pdf_bytes, mime_type="application/pdf"),
                EXTRACTION_PROMPT,
            ],
            config=types.GenerateContentConfig(
                temperature=0.0,
                response_mime_type="application/json",
            ),
        )
        return getattr(resp, "text", None) or ""

    async def extract(
        self,
        pdf_bytes: bytes,
        retry_budget: int,
        cancel_token: Optional[CancelToken] = None,
    ) -> list[Question]:
        if not self.api_keys:
            raise ExtractionError("GEMINI_KEYS is not configured")

        max_attempts = max(1, min(len(self.api_keys), retry_budget))
        last_error: Optional[Exception] = None
        for attempt in range(max_attempts):
            try:
                text = await run_cancellable(self._generate(self._next_key(), pdf_bytes), cancel_token)
                questions = parse_extraction_response(text)
                log.info("Extracted %d question(s) on attempt %d", len(questions), attempt + 1)
                return questions
            except (InvalidResponseFormat, OperationCancelled):
                raise
            except Exception as exc:
                last_error = exc
            log.warning("Extraction attempt %d/%d failed: %s", attempt + 1, max_attempts, last_error)
            if attempt < max_attempts - 1:
                await run_cancellable(asyncio.sleep(RETRY_DELAY_SECONDS), cancel_token)

        raise ExtractionError(f"Failed to extract questions after {max_attempts} attempts: {last_error}")

