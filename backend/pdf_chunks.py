import pymupdf

from backend.config import CHUNK_OVERLAP, CHUNK_SIZE


class InvalidPdfError(ValueError):
    pass


def plan_chunks(
    total_pages: int,
    chunk_size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> list[tuple[int, int]]:
    """Split ``total_pages`` into 1-based inclusive page ranges.

    Consecutive ranges share ``overlap`` pages so a question that straddles a
    boundary is seen whole by at least one chunk.
    """
    if total_pages < 1:
        raise ValueError("A PDF needs at least one page.")
    if chunk_size < 1 or not 0 <= overlap < chunk_size:
        raise ValueError("chunk_size must be positive and larger than overlap.")

    if total_pages <= chunk_size:
        return [(1, total_pages)]

    ranges: list[tuple[int, int]] = []
    start = 1
    while start <= total_pages:
        end = min(start + chunk_size - 1, total_pages)
        ranges.append((start, end))
        if end >= total_pages:
            break
        start += chunk_size - overlap
    return ranges


def count_pages(pdf_bytes: bytes) -> int:
    try:
        doc = pymupdf.open(stream=pdf_bytes, filetype="pdf")
    except Exception as exc:
        raise InvalidPdfError(f"Invalid PDF file: {exc}") from exc
    try:
        return doc.page_count
    finally:
        doc.close()


def extract_page_range(pdf_bytes: bytes, start_page: int, end_page: int) -> bytes:
    """Copy pages ``start_page..end_page`` (1-based, inclusive) into a new PDF.

    The range is clamped to the pages the source actually has.
    """
    source = pymupdf.open(stream=pdf_bytes, filetype="pdf")
    try:
        first = max(start_page, 1) - 1
        last = min(end_page, source.page_count) - 1
        if last < first:
            raise InvalidPdfError(
                f"Pages {start_page}-{end_page} are outside the document ({source.page_count} pages)."
            )
        chunk = pymupdf.open()
        try:
            chunk.insert_pdf(source, from_page=first, to_page=last)
            return chunk.tobytes()
        finally:
            chunk.close()
    finally:
        source.close()
