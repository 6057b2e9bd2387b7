import pytest

from backend.pdf_chunks import InvalidPdfError, count_pages, extract_page_range, plan_chunks

from conftest import make_pdf, page_numbers


class TestPlanChunks:
    def test_small_pdf_is_one_chunk(self):
        assert plan_chunks(3) == [(1, 3)]
        assert plan_chunks(5) == [(1, 5)]

    def test_large_pdf_overlaps_by_one_page(self):
        assert plan_chunks(12) == [(1, 5), (5, 9), (9, 12)]

    def test_last_chunk_stops_at_final_page(self):
        assert plan_chunks(9) == [(1, 5), (5, 9)]
        assert plan_chunks(6) == [(1, 5), (5, 6)]

    def test_custom_sizes(self):
        assert plan_chunks(6, chunk_size=2, overlap=0) == [(1, 2), (3, 4), (5, 6)]

    def test_rejects_empty_document(self):
        with pytest.raises(ValueError):
            plan_chunks(0)

    def test_rejects_overlap_not_smaller_than_chunk(self):
        with pytest.raises(ValueError):
            plan_chunks(10, chunk_size=2, overlap=2)


class TestPageExtraction:
    def test_count_pages(self):
        assert count_pages(make_pdf(4)) == 4

    def test_count_pages_rejects_garbage(self):
        with pytest.raises(InvalidPdfError):
            count_pages(b"not a pdf")

    def test_extracts_inclusive_range_in_order(self):
        chunk = extract_page_range(make_pdf(6), 3, 4)
        assert page_numbers(chunk) == [3, 4]

    def test_clamps_to_source_page_count(self):
        chunk = extract_page_range(make_pdf(6), 5, 9)
        assert page_numbers(chunk) == [5, 6]

    def test_range_outside_document(self):
        with pytest.raises(InvalidPdfError):
            extract_page_range(make_pdf(2), 3, 4)
