"""Tests for the PDF extraction pipeline."""

from __future__ import annotations

import asyncio
import io
import time

import pytest
from pypdf import PdfWriter

from conftest import PDF_BYTES, FakePage, FakeReader, reader_for, slow_reader
from studynova.errors import ExtractionError, UnsupportedFormatError
from studynova.extraction import DocumentExtractor, ExtractionJob


def blank_pdf(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=200)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


class TestFormatCheck:
    def test_rejects_non_pdf_bytes(self, cfg, logger):
        extractor = DocumentExtractor(cfg, logger)
        with pytest.raises(UnsupportedFormatError):
            extractor.check_format(b"PK\x03\x04 zip archive")

    def test_rejects_wrong_extension(self, cfg, logger):
        extractor = DocumentExtractor(cfg, logger)
        with pytest.raises(UnsupportedFormatError):
            extractor.check_format(PDF_BYTES, "notes.docx")

    def test_rejects_empty(self, cfg, logger):
        extractor = DocumentExtractor(cfg, logger)
        with pytest.raises(UnsupportedFormatError):
            extractor.check_format(b"")

    @pytest.mark.asyncio
    async def test_unsupported_format_fails_before_parsing(self, cfg, logger):
        opened = []

        def factory(stream):
            opened.append(stream)
            return FakeReader([FakePage("x")])

        extractor = DocumentExtractor(cfg, logger, reader_factory=factory)
        with pytest.raises(UnsupportedFormatError):
            await extractor.extract(b"plain text", filename="notes.txt")
        assert opened == []

    def test_accepts_pdf(self, cfg, logger):
        DocumentExtractor(cfg, logger).check_format(PDF_BYTES, "Notes.PDF")


class TestExtract:
    @pytest.mark.asyncio
    async def test_pages_joined_in_order(self, cfg, logger):
        extractor = DocumentExtractor(cfg, logger, reader_factory=reader_for(
            FakePage("alpha"), FakePage("beta"), FakePage("gamma")))
        assert await extractor.extract(PDF_BYTES) == "alpha beta gamma"

    @pytest.mark.asyncio
    async def test_page_text_is_trimmed(self, cfg, logger):
        extractor = DocumentExtractor(cfg, logger, reader_factory=reader_for(
            FakePage("  first\n"), FakePage("\nsecond  ")))
        assert await extractor.extract(PDF_BYTES) == "first second"

    @pytest.mark.asyncio
    async def test_page_failure_aborts(self, cfg, logger):
        extractor = DocumentExtractor(cfg, logger, reader_factory=reader_for(
            FakePage("alpha"), FakePage("beta", fail=True), FakePage("gamma")))
        with pytest.raises(ExtractionError, match="page 2"):
            await extractor.extract(PDF_BYTES)

    @pytest.mark.asyncio
    async def test_progress_reported_per_page(self, cfg, logger):
        seen = []
        extractor = DocumentExtractor(cfg, logger, reader_factory=reader_for(
            FakePage("a"), FakePage("b"), FakePage("c")))
        await extractor.extract(PDF_BYTES, progress=lambda done, total: seen.append((done, total)))
        assert seen == [(1, 3), (2, 3), (3, 3)]

    @pytest.mark.asyncio
    async def test_zero_pages(self, cfg, logger):
        extractor = DocumentExtractor(cfg, logger, reader_factory=reader_for())
        with pytest.raises(ExtractionError, match="no pages"):
            await extractor.extract(PDF_BYTES)

    @pytest.mark.asyncio
    async def test_page_limit(self, cfg, logger):
        cfg["documents"]["max_pages"] = 2
        extractor = DocumentExtractor(cfg, logger, reader_factory=reader_for(
            FakePage("a"), FakePage("b"), FakePage("c")))
        with pytest.raises(ExtractionError, match="limit"):
            await extractor.extract(PDF_BYTES)

    @pytest.mark.asyncio
    async def test_parser_error_wrapped(self, cfg, logger):
        def factory(stream):
            raise ValueError("xref table broken")

        extractor = DocumentExtractor(cfg, logger, reader_factory=factory)
        with pytest.raises(ExtractionError, match="unable to parse"):
            await extractor.extract(PDF_BYTES)

    @pytest.mark.asyncio
    async def test_slow_parse_keeps_loop_responsive(self, cfg, logger):
        extractor = DocumentExtractor(cfg, logger, reader_factory=slow_reader(0.5, FakePage("big")))
        gaps = []
        done = asyncio.Event()

        async def ticker():
            last = time.monotonic()
            while not done.is_set():
                await asyncio.sleep(0.05)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        tick = asyncio.ensure_future(ticker())
        try:
            text = await extractor.extract(PDF_BYTES)
        finally:
            done.set()
            await tick

        assert text == "big"
        assert len(gaps) >= 5
        assert max(gaps) < 0.3


class TestWithPypdf:
    @pytest.mark.asyncio
    async def test_truncated_pdf(self, cfg, logger):
        extractor = DocumentExtractor(cfg, logger)
        with pytest.raises(ExtractionError):
            await extractor.extract(b"%PDF-1.4\nthis is not really a pdf", filename="bad.pdf")

    @pytest.mark.asyncio
    async def test_blank_pages_have_no_text(self, cfg, logger):
        extractor = DocumentExtractor(cfg, logger)
        with pytest.raises(ExtractionError, match="no extractable text"):
            await extractor.extract(blank_pdf(3), filename="scan.pdf")


class TestExtractionJob:
    def test_accumulates(self):
        job = ExtractionJob(source_bytes=b"", page_count=2)
        job.add_page("one")
        assert not job.complete
        job.add_page("two")
        assert job.accumulated == "one two"
        assert job.complete
