"""PDF upload -> plain text context for the prompt composer."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import time
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Callable, Dict, Optional

from pypdf import PdfReader

from studynova.errors import ExtractionError, UnsupportedFormatError

PDF_MAGIC = b"%PDF-"
# PDF readers accept the header anywhere in the first KiB
HEADER_WINDOW = 1024

ProgressCallback = Callable[[int, int], None]


@dataclass
class ExtractionJob:
    """Progress of one upload; discarded once extract() returns or raises."""

    source_bytes: bytes
    page_count: int = 0
    pages_processed: int = 0
    accumulated: str = ""

    def add_page(self, text: str):
        self.accumulated = f"{self.accumulated} {text}" if self.pages_processed else text
        self.pages_processed += 1

    @property
    def complete(self) -> bool:
        return self.page_count > 0 and self.pages_processed == self.page_count


class DocumentExtractor:
    def __init__(self, cfg: Dict[str, Any], logger: logging.Logger,
                 reader_factory: Callable[[io.BytesIO], Any] = PdfReader):
        self.cfg = cfg.get("documents", {})
        self.logger = logger
        self.max_pages = int(self.cfg.get("max_pages", 0) or 0)
        self.reader_factory = reader_factory

    def check_format(self, data: bytes, filename: Optional[str] = None):
        """Fail fast on anything that is not a PDF."""
        if filename and PurePath(filename).suffix.lower() != ".pdf":
            raise UnsupportedFormatError(f"{filename}: only PDF documents are supported")
        if not data or PDF_MAGIC not in data[:HEADER_WINDOW]:
            raise UnsupportedFormatError(f"{filename or 'upload'}: not a PDF document")

    def _open(self, data: bytes) -> Any:
        try:
            reader = self.reader_factory(io.BytesIO(data))
            if getattr(reader, "is_encrypted", False) and not reader.decrypt(""):
                raise ExtractionError("document is password protected")
            return reader
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"unable to parse document: {e}") from e

    async def extract(self, data: bytes, filename: Optional[str] = None,
                      progress: Optional[ProgressCallback] = None) -> str:
        """Extract every page in order and join them with single spaces.

        All-or-nothing: any page failure aborts the whole job.
        """
        self.check_format(data, filename)
        t0 = time.time()

        job = ExtractionJob(source_bytes=data)
        # Parsing the xref and page tree can take a while on large files
        reader = await asyncio.to_thread(self._open, data)

        try:
            job.page_count = await asyncio.to_thread(_page_count, reader)
        except Exception as e:
            raise ExtractionError(f"unable to read page tree: {e}") from e

        if job.page_count == 0:
            raise ExtractionError("document has no pages")
        if self.max_pages and job.page_count > self.max_pages:
            raise ExtractionError(f"document has {job.page_count} pages, limit is {self.max_pages}")

        self.logger.info("extract_begin %s", json.dumps({
            "file": filename,
            "bytes": len(data),
            "pages": job.page_count
        }))

        for index in range(job.page_count):
            page_num = index + 1
            try:
                text = await asyncio.to_thread(_page_text, reader, index)
            except Exception as e:
                self.logger.error("extract_page_failed %s", json.dumps({
                    "page": page_num,
                    "error": str(e)
                }))
                raise ExtractionError(f"page {page_num} could not be extracted: {e}") from e
            job.add_page((text or "").strip())
            self.logger.debug("extract_page %s", json.dumps({
                "page": page_num,
                "of": job.page_count,
                "chars": len(text or "")
            }))
            if progress:
                progress(job.pages_processed, job.page_count)

        context = job.accumulated.strip()
        if not context:
            raise ExtractionError("document contains no extractable text")

        self.logger.info("extract_done %s", json.dumps({
            "file": filename,
            "pages": job.pages_processed,
            "chars": len(context),
            "ms": int((time.time() - t0) * 1000)
        }))
        return context


def _page_count(reader) -> int:
    return len(reader.pages)


def _page_text(reader, index: int) -> str:
    # The page object goes out of scope before the next one is loaded
    return reader.pages[index].extract_text()
