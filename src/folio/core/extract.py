"""Page-at-a-time PDF text extraction: PyMuPDF or poppler -> job-scoped cache."""

import logging
import re
import subprocess
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple

import fitz  # PyMuPDF

from .errors import ConfigurationError, ExtractionError

logger = logging.getLogger(__name__)

# PyMuPDF is not thread-safe; every call into it goes through this lock.
_FITZ_LOCK = threading.Lock()


class TextSource(Protocol):
    """Narrow contract of the external text-extraction tool."""

    def page_count(self, pdf_path: Path) -> int: ...

    def extract_page(self, pdf_path: Path, page_number: int) -> str: ...


class PyMuPDFTextSource:
    """Extract page text with PyMuPDF."""

    def page_count(self, pdf_path: Path) -> int:
        try:
            with _FITZ_LOCK:
                with fitz.open(str(pdf_path)) as doc:
                    return doc.page_count
        except Exception as e:
            raise ExtractionError(f"Could not read PDF {pdf_path.name}: {e}") from e

    def extract_page(self, pdf_path: Path, page_number: int) -> str:
        try:
            with _FITZ_LOCK:
                with fitz.open(str(pdf_path)) as doc:
                    return doc[page_number - 1].get_text()
        except Exception as e:
            raise ExtractionError(f"Could not extract text from {pdf_path.name}: {e}", page=page_number) from e


class PdftotextTextSource:
    """Extract page text with poppler's ``pdfinfo`` / ``pdftotext`` tools."""

    def __init__(self, pdfinfo: str = "pdfinfo", pdftotext: str = "pdftotext", timeout: float = 120.0):
        self.pdfinfo = pdfinfo
        self.pdftotext = pdftotext
        self.timeout = timeout

    def _run(self, args, page: Optional[int] = None) -> str:
        try:
            result = subprocess.run(
                args, capture_output=True, check=True, timeout=self.timeout
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise ExtractionError(f"{args[0]} failed: {e}", page=page) from e
        return result.stdout.decode("utf-8", errors="replace")

    def page_count(self, pdf_path: Path) -> int:
        output = self._run([self.pdfinfo, str(pdf_path)])
        match = re.search(r"Pages:\s+(\d+)", output)
        if not match:
            raise ExtractionError("Could not determine page count")
        return int(match.group(1))

    def extract_page(self, pdf_path: Path, page_number: int) -> str:
        page = str(page_number)
        return self._run(
            [self.pdftotext, "-f", page, "-l", page, "-enc", "UTF-8", str(pdf_path), "-"],
            page=page_number,
        )


def get_text_source(backend: str) -> TextSource:
    """Return the text source for a configured backend name."""
    if backend == "pymupdf":
        return PyMuPDFTextSource()
    if backend == "pdftotext":
        return PdftotextTextSource()
    raise ConfigurationError(f"Unknown extract backend: {backend}")


class PageCache:
    """Thread-safe (document_id, page) -> text map owned by one ingestion job.

    Entries are written once and then only read. Concurrent misses on the same
    key wait for the first loader instead of invoking the tool twice.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pages: Dict[Tuple[str, int], str] = {}
        self._loading: Dict[Tuple[str, int], threading.Lock] = {}
        self.misses = 0

    def get_or_load(self, key: Tuple[str, int], loader) -> str:
        with self._lock:
            if key in self._pages:
                return self._pages[key]
            key_lock = self._loading.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                if key in self._pages:
                    return self._pages[key]
            text = loader()
            with self._lock:
                self._pages[key] = text
                self._loading.pop(key, None)
                self.misses += 1
            return text

    def clear(self) -> None:
        with self._lock:
            self._pages.clear()
            self._loading.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pages)


class PageExtractor:
    """Per-document page reader shared by all workers of one job."""

    def __init__(
        self,
        source: TextSource,
        pdf_path: Path,
        document_id: str,
        cache: Optional[PageCache] = None
    ):
        self.source = source
        self.pdf_path = Path(pdf_path)
        self.document_id = document_id
        self.cache = cache if cache is not None else PageCache()
        self._page_count: Optional[int] = None
        self._count_lock = threading.Lock()

    def page_count(self) -> int:
        """Total number of pages; raises ExtractionError if the file is unreadable."""
        with self._count_lock:
            if self._page_count is None:
                count = self.source.page_count(self.pdf_path)
                if count < 0:
                    raise ExtractionError(f"Invalid page count {count}")
                self._page_count = count
                logger.info(f"Document {self.document_id}: {count} pages")
            return self._page_count

    def extract_page(self, page_number: int) -> str:
        """
        Return the trimmed text of a 1-indexed page.

        Pages without a text layer come back as an empty string.
        """
        total = self.page_count()
        if page_number < 1 or page_number > total:
            raise ExtractionError(f"Page out of range 1..{total}", page=page_number)

        def load() -> str:
            text = self.source.extract_page(self.pdf_path, page_number) or ""
            return text.strip()

        return self.cache.get_or_load((self.document_id, page_number), load)

    def close(self) -> None:
        """Discard cached pages once the job has terminated."""
        self.cache.clear()
