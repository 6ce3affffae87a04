import threading
from concurrent.futures import ThreadPoolExecutor

import fitz  # PyMuPDF
import pytest

from conftest import FakeTextSource
from folio.core.errors import ConfigurationError, ExtractionError
from folio.core.extract import (
    PageCache,
    PageExtractor,
    PdftotextTextSource,
    PyMuPDFTextSource,
    get_text_source,
)


@pytest.fixture
def sample_pdf(tmp_path):
    """Three pages: text, blank, text."""
    path = tmp_path / "sample.pdf"
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "Ladder logic basics on page one")
    doc.new_page()
    page = doc.new_page()
    page.insert_text((72, 72), "Timers and counters on page three")
    doc.save(str(path))
    doc.close()
    return path


class TestPyMuPDFTextSource:
    def test_page_count(self, sample_pdf):
        assert PyMuPDFTextSource().page_count(sample_pdf) == 3

    def test_extract_page(self, sample_pdf):
        source = PyMuPDFTextSource()
        assert "Ladder logic basics" in source.extract_page(sample_pdf, 1)
        assert source.extract_page(sample_pdf, 2).strip() == ""
        assert "Timers and counters" in source.extract_page(sample_pdf, 3)

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"this is not a pdf")
        with pytest.raises(ExtractionError):
            PyMuPDFTextSource().page_count(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ExtractionError):
            PyMuPDFTextSource().page_count(tmp_path / "missing.pdf")


class TestPageExtractor:
    def test_reads_real_pdf(self, sample_pdf):
        extractor = PageExtractor(PyMuPDFTextSource(), sample_pdf, "doc-1")
        assert extractor.page_count() == 3
        assert extractor.extract_page(1) == "Ladder logic basics on page one"
        assert extractor.extract_page(2) == ""

    def test_text_is_trimmed(self, tmp_path):
        source = FakeTextSource(["  \n padded text \n\n"])
        extractor = PageExtractor(source, tmp_path / "x.pdf", "doc-1")
        assert extractor.extract_page(1) == "padded text"

    @pytest.mark.parametrize("page_number", [0, 4, -1])
    def test_out_of_range(self, tmp_path, page_number):
        extractor = PageExtractor(FakeTextSource(["a", "b", "c"]), tmp_path / "x.pdf", "doc-1")
        with pytest.raises(ExtractionError) as excinfo:
            extractor.extract_page(page_number)
        assert excinfo.value.page == page_number

    def test_page_count_failure(self, tmp_path):
        extractor = PageExtractor(FakeTextSource([], fail_on_count=True), tmp_path / "x.pdf", "doc-1")
        with pytest.raises(ExtractionError):
            extractor.page_count()

    def test_cache_invokes_tool_once_per_page(self, tmp_path):
        source = FakeTextSource(["one", "two", "three"])
        extractor = PageExtractor(source, tmp_path / "x.pdf", "doc-1")

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(extractor.extract_page, [1, 2, 3] * 20))

        assert results == ["one", "two", "three"] * 20
        assert source.calls == {1: 1, 2: 1, 3: 1}
        assert extractor.cache.misses == 3

    def test_close_discards_cache(self, tmp_path):
        source = FakeTextSource(["one"])
        extractor = PageExtractor(source, tmp_path / "x.pdf", "doc-1")
        extractor.extract_page(1)
        assert len(extractor.cache) == 1

        extractor.close()
        assert len(extractor.cache) == 0


class TestPageCache:
    def test_concurrent_misses_share_one_load(self):
        cache = PageCache()
        release = threading.Event()
        loads = []

        def loader():
            loads.append(1)
            release.wait(timeout=5)
            return "text"

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(cache.get_or_load, ("doc", 1), loader) for _ in range(4)]
            release.set()
            assert [f.result() for f in futures] == ["text"] * 4

        assert len(loads) == 1

    def test_keys_are_scoped_by_document(self):
        cache = PageCache()
        assert cache.get_or_load(("a", 1), lambda: "from a") == "from a"
        assert cache.get_or_load(("b", 1), lambda: "from b") == "from b"
        assert cache.get_or_load(("a", 1), lambda: "reloaded") == "from a"


class TestBackendSelection:
    def test_known_backends(self):
        assert isinstance(get_text_source("pymupdf"), PyMuPDFTextSource)
        assert isinstance(get_text_source("pdftotext"), PdftotextTextSource)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            get_text_source("tesseract")

    def test_pdftotext_missing_binary(self, tmp_path):
        source = PdftotextTextSource(pdfinfo="folio-no-such-binary")
        with pytest.raises(ExtractionError):
            source.page_count(tmp_path / "x.pdf")
