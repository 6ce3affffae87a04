"""Overlapping character windows per page, with lookahead across page breaks."""

import logging
from dataclasses import dataclass
from typing import Callable, List

from .errors import ConfigurationError
from .models import TextChunk

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n\n"
SENTENCE_ENDINGS = (". ", "! ", "? ")

PageReader = Callable[[int], str]


@dataclass(frozen=True)
class ChunkingConfig:
    """Character-based chunking parameters."""
    chunk_size: int = 1000
    chunk_overlap: int = 200
    lookahead_chars: int = 2000
    min_chunk_chars: int = 50
    sentence_boundaries: bool = False

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ConfigurationError("chunk_size must be positive")
        if self.chunk_overlap < 0 or self.chunk_overlap >= self.chunk_size:
            raise ConfigurationError("Chunk overlap must be smaller than chunk size")

    @property
    def step(self) -> int:
        return self.chunk_size - self.chunk_overlap


def peek_ahead(read_page: PageReader, start_page: int, total_pages: int, target_chars: int = 2000) -> str:
    """
    Accumulate text from ``start_page`` onwards until ``target_chars`` is reached.

    Args:
        read_page: Callable returning the text of a 1-indexed page
        start_page: First page to read
        total_pages: Last page of the document
        target_chars: Lookahead target length

    Returns:
        Page texts joined with a blank line; empty pages are skipped
    """
    accumulated = ""
    page = start_page

    while len(accumulated) < target_chars and page <= total_pages:
        page_text = read_page(page)
        if not page_text:
            page += 1
            continue

        needed = target_chars - len(accumulated)
        contribution = page_text[:needed]
        accumulated += (PAGE_SEPARATOR if accumulated else "") + contribution

        if len(accumulated) >= target_chars:
            break
        if len(page_text) <= needed:
            page += 1
        else:
            break

    return accumulated


def _window_end(text: str, start: int, config: ChunkingConfig) -> int:
    end = min(start + config.chunk_size, len(text))
    if not config.sentence_boundaries or end >= len(text):
        return end

    window = text[start:end]
    best = -1
    for ending in SENTENCE_ENDINGS:
        position = window.rfind(ending)
        # Don't break too early in the window
        if position > config.chunk_size * 0.5:
            best = max(best, position + len(ending))
    return start + best if best > -1 else end


def chunk_page(
    page_text: str,
    page_number: int,
    total_pages: int,
    read_page: PageReader,
    config: ChunkingConfig = ChunkingConfig()
) -> List[TextChunk]:
    """
    Split one page into overlapping windows.

    The window that reaches the end of the page is extended with lookahead text
    from the following pages unless this is the document's last page. Chunk
    indexes restart at zero on every page.

    Args:
        page_text: Extracted text of the page
        page_number: 1-indexed page number
        total_pages: Page count of the document
        read_page: Callable used for lookahead reads
        config: Chunking parameters

    Returns:
        List of TextChunk objects in page order
    """
    if not page_text or not page_text.strip():
        return []

    chunks: List[TextChunk] = []
    start = 0
    chunk_index = 0

    while start < len(page_text):
        end = _window_end(page_text, start, config)
        chunk_text = page_text[start:end]
        is_last = end >= len(page_text)

        if is_last and page_number < total_pages and config.lookahead_chars > 0:
            lookahead = peek_ahead(read_page, page_number + 1, total_pages, config.lookahead_chars)
            if lookahead:
                chunk_text += PAGE_SEPARATOR + lookahead

        chunk_text = chunk_text.strip()
        if len(chunk_text) >= config.min_chunk_chars:
            chunks.append(TextChunk(text=chunk_text, page_number=page_number, chunk_index=chunk_index))
            chunk_index += 1

        if is_last:
            break
        start = max(end - config.chunk_overlap, start + 1)

    logger.debug(f"Page {page_number}: {len(chunks)} chunks")
    return chunks
