"""Closed-domain answer composition over retrieved passages."""

import logging
import time
from typing import Any, List, Optional, Sequence

from .config import Settings
from .embed import EmbeddingGateway, make_openai_client
from .errors import FolioError, QueryValidationError
from .logging_config import get_audit_logger, log_query_event
from .models import Answer, Citation, SearchResult
from .store import CorpusStore

logger = logging.getLogger(__name__)

REFUSAL_MESSAGE = (
    "I'm sorry, but I can only answer questions using the documents in my knowledge base, "
    "and I couldn't find information relevant to your question there. "
    "Please try rephrasing your question or ask about a topic covered in the uploaded materials."
)

PASSAGE_SEPARATOR = "\n\n---\n\n"

SYSTEM_PROMPT = """You are an assistant that answers questions about a fixed collection of documents.

CRITICAL INSTRUCTIONS:
1. Answer ONLY with information found in the context below
2. NEVER use general knowledge or information from your training data
3. If the context does not contain enough information to answer, say so
4. Attribute every statement to its source inline, e.g. [Source 2]
5. Be concise and precise

Context from the document collection:
{context}"""


def validate_question(question: str, max_chars: int = 2000) -> str:
    """
    Reject empty or over-long questions.

    Raises:
        QueryValidationError: with a message suitable for the caller
    """
    if not question or not question.strip():
        raise QueryValidationError("Query cannot be empty")
    if len(question) > max_chars:
        raise QueryValidationError(f"Query is too long (max {max_chars} characters)")
    return question


def build_context(results: Sequence[SearchResult]) -> str:
    """Tag each passage with its title and page, in rank order."""
    return PASSAGE_SEPARATOR.join(
        f"[Source {i}: {r.chunk.title}, Page {r.chunk.page_number}]\n{r.chunk.text}"
        for i, r in enumerate(results, 1)
    )


def dedupe_citations(results: Sequence[SearchResult]) -> List[Citation]:
    """Distinct (title, page) pairs in first-appearance order."""
    seen = set()
    citations: List[Citation] = []
    for result in results:
        key = (result.chunk.title, result.chunk.page_number)
        if key in seen:
            continue
        seen.add(key)
        citations.append(Citation(title=key[0], page_number=key[1]))
    return citations


class CompletionClient:
    """Turns a system prompt and a question into generated text."""

    def __init__(self, client: Any, model: str = "gpt-4", temperature: float = 0.3, max_tokens: int = 1000):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[Any] = None) -> "CompletionClient":
        return cls(
            client=client if client is not None else make_openai_client(settings),
            model=settings.chat_model,
            temperature=settings.chat_temperature,
            max_tokens=settings.chat_max_tokens,
        )

    def complete(self, system_prompt: str, question: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": question}
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens
            )
        except Exception as e:
            raise FolioError(f"Completion request failed: {e}") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


class AnswerComposer:
    """Answers questions strictly from committed passages, or refuses."""

    def __init__(
        self,
        store: CorpusStore,
        embedder: EmbeddingGateway,
        completer: CompletionClient,
        similarity_threshold: float = 0.5,
        top_k: int = 5,
        max_question_chars: int = 2000
    ):
        self.store = store
        self.embedder = embedder
        self.completer = completer
        self.similarity_threshold = similarity_threshold
        self.top_k = top_k
        self.max_question_chars = max_question_chars
        self.audit = get_audit_logger("answer")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: CorpusStore,
        embedder: Optional[EmbeddingGateway] = None,
        completer: Optional[CompletionClient] = None
    ) -> "AnswerComposer":
        return cls(
            store=store,
            embedder=embedder or EmbeddingGateway.from_settings(settings),
            completer=completer or CompletionClient.from_settings(settings),
            similarity_threshold=settings.similarity_threshold,
            top_k=settings.top_k,
            max_question_chars=settings.max_question_chars,
        )

    def _refuse(self, question: str, topic: Optional[str], reason: str, started: float,
                best_distance: Optional[float] = None) -> Answer:
        log_query_event(
            self.audit, question, topic,
            refused=True,
            reason=reason,
            best_distance=best_distance,
            execution_time_ms=(time.time() - started) * 1000,
        )
        return Answer(answer=REFUSAL_MESSAGE, citations=[], has_relevant_docs=False)

    def ask(self, question: str, topic: Optional[str] = None) -> Answer:
        """
        Answer a question from the corpus.

        Args:
            question: Natural-language question
            topic: Restrict retrieval to one topic (whole corpus when None)

        Returns:
            Answer with citations, or the refusal message with no citations

        Raises:
            QueryValidationError: for empty or over-long questions
        """
        validate_question(question, self.max_question_chars)
        started = time.time()

        try:
            if not self.store.has_any_chunks():
                return self._refuse(question, topic, "empty_corpus", started)

            query_vector = self.embedder.embed_query(question)
            results = self.store.search(query_vector, topic=topic, k=self.top_k)
        except FolioError as e:
            logger.error(f"Retrieval failed for question: {e}")
            return self._refuse(question, topic, "retrieval_error", started)

        relevant = [r for r in results if r.distance <= self.similarity_threshold]
        best_distance = results[0].distance if results else None
        if not relevant:
            logger.info(f"No passage within threshold {self.similarity_threshold} (best: {best_distance})")
            return self._refuse(question, topic, "no_relevant_passages", started, best_distance)

        system_prompt = SYSTEM_PROMPT.format(context=build_context(relevant))
        try:
            answer_text = self.completer.complete(system_prompt, question)
        except FolioError as e:
            logger.error(f"Failed to generate answer: {e}")
            return self._refuse(question, topic, "completion_error", started, best_distance)

        if not answer_text.strip():
            logger.error("Completion service returned an empty answer")
            return self._refuse(question, topic, "empty_completion", started, best_distance)

        citations = dedupe_citations(relevant)
        log_query_event(
            self.audit, question, topic,
            refused=False,
            reason="answered",
            best_distance=best_distance,
            citations=[c.model_dump() for c in citations],
            execution_time_ms=(time.time() - started) * 1000,
        )
        logger.info(f"Answered from {len(relevant)} passages, {len(citations)} citations")
        return Answer(answer=answer_text, citations=citations, has_relevant_docs=True)
