import pytest
from pydantic import ValidationError

from folio.core.errors import (
    DocumentNotFoundError,
    ExtractionError,
    FolioError,
    InvalidTransitionError,
    QueryValidationError,
    CallerError,
)
from folio.core.models import (
    DOCUMENT_TRANSITIONS,
    JOB_TRANSITIONS,
    Chunk,
    DocumentStatus,
    IngestionJob,
    JobStatus,
    sources_for,
)


@pytest.mark.parametrize("current,target", [
    (DocumentStatus.PENDING, DocumentStatus.PROCESSING),
    (DocumentStatus.PENDING, DocumentStatus.FAILED),
    (DocumentStatus.PROCESSING, DocumentStatus.COMPLETE),
    (DocumentStatus.PROCESSING, DocumentStatus.FAILED),
])
def test_allowed_document_transitions(current, target):
    assert current.transition(target) == target


@pytest.mark.parametrize("current,target", [
    (DocumentStatus.PENDING, DocumentStatus.COMPLETE),
    (DocumentStatus.COMPLETE, DocumentStatus.FAILED),
    (DocumentStatus.FAILED, DocumentStatus.PROCESSING),
    (DocumentStatus.PROCESSING, DocumentStatus.PENDING),
])
def test_illegal_document_transitions(current, target):
    with pytest.raises(InvalidTransitionError) as excinfo:
        current.transition(target)
    assert str(excinfo.value) == f"Illegal document transition: {current.value} -> {target.value}"


def test_job_state_machine():
    status = JobStatus.PROCESSING.transition(JobStatus.COMMITTING)
    assert status.transition(JobStatus.COMPLETE) == JobStatus.COMPLETE
    assert JobStatus.COMMITTING.can_transition_to(JobStatus.FAILED)
    assert not JobStatus.PROCESSING.can_transition_to(JobStatus.COMPLETE)
    with pytest.raises(InvalidTransitionError):
        JobStatus.COMPLETE.transition(JobStatus.FAILED)


def test_every_status_has_a_transition_entry():
    assert set(DOCUMENT_TRANSITIONS) == set(DocumentStatus)
    assert set(JOB_TRANSITIONS) == set(JobStatus)
    assert {s for s in DocumentStatus if s.is_terminal} == {DocumentStatus.COMPLETE, DocumentStatus.FAILED}
    assert {s for s in JobStatus if s.is_terminal} == {JobStatus.COMPLETE, JobStatus.FAILED}


def test_sources_for():
    assert sorted(sources_for(JobStatus.FAILED, JOB_TRANSITIONS)) == ["committing", "processing"]
    assert sources_for(DocumentStatus.COMPLETE, DOCUMENT_TRANSITIONS) == ["processing"]


def test_job_progress():
    job = IngestionJob(id="j", document_id="d", total_workers=4, completed_workers=1)
    assert job.progress == 0.25


def test_chunk_validation():
    base = dict(id="c", document_id="d", topic="t", embedding=[0.1], chunk_index=0)
    with pytest.raises(ValidationError):
        Chunk(text="text", title="Title", page_number=0, **base)
    with pytest.raises(ValidationError):
        Chunk(text="   ", title="Title", page_number=1, **base)
    with pytest.raises(ValidationError):
        Chunk(text="text", title="", page_number=1, **base)


def test_error_hierarchy():
    assert issubclass(QueryValidationError, CallerError)
    assert issubclass(CallerError, FolioError)
    assert str(ExtractionError("bad page", page=3)) == "bad page (page 3)"
    assert str(DocumentNotFoundError("abc")) == "Document abc not found"
