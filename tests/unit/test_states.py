"""Unit tests for declared invoice and job status edges."""

import pytest

from deklaro.db.models import InvoiceStatus, JobStatus
from deklaro.orchestrator.states import (
    INVOICE_TRANSITIONS,
    JOB_TRANSITIONS,
    REPROCESSABLE_STATUSES,
    InvalidTransitionError,
    can_transition_invoice,
    can_transition_job,
    check_invoice_transition,
    check_job_transition,
)


def test_every_status_has_declared_edges() -> None:
    assert set(INVOICE_TRANSITIONS) == set(InvoiceStatus)
    assert set(JOB_TRANSITIONS) == set(JobStatus)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (InvoiceStatus.UPLOADED, InvoiceStatus.PROCESSING),
        (InvoiceStatus.PROCESSING, InvoiceStatus.EXTRACTED),
        (InvoiceStatus.EXTRACTED, InvoiceStatus.VALIDATED),
        (InvoiceStatus.EXTRACTED, InvoiceStatus.NEEDS_REVIEW),
        (InvoiceStatus.VALIDATED, InvoiceStatus.SUBMITTED),
        (InvoiceStatus.SUBMITTED, InvoiceStatus.ACCEPTED),
        (InvoiceStatus.SUBMITTED, InvoiceStatus.REJECTED),
        (InvoiceStatus.FAILED, InvoiceStatus.UPLOADED),
    ],
)
def test_declared_invoice_edges(current: InvoiceStatus, target: InvoiceStatus) -> None:
    assert can_transition_invoice(current, target)
    check_invoice_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (InvoiceStatus.UPLOADED, InvoiceStatus.VALIDATED),
        (InvoiceStatus.PROCESSING, InvoiceStatus.SUBMITTED),
        (InvoiceStatus.NEEDS_REVIEW, InvoiceStatus.VALIDATED),
        (InvoiceStatus.SUBMITTED, InvoiceStatus.FAILED),
        (InvoiceStatus.ACCEPTED, InvoiceStatus.UPLOADED),
    ],
)
def test_undeclared_invoice_edges(current: InvoiceStatus, target: InvoiceStatus) -> None:
    assert not can_transition_invoice(current, target)
    with pytest.raises(InvalidTransitionError, match=f"from {current.value} to {target.value}"):
        check_invoice_transition(current, target)


def test_accepted_is_terminal() -> None:
    assert INVOICE_TRANSITIONS[InvoiceStatus.ACCEPTED] == frozenset()


def test_job_lifecycle() -> None:
    path = [JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.TEXT_EXTRACTED, JobStatus.COMPLETED]
    for current, target in zip(path, path[1:]):
        check_job_transition(current, target)

    for status in (JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.TEXT_EXTRACTED):
        assert can_transition_job(status, JobStatus.FAILED)


def test_finished_jobs_are_terminal() -> None:
    with pytest.raises(InvalidTransitionError):
        check_job_transition(JobStatus.COMPLETED, JobStatus.PROCESSING)
    with pytest.raises(InvalidTransitionError):
        check_job_transition(JobStatus.FAILED, JobStatus.QUEUED)


def test_reprocessable_statuses_lead_back_to_uploaded() -> None:
    for status in REPROCESSABLE_STATUSES:
        assert can_transition_invoice(status, InvoiceStatus.UPLOADED)
    assert InvoiceStatus.ACCEPTED not in REPROCESSABLE_STATUSES
