"""Declared status edges for invoices and processing jobs.

Every status write in the orchestrator goes through ``check_invoice_transition``
or ``check_job_transition``; an undeclared edge is a programming error.
"""

from deklaro.db.models import InvoiceStatus, JobStatus

INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.UPLOADED: frozenset({InvoiceStatus.PROCESSING}),
    InvoiceStatus.PROCESSING: frozenset({InvoiceStatus.EXTRACTED, InvoiceStatus.FAILED}),
    InvoiceStatus.EXTRACTED: frozenset(
        {InvoiceStatus.VALIDATED, InvoiceStatus.NEEDS_REVIEW, InvoiceStatus.FAILED}
    ),
    InvoiceStatus.VALIDATED: frozenset(
        {InvoiceStatus.SUBMITTED, InvoiceStatus.REJECTED, InvoiceStatus.FAILED}
    ),
    InvoiceStatus.SUBMITTED: frozenset({InvoiceStatus.ACCEPTED, InvoiceStatus.REJECTED}),
    InvoiceStatus.NEEDS_REVIEW: frozenset({InvoiceStatus.UPLOADED}),
    InvoiceStatus.REJECTED: frozenset({InvoiceStatus.UPLOADED}),
    InvoiceStatus.FAILED: frozenset({InvoiceStatus.UPLOADED}),
    InvoiceStatus.ACCEPTED: frozenset(),
}

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.TEXT_EXTRACTED, JobStatus.FAILED}),
    JobStatus.TEXT_EXTRACTED: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# Invoice states an operator may send back to UPLOADED
REPROCESSABLE_STATUSES = frozenset(
    {InvoiceStatus.FAILED, InvoiceStatus.NEEDS_REVIEW, InvoiceStatus.REJECTED}
)


class InvalidTransitionError(RuntimeError):
    """Status change along an undeclared edge."""


def can_transition_invoice(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in INVOICE_TRANSITIONS[current]


def can_transition_job(current: JobStatus, target: JobStatus) -> bool:
    return target in JOB_TRANSITIONS[current]


def check_invoice_transition(current: InvoiceStatus, target: InvoiceStatus) -> None:
    if not can_transition_invoice(current, target):
        raise InvalidTransitionError(f"Invoice cannot move from {current.value} to {target.value}")


def check_job_transition(current: JobStatus, target: JobStatus) -> None:
    if not can_transition_job(current, target):
        raise InvalidTransitionError(f"Job cannot move from {current.value} to {target.value}")
