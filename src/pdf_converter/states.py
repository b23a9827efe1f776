from enum import Enum

from pdf_converter.errors import InvalidTransitionError


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_FILE


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_JOB


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"


class AuditAction(str, Enum):
    PAGE_PROCESSED = "page_processed"
    LIMIT_EXCEEDED = "limit_exceeded"
    SUBSCRIPTION_CHANGED = "subscription_changed"


class MergeFormat(str, Enum):
    COMBINED = "combined"
    SEPARATED = "separated"
    INDIVIDUAL = "individual"


class OutputFormat(str, Enum):
    TXT = "txt"
    MD = "md"


class DocumentType(str, Enum):
    STANDARD = "standard"
    LATEX = "latex"
    FORMS = "forms"


_TERMINAL_FILE = {FileStatus.COMPLETED, FileStatus.FAILED, FileStatus.SKIPPED}
_TERMINAL_JOB = {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}

# failed -> pending only happens through an explicit retry.
FILE_TRANSITIONS: dict[FileStatus, set[FileStatus]] = {
    FileStatus.PENDING: {FileStatus.PROCESSING, FileStatus.FAILED, FileStatus.SKIPPED},
    FileStatus.PROCESSING: {FileStatus.COMPLETED, FileStatus.FAILED, FileStatus.SKIPPED},
    FileStatus.FAILED: {FileStatus.PENDING},
    FileStatus.COMPLETED: set(),
    FileStatus.SKIPPED: set(),
}

# failed -> processing happens when a failed file is retried.
JOB_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.CANCELLED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: {JobStatus.PROCESSING},
    JobStatus.CANCELLED: set(),
}


def check_file_transition(current: str, target: str) -> FileStatus:
    src, dst = FileStatus(current), FileStatus(target)
    if dst not in FILE_TRANSITIONS[src]:
        raise InvalidTransitionError(f"file cannot move from {src.value} to {dst.value}")
    return dst


def check_job_transition(current: str, target: str) -> JobStatus:
    src, dst = JobStatus(current), JobStatus(target)
    if src == dst:
        return dst
    if dst not in JOB_TRANSITIONS[src]:
        raise InvalidTransitionError(f"job cannot move from {src.value} to {dst.value}")
    return dst
