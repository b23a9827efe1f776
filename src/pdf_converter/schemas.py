from pydantic import BaseModel, ConfigDict, Field

from pdf_converter.states import DocumentType, MergeFormat, OutputFormat, Plan


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    page_count: int
    free_pages_used: int
    subscription_pages_used: int = 0
    paid_pages: int
    total_cost_cents: int
    affordable: bool


class UsageSnapshot(BaseModel):
    account_id: str
    subscription_plan: Plan
    free_pages_remaining: int
    credit_balance_cents: int
    pages_used_this_period: int
    monthly_page_cap: int
    subscription_pages_remaining: int
    pages_used_total: int
    period_end: str
    cost_per_page_cents: int
    affordable_pages: int


class Reservation(BaseModel):
    reservation_id: str
    account_id: str
    batch_file_id: str | None = None
    status: str
    pages: int
    free_pages: int
    subscription_pages: int
    credit_pages: int
    credit_cents: int
    pages_before: int
    subscription_plan: Plan
    period_end: str
    created_at: str
    settled_at: str | None = None


class AuditRecord(BaseModel):
    id: int
    account_id: str
    action: str
    pages_count: int
    pages_before: int
    pages_after: int
    subscription_plan: str
    batch_file_id: str | None = None
    reservation_id: str | None = None
    note: str | None = None
    created_at: str


class JobOptions(BaseModel):
    name: str = "batch"
    description: str | None = None
    priority: int | None = None
    merge_output: bool = False
    merge_format: MergeFormat | None = None
    output_format: OutputFormat = OutputFormat.TXT
    document_type: DocumentType = DocumentType.STANDARD


class BatchJobResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    account_id: str
    name: str
    description: str | None = None
    status: str
    priority: int
    total_files: int
    processed_files: int
    failed_files: int
    skipped_files: int = 0
    estimated_pages: int
    processed_pages: int
    merge_output: bool
    merge_format: str
    output_format: str
    document_type: str
    error: str | None = None
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    updated_at: str


class BatchFileResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    file_id: str
    job_id: str
    position: int
    original_filename: str
    file_size_bytes: int
    estimated_pages: int
    actual_pages: int | None = None
    status: str
    attempts: int = 0
    error_code: str | None = None
    error_message: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


class BatchOutputResponse(BaseModel):
    output_id: str
    job_id: str
    merge_format: str
    filename: str
    file_size_bytes: int
    sha256: str
    download_token: str
    expires_at: str
    created_at: str


class JobStatusUpdate(BaseModel):
    action: str = Field(pattern="^(cancel|retry_failed)$")


class AdminTopUpRequest(BaseModel):
    account_id: str
    amount_cents: int
    note: str = "manual top-up"


class PlanChangeRequest(BaseModel):
    plan: Plan
    period_end: str | None = None
