import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated
from uuid import uuid4

import fitz
from fastapi import BackgroundTasks, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError as PydanticValidationError

from pdf_converter import db
from pdf_converter.config import settings
from pdf_converter.errors import ConverterError, NotFoundError, ValidationError
from pdf_converter.pricing import price
from pdf_converter.scheduler import BatchJobScheduler
from pdf_converter.schemas import (
    AdminTopUpRequest,
    BatchOutputResponse,
    JobOptions,
    JobStatusUpdate,
    PlanChangeRequest,
)
from pdf_converter.states import AuditAction

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="PDF Text Converter", version=settings.app_version)
db.init_db()
Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
Path(settings.output_dir).mkdir(parents=True, exist_ok=True)

scheduler = BatchJobScheduler()


def envelope(data: dict | list | None, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"model_version": settings.app_version, "latency_ms": 0},
        "error": error,
    }


@app.exception_handler(ConverterError)
async def converter_error_handler(request: Request, exc: ConverterError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=envelope(None, status="error", error=exc.to_dict()))


def _require_admin(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def estimate_pages(data: bytes, filename: str) -> int:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
        pages = len(doc)
        doc.close()
    except Exception as exc:
        raise ValidationError(f"Invalid PDF {filename}: {exc}") from exc
    if pages > 0:
        return pages
    return max(1, math.ceil(len(data) / settings.estimate_bytes_per_page))


def _job_file(job_id: str, file_id: str) -> None:
    f = db.get_file(file_id)
    if not f or f["job_id"] != job_id:
        raise NotFoundError(f"batch file {file_id} not found in job {job_id}")


@app.get("/health")
def health() -> dict:
    return envelope({"service": "pdf-text-converter"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "pdf-text-converter", "version": settings.app_version})


@app.post("/v1/batch-jobs")
async def create_batch_job(
    background_tasks: BackgroundTasks,
    files: list[UploadFile] = File(...),
    account_id: str = Form(...),
    name: str = Form("batch"),
    description: str | None = Form(None),
    priority: int | None = Form(None),
    merge_output: bool = Form(False),
    merge_format: str | None = Form(None),
    output_format: str = Form("txt"),
    document_type: str = Form("standard"),
) -> dict:
    try:
        options = JobOptions(
            name=name,
            description=description,
            priority=priority,
            merge_output=merge_output,
            merge_format=merge_format or None,
            output_format=output_format,
            document_type=document_type,
        )
    except PydanticValidationError as exc:
        raise ValidationError(str(exc)) from exc

    if not files:
        raise ValidationError("a batch job needs at least one file")
    if len(files) > settings.max_files_per_job:
        raise ValidationError(f"Maximum {settings.max_files_per_job} files allowed per batch job")

    staged: list[dict] = []
    try:
        for upload in files:
            filename = upload.filename or "document.pdf"
            if not filename.lower().endswith(".pdf"):
                raise ValidationError(f"Invalid file type: {filename}. Only PDF files are allowed.")
            data = await upload.read()
            if len(data) > settings.max_file_mb * 1024 * 1024:
                raise ValidationError(f"File too large: {filename}. Maximum size is {settings.max_file_mb}MB.")
            pages = estimate_pages(data, filename)

            file_id = str(uuid4())
            input_path = Path(settings.upload_dir) / f"{file_id}.pdf"
            input_path.write_bytes(data)
            staged.append(
                {
                    "file_id": file_id,
                    "original_filename": filename,
                    "file_size_bytes": len(data),
                    "input_path": str(input_path),
                    "estimated_pages": pages,
                }
            )
        job = scheduler.create_job(account_id, staged, options)
    except ConverterError:
        for f in staged:
            Path(f["input_path"]).unlink(missing_ok=True)
        raise

    background_tasks.add_task(scheduler.dispatch_next, job.job_id)
    return envelope(job.model_dump())


@app.get("/v1/batch-jobs/{job_id}")
def get_batch_job(job_id: str) -> dict:
    return envelope(scheduler.get_job(job_id).model_dump())


@app.get("/v1/batch-jobs/{job_id}/files")
def list_batch_files(job_id: str) -> dict:
    return envelope([f.model_dump() for f in scheduler.list_files(job_id)])


@app.patch("/v1/batch-jobs/{job_id}/status")
def update_batch_job_status(job_id: str, payload: JobStatusUpdate, background_tasks: BackgroundTasks) -> dict:
    if payload.action == "cancel":
        return envelope(scheduler.cancel(job_id).model_dump())

    retried = scheduler.retry_failed(job_id)
    if retried:
        background_tasks.add_task(scheduler.dispatch_next, job_id)
    data = scheduler.get_job(job_id).model_dump()
    data["retried_files"] = retried
    return envelope(data)


@app.post("/v1/batch-jobs/{job_id}/files/{file_id}/retry")
def retry_batch_file(job_id: str, file_id: str, background_tasks: BackgroundTasks) -> dict:
    _job_file(job_id, file_id)
    f = scheduler.retry_file(file_id)
    background_tasks.add_task(scheduler.dispatch_next, job_id)
    return envelope(f.model_dump())


@app.delete("/v1/batch-jobs/{job_id}")
def delete_batch_job(job_id: str) -> dict:
    scheduler.delete_job(job_id)
    return envelope({"job_id": job_id, "deleted": True})


@app.get("/v1/batch-jobs/{job_id}/outputs")
def list_batch_outputs(job_id: str) -> dict:
    scheduler.get_job(job_id)
    return envelope([BatchOutputResponse(**o).model_dump() for o in db.list_outputs(job_id)])


@app.get("/v1/downloads/{token}")
def download_output(token: str):
    output = db.get_output_by_token(token)
    if not output:
        raise HTTPException(status_code=404, detail="Download not found")
    if datetime.fromisoformat(output["expires_at"]) < datetime.now(timezone.utc):
        raise HTTPException(status_code=410, detail="Download link expired")

    path = Path(output["file_path"])
    if not path.exists():
        raise HTTPException(status_code=404, detail="Output file not found")

    media_type = "application/zip" if path.suffix == ".zip" else "text/plain"
    return FileResponse(path=str(path), filename=output["filename"], media_type=media_type)


@app.get("/v1/accounts/{account_id}/usage")
def get_usage(account_id: str, action: AuditAction | None = Query(None), limit: int = Query(20, ge=1, le=200)) -> dict:
    snapshot = scheduler.ledger.snapshot(account_id)
    history = scheduler.audit.history(account_id=account_id, action=action, limit=limit)
    return envelope(
        {
            "usage": snapshot.model_dump(mode="json"),
            "recent_audit": [r.model_dump() for r in history],
        }
    )


@app.get("/v1/accounts/{account_id}/estimate")
def estimate_cost(account_id: str, pages: int = Query(..., ge=1)) -> dict:
    snapshot = scheduler.ledger.snapshot(account_id)
    quote = price(
        pages,
        snapshot.free_pages_remaining,
        snapshot.credit_balance_cents,
        settings.cost_per_page_cents,
        snapshot.subscription_pages_remaining,
    )
    return envelope({"quote": quote.model_dump(), "usage": snapshot.model_dump(mode="json")})


@app.post("/v1/admin/credits/top-up")
def admin_top_up(payload: AdminTopUpRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    snapshot = scheduler.ledger.top_up(payload.account_id, payload.amount_cents)
    logger.info("credit top-up: account=%s cents=%s note=%s", payload.account_id, payload.amount_cents, payload.note)
    return envelope(snapshot.model_dump(mode="json"))


@app.post("/v1/admin/accounts/{account_id}/plan")
def admin_change_plan(
    account_id: str,
    payload: PlanChangeRequest,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    snapshot = scheduler.ledger.change_plan(account_id, payload.plan, payload.period_end)
    return envelope(snapshot.model_dump(mode="json"))


@app.get("/v1/admin/jobs/stats")
def admin_job_stats(x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    return envelope(db.get_job_stats())


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
