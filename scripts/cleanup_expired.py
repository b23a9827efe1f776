import shutil
from pathlib import Path

from pdf_converter.config import settings
from pdf_converter.db import delete_outputs, list_expired_jobs, list_files, mark_job_cleaned


def main() -> int:
    jobs = list_expired_jobs()
    cleaned = 0
    for job in jobs:
        if job["status"] in {"pending", "processing"}:
            continue
        for f in list_files(job["job_id"]):
            p = Path(f["input_path"])
            if p.exists():
                try:
                    p.unlink()
                except OSError:
                    pass
        shutil.rmtree(Path(settings.output_dir) / job["job_id"], ignore_errors=True)
        delete_outputs(job["job_id"])
        mark_job_cleaned(job["job_id"])
        cleaned += 1

    print(f"Expired jobs cleaned: {cleaned}")
    return cleaned


if __name__ == "__main__":
    main()
