"""Assemble per-file results into a job's deliverable.

Rendering is a pure function of the job row and the completed files' text,
so rebuilding the same job yields the same bytes. Nothing time-dependent is
written into the output, and archive members carry a fixed timestamp.
"""

import hashlib
import re
import shutil
import zipfile
from pathlib import Path

from pydantic import BaseModel

from pdf_converter.config import settings
from pdf_converter.errors import NoCompletedFilesError, NotFoundError
from pdf_converter.states import FileStatus, MergeFormat, OutputFormat

FILE_RULE = "=" * 80
TEXT_RULE = "-" * 40
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class MergedArtifact(BaseModel):
    filename: str
    path: str
    file_size_bytes: int
    sha256: str


def _slug(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]+", "-", name).strip("-").lower() or "file"


def _stem(filename: str) -> str:
    return _slug(Path(filename).stem)


def _render_txt_section(index: int, f: dict, text: str) -> str:
    return (
        f"## File {index}: {f['original_filename']}\n"
        f"Pages: {f['actual_pages']}\n"
        f"\n{TEXT_RULE}\n\n"
        f"{text.strip() or '[No text extracted]'}\n"
    )


def _render_md_section(index: int, f: dict, text: str) -> str:
    return (
        f"## File {index}: {f['original_filename']}\n\n"
        f"**Pages:** {f['actual_pages']}\n\n"
        f"{text.strip() or '_No text extracted_'}\n"
    )


def render_combined(job: dict, parts: list[tuple[dict, str]]) -> str:
    name = job["name"]
    if job["output_format"] == OutputFormat.MD.value:
        out = [f"# Batch Processing Results: {name}\n\n", f"**Total Files:** {len(parts)}\n\n", "## Table of Contents\n\n"]
        for i, (f, _) in enumerate(parts, start=1):
            out.append(f"{i}. [{f['original_filename']}](#file-{i}-{_slug(f['original_filename'])})\n")
        out.append("\n---\n\n")
        for i, (f, text) in enumerate(parts, start=1):
            out.append(_render_md_section(i, f, text))
            out.append("\n---\n\n")
        return "".join(out)

    out = [f"# Batch Processing Results: {name}\n", f"Total Files: {len(parts)}\n", f"\n{FILE_RULE}\n\n"]
    for i, (f, text) in enumerate(parts, start=1):
        out.append(_render_txt_section(i, f, text))
        out.append(f"\n{FILE_RULE}\n\n")
    return "".join(out)


def render_single(job: dict, index: int, f: dict, text: str) -> str:
    if job["output_format"] == OutputFormat.MD.value:
        return _render_md_section(index, f, text)
    return _render_txt_section(index, f, text)


class MergeOutputBuilder:
    def __init__(self, output_dir: str | None = None) -> None:
        self._output_dir = output_dir

    @property
    def output_dir(self) -> Path:
        return Path(self._output_dir or settings.output_dir)

    def _completed_parts(self, files: list[dict]) -> list[tuple[dict, str]]:
        parts = []
        for f in sorted(files, key=lambda x: x["position"]):
            if f["status"] != FileStatus.COMPLETED.value:
                continue
            path = Path(f["output_path"] or "")
            if not f["output_path"] or not path.exists():
                raise NotFoundError(f"extracted text for {f['original_filename']} is missing")
            parts.append((f, path.read_text(encoding="utf-8")))
        return parts

    def build(self, job: dict, files: list[dict]) -> list[MergedArtifact]:
        parts = self._completed_parts(files)
        if not parts:
            raise NoCompletedFilesError(f"job {job['job_id']} has no completed files")

        target = self.output_dir / job["job_id"] / "deliverable"
        if target.exists():
            shutil.rmtree(target)
        target.mkdir(parents=True)

        ext = OutputFormat(job["output_format"]).value
        fmt = MergeFormat(job["merge_format"])
        base = _slug(job["name"])

        if fmt == MergeFormat.COMBINED:
            written = [self._write(target / f"{base}.{ext}", render_combined(job, parts).encode("utf-8"))]
        elif fmt == MergeFormat.SEPARATED:
            written = [
                self._write(
                    target / f"{i:03d}_{_stem(f['original_filename'])}.{ext}",
                    render_single(job, i, f, text).encode("utf-8"),
                )
                for i, (f, text) in enumerate(parts, start=1)
            ]
        else:
            archive = target / f"{base}.zip"
            with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for i, (f, text) in enumerate(parts, start=1):
                    info = zipfile.ZipInfo(f"{i:03d}_{_stem(f['original_filename'])}.{ext}", date_time=_ZIP_EPOCH)
                    info.compress_type = zipfile.ZIP_DEFLATED
                    info.external_attr = 0o644 << 16
                    zf.writestr(info, render_single(job, i, f, text).encode("utf-8"))
            written = [self._describe(archive)]

        return written

    def _write(self, path: Path, data: bytes) -> MergedArtifact:
        path.write_bytes(data)
        return self._describe(path)

    def _describe(self, path: Path) -> MergedArtifact:
        data = path.read_bytes()
        return MergedArtifact(
            filename=path.name,
            path=str(path),
            file_size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
        )
