import threading

import pytest

from pdf_converter import config
from pdf_converter.db import init_db
from pdf_converter.errors import TransientProcessingError
from pdf_converter.gateway import GatewayResult


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    db_path = tmp_path / "converter.db"
    upload_dir = tmp_path / "uploads"
    output_dir = tmp_path / "outputs"
    upload_dir.mkdir(parents=True, exist_ok=True)
    output_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setattr(config.settings, "database_path", str(db_path))
    monkeypatch.setattr(config.settings, "upload_dir", str(upload_dir))
    monkeypatch.setattr(config.settings, "output_dir", str(output_dir))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "free_pages_default", 10)
    monkeypatch.setattr(config.settings, "cost_per_page_cents", 12)
    monkeypatch.setattr(config.settings, "max_file_attempts", 2)
    monkeypatch.setattr(config.settings, "retry_backoff_sec", 0)

    init_db()
    yield


class FakeGateway:
    """Scripted stand-in for the processing service.

    ``script`` maps a filename to a list of outcomes consumed one per call;
    a filename without a script returns its page count from ``pages``.
    """

    def __init__(self, pages: dict[str, int] | None = None, script: dict[str, list] | None = None) -> None:
        self.pages = pages or {}
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def process(self, file_bytes: bytes, document_type: str, filename: str = "document.pdf") -> GatewayResult:
        with self._lock:
            self.calls.append(filename)
            queued = self.script.get(filename)
            outcome = queued.pop(0) if queued else None
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, GatewayResult):
            return outcome
        return GatewayResult(text=f"text of {filename}", pages_actual=self.pages.get(filename, 1))


def timeout_error() -> TransientProcessingError:
    return TransientProcessingError("gateway timed out", reason="GATEWAY_TIMEOUT")


@pytest.fixture
def fake_gateway():
    return FakeGateway()
