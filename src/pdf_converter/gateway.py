import httpx
from pydantic import BaseModel

from pdf_converter.config import settings
from pdf_converter.errors import PermanentProcessingError, TransientProcessingError

_TRANSIENT_HTTP = {408, 425, 429, 500, 502, 503, 504}


class GatewayResult(BaseModel):
    text: str
    pages_actual: int
    partial: bool = False


class HttpProcessingGateway:
    """Client for the external document-processing service.

    One call is one attempt: retrying is the scheduler's decision, so
    timeouts and 5xx responses surface as ``TransientProcessingError``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout_sec: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.api_key = settings.gateway_api_key if api_key is None else api_key
        self.timeout_sec = timeout_sec or settings.gateway_timeout_sec
        self.transport = transport

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def process(self, file_bytes: bytes, document_type: str, filename: str = "document.pdf") -> GatewayResult:
        try:
            with httpx.Client(timeout=self.timeout_sec, transport=self.transport) as client:
                r = client.post(
                    f"{self.base_url}/v1/process",
                    headers=self._headers(),
                    data={"document_type": document_type},
                    files={"file": (filename, file_bytes, "application/pdf")},
                )
                r.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransientProcessingError(f"gateway timeout: {exc}", reason="GATEWAY_TIMEOUT") from exc
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            if code in _TRANSIENT_HTTP:
                raise TransientProcessingError(f"transient_http_{code}") from exc
            raise PermanentProcessingError(f"http_{code}: {exc.response.text[:250]}") from exc
        except httpx.TransportError as exc:
            raise TransientProcessingError(f"gateway unreachable: {exc}") from exc

        try:
            body = r.json()
            return GatewayResult(
                text=str(body.get("text") or ""),
                pages_actual=int(body["pages"]),
                partial=bool(body.get("partial", False)),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise PermanentProcessingError(f"invalid gateway response: {r.text[:250]}") from exc
