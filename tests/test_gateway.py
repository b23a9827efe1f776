import httpx
import pytest

from pdf_converter.errors import PermanentProcessingError, TransientProcessingError
from pdf_converter.gateway import HttpProcessingGateway


def _gateway(handler) -> HttpProcessingGateway:
    return HttpProcessingGateway(
        base_url="http://gateway.test/",
        api_key="secret",
        timeout_sec=5,
        transport=httpx.MockTransport(handler),
    )


def test_process_success() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = request.content
        return httpx.Response(200, json={"text": "hello", "pages": 3})

    result = _gateway(handler).process(b"%PDF-1.4", "latex", "paper.pdf")

    assert result.text == "hello"
    assert result.pages_actual == 3
    assert not result.partial
    assert seen["url"] == "http://gateway.test/v1/process"
    assert seen["auth"] == "Bearer secret"
    assert b"paper.pdf" in seen["body"]
    assert b"latex" in seen["body"]


def test_timeout_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransientProcessingError) as exc_info:
        _gateway(handler).process(b"x", "standard")
    assert exc_info.value.reason == "GATEWAY_TIMEOUT"


def test_connection_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientProcessingError) as exc_info:
        _gateway(handler).process(b"x", "standard")
    assert exc_info.value.reason == "GATEWAY_UNAVAILABLE"


@pytest.mark.parametrize("status", [429, 502, 503])
def test_retryable_status_is_transient(status) -> None:
    with pytest.raises(TransientProcessingError):
        _gateway(lambda request: httpx.Response(status)).process(b"x", "standard")


def test_client_error_is_permanent() -> None:
    with pytest.raises(PermanentProcessingError) as exc_info:
        _gateway(lambda request: httpx.Response(422, json={"detail": "not a pdf"})).process(b"x", "standard")
    assert "http_422" in exc_info.value.message


def test_malformed_body_is_permanent() -> None:
    with pytest.raises(PermanentProcessingError):
        _gateway(lambda request: httpx.Response(200, json={"text": "no page count"})).process(b"x", "standard")
