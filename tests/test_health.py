from fastapi.testclient import TestClient

from pdf_converter.api.main import app


def test_health() -> None:
    c = TestClient(app)
    r = c.get('/health')
    assert r.status_code == 200
    body = r.json()
    assert body['status'] == 'ok'
    assert body['data']['service'] == 'pdf-text-converter'


def test_run_serves_app_on_configured_address(monkeypatch) -> None:
    import uvicorn

    from pdf_converter.api import main

    calls = []
    monkeypatch.setattr(uvicorn, 'run', lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setattr(main.settings, 'api_host', '127.0.0.1')
    monkeypatch.setattr(main.settings, 'api_port', 9123)

    main.run()

    assert len(calls) == 1
    served, kwargs = calls[0]
    assert served is main.app
    assert kwargs['host'] == '127.0.0.1'
    assert kwargs['port'] == 9123
