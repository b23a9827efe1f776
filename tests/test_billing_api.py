from fastapi.testclient import TestClient

from pdf_converter.api.main import app

ADMIN = {"x-admin-token": "test-admin-token"}


def test_admin_top_up_and_usage() -> None:
    c = TestClient(app)

    payload = {"account_id": "acct-7", "amount_cents": 120, "note": "invoice 2026-10"}
    r = c.post('/v1/admin/credits/top-up', json=payload, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()['data']['credit_balance_cents'] == 120

    ru = c.get('/v1/accounts/acct-7/usage')
    assert ru.status_code == 200
    usage = ru.json()['data']['usage']
    assert usage['free_pages_remaining'] == 10
    assert usage['credit_balance_cents'] == 120
    assert usage['affordable_pages'] == 20
    assert usage['subscription_plan'] == 'free'


def test_top_up_rejects_non_positive_amount() -> None:
    c = TestClient(app)
    r = c.post('/v1/admin/credits/top-up', json={"account_id": "acct-7", "amount_cents": -5}, headers=ADMIN)
    assert r.status_code == 400
    assert r.json()['error']['code'] == 'VALIDATION_ERROR'


def test_estimate_matches_pricing() -> None:
    c = TestClient(app)
    c.post('/v1/admin/credits/top-up', json={"account_id": "acct-8", "amount_cents": 12}, headers=ADMIN)

    affordable = c.get('/v1/accounts/acct-8/estimate', params={"pages": 11}).json()['data']['quote']
    assert affordable['free_pages_used'] == 10
    assert affordable['paid_pages'] == 1
    assert affordable['total_cost_cents'] == 12
    assert affordable['affordable'] is True

    too_many = c.get('/v1/accounts/acct-8/estimate', params={"pages": 12}).json()['data']['quote']
    assert too_many['total_cost_cents'] == 24
    assert too_many['affordable'] is False


def test_usage_for_unknown_account_is_404() -> None:
    c = TestClient(app)
    r = c.get('/v1/accounts/nobody/usage')
    assert r.status_code == 404


def test_plan_change_is_audited() -> None:
    c = TestClient(app)
    c.post('/v1/admin/credits/top-up', json={"account_id": "acct-9", "amount_cents": 1}, headers=ADMIN)

    r = c.post('/v1/admin/accounts/acct-9/plan', json={"plan": "pro"}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()['data']['monthly_page_cap'] == 1000

    audit = c.get('/v1/accounts/acct-9/usage', params={"action": "subscription_changed"}).json()['data']
    assert [a['note'] for a in audit['recent_audit']] == ['free -> pro']


def test_admin_stats() -> None:
    c = TestClient(app)
    r = c.get('/v1/admin/jobs/stats', headers=ADMIN)
    assert r.status_code == 200
    assert r.json()['data']['job_count'] == 0


def test_admin_auth_required() -> None:
    c = TestClient(app)
    r = c.post('/v1/admin/credits/top-up', json={"account_id": "acct-1", "amount_cents": 10})
    assert r.status_code == 401
    assert c.get('/v1/admin/jobs/stats', headers={"x-admin-token": "wrong"}).status_code == 401
