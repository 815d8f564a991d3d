from fastapi.testclient import TestClient

from genqueue import ledger
from genqueue.api.main import app

ADMIN = {"x-admin-token": "test-admin-token"}


def test_admin_grant_and_balance() -> None:
    c = TestClient(app)

    payload = {
        "account_id": "acct-1",
        "amount": 100,
        "note": "manual top-up",
        "external_ref": "ORDER-12345-1",
    }
    r = c.post('/v1/admin/credits/grant', json=payload, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()['data']['balance'] == 100

    rb = c.get('/v1/credits/acct-1')
    assert rb.status_code == 200
    data = rb.json()['data']
    assert data['balance']['balance'] == 100
    assert data['balance']['total_earned'] == 100
    assert data['balance']['total_spent'] == 0
    assert data['recent_transactions'][0]['kind'] == 'purchase'
    assert data['recent_transactions'][0]['metadata'] == {"external_ref": "ORDER-12345-1"}


def test_balance_reflects_spends() -> None:
    ledger.grant("acct-2", 20, "grant")
    ledger.spend("acct-2", 8, "image generation", {"job_id": "job-1"})

    data = TestClient(app).get('/v1/credits/acct-2').json()['data']
    assert data['balance']['balance'] == 12
    assert data['balance']['total_spent'] == 8
    assert [t['kind'] for t in data['recent_transactions']] == ['spend', 'purchase']
    assert data['recent_transactions'][0]['job_id'] == 'job-1'


def test_unknown_account_is_empty() -> None:
    data = TestClient(app).get('/v1/credits/nobody').json()['data']
    assert data['balance']['balance'] == 0
    assert data['recent_transactions'] == []


def test_admin_auth_required() -> None:
    c = TestClient(app)
    r = c.post('/v1/admin/credits/grant', json={"account_id": "acct-1", "amount": 10, "note": "x"})
    assert r.status_code == 401
    r = c.get('/v1/admin/jobs/stats', headers={"x-admin-token": "wrong"})
    assert r.status_code == 401


def test_grant_rejects_non_positive_amount() -> None:
    c = TestClient(app)
    r = c.post('/v1/admin/credits/grant', json={"account_id": "acct-1", "amount": 0}, headers=ADMIN)
    assert r.status_code == 400
    body = r.json()
    assert body['status'] == 'error'
    assert body['error']['type'] == 'ValidationError'
    assert ledger.get_balance("acct-1") == 0


def test_grant_rejects_spend_kind() -> None:
    c = TestClient(app)
    r = c.post(
        '/v1/admin/credits/grant',
        json={"account_id": "acct-1", "amount": 5, "kind": "spend"},
        headers=ADMIN,
    )
    assert r.status_code == 400
