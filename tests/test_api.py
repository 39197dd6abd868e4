"""HTTP API: issuance, DNS validation, status polling and domain SSL settings."""

from __future__ import annotations

import time

import httpx
import pytest
from fastapi.testclient import TestClient

from certflow import create_app
from certflow.db import sqlite_domains as domains_db
from certflow.db.sqlite_runtime import open_connection
from certflow.ssl.errors import CAError
from certflow.ssl.types import SubmitResult
from certflow.utils.config import Config
from certflow.utils.rate_limit import limiter

from conftest import FakeIssuer

API_TOKEN = "test-token"


def _create_domain(db_path, hostname: str, *, verified: bool = True) -> str:
    with open_connection(db_path) as conn:
        return domains_db.create_domain(conn, hostname, "project-1", verified=verified)


def _wait_status(client: TestClient, cert_id: str, status: str, timeout: float = 3.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/acme/status/{cert_id}").json()
        if body["certificate_status"] == status:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"cert {cert_id} stuck in {body['certificate_status']}, expected {status}")
        time.sleep(0.02)


@pytest.fixture()
def api_issuer() -> FakeIssuer:
    return FakeIssuer()


@pytest.fixture()
def internal_secret() -> str:
    return ""


@pytest.fixture()
def client(tmp_path, db_path, api_issuer, internal_secret):
    cfg = Config(
        base_dir=tmp_path,
        data_dir=tmp_path,
        db_path=db_path,
        poll_interval=0.01,
        poll_timeout=3.0,
        hostname_guard=False,
        api_token=API_TOKEN,
        internal_secret=internal_secret,
    )
    limiter.enabled = False
    app = create_app(cfg, issuer=api_issuer)
    try:
        with TestClient(app, headers={"Authorization": f"Bearer {API_TOKEN}"}) as test_client:
            yield test_client
    finally:
        limiter.enabled = True
    # An injected issuer belongs to the caller
    assert api_issuer.closed is False


@pytest.fixture()
def domain_id(db_path) -> str:
    return _create_domain(db_path, "docs.example.com")


# ---------------------------------------------------------------------------
# Authentication and plumbing
# ---------------------------------------------------------------------------


def test_missing_or_wrong_token_is_rejected(client, domain_id):
    resp = client.post(
        "/api/acme/issue",
        json={"domain_id": domain_id},
        headers={"Authorization": "Bearer wrong"},
    )
    assert resp.status_code == 401


def test_challenge_endpoint_is_public(client):
    resp = client.get("/.well-known/acme-challenge/unknown-token", headers={"Authorization": ""})
    assert resp.status_code == 404


def test_request_id_is_echoed(client):
    resp = client.get("/api/acme/health", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"

    minted = client.get("/api/acme/health", headers={"X-Request-ID": "bad id with spaces"})
    assert minted.headers["X-Request-ID"] != "bad id with spaces"


def test_invalid_domain_id_is_a_validation_error(client):
    resp = client.post("/api/acme/issue", json={"domain_id": "not-an-id"})
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# HTTP-01
# ---------------------------------------------------------------------------


def test_http01_issue_serve_challenge_and_complete(client, api_issuer, domain_id):
    api_issuer.ticks_to_issue = None
    resp = client.post("/api/acme/issue", json={"domain_id": domain_id, "challenge_type": "HTTP01"})

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "ok"
    assert body["resumed"] is False
    assert body["certificate_status"] == "PENDING_HTTP01"
    assert body["dns_record"] is None
    cert_id = body["cert_id"]

    token = f"token-{body['data']['order_id']}"
    challenge = client.get(f"/.well-known/acme-challenge/{token}")
    assert challenge.status_code == 200
    assert challenge.text == f"{token}.thumbprint"

    status = client.get(f"/api/acme/status/{cert_id}").json()
    assert status["status"] == "ok"
    assert status["data"]["polling"] is True

    api_issuer.ticks_to_issue = 1
    done = _wait_status(client, cert_id, "ISSUED")
    assert done["error"] is None
    assert done["data"]["expires_at"].endswith("Z")

    # Tokens are cleared once the certificate leaves the pending state
    assert client.get(f"/.well-known/acme-challenge/{token}").status_code == 404


def test_second_issue_resumes_pending(client, api_issuer, domain_id):
    api_issuer.ticks_to_issue = None
    first = client.post("/api/acme/issue", json={"domain_id": domain_id}).json()

    resp = client.post("/api/acme/issue", json={"domain_id": domain_id})

    assert resp.status_code == 200
    assert resp.json()["resumed"] is True
    assert resp.json()["cert_id"] == first["cert_id"]
    assert len(api_issuer.requested) == 1


def test_unverified_domain_is_a_precondition_failure(client, db_path):
    unverified = _create_domain(db_path, "blog.example.org", verified=False)

    resp = client.post("/api/acme/issue", json={"domain_id": unverified})

    assert resp.status_code == 400
    assert resp.json() == {
        "status": "error",
        "error": "Domain must be verified before requesting a certificate",
        "code": "PreconditionFailed",
    }


def test_unknown_certificate_status_is_404(client):
    resp = client.get(f"/api/acme/status/{'f' * 32}")
    assert resp.status_code == 404
    assert resp.json()["code"] == "CertificateNotFound"


def test_ca_rejection_is_a_bad_gateway(client, api_issuer, domain_id):
    api_issuer.order_error = CAError("rejectedIdentifier: policy forbids issuing for name")

    resp = client.post("/api/acme/issue", json={"domain_id": domain_id})

    assert resp.status_code == 502
    assert "rejectedIdentifier" in resp.json()["error"]


def test_cancel_issuance(client, api_issuer, domain_id):
    api_issuer.ticks_to_issue = None
    cert_id = client.post("/api/acme/issue", json={"domain_id": domain_id}).json()["cert_id"]

    resp = client.post(f"/api/acme/cancel/{cert_id}")
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "CANCELLED"

    again = client.post(f"/api/acme/cancel/{cert_id}")
    assert again.status_code == 400
    assert again.json()["code"] == "InvalidTransition"


# ---------------------------------------------------------------------------
# DNS-01
# ---------------------------------------------------------------------------


def test_dns01_flow_with_propagation_retry(client, api_issuer, domain_id):
    api_issuer.submit_script = [SubmitResult(ok=False, not_yet_propagated=True)]
    body = client.post("/api/acme/issue", json={"domain_id": domain_id, "challenge_type": "DNS01"}).json()

    assert body["certificate_status"] == "PENDING_DNS01"
    assert body["dns_record"]["type"] == "TXT"
    assert body["dns_record"]["name"] == "_acme-challenge.docs.example.com"
    cert_id = body["cert_id"]

    early = client.post("/api/acme/verify-dns", json={"cert_id": cert_id})
    assert early.status_code == 202
    assert early.json()["status"] == "pending"
    assert early.json()["retry"] is True
    assert early.json()["attempts"] == 1
    assert early.json()["max_attempts"] == 20
    assert client.get(f"/api/acme/status/{cert_id}").json()["certificate_status"] == "PENDING_DNS01"

    ok = client.post("/api/acme/verify-dns", json={"cert_id": cert_id})
    assert ok.status_code == 200
    assert ok.json()["result"] == "ok"

    _wait_status(client, cert_id, "ISSUED")


def test_verify_dns_on_http01_certificate(client, api_issuer, domain_id):
    api_issuer.ticks_to_issue = None
    cert_id = client.post("/api/acme/issue", json={"domain_id": domain_id}).json()["cert_id"]

    resp = client.post("/api/acme/verify-dns", json={"cert_id": cert_id})
    assert resp.status_code == 400


def test_verify_dns_while_acme_service_is_down(client, api_issuer, domain_id):
    api_issuer.submit_script = [httpx.ReadTimeout("timed out")]
    cert_id = client.post(
        "/api/acme/issue", json={"domain_id": domain_id, "challenge_type": "DNS01"}
    ).json()["cert_id"]

    resp = client.post("/api/acme/verify-dns", json={"cert_id": cert_id})
    assert resp.status_code == 503
    assert resp.json()["status"] == "error"
    assert resp.json()["code"] == "IssuerUnavailable"
    assert resp.json()["retry"] is True
    assert client.get(f"/api/acme/status/{cert_id}").json()["certificate_status"] == "PENDING_DNS01"


# ---------------------------------------------------------------------------
# Renew / revoke / history
# ---------------------------------------------------------------------------


def test_renew_conflict_and_revoke(client, api_issuer, domain_id):
    cert_id = client.post("/api/acme/issue", json={"domain_id": domain_id}).json()["cert_id"]
    _wait_status(client, cert_id, "ISSUED")

    api_issuer.ticks_to_issue = None
    renewal = client.post(f"/api/acme/renew/{cert_id}")
    assert renewal.status_code == 201
    renewal_id = renewal.json()["cert_id"]
    assert renewal.json()["renewed_from"] == cert_id

    conflict = client.post(f"/api/acme/renew/{cert_id}")
    assert conflict.status_code == 409
    assert conflict.json()["existing_cert_id"] == renewal_id

    revoked = client.post(f"/api/acme/revoke/{cert_id}")
    assert revoked.status_code == 200
    assert revoked.json()["data"]["status"] == "REVOKED"

    history = client.get(f"/api/acme/domains/{domain_id}/certificates").json()["data"]
    assert {c["id"] for c in history} == {cert_id, renewal_id}
    assert all("certificate_pem" not in c for c in history)


def test_health_and_manual_renewal_run(client):
    health = client.get("/api/acme/health").json()
    assert health["is_leader"] is True
    assert health["data"]["total"] == 0
    assert {job["name"] for job in health["jobs"]} >= {"cert-renewal", "pending-recovery", "leader-heartbeat"}

    run = client.post("/api/acme/renewal/run").json()
    assert run["data"] == {"checked": 0, "renewed": 0, "skipped": 0, "failed": 0, "errors": []}


# ---------------------------------------------------------------------------
# Domain SSL settings
# ---------------------------------------------------------------------------


def test_domain_ssl_settings(client, domain_id):
    summary = client.get(f"/api/custom-domains/{domain_id}/ssl").json()["data"]
    assert summary["hostname"] == "docs.example.com"
    assert summary["ssl_mode"] == "NONE"
    assert summary["active_certificate"] is None

    mode = client.post(f"/api/custom-domains/{domain_id}/ssl/mode", json={"ssl_mode": "LETS_ENCRYPT"}).json()
    assert mode["needs_issuance"] is True

    blocked = client.post(f"/api/custom-domains/{domain_id}/ssl/toggle-https", json={"force_https": True})
    assert blocked.status_code == 400

    cert_id = client.post("/api/acme/issue", json={"domain_id": domain_id}).json()["cert_id"]
    _wait_status(client, cert_id, "ISSUED")

    enabled = client.post(f"/api/custom-domains/{domain_id}/ssl/toggle-https", json={"force_https": True})
    assert enabled.status_code == 200
    assert enabled.json()["force_https"] is True

    summary = client.get(f"/api/custom-domains/{domain_id}/ssl").json()["data"]
    assert summary["force_https"] is True
    assert summary["active_certificate"]["id"] == cert_id


def test_unknown_domain_settings_is_404(client):
    resp = client.get(f"/api/custom-domains/{'0' * 32}/ssl")
    assert resp.status_code == 404
    assert resp.json()["code"] == "DomainNotFound"


# ---------------------------------------------------------------------------
# Internal certificate bundle
# ---------------------------------------------------------------------------

INTERNAL_SECRET = "agent-secret"


def test_bundle_endpoint_disabled_without_secret(client):
    resp = client.get("/api/internal/cert/docs.example.com", headers={"X-Internal-Secret": "anything"})
    assert resp.status_code == 503


@pytest.mark.parametrize("internal_secret", [INTERNAL_SECRET])
def test_bundle_endpoint_rejects_wrong_secret(client, domain_id):
    assert client.get("/api/internal/cert/docs.example.com").status_code == 401
    resp = client.get("/api/internal/cert/docs.example.com", headers={"X-Internal-Secret": "wrong"})
    assert resp.status_code == 401


@pytest.mark.parametrize("internal_secret", [INTERNAL_SECRET])
def test_bundle_served_once_issued(client, api_issuer, domain_id):
    headers = {"X-Internal-Secret": INTERNAL_SECRET}
    assert client.get("/api/internal/cert/docs.example.com", headers=headers).status_code == 404
    assert client.get("/api/internal/cert/unknown.example.com", headers=headers).status_code == 404

    cert_id = client.post("/api/acme/issue", json={"domain_id": domain_id}).json()["cert_id"]
    _wait_status(client, cert_id, "ISSUED")

    # The domain switches to managed SSL right after the terminal write
    deadline = time.monotonic() + 3.0
    resp = client.get("/api/internal/cert/Docs.Example.com", headers=headers)
    while resp.status_code == 404 and time.monotonic() < deadline:
        time.sleep(0.02)
        resp = client.get("/api/internal/cert/Docs.Example.com", headers=headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["cert_id"] == cert_id
    assert body["certificate"].startswith("-----BEGIN CERTIFICATE-----")
    assert body["expires_at"].endswith("Z")
    assert "private_key" not in body
