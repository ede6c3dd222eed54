from fastapi.testclient import TestClient

from educhain.main import create_app

from conftest import PDF, STUDENT


FORM = {
    "studentAddress": STUDENT,
    "studentName": "Ada Lovelace",
    "courseName": "Analytical Engines",
    "grade": "A",
    "completionDate": "2026-06-30",
    "certificateType": "Academic",
}


def issue(client, headers, form=None, artifact=PDF):
    files = {"artifact": ("diploma.pdf", artifact, "application/pdf")} if artifact is not None else None
    return client.post("/certificates/issue", data=form or FORM, files=files, headers=headers)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert "X-Request-ID" in r.headers

def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"

# Scenario A: verified institution issues a certificate
def test_issue(client, auth):
    r = issue(client, auth())
    assert r.status_code == 201
    cert = r.json()["certificate"]
    assert cert["mintState"] == "unminted"
    assert cert["isValid"] is True
    assert cert["issuerId"] == "inst-1"
    assert cert["studentAddress"] == STUDENT
    assert len(cert["contentHash"]) == 64

    usage = client.get("/subscription/usage", headers=auth()).json()
    assert usage["usage"]["certificatesIssued"] == 1
    assert usage["usage"]["storageBytesUsed"] == len(PDF)
    assert usage["canIssue"] is True

def test_issue_requires_session(client):
    r = issue(client, {})
    assert r.status_code == 401
    assert r.json()["error"] == "UNAUTHORIZED"

# Scenario E: unverified institution without a trial plan
def test_unverified_non_trial_denied(client, auth):
    r = issue(client, auth(verified=False, plan="basic"))
    assert r.status_code == 403
    assert r.json()["error"] == "NOT_VERIFIED"
    listing = client.get("/certificates/institution", headers=auth()).json()
    assert listing == {"certificates": []}

def test_no_subscription(client, auth):
    r = issue(client, auth(plan=None))
    assert r.status_code == 403
    assert r.json()["error"] == "NO_ACTIVE_SUBSCRIPTION"

def test_missing_field_and_artifact(client, auth):
    form = dict(FORM)
    del form["studentName"]
    r = issue(client, auth(), form=form)
    assert r.status_code == 400
    assert r.json()["error"] == "MISSING_FIELD"
    assert r.json()["field"] == "studentName"

    r = issue(client, auth(), artifact=None)
    assert r.status_code == 400
    assert r.json()["error"] == "MISSING_ARTIFACT"

def test_quota_exceeded(db, ledger, content, trust_store, plans, auth):
    tight = dict(plans)
    tight["basic"] = plans["basic"].model_copy(update={"certificate_limit": 1})
    client = TestClient(create_app(db=db, ledger=ledger, content=content,
                                   trust_store=trust_store, plans=tight))
    assert issue(client, auth()).status_code == 201
    r = issue(client, auth())
    assert r.status_code == 403
    body = r.json()
    assert body["error"] == "QUOTA_EXCEEDED"
    assert body["upgradeRequired"] is True
    assert body["message"] == "Monthly certificate limit reached"

# Scenario B: mint with a differently-cased wallet
def test_mint_and_lookups(client, auth):
    cert = issue(client, auth()).json()["certificate"]
    r = client.post(f"/certificates/{cert['id']}/mint", json={"walletAddress": STUDENT.lower()})
    assert r.status_code == 200
    body = r.json()
    assert body["tokenId"] == "1"
    assert body["txHash"].startswith("0x")
    assert body["certificate"]["mintState"] == "minted"

    again = client.post(f"/certificates/{cert['id']}/mint", json={"walletAddress": STUDENT})
    assert again.status_code == 409
    assert again.json()["error"] == "ALREADY_MINTED"

    assert client.get("/certificates/token/1").json()["certificate"]["id"] == cert["id"]
    assert client.get(f"/certificates/{cert['id']}").json()["certificate"]["tokenId"] == "1"
    wallet = client.get(f"/certificates/wallet/{STUDENT.upper()}").json()
    assert [c["id"] for c in wallet["certificates"]] == [cert["id"]]

def test_mint_errors(client, auth, ledger):
    cert = issue(client, auth()).json()["certificate"]
    r = client.post(f"/certificates/{cert['id']}/mint", json={"walletAddress": "0xsomeoneelse"})
    assert r.status_code == 400
    assert r.json()["error"] == "ADDRESS_MISMATCH"

    r = client.post("/certificates/000000000000000000000000/mint", json={"walletAddress": STUDENT})
    assert r.status_code == 404

    ledger.fail_mint = True
    r = client.post(f"/certificates/{cert['id']}/mint", json={"walletAddress": STUDENT})
    assert r.status_code == 503
    assert r.json()["retryable"] is True

# Scenario C: ledger unreachable during verification
def test_verify_degrades_when_ledger_down(client, auth, ledger):
    cert = issue(client, auth()).json()["certificate"]
    client.post(f"/certificates/{cert['id']}/mint", json={"walletAddress": STUDENT})

    both = client.get(f"/certificates/verify/{cert['id']}").json()
    assert both["valid"] is True
    assert both["source"] == "both"
    assert both["ledger"]["tokenId"] == "1"

    ledger.fail_get = True
    r = client.get(f"/certificates/verify/{cert['id']}")
    assert r.status_code == 200
    assert r.json()["valid"] is True
    assert r.json()["source"] == "backend"

# Scenario D: revoke a minted certificate then verify
def test_revoke_then_verify(client, auth, ledger):
    cert = issue(client, auth()).json()["certificate"]
    client.post(f"/certificates/{cert['id']}/mint", json={"walletAddress": STUDENT})

    r = client.post(f"/certificates/{cert['id']}/revoke", headers=auth())
    assert r.status_code == 200
    assert r.json()["certificate"]["isValid"] is False
    assert r.json()["txHash"]

    for identifier in (cert["id"], "1", cert["contentHash"]):
        body = client.get(f"/certificates/verify/{identifier}").json()
        assert body["valid"] is False

    assert client.post(f"/certificates/{cert['id']}/revoke", headers=auth()).status_code == 200

def test_revoke_by_other_institution(client, auth):
    cert = issue(client, auth()).json()["certificate"]
    r = client.post(f"/certificates/{cert['id']}/revoke", headers=auth(institution_id="inst-2"))
    assert r.status_code == 403
    assert r.json()["error"] == "FORBIDDEN"

def test_verify_kind_and_not_found(client, auth):
    cert = issue(client, auth()).json()["certificate"]
    r = client.get(f"/certificates/verify/{cert['contentHash']}", params={"kind": "contentHash"})
    assert r.json()["certificate"]["id"] == cert["id"]
    assert r.json()["kind"] == "contentHash"

    r = client.get("/certificates/verify/424242")
    assert r.status_code == 404
    assert r.json()["error"] == "NOT_FOUND"

def test_verify_rate_limited(db, ledger, content, trust_store, plans):
    client = TestClient(create_app(db=db, ledger=ledger, content=content,
                                   trust_store=trust_store, plans=plans, verify_rpm=2))
    codes = [client.get("/certificates/verify/1").status_code for _ in range(3)]
    assert codes == [404, 404, 429]

def test_institution_listing_and_stats(client, auth):
    issue(client, auth())
    issue(client, auth(), artifact=PDF + b"2")
    issue(client, auth(institution_id="inst-2"))

    listing = client.get("/certificates/institution", headers=auth()).json()
    assert len(listing["certificates"]) == 2

    stats = client.get("/stats", headers=auth()).json()
    assert stats["totalCertificates"] == 2
    assert stats["activeCertificates"] == 2
    assert stats["certificatesThisPeriod"] == 2

def test_api_calls_are_counted(client, auth, quota):
    client.get("/certificates/institution", headers=auth())
    client.get("/stats", headers=auth())
    assert quota.current_usage("inst-1").api_calls == 2

def test_plans(client):
    plans = client.get("/subscription/plans").json()["plans"]
    assert plans["freetrial"]["isTrial"] is True
    assert plans["enterprise"]["certificateLimit"] == -1

def test_unknown_certificate(client):
    assert client.get("/certificates/000000000000000000000000").status_code == 404
    assert client.get("/certificates/token/77").status_code == 404
    assert client.get("/certificates/wallet/0xnobody").json() == {"certificates": []}

def test_rotating_forwarded_for_does_not_escape_limit(db, ledger, content, trust_store, plans):
    client = TestClient(create_app(db=db, ledger=ledger, content=content,
                                   trust_store=trust_store, plans=plans, verify_rpm=1))
    codes = [
        client.get("/certificates/verify/1", headers={"X-Forwarded-For": f"203.0.113.{n}"}).status_code
        for n in range(5)
    ]
    assert codes == [404, 429, 429, 429, 429]
    assert len(client.app.state.verify_limiter) == 1

def test_forwarded_for_honoured_behind_trusted_proxy(db, ledger, content, trust_store, plans):
    client = TestClient(create_app(db=db, ledger=ledger, content=content, trust_store=trust_store,
                                   plans=plans, verify_rpm=1, trusted_proxies={"testclient"}))
    first = client.get("/certificates/verify/1", headers={"X-Forwarded-For": "203.0.113.1"})
    second = client.get("/certificates/verify/1", headers={"X-Forwarded-For": "203.0.113.2"})
    again = client.get("/certificates/verify/1", headers={"X-Forwarded-For": "203.0.113.1"})
    assert [first.status_code, second.status_code, again.status_code] == [404, 404, 429]

def test_oversized_artifact_refused(db, ledger, content, trust_store, plans, auth, quota):
    client = TestClient(create_app(db=db, ledger=ledger, content=content, trust_store=trust_store,
                                   plans=plans, max_artifact_bytes=16))
    r = issue(client, auth(), artifact=b"x" * 4096)
    assert r.status_code == 400
    assert r.json()["error"] == "VALIDATION_ERROR"
    assert r.json()["field"] == "artifact"
    assert quota.current_usage("inst-1").storage_bytes_used == 0

def test_refused_issuance_consumes_no_quota(client, auth, quota):
    r = issue(client, auth(verified=False, plan="basic"))
    assert r.status_code == 403
    usage = quota.current_usage("inst-1")
    assert usage.api_calls == 0
    assert usage.certificates_issued == 0
    assert usage.storage_bytes_used == 0
