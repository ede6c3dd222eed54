import json, time
import pytest
from fastapi.testclient import TestClient
from nacl.signing import SigningKey

from educhain.auth import TrustStore, sign_session
from educhain.content import LocalContentAddresser
from educhain.db import Database
from educhain.errors import LedgerUnavailableError
from educhain.issuance import IssuanceGate
from educhain.ledger import InMemoryLedger
from educhain.main import create_app
from educhain.minting import MintBinder
from educhain.models import CertificatePayload, Institution
from educhain.quota import QuotaTracker, load_plans
from educhain.store import CertificateStore
from educhain.util import b64e
from educhain.verification import VerificationEngine

STUDENT = "0xAbC0000000000000000000000000000000000001"
PDF = b"%PDF-1.4 certificate of completion"


class FlakyLedger(InMemoryLedger):
    """In-memory ledger whose calls can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail_mint = False
        self.fail_get = False
        self.fail_revoke = False
        self.unconfirmed_mint = False
        self.mint_calls = 0
        self.mint_delay = 0.0

    def mint(self, student_address, student_name, course_name, content_hash):
        self.mint_calls += 1
        if self.fail_mint:
            raise LedgerUnavailableError("ledger down")
        if self.mint_delay:
            time.sleep(self.mint_delay)
        receipt = super().mint(student_address, student_name, course_name, content_hash)
        if self.unconfirmed_mint:
            raise LedgerUnavailableError("receipt timeout", submitted_tx=receipt.tx_hash)
        return receipt

    def get(self, token_id):
        if self.fail_get:
            raise LedgerUnavailableError("ledger down")
        return super().get(token_id)

    def find_by_content_hash(self, content_hash):
        if self.fail_get:
            raise LedgerUnavailableError("ledger down")
        return super().find_by_content_hash(content_hash)

    def revoke(self, token_id):
        if self.fail_revoke:
            raise LedgerUnavailableError("ledger down")
        return super().revoke(token_id)


@pytest.fixture
def db(tmp_path):
    d = Database(str(tmp_path / "educhain.db"))
    d.init_schema()
    yield d
    d.close()

@pytest.fixture
def ledger():
    return FlakyLedger()

@pytest.fixture
def content(tmp_path):
    return LocalContentAddresser(str(tmp_path / "artifacts"))

@pytest.fixture
def store(db):
    return CertificateStore(db)

@pytest.fixture
def quota(db):
    return QuotaTracker(db, period_days=30)

@pytest.fixture
def plans(tmp_path):
    return load_plans(str(tmp_path / "no_plans_override.json"))

@pytest.fixture
def gate(db, store, quota, content):
    return IssuanceGate(db, store, quota, content, max_artifact_bytes=1024 * 1024)

@pytest.fixture
def binder(db, store, ledger):
    return MintBinder(db, store, ledger, reservation_ttl=900)

@pytest.fixture
def engine(store, ledger):
    return VerificationEngine(store, ledger)

@pytest.fixture
def institution():
    return Institution(id="inst-1", name="Test University", is_verified=True,
                       active_subscription_plan_id="basic")

@pytest.fixture
def payload():
    return CertificatePayload(
        student_address=STUDENT,
        student_name="Ada Lovelace",
        course_name="Analytical Engines",
        grade="A",
        completion_date="2026-06-30",
        certificate_type="Academic",
    )

@pytest.fixture
def issue(gate, institution, plans, payload):
    """Issue a certificate for the default verified institution."""
    def _issue(artifact: bytes = PDF, **overrides):
        p = payload.model_copy(update=overrides)
        return gate.issue(institution, plans["basic"], None, p, artifact)
    return _issue

@pytest.fixture
def auth_key():
    return SigningKey.generate()

@pytest.fixture
def trust_store(tmp_path, auth_key):
    path = tmp_path / "trust_store.json"
    path.write_text(json.dumps({
        "trust_store_id": "educhain-trust-store-test",
        "auth_service_keys": {"auth-test": b64e(bytes(auth_key.verify_key))},
    }), encoding="utf-8")
    return TrustStore(str(path))

@pytest.fixture
def make_token(auth_key):
    def _make(institution_id="inst-1", verified=True, plan="basic", name="Test University",
              iat=None, exp=None, kid="auth-test"):
        now = int(time.time())
        claims = {
            "kid": kid,
            "iat": iat if iat is not None else now,
            "exp": exp if exp is not None else now + 3600,
            "institutionId": institution_id,
            "institutionName": name,
            "isVerified": verified,
            "activeSubscriptionPlanId": plan,
        }
        return sign_session(claims, auth_key)
    return _make

@pytest.fixture
def auth(make_token):
    def _headers(**kwargs):
        return {"Authorization": f"Bearer {make_token(**kwargs)}"}
    return _headers

@pytest.fixture
def app(db, ledger, content, trust_store, plans):
    return create_app(db=db, ledger=ledger, content=content, trust_store=trust_store,
                      plans=plans, verify_rpm=1000, issue_rpm=1000)

@pytest.fixture
def client(app):
    return TestClient(app)
