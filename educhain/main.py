import logging
from typing import Collection, Dict, Optional

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.responses import JSONResponse

from . import config
from .auth import SessionVerifier, TrustStore, bearer_token
from .content import ContentAddresser, get_content_addresser
from .db import Database
from .errors import (
    EduChainError,
    NoActiveSubscriptionError,
    NotFoundError,
    RateLimitedError,
    UnauthorizedError,
)
from .issuance import IssuanceGate
from .ledger import InMemoryLedger, LedgerClient, get_ledger_client
from .logging_config import audit_log, configure_logging, set_request_id
from .minting import MintBinder
from .models import CertificatePayload, Institution, MintRequest, SubscriptionPlan, VerificationKind
from .quota import QuotaTracker, load_plans
from .rate_limit import RateLimiter
from .revocation import RevocationService
from .security import extract_client_id, sanitize_for_logging
from .store import CertificateStore
from .verification import VerificationEngine

logger = logging.getLogger(__name__)


def create_app(
    db: Optional[Database] = None,
    ledger: Optional[LedgerClient] = None,
    content: Optional[ContentAddresser] = None,
    trust_store: Optional[TrustStore] = None,
    plans: Optional[Dict[str, SubscriptionPlan]] = None,
    verify_rpm: int = config.VERIFY_RPM,
    issue_rpm: int = config.ISSUE_RPM,
    max_artifact_bytes: int = config.MAX_ARTIFACT_BYTES,
    trusted_proxies: Optional[Collection[str]] = None,
) -> FastAPI:
    """
    Build the API with its collaborators.

    Everything stateful lives on ``app.state``; pass instances in to run
    against test doubles, or leave them out to build from configuration.
    """
    app = FastAPI(title="EduChain Certificate Core")

    db = db or Database(config.DB_PATH)
    ledger = ledger or get_ledger_client()
    content = content or get_content_addresser()
    store = CertificateStore(db)
    quota = QuotaTracker(db, config.USAGE_PERIOD_DAYS)

    s = app.state
    s.db = db
    s.ledger = ledger
    s.store = store
    s.quota = quota
    s.plans = plans if plans is not None else load_plans()
    s.sessions = SessionVerifier(
        trust_store or TrustStore(config.TRUST_STORE_PATH),
        max_age_seconds=config.SESSION_MAX_AGE_SECONDS,
    )
    s.issuance = IssuanceGate(db, store, quota, content, max_artifact_bytes, ledger)
    s.minting = MintBinder(db, store, ledger, config.MINT_RESERVATION_TTL)
    s.verification = VerificationEngine(store, ledger)
    s.revocation = RevocationService(store, ledger)
    s.verify_limiter = RateLimiter(verify_rpm)
    s.issue_limiter = RateLimiter(issue_rpm)
    s.trusted_proxies = frozenset(config.TRUSTED_PROXIES if trusted_proxies is None else trusted_proxies)

    @app.on_event("startup")
    def _startup():
        db.init_schema()
        for check, ok in config.validate_config().items():
            if not ok:
                logger.warning("configuration check failed: %s", check)
        if config.is_production() and isinstance(ledger, InMemoryLedger):
            logger.warning("in-memory ledger in production: tokens are lost on restart")

    @app.middleware("http")
    async def _request_id(request: Request, call_next):
        rid = set_request_id(request.headers.get("x-request-id"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    @app.exception_handler(EduChainError)
    def _domain_error(request: Request, exc: EduChainError):
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    _register_routes(app)
    return app


# ============================================================
# Dependencies
# ============================================================

def current_institution(request: Request, authorization: Optional[str] = Header(None)) -> Institution:
    """Verified caller of an institution route."""
    state = request.app.state
    try:
        institution = state.sessions.verify(bearer_token(authorization))
    except UnauthorizedError as e:
        audit_log.security_event("session_rejected", severity="low", **sanitize_for_logging({
            "path": request.url.path,
            "reason": e.message,
            "authorization": authorization or "",
        }))
        raise
    return institution


def _count_call(request: Request, institution: Institution) -> None:
    # Only calls that were served count towards api_calls.
    request.app.state.quota.increment(institution.id, "api_calls")


def _enforce(limiter: RateLimiter, request: Request, endpoint: str) -> None:
    client_id = extract_client_id(
        request.headers,
        request.client.host if request.client else None,
        request.app.state.trusted_proxies,
    )
    result = limiter.check(client_id)
    if not result.allowed:
        audit_log.rate_limit_exceeded(client_id, endpoint)
        raise RateLimitedError(result.retry_after)


def _plan_for(request: Request, institution: Institution) -> Optional[SubscriptionPlan]:
    plan_id = institution.active_subscription_plan_id
    return request.app.state.plans.get(plan_id) if plan_id else None


def _listing(certs) -> dict:
    return {"certificates": [c.to_wire() for c in certs]}


# ============================================================
# Routes
# ============================================================

def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health(request: Request):
        return {
            "status": "ok",
            "ledger": type(request.app.state.ledger).__name__,
            "db": request.app.state.db.stats(),
        }

    @app.post("/certificates/issue", status_code=201)
    def issue_certificate(
        request: Request,
        institution: Institution = Depends(current_institution),
        student_address: Optional[str] = Form(None, alias="studentAddress"),
        student_name: Optional[str] = Form(None, alias="studentName"),
        course_name: Optional[str] = Form(None, alias="courseName"),
        grade: Optional[str] = Form(None),
        completion_date: Optional[str] = Form(None, alias="completionDate"),
        certificate_type: Optional[str] = Form(None, alias="certificateType"),
        artifact: Optional[UploadFile] = File(None),
    ):
        _enforce(request.app.state.issue_limiter, request, "issue")
        payload = CertificatePayload(
            student_address=student_address,
            student_name=student_name,
            course_name=course_name,
            grade=grade,
            completion_date=completion_date,
            certificate_type=certificate_type,
        )
        # One byte over the cap is enough for the size check to refuse it.
        limit = request.app.state.issuance.max_artifact_bytes
        data = artifact.file.read(limit + 1) if artifact is not None else b""
        filename = (artifact.filename if artifact is not None else None) or "certificate.pdf"
        cert = request.app.state.issuance.issue(
            institution, _plan_for(request, institution), None, payload, data, filename
        )
        _count_call(request, institution)
        return {"certificate": cert.to_wire()}

    @app.post("/certificates/{certificate_id}/mint")
    def mint_certificate(certificate_id: str, req: MintRequest, request: Request):
        result = request.app.state.minting.mint(certificate_id, req.wallet_address)
        return {
            "certificate": result.certificate.to_wire(),
            "tokenId": result.token_id,
            "txHash": result.tx_hash,
        }

    @app.post("/certificates/{certificate_id}/revoke")
    def revoke_certificate(
        certificate_id: str,
        request: Request,
        institution: Institution = Depends(current_institution),
    ):
        cert, tx_hash = request.app.state.revocation.revoke(certificate_id, institution)
        _count_call(request, institution)
        return {"certificate": cert.to_wire(), "txHash": tx_hash}

    @app.get("/certificates/verify/{identifier}")
    def verify_certificate(identifier: str, request: Request, kind: Optional[VerificationKind] = Query(None)):
        _enforce(request.app.state.verify_limiter, request, "verify")
        engine = request.app.state.verification
        result = engine.verify(identifier, kind) if kind else engine.verify_any(identifier)
        return result.to_wire()

    @app.get("/certificates/wallet/{address}")
    def certificates_for_wallet(address: str, request: Request):
        return _listing(request.app.state.store.find_by_owner(address))

    @app.get("/certificates/institution")
    def certificates_for_institution(
        request: Request,
        institution: Institution = Depends(current_institution),
    ):
        certs = request.app.state.store.find_by_issuer(institution.id)
        _count_call(request, institution)
        return _listing(certs)

    @app.get("/certificates/token/{token_id}")
    def certificate_by_token(token_id: str, request: Request):
        cert = request.app.state.store.find_by_token(token_id)
        if cert is None:
            raise NotFoundError("Certificate not found", tokenId=token_id)
        return {"certificate": cert.to_wire()}

    @app.get("/certificates/{certificate_id}")
    def certificate_by_id(certificate_id: str, request: Request):
        return {"certificate": request.app.state.store.get(certificate_id).to_wire()}

    @app.get("/stats")
    def institution_stats(request: Request, institution: Institution = Depends(current_institution)):
        stats = request.app.state.store.stats(institution.id)
        usage = request.app.state.quota.current_usage(institution.id)
        stats["certificatesThisPeriod"] = usage.certificates_issued
        _count_call(request, institution)
        return stats

    @app.get("/subscription/plans")
    def subscription_plans(request: Request):
        return {"plans": {pid: p.to_wire() for pid, p in request.app.state.plans.items()}}

    @app.get("/subscription/usage")
    def subscription_usage(request: Request, institution: Institution = Depends(current_institution)):
        plan = _plan_for(request, institution)
        if plan is None:
            raise NoActiveSubscriptionError(institution.id)
        usage = request.app.state.quota.current_usage(institution.id)
        decision = request.app.state.quota.check_limit(institution.id, plan, usage)
        _count_call(request, institution)
        return {
            "plan": plan.to_wire(),
            "usage": usage.to_wire(),
            "canIssue": decision.allowed,
            "reason": decision.reason,
        }


configure_logging(config.LOG_LEVEL, config.LOG_JSON, config.LOG_FILE)
app = create_app()
