"""
Certificate issuance for EduChain.

The issuance gate decides whether an institution may issue, stores the
artifact with the content addresser, then creates the certificate record
and counts its usage in one store transaction.
"""

import logging
from typing import Optional

from .content import ContentAddresser
from .db import Database
from .errors import (
    EduChainError,
    MissingArtifactError,
    NoActiveSubscriptionError,
    NotVerifiedError,
    QuotaExceededError,
    ValidationError,
)
from .ledger import LedgerClient
from .logging_config import audit_log
from .models import Certificate, CertificatePayload, Institution, SubscriptionPlan, UsagePeriod
from .quota import QuotaTracker
from .security import optional_text, require_text, validate_date, validate_wallet_address
from .store import CertificateStore
from .util import utc_now

logger = logging.getLogger(__name__)


class IssuanceGate:
    """Authorizes and creates new certificates."""

    def __init__(
        self,
        db: Database,
        store: CertificateStore,
        quota: QuotaTracker,
        content: ContentAddresser,
        max_artifact_bytes: int = 20 * 1024 * 1024,
        ledger: Optional[LedgerClient] = None
    ):
        self._db = db
        self._store = store
        self._quota = quota
        self._content = content
        self._ledger = ledger
        self.max_artifact_bytes = max_artifact_bytes

    def _authorize(self, institution: Institution, plan: Optional[SubscriptionPlan]) -> None:
        # Unverified institutions may still issue while on a trial plan.
        if not institution.is_verified and not (plan is not None and plan.is_trial):
            raise NotVerifiedError(institution.id)
        if plan is None or not institution.active_subscription_plan_id:
            raise NoActiveSubscriptionError(institution.id)

    def _check_quota(self, institution: Institution, plan: SubscriptionPlan, usage: UsagePeriod) -> None:
        decision = self._quota.check_limit(institution.id, plan, usage)
        if not decision.allowed:
            raise QuotaExceededError(decision.reason)

    def _validate(self, payload: CertificatePayload, artifact: bytes) -> CertificatePayload:
        fields = CertificatePayload(
            student_address=validate_wallet_address(payload.student_address, "studentAddress"),
            student_name=require_text(payload.student_name, "studentName"),
            course_name=require_text(payload.course_name, "courseName"),
            grade=optional_text(payload.grade, "grade", "N/A", max_length=32),
            completion_date=optional_text(payload.completion_date, "completionDate", ""),
            certificate_type=optional_text(payload.certificate_type, "certificateType", "Academic", max_length=64),
        )
        if self._ledger is not None and not self._ledger.is_valid_address(fields.student_address):
            raise ValidationError("studentAddress", "not a valid ledger address")
        if fields.completion_date:
            validate_date(fields.completion_date, "completionDate")
        if not artifact:
            raise MissingArtifactError()
        if len(artifact) > self.max_artifact_bytes:
            raise ValidationError("artifact", f"must not exceed {self.max_artifact_bytes} bytes")
        return fields

    def issue(
        self,
        institution: Institution,
        plan: Optional[SubscriptionPlan],
        usage: Optional[UsagePeriod],
        payload: CertificatePayload,
        artifact: bytes,
        filename: str = "certificate.pdf"
    ) -> Certificate:
        """
        Issue one certificate.

        Raises NotVerifiedError, NoActiveSubscriptionError, QuotaExceededError,
        MissingFieldError or MissingArtifactError (in that order of checks)
        without creating a record or consuming quota.
        """
        try:
            self._authorize(institution, plan)
            if usage is None:
                usage = self._quota.current_usage(institution.id)
            self._check_quota(institution, plan, usage)
            fields = self._validate(payload, artifact)
        except EduChainError as e:
            audit_log.issuance_denied(institution.id, e.code)
            raise

        content_hash = self._content.upload(artifact, filename)
        issued_at = utc_now()
        record = Certificate(
            id="",
            student_address=fields.student_address,
            student_name=fields.student_name,
            course_name=fields.course_name,
            grade=fields.grade,
            content_hash=content_hash,
            completion_date=fields.completion_date or issued_at.isoformat(),
            certificate_type=fields.certificate_type,
            issuer_id=institution.id,
            issuer_name=institution.name,
            issued_at=issued_at,
            artifact_size=len(artifact),
        )

        try:
            with self._db.transaction():
                # Usage is re-read under the write lock so that concurrent
                # requests cannot both pass the last free slot.
                current = self._quota.current_usage(institution.id, now=issued_at)
                self._check_quota(institution, plan, current)
                cert = self._store.create(record)
                issued = self._quota.increment(institution.id, "certificates_issued", 1, now=issued_at)
                self._quota.increment(institution.id, "storage_bytes_used", len(artifact), now=issued_at)
        except QuotaExceededError as e:
            audit_log.issuance_denied(institution.id, e.code)
            raise

        audit_log.certificate_issued(cert.id, institution.id, content_hash, issued)
        logger.debug("stored artifact %s (%d bytes) for %s", content_hash, len(artifact), cert.id)
        return cert
