"""
Dual-source verification for EduChain.

A certificate's validity is the logical AND of what the off-chain store and
the ledger say. The store is authoritative for existence; the ledger is
consulted for bound certificates and as a fallback for token ids and
content hashes the store does not know. An unreachable ledger never fails a
verification: the answer degrades to the store's view.
"""

import logging
from typing import List, Optional

from .errors import LedgerUnavailableError, NotFoundError
from .ledger import LedgerClient
from .logging_config import audit_log
from .models import (
    Certificate,
    LedgerCertificate,
    VerificationKind,
    VerificationResult,
    VerificationSource,
)
from .store import CertificateStore
from .util import looks_like_certificate_id, looks_like_token_id

logger = logging.getLogger(__name__)


def candidate_kinds(identifier: str) -> List[VerificationKind]:
    """
    Lookup kinds to try, in order, for an identifier of unknown kind.

    24 hex characters is a certificate id (or, failing that, a content hash);
    all digits is a token id; anything else is a content hash.
    """
    if looks_like_certificate_id(identifier):
        return [VerificationKind.ID, VerificationKind.CONTENT_HASH]
    if looks_like_token_id(identifier):
        return [VerificationKind.TOKEN_ID]
    return [VerificationKind.CONTENT_HASH]


class VerificationEngine:
    """Answers "is this certificate valid" from the store and the ledger."""

    def __init__(self, store: CertificateStore, ledger: LedgerClient):
        self._store = store
        self._ledger = ledger

    def _resolve(self, identifier: str, kind: VerificationKind) -> Optional[Certificate]:
        if kind == VerificationKind.ID:
            return self._store.find_by_id(identifier)
        if kind == VerificationKind.CONTENT_HASH:
            return self._store.find_by_content_hash(identifier)
        return self._store.find_by_token(identifier)

    def _ledger_lookup(self, identifier: str, kind: VerificationKind) -> Optional[LedgerCertificate]:
        if kind == VerificationKind.TOKEN_ID:
            return self._ledger.get(identifier)
        if kind == VerificationKind.CONTENT_HASH:
            return self._ledger.find_by_content_hash(identifier)
        return None

    def _merge(self, record: Certificate, kind: VerificationKind) -> VerificationResult:
        backend_only = VerificationResult(
            valid=record.is_valid,
            source=VerificationSource.BACKEND,
            certificate=record,
            kind=kind,
        )
        if not record.is_minted:
            return backend_only

        try:
            on_ledger = self._ledger.get(record.token_id)
        except LedgerUnavailableError as e:
            audit_log.ledger_degraded("get", record.token_id, e.message)
            return backend_only

        if on_ledger is None:
            logger.warning(
                "certificate %s is bound to token %s which the ledger does not know",
                record.id, record.token_id
            )
            return backend_only

        return VerificationResult(
            valid=record.is_valid and on_ledger.is_valid,
            source=VerificationSource.BOTH,
            certificate=record,
            ledger=on_ledger,
            kind=kind,
        )

    def verify(self, identifier: str, kind: VerificationKind) -> VerificationResult:
        """
        Verify one identifier of a known kind.

        Raises:
            NotFoundError: neither source knows the identifier (or the store
                does not and the ledger is unreachable)
        """
        kind = VerificationKind(kind)
        record = self._resolve(identifier, kind)
        if record is not None:
            result = self._merge(record, kind)
        else:
            try:
                on_ledger = self._ledger_lookup(identifier, kind)
            except LedgerUnavailableError as e:
                audit_log.ledger_degraded("lookup", identifier, e.message)
                on_ledger = None
            if on_ledger is None:
                audit_log.verification(identifier, kind.value, None, None)
                raise NotFoundError("Certificate not found", identifier=identifier)
            result = VerificationResult(
                valid=on_ledger.is_valid,
                source=VerificationSource.BLOCKCHAIN,
                ledger=on_ledger,
                kind=kind,
            )

        audit_log.verification(identifier, kind.value, result.valid, result.source.value)
        return result

    def verify_any(self, identifier: str) -> VerificationResult:
        """Verify an identifier whose kind is inferred from its shape."""
        identifier = identifier.strip()
        last_error = None
        for kind in candidate_kinds(identifier):
            try:
                return self.verify(identifier, kind)
            except NotFoundError as e:
                last_error = e
        raise last_error
