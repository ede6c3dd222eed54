"""
Revocation for EduChain.

An issuing institution revokes its certificate in the store, then the
revocation is pushed to the ledger token when there is one.
"""

import logging
from typing import Optional, Tuple

from .errors import ForbiddenError, LedgerUnavailableError, NotFoundError
from .ledger import LedgerClient
from .logging_config import audit_log
from .models import Certificate, Institution
from .store import CertificateStore

logger = logging.getLogger(__name__)


class RevocationService:
    """
    Revokes certificates on behalf of their issuing institution.

    The store revocation is the one that counts: verification ANDs both
    sources, so a store-revoked certificate is invalid everywhere even if
    the ledger never hears about it. Propagating to the ledger is best-effort
    and retried on every later revoke call until the ledger agrees.
    """

    def __init__(self, store: CertificateStore, ledger: LedgerClient):
        self._store = store
        self._ledger = ledger

    def _propagate(self, cert: Certificate) -> Optional[str]:
        try:
            on_ledger = self._ledger.get(cert.token_id)
            if on_ledger is None or not on_ledger.is_valid:
                return None
            return self._ledger.revoke(cert.token_id)
        except LedgerUnavailableError as e:
            audit_log.ledger_degraded("revoke", cert.token_id, e.message)
        except NotFoundError:
            logger.warning("token %s for certificate %s missing on ledger", cert.token_id, cert.id)
        return None

    def revoke(self, certificate_id: str, institution: Institution) -> Tuple[Certificate, Optional[str]]:
        cert = self._store.get(certificate_id)
        if cert.issuer_id != institution.id:
            raise ForbiddenError("Only the issuing institution may revoke a certificate",
                                 certificate_id=certificate_id)
        already_revoked = not cert.is_valid
        cert = self._store.revoke(certificate_id, actor=institution.id)
        tx_hash = self._propagate(cert) if cert.is_minted else None
        audit_log.certificate_revoked(cert.id, institution.id, already_revoked, tx_hash)
        return cert, tx_hash
