"""
Certificate store for EduChain.

Persists certificate records and enforces the per-record invariants:
the token id is present exactly when the record is minted, a minted binding
never changes, the content hash is write-once and validity only ever goes
from true to false.
"""

import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from .db import Database
from .errors import AddressMismatchError, AlreadyMintedError, NotFoundError
from .models import Certificate, MintState
from .util import addresses_equal, generate_certificate_id, normalize_address, utc_now

_COLUMNS = (
    "id, student_address, student_name, course_name, grade, content_hash, "
    "completion_date, certificate_type, issuer_id, issuer_name, issued_at, "
    "is_valid, mint_state, token_id, minted_to_address, minted_at, "
    "revoked_at, revoked_by, artifact_size"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _row_to_certificate(row: sqlite3.Row) -> Certificate:
    return Certificate(
        id=row["id"],
        student_address=row["student_address"],
        student_name=row["student_name"],
        course_name=row["course_name"],
        grade=row["grade"],
        content_hash=row["content_hash"],
        completion_date=row["completion_date"],
        certificate_type=row["certificate_type"],
        issuer_id=row["issuer_id"],
        issuer_name=row["issuer_name"],
        issued_at=row["issued_at"],
        is_valid=bool(row["is_valid"]),
        mint_state=MintState(row["mint_state"]),
        token_id=row["token_id"],
        minted_to_address=row["minted_to_address"],
        minted_at=row["minted_at"],
        revoked_at=row["revoked_at"],
        revoked_by=row["revoked_by"],
        artifact_size=row["artifact_size"],
    )


class CertificateStore:
    """
    SQLite-backed certificate repository.

    Lookups return None when nothing matches; mutations raise NotFoundError.
    ``bind_token`` is a compare-and-swap on ``mint_state`` so that among any
    number of concurrent callers for the same certificate exactly one wins.
    """

    def __init__(self, db: Database):
        self._db = db

    # ------------------------------------------------------------
    # Create
    # ------------------------------------------------------------

    def create(self, record: Certificate) -> Certificate:
        """
        Assign an id and persist a new, unminted, valid certificate.

        Any id, mint or revocation fields on ``record`` are ignored: a new
        certificate always starts at the beginning of its lifecycle.
        """
        cert = record.model_copy(update={
            "id": generate_certificate_id(),
            "is_valid": True,
            "mint_state": MintState.UNMINTED,
            "token_id": None,
            "minted_to_address": None,
            "minted_at": None,
            "revoked_at": None,
            "revoked_by": None,
        })
        with self._db.transaction() as conn:
            conn.execute(
                f"INSERT INTO certificates({_COLUMNS}, student_address_lc) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    cert.id, cert.student_address, cert.student_name, cert.course_name,
                    cert.grade, cert.content_hash, cert.completion_date, cert.certificate_type,
                    cert.issuer_id, cert.issuer_name, _ts(cert.issued_at),
                    1, MintState.UNMINTED.value, None, None, None, None, None,
                    cert.artifact_size, normalize_address(cert.student_address),
                )
            )
        return cert

    # ------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------

    def _find_one(self, where: str, params: tuple) -> Optional[Certificate]:
        row = self._db.fetchone(
            f"SELECT {_COLUMNS} FROM certificates WHERE {where} ORDER BY issued_at ASC LIMIT 1",
            params
        )
        return _row_to_certificate(row) if row else None

    def _find_many(self, where: str, params: tuple) -> List[Certificate]:
        rows = self._db.fetchall(
            f"SELECT {_COLUMNS} FROM certificates WHERE {where} ORDER BY issued_at DESC",
            params
        )
        return [_row_to_certificate(r) for r in rows]

    def find_by_id(self, certificate_id: str) -> Optional[Certificate]:
        return self._find_one("id = ?", (certificate_id,))

    def find_by_content_hash(self, content_hash: str) -> Optional[Certificate]:
        """Oldest certificate carrying this artifact hash."""
        return self._find_one("content_hash = ?", (content_hash,))

    def find_by_token(self, token_id: str) -> Optional[Certificate]:
        return self._find_one("token_id = ?", (str(token_id),))

    def find_by_owner(self, address: str) -> List[Certificate]:
        """Certificates whose student address matches, ignoring letter case."""
        normalized = normalize_address(address)
        if not normalized:
            return []
        return self._find_many("student_address_lc = ?", (normalized,))

    def find_by_issuer(self, issuer_id: str) -> List[Certificate]:
        return self._find_many("issuer_id = ?", (issuer_id,))

    def get(self, certificate_id: str) -> Certificate:
        cert = self.find_by_id(certificate_id)
        if cert is None:
            raise NotFoundError("Certificate not found", certificate_id=certificate_id)
        return cert

    # ------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------

    def revoke(self, certificate_id: str, actor: str) -> Certificate:
        """
        Mark a certificate invalid.

        Idempotent: revoking an already revoked certificate leaves the first
        revocation's actor and timestamp in place and returns the record.
        """
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE certificates SET is_valid = 0, revoked_at = ?, revoked_by = ? "
                "WHERE id = ? AND is_valid = 1",
                (_ts(utc_now()), actor, certificate_id)
            )
        return self.get(certificate_id)

    def bind_token(self, certificate_id: str, token_id: str, wallet_address: str) -> Certificate:
        """
        Bind a ledger token to an unminted certificate, exactly once.

        Raises:
            NotFoundError: no such certificate
            AlreadyMintedError: the certificate is already bound
            AddressMismatchError: wallet is not the certificate's student
        """
        token_id = str(token_id)
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE certificates SET mint_state = 'minted', token_id = ?, "
                "minted_to_address = ?, minted_at = ? "
                "WHERE id = ? AND mint_state = 'unminted' AND student_address_lc = ?",
                (token_id, wallet_address, _ts(utc_now()), certificate_id,
                 normalize_address(wallet_address))
            )
            if cur.rowcount == 1:
                row = conn.execute(
                    f"SELECT {_COLUMNS} FROM certificates WHERE id = ?", (certificate_id,)
                ).fetchone()
                return _row_to_certificate(row)
            row = conn.execute(
                "SELECT mint_state, student_address FROM certificates WHERE id = ?",
                (certificate_id,)
            ).fetchone()

        # Explain why the compare-and-swap did not apply.
        if row is None:
            raise NotFoundError("Certificate not found", certificate_id=certificate_id)
        if row["mint_state"] == MintState.MINTED.value:
            raise AlreadyMintedError(certificate_id)
        if not addresses_equal(row["student_address"], wallet_address):
            raise AddressMismatchError(certificate_id)
        raise AlreadyMintedError(certificate_id)

    # ------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------

    def stats(self, issuer_id: str) -> Dict[str, Any]:
        """Dashboard counts for one institution."""
        row = self._db.fetchone(
            "SELECT COUNT(*) AS total, "
            "COALESCE(SUM(is_valid), 0) AS active, "
            "COALESCE(SUM(CASE WHEN mint_state = 'minted' THEN 1 ELSE 0 END), 0) AS minted "
            "FROM certificates WHERE issuer_id = ?",
            (issuer_id,)
        )
        by_type = self._db.fetchall(
            "SELECT certificate_type, COUNT(*) AS cnt FROM certificates "
            "WHERE issuer_id = ? GROUP BY certificate_type ORDER BY cnt DESC",
            (issuer_id,)
        )
        total = row["total"]
        active = row["active"]
        return {
            "totalCertificates": total,
            "activeCertificates": active,
            "revokedCertificates": total - active,
            "mintedCertificates": row["minted"],
            "certificatesByType": [
                {"type": r["certificate_type"], "count": r["cnt"]} for r in by_type
            ],
        }
