"""
Minting for EduChain.

The mint binder turns a stored certificate into a ledger token exactly once.

Every attempt goes through the mint journal:

1. ``pending``   - a reservation claimed before the ledger is called. A second
                   attempt for the same certificate finds it and is refused,
                   so the ledger never mints twice for one certificate.
2. ``submitted`` - the ledger returned a token id. The token id is now the
                   idempotency key: a retry or a reconciliation pass binds
                   this token instead of minting a new one.
3. ``bound``     - the certificate record carries the token.

A ledger failure or refusal deletes the reservation, leaving no trace,
unless the transaction was already sent. A reservation that stays
``pending`` past its TTL means the ledger outcome is unknown (the process
died mid-call, or the receipt never arrived); reconciliation reports it as
stranded for an operator to resolve.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .db import Database
from .errors import (
    AddressMismatchError,
    AlreadyMintedError,
    EduChainError,
    LedgerUnavailableError,
    StoreError,
)
from .ledger import LedgerClient
from .logging_config import audit_log
from .models import Certificate, MintReceipt
from .security import validate_wallet_address
from .store import CertificateStore
from .util import addresses_equal, now_epoch


@dataclass
class MintResult:
    certificate: Certificate
    token_id: str
    tx_hash: Optional[str]


@dataclass
class ReconcileReport:
    bound: List[str] = field(default_factory=list)
    stranded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self):
        return {"bound": self.bound, "stranded": self.stranded, "failed": self.failed}


class MintBinder:
    """Orchestrates the one-time binding of a certificate to a ledger token."""

    def __init__(
        self,
        db: Database,
        store: CertificateStore,
        ledger: LedgerClient,
        reservation_ttl: int = 900
    ):
        self._db = db
        self._store = store
        self._ledger = ledger
        self._reservation_ttl = reservation_ttl

    # ------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------

    def _claim(self, certificate_id: str, wallet_address: str):
        """
        Reserve the certificate for minting.

        Returns None for a fresh reservation, or the journal row of an
        earlier attempt whose token was minted but never bound.
        """
        now = now_epoch()
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM mint_journal WHERE certificate_id = ?", (certificate_id,)
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT INTO mint_journal(certificate_id, status, wallet_address, created_at, updated_at) "
                    "VALUES(?, 'pending', ?, ?, ?)",
                    (certificate_id, wallet_address, now, now)
                )
                return None
        if row["status"] == "submitted":
            return row
        if row["status"] == "pending":
            raise AlreadyMintedError(certificate_id, "Certificate mint already in progress")
        raise AlreadyMintedError(certificate_id)

    def _release(self, certificate_id: str) -> bool:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM mint_journal WHERE certificate_id = ? AND status = 'pending'",
                (certificate_id,)
            )
            return cur.rowcount == 1

    def _record_submitted(self, certificate_id: str, receipt: MintReceipt) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE mint_journal SET status = 'submitted', token_id = ?, tx_hash = ?, updated_at = ? "
                "WHERE certificate_id = ? AND status = 'pending'",
                (receipt.token_id, receipt.tx_hash, now_epoch(), certificate_id)
            )

    def _mark_bound(self, certificate_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE mint_journal SET status = 'bound', last_error = NULL, updated_at = ? "
                "WHERE certificate_id = ?",
                (now_epoch(), certificate_id)
            )

    def _record_error(self, certificate_id: str, error: str) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE mint_journal SET last_error = ?, updated_at = ? WHERE certificate_id = ?",
                (error[:500], now_epoch(), certificate_id)
            )

    # ------------------------------------------------------------
    # Mint
    # ------------------------------------------------------------

    def _bind(self, certificate_id: str, receipt: MintReceipt, wallet_address: str) -> MintResult:
        try:
            cert = self._store.bind_token(certificate_id, receipt.token_id, wallet_address)
        except AlreadyMintedError:
            existing = self._store.find_by_id(certificate_id)
            if existing is None or existing.token_id != receipt.token_id:
                raise
            # An earlier attempt bound this same token.
            cert = existing
        except StoreError as e:
            audit_log.mint_bind_failed(certificate_id, receipt.token_id, str(e))
            raise

        try:
            self._mark_bound(certificate_id)
        except StoreError as e:
            # The record is bound; the next reconciliation pass closes the journal entry.
            audit_log.mint_bind_failed(certificate_id, receipt.token_id, f"journal: {e}")

        audit_log.certificate_minted(certificate_id, receipt.token_id, receipt.tx_hash, wallet_address)
        return MintResult(certificate=cert, token_id=receipt.token_id, tx_hash=receipt.tx_hash)

    def mint(self, certificate_id: str, wallet_address: Optional[str]) -> MintResult:
        """
        Mint the certificate to the student's wallet.

        Raises:
            ValidationError: wallet address missing or malformed, or the
                student address is one the ledger cannot mint to
            NotFoundError: no such certificate
            AlreadyMintedError: already minted, or a mint is in progress
            AddressMismatchError: wallet is not the certificate's student
            LedgerUnavailableError: the ledger call failed. The reservation is
                released, or kept pending when the transaction was sent but
                never confirmed
            StoreError: the token was minted but could not be bound yet
        """
        wallet_address = validate_wallet_address(wallet_address, "walletAddress")
        cert = self._store.get(certificate_id)
        if cert.is_minted:
            audit_log.mint_rejected(certificate_id, AlreadyMintedError.code)
            raise AlreadyMintedError(certificate_id)
        if not addresses_equal(wallet_address, cert.student_address):
            audit_log.mint_rejected(certificate_id, AddressMismatchError.code)
            raise AddressMismatchError(certificate_id)

        journal = self._claim(cert.id, wallet_address)
        if journal is not None:
            receipt = MintReceipt(token_id=journal["token_id"], tx_hash=journal["tx_hash"])
            return self._bind(cert.id, receipt, journal["wallet_address"])

        try:
            receipt = self._ledger.mint(
                cert.student_address, cert.student_name, cert.course_name, cert.content_hash
            )
        except LedgerUnavailableError as e:
            if e.details.get("submitted_tx"):
                # Keep the reservation; reconciliation reports it as stranded.
                self._record_error(cert.id, e.message)
            else:
                self._release(cert.id)
            raise
        except EduChainError:
            # Refused outright: nothing was sent.
            self._release(cert.id)
            raise

        try:
            self._record_submitted(cert.id, receipt)
        except StoreError as e:
            audit_log.mint_bind_failed(cert.id, receipt.token_id, str(e))
            raise
        return self._bind(cert.id, receipt, wallet_address)

    # ------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------

    def reconcile(self, now: Optional[int] = None) -> ReconcileReport:
        """
        Bind every minted-but-unbound token and report stranded reservations.
        """
        now = now if now is not None else now_epoch()
        report = ReconcileReport()

        for row in self._db.fetchall(
            "SELECT * FROM mint_journal WHERE status = 'submitted' ORDER BY updated_at"
        ):
            cid = row["certificate_id"]
            receipt = MintReceipt(token_id=row["token_id"], tx_hash=row["tx_hash"])
            try:
                self._bind(cid, receipt, row["wallet_address"])
                report.bound.append(cid)
            except EduChainError as e:
                self._record_error(cid, e.message)
                report.failed.append(cid)

        for row in self._db.fetchall(
            "SELECT certificate_id FROM mint_journal WHERE status = 'pending' AND created_at < ?",
            (now - self._reservation_ttl,)
        ):
            report.stranded.append(row["certificate_id"])

        audit_log.reconciliation(report.bound, report.stranded, report.failed)
        return report

    def release(self, certificate_id: str) -> bool:
        """
        Drop a pending reservation so the certificate can be minted again.

        Only for stranded reservations an operator has checked against the
        ledger; releasing one whose mint actually landed allows a second token.
        """
        return self._release(certificate_id)
