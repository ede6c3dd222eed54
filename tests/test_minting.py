import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from educhain.errors import (
    AddressMismatchError,
    AlreadyMintedError,
    LedgerUnavailableError,
    MissingFieldError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from educhain.models import MintState

from conftest import STUDENT


def _broken_bind(*args, **kwargs):
    raise StoreError("database is locked")


def _journal(db, certificate_id):
    return db.fetchone("SELECT * FROM mint_journal WHERE certificate_id = ?", (certificate_id,))


def test_mint_with_differently_cased_wallet(issue, binder, ledger, store, db):
    cert = issue()
    result = binder.mint(cert.id, STUDENT.lower())
    assert result.token_id == "1"
    assert result.tx_hash.startswith("0x")
    assert result.certificate.mint_state == MintState.MINTED
    assert result.certificate.token_id == "1"
    assert store.find_by_token("1").id == cert.id
    assert ledger.get("1").content_hash == cert.content_hash
    assert _journal(db, cert.id)["status"] == "bound"

def test_mint_twice_is_rejected(issue, binder, ledger):
    cert = issue()
    binder.mint(cert.id, STUDENT)
    with pytest.raises(AlreadyMintedError):
        binder.mint(cert.id, STUDENT)
    assert ledger.minted_count() == 1

def test_mint_wrong_wallet(issue, binder, ledger):
    cert = issue()
    with pytest.raises(AddressMismatchError):
        binder.mint(cert.id, "0x9999999999999999999999999999999999999999")
    assert ledger.mint_calls == 0

def test_mint_unknown_certificate(binder):
    with pytest.raises(NotFoundError):
        binder.mint("0" * 24, STUDENT)

def test_mint_requires_wallet(issue, binder):
    cert = issue()
    with pytest.raises(MissingFieldError):
        binder.mint(cert.id, None)

def test_ledger_failure_leaves_certificate_mintable(issue, binder, ledger, store, db):
    cert = issue()
    ledger.fail_mint = True
    with pytest.raises(LedgerUnavailableError) as exc:
        binder.mint(cert.id, STUDENT)
    assert exc.value.retryable
    assert store.get(cert.id).mint_state == MintState.UNMINTED
    assert _journal(db, cert.id) is None

    ledger.fail_mint = False
    assert binder.mint(cert.id, STUDENT).token_id == "1"

def test_concurrent_mints_exactly_one_succeeds(issue, binder, ledger, store):
    cert = issue()
    ledger.mint_delay = 0.05
    barrier = threading.Barrier(2)

    def attempt(_):
        barrier.wait()
        try:
            return binder.mint(cert.id, STUDENT).token_id
        except AlreadyMintedError:
            return "already"

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(attempt, range(2)))

    assert sorted(outcomes) == ["1", "already"]
    assert ledger.minted_count() == 1
    assert store.get(cert.id).token_id == "1"

def test_bind_failure_is_recovered_by_retry_without_second_mint(issue, binder, ledger, store, monkeypatch):
    cert = issue()
    original = store.bind_token
    monkeypatch.setattr(store, "bind_token", _broken_bind)
    with pytest.raises(StoreError):
        binder.mint(cert.id, STUDENT)
    assert ledger.minted_count() == 1
    assert store.get(cert.id).mint_state == MintState.UNMINTED

    monkeypatch.setattr(store, "bind_token", original)
    result = binder.mint(cert.id, STUDENT)
    assert result.token_id == "1"
    assert ledger.minted_count() == 1
    assert store.get(cert.id).token_id == "1"

def test_reconcile_binds_submitted_tokens(issue, binder, ledger, store, db, monkeypatch):
    cert = issue()
    original = store.bind_token
    monkeypatch.setattr(store, "bind_token", _broken_bind)
    with pytest.raises(StoreError):
        binder.mint(cert.id, STUDENT)
    assert _journal(db, cert.id)["status"] == "submitted"

    monkeypatch.setattr(store, "bind_token", original)
    report = binder.reconcile()
    assert report.bound == [cert.id]
    assert report.failed == []
    assert store.get(cert.id).token_id == "1"
    assert _journal(db, cert.id)["status"] == "bound"
    assert ledger.minted_count() == 1

def test_reconcile_reports_stranded_reservations(issue, binder, db):
    cert = issue()
    db.connection().execute(
        "INSERT INTO mint_journal(certificate_id, status, wallet_address, created_at, updated_at) "
        "VALUES(?, 'pending', ?, 1000, 1000)",
        (cert.id, STUDENT)
    )
    with pytest.raises(AlreadyMintedError):
        binder.mint(cert.id, STUDENT)

    report = binder.reconcile(now=1000 + 901)
    assert report.stranded == [cert.id]
    assert binder.reconcile(now=1000 + 100).stranded == []

    assert binder.release(cert.id) is True
    assert binder.release(cert.id) is False
    assert binder.mint(cert.id, STUDENT).token_id == "1"

def test_unconfirmed_mint_keeps_reservation(issue, binder, ledger, store, db):
    cert = issue()
    ledger.unconfirmed_mint = True
    with pytest.raises(LedgerUnavailableError):
        binder.mint(cert.id, STUDENT)
    row = _journal(db, cert.id)
    assert row["status"] == "pending"
    assert "receipt timeout" in row["last_error"]

    ledger.unconfirmed_mint = False
    with pytest.raises(AlreadyMintedError):
        binder.mint(cert.id, STUDENT)
    assert ledger.minted_count() == 1
    assert store.get(cert.id).mint_state == MintState.UNMINTED

def test_mint_refused_by_ledger_releases_reservation(issue, binder, ledger, store, db, monkeypatch):
    cert = issue()

    def refuse(*args):
        raise ValidationError("studentAddress", "not a valid ledger address")

    monkeypatch.setattr(ledger, "mint", refuse)
    with pytest.raises(ValidationError) as exc:
        binder.mint(cert.id, STUDENT)
    assert not exc.value.retryable
    assert _journal(db, cert.id) is None
    assert store.get(cert.id).mint_state == MintState.UNMINTED
