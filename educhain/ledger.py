"""
Ledger clients for EduChain.

A ledger client mints, reads and revokes certificate tokens on an external
append-only ledger. Transport and node failures, and responses the client
cannot decode, are reported as LedgerUnavailableError so callers can retry
safely; a token that does not exist is reported as None, never as an error.
An address the ledger can never accept is a ValidationError.
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as ModelValidationError

from .errors import LedgerUnavailableError, NotFoundError, ValidationError
from .models import LedgerCertificate, MintReceipt
from .util import generate_id, now_epoch

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class LedgerClient(ABC):
    """Contract every ledger backend satisfies."""

    @abstractmethod
    def mint(
        self,
        student_address: str,
        student_name: str,
        course_name: str,
        content_hash: str
    ) -> MintReceipt:
        """Mint a new token for a certificate and return its id and tx hash."""

    @abstractmethod
    def get(self, token_id: str) -> Optional[LedgerCertificate]:
        """Read a token. None if the ledger has no such token."""

    @abstractmethod
    def revoke(self, token_id: str) -> str:
        """Mark a token invalid on the ledger and return the tx hash."""

    @abstractmethod
    def find_by_content_hash(self, content_hash: str) -> Optional[LedgerCertificate]:
        """Find the token minted for an artifact hash. None if absent."""

    def is_valid_address(self, address: str) -> bool:
        """Whether the ledger can mint to this address."""
        return True


class InMemoryLedger(LedgerClient):
    """
    In-process ledger for development and tests.

    WARNING: Not suitable for production.
    - Not persistent across restarts
    - Not shared between processes
    """

    def __init__(self, institution_address: str = ZERO_ADDRESS):
        self._tokens: Dict[str, LedgerCertificate] = {}
        self._by_hash: Dict[str, str] = {}
        self._next_token = 1
        self._lock = threading.Lock()
        self._institution_address = institution_address

    def mint(self, student_address, student_name, course_name, content_hash) -> MintReceipt:
        with self._lock:
            token_id = str(self._next_token)
            self._next_token += 1
            self._tokens[token_id] = LedgerCertificate(
                token_id=token_id,
                student_address=student_address,
                institution_address=self._institution_address,
                student_name=student_name,
                course_name=course_name,
                issue_date=now_epoch(),
                content_hash=content_hash,
                is_valid=True,
            )
            self._by_hash.setdefault(content_hash, token_id)
        return MintReceipt(token_id=token_id, tx_hash="0x" + generate_id(32))

    def get(self, token_id: str) -> Optional[LedgerCertificate]:
        with self._lock:
            return self._tokens.get(str(token_id))

    def revoke(self, token_id: str) -> str:
        with self._lock:
            token = self._tokens.get(str(token_id))
            if token is None:
                raise NotFoundError("Token not found on ledger", token_id=str(token_id))
            self._tokens[token.token_id] = token.model_copy(update={"is_valid": False})
        return "0x" + generate_id(32)

    def find_by_content_hash(self, content_hash: str) -> Optional[LedgerCertificate]:
        with self._lock:
            token_id = self._by_hash.get(content_hash)
            return self._tokens.get(token_id) if token_id else None

    def minted_count(self) -> int:
        with self._lock:
            return len(self._tokens)


def load_contract_abi(path: str) -> List[Dict[str, Any]]:
    """Read a contract ABI from a JSON file (bare list or a build artifact with an "abi" key)."""
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return raw["abi"] if isinstance(raw, dict) else raw


class Web3LedgerClient(LedgerClient):
    """
    EVM certificate contract client.

    Expects the contract to expose issueCertificate(address,string,string,string)
    emitting CertificateIssued(tokenId, ...), verifyCertificate(uint256),
    verifyCertificateByIPFS(string) and revokeCertificate(uint256).
    Certificate structs are read positionally as (studentAddress,
    institutionAddress, studentName, courseName, issueDate, ipfsHash, isValid).
    """

    def __init__(
        self,
        provider_url: str,
        contract_address: str,
        abi: List[Dict[str, Any]],
        sender: Optional[str] = None,
        timeout: float = 10.0
    ):
        try:
            from web3 import Web3
            from web3.exceptions import ContractLogicError, Web3Exception
        except ImportError as e:
            raise RuntimeError("web3 required for the web3 ledger backend. Install the web3 extra") from e
        from requests import RequestException

        self._Web3 = Web3
        self._logic_error = ContractLogicError
        self._transient: Tuple[type, ...] = (Web3Exception, RequestException, ValueError, OSError)
        self._timeout = timeout
        self._w3 = Web3(Web3.HTTPProvider(provider_url, request_kwargs={"timeout": timeout}))
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=abi
        )
        self._sender = sender or None

    def _from(self) -> str:
        if self._sender:
            return self._Web3.to_checksum_address(self._sender)
        accounts = self._w3.eth.accounts
        if not accounts:
            raise LedgerUnavailableError("No ledger account available to send transactions")
        return accounts[0]

    def _decode(self, token_id: str, raw) -> Optional[LedgerCertificate]:
        try:
            student, institution, name, course, issue_date, content_hash, is_valid = raw[:7]
            if not student or student == ZERO_ADDRESS:
                return None
            return LedgerCertificate(
                token_id=str(token_id),
                student_address=student,
                institution_address=institution,
                student_name=name,
                course_name=course,
                issue_date=int(issue_date),
                content_hash=content_hash,
                is_valid=bool(is_valid),
            )
        except (ValueError, TypeError, ModelValidationError) as e:
            raise LedgerUnavailableError(f"Unexpected certificate struct from ledger: {e}") from e

    def is_valid_address(self, address: str) -> bool:
        return bool(address) and self._Web3.is_address(address.lower())

    def _checksum(self, address: str) -> str:
        try:
            return self._Web3.to_checksum_address(address)
        except (ValueError, TypeError) as e:
            raise ValidationError("studentAddress", "not a valid ledger address") from e

    def mint(self, student_address, student_name, course_name, content_hash) -> MintReceipt:
        student = self._checksum(student_address)
        try:
            tx = self._contract.functions.issueCertificate(
                student,
                student_name,
                course_name,
                content_hash,
            ).transact({"from": self._from()})
        except self._transient as e:
            raise LedgerUnavailableError(f"Ledger mint failed: {e}") from e
        try:
            receipt = self._w3.eth.wait_for_transaction_receipt(tx, timeout=self._timeout)
            events = self._contract.events.CertificateIssued().process_receipt(receipt)
        except self._transient as e:
            # Sent but unconfirmed: the token may still be minted.
            raise LedgerUnavailableError(
                f"Ledger mint outcome unknown: {e}", submitted_tx=tx.hex()
            ) from e
        if receipt.get("status") == 0:
            raise LedgerUnavailableError("Ledger mint transaction reverted", tx_hash=tx.hex())
        if not events:
            # Mined successfully, so a token exists that this receipt does not name.
            raise LedgerUnavailableError(
                "Certificate minted but token id not found in receipt", submitted_tx=tx.hex()
            )
        return MintReceipt(
            token_id=str(events[0]["args"]["tokenId"]),
            tx_hash=receipt["transactionHash"].hex(),
        )

    def get(self, token_id: str) -> Optional[LedgerCertificate]:
        try:
            raw = self._contract.functions.verifyCertificate(int(token_id)).call()
        except self._logic_error:
            # Reverts for tokens that were never minted.
            return None
        except self._transient as e:
            raise LedgerUnavailableError(f"Ledger read failed: {e}") from e
        return self._decode(token_id, raw)

    def revoke(self, token_id: str) -> str:
        try:
            tx = self._contract.functions.revokeCertificate(int(token_id)).transact({"from": self._from()})
            receipt = self._w3.eth.wait_for_transaction_receipt(tx, timeout=self._timeout)
        except self._transient as e:
            raise LedgerUnavailableError(f"Ledger revoke failed: {e}") from e
        return receipt["transactionHash"].hex()

    def find_by_content_hash(self, content_hash: str) -> Optional[LedgerCertificate]:
        try:
            result = self._contract.functions.verifyCertificateByIPFS(content_hash).call()
        except self._logic_error:
            return None
        except self._transient as e:
            raise LedgerUnavailableError(f"Ledger read failed: {e}") from e
        try:
            exists, token_id, raw = result
        except (ValueError, TypeError) as e:
            raise LedgerUnavailableError(f"Unexpected lookup result from ledger: {e}") from e
        if not exists:
            return None
        return self._decode(str(token_id), raw)


def get_ledger_client() -> LedgerClient:
    from . import config
    if config.LEDGER_BACKEND == "web3":
        if not config.CONTRACT_ADDRESS:
            raise ValueError("CONTRACT_ADDRESS required for web3 ledger backend")
        return Web3LedgerClient(
            provider_url=config.WEB3_PROVIDER,
            contract_address=config.CONTRACT_ADDRESS,
            abi=load_contract_abi(config.CONTRACT_ABI_PATH),
            sender=config.LEDGER_SENDER,
            timeout=config.LEDGER_TIMEOUT_SECONDS,
        )
    return InMemoryLedger()
