"""
Logging configuration for EduChain.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import List, Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    Provides methods for logging issuance decisions, mint outcomes,
    revocations, verification results and reconciliation passes.
    """

    def __init__(self, name: str = "educhain.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def certificate_issued(
        self,
        certificate_id: str,
        institution_id: str,
        content_hash: str,
        certificates_issued: int
    ) -> None:
        """Log a successful issuance."""
        self._log(
            logging.INFO,
            "CERTIFICATE_ISSUED",
            certificate_id=certificate_id,
            institution_id=institution_id,
            content_hash=content_hash,
            certificates_issued=certificates_issued,
            message=f"Certificate {certificate_id} issued by {institution_id}"
        )

    def issuance_denied(self, institution_id: str, reason: str) -> None:
        """Log an issuance refused before any record was created."""
        self._log(
            logging.WARNING,
            "ISSUANCE_DENIED",
            institution_id=institution_id,
            reason=reason,
            message=f"Issuance denied: {reason}"
        )

    def certificate_minted(
        self,
        certificate_id: str,
        token_id: str,
        tx_hash: Optional[str],
        wallet_address: str
    ) -> None:
        """Log a certificate bound to its ledger token."""
        self._log(
            logging.INFO,
            "CERTIFICATE_MINTED",
            certificate_id=certificate_id,
            token_id=token_id,
            tx_hash=tx_hash,
            wallet_address=wallet_address,
            message=f"Certificate {certificate_id} minted as token {token_id}"
        )

    def mint_rejected(self, certificate_id: str, reason: str) -> None:
        """Log a mint request refused without touching the ledger."""
        self._log(
            logging.WARNING,
            "MINT_REJECTED",
            certificate_id=certificate_id,
            reason=reason,
            message=f"Mint rejected: {reason}"
        )

    def mint_bind_failed(self, certificate_id: str, token_id: str, error: str) -> None:
        """Log a ledger token that could not be recorded off-chain yet."""
        self._log(
            logging.ERROR,
            "MINT_BIND_FAILED",
            certificate_id=certificate_id,
            token_id=token_id,
            error=error,
            message=f"Token {token_id} minted but not bound to {certificate_id}"
        )

    def certificate_revoked(
        self,
        certificate_id: str,
        actor: str,
        already_revoked: bool,
        ledger_tx_hash: Optional[str] = None
    ) -> None:
        """Log a revocation (or an idempotent repeat)."""
        self._log(
            logging.INFO,
            "CERTIFICATE_REVOKED",
            certificate_id=certificate_id,
            actor=actor,
            already_revoked=already_revoked,
            ledger_tx_hash=ledger_tx_hash,
            message=f"Certificate {certificate_id} revoked by {actor}"
        )

    def verification(
        self,
        identifier: str,
        kind: str,
        valid: Optional[bool],
        source: Optional[str]
    ) -> None:
        """Log a verification answer."""
        self._log(
            logging.INFO,
            "VERIFICATION",
            identifier=identifier,
            kind=kind,
            valid=valid,
            source=source,
            message=f"Verification of {kind} {identifier}: {valid}"
        )

    def ledger_degraded(self, operation: str, token_id: Optional[str], error: str) -> None:
        """Log a ledger call that failed and was answered from the store alone."""
        self._log(
            logging.WARNING,
            "LEDGER_DEGRADED",
            operation=operation,
            token_id=token_id,
            error=error,
            message=f"Ledger {operation} unavailable, using backend only"
        )

    def reconciliation(self, bound: List[str], stranded: List[str], failed: List[str]) -> None:
        """Log the outcome of a mint journal reconciliation pass."""
        level = logging.WARNING if (stranded or failed) else logging.INFO
        self._log(
            level,
            "RECONCILIATION",
            bound=bound,
            stranded=stranded,
            failed=failed,
            message=f"Reconciled {len(bound)} mints, {len(stranded)} stranded, {len(failed)} failed"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )

    def rate_limit_exceeded(
        self,
        client_id: str,
        endpoint: str
    ) -> None:
        """Log rate limit exceeded."""
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


# Stateless facade over the "educhain.audit" logger.
audit_log = AuditLogger()
