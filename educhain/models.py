from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from .config import UNLIMITED


class WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class MintState(str, Enum):
    UNMINTED = "unminted"
    MINTED = "minted"


class Certificate(WireModel):
    id: str
    student_address: str
    student_name: str
    course_name: str
    grade: str = "N/A"
    content_hash: str
    completion_date: str
    certificate_type: str = "Academic"
    issuer_id: str
    issuer_name: str
    issued_at: datetime
    is_valid: bool = True
    mint_state: MintState = MintState.UNMINTED
    token_id: Optional[str] = None
    minted_to_address: Optional[str] = None
    minted_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    artifact_size: int = 0

    @model_validator(mode="after")
    def _token_iff_minted(self):
        minted = self.mint_state == MintState.MINTED
        if minted != (self.token_id is not None):
            raise ValueError("token_id must be set exactly when mint_state is minted")
        if minted and not self.minted_to_address:
            raise ValueError("minted certificate requires minted_to_address")
        return self

    @property
    def is_minted(self) -> bool:
        return self.mint_state == MintState.MINTED


class Institution(WireModel):
    id: str
    name: str = ""
    is_verified: bool = False
    active_subscription_plan_id: Optional[str] = None


class SubscriptionPlan(WireModel):
    id: str
    name: str
    certificate_limit: int
    storage_limit_bytes: int
    api_call_limit: int = UNLIMITED
    is_trial: bool = False


class UsagePeriod(WireModel):
    institution_id: str
    period_start: datetime
    period_end: datetime
    certificates_issued: int = 0
    storage_bytes_used: int = 0
    api_calls: int = 0


class CertificatePayload(WireModel):
    """Issuance form fields. Presence is checked by the issuance gate."""
    student_address: Optional[str] = None
    student_name: Optional[str] = None
    course_name: Optional[str] = None
    grade: Optional[str] = None
    completion_date: Optional[str] = None
    certificate_type: Optional[str] = None


class MintRequest(WireModel):
    wallet_address: Optional[str] = None


class MintReceipt(WireModel):
    token_id: str
    tx_hash: Optional[str] = None


class LedgerCertificate(WireModel):
    token_id: str
    student_address: str
    institution_address: str = ""
    student_name: str = ""
    course_name: str = ""
    issue_date: int = 0
    content_hash: str = ""
    is_valid: bool = True


class VerificationKind(str, Enum):
    ID = "id"
    CONTENT_HASH = "contentHash"
    TOKEN_ID = "tokenId"


class VerificationSource(str, Enum):
    BACKEND = "backend"
    BOTH = "both"
    BLOCKCHAIN = "blockchain"


class VerificationResult(WireModel):
    valid: bool
    source: VerificationSource
    certificate: Optional[Certificate] = None
    ledger: Optional[LedgerCertificate] = None
    kind: VerificationKind = VerificationKind.ID
