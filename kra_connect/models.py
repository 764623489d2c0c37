"""
Typed Results
=============

Immutable pydantic models handed to callers. Payload models accept both
snake_case and camelCase keys so they parse either API style.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

T = TypeVar('T')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _days_until(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        target = date.fromisoformat(value[:10])
    except ValueError:
        return None
    return (target - datetime.now(timezone.utc).date()).days


class ApiModel(BaseModel):
    """Base for payload models: frozen, camelCase aliases, unknown keys ignored."""
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra='ignore',
    )


class PinVerificationResult(ApiModel):
    pin_number: str
    is_valid: bool
    taxpayer_name: Optional[str] = None
    status: Optional[str] = None
    taxpayer_type: Optional[str] = None
    registration_date: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None
    verified_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.is_valid and (self.status or '').lower() == 'active'

    @property
    def is_company(self) -> bool:
        return (self.taxpayer_type or '').lower() == 'company'

    @property
    def is_individual(self) -> bool:
        return (self.taxpayer_type or '').lower() == 'individual'


class TccVerificationResult(ApiModel):
    tcc_number: str
    is_valid: bool
    taxpayer_name: Optional[str] = None
    pin_number: Optional[str] = None
    issue_date: Optional[str] = None
    expiry_date: Optional[str] = None
    is_expired: bool = False
    status: Optional[str] = None
    certificate_type: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None
    verified_at: datetime = Field(default_factory=_utcnow)

    @property
    def days_until_expiry(self) -> Optional[int]:
        return _days_until(self.expiry_date)

    @property
    def is_currently_valid(self) -> bool:
        return self.is_valid and not self.is_expired

    @property
    def is_expiring_soon(self) -> bool:
        """Valid but expiring within 30 days."""
        days = self.days_until_expiry
        return days is not None and 0 <= days <= 30


class EslipValidationResult(ApiModel):
    eslip_number: str
    is_valid: bool
    taxpayer_pin: Optional[str] = None
    taxpayer_name: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    payment_date: Optional[str] = None
    payment_reference: Optional[str] = None
    obligation_type: Optional[str] = None
    obligation_period: Optional[str] = None
    status: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None
    validated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_paid(self) -> bool:
        return (self.status or '').lower() == 'paid'

    @property
    def is_pending(self) -> bool:
        return (self.status or '').lower() == 'pending'

    @property
    def is_cancelled(self) -> bool:
        return (self.status or '').lower() == 'cancelled'


class NilReturnRequest(ApiModel):
    """Filing record sent to the NIL return endpoint."""
    pin_number: str
    obligation_type: str
    tax_period: str
    declaration: bool
    reason: Optional[str] = None
    notes: Optional[str] = None
    documents: Optional[List[str]] = None

    @property
    def has_documents(self) -> bool:
        return bool(self.documents)


class NilReturnResult(ApiModel):
    pin_number: str
    obligation_type: str
    tax_period: str
    is_accepted: bool
    status: str
    reference_number: Optional[str] = None
    acknowledgement_number: Optional[str] = None
    filed_at: datetime = Field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None
    message: Optional[str] = None
    rejection_reasons: Optional[List[str]] = None
    additional_data: Optional[Dict[str, Any]] = None

    @property
    def is_rejected(self) -> bool:
        return not self.is_accepted or (self.status or '').lower() == 'rejected'

    @property
    def is_pending(self) -> bool:
        return (self.status or '').lower() == 'pending'


class TaxObligation(ApiModel):
    obligation_type: str
    tax_period: str
    filing_due_date: Optional[str] = None
    payment_due_date: Optional[str] = None
    filing_status: Optional[str] = None
    payment_status: Optional[str] = None
    amount_due: Optional[float] = None
    amount_paid: Optional[float] = None
    balance: Optional[float] = None
    currency: Optional[str] = None
    last_filing_date: Optional[str] = None
    last_payment_date: Optional[str] = None
    is_overdue: bool = False
    additional_data: Optional[Dict[str, Any]] = None

    @property
    def days_until_filing_due(self) -> Optional[int]:
        return _days_until(self.filing_due_date)

    @property
    def days_until_payment_due(self) -> Optional[int]:
        return _days_until(self.payment_due_date)

    @property
    def has_balance(self) -> bool:
        return bool(self.balance and self.balance > 0)


class TaxpayerDetails(ApiModel):
    pin_number: str
    taxpayer_name: str
    taxpayer_type: str
    is_active: bool
    registration_date: Optional[str] = None
    tax_office: Optional[str] = None
    business_activity: Optional[str] = None
    physical_address: Optional[str] = None
    postal_address: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    compliance_status: Optional[str] = None
    obligations: Optional[List[TaxObligation]] = None
    additional_data: Optional[Dict[str, Any]] = None
    retrieved_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_company(self) -> bool:
        return self.taxpayer_type.lower() == 'company'

    @property
    def is_individual(self) -> bool:
        return self.taxpayer_type.lower() == 'individual'

    @property
    def is_compliant(self) -> bool:
        return (self.compliance_status or '').lower() == 'compliant'

    @property
    def has_obligations(self) -> bool:
        return bool(self.obligations)

    @property
    def obligation_count(self) -> int:
        return len(self.obligations or [])

    @property
    def display_name(self) -> str:
        return self.taxpayer_name or self.pin_number


class VerificationResult(BaseModel, Generic[T]):
    """
    Outcome of one pipeline execution.

    data holds the typed payload; the envelope fields echo the API's
    responseCode/responseDesc/status when it sent them.
    """
    model_config = ConfigDict(frozen=True)

    operation: str
    fingerprint: Optional[str] = None
    data: T
    response_code: Optional[str] = None
    response_desc: Optional[str] = None
    status: Optional[str] = None
    attempts: int = 1
    from_cache: bool = False
