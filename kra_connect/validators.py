"""
Input Validators
================

Pure functions that reject malformed identifiers before any cache lookup
or rate-limit token is spent. Each validate_* function returns the
normalized value (trimmed, uppercased where the format is case-insensitive)
or raises ValidationError naming the offending field.
"""

import re
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, Mapping

from .exceptions import ValidationError

PIN_PATTERN = re.compile(r'^[A-Z]\d{9}[A-Z]$')
TCC_PATTERN = re.compile(r'^TCC\d{6,10}$')
ESLIP_PATTERN = re.compile(r'^[A-Z0-9]{10,20}$')
TAX_PERIOD_PATTERN = re.compile(r'^(\d{4})-(\d{2})$')
DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')
EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PHONE_PATTERN = re.compile(r'^(\+254|0)[17]\d{8}$')

MIN_TAX_YEAR = 2000
MAX_TAX_YEAR = 2100
MIN_API_KEY_LENGTH = 10
MAX_AMOUNT = 999_999_999.99


class IdentifierKind(str, Enum):
    """Identifier kinds understood by validate(); values are the reported field names."""
    PIN = 'pin'
    TCC = 'tcc'
    ESLIP = 'eslip'
    TAX_PERIOD = 'tax_period'
    DATE = 'date'
    EMAIL = 'email'
    PHONE = 'phone'
    API_KEY = 'api_key'


def _require(value: Any, field: str, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, f"{label} is required", provided=value)
    return value.strip()


def validate_pin(pin: Any) -> str:
    """
    Validate a KRA PIN: one letter, nine digits, one letter.

    >>> validate_pin(' p051234567a ')
    'P051234567A'
    """
    clean = _require(pin, 'pin', 'PIN number').upper()
    if not PIN_PATTERN.match(clean):
        raise ValidationError(
            'pin',
            'Invalid PIN format. Expected a letter, 9 digits and a letter (e.g. P051234567A)',
            provided=pin
        )
    return clean


def validate_tcc(tcc: Any) -> str:
    """Validate a Tax Compliance Certificate number: TCC followed by 6-10 digits."""
    clean = _require(tcc, 'tcc', 'TCC number').upper()
    if not TCC_PATTERN.match(clean):
        raise ValidationError(
            'tcc',
            'Invalid TCC format. Expected TCC followed by 6-10 digits (e.g. TCC123456)',
            provided=tcc
        )
    return clean


def validate_eslip(eslip: Any) -> str:
    """Validate a payment slip number: 10-20 alphanumeric characters."""
    clean = _require(eslip, 'eslip', 'E-slip number').upper()
    if not ESLIP_PATTERN.match(clean):
        raise ValidationError(
            'eslip',
            'Invalid e-slip format. Expected 10-20 alphanumeric characters',
            provided=eslip
        )
    return clean


def validate_tax_period(tax_period: Any) -> str:
    """Validate a tax period in YYYY-MM form with a sane year and month."""
    clean = _require(tax_period, 'tax_period', 'Tax period')
    match = TAX_PERIOD_PATTERN.match(clean)
    if not match:
        raise ValidationError(
            'tax_period',
            'Invalid tax period format. Expected YYYY-MM (e.g. 2024-01)',
            provided=tax_period
        )

    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationError(
            'tax_period',
            'Invalid month in tax period. Month must be between 01 and 12',
            provided=tax_period
        )
    if not MIN_TAX_YEAR <= year <= MAX_TAX_YEAR:
        raise ValidationError(
            'tax_period',
            f'Invalid year in tax period. Year must be between {MIN_TAX_YEAR} and {MAX_TAX_YEAR}',
            provided=tax_period
        )
    return clean


def validate_date(value: Any) -> str:
    """Validate a calendar date in YYYY-MM-DD form."""
    clean = _require(value, 'date', 'Date')
    if not DATE_PATTERN.match(clean):
        raise ValidationError(
            'date',
            'Invalid date format. Expected YYYY-MM-DD (e.g. 2024-01-15)',
            provided=value
        )
    try:
        date.fromisoformat(clean)
    except ValueError:
        raise ValidationError('date', 'Invalid date value', provided=value) from None
    return clean


def validate_email(email: Any) -> str:
    clean = _require(email, 'email', 'Email')
    if not EMAIL_PATTERN.match(clean):
        raise ValidationError('email', 'Invalid email format', provided=email)
    return clean.lower()


def validate_phone(phone: Any) -> str:
    """Validate a Kenyan mobile number (+2547XXXXXXXX or 07XXXXXXXX)."""
    clean = _require(phone, 'phone', 'Phone number').replace(' ', '')
    if not PHONE_PATTERN.match(clean):
        raise ValidationError(
            'phone',
            'Invalid Kenyan phone number format. Expected +254712345678 or 0712345678',
            provided=phone
        )
    return clean


def validate_api_key(api_key: Any) -> str:
    # Never echo the key back in error details
    if not isinstance(api_key, str) or not api_key.strip():
        raise ValidationError('api_key', 'API key is required')
    clean = api_key.strip()
    if len(clean) < MIN_API_KEY_LENGTH:
        raise ValidationError(
            'api_key',
            f'API key is too short. Minimum length is {MIN_API_KEY_LENGTH} characters'
        )
    return clean


def validate_amount(amount: Any) -> float:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise ValidationError('amount', 'Amount must be a number', provided=amount)
    if amount < 0:
        raise ValidationError('amount', 'Amount cannot be negative', provided=amount)
    if amount > MAX_AMOUNT:
        raise ValidationError('amount', 'Amount exceeds maximum allowed value', provided=amount)
    return float(amount)


_VALIDATORS: Dict[IdentifierKind, Callable[[Any], str]] = {
    IdentifierKind.PIN: validate_pin,
    IdentifierKind.TCC: validate_tcc,
    IdentifierKind.ESLIP: validate_eslip,
    IdentifierKind.TAX_PERIOD: validate_tax_period,
    IdentifierKind.DATE: validate_date,
    IdentifierKind.EMAIL: validate_email,
    IdentifierKind.PHONE: validate_phone,
    IdentifierKind.API_KEY: validate_api_key,
}


def validate(kind, raw_input: Any) -> str:
    """
    Validate and normalize raw_input for the given identifier kind.

    Args:
        kind: IdentifierKind member or its string value (e.g. 'pin')
        raw_input: Value supplied by the caller

    Returns:
        Normalized identifier

    Raises:
        ValidationError: If the input does not match the kind's format
        ValueError: If kind is unknown
    """
    return _VALIDATORS[IdentifierKind(kind)](raw_input)


def validate_nil_return(request) -> Dict[str, Any]:
    """
    Validate a NIL return filing record and return its normalized wire body.

    Accepts a NilReturnRequest model or a plain mapping with the same keys.
    """
    if hasattr(request, 'model_dump'):
        data = request.model_dump(exclude_none=True)
    elif isinstance(request, Mapping):
        data = dict(request)
    else:
        raise ValidationError(
            'request',
            'NIL return request must be a NilReturnRequest or mapping',
            provided=request
        )

    body = dict(data)
    body['pin_number'] = validate_pin(data.get('pin_number'))
    body['tax_period'] = validate_tax_period(data.get('tax_period'))

    obligation = data.get('obligation_type')
    if not isinstance(obligation, str) or not obligation.strip():
        raise ValidationError('obligation_type', 'Obligation type is required', provided=obligation)
    body['obligation_type'] = obligation.strip().upper()

    if data.get('declaration') is not True:
        raise ValidationError('declaration', 'The filing declaration must be accepted')

    return body


def _predicate(validator: Callable[[Any], Any]) -> Callable[[Any], bool]:
    def check(value: Any) -> bool:
        try:
            validator(value)
        except ValidationError:
            return False
        return True
    check.__name__ = validator.__name__.replace('validate_', 'is_valid_')
    check.__doc__ = f"Non-raising variant of {validator.__name__}."
    return check


is_valid_pin = _predicate(validate_pin)
is_valid_tcc = _predicate(validate_tcc)
is_valid_eslip = _predicate(validate_eslip)
is_valid_tax_period = _predicate(validate_tax_period)
is_valid_date = _predicate(validate_date)
is_valid_email = _predicate(validate_email)
is_valid_phone = _predicate(validate_phone)
