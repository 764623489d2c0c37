"""
Operation Table
===============

One entry per remote operation: how to validate its input, which endpoint
to call, how to build the request, and which model parses the result.
The pipeline and the client are both driven from this table.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Type

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from . import validators
from .models import (
    EslipValidationResult,
    NilReturnResult,
    PinVerificationResult,
    TaxpayerDetails,
    TccVerificationResult,
)


@dataclass(frozen=True)
class OperationSpec:
    """
    Static description of one remote operation.

    Attributes:
        name: Operation name; prefixes every cache key of the operation
        method: HTTP method
        endpoint: Endpoint path relative to the base URL
        normalize: Validator returning the normalized input
        result_model: Pydantic model the response data is parsed into
        param: Query parameter carrying the identifier (GET operations)
        id_field: Result field filled from the identifier when absent
        cacheable: Whether successful results are cached
    """
    name: str
    method: str
    endpoint: str
    normalize: Callable[[Any], Any]
    result_model: Type[BaseModel]
    param: Optional[str] = None
    id_field: Optional[str] = None
    cacheable: bool = True

    def cache_identifiers(self, normalized: Any):
        """Identifier values the request fingerprint is built from."""
        if isinstance(normalized, dict):
            return (normalized['pin_number'], normalized['obligation_type'], normalized['tax_period'])
        return (normalized,)

    def request_args(self, normalized: Any) -> Dict[str, Any]:
        """Keyword arguments for HttpTransport.send."""
        if self.method == 'GET':
            return {'params': {self.param: normalized}}
        return {'json_body': {to_camel(key): value for key, value in normalized.items()}}

    def parse(self, data: Dict[str, Any], normalized: Any) -> BaseModel:
        payload = dict(data)
        if self.id_field and isinstance(normalized, str):
            camel = to_camel(self.id_field)
            if self.id_field not in payload and camel not in payload:
                payload[self.id_field] = normalized
        if isinstance(normalized, dict):
            for key in ('pin_number', 'obligation_type', 'tax_period'):
                payload.setdefault(key, normalized[key])
        return self.result_model.model_validate(payload)


VERIFY_PIN = OperationSpec(
    name='verify_pin',
    method='GET',
    endpoint='/verify-pin',
    normalize=validators.validate_pin,
    result_model=PinVerificationResult,
    param='pin',
    id_field='pin_number',
)

VERIFY_TCC = OperationSpec(
    name='verify_tcc',
    method='GET',
    endpoint='/verify-tcc',
    normalize=validators.validate_tcc,
    result_model=TccVerificationResult,
    param='tcc',
    id_field='tcc_number',
)

VALIDATE_ESLIP = OperationSpec(
    name='validate_eslip',
    method='GET',
    endpoint='/validate-eslip',
    normalize=validators.validate_eslip,
    result_model=EslipValidationResult,
    param='eslip',
    id_field='eslip_number',
)

FILE_NIL_RETURN = OperationSpec(
    name='file_nil_return',
    method='POST',
    endpoint='/file-nil-return',
    normalize=validators.validate_nil_return,
    result_model=NilReturnResult,
    cacheable=False,
)

GET_TAXPAYER_DETAILS = OperationSpec(
    name='get_taxpayer_details',
    method='GET',
    endpoint='/taxpayer-details',
    normalize=validators.validate_pin,
    result_model=TaxpayerDetails,
    param='pin',
    id_field='pin_number',
)

OPERATIONS: Dict[str, OperationSpec] = {
    spec.name: spec
    for spec in (VERIFY_PIN, VERIFY_TCC, VALIDATE_ESLIP, FILE_NIL_RETURN, GET_TAXPAYER_DETAILS)
}


def get_operation(operation) -> OperationSpec:
    """Resolve an OperationSpec or operation name."""
    if isinstance(operation, OperationSpec):
        return operation
    try:
        return OPERATIONS[operation]
    except KeyError:
        raise ValueError(f"Unknown operation '{operation}'") from None
