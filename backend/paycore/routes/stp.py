"""
STP Routes — SPEI helpers for building bank-transfer checkouts.
"""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from paycore.adapters.registry import AdapterRegistry, get_registry
from paycore.exceptions import ValidationError
from paycore.schemas.schemas import AccountValidationRequest, AccountValidationResponse
from paycore.utils.validators import validate_bank_code, validate_clabe

router = APIRouter(prefix="/api/stp", tags=["STP"])


@router.get("/banks")
def list_banks(registry: AdapterRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    """SPEI participant institutions."""
    return registry.for_provider("stp").get_banks_catalog()


@router.post("/validate-account", response_model=AccountValidationResponse)
def validate_account(payload: AccountValidationRequest, registry: AdapterRegistry = Depends(get_registry)):
    """Check a beneficiary CLABE locally, then with STP."""
    errors = []
    if not validate_clabe(payload.accountNumber):
        errors.append({"field": "accountNumber", "message": "Account must be a valid 18-digit CLABE"})
    if not validate_bank_code(payload.bankCode):
        errors.append({"field": "bankCode", "message": "Bank code must be 5 digits"})
    if errors:
        raise ValidationError("Invalid account", errors=errors)

    return registry.for_provider("stp").validate_beneficiary_account(payload.accountNumber, payload.bankCode)
