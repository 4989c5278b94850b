"""
Request Validator — Field-level checks for create and refund requests.

All problems are collected and raised together as one ValidationError so the
caller can fix the whole request at once. Nothing is persisted on failure.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional

from paycore.exceptions import ValidationError
from paycore.utils.validators import (
    length_between, validate_agreement_code, validate_bank_code, validate_clabe,
    validate_email, validate_iso_date, validate_phone, validate_postal_code, validate_rfc,
)

PAYMENT_METHODS = ("card", "cash-voucher", "bank-transfer", "wallet", "bill-payment")
PURPOSE_TYPES = ("course", "webinar", "subscription", "service")
SERVICE_TYPES = ("CFE", "TELMEX", "AGUA", "GAS")

MIN_AMOUNT = Decimal("0.01")
DEFAULT_MAX_AMOUNT = Decimal("999999.99")


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


class RequestValidator:
    """Validates caller payloads before any record is written."""

    def __init__(
        self,
        supported_currencies: Iterable[str] = ("MXN", "USD"),
        max_amount: Decimal = DEFAULT_MAX_AMOUNT,
        payment_methods: Iterable[str] = PAYMENT_METHODS,
    ):
        self.supported_currencies = tuple(supported_currencies)
        self.max_amount = Decimal(str(max_amount))
        self.payment_methods = tuple(payment_methods)

    def validate_create(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate a create-payment request.

        Args:
            request: camelCase payload (amount, currency, paymentMethod, purpose, billingDetails)

        Returns:
            The request with ``amount`` normalized to a two-decimal Decimal
            and ``currency`` upper-cased.

        Raises:
            ValidationError: with one ``{field, message}`` entry per problem.
        """
        errors: List[Dict[str, str]] = []

        def fail(field: str, message: str) -> None:
            errors.append({"field": field, "message": message})

        amount = _to_decimal(request.get("amount"))
        if amount is None:
            fail("amount", "Amount is required and must be a number")
        elif amount < MIN_AMOUNT:
            fail("amount", "Amount must be greater than zero")
        elif amount > self.max_amount:
            fail("amount", f"Amount must not exceed {self.max_amount}")
        elif amount != amount.quantize(Decimal("0.01")):
            fail("amount", "Amount supports at most two decimal places")

        currency = str(request.get("currency") or "").upper()
        if currency not in self.supported_currencies:
            fail("currency", f"Currency must be one of: {', '.join(self.supported_currencies)}")

        method = request.get("paymentMethod")
        if method not in self.payment_methods:
            fail("paymentMethod", f"Payment method must be one of: {', '.join(self.payment_methods)}")

        purpose = request.get("purpose") or {}
        if not isinstance(purpose, Mapping):
            fail("purpose", "Purpose must be an object")
            purpose = {}
        purpose_type = purpose.get("type")
        if purpose_type not in PURPOSE_TYPES:
            fail("purpose.type", f"Purpose type must be one of: {', '.join(PURPOSE_TYPES)}")
        if not str(purpose.get("itemId") or "").strip():
            fail("purpose.itemId", "Purpose item id is required")
        if method == "bill-payment" and purpose_type in PURPOSE_TYPES and purpose_type != "service":
            fail("purpose.type", "Bill payments must have purpose type 'service'")

        billing = request.get("billingDetails") or {}
        if not isinstance(billing, Mapping):
            fail("billingDetails", "Billing details must be an object")
            billing = {}
        self._check_billing(billing, fail)

        if method == "bank-transfer":
            self._check_bank_transfer(billing, fail)
        elif method == "bill-payment":
            self._check_bill_payment(billing, fail)

        if errors:
            raise ValidationError("Invalid payment request", errors=errors)

        cleaned = dict(request)
        cleaned["amount"] = amount.quantize(Decimal("0.01"))
        cleaned["currency"] = currency
        return cleaned

    @staticmethod
    def _check_billing(billing: Mapping[str, Any], fail) -> None:
        if not length_between(billing.get("name"), 3, 100):
            fail("billingDetails.name", "Name must be between 3 and 100 characters")
        if not validate_email(billing.get("email")):
            fail("billingDetails.email", "A valid email address is required")
        if billing.get("phone") and not validate_phone(billing.get("phone")):
            fail("billingDetails.phone", "Phone must be in international format (E.164)")
        if billing.get("taxId") and not validate_rfc(billing.get("taxId")):
            fail("billingDetails.taxId", "Tax id must be a valid RFC")

        address = billing.get("address")
        if not isinstance(address, Mapping):
            fail("billingDetails.address", "Address is required")
            return
        for key in ("line1", "city", "state"):
            if not str(address.get(key) or "").strip():
                fail(f"billingDetails.address.{key}", f"Address {key} is required")
        if not validate_postal_code(address.get("postalCode")):
            fail("billingDetails.address.postalCode", "Postal code must be 5 digits")

    @staticmethod
    def _check_bank_transfer(billing: Mapping[str, Any], fail) -> None:
        if not length_between(billing.get("beneficiaryName"), 3, 100):
            fail("billingDetails.beneficiaryName", "Beneficiary name must be between 3 and 100 characters")
        if not validate_clabe(billing.get("beneficiaryAccount")):
            fail("billingDetails.beneficiaryAccount", "Beneficiary account must be a valid 18-digit CLABE")
        bank = billing.get("beneficiaryBank")
        if not isinstance(bank, Mapping) or not validate_bank_code(bank.get("code")):
            fail("billingDetails.beneficiaryBank.code", "Bank code must be 5 digits")
        if not length_between(billing.get("reference"), 1, 30):
            fail("billingDetails.reference", "Reference must be between 1 and 30 characters")

    @staticmethod
    def _check_bill_payment(billing: Mapping[str, Any], fail) -> None:
        if billing.get("serviceType") not in SERVICE_TYPES:
            fail("billingDetails.serviceType", f"Service type must be one of: {', '.join(SERVICE_TYPES)}")
        if not validate_agreement_code(billing.get("agreementCode")):
            fail("billingDetails.agreementCode", "Agreement code must be 6 to 8 digits")
        if not length_between(billing.get("reference"), 5, 30):
            fail("billingDetails.reference", "Reference must be between 5 and 30 characters")
        if billing.get("dueDate") and not validate_iso_date(billing.get("dueDate")):
            fail("billingDetails.dueDate", "Due date must be an ISO-8601 date")

    def validate_refund(self, amount: Any, reason: Optional[str]) -> Optional[Decimal]:
        """Check a refund request; returns the parsed amount (None = remaining balance)."""
        errors: List[Dict[str, str]] = []
        parsed = None
        if amount is not None:
            parsed = _to_decimal(amount)
            if parsed is None or parsed < MIN_AMOUNT:
                errors.append({"field": "amount", "message": "Refund amount must be greater than zero"})
            elif parsed != parsed.quantize(Decimal("0.01")):
                errors.append({"field": "amount", "message": "Refund amount supports at most two decimal places"})
        if not length_between(reason, 3, 200):
            errors.append({"field": "reason", "message": "Reason must be between 3 and 200 characters"})
        if errors:
            raise ValidationError("Invalid refund request", errors=errors)
        return parsed.quantize(Decimal("0.01")) if parsed is not None else None
