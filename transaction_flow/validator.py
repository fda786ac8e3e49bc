"""
Transaction Validator

Pure, side-effect free input validation. User-input problems come back as a
field-keyed error map; only programming errors raise.
"""

from typing import Dict, Optional

from .address_validation import validate_address, validate_username
from .errors import InvalidAmount
from .models import (
    TransactionDescriptor,
    TransactionType,
    ValidationResult,
    parse_amount,
)


TRADE_TYPES = {TransactionType.BUY, TransactionType.SELL}
EXTERNAL_METHOD_TYPES = {TransactionType.DEPOSIT, TransactionType.WITHDRAW}


class TransactionValidator:
    """
    Validates transaction descriptors

    Checks:
    - amount is numeric, positive and above the per-type minimum
    - payment method is an external instrument for deposits/withdrawals
    - recipient is a @username for sends, a chain address for transfers
    - asset is present and tradeable for buys/sells
    """

    def __init__(
        self,
        minimum_amounts: Dict[str, float],
        asset_chains: Optional[Dict[str, str]] = None
    ):
        """
        Args:
            minimum_amounts: Minimum amount per transaction type value
            asset_chains: Tradeable assets and the chain each settles on
        """
        self.minimum_amounts = dict(minimum_amounts)
        self.asset_chains = {k.upper(): v.upper() for k, v in (asset_chains or {}).items()}

    def validate(self, descriptor: TransactionDescriptor) -> ValidationResult:
        """
        Validate a transaction descriptor

        Args:
            descriptor: Transaction descriptor

        Returns:
            ValidationResult with a field -> message error map

        Raises:
            TypeError: descriptor is not a TransactionDescriptor
        """
        if not isinstance(descriptor, TransactionDescriptor):
            raise TypeError(f"Expected TransactionDescriptor, got {type(descriptor).__name__}")

        errors: Dict[str, str] = {}
        tx_type = descriptor.type

        amount_error = self._validate_amount(descriptor)
        if amount_error:
            errors['amount'] = amount_error

        if tx_type in EXTERNAL_METHOD_TYPES:
            method = descriptor.payment_method
            if method is None:
                errors['payment_method'] = "Payment method is required"
            elif not method.is_external:
                errors['payment_method'] = f"{tx_type.value} requires an external payment method"

        if tx_type is TransactionType.SEND:
            is_valid, error = validate_username(descriptor.recipient)
            if not is_valid:
                errors['recipient'] = error

        elif tx_type is TransactionType.TRANSFER:
            chain = descriptor.chain or self.asset_chains.get((descriptor.asset or '').upper())
            is_valid, error = validate_address(descriptor.recipient, chain)
            if not is_valid:
                errors['recipient'] = error

        if tx_type in TRADE_TYPES:
            asset = descriptor.asset
            if not asset:
                errors['asset'] = "Asset is required"
            elif self.asset_chains and asset.upper() not in self.asset_chains:
                errors['asset'] = f"Asset {asset} is not supported"

        return ValidationResult(is_valid=not errors, errors=errors)

    def _validate_amount(self, descriptor: TransactionDescriptor) -> Optional[str]:
        try:
            amount = parse_amount(descriptor.amount)
        except InvalidAmount:
            return "Valid amount is required"

        minimum = self.minimum_amounts.get(descriptor.type.value)
        if minimum is not None and amount < minimum:
            return f"Minimum amount for {descriptor.type.value} is ${minimum:,.2f}"

        return None
