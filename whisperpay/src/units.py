from decimal import Decimal, InvalidOperation

from web3 import Web3

from whisperpay.src.errors import ValidationError


def parse_ether(amount, field: str = "amount") -> int:
    """Parse a positive decimal ETH string into wei."""
    if amount is None or str(amount).strip() == "":
        raise ValidationError(f"{field} is required")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValidationError(f"{field} must be a decimal number")
    if not value.is_finite() or value <= 0:
        raise ValidationError(f"{field} must be a positive decimal number")

    wei = value * Decimal(10**18)
    if wei != wei.to_integral_value():
        raise ValidationError(f"{field} has more than 18 decimal places")
    return Web3.to_wei(value, "ether")
