from decimal import Decimal, InvalidOperation
from typing import Optional, List
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from urllib.parse import urlparse


UNIT_DECIMALS = 8
UNITS_PER_CREDIT = 10 ** UNIT_DECIMALS
# BigInteger column range
MAX_UNITS = 2 ** 63 - 1


def to_units(amount: Decimal) -> int:
    """Convert a credit amount to integer ledger units.

    Raises ValueError for non-finite, negative, over-precise or
    out-of-range amounts.
    """
    try:
        amount = Decimal(amount)
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid amount: {amount!r}")
    if not amount.is_finite():
        raise ValueError("Amount must be finite")
    if amount < 0:
        raise ValueError("Amount cannot be negative")
    units = amount * UNITS_PER_CREDIT
    if units != units.to_integral_value():
        raise ValueError(
            f"Amount supports at most {UNIT_DECIMALS} decimal places"
        )
    if units > MAX_UNITS:
        raise ValueError(f"Amount {amount} exceeds the ledger range")
    return int(units)


def from_units(units: int) -> Decimal:
    return (Decimal(units) / UNITS_PER_CREDIT).quantize(
        Decimal(1).scaleb(-UNIT_DECIMALS)
    )


def format_amount(amount: Decimal) -> str:
    """Plain decimal notation, never exponent form (1E-8)."""
    return format(amount, "f")


def normalize_address(address: str) -> str:
    if not address or not address.strip():
        raise ValueError("Address cannot be empty")
    return address.strip().lower()


@dataclass
class Account:
    id: str
    balance: Decimal
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Account id cannot be empty")
        if self.balance < 0:
            raise ValueError("Balance cannot be negative")


@dataclass
class Service:
    id: Optional[str]
    owner_account_id: str
    name: str
    endpoint_url: str
    price_per_query: Decimal
    description: str = ""
    keywords: List[str] = field(default_factory=list)
    payout_address: Optional[str] = None
    unpaid_balance: Decimal = Decimal("0")
    is_active: bool = True
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Service name cannot be empty")
        if not self.owner_account_id:
            raise ValueError("Service owner is required")
        to_units(self.price_per_query)
        to_units(self.unpaid_balance)
        parsed = urlparse(self.endpoint_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid endpoint URL: {self.endpoint_url!r}")


class TransactionKind(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"


@dataclass
class Transaction:
    id: Optional[str]
    service_id: str
    seller_account_id: str
    buyer_account_id: str
    amount: Decimal
    created_at: datetime
    kind: TransactionKind = TransactionKind.CHARGE
    refund_of: Optional[str] = None

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError("Transaction amount cannot be negative")
        if self.kind == TransactionKind.REFUND and not self.refund_of:
            raise ValueError("Refund must reference the refunded charge")


@dataclass
class DepositEvent:
    tx_hash: str
    from_address: str
    to_address: str
    value: int
    block_number: int
    log_index: int = -1

    def __post_init__(self):
        if not self.tx_hash:
            raise ValueError("Transaction hash is required")
        if self.value < 0:
            raise ValueError("Deposit value cannot be negative")
        self.tx_hash = self.tx_hash.lower()
        self.from_address = normalize_address(self.from_address)
        self.to_address = normalize_address(self.to_address)

    def credit_amount(self, decimals: int) -> Decimal:
        """Chain value scaled to credits, truncated to ledger precision."""
        if decimals >= UNIT_DECIMALS:
            units = self.value // 10 ** (decimals - UNIT_DECIMALS)
        else:
            units = self.value * 10 ** (UNIT_DECIMALS - decimals)
        return from_units(units)


@dataclass
class Session:
    token: str
    account_id: str
    expires_at: datetime
