from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, field_validator


ZERO = Decimal("0.00")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------
# accounts
# ---------


class NewAccount(BaseModel):
    """registration payload; the credential is opaque to the engine."""

    username: str = Field(..., min_length=3, max_length=30, pattern=r"^[a-zA-Z0-9_]+$")
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str = Field(..., pattern=r"^[0-9]{10}$")
    full_name: str = Field(..., min_length=2, max_length=100)
    password_hash: str = Field("", repr=False)

    @field_validator("username", "full_name", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class Account(BaseModel):
    id: int
    username: str
    email: str
    phone: str
    full_name: str
    password_hash: str = Field("", repr=False, exclude=True)
    referral_code: str
    referred_by: Optional[int] = None
    referral_level: int = 0
    direct_referrals: List[int] = Field(default_factory=list)
    total_earnings: Decimal = ZERO
    direct_earnings: Decimal = ZERO
    indirect_earnings: Decimal = ZERO
    is_active: bool = True
    is_verified: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def total_direct_referrals(self) -> int:
        return len(self.direct_referrals)

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "referral_code": self.referral_code,
        }

    def summary(self) -> Dict[str, Any]:
        """the slice of an account shown in trees, leaderboards and reports."""
        return {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "referral_level": self.referral_level,
            "total_earnings": self.total_earnings,
            "direct_earnings": self.direct_earnings,
            "indirect_earnings": self.indirect_earnings,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }


# ---------
# ledger
# ---------


class SplitStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    SKIPPED = "skipped"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Split(BaseModel):
    beneficiary_id: int
    level: Literal[1, 2]
    percentage: Decimal
    amount: Decimal
    is_direct: bool
    status: SplitStatus = SplitStatus.PENDING
    applied_at: Optional[datetime] = None


class Transaction(BaseModel):
    transaction_id: str
    purchaser_id: int
    purchase_amount: Decimal
    profit_amount: Decimal
    product_name: str = "Product"
    category: str = "General"
    referral_chain: List[Split] = Field(default_factory=list)
    is_valid_for_earnings: bool = False
    total_earnings_distributed: Decimal = ZERO
    status: TransactionStatus = TransactionStatus.PENDING
    attempts: int = 0
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def split_for(self, account_id: int) -> Optional[Split]:
        for split in self.referral_chain:
            if split.beneficiary_id == account_id:
                return split
        return None

    @property
    def has_applied_splits(self) -> bool:
        return any(s.status == SplitStatus.APPLIED for s in self.referral_chain)
