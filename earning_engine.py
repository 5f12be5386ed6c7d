from decimal import Decimal, ROUND_DOWN
from typing import Callable, List, Optional, Tuple

from config import Settings, get_settings
from models import ZERO, Account, Split
from referral_engine import get_lineage

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """quantize to currency minor units, always rounding down."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_DOWN)


def _share(profit: Decimal, percentage: Decimal) -> Decimal:
    return to_money(profit * percentage / Decimal("100"))


def compute_splits(
    purchase_amount,
    profit_amount,
    purchaser: Account,
    get_account: Callable[[int], Optional[Account]],
    settings: Optional[Settings] = None,
) -> Tuple[List[Split], bool, Decimal]:
    """
    purchase_amount / profit_amount: Decimal (or anything Decimal accepts)
    purchaser: the buying account
    get_account: lookup used to walk up from the purchaser's referrer

    returns (splits, is_valid_for_earnings, total).
    shares are taken from the profit, never the purchase amount.
    """
    settings = settings or get_settings()
    purchase = to_money(purchase_amount)
    profit = to_money(profit_amount)

    # below threshold: no chain walk at all
    if purchase < settings.min_purchase_amount:
        return [], False, ZERO

    l1, l2 = get_lineage(purchaser, get_account, max_levels=2)

    splits: List[Split] = []
    if l1 is not None:
        splits.append(
            Split(
                beneficiary_id=l1,
                level=1,
                percentage=settings.direct_earning_percentage,
                amount=_share(profit, settings.direct_earning_percentage),
                is_direct=True,
            )
        )
    if l2 is not None:
        splits.append(
            Split(
                beneficiary_id=l2,
                level=2,
                percentage=settings.indirect_earning_percentage,
                amount=_share(profit, settings.indirect_earning_percentage),
                is_direct=False,
            )
        )

    total = sum((s.amount for s in splits), ZERO)
    return splits, True, total
