from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from config import Settings, get_settings
from db.base import Store
from errors import AccountNotFound, ValidationError
from models import ZERO, Account, SplitStatus, TransactionStatus
from referral_service import get_tree


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # naive datetimes are taken as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _require_account(store: Store, account_id: int) -> Account:
    account = store.get_account(account_id)
    if account is None:
        raise AccountNotFound(account_id)
    return account


def user_earnings_report(
    store: Store,
    account_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    aggregate the account's credited splits from the ledger.
    the window [start, end] is inclusive on the transaction's created_at;
    omitted bounds are open.
    """
    start, end = _aware(start), _aware(end)
    if start is not None and end is not None and start > end:
        raise ValidationError("start must not be after end")

    account = _require_account(store, account_id)
    transactions = store.transactions_for_beneficiary(account_id, start, end)

    report = {
        "account": account.summary(),
        "total_earnings": ZERO,
        "direct_earnings": ZERO,
        "indirect_earnings": ZERO,
        "transaction_count": 0,
        "direct_transactions": 0,
        "indirect_transactions": 0,
        "breakdown": [],
        "range": {"start": start, "end": end},
    }

    for tx in transactions:
        split = tx.split_for(account_id)
        if split is None or split.status != SplitStatus.APPLIED:
            continue

        report["total_earnings"] += split.amount
        report["transaction_count"] += 1
        if split.is_direct:
            report["direct_earnings"] += split.amount
            report["direct_transactions"] += 1
        else:
            report["indirect_earnings"] += split.amount
            report["indirect_transactions"] += 1

        report["breakdown"].append(
            {
                "transaction_id": tx.transaction_id,
                "purchaser_id": tx.purchaser_id,
                "purchase_amount": tx.purchase_amount,
                "profit_amount": tx.profit_amount,
                "earning_amount": split.amount,
                "earning_percentage": split.percentage,
                "is_direct": split.is_direct,
                "level": split.level,
                "date": tx.created_at,
            }
        )

    return report


def referral_stats(
    store: Store,
    account_id: int,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    direct / indirect referrals plus what they earned the account,
    rolled up per purchaser and per month (completed transactions only).
    """
    settings = settings or get_settings()
    tree = get_tree(store, account_id, depth=2)
    account: Account = tree["self"]

    by_direct: Dict[int, Dict[str, Any]] = {}
    by_indirect: Dict[int, Dict[str, Any]] = {}
    monthly: Dict[str, Dict[str, Any]] = {}
    total_direct = ZERO
    total_indirect = ZERO

    for tx in store.transactions_for_beneficiary(account_id):
        if tx.status != TransactionStatus.COMPLETED:
            continue
        split = tx.split_for(account_id)
        if split is None or split.status != SplitStatus.APPLIED:
            continue

        rollup = by_direct if split.is_direct else by_indirect
        entry = rollup.setdefault(
            tx.purchaser_id,
            {"purchaser_id": tx.purchaser_id, "total_earnings": ZERO, "transactions": 0},
        )
        entry["total_earnings"] += split.amount
        entry["transactions"] += 1

        month = tx.created_at.strftime("%Y-%m")
        bucket = monthly.setdefault(
            month,
            {
                "month": month,
                "total_earnings": ZERO,
                "direct_earnings": ZERO,
                "indirect_earnings": ZERO,
                "transactions": 0,
            },
        )
        bucket["total_earnings"] += split.amount
        bucket["transactions"] += 1

        if split.is_direct:
            total_direct += split.amount
            bucket["direct_earnings"] += split.amount
        else:
            total_indirect += split.amount
            bucket["indirect_earnings"] += split.amount

    direct = tree["direct_referrals"]
    indirect = tree["indirect_referrals"]

    return {
        "account": {
            **account.summary(),
            "referral_code": account.referral_code,
            "total_direct_referrals": account.total_direct_referrals,
            "max_direct_referrals": settings.max_direct_referrals,
        },
        "referrals": {
            "direct": [a.summary() for a in direct],
            "indirect": [a.summary() for a in indirect],
            "total_direct": len(direct),
            "total_indirect": len(indirect),
        },
        "earnings": {
            "total_direct": total_direct,
            "total_indirect": total_indirect,
            "total": total_direct + total_indirect,
        },
        "by_direct_referral": list(by_direct.values()),
        "by_indirect_referral": list(by_indirect.values()),
        "monthly_breakdown": [monthly[m] for m in sorted(monthly)],
    }


def leaderboard(store: Store, limit: int = 10) -> List[Dict[str, Any]]:
    if not 1 <= limit <= 100:
        raise ValidationError("limit must be between 1 and 100")
    return [
        {"rank": rank, **account.summary()}
        for rank, account in enumerate(store.top_earners(limit), start=1)
    ]


def system_analytics(store: Store, recent_limit: int = 10, top_limit: int = 10) -> Dict[str, Any]:
    recent = store.recent_transactions(recent_limit, TransactionStatus.COMPLETED)
    total: Decimal = store.total_distributed()

    return {
        "total_users": store.count_accounts(),
        "active_users": store.count_accounts(active_only=True),
        "total_earnings_distributed": total,
        "recent_transactions": [
            {
                "transaction_id": tx.transaction_id,
                "purchaser_id": tx.purchaser_id,
                "purchase_amount": tx.purchase_amount,
                "total_earnings_distributed": tx.total_earnings_distributed,
                "created_at": tx.created_at,
            }
            for tx in recent
        ],
        "top_earners": leaderboard(store, top_limit),
    }
