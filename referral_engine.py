import re
import secrets
import string
from typing import Callable, List, Optional

from models import Account

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8
REFERRAL_CODE_RE = re.compile(r"^[A-Z0-9]{8}$")

# levels beyond this are not tracked; deeper accounts stay at MAX_LEVEL
MAX_LEVEL = 2


def generate_referral_code() -> str:
    """
    8 chars from [A-Z0-9]. uniqueness is not checked here: the store's
    insert is the compare-and-set, callers regenerate on collision.
    """
    return "".join(
        secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH)
    )


def is_referral_code_format(code: Optional[str]) -> bool:
    return bool(code) and REFERRAL_CODE_RE.match(code) is not None


def child_level(sponsor_level: Optional[int]) -> int:
    """
    level for an account joining under a sponsor at `sponsor_level`
    (None when joining without a sponsor).
    roots are 0, a root's referrals 1, everything below 2.
    """
    if sponsor_level is None:
        return 0
    return min(sponsor_level + 1, MAX_LEVEL)


def get_lineage(
    account: Account,
    get_account: Callable[[int], Optional[Account]],
    max_levels: int = MAX_LEVEL,
) -> List[Optional[int]]:
    """
    given an account and a lookup id -> Account,
    return [L1, L2, ...] ancestor ids up to max_levels.
    if there is no referrer at some level, the rest are None.
    """
    lineage: List[Optional[int]] = []
    parent_id = account.referred_by

    for _ in range(max_levels):
        if parent_id is None:
            break
        lineage.append(parent_id)
        if len(lineage) == max_levels:
            break
        parent = get_account(parent_id)
        # a deleted ancestor ends the chain
        parent_id = parent.referred_by if parent is not None else None

    lineage.extend([None] * (max_levels - len(lineage)))
    return lineage
