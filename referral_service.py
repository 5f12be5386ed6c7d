from typing import Any, Dict, Optional, Union

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from config import Settings, get_settings
from db.base import Store
from errors import (
    AccountNotFound,
    DuplicateIdentity,
    DuplicateReferralCode,
    InactiveReferrer,
    InvalidReferralCode,
    ReferralLimitExceeded,
    StoreUnavailable,
    ValidationError,
)
from models import Account, NewAccount
from notifications import EventSink, NullSink, ReferralAdded
from referral_engine import generate_referral_code, is_referral_code_format

# collisions in a 36^8 space are rare; a handful of retries is plenty
MAX_CODE_ATTEMPTS = 10


def _parse_new_account(data: Union[NewAccount, Dict[str, Any]]) -> NewAccount:
    if isinstance(data, NewAccount):
        return data
    try:
        return NewAccount.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e


def _normalize_code(referral_code: str) -> str:
    return referral_code.strip().upper()


def generate_unique_referral_code(store: Store) -> str:
    """
    generate a referral code not yet used by any account.
    the store's unique constraint is still the final word: registration
    retries if another writer grabs the same code in between.
    """
    for _ in range(MAX_CODE_ATTEMPTS):
        candidate = generate_referral_code()
        if not store.referral_code_exists(candidate):
            return candidate
    raise StoreUnavailable("could not allocate a unique referral code")


def _resolve_sponsor(store: Store, referral_code: str, settings: Settings) -> Account:
    if not is_referral_code_format(referral_code):
        raise InvalidReferralCode(referral_code)

    sponsor = store.get_account_by_referral_code(referral_code)
    if sponsor is None:
        raise InvalidReferralCode(referral_code)
    if not sponsor.is_active:
        raise InactiveReferrer(referral_code)
    if len(sponsor.direct_referrals) >= settings.max_direct_referrals:
        raise ReferralLimitExceeded(referral_code, settings.max_direct_referrals)
    return sponsor


def register_with_referral(
    store: Store,
    new_account: Union[NewAccount, Dict[str, Any]],
    referral_code: Optional[str] = None,
    *,
    events: Optional[EventSink] = None,
    settings: Optional[Settings] = None,
) -> Account:
    """
    create an account, optionally under the owner of `referral_code`.

    rules:
      - username / email / phone must be unused (DuplicateIdentity)
      - the code must exist (InvalidReferralCode)
      - its owner must be active (InactiveReferrer)
      - its owner must be below max_direct_referrals (ReferralLimitExceeded)

    the sponsor checks run twice: here for a fast rejection, and again inside
    the store's create_account where check-and-append is a single step.
    """
    settings = settings or get_settings()
    events = events or NullSink()
    data = _parse_new_account(new_account)

    # 1) identity uniqueness
    conflicts = store.find_identity_conflicts(data.username, data.email, data.phone)
    if conflicts:
        raise DuplicateIdentity(conflicts)

    # 2) sponsor
    sponsor = None
    if referral_code:
        sponsor = _resolve_sponsor(store, _normalize_code(referral_code), settings)

    # 3) create; a code collision means someone else won the race, try another
    account = None
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_unique_referral_code(store)
        try:
            account = store.create_account(
                data,
                code,
                sponsor.id if sponsor else None,
                settings.max_direct_referrals,
            )
            break
        except DuplicateReferralCode:
            logger.warning("Referral code collision on insert, regenerating")
    if account is None:
        raise StoreUnavailable("could not allocate a unique referral code")

    logger.info(
        f"Account {account.id} registered (level={account.referral_level}, "
        f"sponsor={account.referred_by})"
    )

    if sponsor is not None:
        # the account exists now; a failing sink must not undo the registration
        try:
            events.emit(ReferralAdded(sponsor_id=sponsor.id, new_account=account.public_view()))
        except Exception:
            logger.exception(f"Failed to emit referral_added event for account {account.id}")

    return account


def validate_referral_code(
    store: Store,
    referral_code: str,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    read-only pre-flight of the registration checks.
    returns {valid, reason, referrer}; referrer is None unless valid.
    """
    settings = settings or get_settings()
    code = _normalize_code(referral_code or "")

    try:
        sponsor = _resolve_sponsor(store, code, settings)
    except (InvalidReferralCode, InactiveReferrer, ReferralLimitExceeded) as e:
        return {"valid": False, "reason": str(e), "referrer": None}

    return {
        "valid": True,
        "reason": "Referral code is valid",
        "referrer": {
            "id": sponsor.id,
            "username": sponsor.username,
            "full_name": sponsor.full_name,
            "referral_code": sponsor.referral_code,
            "current_referrals": len(sponsor.direct_referrals),
            "max_referrals": settings.max_direct_referrals,
        },
    }


def get_tree(store: Store, account_id: int, depth: int = 2) -> Dict[str, Any]:
    """
    {self, direct_referrals, indirect_referrals}
    direct = referred_by == account_id
    indirect (depth 2) = referred_by is one of the direct referrals
    """
    if depth not in (1, 2):
        raise ValidationError("depth must be 1 or 2")

    account = store.get_account(account_id)
    if account is None:
        raise AccountNotFound(account_id)

    direct = store.list_referred_by([account.id])
    indirect = []
    if depth == 2 and direct:
        indirect = store.list_referred_by([a.id for a in direct])

    return {
        "self": account,
        "direct_referrals": direct,
        "indirect_referrals": indirect,
    }


def set_account_active(store: Store, account_id: int, active: bool) -> Account:
    account = store.set_account_active(account_id, active)
    logger.info(f"Account {account_id} {'activated' if active else 'deactivated'}")
    return account
