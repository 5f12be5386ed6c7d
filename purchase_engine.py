import re
import secrets
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from loguru import logger

from config import Settings, get_settings
from db.base import Store
from earning_engine import compute_splits, to_money
from errors import (
    AccountInactive,
    AccountNotFound,
    DuplicateTransactionId,
    StoreUnavailable,
    TransactionNotFound,
    ValidationError,
)
from models import SplitStatus, Transaction, TransactionStatus
from notifications import EarningComputed, Event, EventSink, NullSink, PurchaseCompleted
from referral_engine import REFERRAL_CODE_ALPHABET

TRANSACTION_ID_PREFIX = "TXN"
TRANSACTION_ID_RE = re.compile(r"^TXN\d{13}[A-Z0-9]{6}$")
MAX_ID_ATTEMPTS = 5

DEFAULT_PRODUCT_NAME = "Product"
DEFAULT_CATEGORY = "General"


def generate_transaction_id() -> str:
    """TXN + 13-digit epoch millis + 6 random [A-Z0-9]."""
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(6))
    return f"{TRANSACTION_ID_PREFIX}{millis:013d}{suffix}"


def is_valid_transaction_id(value: Optional[str]) -> bool:
    return isinstance(value, str) and TRANSACTION_ID_RE.match(value) is not None


def _parse_amount(value: Any, field: str) -> Decimal:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number")
    if amount < 0:
        raise ValidationError(f"{field} must not be negative")
    return to_money(amount)


def _parse_label(metadata: Dict[str, Any], key: str, default: str, max_length: int) -> str:
    value = metadata.get(key)
    if value is None:
        return default
    value = str(value).strip()
    if not 1 <= len(value) <= max_length:
        raise ValidationError(f"{key} must be between 1 and {max_length} characters")
    return value


def _emit(events: EventSink, event: Event) -> None:
    # emission never raises past a written ledger row
    try:
        events.emit(event)
    except Exception:
        logger.exception(f"Failed to emit {event.kind} event")


def get_transaction(store: Store, transaction_id: str) -> Transaction:
    if not is_valid_transaction_id(transaction_id):
        raise ValidationError("Invalid transaction ID format")
    tx = store.get_transaction(transaction_id)
    if tx is None:
        raise TransactionNotFound(transaction_id)
    return tx


def _insert_pending(store: Store, **fields) -> Transaction:
    for _ in range(MAX_ID_ATTEMPTS):
        tx = Transaction(transaction_id=generate_transaction_id(), **fields)
        try:
            return store.insert_transaction(tx)
        except DuplicateTransactionId:
            logger.warning(f"Transaction id collision on {tx.transaction_id}, regenerating")
    raise StoreUnavailable("could not allocate a unique transaction id")


def _record_failure(store: Store, tx: Transaction, error_message: str) -> Transaction:
    try:
        return store.mark_transaction_failed(tx.transaction_id, error_message)
    except Exception:
        # record stays pending; retry_distribution picks it up
        logger.exception(f"Could not mark {tx.transaction_id} as failed, leaving it pending")
        return tx


def _reread(store: Store, tx: Transaction) -> Transaction:
    try:
        current = store.get_transaction(tx.transaction_id)
    except Exception:
        logger.exception(f"Could not re-read {tx.transaction_id}")
        return tx
    return current if current is not None else tx


def _distribute(store: Store, tx: Transaction, events: EventSink) -> Transaction:
    """
    one distribution attempt. the store applies every split and closes the
    record in a single unit; on error nothing is credited and the record is
    marked failed instead of raising.
    """
    pending_levels = {s.level for s in tx.referral_chain if s.status == SplitStatus.PENDING}

    try:
        updated, applied = store.apply_distribution(tx.transaction_id)
    except (ValidationError, TransactionNotFound):
        raise
    except Exception as e:
        logger.exception(f"Distribution failed for {tx.transaction_id}")
        return _record_failure(store, tx, str(e) or e.__class__.__name__)

    for split in updated.referral_chain:
        if split.status == SplitStatus.SKIPPED and split.level in pending_levels:
            logger.warning(
                f"Skipped level {split.level} split of {tx.transaction_id}: "
                f"beneficiary {split.beneficiary_id} missing or inactive"
            )

    for split in applied:
        _emit(
            events,
            EarningComputed(
                beneficiary_id=split.beneficiary_id,
                amount=split.amount,
                transaction_id=updated.transaction_id,
                is_direct=split.is_direct,
                level=split.level,
                purchaser_id=updated.purchaser_id,
            ),
        )

    logger.info(
        f"Transaction {updated.transaction_id} completed: "
        f"{len(applied)} split(s) applied, total {updated.total_earnings_distributed}"
    )
    return updated


def process_purchase(
    store: Store,
    purchaser_id: int,
    purchase_amount,
    profit_amount,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    events: Optional[EventSink] = None,
    settings: Optional[Settings] = None,
) -> Transaction:
    """
    record a purchase and pay its referral earnings.

    steps:
      1) validate input (ValidationError, nothing written)
      2) purchaser must exist and be active (AccountNotFound / AccountInactive)
      3) compute splits
      4) insert the pending ledger row with its splits
      5) distribute as one unit of work -> completed, or failed with error_message
      6) PurchaseCompleted for the purchaser

    once the ledger row exists no exception escapes: the returned record's
    status says what happened.
    """
    settings = settings or get_settings()
    events = events or NullSink()
    metadata = metadata or {}

    # 1) input shape
    if purchaser_id is None:
        raise ValidationError("purchaser_id is required")
    purchase = _parse_amount(purchase_amount, "purchase_amount")
    profit = _parse_amount(profit_amount, "profit_amount")
    product_name = _parse_label(metadata, "product_name", DEFAULT_PRODUCT_NAME, 100)
    category = _parse_label(metadata, "category", DEFAULT_CATEGORY, 50)

    # 2) purchaser
    purchaser = store.get_account(purchaser_id)
    if purchaser is None:
        raise AccountNotFound(purchaser_id)
    if not purchaser.is_active:
        raise AccountInactive(purchaser_id)

    # 3) splits
    splits, is_valid, total = compute_splits(
        purchase, profit, purchaser, store.get_account, settings
    )

    # 4) pending record
    tx = _insert_pending(
        store,
        purchaser_id=purchaser.id,
        purchase_amount=purchase,
        profit_amount=profit,
        product_name=product_name,
        category=category,
        referral_chain=splits,
        is_valid_for_earnings=is_valid,
        total_earnings_distributed=total,
    )
    logger.info(
        f"Purchase {tx.transaction_id} accepted for account {purchaser.id} "
        f"(amount={purchase}, profit={profit}, valid={is_valid})"
    )

    # 5) distribution; the row exists now, so report its state instead of raising
    try:
        tx = _distribute(store, tx, events)
    except (ValidationError, TransactionNotFound) as e:
        logger.warning(f"Distribution of {tx.transaction_id} not run: {e}")
        tx = _reread(store, tx)

    # 6) purchaser notification
    _emit(
        events,
        PurchaseCompleted(
            purchaser_id=purchaser.id,
            amount=purchase,
            product_label=product_name,
            transaction_id=tx.transaction_id,
        ),
    )
    return tx


def retry_distribution(
    store: Store,
    transaction_id: str,
    *,
    events: Optional[EventSink] = None,
) -> Transaction:
    """
    re-run distribution for a failed (or stuck pending) transaction.
    completed transactions are returned untouched: no balance moves twice.
    """
    events = events or NullSink()
    tx = get_transaction(store, transaction_id)

    if tx.status == TransactionStatus.COMPLETED:
        logger.info(f"Transaction {transaction_id} already completed, nothing to retry")
        return tx
    if tx.status == TransactionStatus.CANCELLED:
        raise ValidationError(f"Transaction {transaction_id} is cancelled")

    logger.info(f"Retrying distribution for {transaction_id} (attempt {tx.attempts + 1})")
    return _distribute(store, tx, events)


def cancel_transaction(store: Store, transaction_id: str) -> Transaction:
    """pending / failed transactions with nothing credited can be abandoned."""
    tx = get_transaction(store, transaction_id)
    cancellable = [TransactionStatus.PENDING, TransactionStatus.FAILED]

    if tx.status not in cancellable or tx.has_applied_splits:
        raise ValidationError(f"Transaction {transaction_id} cannot be cancelled ({tx.status.value})")

    updated = store.set_transaction_status(transaction_id, TransactionStatus.CANCELLED, cancellable)
    if updated is None:
        raise ValidationError(f"Transaction {transaction_id} changed status concurrently")

    logger.info(f"Transaction {transaction_id} cancelled")
    return updated
