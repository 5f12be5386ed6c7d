import itertools
import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from errors import (
    AccountNotFound,
    DuplicateIdentity,
    DuplicateReferralCode,
    DuplicateTransactionId,
    InactiveReferrer,
    ReferralLimitExceeded,
    StoreUnavailable,
    TransactionNotFound,
    ValidationError,
)
from models import (
    ZERO,
    Account,
    NewAccount,
    Split,
    SplitStatus,
    Transaction,
    TransactionStatus,
    utcnow,
)
from referral_engine import child_level


class InMemoryStore:
    """
    process-local store. a single re-entrant lock serializes every unit of
    work, so per-account updates can never interleave. reads hand out deep
    copies; callers never hold references into the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._accounts: Dict[int, Account] = {}
        self._by_code: Dict[str, int] = {}
        self._by_username: Dict[str, int] = {}
        self._by_email: Dict[str, int] = {}
        self._by_phone: Dict[str, int] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise StoreUnavailable("store is closed")

    # ---------
    # accounts
    # ---------

    def _conflicts(self, username: str, email: str, phone: str) -> List[str]:
        taken = []
        if username in self._by_username:
            taken.append("username")
        if email in self._by_email:
            taken.append("email")
        if phone in self._by_phone:
            taken.append("phone")
        return taken

    def create_account(
        self,
        new_account: NewAccount,
        referral_code: str,
        sponsor_id: Optional[int],
        max_direct_referrals: int,
    ) -> Account:
        with self._lock:
            self._check_open()

            conflicts = self._conflicts(
                new_account.username, new_account.email, new_account.phone
            )
            if conflicts:
                raise DuplicateIdentity(conflicts)
            if referral_code in self._by_code:
                raise DuplicateReferralCode(referral_code)

            sponsor = None
            if sponsor_id is not None:
                sponsor = self._accounts.get(sponsor_id)
                if sponsor is None:
                    raise AccountNotFound(sponsor_id)
                if not sponsor.is_active:
                    raise InactiveReferrer(sponsor.referral_code)
                if len(sponsor.direct_referrals) >= max_direct_referrals:
                    raise ReferralLimitExceeded(sponsor.referral_code, max_direct_referrals)

            account = Account(
                id=next(self._ids),
                username=new_account.username,
                email=new_account.email,
                phone=new_account.phone,
                full_name=new_account.full_name,
                password_hash=new_account.password_hash,
                referral_code=referral_code,
                referred_by=sponsor_id,
                referral_level=child_level(sponsor.referral_level if sponsor else None),
            )

            self._accounts[account.id] = account
            self._by_code[referral_code] = account.id
            self._by_username[account.username] = account.id
            self._by_email[account.email] = account.id
            self._by_phone[account.phone] = account.id

            if sponsor is not None:
                sponsor.direct_referrals.append(account.id)
                sponsor.updated_at = utcnow()

            return account.model_copy(deep=True)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._lock:
            self._check_open()
            account = self._accounts.get(account_id)
            return account.model_copy(deep=True) if account else None

    def get_account_by_referral_code(self, code: str) -> Optional[Account]:
        with self._lock:
            self._check_open()
            account_id = self._by_code.get(code)
            if account_id is None:
                return None
            return self._accounts[account_id].model_copy(deep=True)

    def find_identity_conflicts(self, username: str, email: str, phone: str) -> List[str]:
        with self._lock:
            self._check_open()
            return self._conflicts(username, email, phone)

    def referral_code_exists(self, code: str) -> bool:
        with self._lock:
            self._check_open()
            return code in self._by_code

    def list_referred_by(self, sponsor_ids: List[int]) -> List[Account]:
        wanted = set(sponsor_ids)
        with self._lock:
            self._check_open()
            rows = [a for a in self._accounts.values() if a.referred_by in wanted]
            rows.sort(key=lambda a: (a.created_at, a.id))
            return [a.model_copy(deep=True) for a in rows]

    def set_account_active(self, account_id: int, active: bool) -> Account:
        with self._lock:
            self._check_open()
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            account.is_active = active
            account.updated_at = utcnow()
            return account.model_copy(deep=True)

    def count_accounts(self, active_only: bool = False) -> int:
        with self._lock:
            self._check_open()
            if not active_only:
                return len(self._accounts)
            return sum(1 for a in self._accounts.values() if a.is_active)

    def top_earners(self, limit: int) -> List[Account]:
        with self._lock:
            self._check_open()
            rows = [a for a in self._accounts.values() if a.is_active]
            rows.sort(key=lambda a: (-a.total_earnings, a.id))
            return [a.model_copy(deep=True) for a in rows[:limit]]

    # ---------
    # ledger
    # ---------

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        with self._lock:
            self._check_open()
            if transaction.transaction_id in self._transactions:
                raise DuplicateTransactionId(transaction.transaction_id)
            self._transactions[transaction.transaction_id] = transaction.model_copy(deep=True)
            return transaction.model_copy(deep=True)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            self._check_open()
            tx = self._transactions.get(transaction_id)
            return tx.model_copy(deep=True) if tx else None

    def _credit(self, account: Account, split: Split) -> None:
        account.total_earnings += split.amount
        if split.is_direct:
            account.direct_earnings += split.amount
        else:
            account.indirect_earnings += split.amount
        account.updated_at = utcnow()

    def apply_distribution(self, transaction_id: str) -> Tuple[Transaction, List[Split]]:
        with self._lock:
            self._check_open()
            current = self._transactions.get(transaction_id)
            if current is None:
                raise TransactionNotFound(transaction_id)
            if current.status == TransactionStatus.COMPLETED:
                return current.model_copy(deep=True), []
            if current.status == TransactionStatus.CANCELLED:
                raise ValidationError(f"Transaction {transaction_id} is cancelled")

            # stage everything on copies; swap in only once every split went through
            tx = current.model_copy(deep=True)
            staged: Dict[int, Account] = {}
            applied: List[Split] = []
            now = utcnow()

            for split in tx.referral_chain:
                if split.status != SplitStatus.PENDING:
                    continue

                beneficiary = staged.get(split.beneficiary_id)
                if beneficiary is None:
                    stored = self._accounts.get(split.beneficiary_id)
                    beneficiary = stored.model_copy(deep=True) if stored else None

                if beneficiary is None or not beneficiary.is_active:
                    split.status = SplitStatus.SKIPPED
                    continue

                self._credit(beneficiary, split)
                staged[beneficiary.id] = beneficiary
                split.status = SplitStatus.APPLIED
                split.applied_at = now
                applied.append(split.model_copy())

            tx.attempts += 1
            tx.status = TransactionStatus.COMPLETED
            tx.error_message = None
            tx.processed_at = now

            self._accounts.update(staged)
            self._transactions[transaction_id] = tx
            return tx.model_copy(deep=True), applied

    def mark_transaction_failed(self, transaction_id: str, error_message: str) -> Transaction:
        with self._lock:
            self._check_open()
            tx = self._transactions.get(transaction_id)
            if tx is None:
                raise TransactionNotFound(transaction_id)
            if tx.status in (TransactionStatus.PENDING, TransactionStatus.FAILED):
                tx.attempts += 1
                tx.status = TransactionStatus.FAILED
                tx.error_message = error_message
                tx.processed_at = utcnow()
            return tx.model_copy(deep=True)

    def set_transaction_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        expected: List[TransactionStatus],
    ) -> Optional[Transaction]:
        with self._lock:
            self._check_open()
            tx = self._transactions.get(transaction_id)
            if tx is None:
                raise TransactionNotFound(transaction_id)
            if tx.status not in expected:
                return None
            tx.status = status
            tx.processed_at = utcnow()
            return tx.model_copy(deep=True)

    def transactions_for_beneficiary(
        self,
        account_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Transaction]:
        with self._lock:
            self._check_open()
            rows = []
            for tx in self._transactions.values():
                if tx.split_for(account_id) is None:
                    continue
                if start is not None and tx.created_at < start:
                    continue
                if end is not None and tx.created_at > end:
                    continue
                rows.append(tx.model_copy(deep=True))
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return rows

    def recent_transactions(self, limit: int, status: TransactionStatus) -> List[Transaction]:
        with self._lock:
            self._check_open()
            rows = [t for t in self._transactions.values() if t.status == status]
            rows.sort(key=lambda t: t.created_at, reverse=True)
            return [t.model_copy(deep=True) for t in rows[:limit]]

    def total_distributed(self) -> Decimal:
        with self._lock:
            self._check_open()
            return sum(
                (
                    s.amount
                    for t in self._transactions.values()
                    if t.status == TransactionStatus.COMPLETED
                    for s in t.referral_chain
                    if s.status == SplitStatus.APPLIED
                ),
                ZERO,
            )

    def close(self) -> None:
        with self._lock:
            self._closed = True
