from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Protocol, Tuple

from models import Account, NewAccount, Split, Transaction, TransactionStatus


class Store(Protocol):
    """
    transactional store behind the engine (accounts + ledger).

    every method is one atomic unit against the backing storage.
    implementations: db.memory.InMemoryStore, db.repositories.PostgresStore.

    errors:
      - StoreUnavailable when the backend cannot be reached / a write fails
      - DuplicateIdentity / DuplicateReferralCode / DuplicateTransactionId
        on unique collisions
    """

    # ---------
    # accounts
    # ---------

    def create_account(
        self,
        new_account: NewAccount,
        referral_code: str,
        sponsor_id: Optional[int],
        max_direct_referrals: int,
    ) -> Account:
        """
        insert the account and, when sponsor_id is given, append it to the
        sponsor's direct referrals. the sponsor is re-checked inside the same
        unit (active, below max_direct_referrals); InactiveReferrer /
        ReferralLimitExceeded abort the whole insert.
        """
        ...

    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_referral_code(self, code: str) -> Optional[Account]: ...

    def find_identity_conflicts(self, username: str, email: str, phone: str) -> List[str]:
        """names of the fields already taken by another account."""
        ...

    def referral_code_exists(self, code: str) -> bool: ...

    def list_referred_by(self, sponsor_ids: List[int]) -> List[Account]:
        """accounts whose referred_by is one of sponsor_ids, oldest first."""
        ...

    def set_account_active(self, account_id: int, active: bool) -> Account: ...

    def count_accounts(self, active_only: bool = False) -> int: ...

    def top_earners(self, limit: int) -> List[Account]:
        """active accounts ordered by total_earnings desc."""
        ...

    # ---------
    # ledger
    # ---------

    def insert_transaction(self, transaction: Transaction) -> Transaction: ...

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    def apply_distribution(self, transaction_id: str) -> Tuple[Transaction, List[Split]]:
        """
        one unit of work: credit every pending split (skipping missing or
        inactive beneficiaries), tombstone each applied split, bump attempts
        and set the transaction completed. any error rolls back everything.

        returns (transaction, splits newly applied by this call).
        a completed transaction is returned unchanged with no splits.
        """
        ...

    def mark_transaction_failed(self, transaction_id: str, error_message: str) -> Transaction:
        """record a failed attempt (attempts + 1, status failed)."""
        ...

    def set_transaction_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        expected: List[TransactionStatus],
    ) -> Optional[Transaction]:
        """conditional status write; None when the current status is not in expected."""
        ...

    def transactions_for_beneficiary(
        self,
        account_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Transaction]:
        """transactions naming account_id in the referral chain, newest first."""
        ...

    def recent_transactions(self, limit: int, status: TransactionStatus) -> List[Transaction]: ...

    def total_distributed(self) -> Decimal:
        """sum of applied split amounts over completed transactions (what was actually credited)."""
        ...

    def close(self) -> None: ...
