from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import psycopg
from psycopg import Connection, sql
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row

from db.db import get_conn
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
)
from referral_engine import child_level


ACCOUNT_COLUMNS = """
    a.id, a.username, a.email, a.phone, a.full_name, a.password_hash,
    a.referral_code, a.referred_by, a.referral_level,
    a.total_earnings, a.direct_earnings, a.indirect_earnings,
    a.is_active, a.is_verified, a.created_at, a.updated_at,
    ARRAY(
        SELECT c.id FROM accounts c
        WHERE c.referred_by = a.id
        ORDER BY c.created_at, c.id
    ) AS direct_referrals
"""

IDENTITY_CONSTRAINTS = {
    "accounts_username_key": "username",
    "accounts_email_key": "email",
    "accounts_phone_key": "phone",
}


# ---------
# accounts
# ---------


def _account(row: Optional[Dict[str, Any]]) -> Optional[Account]:
    if row is None:
        return None
    return Account(**row)


def get_account(conn: Connection, account_id: int) -> Optional[Account]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts a WHERE a.id = %s",
            (account_id,),
        )
        return _account(cur.fetchone())


def get_account_by_referral_code(conn: Connection, referral_code: str) -> Optional[Account]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM accounts a WHERE a.referral_code = %s",
            (referral_code,),
        )
        return _account(cur.fetchone())


def find_identity_conflicts(conn: Connection, username: str, email: str, phone: str) -> List[str]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT
                bool_or(username = %s),
                bool_or(email = %s),
                bool_or(phone = %s)
            FROM accounts
            WHERE username = %s OR email = %s OR phone = %s
            """,
            (username, email, phone, username, email, phone),
        )
        row = cur.fetchone()

    taken = []
    for field, hit in zip(("username", "email", "phone"), row or ()):
        if hit:
            taken.append(field)
    return taken


def reserve_direct_referral_slot(conn: Connection, sponsor_id: int, max_direct_referrals: int) -> int:
    """
    conditionally bump the sponsor's direct_referral_count.
    the row lock taken by UPDATE makes check-and-append one step:
    concurrent registrations against the same sponsor queue here and
    re-evaluate the WHERE clause.

    returns the sponsor's referral_level.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE accounts
            SET direct_referral_count = direct_referral_count + 1,
                updated_at = clock_timestamp()
            WHERE id = %s
              AND is_active
              AND direct_referral_count < %s
            RETURNING referral_level
            """,
            (sponsor_id, max_direct_referrals),
        )
        row = cur.fetchone()
        if row is not None:
            return row[0]

        # work out why the conditional update matched nothing
        cur.execute(
            "SELECT is_active, referral_code FROM accounts WHERE id = %s",
            (sponsor_id,),
        )
        sponsor = cur.fetchone()

    if sponsor is None:
        raise AccountNotFound(sponsor_id)
    is_active, referral_code = sponsor
    if not is_active:
        raise InactiveReferrer(referral_code)
    raise ReferralLimitExceeded(referral_code, max_direct_referrals)


def insert_account(
    conn: Connection,
    new_account: NewAccount,
    referral_code: str,
    sponsor_id: Optional[int],
    referral_level: int,
) -> int:
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO accounts
                    (username, email, phone, full_name, password_hash,
                     referral_code, referred_by, referral_level)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    new_account.username,
                    new_account.email,
                    new_account.phone,
                    new_account.full_name,
                    new_account.password_hash,
                    referral_code,
                    sponsor_id,
                    referral_level,
                ),
            )
            return cur.fetchone()[0]
    except UniqueViolation as e:
        constraint = e.diag.constraint_name
        if constraint == "accounts_referral_code_key":
            raise DuplicateReferralCode(referral_code) from e
        raise DuplicateIdentity([IDENTITY_CONSTRAINTS.get(constraint, "username")]) from e


def set_account_active(conn: Connection, account_id: int, active: bool) -> None:
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE accounts SET is_active = %s, updated_at = clock_timestamp() WHERE id = %s",
            (active, account_id),
        )
        if cur.rowcount != 1:
            raise AccountNotFound(account_id)


def lock_accounts(conn: Connection, account_ids: List[int]) -> Dict[int, bool]:
    """
    row-lock the given accounts in id order (deterministic order, no deadlocks
    between distributions). returns {id: is_active} for the ones that exist.
    """
    if not account_ids:
        return {}
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, is_active
            FROM accounts
            WHERE id = ANY(%s)
            ORDER BY id
            FOR UPDATE
            """,
            (sorted(set(account_ids)),),
        )
        return {r[0]: r[1] for r in cur.fetchall()}


def credit_account(conn: Connection, account_id: int, amount: Decimal, is_direct: bool) -> None:
    column = sql.Identifier("direct_earnings" if is_direct else "indirect_earnings")
    with conn.cursor() as cur:
        cur.execute(
            sql.SQL(
                """
                UPDATE accounts
                SET total_earnings = total_earnings + %s,
                    {column} = {column} + %s,
                    updated_at = clock_timestamp()
                WHERE id = %s
                """
            ).format(column=column),
            (amount, amount, account_id),
        )
        if cur.rowcount != 1:
            raise AccountNotFound(account_id)


# ---------
# ledger
# ---------


def _attach_splits(conn: Connection, rows: List[Dict[str, Any]]) -> List[Transaction]:
    if not rows:
        return []
    ids = [r["transaction_id"] for r in rows]
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            SELECT transaction_id, level, beneficiary_id, percentage, amount,
                   is_direct, status, applied_at
            FROM transaction_splits
            WHERE transaction_id = ANY(%s)
            ORDER BY transaction_id, level
            """,
            (ids,),
        )
        split_rows = cur.fetchall()

    by_tx: Dict[str, List[Split]] = {tx_id: [] for tx_id in ids}
    for r in split_rows:
        tx_id = r.pop("transaction_id")
        by_tx[tx_id].append(Split(**r))

    return [Transaction(**row, referral_chain=by_tx[row["transaction_id"]]) for row in rows]


TRANSACTION_COLUMNS = """
    t.transaction_id, t.purchaser_id, t.purchase_amount, t.profit_amount,
    t.product_name, t.category, t.is_valid_for_earnings,
    t.total_earnings_distributed, t.status, t.attempts, t.error_message,
    t.processed_at, t.created_at
"""


def get_transaction(conn: Connection, transaction_id: str, for_update: bool = False) -> Optional[Transaction]:
    lock = " FOR UPDATE" if for_update else ""
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            f"SELECT {TRANSACTION_COLUMNS} FROM transactions t WHERE t.transaction_id = %s{lock}",
            (transaction_id,),
        )
        row = cur.fetchone()
    if row is None:
        return None
    return _attach_splits(conn, [row])[0]


def insert_transaction(conn: Connection, tx: Transaction) -> None:
    """
    insert the ledger row and its splits. the primary key on transaction_id
    is what catches id collisions.
    """
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO transactions
                    (transaction_id, purchaser_id, purchase_amount, profit_amount,
                     product_name, category, is_valid_for_earnings,
                     total_earnings_distributed, status, attempts, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    tx.transaction_id,
                    tx.purchaser_id,
                    tx.purchase_amount,
                    tx.profit_amount,
                    tx.product_name,
                    tx.category,
                    tx.is_valid_for_earnings,
                    tx.total_earnings_distributed,
                    tx.status.value,
                    tx.attempts,
                    tx.created_at,
                ),
            )
            for split in tx.referral_chain:
                cur.execute(
                    """
                    INSERT INTO transaction_splits
                        (transaction_id, level, beneficiary_id, percentage,
                         amount, is_direct, status)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tx.transaction_id,
                        split.level,
                        split.beneficiary_id,
                        split.percentage,
                        split.amount,
                        split.is_direct,
                        split.status.value,
                    ),
                )
    except UniqueViolation as e:
        raise DuplicateTransactionId(tx.transaction_id) from e


def tombstone_split(conn: Connection, transaction_id: str, level: int) -> bool:
    """
    flip a pending split to applied. returns False when it was not pending,
    i.e. somebody already credited it.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE transaction_splits
            SET status = 'applied', applied_at = clock_timestamp()
            WHERE transaction_id = %s AND level = %s AND status = 'pending'
            """,
            (transaction_id, level),
        )
        return cur.rowcount == 1


def skip_split(conn: Connection, transaction_id: str, level: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE transaction_splits
            SET status = 'skipped'
            WHERE transaction_id = %s AND level = %s AND status = 'pending'
            """,
            (transaction_id, level),
        )


def update_transaction_status(
    conn: Connection,
    transaction_id: str,
    status: TransactionStatus,
    expected: List[TransactionStatus],
    error_message: Optional[str] = None,
    count_attempt: bool = False,
) -> bool:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE transactions
            SET status = %s,
                error_message = %s,
                attempts = attempts + %s,
                processed_at = clock_timestamp()
            WHERE transaction_id = %s AND status = ANY(%s)
            """,
            (
                status.value,
                error_message,
                1 if count_attempt else 0,
                transaction_id,
                [s.value for s in expected],
            ),
        )
        return cur.rowcount == 1


class PostgresStore:
    """
    psycopg-backed store. each public method is one database transaction;
    same-account writers serialize on row locks (FOR UPDATE / UPDATE).
    """

    def __init__(self, dsn: Optional[str] = None) -> None:
        self._dsn = dsn

    @contextmanager
    def _unit(self):
        try:
            with get_conn(self._dsn) as conn:
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except (psycopg.OperationalError, psycopg.InterfaceError) as e:
            raise StoreUnavailable(str(e)) from e

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
        with self._unit() as conn:
            sponsor_level = None
            if sponsor_id is not None:
                sponsor_level = reserve_direct_referral_slot(conn, sponsor_id, max_direct_referrals)
            account_id = insert_account(
                conn,
                new_account,
                referral_code,
                sponsor_id,
                child_level(sponsor_level),
            )
            return get_account(conn, account_id)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._unit() as conn:
            return get_account(conn, account_id)

    def get_account_by_referral_code(self, code: str) -> Optional[Account]:
        with self._unit() as conn:
            return get_account_by_referral_code(conn, code)

    def find_identity_conflicts(self, username: str, email: str, phone: str) -> List[str]:
        with self._unit() as conn:
            return find_identity_conflicts(conn, username, email, phone)

    def referral_code_exists(self, code: str) -> bool:
        with self._unit() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM accounts WHERE referral_code = %s", (code,))
                return cur.fetchone() is not None

    def list_referred_by(self, sponsor_ids: List[int]) -> List[Account]:
        if not sponsor_ids:
            return []
        with self._unit() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {ACCOUNT_COLUMNS}
                    FROM accounts a
                    WHERE a.referred_by = ANY(%s)
                    ORDER BY a.created_at, a.id
                    """,
                    (list(sponsor_ids),),
                )
                return [Account(**r) for r in cur.fetchall()]

    def set_account_active(self, account_id: int, active: bool) -> Account:
        with self._unit() as conn:
            set_account_active(conn, account_id, active)
            return get_account(conn, account_id)

    def count_accounts(self, active_only: bool = False) -> int:
        with self._unit() as conn:
            with conn.cursor() as cur:
                if active_only:
                    cur.execute("SELECT COUNT(*) FROM accounts WHERE is_active")
                else:
                    cur.execute("SELECT COUNT(*) FROM accounts")
                return cur.fetchone()[0]

    def top_earners(self, limit: int) -> List[Account]:
        with self._unit() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {ACCOUNT_COLUMNS}
                    FROM accounts a
                    WHERE a.is_active
                    ORDER BY a.total_earnings DESC, a.id
                    LIMIT %s
                    """,
                    (limit,),
                )
                return [Account(**r) for r in cur.fetchall()]

    # ---------
    # ledger
    # ---------

    def insert_transaction(self, transaction: Transaction) -> Transaction:
        with self._unit() as conn:
            insert_transaction(conn, transaction)
            return get_transaction(conn, transaction.transaction_id)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._unit() as conn:
            return get_transaction(conn, transaction_id)

    def apply_distribution(self, transaction_id: str) -> Tuple[Transaction, List[Split]]:
        with self._unit() as conn:
            # 1) lock the ledger row; concurrent retries of the same id queue here
            tx = get_transaction(conn, transaction_id, for_update=True)
            if tx is None:
                raise TransactionNotFound(transaction_id)
            if tx.status == TransactionStatus.COMPLETED:
                return tx, []
            if tx.status == TransactionStatus.CANCELLED:
                raise ValidationError(f"Transaction {transaction_id} is cancelled")

            pending = [s for s in tx.referral_chain if s.status == SplitStatus.PENDING]

            # 2) lock every beneficiary up front, in id order
            active = lock_accounts(conn, [s.beneficiary_id for s in pending])

            # 3) credit + tombstone each split
            applied: List[Split] = []
            for split in pending:
                if not active.get(split.beneficiary_id, False):
                    skip_split(conn, transaction_id, split.level)
                    continue
                if not tombstone_split(conn, transaction_id, split.level):
                    continue
                credit_account(conn, split.beneficiary_id, split.amount, split.is_direct)
                applied.append(split)

            # 4) close the record inside the same unit
            update_transaction_status(
                conn,
                transaction_id,
                TransactionStatus.COMPLETED,
                expected=[TransactionStatus.PENDING, TransactionStatus.FAILED],
                count_attempt=True,
            )
            tx = get_transaction(conn, transaction_id)

        applied_levels = {s.level for s in applied}
        return tx, [s for s in tx.referral_chain if s.level in applied_levels]

    def mark_transaction_failed(self, transaction_id: str, error_message: str) -> Transaction:
        with self._unit() as conn:
            update_transaction_status(
                conn,
                transaction_id,
                TransactionStatus.FAILED,
                expected=[TransactionStatus.PENDING, TransactionStatus.FAILED],
                error_message=error_message,
                count_attempt=True,
            )
            tx = get_transaction(conn, transaction_id)
            if tx is None:
                raise TransactionNotFound(transaction_id)
            return tx

    def set_transaction_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        expected: List[TransactionStatus],
    ) -> Optional[Transaction]:
        with self._unit() as conn:
            tx = get_transaction(conn, transaction_id, for_update=True)
            if tx is None:
                raise TransactionNotFound(transaction_id)
            if not update_transaction_status(conn, transaction_id, status, expected, tx.error_message):
                return None
            return get_transaction(conn, transaction_id)

    def transactions_for_beneficiary(
        self,
        account_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Transaction]:
        params: List[Any] = [account_id]
        where_clauses = [
            """EXISTS (
                SELECT 1 FROM transaction_splits s
                WHERE s.transaction_id = t.transaction_id
                  AND s.beneficiary_id = %s
            )"""
        ]
        if start is not None:
            where_clauses.append("t.created_at >= %s")
            params.append(start)
        if end is not None:
            where_clauses.append("t.created_at <= %s")
            params.append(end)

        where_sql = " AND ".join(where_clauses)

        with self._unit() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {TRANSACTION_COLUMNS}
                    FROM transactions t
                    WHERE {where_sql}
                    ORDER BY t.created_at DESC
                    """,
                    tuple(params),
                )
                rows = cur.fetchall()
            return _attach_splits(conn, rows)

    def recent_transactions(self, limit: int, status: TransactionStatus) -> List[Transaction]:
        with self._unit() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {TRANSACTION_COLUMNS}
                    FROM transactions t
                    WHERE t.status = %s
                    ORDER BY t.created_at DESC
                    LIMIT %s
                    """,
                    (status.value, limit),
                )
                rows = cur.fetchall()
            return _attach_splits(conn, rows)

    def total_distributed(self) -> Decimal:
        with self._unit() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT COALESCE(SUM(s.amount), 0)
                    FROM transaction_splits s
                    JOIN transactions t ON t.transaction_id = s.transaction_id
                    WHERE t.status = 'completed' AND s.status = 'applied'
                    """
                )
                total = cur.fetchone()[0]
        return Decimal(total).quantize(ZERO) if total else ZERO

    def close(self) -> None:
        # connections are opened per unit of work; nothing is held open
        pass
