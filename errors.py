from typing import Iterable


class EngineError(ValueError):
    """base for every business-rule failure raised by the engine."""


class ValidationError(EngineError):
    pass


class DuplicateIdentity(EngineError):
    def __init__(self, fields: Iterable[str]):
        self.fields = sorted(set(fields))
        super().__init__(
            f"An account with this {', '.join(self.fields)} already exists."
        )


class InvalidReferralCode(EngineError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("Invalid referral code")


class InactiveReferrer(EngineError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("Referrer account is inactive")


class ReferralLimitExceeded(EngineError):
    def __init__(self, code: str, limit: int):
        self.code = code
        self.limit = limit
        super().__init__(
            f"Referrer has reached maximum direct referrals limit ({limit})"
        )


class AccountNotFound(EngineError):
    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class AccountInactive(EngineError):
    def __init__(self, account_id):
        self.account_id = account_id
        super().__init__(f"Account {account_id} is inactive")


class TransactionNotFound(EngineError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class StoreUnavailable(EngineError):
    pass


# internal: collisions on generated identifiers, always retried by the caller


class DuplicateTransactionId(EngineError):
    pass


class DuplicateReferralCode(EngineError):
    pass
