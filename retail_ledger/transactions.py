"""
Transaction Processing Module

Applies customer-initiated debits and credits to accounts. Every request is
validated before anything is written; an accepted request appends its
ledger entry and moves the balance in one atomic action, so a rejected
debit never leaves a ledger row behind.

Requests against the same account are serialized by a per-account lock,
so no two postings on one account interleave their read and write. The
write itself runs in a storage atomic scope, which is exclusive for the
whole store: postings on different accounts never block each other on the
account lock, but their storage reads and writes still take turns.
"""

from decimal import Decimal
from datetime import datetime
from typing import Optional, Union

from .accounts import AccountLedger, PaymentType, Transaction
from .exceptions import InsufficientFundsError, LedgerError
from .locking import KeyedLocks
from .logging_config import get_logger, log_action
from .money import AmountLike, to_positive_amount


class TransactionProcessor:
    """
    Validate-then-write processor for ledger entries
    """

    def __init__(self, ledger: AccountLedger, locks: Optional[KeyedLocks] = None):
        self.ledger = ledger
        self.locks = locks if locks is not None else KeyedLocks()
        self.logger = get_logger("retail_ledger.transactions")

    def apply(
        self,
        account_number: int,
        payment_type: Union[PaymentType, str],
        amount: AmountLike,
        timestamp: Optional[datetime] = None
    ) -> int:
        """
        Apply a debit or credit to an account

        Args:
            account_number: Target account
            payment_type: DEBIT or CREDIT
            amount: Positive amount with at most two decimal places
            timestamp: Transaction time (defaults to now, UTC)

        Returns:
            The new transaction ID

        Raises:
            InvalidAmountError: If the amount is not positive or has sub-cent digits
            ValidationError: If the payment type is unknown
            AccountNotFoundError: If the account does not exist
            InsufficientFundsError: If a debit exceeds the current balance
        """
        try:
            payment_type = PaymentType.parse(payment_type)
            amount = to_positive_amount(amount)
            # Accounts are never removed; only known accounts get a lock
            self.ledger.require_account(account_number)

            with self.locks.hold(account_number):
                account = self.ledger.require_account(account_number)
                balance = account.current_balance

                if payment_type == PaymentType.DEBIT and amount > balance:
                    raise InsufficientFundsError(
                        f"Insufficient funds in account {account_number}: "
                        f"balance {balance}, requested {amount}",
                        balance=balance, requested=amount
                    )

                if payment_type == PaymentType.DEBIT:
                    new_balance = balance - amount
                else:
                    new_balance = balance + amount

                transaction = self.ledger.record_transaction(
                    account, payment_type, amount, new_balance, timestamp
                )
        except LedgerError as e:
            log_action(
                self.logger, "warning",
                f"{getattr(payment_type, 'value', payment_type)} of {amount} "
                f"on account {account_number} rejected: {e}",
                action="apply_transaction", resource=f"account:{account_number}",
                extra={"error": e.code}
            )
            raise

        log_action(
            self.logger, "info",
            f"{payment_type.value} {amount} posted to account {account_number}",
            action="apply_transaction", resource=f"account:{account_number}",
            extra={
                "transaction_id": transaction.transaction_id,
                "balance_after": str(new_balance)
            }
        )
        return transaction.transaction_id

    def credit(self, account_number: int, amount: AmountLike,
               timestamp: Optional[datetime] = None) -> int:
        """Convenience method for credits"""
        return self.apply(account_number, PaymentType.CREDIT, amount, timestamp)

    def debit(self, account_number: int, amount: AmountLike,
              timestamp: Optional[datetime] = None) -> int:
        """Convenience method for debits"""
        return self.apply(account_number, PaymentType.DEBIT, amount, timestamp)

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        return self.ledger.get_transaction(transaction_id)

    def get_balance(self, account_number: int) -> Decimal:
        return self.ledger.get_balance(account_number)
