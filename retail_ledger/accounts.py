"""
Account Ledger Engine

Owns the authoritative account records (balance, type, status), the
account-holder snapshots, and the append-only transaction log. Account
numbers and transaction IDs come from monotonic counters allocated in the
same atomic scope as the record they number.

Invariant: for every account, current_balance == opening_balance
+ sum(CREDIT amounts) - sum(DEBIT amounts), and current_balance >= 0.
"""

from decimal import Decimal
from datetime import date, datetime, time, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .exceptions import (
    AccountNotFoundError, DuplicateIdentityError, InsufficientFundsError,
    InvalidAmountError, InvalidStateError, ValidationError
)
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount
from .storage import StorageInterface, StorageRecord


DateBound = Union[date, datetime, None]


class AccountType(Enum):
    """Deposit account products"""
    SAVINGS = "SAVINGS"
    CURRENT = "CURRENT"

    @classmethod
    def parse(cls, value: Union['AccountType', str]) -> 'AccountType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(
                f"Invalid account type {value!r}; expected one of "
                f"{', '.join(t.value for t in cls)}"
            )


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVE"


class PaymentType(Enum):
    """Direction of a ledger entry"""
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"

    @classmethod
    def parse(cls, value: Union['PaymentType', str]) -> 'PaymentType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(
                f"Invalid payment type {value!r}; expected DEBIT or CREDIT"
            )


@dataclass
class Account(StorageRecord):
    """Bank account with its running balance"""
    account_number: int
    account_type: AccountType
    opening_date: date
    opening_balance: Decimal
    current_balance: Decimal
    status: AccountStatus = AccountStatus.ACTIVE
    application_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass
class AccountHolder(StorageRecord):
    """
    Personal details of an account's owner, copied from the approved
    application when the account is opened
    """
    account_number: int
    holder_name: str
    date_of_birth: date
    national_id: str
    mobile_number: str


@dataclass
class Transaction(StorageRecord):
    """
    Immutable ledger entry
    """
    transaction_id: int
    account_number: int
    payment_type: PaymentType
    amount: Decimal
    timestamp: datetime
    balance_after: Decimal

    def __post_init__(self):
        if self.amount <= ZERO:
            raise InvalidAmountError("Transaction amount must be positive")

    @property
    def is_debit(self) -> bool:
        return self.payment_type == PaymentType.DEBIT

    @property
    def is_credit(self) -> bool:
        return self.payment_type == PaymentType.CREDIT

    @property
    def signed_amount(self) -> Decimal:
        """Amount as it affects the balance"""
        return -self.amount if self.is_debit else self.amount


@dataclass
class AccountSnapshot:
    """Balance and ledger of one account read in a single consistent scope"""
    account: Account
    transactions: List[Transaction]

    @property
    def balance(self) -> Decimal:
        return self.account.current_balance


class AccountLedger:
    """
    Manages accounts, holders and the transaction log
    """

    ACCOUNT_NUMBER_SEQUENCE = "account_numbers"
    TRANSACTION_ID_SEQUENCE = "transaction_ids"

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        account_number_start: Optional[int] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.accounts_table = "accounts"
        self.holders_table = "account_holders"
        self.transactions_table = "transactions"
        self.logger = get_logger("retail_ledger.accounts")

        if account_number_start is None:
            account_number_start = get_config().account_number_start
        self.account_number_start = account_number_start

    def allocate_account(
        self,
        account_type: Union[AccountType, str],
        opening_balance: Union[Decimal, str, int],
        application_id: Optional[str] = None
    ) -> int:
        """
        Allocate the next account number and create an active account

        Args:
            account_type: SAVINGS or CURRENT
            opening_balance: Initial balance (>= 0)
            application_id: Approving application, kept for traceability

        Returns:
            The new account number
        """
        account_type = AccountType.parse(account_type)
        opening_balance = to_amount(opening_balance)
        if opening_balance < ZERO:
            raise InvalidAmountError(f"Opening balance cannot be negative, got {opening_balance}")

        with self.storage.atomic():
            now = datetime.now(timezone.utc)
            account_number = self.storage.next_sequence(
                self.ACCOUNT_NUMBER_SEQUENCE, self.account_number_start
            )

            account = Account(
                id=str(account_number),
                created_at=now,
                updated_at=now,
                account_number=account_number,
                account_type=account_type,
                opening_date=now.date(),
                opening_balance=opening_balance,
                current_balance=opening_balance,
                application_id=application_id
            )
            self._save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=str(account_number),
                metadata={
                    "account_type": account_type.value,
                    "opening_balance": opening_balance,
                    "application_id": application_id
                }
            )

        log_action(
            self.logger, "info", f"Account {account_number} opened",
            action="allocate_account", resource=f"account:{account_number}",
            extra={"account_type": account_type.value, "opening_balance": str(opening_balance)}
        )
        return account_number

    def create_holder(
        self,
        account_number: int,
        holder_name: str,
        date_of_birth: date,
        national_id: str,
        mobile_number: str
    ) -> AccountHolder:
        """
        Attach the holder snapshot to an account (exactly one per account)

        Raises:
            AccountNotFoundError: If the account does not exist
            InvalidStateError: If the account already has a holder
            DuplicateIdentityError: If another holder uses the national-identity number
        """
        with self.storage.atomic():
            self.require_account(account_number)

            if self.storage.exists(self.holders_table, str(account_number)):
                raise InvalidStateError(f"Account {account_number} already has a holder")

            if self.storage.find(self.holders_table, {"national_id": national_id}):
                raise DuplicateIdentityError(
                    f"National-identity number {national_id} already belongs to an account holder",
                    field="national_id"
                )

            now = datetime.now(timezone.utc)
            holder = AccountHolder(
                id=str(account_number),
                created_at=now,
                updated_at=now,
                account_number=account_number,
                holder_name=holder_name,
                date_of_birth=date_of_birth,
                national_id=national_id,
                mobile_number=mobile_number
            )
            self.storage.save(self.holders_table, holder.id, self._holder_to_dict(holder))

        return holder

    def record_transaction(
        self,
        account: Account,
        payment_type: PaymentType,
        amount: Decimal,
        new_balance: Decimal,
        timestamp: Optional[datetime] = None
    ) -> Transaction:
        """
        Append a ledger entry and set the account's new balance as one atomic action

        ``account`` is the record the caller validated against; if the stored
        balance has moved since, nothing is written.

        Raises:
            InvalidStateError: If the balance changed after ``account`` was read
            InsufficientFundsError: If ``new_balance`` is negative
        """
        if new_balance < ZERO:
            raise InsufficientFundsError(
                f"Balance of account {account.account_number} cannot go below zero",
                balance=account.current_balance, requested=amount
            )

        with self.storage.atomic():
            stored = self.require_account(account.account_number)
            if stored.current_balance != account.current_balance:
                raise InvalidStateError(
                    f"Balance of account {account.account_number} changed concurrently"
                )

            now = datetime.now(timezone.utc)
            transaction_id = self.storage.next_sequence(self.TRANSACTION_ID_SEQUENCE)

            transaction = Transaction(
                id=str(transaction_id),
                created_at=now,
                updated_at=now,
                transaction_id=transaction_id,
                account_number=account.account_number,
                payment_type=payment_type,
                amount=amount,
                timestamp=_to_utc(timestamp) if timestamp else now,
                balance_after=new_balance
            )
            self.storage.save(self.transactions_table, transaction.id,
                              self._transaction_to_dict(transaction))

            stored.current_balance = new_balance
            stored.updated_at = now
            self._save_account(stored)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_POSTED,
                entity_type="transaction",
                entity_id=str(transaction_id),
                metadata={
                    "account_number": account.account_number,
                    "payment_type": payment_type.value,
                    "amount": amount,
                    "balance_after": new_balance
                }
            )

        return transaction

    def get_account(self, account_number: int) -> Optional[Account]:
        """Get account by number"""
        account_dict = self.storage.load(self.accounts_table, str(account_number))
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def require_account(self, account_number: int) -> Account:
        account = self.get_account(account_number)
        if account is None:
            raise AccountNotFoundError(f"Account {account_number} not found")
        return account

    def get_holder(self, account_number: int) -> Optional[AccountHolder]:
        holder_dict = self.storage.load(self.holders_table, str(account_number))
        if holder_dict:
            return self._holder_from_dict(holder_dict)
        return None

    def get_account_by_national_id(self, national_id: str) -> Optional[Account]:
        holders = self.storage.find(self.holders_table, {"national_id": national_id})
        if holders:
            return self.get_account(holders[0]['account_number'])
        return None

    def list_accounts(self) -> List[Account]:
        """All accounts ordered by account number"""
        accounts = [self._account_from_dict(data) for data in self.storage.load_all(self.accounts_table)]
        accounts.sort(key=lambda a: a.account_number)
        return accounts

    def get_balance(self, account_number: int) -> Decimal:
        """
        Current authoritative balance

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        return self.require_account(account_number).current_balance

    def list_transactions(
        self,
        account_number: int,
        from_date: DateBound = None,
        to_date: DateBound = None
    ) -> List[Transaction]:
        """
        Get transactions for an account, optionally bounded by date

        Bounds are inclusive; a ``date`` bound covers the whole (UTC) day.
        Ordered by timestamp, ties broken by transaction ID.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        with self.storage.atomic():
            self.require_account(account_number)
            return self._load_transactions(account_number, from_date, to_date)

    def snapshot(
        self,
        account_number: int,
        from_date: DateBound = None,
        to_date: DateBound = None
    ) -> AccountSnapshot:
        """Read an account and its ledger in one scope so they always agree"""
        with self.storage.atomic():
            account = self.require_account(account_number)
            transactions = self._load_transactions(account_number, from_date, to_date)
        return AccountSnapshot(account=account, transactions=transactions)

    def verify_balance(self, account_number: int) -> bool:
        """Check that the stored balance equals opening balance plus the ledger"""
        snapshot = self.snapshot(account_number)
        expected = snapshot.account.opening_balance + sum(
            (t.signed_amount for t in snapshot.transactions), ZERO
        )
        if expected != snapshot.balance:
            log_action(
                self.logger, "error", f"Balance mismatch on account {account_number}",
                action="verify_balance", resource=f"account:{account_number}",
                extra={"stored": str(snapshot.balance), "expected": str(expected)}
            )
            return False
        return True

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        data = self.storage.load(self.transactions_table, str(transaction_id))
        if data:
            return self._transaction_from_dict(data)
        return None

    def _load_transactions(self, account_number: int, from_date: DateBound,
                           to_date: DateBound) -> List[Transaction]:
        transactions = [
            self._transaction_from_dict(data)
            for data in self.storage.find(self.transactions_table, {"account_number": account_number})
        ]

        if from_date is not None:
            lower = _lower_bound(from_date)
            transactions = [t for t in transactions if t.timestamp >= lower]

        if to_date is not None:
            upper = _upper_bound(to_date)
            transactions = [t for t in transactions if t.timestamp <= upper]

        transactions.sort(key=lambda t: (t.timestamp, t.transaction_id))
        return transactions

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        result = account.to_dict()
        result['account_type'] = account.account_type.value
        result['status'] = account.status.value
        result['opening_date'] = account.opening_date.isoformat()
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            account_type=AccountType(data['account_type']),
            opening_date=date.fromisoformat(data['opening_date']),
            opening_balance=Decimal(data['opening_balance']),
            current_balance=Decimal(data['current_balance']),
            status=AccountStatus(data['status']),
            application_id=data.get('application_id')
        )

    def _holder_to_dict(self, holder: AccountHolder) -> Dict:
        result = holder.to_dict()
        result['date_of_birth'] = holder.date_of_birth.isoformat()
        return result

    def _holder_from_dict(self, data: Dict) -> AccountHolder:
        return AccountHolder(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            holder_name=data['holder_name'],
            date_of_birth=date.fromisoformat(data['date_of_birth']),
            national_id=data['national_id'],
            mobile_number=data['mobile_number']
        )

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        result = transaction.to_dict()
        result['payment_type'] = transaction.payment_type.value
        result['timestamp'] = transaction.timestamp.isoformat()
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_id=data['transaction_id'],
            account_number=data['account_number'],
            payment_type=PaymentType(data['payment_type']),
            amount=Decimal(data['amount']),
            timestamp=datetime.fromisoformat(data['timestamp']),
            balance_after=Decimal(data['balance_after'])
        )


def _to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _lower_bound(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return _to_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _upper_bound(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return _to_utc(value)
    return datetime.combine(value, time.max, tzinfo=timezone.utc)
