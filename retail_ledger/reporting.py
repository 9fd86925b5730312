"""
Reporting Module

Read-only reports over the account ledger: monthly passbooks, the accounts
with the highest balances, and credit/debit totals per account. Reports are
computed from balance and transaction reads only and never write.
"""

import calendar
from decimal import Decimal
from datetime import date, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from .accounts import AccountLedger, AccountType, Transaction
from .exceptions import ValidationError
from .money import ZERO


@dataclass
class Passbook:
    """One account's ledger for a calendar month"""
    account_number: int
    holder_name: Optional[str]
    month: int
    year: int
    opening_balance: Decimal
    closing_balance: Decimal
    entries: List[Transaction] = field(default_factory=list)

    @property
    def period_start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def period_end(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    def to_dict(self) -> Dict[str, Any]:
        return {
            'account_number': self.account_number,
            'holder_name': self.holder_name,
            'month': self.month,
            'year': self.year,
            'period_start': self.period_start.isoformat(),
            'period_end': self.period_end.isoformat(),
            'opening_balance': str(self.opening_balance),
            'closing_balance': str(self.closing_balance),
            'entries': [
                {
                    'transaction_id': t.transaction_id,
                    'timestamp': t.timestamp.isoformat(),
                    'payment_type': t.payment_type.value,
                    'amount': str(t.amount),
                    'balance_after': str(t.balance_after)
                }
                for t in self.entries
            ]
        }


@dataclass
class BalanceRow:
    account_number: int
    holder_name: Optional[str]
    account_type: AccountType
    balance: Decimal


@dataclass
class AccountTotals:
    account_number: int
    total_credits: Decimal
    total_debits: Decimal
    transaction_count: int

    @property
    def net_movement(self) -> Decimal:
        return self.total_credits - self.total_debits


class ReportingEngine:
    """
    Reports built on AccountLedger reads
    """

    def __init__(self, ledger: AccountLedger):
        self.ledger = ledger

    def passbook(self, account_number: int, month: int, year: int) -> Passbook:
        """
        Transactions of one account during a calendar month

        The opening balance is the balance carried into the month; the
        closing balance is the balance after its last entry. A month that
        ends before the account's history begins, meaning the earlier of its
        opening date and its first entry, shows zero balances.

        Raises:
            ValidationError: If month or year is out of range
            AccountNotFoundError: If the account does not exist
        """
        if not 1 <= int(month) <= 12:
            raise ValidationError(f"Month must be between 1 and 12, got {month}")
        if not 1 <= int(year) <= 9999:
            raise ValidationError(f"Invalid year {year}")
        month, year = int(month), int(year)

        period_start = date(year, month, 1)
        period_end = date(year, month, calendar.monthrange(year, month)[1])

        # Whole ledger up to the end of the month, read with its balance in one scope
        snapshot = self.ledger.snapshot(account_number, to_date=period_end)

        opened_on = snapshot.account.created_at.astimezone(timezone.utc).date()
        if not snapshot.transactions and period_end < opened_on:
            carried = ZERO
        else:
            carried = snapshot.account.opening_balance
        entries = []
        for transaction in snapshot.transactions:
            if transaction.timestamp.date() < period_start:
                carried += transaction.signed_amount
            else:
                entries.append(transaction)

        closing = carried + sum((t.signed_amount for t in entries), ZERO)

        holder = self.ledger.get_holder(account_number)
        return Passbook(
            account_number=snapshot.account.account_number,
            holder_name=holder.holder_name if holder else None,
            month=month,
            year=year,
            opening_balance=carried,
            closing_balance=closing,
            entries=entries
        )

    def top_balances(self, limit: int = 5) -> List[BalanceRow]:
        """Accounts with the highest current balance, ties by account number"""
        if limit < 1:
            raise ValidationError(f"Limit must be positive, got {limit}")

        accounts = sorted(
            self.ledger.list_accounts(),
            key=lambda a: (-a.current_balance, a.account_number)
        )[:limit]

        rows = []
        for account in accounts:
            holder = self.ledger.get_holder(account.account_number)
            rows.append(BalanceRow(
                account_number=account.account_number,
                holder_name=holder.holder_name if holder else None,
                account_type=account.account_type,
                balance=account.current_balance
            ))
        return rows

    def credit_debit_totals(self) -> List[AccountTotals]:
        """Total credits and debits for every account, ordered by account number"""
        totals = []
        for account in self.ledger.list_accounts():
            transactions = self.ledger.list_transactions(account.account_number)
            totals.append(AccountTotals(
                account_number=account.account_number,
                total_credits=sum((t.amount for t in transactions if t.is_credit), ZERO),
                total_debits=sum((t.amount for t in transactions if t.is_debit), ZERO),
                transaction_count=len(transactions)
            ))
        return totals
