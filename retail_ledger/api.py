"""
FastAPI application for the retail ledger

HTTP adapter for the intake process, the KYC workflow, teller front-ends
and reporting. All monetary values travel as decimal strings.
"""

from datetime import date, datetime
from typing import Dict, Optional, Any

from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .accounts import Account, AccountLedger, AccountType, Transaction
from .applications import Application, ApplicationDetails, ApplicationManager, KYCStatus
from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .exceptions import (
    ApplicationNotFoundError, DuplicateApplicationError, DuplicateIdentityError,
    InsufficientFundsError, InvalidStateError, LedgerError, NotFoundError, ValidationError
)
from .identity import IdentityRegistry
from .locking import KeyedLocks
from .reporting import ReportingEngine
from .storage import StorageInterface, create_storage
from .transactions import TransactionProcessor


class BankingSystem:
    """Ledger core with all components wired to one store"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LedgerConfig] = None):
        self.config = config or get_config()

        if storage is None:
            storage = create_storage(self.config.database_url, self.config.database_timeout)
        self.storage = storage

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.identity_registry = IdentityRegistry(self.storage)
        self.ledger = AccountLedger(
            self.storage, self.audit_trail,
            account_number_start=self.config.account_number_start
        )
        self.application_manager = ApplicationManager(
            self.storage, self.identity_registry, self.ledger, self.audit_trail,
            minimum_opening_balances={
                account_type: self.config.minimum_opening_balance(account_type.value)
                for account_type in AccountType
            }
        )
        self.transaction_processor = TransactionProcessor(self.ledger, KeyedLocks())
        self.reporting_engine = ReportingEngine(self.ledger)

    def close(self) -> None:
        self.storage.close()


# Request models

class SubmitApplicationRequest(BaseModel):
    application_id: str
    holder_name: str
    date_of_birth: date
    national_id: str
    mobile_number: str
    opening_balance: str = Field(..., description="Decimal amount as string")
    address: str
    account_type: str = "SAVINGS"
    application_date: Optional[date] = None


class TransactionRequest(BaseModel):
    payment_type: str = Field(..., description="DEBIT or CREDIT")
    amount: str = Field(..., description="Decimal amount as string")
    timestamp: Optional[datetime] = None


# Error mapping, most specific first

ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateApplicationError, status.HTTP_409_CONFLICT),
    (DuplicateIdentityError, status.HTTP_409_CONFLICT),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (InsufficientFundsError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
]


def status_for(error: LedgerError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(error, error_class):
            return status_code
    return status.HTTP_400_BAD_REQUEST


# Serializers

def application_to_response(application: Application) -> Dict[str, Any]:
    return {
        "application_id": application.id,
        "holder_name": application.holder_name,
        "date_of_birth": application.date_of_birth.isoformat(),
        "national_id": application.national_id,
        "mobile_number": application.mobile_number,
        "account_type": application.account_type.value,
        "opening_balance": str(application.opening_balance),
        "address": application.address,
        "application_date": application.application_date.isoformat(),
        "kyc_status": application.kyc_status.value,
        "account_number": application.account_number,
        "decided_at": application.decided_at.isoformat() if application.decided_at else None
    }


def account_to_response(account: Account, holder_name: Optional[str] = None) -> Dict[str, Any]:
    return {
        "account_number": account.account_number,
        "account_type": account.account_type.value,
        "status": account.status.value,
        "opening_date": account.opening_date.isoformat(),
        "opening_balance": str(account.opening_balance),
        "current_balance": str(account.current_balance),
        "holder_name": holder_name,
        "application_id": account.application_id
    }


def transaction_to_response(transaction: Transaction) -> Dict[str, Any]:
    return {
        "transaction_id": transaction.transaction_id,
        "account_number": transaction.account_number,
        "payment_type": transaction.payment_type.value,
        "amount": str(transaction.amount),
        "timestamp": transaction.timestamp.isoformat(),
        "balance_after": str(transaction.balance_after)
    }


def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.banking_system


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Retail Ledger API",
        description="Account opening, KYC decisions and debit/credit ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.banking_system = system or BankingSystem()

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=status_for(exc),
            content={"error": exc.code, "message": str(exc)}
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "retail_ledger_api",
            "version": __version__
        }

    # Applications

    @app.post("/applications", status_code=status.HTTP_201_CREATED)
    def submit_application(
        request: SubmitApplicationRequest,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Submit an account opening application"""
        application_id = system.application_manager.submit(ApplicationDetails(
            application_id=request.application_id,
            holder_name=request.holder_name,
            date_of_birth=request.date_of_birth,
            national_id=request.national_id,
            mobile_number=request.mobile_number,
            opening_balance=request.opening_balance,
            address=request.address,
            account_type=request.account_type,
            application_date=request.application_date
        ))
        return {
            "application_id": application_id,
            "kyc_status": KYCStatus.PENDING.value,
            "message": "Application submitted successfully"
        }

    @app.get("/applications")
    def list_applications(
        kyc_status: Optional[str] = Query(None, alias="status"),
        system: BankingSystem = Depends(get_banking_system)
    ):
        """List applications, optionally by KYC status"""
        status_filter = None
        if kyc_status:
            try:
                status_filter = KYCStatus(kyc_status.upper())
            except ValueError:
                raise ValidationError(f"Invalid KYC status {kyc_status!r}")
        applications = system.application_manager.list_applications(status_filter)
        return {"applications": [application_to_response(a) for a in applications]}

    @app.get("/applications/{application_id}")
    def get_application(
        application_id: str,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Get application details"""
        application = system.application_manager.get_application(application_id)
        if application is None:
            raise ApplicationNotFoundError(f"Application {application_id} not found")
        return application_to_response(application)

    @app.post("/applications/{application_id}/approve")
    def approve_application(
        application_id: str,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Record a positive KYC decision and open the account"""
        account_number = system.application_manager.approve(application_id)
        return {
            "application_id": application_id,
            "kyc_status": KYCStatus.APPROVED.value,
            "account_number": account_number
        }

    @app.post("/applications/{application_id}/reject")
    def reject_application(
        application_id: str,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Record a negative KYC decision"""
        system.application_manager.reject(application_id)
        return {
            "application_id": application_id,
            "kyc_status": KYCStatus.REJECTED.value
        }

    # Accounts

    @app.get("/accounts")
    def list_accounts(system: BankingSystem = Depends(get_banking_system)):
        """List all accounts"""
        accounts = []
        for account in system.ledger.list_accounts():
            holder = system.ledger.get_holder(account.account_number)
            accounts.append(account_to_response(account, holder.holder_name if holder else None))
        return {"accounts": accounts}

    @app.get("/accounts/{account_number}")
    def get_account(
        account_number: int,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Get account details"""
        account = system.ledger.require_account(account_number)
        holder = system.ledger.get_holder(account_number)
        return account_to_response(account, holder.holder_name if holder else None)

    @app.get("/accounts/{account_number}/balance")
    def get_balance(
        account_number: int,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Current balance"""
        balance = system.ledger.get_balance(account_number)
        return {"account_number": account_number, "balance": str(balance)}

    @app.get("/accounts/{account_number}/transactions")
    def list_transactions(
        account_number: int,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Account transactions, oldest first"""
        transactions = system.ledger.list_transactions(account_number, from_date, to_date)
        return {
            "account_number": account_number,
            "transactions": [transaction_to_response(t) for t in transactions]
        }

    @app.post("/accounts/{account_number}/transactions", status_code=status.HTTP_201_CREATED)
    def apply_transaction(
        account_number: int,
        request: TransactionRequest,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Apply a debit or credit"""
        transaction_id = system.transaction_processor.apply(
            account_number, request.payment_type, request.amount, request.timestamp
        )
        transaction = system.transaction_processor.get_transaction(transaction_id)
        return transaction_to_response(transaction)

    @app.get("/accounts/{account_number}/passbook")
    def get_passbook(
        account_number: int,
        month: int = Query(..., ge=1, le=12),
        year: int = Query(..., ge=1, le=9999),
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Monthly passbook"""
        return system.reporting_engine.passbook(account_number, month, year).to_dict()

    # Reports

    @app.get("/reports/top-balances")
    def top_balances(
        limit: int = Query(5, ge=1),
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Accounts with the highest balances"""
        rows = system.reporting_engine.top_balances(limit)
        return {
            "accounts": [
                {
                    "account_number": row.account_number,
                    "holder_name": row.holder_name,
                    "account_type": row.account_type.value,
                    "balance": str(row.balance)
                }
                for row in rows
            ]
        }

    @app.get("/reports/totals")
    def credit_debit_totals(system: BankingSystem = Depends(get_banking_system)):
        """Credit and debit totals per account"""
        return {
            "accounts": [
                {
                    "account_number": totals.account_number,
                    "total_credits": str(totals.total_credits),
                    "total_debits": str(totals.total_debits),
                    "transaction_count": totals.transaction_count
                }
                for totals in system.reporting_engine.credit_debit_totals()
            ]
        }

    @app.get("/audit/verify")
    def verify_audit(system: BankingSystem = Depends(get_banking_system)):
        """Verify the audit hash chain"""
        return system.audit_trail.verify_integrity()

    return app
