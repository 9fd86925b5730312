"""
Account Application Module

Governs an account application's KYC lifecycle:

    PENDING -> APPROVED   (terminal, opens the account)
    PENDING -> REJECTED   (terminal)

Approval is the only path that creates an Account. It is idempotent:
approving an already-approved application returns the account it opened.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum

from .accounts import AccountLedger, AccountType
from .audit import AuditTrail, AuditEventType
from .config import get_config
from .exceptions import (
    ApplicationNotFoundError, DuplicateApplicationError, InvalidStateError,
    LedgerError, ValidationError
)
from .identity import IdentityRegistry
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount
from .storage import StorageInterface, StorageRecord


class KYCStatus(Enum):
    """KYC verification status"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self != KYCStatus.PENDING


@dataclass
class ApplicationDetails:
    """Account opening form as supplied by the intake process"""
    application_id: str
    holder_name: str
    date_of_birth: date
    national_id: str
    mobile_number: str
    opening_balance: Union[Decimal, str, int]
    address: str
    account_type: Union[AccountType, str] = AccountType.SAVINGS
    application_date: Optional[date] = None


@dataclass
class Application(StorageRecord):
    """
    Account opening application with its KYC status
    Never deleted; kept as the onboarding audit record
    """
    holder_name: str
    date_of_birth: date
    national_id: str
    mobile_number: str
    account_type: AccountType
    opening_balance: Decimal
    address: str
    application_date: date
    kyc_status: KYCStatus = KYCStatus.PENDING
    account_number: Optional[int] = None
    decided_at: Optional[datetime] = None

    @property
    def application_id(self) -> str:
        return self.id

    @property
    def is_pending(self) -> bool:
        return self.kyc_status == KYCStatus.PENDING


class ApplicationManager:
    """
    Admits applications and applies KYC decisions
    """

    def __init__(
        self,
        storage: StorageInterface,
        identity_registry: IdentityRegistry,
        ledger: AccountLedger,
        audit_trail: AuditTrail,
        minimum_opening_balances: Optional[Dict[AccountType, Decimal]] = None
    ):
        self.storage = storage
        self.identity_registry = identity_registry
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.table_name = "applications"
        self.logger = get_logger("retail_ledger.applications")

        if minimum_opening_balances is None:
            config = get_config()
            minimum_opening_balances = {
                account_type: config.minimum_opening_balance(account_type.value)
                for account_type in AccountType
            }
        self.minimum_opening_balances = minimum_opening_balances

    def submit(self, details: ApplicationDetails) -> str:
        """
        Validate an application, register its identity and admit it as PENDING

        Returns:
            The application ID

        Raises:
            ValidationError: Bad account type, missing field or balance below minimum
            DuplicateApplicationError: If the application ID is already used
            DuplicateIdentityError: If the national-identity or mobile number is taken
        """
        application_id = str(details.application_id).strip() if details.application_id is not None else ""

        try:
            if not application_id:
                raise ValidationError("Application ID is required")
            for label, value in (("Holder name", details.holder_name),
                                 ("Address", details.address)):
                if not value or not str(value).strip():
                    raise ValidationError(f"{label} is required")
            if not isinstance(details.date_of_birth, date):
                raise ValidationError("Date of birth is required")

            account_type = AccountType.parse(details.account_type)
            opening_balance = to_amount(details.opening_balance)
            minimum = self.minimum_opening_balances.get(account_type, ZERO)
            if opening_balance < max(minimum, ZERO):
                raise ValidationError(
                    f"Opening balance for a {account_type.value} account must be at least "
                    f"{max(minimum, ZERO)}, got {opening_balance}"
                )

            with self.storage.atomic():
                if self.storage.exists(self.table_name, application_id):
                    raise DuplicateApplicationError(f"Application {application_id} already exists")

                self.identity_registry.register(
                    details.national_id, details.mobile_number, application_id
                )

                now = datetime.now(timezone.utc)
                application = Application(
                    id=application_id,
                    created_at=now,
                    updated_at=now,
                    holder_name=details.holder_name.strip(),
                    date_of_birth=details.date_of_birth,
                    national_id=details.national_id.strip(),
                    mobile_number=details.mobile_number.strip(),
                    account_type=account_type,
                    opening_balance=opening_balance,
                    address=details.address.strip(),
                    application_date=details.application_date or now.date()
                )
                self._save_application(application)

                self.audit_trail.log_event(
                    event_type=AuditEventType.APPLICATION_SUBMITTED,
                    entity_type="application",
                    entity_id=application_id,
                    metadata={
                        "account_type": account_type.value,
                        "opening_balance": opening_balance
                    }
                )
        except LedgerError as e:
            self._log_rejection("submit_application", application_id, e)
            raise

        log_action(
            self.logger, "info", f"Application {application_id} submitted",
            action="submit_application", resource=f"application:{application_id}",
            extra={"account_type": account_type.value, "opening_balance": str(opening_balance)}
        )
        return application_id

    def approve(self, application_id: str) -> int:
        """
        Approve a PENDING application and open its account

        Account number allocation, account creation, holder snapshot and the
        status change commit together or not at all. Approving an
        application that is already APPROVED returns its account number
        without writing anything.

        Returns:
            The account number

        Raises:
            ApplicationNotFoundError: If the application does not exist
            InvalidStateError: If the application was REJECTED
        """
        application_id = str(application_id)

        try:
            with self.storage.atomic():
                application = self._require_application(application_id)

                if application.kyc_status == KYCStatus.APPROVED:
                    log_action(
                        self.logger, "info", f"Application {application_id} already approved",
                        action="approve_application", resource=f"application:{application_id}",
                        extra={"account_number": application.account_number}
                    )
                    return application.account_number

                if application.kyc_status == KYCStatus.REJECTED:
                    raise InvalidStateError(
                        f"Application {application_id} was rejected and cannot be approved"
                    )

                account_number = self.ledger.allocate_account(
                    application.account_type,
                    application.opening_balance,
                    application_id=application_id
                )
                self.ledger.create_holder(
                    account_number,
                    holder_name=application.holder_name,
                    date_of_birth=application.date_of_birth,
                    national_id=application.national_id,
                    mobile_number=application.mobile_number
                )

                now = datetime.now(timezone.utc)
                application.kyc_status = KYCStatus.APPROVED
                application.account_number = account_number
                application.decided_at = now
                application.updated_at = now
                self._save_application(application)

                self.audit_trail.log_event(
                    event_type=AuditEventType.KYC_APPROVED,
                    entity_type="application",
                    entity_id=application_id,
                    metadata={"account_number": account_number}
                )
        except LedgerError as e:
            self._log_rejection("approve_application", application_id, e)
            raise

        log_action(
            self.logger, "info", f"Application {application_id} approved",
            action="approve_application", resource=f"application:{application_id}",
            extra={"account_number": account_number}
        )
        return account_number

    def reject(self, application_id: str) -> None:
        """
        Reject a PENDING application; rejecting a REJECTED one is a no-op

        The identity stays registered: uniqueness is permanent.

        Raises:
            ApplicationNotFoundError: If the application does not exist
            InvalidStateError: If the application was APPROVED
        """
        application_id = str(application_id)

        try:
            with self.storage.atomic():
                application = self._require_application(application_id)

                if application.kyc_status == KYCStatus.REJECTED:
                    return

                if application.kyc_status == KYCStatus.APPROVED:
                    raise InvalidStateError(
                        f"Application {application_id} was approved and cannot be rejected"
                    )

                now = datetime.now(timezone.utc)
                application.kyc_status = KYCStatus.REJECTED
                application.decided_at = now
                application.updated_at = now
                self._save_application(application)

                self.audit_trail.log_event(
                    event_type=AuditEventType.KYC_REJECTED,
                    entity_type="application",
                    entity_id=application_id,
                    metadata={}
                )
        except LedgerError as e:
            self._log_rejection("reject_application", application_id, e)
            raise

        log_action(
            self.logger, "info", f"Application {application_id} rejected",
            action="reject_application", resource=f"application:{application_id}"
        )

    def get_application(self, application_id: str) -> Optional[Application]:
        """Get application by ID"""
        application_dict = self.storage.load(self.table_name, str(application_id))
        if application_dict:
            return self._application_from_dict(application_dict)
        return None

    def list_applications(self, status: Optional[KYCStatus] = None) -> List[Application]:
        """List applications, optionally filtered by KYC status"""
        if status is None:
            data = self.storage.load_all(self.table_name)
        else:
            data = self.storage.find(self.table_name, {"kyc_status": status.value})
        applications = [self._application_from_dict(d) for d in data]
        applications.sort(key=lambda a: a.created_at)
        return applications

    def _require_application(self, application_id: str) -> Application:
        application = self.get_application(application_id)
        if application is None:
            raise ApplicationNotFoundError(f"Application {application_id} not found")
        return application

    def _log_rejection(self, action: str, application_id: str, error: LedgerError) -> None:
        log_action(
            self.logger, "warning", f"Application {application_id or '?'} refused: {error}",
            action=action, resource=f"application:{application_id}",
            extra={"error": error.code}
        )

    def _save_application(self, application: Application) -> None:
        self.storage.save(self.table_name, application.id, self._application_to_dict(application))

    def _application_to_dict(self, application: Application) -> Dict:
        result = application.to_dict()
        result['account_type'] = application.account_type.value
        result['kyc_status'] = application.kyc_status.value
        result['date_of_birth'] = application.date_of_birth.isoformat()
        result['application_date'] = application.application_date.isoformat()
        if application.decided_at:
            result['decided_at'] = application.decided_at.isoformat()
        return result

    def _application_from_dict(self, data: Dict) -> Application:
        decided_at = None
        if data.get('decided_at'):
            decided_at = datetime.fromisoformat(data['decided_at'])

        return Application(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            holder_name=data['holder_name'],
            date_of_birth=date.fromisoformat(data['date_of_birth']),
            national_id=data['national_id'],
            mobile_number=data['mobile_number'],
            account_type=AccountType(data['account_type']),
            opening_balance=Decimal(data['opening_balance']),
            address=data['address'],
            application_date=date.fromisoformat(data['application_date']),
            kyc_status=KYCStatus(data['kyc_status']),
            account_number=data.get('account_number'),
            decided_at=decided_at
        )
