"""
Test suite for the application state machine

Covers submission checks, approval provisioning (idempotent and atomic),
rejection and the terminal-state rules.
"""

import pytest
import threading
from decimal import Decimal
from datetime import date, datetime, timezone

from retail_ledger.storage import InMemoryStorage
from retail_ledger.audit import AuditTrail, AuditEventType
from retail_ledger.identity import IdentityRegistry
from retail_ledger.accounts import AccountLedger, AccountType
from retail_ledger.applications import (
    ApplicationManager, ApplicationDetails, KYCStatus
)
from retail_ledger.exceptions import (
    ApplicationNotFoundError, DuplicateApplicationError, DuplicateIdentityError,
    InvalidAmountError, InvalidStateError, ValidationError
)


def make_details(application_id="APP-1", national_id="123456789012",
                 mobile_number="9876543210", opening_balance="1500.00",
                 account_type=AccountType.SAVINGS, **overrides):
    fields = dict(
        application_id=application_id,
        holder_name="Asha Rao",
        date_of_birth=date(1990, 5, 17),
        national_id=national_id,
        mobile_number=mobile_number,
        opening_balance=opening_balance,
        address="12 Lake Road, Pune",
        account_type=account_type
    )
    fields.update(overrides)
    return ApplicationDetails(**fields)


class TestApplicationManager:
    """Test application submission and KYC decisions"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.registry = IdentityRegistry(self.storage)
        self.ledger = AccountLedger(self.storage, self.audit_trail, account_number_start=10000)
        self.manager = ApplicationManager(
            self.storage, self.registry, self.ledger, self.audit_trail,
            minimum_opening_balances={
                AccountType.SAVINGS: Decimal("1000.00"),
                AccountType.CURRENT: Decimal("0.00")
            }
        )

    # Submission

    def test_submit_creates_pending_application(self):
        application_id = self.manager.submit(make_details())

        application = self.manager.get_application(application_id)
        assert application_id == "APP-1"
        assert application.kyc_status == KYCStatus.PENDING
        assert application.opening_balance == Decimal("1500.00")
        assert application.account_type == AccountType.SAVINGS
        assert application.account_number is None
        assert application.application_date == datetime.now(timezone.utc).date()
        assert self.registry.is_national_id_registered("123456789012")

    def test_submit_defaults_to_savings(self):
        details = ApplicationDetails(
            application_id="APP-1",
            holder_name="Asha Rao",
            date_of_birth=date(1990, 5, 17),
            national_id="123456789012",
            mobile_number="9876543210",
            opening_balance="1000",
            address="12 Lake Road, Pune"
        )
        self.manager.submit(details)

        assert self.manager.get_application("APP-1").account_type == AccountType.SAVINGS

    def test_submit_keeps_given_application_date(self):
        self.manager.submit(make_details(application_date=date(2024, 1, 15)))

        assert self.manager.get_application("APP-1").application_date == date(2024, 1, 15)

    def test_account_type_accepts_strings(self):
        self.manager.submit(make_details(account_type="current", opening_balance="0"))

        assert self.manager.get_application("APP-1").account_type == AccountType.CURRENT

    def test_invalid_account_type(self):
        with pytest.raises(ValidationError):
            self.manager.submit(make_details(account_type="FIXED_DEPOSIT"))

        assert not self.registry.is_national_id_registered("123456789012")

    def test_savings_below_minimum(self):
        with pytest.raises(ValidationError, match="at least"):
            self.manager.submit(make_details(opening_balance="999.99"))

        # Rejected submissions leave no trace
        assert self.manager.get_application("APP-1") is None
        assert not self.registry.is_national_id_registered("123456789012")
        assert self.audit_trail.count_events() == 0

    def test_savings_at_minimum(self):
        self.manager.submit(make_details(opening_balance="1000.00"))

        assert self.manager.get_application("APP-1").is_pending

    def test_current_account_without_minimum(self):
        self.manager.submit(make_details(account_type=AccountType.CURRENT, opening_balance="0.00"))

        assert self.manager.get_application("APP-1").opening_balance == Decimal("0.00")

    def test_negative_opening_balance(self):
        with pytest.raises(ValidationError):
            self.manager.submit(make_details(account_type=AccountType.CURRENT, opening_balance="-1.00"))

    def test_malformed_opening_balance(self):
        with pytest.raises(InvalidAmountError):
            self.manager.submit(make_details(opening_balance="lots"))

    @pytest.mark.parametrize("opening_balance", ["1e27", "1500.001"])
    def test_unrepresentable_opening_balance(self, opening_balance):
        with pytest.raises(InvalidAmountError):
            self.manager.submit(make_details(opening_balance=opening_balance))

        assert self.manager.get_application("APP-1") is None
        assert not self.registry.is_national_id_registered("123456789012")

    def test_missing_required_fields(self):
        with pytest.raises(ValidationError):
            self.manager.submit(make_details(holder_name="  "))
        with pytest.raises(ValidationError):
            self.manager.submit(make_details(address=""))
        with pytest.raises(ValidationError):
            self.manager.submit(make_details(application_id=""))
        with pytest.raises(ValidationError):
            self.manager.submit(make_details(national_id=""))

    def test_duplicate_application_id(self):
        self.manager.submit(make_details())

        with pytest.raises(DuplicateApplicationError):
            self.manager.submit(make_details(national_id="222222222222", mobile_number="9111111111"))

        assert not self.registry.is_national_id_registered("222222222222")

    def test_duplicate_national_id(self):
        self.manager.submit(make_details())

        with pytest.raises(DuplicateIdentityError) as exc_info:
            self.manager.submit(make_details(application_id="APP-2", mobile_number="9111111111"))

        assert exc_info.value.field == "national_id"
        assert self.manager.get_application("APP-2") is None

    def test_duplicate_mobile_number(self):
        self.manager.submit(make_details())

        with pytest.raises(DuplicateIdentityError) as exc_info:
            self.manager.submit(make_details(application_id="APP-2", national_id="222222222222"))

        assert exc_info.value.field == "mobile_number"

    def test_identity_stays_taken_after_rejection(self):
        self.manager.submit(make_details())
        self.manager.reject("APP-1")

        with pytest.raises(DuplicateIdentityError):
            self.manager.submit(make_details(application_id="APP-2"))

    def test_submit_writes_audit_event(self):
        self.manager.submit(make_details())

        events = self.audit_trail.get_events_for_entity("application", "APP-1")
        assert [e.event_type for e in events] == [AuditEventType.APPLICATION_SUBMITTED]

    # Approval

    def test_approve_opens_account(self):
        self.manager.submit(make_details())

        account_number = self.manager.approve("APP-1")

        assert account_number == 10000
        application = self.manager.get_application("APP-1")
        assert application.kyc_status == KYCStatus.APPROVED
        assert application.account_number == 10000
        assert application.decided_at is not None

        account = self.ledger.get_account(10000)
        assert account.current_balance == Decimal("1500.00")
        assert account.opening_balance == Decimal("1500.00")
        assert account.account_type == AccountType.SAVINGS
        assert account.is_active
        assert account.application_id == "APP-1"

        holder = self.ledger.get_holder(10000)
        assert holder.holder_name == "Asha Rao"
        assert holder.national_id == "123456789012"
        assert holder.mobile_number == "9876543210"
        assert holder.date_of_birth == date(1990, 5, 17)

    def test_account_numbers_strictly_increase(self):
        numbers = []
        for i in range(3):
            self.manager.submit(make_details(
                application_id=f"APP-{i}", national_id=f"10000000000{i}", mobile_number=f"900000000{i}"
            ))
            numbers.append(self.manager.approve(f"APP-{i}"))

        assert numbers == [10000, 10001, 10002]

    def test_approve_is_idempotent(self):
        self.manager.submit(make_details())
        first = self.manager.approve("APP-1")
        events_before = self.audit_trail.count_events()

        second = self.manager.approve("APP-1")

        assert first == second
        assert len(self.ledger.list_accounts()) == 1
        assert self.storage.count(self.ledger.holders_table) == 1
        assert self.audit_trail.count_events() == events_before

    def test_approve_rejected_application(self):
        self.manager.submit(make_details())
        self.manager.reject("APP-1")

        with pytest.raises(InvalidStateError):
            self.manager.approve("APP-1")

        assert self.ledger.list_accounts() == []

    def test_approve_unknown_application(self):
        with pytest.raises(ApplicationNotFoundError):
            self.manager.approve("NOPE")

    def test_failed_approval_rolls_back_everything(self, monkeypatch):
        self.manager.submit(make_details())
        events_before = self.audit_trail.count_events()

        def broken_create_holder(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(self.ledger, "create_holder", broken_create_holder)

        with pytest.raises(RuntimeError):
            self.manager.approve("APP-1")

        assert self.manager.get_application("APP-1").kyc_status == KYCStatus.PENDING
        assert self.ledger.list_accounts() == []
        assert self.audit_trail.count_events() == events_before
        # The account number was not consumed
        assert self.storage.peek_sequence(self.ledger.ACCOUNT_NUMBER_SEQUENCE) is None

        monkeypatch.undo()
        assert self.manager.approve("APP-1") == 10000

    def test_concurrent_approvals_open_one_account(self):
        self.manager.submit(make_details())
        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(6)

        def approve():
            barrier.wait()
            account_number = self.manager.approve("APP-1")
            with results_lock:
                results.append(account_number)

        threads = [threading.Thread(target=approve) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results == [10000] * 6
        assert len(self.ledger.list_accounts()) == 1

    def test_approve_writes_audit_events(self):
        self.manager.submit(make_details())
        self.manager.approve("APP-1")

        types = [e.event_type for e in self.audit_trail.get_all_events()]
        assert types == [
            AuditEventType.APPLICATION_SUBMITTED,
            AuditEventType.ACCOUNT_OPENED,
            AuditEventType.KYC_APPROVED
        ]

    # Rejection

    def test_reject_pending_application(self):
        self.manager.submit(make_details())

        self.manager.reject("APP-1")

        application = self.manager.get_application("APP-1")
        assert application.kyc_status == KYCStatus.REJECTED
        assert application.account_number is None
        assert self.ledger.list_accounts() == []

    def test_reject_is_idempotent(self):
        self.manager.submit(make_details())
        self.manager.reject("APP-1")
        events_before = self.audit_trail.count_events()

        self.manager.reject("APP-1")

        assert self.manager.get_application("APP-1").kyc_status == KYCStatus.REJECTED
        assert self.audit_trail.count_events() == events_before

    def test_reject_approved_application(self):
        self.manager.submit(make_details())
        self.manager.approve("APP-1")

        with pytest.raises(InvalidStateError):
            self.manager.reject("APP-1")

        assert self.manager.get_application("APP-1").kyc_status == KYCStatus.APPROVED

    def test_reject_unknown_application(self):
        with pytest.raises(ApplicationNotFoundError):
            self.manager.reject("NOPE")

    # Queries

    def test_list_applications_by_status(self):
        for i in range(3):
            self.manager.submit(make_details(
                application_id=f"APP-{i}", national_id=f"10000000000{i}", mobile_number=f"900000000{i}"
            ))
        self.manager.approve("APP-0")
        self.manager.reject("APP-1")

        assert [a.id for a in self.manager.list_applications()] == ["APP-0", "APP-1", "APP-2"]
        assert [a.id for a in self.manager.list_applications(KYCStatus.PENDING)] == ["APP-2"]
        assert [a.id for a in self.manager.list_applications(KYCStatus.APPROVED)] == ["APP-0"]
        assert [a.id for a in self.manager.list_applications(KYCStatus.REJECTED)] == ["APP-1"]

    def test_terminal_states(self):
        assert not KYCStatus.PENDING.is_terminal
        assert KYCStatus.APPROVED.is_terminal
        assert KYCStatus.REJECTED.is_terminal


class TestConfiguredMinimums:
    """Minimum opening balances taken from configuration"""

    def test_defaults_come_from_config(self, monkeypatch):
        from retail_ledger import config as config_module

        monkeypatch.setenv("LEDGER_SAVINGS_MIN_OPENING_BALANCE", "500.00")
        monkeypatch.setattr(config_module, "config", config_module.LedgerConfig())

        storage = InMemoryStorage()
        audit_trail = AuditTrail(storage)
        manager = ApplicationManager(
            storage, IdentityRegistry(storage),
            AccountLedger(storage, audit_trail, account_number_start=10000), audit_trail
        )

        assert manager.minimum_opening_balances[AccountType.SAVINGS] == Decimal("500.00")
        assert manager.minimum_opening_balances[AccountType.CURRENT] == Decimal("0.00")
        manager.submit(make_details(opening_balance="500.00"))
