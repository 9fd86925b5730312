"""
Identity Registry

Enforces global, permanent uniqueness of national-identity and mobile
numbers across every application ever admitted, whatever its KYC outcome.
Each value is the primary key of its own table, so lookups are indexed.
"""

from datetime import datetime, timezone
from typing import Optional

from .exceptions import DuplicateIdentityError, ValidationError
from .storage import StorageInterface


class IdentityRegistry:
    """Registry of national-identity and mobile numbers"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.national_ids_table = "identity_national_ids"
        self.mobiles_table = "identity_mobile_numbers"

    def register(self, national_id: str, mobile_number: str,
                 application_id: Optional[str] = None) -> None:
        """
        Register an identity pair

        Both values are checked and written in one atomic scope, so two
        concurrent registrations cannot both claim the same value.

        Raises:
            ValidationError: If either value is blank
            DuplicateIdentityError: If either value is already registered
        """
        national_id = _normalize(national_id, "National-identity number")
        mobile_number = _normalize(mobile_number, "Mobile number")

        with self.storage.atomic():
            if self.storage.exists(self.national_ids_table, national_id):
                raise DuplicateIdentityError(
                    f"National-identity number {national_id} is already registered",
                    field="national_id"
                )
            if self.storage.exists(self.mobiles_table, mobile_number):
                raise DuplicateIdentityError(
                    f"Mobile number {mobile_number} is already registered",
                    field="mobile_number"
                )

            registered_at = datetime.now(timezone.utc).isoformat()
            self.storage.save(self.national_ids_table, national_id, {
                'id': national_id,
                'application_id': application_id,
                'registered_at': registered_at
            })
            self.storage.save(self.mobiles_table, mobile_number, {
                'id': mobile_number,
                'application_id': application_id,
                'registered_at': registered_at
            })

    def is_national_id_registered(self, national_id: str) -> bool:
        return self.storage.exists(self.national_ids_table, national_id.strip())

    def is_mobile_registered(self, mobile_number: str) -> bool:
        return self.storage.exists(self.mobiles_table, mobile_number.strip())

    def owner_of_national_id(self, national_id: str) -> Optional[str]:
        """Application ID that registered a national-identity number"""
        record = self.storage.load(self.national_ids_table, national_id.strip())
        return record['application_id'] if record else None


def _normalize(value: str, label: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{label} is required")
    return str(value).strip()
