import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from rentalhub.database import Database
from rentalhub.errors import ConflictError, DatabaseError
from rentalhub.models.business import BranchEntry, BusinessEntry
from rentalhub.models.permission import PermissionGrant
from rentalhub.models.user import UserEntry
from rentalhub.services.clock import Clock, utcnow
from rentalhub.services.otp import normalize_email
from rentalhub.services.tokens import Principal

LOGGER = logging.getLogger(__name__)

OWNER_ROLE_ID = 1
ADMIN_ROLE_ID = 2
ROLE_IDS = {"OWNER": OWNER_ROLE_ID, "ADMIN": ADMIN_ROLE_ID}
MAIN_BRANCH_NAME = "Main Branch"


@dataclass(frozen=True)
class RegistrationData:
    business_name: str
    business_email: str
    contact_person: str
    contact_number: str
    address_line: str
    city: str
    state: str
    pincode: str
    owner_name: str
    owner_email: str
    owner_contact_number: str
    website: Optional[str] = None
    country: str = "India"
    subscription_type: str = "TRIAL"
    billing_cycle: str = "MONTHLY"
    owner_role: str = "OWNER"


@dataclass(frozen=True)
class RegistrationResult:
    business_id: int
    branch_id: int
    owner_id: int


class AccountStore:
    def __init__(self, database: Database, clock: Clock = utcnow) -> None:
        self._database = database
        self._clock = clock

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        normalized = normalize_email(email)
        try:
            with self._database.session_scope() as session:
                row = session.execute(
                    select(UserEntry, BusinessEntry.name)
                    .join(BusinessEntry, BusinessEntry.id == UserEntry.business_id)
                    .where(UserEntry.email == normalized)
                ).one_or_none()
                if row is None:
                    return None
                user, business_name = row
                return Principal(
                    user_id=user.id,
                    business_id=user.business_id,
                    branch_id=user.branch_id,
                    role_id=user.role_id,
                    is_owner=bool(user.is_owner),
                    user_name=user.name,
                    contact_number=user.contact_number,
                    business_name=business_name,
                    email=user.email,
                )
        except SQLAlchemyError as exc:
            LOGGER.error("Principal lookup failed: %s", exc)
            raise DatabaseError("Failed to load user") from exc

    def email_exists(self, email: str) -> bool:
        """True when the address is taken by any user or business."""
        normalized = normalize_email(email)
        try:
            with self._database.session_scope() as session:
                user_id = session.execute(
                    select(UserEntry.id).where(UserEntry.email == normalized).limit(1)
                ).scalar_one_or_none()
                if user_id is not None:
                    return True
                business_id = session.execute(
                    select(BusinessEntry.id)
                    .where(BusinessEntry.email == normalized)
                    .limit(1)
                ).scalar_one_or_none()
                return business_id is not None
        except SQLAlchemyError as exc:
            LOGGER.error("Email existence check failed: %s", exc)
            raise DatabaseError("Failed to check email existence") from exc

    def register_business_with_owner(self, data: RegistrationData) -> RegistrationResult:
        """Create business, main branch and owner in one transaction."""
        now = self._clock()
        try:
            with self._database.session_scope() as session:
                business = BusinessEntry(
                    name=data.business_name,
                    email=normalize_email(data.business_email),
                    website=data.website or None,
                    contact_person=data.contact_person,
                    contact_number=data.contact_number,
                    address_line=data.address_line,
                    city=data.city,
                    state=data.state,
                    country=data.country,
                    pincode=data.pincode,
                    subscription_type=data.subscription_type,
                    billing_cycle=data.billing_cycle,
                    created_at=now,
                )
                session.add(business)
                session.flush()
                branch = BranchEntry(
                    business_id=business.id, name=MAIN_BRANCH_NAME, created_at=now
                )
                session.add(branch)
                session.flush()
                owner = UserEntry(
                    business_id=business.id,
                    branch_id=branch.id,
                    role_id=ROLE_IDS.get(data.owner_role, OWNER_ROLE_ID),
                    is_owner=data.owner_role == "OWNER",
                    name=data.owner_name,
                    email=normalize_email(data.owner_email),
                    contact_number=data.owner_contact_number,
                    created_at=now,
                    updated_at=now,
                )
                session.add(owner)
                session.flush()
                result = RegistrationResult(
                    business_id=business.id, branch_id=branch.id, owner_id=owner.id
                )
        except IntegrityError as exc:
            # lost the race against a concurrent registration with the same email
            raise ConflictError("Email already registered") from exc
        except SQLAlchemyError as exc:
            LOGGER.error("Business registration failed: %s", exc)
            raise DatabaseError("Failed to register business") from exc
        LOGGER.info(
            "Registered business_id=%s branch_id=%s owner_id=%s",
            result.business_id,
            result.branch_id,
            result.owner_id,
        )
        return result

    def has_permission(self, user_id: int, permission_code: str) -> bool:
        try:
            with self._database.session_scope() as session:
                grant_id = session.execute(
                    select(PermissionGrant.id)
                    .where(
                        PermissionGrant.user_id == user_id,
                        PermissionGrant.permission_code == permission_code,
                    )
                    .limit(1)
                ).scalar_one_or_none()
                return grant_id is not None
        except SQLAlchemyError as exc:
            LOGGER.error("Permission lookup failed for user_id=%s: %s", user_id, exc)
            raise DatabaseError("Failed to verify permissions") from exc

    def grant_permission(self, user_id: int, permission_code: str) -> None:
        if self.has_permission(user_id, permission_code):
            return
        try:
            with self._database.session_scope() as session:
                session.add(
                    PermissionGrant(user_id=user_id, permission_code=permission_code)
                )
        except SQLAlchemyError as exc:
            LOGGER.error("Permission grant failed for user_id=%s: %s", user_id, exc)
            raise DatabaseError("Failed to grant permission") from exc
