import re
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rentalhub.services.otp import OtpType

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = re.compile(r"^[0-9]{10,15}$")
PINCODE_PATTERN = re.compile(r"^[0-9]{5,10}$")


def _clean_email(value: str) -> str:
    cleaned = value.strip().lower()
    if not EMAIL_PATTERN.match(cleaned):
        raise ValueError("Please provide a valid email address")
    return cleaned


class SendOtpRequest(BaseModel):
    email: str = Field(max_length=255)
    otp_type_id: OtpType = OtpType.LOGIN

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _clean_email(value)


class SendOtpResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    otp_id: str = Field(serialization_alias="otpId")
    expires_at: datetime = Field(serialization_alias="expiresAt")


class VerifyOtpRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(max_length=255)
    otp_code: str = Field(alias="otpCode", min_length=4, max_length=10, pattern=r"^\d+$")
    otp_type_id: OtpType = OtpType.LOGIN

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _clean_email(value)


class VerifyOtpResponse(BaseModel):
    email: str
    verified: bool = True


class LoginRequest(VerifyOtpRequest):
    device_id: Optional[str] = Field(default=None, max_length=255)
    device_name: Optional[str] = Field(default=None, max_length=255)


class LoginResponse(BaseModel):
    access_token: str
    token_expires_at: datetime
    session_token: Optional[str] = None
    session_expires_at: Optional[datetime] = None


class LogoutResponse(BaseModel):
    logged_out: bool = True


class CompleteRegistrationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    business_name: str = Field(alias="businessName", min_length=2, max_length=255)
    business_email: str = Field(alias="businessEmail", max_length=255)
    website: Optional[str] = Field(default=None, max_length=255)
    contact_person: str = Field(alias="contactPerson", min_length=2, max_length=255)
    contact_number: str = Field(alias="contactNumber")
    address_line: str = Field(alias="addressLine", min_length=5, max_length=255)
    city: str = Field(min_length=2, max_length=100)
    state: str = Field(min_length=2, max_length=100)
    country: str = Field(default="India", max_length=100)
    pincode: str
    subscription_type: Literal[
        "TRIAL", "BASIC", "STANDARD", "PREMIUM", "ENTERPRISE", "CUSTOM"
    ] = Field(default="TRIAL", alias="subscriptionType")
    billing_cycle: Literal["MONTHLY", "QUARTERLY", "YEARLY", "LIFETIME"] = Field(
        default="MONTHLY", alias="billingCycle"
    )
    owner_name: str = Field(alias="ownerName", min_length=2, max_length=255)
    owner_email: str = Field(alias="ownerEmail", max_length=255)
    owner_contact_number: str = Field(alias="ownerContactNumber")
    owner_role: Literal["OWNER", "ADMIN"] = Field(default="OWNER", alias="ownerRole")

    @field_validator("business_email", "owner_email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _clean_email(value)

    @field_validator("contact_number", "owner_contact_number")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        cleaned = value.strip()
        if not PHONE_PATTERN.match(cleaned):
            raise ValueError("Contact number must be 10-15 digits")
        return cleaned

    @field_validator("pincode")
    @classmethod
    def validate_pincode(cls, value: str) -> str:
        cleaned = value.strip()
        if not PINCODE_PATTERN.match(cleaned):
            raise ValueError("Pincode must be 5-10 digits")
        return cleaned

    @field_validator("website")
    @classmethod
    def normalize_website(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            return None
        if not cleaned.startswith(("http://", "https://")):
            raise ValueError("Website must be a valid URL")
        return cleaned


class CompleteRegistrationResponse(BaseModel):
    business_id: int = Field(serialization_alias="businessId")
    branch_id: int = Field(serialization_alias="branchId")
    owner_id: int = Field(serialization_alias="ownerId")


class DecryptTokenRequest(BaseModel):
    access_token: Optional[str] = None


class DecryptTokenResponse(BaseModel):
    user_id: int
    business_id: int
    branch_id: int
    role_id: int
    is_owner: bool = False
    user_name: Optional[str] = None
    contact_number: Optional[str] = None
    business_name: Optional[str] = None
    email: Optional[str] = None


class ExtendSessionResponse(BaseModel):
    session_token: str
    expires_at: datetime
    expires_in_seconds: int
