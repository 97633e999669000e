from rentalhub.models.business import BranchEntry, BusinessEntry
from rentalhub.models.otp import OtpEntry
from rentalhub.models.permission import PermissionGrant
from rentalhub.models.session import SessionEntry
from rentalhub.models.user import UserEntry

__all__ = [
    "BranchEntry",
    "BusinessEntry",
    "OtpEntry",
    "PermissionGrant",
    "SessionEntry",
    "UserEntry",
]
