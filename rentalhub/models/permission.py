from sqlalchemy import Column, ForeignKey, Integer, String, UniqueConstraint

from rentalhub.database import Base


class PermissionGrant(Base):
    __tablename__ = "user_permissions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    permission_code = Column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "permission_code", name="uq_user_permission"),
    )
