from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from rentalhub.database import Base


class UserEntry(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    business_id = Column(
        Integer, ForeignKey("businesses.id"), nullable=False, index=True
    )
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False)
    role_id = Column(Integer, nullable=False)
    is_owner = Column(Boolean, nullable=False, default=False)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    contact_number = Column(String(15), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
