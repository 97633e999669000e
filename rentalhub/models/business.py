from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from rentalhub.database import Base


class BusinessEntry(Base):
    __tablename__ = "businesses"

    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    website = Column(String(255), nullable=True)
    contact_person = Column(String(255), nullable=False)
    contact_number = Column(String(15), nullable=False)
    address_line = Column(String(255), nullable=False)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=False)
    country = Column(String(100), nullable=False)
    pincode = Column(String(10), nullable=False)
    subscription_type = Column(String(20), nullable=False)
    billing_cycle = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class BranchEntry(Base):
    __tablename__ = "branches"

    id = Column(Integer, primary_key=True)
    business_id = Column(
        Integer, ForeignKey("businesses.id"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
