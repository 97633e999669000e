from sqlalchemy import Column, DateTime, Index, Integer, String

from rentalhub.database import Base


class OtpEntry(Base):
    __tablename__ = "otp_codes"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), nullable=False)
    otp_type_id = Column(Integer, nullable=False)
    otp_code_hash = Column(String(64), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    ip_address = Column(String(45), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_otp_email_type", "email", "otp_type_id"),
        Index("ix_otp_expires_at", "expires_at"),
    )
