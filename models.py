from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Document(Base, TimestampMixin):
    """A JSON document addressed by a slash-joined path.

    ``collection`` is the parent collection path, so listing a collection is a
    single indexed lookup.
    """

    __tablename__ = "documents"

    path: Mapped[str] = mapped_column(String(512), primary_key=True)
    collection: Mapped[str] = mapped_column(String(512), nullable=False)
    doc_id: Mapped[str] = mapped_column(String(128), nullable=False)
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_documents_collection", "collection", "created_at"),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    uid: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(200))
    password_hash: Mapped[Optional[str]] = mapped_column(String(200))
    email_verified: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    failed_logins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_sign_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    sessions_revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    identities: Mapped[list["FederatedIdentity"]] = relationship(
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="FederatedIdentity.id",
    )


class FederatedIdentity(Base, TimestampMixin):
    __tablename__ = "federated_identities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    uid: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.uid", ondelete="CASCADE"), nullable=False
    )
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)

    account: Mapped[Account] = relationship(back_populates="identities")

    __table_args__ = (
        UniqueConstraint("provider_id", "subject", name="uq_identity_subject"),
        UniqueConstraint("uid", "provider_id", name="uq_identity_uid_provider"),
    )
