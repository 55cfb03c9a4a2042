"""Invalidation request and batch ORM models."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cdn_purge.models.base import Base


class CdnInvalidationRequest(Base):
    """One logical purge submitted by the publish pipeline (``cdn_invalidation_request``)."""

    __tablename__ = "cdn_invalidation_request"
    __table_args__ = (
        UniqueConstraint("caller_reference", name="uq_cdn_inv_caller_ref"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    caller_reference: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_type: Mapped[str] = mapped_column(String(32), nullable=False)
    paths: Mapped[str] = mapped_column(Text, nullable=False)  # JSON array
    purge_everything: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    batches: Mapped[List["CdnInvalidationBatch"]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="CdnInvalidationBatch.sequence_index",
    )


class CdnInvalidationBatch(Base):
    """A provider-sized slice of a request and its latest result (``cdn_invalidation_batch``)."""

    __tablename__ = "cdn_invalidation_batch"
    __table_args__ = (PrimaryKeyConstraint("request_id", "sequence_index"),)

    request_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cdn_invalidation_request.id", ondelete="CASCADE")
    )
    sequence_index: Mapped[int] = mapped_column(Integer, nullable=False)
    paths: Mapped[str] = mapped_column(Text, nullable=False)  # JSON array
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_reference: Mapped[Optional[str]] = mapped_column(String(512))
    error_kind: Mapped[Optional[str]] = mapped_column(String(32))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    request: Mapped["CdnInvalidationRequest"] = relationship(back_populates="batches")
