from __future__ import annotations

from datetime import datetime
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.event import listens_for
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

ROLE_ADMIN = "admin"
ROLE_JUDGE = "judge"
ROLE_CALCULATOR = "calculator"

RESULT_TIME = "time"
RESULT_FAULT = "fault"

AUDIT_ATTEMPT_CREATED = "attempt_created"
AUDIT_ATTEMPT_UPDATED = "attempt_updated"
AUDIT_TOKEN_GENERATED = "token_generated"
AUDIT_TOKEN_REVOKED = "token_revoked"
AUDIT_COMPETITOR_UPDATED = "competitor_updated"


class Event(Base):
    __tablename__ = "events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    categories: Mapped[list["Category"]] = relationship(back_populates="event", cascade="all, delete-orphan")
    nodes: Mapped[list["Node"]] = relationship(back_populates="event", cascade="all, delete-orphan")
    competitors: Mapped[list["Competitor"]] = relationship(back_populates="event", cascade="all, delete-orphan")


class Category(Base):
    __tablename__ = "categories"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    event: Mapped["Event"] = relationship(back_populates="categories")

    __table_args__ = (
        UniqueConstraint("event_id", "code", name="uq_category_code"),
    )


class Node(Base):
    __tablename__ = "nodes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    code: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    is_relay: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    counts_to_overall: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    max_time_centiseconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    note: Mapped[str | None] = mapped_column(String, nullable=True)

    event: Mapped["Event"] = relationship(back_populates="nodes")

    __table_args__ = (
        UniqueConstraint("event_id", "code", name="uq_node_code"),
        Index("ix_nodes_event_sequence", "event_id", "sequence"),
    )


class CategoryNode(Base):
    __tablename__ = "category_nodes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    category_code: Mapped[str] = mapped_column(String, nullable=False)
    node_id: Mapped[int] = mapped_column(ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False)
    # per-category ordering, independent of Node.sequence
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    node: Mapped["Node"] = relationship()

    __table_args__ = (
        UniqueConstraint("event_id", "category_code", "node_id", name="uq_category_node"),
        Index("ix_category_nodes_event_category", "event_id", "category_code", "sequence"),
    )


class Competitor(Base):
    __tablename__ = "competitors"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    category_code: Mapped[str] = mapped_column(String, nullable=False)
    display_name: Mapped[str] = mapped_column(String, nullable=False)
    club: Mapped[str | None] = mapped_column(String, nullable=True)
    start_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    birth_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(String, nullable=True)
    qr_token: Mapped[str | None] = mapped_column(String, nullable=True)
    qr_token_issued_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    event: Mapped["Event"] = relationship(back_populates="competitors")

    __table_args__ = (
        UniqueConstraint("event_id", "start_number", name="uq_competitor_start_number"),
        Index("ix_competitors_event_category", "event_id", "category_code"),
    )


class QrToken(Base):
    """Token history. Rows are revoked, never deleted."""

    __tablename__ = "qr_tokens"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    competitor_id: Mapped[int] = mapped_column(ForeignKey("competitors.id", ondelete="CASCADE"), nullable=False)
    token: Mapped[str] = mapped_column(String, nullable=False)
    issued_by: Mapped[str | None] = mapped_column(String, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", "token", name="uq_qr_token"),
        Index("ix_qr_tokens_competitor", "competitor_id"),
    )


class Attempt(Base):
    __tablename__ = "attempts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    competitor_id: Mapped[int] = mapped_column(ForeignKey("competitors.id", ondelete="CASCADE"), nullable=False)
    node_id: Mapped[int] = mapped_column(ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # time | fault
    result_kind: Mapped[str] = mapped_column(String, nullable=False)
    centiseconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fault_code: Mapped[str | None] = mapped_column(String, nullable=True)
    note: Mapped[str | None] = mapped_column(String, nullable=True)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    recorded_by: Mapped[str | None] = mapped_column(String, nullable=True)
    recorded_role: Mapped[str | None] = mapped_column(String, nullable=True)
    recorded_ip: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("event_id", "competitor_id", "node_id", "attempt_number", name="uq_attempt"),
        CheckConstraint("attempt_number IN (1, 2)", name="ck_attempt_number"),
        CheckConstraint(
            "(result_kind = 'time' AND centiseconds IS NOT NULL AND fault_code IS NULL)"
            " OR (result_kind = 'fault' AND centiseconds IS NULL AND fault_code IS NOT NULL)",
            name="ck_attempt_result",
        ),
        Index("ix_attempts_event_node", "event_id", "node_id"),
        Index("ix_attempts_competitor", "competitor_id"),
    )

    def snapshot(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "competitor_id": self.competitor_id,
            "node_id": self.node_id,
            "attempt_number": self.attempt_number,
            "result_kind": self.result_kind,
            "centiseconds": self.centiseconds,
            "fault_code": self.fault_code,
            "note": self.note,
            "locked": self.locked,
            "recorded_by": self.recorded_by,
            "recorded_role": self.recorded_role,
        }


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    attempt_id: Mapped[int | None] = mapped_column(ForeignKey("attempts.id", ondelete="SET NULL"), nullable=True)
    competitor_id: Mapped[int | None] = mapped_column(ForeignKey("competitors.id", ondelete="SET NULL"), nullable=True)
    node_id: Mapped[int | None] = mapped_column(ForeignKey("nodes.id", ondelete="SET NULL"), nullable=True)
    attempt_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    previous_value: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    changed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    changed_role: Mapped[str | None] = mapped_column(String, nullable=True)
    changed_ip: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_audit_logs_event_created", "event_id", "created_at"),
    )


@listens_for(AuditLog, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise RuntimeError("AuditLog is append-only")


@listens_for(AuditLog, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    raise RuntimeError("AuditLog is append-only")
