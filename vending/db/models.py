"""
Database Models
===============
MachineRecord = current snapshot of a machine
MachineEventRecord = immutable history (audit log)
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow():
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class MachineRecord(Base):
    """
    Where is this machine RIGHT NOW?
    One row per machine, rewritten on every transition.
    """
    __tablename__ = "machines"

    id = Column(String(36), primary_key=True)

    # FSM state
    state = Column(String(20), nullable=False, default="Idle")
    inserted_amount = Column(Integer, nullable=True)
    selected_product = Column(String(255), nullable=True)

    # [{"name": ..., "count": ..., "price": ...}, ...]
    inventory = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    events = relationship(
        "MachineEventRecord",
        back_populates="machine",
        order_by="MachineEventRecord.id",
    )


class MachineEventRecord(Base):
    """
    Append-only: every successful transition creates a new row.
    """
    __tablename__ = "machine_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(String(36), ForeignKey("machines.id"), nullable=False, index=True)

    from_state = Column(String(20), nullable=False)
    event = Column(String(50), nullable=False)
    to_state = Column(String(20), nullable=False)

    # amount, product, balance after the transition
    payload = Column(JSON, nullable=True)

    occurred_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    machine = relationship("MachineRecord", back_populates="events")
