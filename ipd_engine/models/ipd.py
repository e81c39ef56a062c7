from __future__ import annotations
from sqlalchemy import (Column, Integer, String, DateTime, Date, Text,
                        ForeignKey, Boolean, Numeric, UniqueConstraint, Index,
                        CheckConstraint)
from sqlalchemy.orm import relationship
from ipd_engine.db.base import Base
from ipd_engine.utils.timezone import now_utc_naive

BED_STATES = ("vacant", "reserved", "preoccupied", "occupied")
ADMISSION_STATUSES = ("admitted", "discharged", "cancelled")
TRANSFER_STATUSES = ("requested", "approved", "rejected", "scheduled",
                     "completed", "cancelled")

# ---------------------------------------------------------------------
# IPD Masters
# ---------------------------------------------------------------------


class IpdWard(Base):
    __tablename__ = "ipd_wards"
    __table_args__ = {
        "mysql_engine": "InnoDB",
        "mysql_charset": "utf8mb4",
    }

    id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, nullable=False)
    code = Column(String(20), unique=True, nullable=False)
    floor = Column(String(50), default="")
    is_active = Column(Boolean, default=True)
    rooms = relationship(
        "IpdRoom",
        back_populates="ward",
        cascade="all, delete-orphan",
    )


class IpdRoom(Base):
    __tablename__ = "ipd_rooms"
    __table_args__ = (
        UniqueConstraint("ward_id",
                         "number",
                         name="uq_ipd_room_number_per_ward"),
        Index("ix_ipd_rooms_ward_active", "ward_id", "is_active"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
        },
    )

    id = Column(Integer, primary_key=True)
    ward_id = Column(Integer,
                     ForeignKey("ipd_wards.id"),
                     nullable=False,
                     index=True)
    number = Column(String(30), nullable=False)
    type = Column(String(30), default="General")
    is_active = Column(Boolean, default=True)

    ward = relationship("IpdWard", back_populates="rooms")
    beds = relationship(
        "IpdBed",
        back_populates="room",
        cascade="all, delete-orphan",
    )


class IpdBed(Base):
    __tablename__ = "ipd_beds"
    __table_args__ = (
        Index("ix_ipd_beds_state", "state"),
        Index("ix_ipd_beds_room_state", "room_id", "state"),
        CheckConstraint(
            "state IN ('vacant', 'reserved', 'preoccupied', 'occupied')",
            name="ck_ipd_beds_state"),
        {
            "mysql_engine": "InnoDB",
            "mysql_charset": "utf8mb4",
        },
    )

    id = Column(Integer, primary_key=True)
    room_id = Column(Integer,
                     ForeignKey("ipd_rooms.id"),
                     nullable=False,
                     index=True)
    code = Column(String(30), unique=True, nullable=False)
    state = Column(String(20), nullable=False, default="vacant")
    reserved_until = Column(DateTime, nullable=True)
    # transfer currently holding the reservation (null for manual holds)
    reserved_by_transfer_id = Column(Integer, nullable=True)
    note = Column(String(255), default="")
    is_active = Column(Boolean, default=True)

    # bumped by every state write; the CAS predicate
    version = Column(Integer, nullable=False, default=0)

    room = relationship("IpdRoom", back_populates="beds")

    @property
    def ward_name(self) -> str | None:
        return self.room.ward.name if self.room and self.room.ward else None

    @property
    def room_name(self) -> str | None:
        return self.room.number if self.room else None


class IpdBedRate(Base):
    __tablename__ = "ipd_bed_rates"
    id = Column(Integer, primary_key=True)
    room_type = Column(String(30), nullable=False, index=True)
    daily_rate = Column(Numeric(12, 2), nullable=False)
    effective_from = Column(Date, nullable=False)
    effective_to = Column(Date, nullable=True)  # inclusive; null = open-ended
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=now_utc_naive, nullable=False)

    __table_args__ = (Index("ix_ipd_bed_rates_lookup", "room_type",
                            "effective_from", "effective_to", "is_active"), )


class IpdBedAssignment(Base):
    """Occupancy timeline: one row per continuous stay in one bed."""
    __tablename__ = "ipd_bed_assignments"
    id = Column(Integer, primary_key=True)
    admission_id = Column(Integer, ForeignKey("ipd_admissions.id"), index=True)
    bed_id = Column(Integer, ForeignKey("ipd_beds.id"), index=True)
    from_ts = Column(DateTime, default=now_utc_naive)
    to_ts = Column(DateTime, nullable=True)
    reason = Column(String(120), default="admission")

    __table_args__ = (
        Index("ix_ipd_bed_assignments_adm_from", "admission_id", "from_ts"),
        Index("ix_ipd_bed_assignments_adm_to", "admission_id", "to_ts"),
    )


# ---------------------------------------------------------------------
# IPD Core Workflow
# ---------------------------------------------------------------------


class IpdAdmission(Base):
    __tablename__ = "ipd_admissions"
    __table_args__ = (
        # one admitted stay per patient; NULL once discharged/cancelled
        UniqueConstraint("active_patient_id",
                         name="uq_ipd_admission_active_patient"),
        Index("ix_ipd_admissions_status", "status"),
    )

    id = Column(Integer, primary_key=True)
    admission_code = Column(String(20), unique=True, index=True, nullable=True)
    patient_id = Column(Integer,
                        ForeignKey("patients.id"),
                        nullable=False,
                        index=True)
    active_patient_id = Column(Integer, nullable=True)
    department_id = Column(Integer, nullable=True)

    practitioner_user_id = Column(Integer,
                                  ForeignKey("users.id"),
                                  nullable=True)  # Primary doctor
    primary_nurse_user_id = Column(Integer,
                                   ForeignKey("users.id"),
                                   nullable=True)

    admission_type = Column(String(20),
                            default="planned")  # emergency/planned/daycare
    admitted_at = Column(DateTime, default=now_utc_naive)
    expected_discharge_at = Column(DateTime, nullable=True)
    discharged_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(255), default="")

    payor_type = Column(String(20), default="cash")  # cash/insurance/tpa
    insurer_name = Column(String(120), default="")
    policy_number = Column(String(120), default="")

    preliminary_diagnosis = Column(Text, default="")
    care_plan = Column(Text, default="")

    current_bed_id = Column(Integer, ForeignKey("ipd_beds.id"), nullable=True)
    status = Column(String(20), nullable=False,
                    default="admitted")  # admitted/discharged/cancelled

    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=now_utc_naive)
    current_bed = relationship("IpdBed")

    @property
    def display_code(self) -> str:
        return self.admission_code or f"IP-{self.id:06d}"


class IpdTransfer(Base):
    __tablename__ = "ipd_transfers"
    __table_args__ = (
        Index("ix_ipd_transfers_adm_status", "admission_id", "status"),
    )

    id = Column(Integer, primary_key=True)
    admission_id = Column(Integer, ForeignKey("ipd_admissions.id"),
                          nullable=False, index=True)
    from_bed_id = Column(Integer, ForeignKey("ipd_beds.id"), nullable=True)
    to_bed_id = Column(Integer, ForeignKey("ipd_beds.id"), nullable=True)
    from_assignment_id = Column(Integer, nullable=True)
    to_assignment_id = Column(Integer, nullable=True)

    transfer_type = Column(String(20), default="transfer")
    priority = Column(String(20), default="routine")
    status = Column(String(20), nullable=False, default="requested")

    reason = Column(String(255), default="")
    request_note = Column(Text, default="")
    reserve_minutes = Column(Integer, default=30)
    reserved_until = Column(DateTime, nullable=True)
    scheduled_at = Column(DateTime, nullable=True)

    requested_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    requested_at = Column(DateTime, default=now_utc_naive)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approval_note = Column(Text, default="")
    rejected_reason = Column(String(255), default="")

    vacated_at = Column(DateTime, nullable=True)
    occupied_at = Column(DateTime, nullable=True)
    completed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    completed_at = Column(DateTime, nullable=True)

    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(255), default="")

    handover_json = Column(Text, default="")

    admission = relationship("IpdAdmission")
    from_bed = relationship("IpdBed", foreign_keys=[from_bed_id])
    to_bed = relationship("IpdBed", foreign_keys=[to_bed_id])
    events = relationship(
        "IpdTransferEvent",
        back_populates="transfer",
        order_by="IpdTransferEvent.id",
    )


class IpdTransferEvent(Base):
    """Append-only audit trail: one row per transfer transition."""
    __tablename__ = "ipd_transfer_events"

    id = Column(Integer, primary_key=True)
    transfer_id = Column(Integer, ForeignKey("ipd_transfers.id"),
                         nullable=False, index=True)
    action = Column(String(30), nullable=False)  # request/approve/reject/assign/...
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    bed_id = Column(Integer, nullable=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    at = Column(DateTime, default=now_utc_naive, nullable=False)
    note = Column(String(255), default="")

    transfer = relationship("IpdTransfer", back_populates="events")
