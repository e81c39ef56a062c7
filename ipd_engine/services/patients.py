# FILE: ipd_engine/services/patients.py
from __future__ import annotations

from typing import List, Optional, Protocol

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ipd_engine.models.patient import Patient


class PatientDirectory(Protocol):
    """Read-only view of the patient/identity service."""

    def get_patient(self, patient_id: int) -> Optional[Patient]:
        ...

    def search_patients(self, query: str, limit: int = 20) -> List[Patient]:
        ...


class DbPatientDirectory:
    """Default directory backed by the local ``patients`` table."""

    def __init__(self, db: Session):
        self.db = db

    def get_patient(self, patient_id: int) -> Optional[Patient]:
        p = self.db.get(Patient, patient_id)
        if p is None or not p.is_active:
            return None
        return p

    def search_patients(self, query: str, limit: int = 20) -> List[Patient]:
        s = (query or "").strip()
        q = self.db.query(Patient).filter(Patient.is_active.is_(True))
        if s:
            q = q.filter(
                or_(
                    Patient.uhid.ilike(f"%{s}%"),
                    Patient.first_name.ilike(f"%{s}%"),
                    Patient.last_name.ilike(f"%{s}%"),
                    Patient.phone.ilike(f"%{s}%"),
                ))
        return q.order_by(Patient.id.desc()).limit(min(limit, 100)).all()
