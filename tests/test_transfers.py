"""
Tests for the transfer workflow.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as SchemaError

from ipd_engine.core.errors import (
    BedUnavailableError,
    ConflictError,
    Forbidden,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from ipd_engine.models import IpdBed, IpdBedAssignment, IpdTransfer
from ipd_engine.schemas.ipd import (
    AdmissionIn,
    TransferApproveIn,
    TransferAssignBedIn,
    TransferCompleteIn,
    TransferRequestIn,
)
from ipd_engine.services import admissions, bed_state, capabilities as caps, transfers
from ipd_engine.utils.timezone import now_utc_naive


def _state(session, bed):
    return bed_state.load_bed(session, bed.id).state


def _request(session, user, adm, **kw):
    kw.setdefault("reason", "clinical need")
    return transfers.request_transfer(session, user, adm.id, TransferRequestIn(**kw))


def _approve(session, user, t):
    return transfers.approve_transfer(session, user, t.id, TransferApproveIn(approve=True))


@pytest.fixture
def admitted(make_patient, admit, ward_beds):
    """Patient admitted to A1."""
    return admit(make_patient(), ward_beds["a1"])


class TestScenarios:

    def test_admit_then_duplicate_admission(self, session, admin, ward_beds, make_patient):
        patient = make_patient()
        b1 = ward_beds["a1"]
        adm = admissions.create_admission(session, admin,
                                          AdmissionIn(patient_id=patient.id, bed_id=b1.id))
        assert _state(session, b1) == "occupied"
        assert len(admissions.list_admissions(session, admin, status="admitted",
                                              patient_id=patient.id)) == 1

        with pytest.raises(ConflictError):
            admissions.create_admission(session, admin,
                                        AdmissionIn(patient_id=patient.id, bed_id=ward_beds["a2"].id))
        assert _state(session, ward_beds["a2"]) == "vacant"
        assert admissions.get_admission(session, admin, adm.id).current_bed_id == b1.id

    def test_occupied_target_then_assign_and_complete(self, session, admin, ward_beds,
                                                       make_patient, admit):
        b1, b2, b3 = ward_beds["a1"], ward_beds["a2"], ward_beds["p1"]
        adm = admit(make_patient(), b1)
        admit(make_patient("Other"), b2)

        t = _request(session, admin, adm, to_bed_id=b2.id)
        assert t.status == "requested"
        assert t.to_bed_id is None
        assert [e.action for e in t.events] == ["request", "target_unavailable"]

        t = _approve(session, admin, t)
        assert t.status == "approved"

        t = transfers.assign_transfer_bed(session, admin, t.id, TransferAssignBedIn(to_bed_id=b3.id))
        assert t.status == "approved"
        assert _state(session, b3) == "reserved"
        assert bed_state.load_bed(session, b3.id).reserved_by_transfer_id == t.id

        t = transfers.complete_transfer(session, admin, t.id, TransferCompleteIn())
        assert t.status == "completed"
        assert _state(session, b3) == "occupied"
        assert _state(session, b1) == "vacant"
        assert admissions.get_admission(session, admin, adm.id).current_bed_id == b3.id
        assert t.from_bed_id == b1.id

    def test_two_transfers_race_for_one_bed(self, session, admin, ward_beds, make_patient, admit):
        b4 = ward_beds["p1"]
        t1 = _approve(session, admin, _request(session, admin, admit(make_patient(), ward_beds["a1"])))
        t2 = _approve(session, admin, _request(session, admin, admit(make_patient("Two"), ward_beds["a2"])))

        transfers.assign_transfer_bed(session, admin, t1.id, TransferAssignBedIn(to_bed_id=b4.id))
        with pytest.raises(BedUnavailableError):
            transfers.assign_transfer_bed(session, admin, t2.id, TransferAssignBedIn(to_bed_id=b4.id))

        assert bed_state.load_bed(session, b4.id).reserved_by_transfer_id == t1.id
        loser = transfers.get_transfer(session, admin, t2.id)
        assert loser.to_bed_id is None
        assert loser.status == "approved"

    def test_interleaved_claim_loses_cas(self, session, admin, ward_beds, make_patient, admit,
                                         monkeypatch):
        """Another writer lands between our read and our write."""
        b4 = ward_beds["p1"]
        t = _approve(session, admin, _request(session, admin, admit(make_patient(), ward_beds["a1"])))
        real_cas = bed_state.compare_and_set
        raced = []

        def racing_cas(db, bed_id, *, expected_version, state, **kw):
            if not raced:
                raced.append(bed_id)
                assert real_cas(db, bed_id, expected_version=expected_version,
                                state="reserved", reserved_until=now_utc_naive() + timedelta(hours=1),
                                transfer_id=None)
            return real_cas(db, bed_id, expected_version=expected_version, state=state, **kw)

        monkeypatch.setattr(bed_state, "compare_and_set", racing_cas)
        with pytest.raises(BedUnavailableError) as exc:
            transfers.assign_transfer_bed(session, admin, t.id, TransferAssignBedIn(to_bed_id=b4.id))
        assert exc.value.state == "reserved"
        assert transfers.get_transfer(session, admin, t.id).to_bed_id is None


class TestRequest:

    def test_reason_required(self, session, admin, admitted):
        with pytest.raises(ValidationError):
            _request(session, admin, admitted, reason="   ")

    def test_reserves_named_bed(self, session, admin, admitted, ward_beds):
        before = now_utc_naive()
        t = _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id, reserve_minutes=45)
        assert t.to_bed_id == ward_beds["p1"].id
        assert t.from_bed_id == ward_beds["a1"].id
        bed = bed_state.load_bed(session, ward_beds["p1"].id)
        assert bed.state == "reserved"
        assert bed.reserved_until >= before + timedelta(minutes=45)
        assert t.reserved_until == bed.reserved_until

    def test_reservation_window_starts_at_schedule(self, session, admin, admitted, ward_beds):
        later = now_utc_naive() + timedelta(hours=3)
        t = _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id,
                     scheduled_at=later.isoformat() + "Z", reserve_minutes=30)
        assert t.scheduled_at == later
        assert t.reserved_until == later + timedelta(minutes=30)

    def test_reserve_minutes_cannot_be_null(self, session, admin, admitted, ward_beds):
        with pytest.raises(SchemaError):
            TransferRequestIn(reason="x", to_bed_id=ward_beds["p1"].id, reserve_minutes=None)

        t = _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id)
        bed = bed_state.load_bed(session, ward_beds["p1"].id)
        assert bed_state.effective_state(bed) == "reserved"
        assert t.reserve_minutes > 0

    def test_unknown_target_bed(self, session, admin, admitted):
        with pytest.raises(NotFound):
            _request(session, admin, admitted, to_bed_id=9999)
        assert session.query(IpdTransfer).count() == 0

    def test_current_bed_as_target(self, session, admin, admitted, ward_beds):
        with pytest.raises(ValidationError):
            _request(session, admin, admitted, to_bed_id=ward_beds["a1"].id)

    def test_only_for_admitted(self, session, admin, admitted):
        admissions.discharge_admission(session, admin, admitted.id)
        with pytest.raises(PreconditionFailed):
            _request(session, admin, admitted)

    def test_needs_create_capability(self, session, admitted, make_user):
        viewer = make_user("viewer@hospital.test", [caps.TRANSFER_VIEW])
        with pytest.raises(Forbidden):
            _request(session, viewer, admitted)
        assert transfers.list_transfers(session, viewer, admitted.id) == []


class TestApprove:

    def test_reject_needs_reason_and_releases_bed(self, session, admin, admitted, ward_beds):
        t = _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id)
        with pytest.raises(ValidationError):
            transfers.approve_transfer(session, admin, t.id, TransferApproveIn(approve=False))

        t = transfers.approve_transfer(session, admin, t.id, TransferApproveIn(
            approve=False, rejected_reason="no isolation capacity"))
        assert t.status == "rejected"
        assert t.rejected_reason == "no isolation capacity"
        assert _state(session, ward_beds["p1"]) == "vacant"

    def test_only_from_requested(self, session, admin, admitted):
        t = _approve(session, admin, _request(session, admin, admitted))
        with pytest.raises(PreconditionFailed):
            _approve(session, admin, t)

    def test_decided_request_wins_over_missing_reason(self, session, admin, admitted):
        t = _approve(session, admin, _request(session, admin, admitted))
        with pytest.raises(PreconditionFailed):
            transfers.approve_transfer(session, admin, t.id, TransferApproveIn(approve=False))

    def test_nurse_cannot_approve(self, session, admitted, make_user):
        nurse = make_user("nurse@hospital.test", [caps.TRANSFER_CREATE])
        t = _request(session, nurse, admitted)
        assert t.requested_by == nurse.id
        with pytest.raises(Forbidden):
            _approve(session, nurse, t)


class TestAssign:

    def test_requires_approval(self, session, admin, admitted, ward_beds):
        t = _request(session, admin, admitted)
        with pytest.raises(PreconditionFailed):
            transfers.assign_transfer_bed(session, admin, t.id,
                                          TransferAssignBedIn(to_bed_id=ward_beds["p1"].id))

    def test_reassign_releases_previous_bed(self, session, admin, admitted, ward_beds):
        t = _approve(session, admin, _request(session, admin, admitted, to_bed_id=ward_beds["a2"].id))
        assert _state(session, ward_beds["a2"]) == "reserved"

        t = transfers.assign_transfer_bed(session, admin, t.id,
                                          TransferAssignBedIn(to_bed_id=ward_beds["p1"].id))
        assert t.to_bed_id == ward_beds["p1"].id
        assert _state(session, ward_beds["a2"]) == "vacant"
        assert _state(session, ward_beds["p1"]) == "reserved"

    def test_failed_reassign_keeps_old_reservation(self, session, admin, admitted, ward_beds,
                                                   make_patient, admit):
        t = _approve(session, admin, _request(session, admin, admitted, to_bed_id=ward_beds["a2"].id))
        admit(make_patient("Other"), ward_beds["p1"])

        with pytest.raises(BedUnavailableError):
            transfers.assign_transfer_bed(session, admin, t.id,
                                          TransferAssignBedIn(to_bed_id=ward_beds["p1"].id))
        assert bed_state.load_bed(session, ward_beds["a2"].id).reserved_by_transfer_id == t.id
        assert transfers.get_transfer(session, admin, t.id).to_bed_id == ward_beds["a2"].id

    def test_schedule_moves_to_scheduled(self, session, admin, admitted, ward_beds):
        t = _approve(session, admin, _request(session, admin, admitted))
        at = now_utc_naive() + timedelta(hours=2)
        t = transfers.assign_transfer_bed(session, admin, t.id, TransferAssignBedIn(
            to_bed_id=ward_beds["p1"].id, scheduled_at=at.isoformat() + "Z", reserve_minutes=60))
        assert t.status == "scheduled"
        assert t.reserved_until == at + timedelta(minutes=60)
        assert [e.action for e in t.events][-1] == "assign"

    def test_expired_reservation_can_be_taken_over(self, session, admin, ward_beds,
                                                   make_patient, admit):
        t1 = _approve(session, admin, _request(session, admin, admit(make_patient(), ward_beds["a1"]),
                                               to_bed_id=ward_beds["p1"].id))
        t2 = _approve(session, admin, _request(session, admin, admit(make_patient("Two"), ward_beds["a2"])))
        session.query(IpdBed).filter_by(id=ward_beds["p1"].id).update(
            {"reserved_until": now_utc_naive() - timedelta(seconds=1)})
        session.commit()

        transfers.assign_transfer_bed(session, admin, t2.id,
                                      TransferAssignBedIn(to_bed_id=ward_beds["p1"].id))
        assert bed_state.load_bed(session, ward_beds["p1"].id).reserved_by_transfer_id == t2.id

        # the first transfer lost its bed; completing it now fails and changes nothing
        with pytest.raises(BedUnavailableError):
            transfers.complete_transfer(session, admin, t1.id, TransferCompleteIn())
        assert transfers.get_transfer(session, admin, t1.id).status == "approved"
        assert _state(session, ward_beds["a1"]) == "occupied"


class TestComplete:

    def test_without_target_changes_nothing(self, session, admin, admitted, ward_beds):
        t = _approve(session, admin, _request(session, admin, admitted))
        versions = {b.id: b.version for b in session.query(IpdBed)}

        with pytest.raises(PreconditionFailed):
            transfers.complete_transfer(session, admin, t.id, TransferCompleteIn())

        session.expire_all()
        assert {b.id: b.version for b in session.query(IpdBed)} == versions
        assert transfers.get_transfer(session, admin, t.id).status == "approved"
        assert admissions.get_admission(session, admin, admitted.id).current_bed_id == ward_beds["a1"].id

    def test_requires_approval(self, session, admin, admitted, ward_beds):
        t = _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id)
        with pytest.raises(PreconditionFailed):
            transfers.complete_transfer(session, admin, t.id, TransferCompleteIn())

    def test_records_times_handover_and_assignments(self, session, admin, ward_beds,
                                                    make_patient, admit):
        admitted = admit(make_patient(), ward_beds["a1"], admitted_at="2026-03-01T08:00:00")
        t = _approve(session, admin, _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id))
        t = transfers.complete_transfer(session, admin, t.id, TransferCompleteIn(
            vacated_at="2026-03-01T10:00:00+05:30",
            occupied_at="2026-03-01T10:15:00",
            handover={"iv_line": True, "notes": "stable"},
        ))
        assert t.vacated_at.isoformat() == "2026-03-01T04:30:00"
        assert t.occupied_at.isoformat() == "2026-03-01T04:45:00"
        assert json.loads(t.handover_json) == {"iv_line": True, "notes": "stable"}
        assert t.completed_by == admin.id

        rows = (session.query(IpdBedAssignment).filter_by(admission_id=admitted.id)
                .order_by(IpdBedAssignment.id).all())
        assert [(r.bed_id, r.reason) for r in rows] == [
            (ward_beds["a1"].id, "transfer_out"),
            (ward_beds["p1"].id, "transfer_in"),
        ]
        assert rows[0].to_ts == t.vacated_at
        assert t.from_assignment_id == rows[0].id
        assert t.to_assignment_id == rows[1].id

    def test_occupied_before_vacated_rejected(self, session, admin, admitted, ward_beds):
        t = _approve(session, admin, _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id))
        with pytest.raises(ValidationError):
            transfers.complete_transfer(session, admin, t.id, TransferCompleteIn(
                vacated_at="2026-03-01T10:00:00", occupied_at="2026-03-01T09:00:00"))

    def test_vacated_before_stay_began_rejected(self, session, admin, admitted, ward_beds):
        t = _approve(session, admin, _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id))
        long_ago = datetime.now(timezone.utc) - timedelta(days=10)
        with pytest.raises(ValidationError):
            transfers.complete_transfer(session, admin, t.id, TransferCompleteIn(
                vacated_at=long_ago, occupied_at=long_ago))

        assert transfers.get_transfer(session, admin, t.id).status == "approved"
        assert _state(session, ward_beds["a1"]) == "occupied"
        assert _state(session, ward_beds["p1"]) == "reserved"
        rows = session.query(IpdBedAssignment).filter_by(admission_id=admitted.id).all()
        assert [(r.bed_id, r.to_ts) for r in rows] == [(ward_beds["a1"].id, None)]

    def test_completed_is_terminal(self, session, admin, admitted, ward_beds):
        t = _approve(session, admin, _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id))
        transfers.complete_transfer(session, admin, t.id, TransferCompleteIn())
        with pytest.raises(PreconditionFailed):
            transfers.complete_transfer(session, admin, t.id, TransferCompleteIn())
        with pytest.raises(PreconditionFailed):
            transfers.cancel_transfer(session, admin, t.id)


class TestCancel:

    def test_cancel_releases_and_is_idempotent(self, session, admin, admitted, ward_beds):
        t = _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id)
        t = transfers.cancel_transfer(session, admin, t.id, reason="patient refused")
        assert t.status == "cancelled"
        assert t.cancel_reason == "patient refused"
        assert _state(session, ward_beds["p1"]) == "vacant"

        again = transfers.cancel_transfer(session, admin, t.id, reason="again")
        assert again.status == "cancelled"
        assert again.cancel_reason == "patient refused"
        assert [e.action for e in again.events].count("cancel") == 1

    def test_rejected_cannot_be_cancelled(self, session, admin, admitted):
        t = _request(session, admin, admitted)
        transfers.approve_transfer(session, admin, t.id,
                                   TransferApproveIn(approve=False, rejected_reason="no"))
        with pytest.raises(PreconditionFailed):
            transfers.cancel_transfer(session, admin, t.id)

    def test_cancel_after_reservation_lapsed_and_taken(self, session, admin, admitted, ward_beds):
        t = _request(session, admin, admitted, to_bed_id=ward_beds["p1"].id)
        session.query(IpdBed).filter_by(id=ward_beds["p1"].id).update(
            {"reserved_until": now_utc_naive() - timedelta(seconds=1)})
        session.commit()
        bed_state.occupy(session, ward_beds["p1"].id)
        session.commit()

        assert transfers.cancel_transfer(session, admin, t.id).status == "cancelled"
        assert _state(session, ward_beds["p1"]) == "occupied"


class TestList:

    def test_newest_first_with_events(self, session, admin, admitted):
        first = _request(session, admin, admitted)
        transfers.cancel_transfer(session, admin, first.id)
        second = _request(session, admin, admitted)

        rows = transfers.list_transfers(session, admin, admitted.id)
        assert [r.id for r in rows] == [second.id, first.id]
        assert [e.to_status for e in rows[1].events] == ["requested", "cancelled"]

    def test_unknown_admission(self, session, admin):
        with pytest.raises(NotFound):
            transfers.list_transfers(session, admin, 5150)
