"""
Tests for the ward / room / bed registry and bed rates.
"""
from datetime import date, timedelta

import pytest

from ipd_engine.core.errors import (
    BedUnavailableError,
    ConflictError,
    Forbidden,
    NotFound,
    ValidationError,
)
from ipd_engine.models import AuditLog, IpdBed
from ipd_engine.schemas.ipd import (
    BedIn,
    BedRateIn,
    BedRateUpdateIn,
    BedUpdateIn,
    RoomIn,
    RoomUpdateIn,
    WardIn,
    WardUpdateIn,
)
from ipd_engine.services import admissions, bed_state, capabilities as caps, inventory
from ipd_engine.utils.timezone import now_utc_naive


class TestWardsRoomsBeds:

    def test_create_hierarchy_writes_audit(self, session, admin):
        w = inventory.create_ward(session, admin, WardIn(name=" North ", code="N1", floor="2"))
        r = inventory.create_room(session, admin, RoomIn(ward_id=w.id, number="12", type="icu ward"))
        b = inventory.create_bed(session, admin, BedIn(room_id=r.id, code="N1-12-A"))

        assert w.name == "North"
        assert r.type == "ICU"
        assert b.state == "vacant"
        assert b.version == 0

        actions = [(a.table_name, a.action) for a in session.query(AuditLog).order_by(AuditLog.id)]
        assert actions == [
            ("ipd_wards", "CREATE"),
            ("ipd_rooms", "CREATE"),
            ("ipd_beds", "CREATE"),
        ]

    def test_duplicate_ward_code_is_conflict(self, session, admin):
        inventory.create_ward(session, admin, WardIn(name="North", code="N1"))
        with pytest.raises(ConflictError):
            inventory.create_ward(session, admin, WardIn(name="South", code="N1"))

    def test_room_in_unknown_ward(self, session, admin):
        with pytest.raises(NotFound):
            inventory.create_room(session, admin, RoomIn(ward_id=999, number="1"))

    def test_list_hides_inactive(self, session, admin, ward_beds):
        inventory.update_bed(session, admin, ward_beds["a2"].id, BedUpdateIn(is_active=False))
        codes = [b.code for b in inventory.list_beds(session, admin, room_id=ward_beds["general"].id)]
        assert codes == ["A1"]
        codes = [b.code for b in inventory.list_beds(session, admin, room_id=ward_beds["general"].id,
                                                    include_inactive=True)]
        assert codes == ["A1", "A2"]

    def test_filter_beds_by_ward(self, session, admin, ward_beds, make_ward, make_room, make_bed):
        other = make_ward(name="Ward B", code="WB")
        make_bed(make_room(other.id, number="1").id, "B1")
        codes = [b.code for b in inventory.list_beds(session, admin, ward_id=ward_beds["ward"].id)]
        assert codes == ["A1", "A2", "P1"]

    def test_update_room_normalizes_type(self, session, admin, ward_beds):
        r = inventory.update_room(session, admin, ward_beds["general"].id,
                                  RoomUpdateIn(type="semi-private"))
        assert r.type == "Semi Private"

    def test_update_ward(self, session, admin, ward_beds):
        w = inventory.update_ward(session, admin, ward_beds["ward"].id, WardUpdateIn(floor="3"))
        assert w.floor == "3"
        assert w.code == "WA"

    def test_cannot_deactivate_occupied_bed(self, session, admin, ward_beds):
        bed_state.occupy(session, ward_beds["a1"].id)
        session.commit()
        with pytest.raises(ConflictError):
            inventory.update_bed(session, admin, ward_beds["a1"].id, BedUpdateIn(is_active=False))

    def test_claim_between_check_and_write_blocks_deactivation(self, session, admin, ward_beds,
                                                               monkeypatch):
        real_state = bed_state.effective_state
        claimed = []

        def claim_then_answer(bed, *args, **kw):
            if claimed:
                return real_state(bed, *args, **kw)
            before = real_state(bed, *args, **kw)
            claimed.append(bed.id)
            bed_state.reserve(session, bed.id, until=now_utc_naive() + timedelta(hours=1))
            return before

        monkeypatch.setattr(bed_state, "effective_state", claim_then_answer)
        with pytest.raises(ConflictError):
            inventory.update_bed(session, admin, ward_beds["a2"].id, BedUpdateIn(is_active=False))

        monkeypatch.undo()
        assert claimed == [ward_beds["a2"].id]
        assert bed_state.load_bed(session, ward_beds["a2"].id).is_active

    def test_delete_unreferenced_bed(self, session, admin, ward_beds):
        inventory.delete_bed(session, admin, ward_beds["a2"].id)
        with pytest.raises(NotFound):
            inventory.get_bed(session, admin, ward_beds["a2"].id)

    def test_delete_referenced_ward_fails(self, session, admin, ward_beds, make_patient, admit):
        adm = admit(make_patient(), ward_beds["a1"])
        admissions.discharge_admission(session, admin, adm.id)

        with pytest.raises(ConflictError):
            inventory.delete_ward(session, admin, ward_beds["ward"].id)
        with pytest.raises(ConflictError):
            inventory.delete_bed(session, admin, ward_beds["a1"].id)
        # the untouched room can still go
        inventory.delete_room(session, admin, ward_beds["private"].id)

    def test_delete_reserved_bed_fails(self, session, admin, ward_beds):
        bed_state.reserve(session, ward_beds["a2"].id,
                          until=now_utc_naive() + timedelta(hours=1))
        session.commit()
        with pytest.raises(ConflictError):
            inventory.delete_bed(session, admin, ward_beds["a2"].id)


class TestSetBedState:

    def test_manual_override_is_audited(self, session, admin, ward_beds):
        b = inventory.set_bed_state(session, admin, ward_beds["a1"].id,
                                    state="preoccupied", note="deep clean")
        assert b.state == "preoccupied"
        log = session.query(AuditLog).filter(AuditLog.action == "STATE").one()
        assert log.old_values["state"] == "vacant"
        assert log.new_values["state"] == "preoccupied"

    def test_occupied_bed_is_rejected(self, session, admin, ward_beds):
        bed_state.occupy(session, ward_beds["a1"].id)
        session.commit()
        with pytest.raises(BedUnavailableError):
            inventory.set_bed_state(session, admin, ward_beds["a1"].id, state="vacant")
        assert session.query(AuditLog).filter(AuditLog.action == "STATE").count() == 0

    def test_naive_hold_time_is_hospital_local(self, session, admin, ward_beds):
        local = (now_utc_naive() + timedelta(hours=10)).replace(microsecond=0)
        b = inventory.set_bed_state(session, admin, ward_beds["a1"].id, state="reserved",
                                    reserved_until=local.isoformat())
        # Asia/Kolkata is UTC+05:30
        assert b.reserved_until == local - timedelta(hours=5, minutes=30)

    def test_bad_timestamp(self, session, admin, ward_beds):
        with pytest.raises(ValidationError):
            inventory.set_bed_state(session, admin, ward_beds["a1"].id, state="reserved",
                                    reserved_until="tomorrow-ish")


class TestBoard:

    def test_counts_use_effective_state(self, session, admin, ward_beds):
        bed_state.occupy(session, ward_beds["a1"].id)
        bed_state.reserve(session, ward_beds["a2"].id,
                          until=now_utc_naive() + timedelta(minutes=5))
        bed_state.reserve(session, ward_beds["p1"].id,
                          until=now_utc_naive() + timedelta(minutes=5))
        session.commit()
        session.query(IpdBed).filter_by(id=ward_beds["p1"].id).update(
            {"reserved_until": now_utc_naive() - timedelta(minutes=1)})
        session.commit()

        board = inventory.bedboard_snapshot(session, admin)
        assert board["counts"] == {"vacant": 1, "occupied": 1, "reserved": 1, "preoccupied": 0}
        p1 = next(b for b in board["beds"] if b["code"] == "P1")
        assert p1["state"] == "vacant"
        assert p1["ward_name"] == "Ward A"

    def test_tree(self, session, admin, ward_beds):
        tree = inventory.ward_room_bed_tree(session, admin)
        ward = tree["wards"][0]
        assert ward["code"] == "WA"
        assert [r["number"] for r in ward["rooms"]] == ["101", "201"]
        assert [b["code"] for b in ward["rooms"][0]["beds"]] == ["A1", "A2"]


class TestBedRates:

    def test_crud_and_resolve(self, session, admin):
        r = inventory.create_bed_rate(session, admin, BedRateIn(
            room_type="general ward", daily_rate="1500.00", effective_from=date(2025, 1, 1)))
        assert r.room_type == "General"

        hit = inventory.resolve_bed_rate(session, admin, room_type="General",
                                         on_date=date(2025, 6, 1))
        assert hit.id == r.id
        assert inventory.resolve_bed_rate(session, admin, room_type="General",
                                          on_date=date(2024, 12, 31)) is None

        inventory.update_bed_rate(session, admin, r.id,
                                  BedRateUpdateIn(effective_to=date(2025, 3, 31)))
        assert inventory.resolve_bed_rate(session, admin, room_type="General",
                                          on_date=date(2025, 6, 1)) is None

        inventory.delete_bed_rate(session, admin, r.id)
        assert inventory.list_bed_rates(session, admin) == []

    def test_update_rejects_inverted_window(self, session, admin):
        r = inventory.create_bed_rate(session, admin, BedRateIn(
            room_type="ICU", daily_rate="5000", effective_from=date(2025, 1, 1)))
        with pytest.raises(ValidationError):
            inventory.update_bed_rate(session, admin, r.id,
                                      BedRateUpdateIn(effective_to=date(2024, 1, 1)))


class TestCapabilities:

    def test_viewer_cannot_manage(self, session, make_user, ward_beds):
        viewer = make_user("viewer@hospital.test", [caps.VIEW])
        assert len(inventory.list_beds(session, viewer)) == 3
        with pytest.raises(Forbidden):
            inventory.create_ward(session, viewer, WardIn(name="X", code="X"))
        with pytest.raises(Forbidden):
            inventory.set_bed_state(session, viewer, ward_beds["a1"].id, state="preoccupied")

    def test_no_permission_cannot_view(self, session, make_user):
        nobody = make_user("nobody@hospital.test")
        with pytest.raises(Forbidden):
            inventory.list_wards(session, nobody)

    def test_checker_can_be_replaced(self, session, admin):
        class DenyAll:
            def allowed(self, user, code):
                return False

        previous = caps.get_capability_checker()
        caps.set_capability_checker(DenyAll())
        try:
            with pytest.raises(Forbidden) as exc:
                inventory.list_wards(session, admin)
            assert exc.value.capability == caps.VIEW
        finally:
            caps.set_capability_checker(previous)
