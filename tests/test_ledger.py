from __future__ import annotations

from dataclasses import replace

import pytest
from sqlalchemy import select

from knotscore import ledger, models
from knotscore.errors import Conflict, Forbidden, Invalid, NotFound
from knotscore.schemas import AttemptCreate, AttemptUpdate, FaultResult, TimeResult


def _create(catalog, who="anna", node="AMB", number=1, cs=None, fault=None, note=None):
    result = FaultResult(fault_code=fault) if fault else TimeResult(centiseconds=1500 if cs is None else cs)
    return AttemptCreate(
        competitor_id=catalog.competitors[who].id,
        node_id=catalog.nodes[node].id,
        attempt_number=number,
        result=result,
        note=note,
    )


def _audit(session, attempt_id=None):
    q = select(models.AuditLog)
    if attempt_id is not None:
        q = q.where(models.AuditLog.attempt_id == attempt_id)
    return session.execute(q.order_by(models.AuditLog.id)).scalars().all()


def test_create_first_attempt_locks_and_audits(session, catalog, judge):
    attempt = ledger.record_attempt(session, judge, _create(catalog, cs=1234, note="clean"))
    assert attempt.locked is True
    assert attempt.result_kind == "time"
    assert attempt.centiseconds == 1234
    assert attempt.fault_code is None
    assert attempt.recorded_by == "judge-1"
    assert attempt.recorded_role == "judge"

    entries = _audit(session, attempt.id)
    assert len(entries) == 1
    assert entries[0].action == "attempt_created"
    assert entries[0].previous_value is None
    assert entries[0].new_value["centiseconds"] == 1234
    assert entries[0].changed_by == "judge-1"


def test_fault_result_clears_time(session, catalog, judge):
    attempt = ledger.record_attempt(session, judge, _create(catalog, fault="KNOT"))
    assert attempt.result_kind == "fault"
    assert attempt.centiseconds is None
    assert attempt.fault_code == "KNOT"


def test_second_attempt_requires_first(session, catalog, judge):
    with pytest.raises(Conflict, match="Attempt 1 missing or unlocked"):
        ledger.record_attempt(session, judge, _create(catalog, number=2))

    ledger.record_attempt(session, judge, _create(catalog, number=1))
    second = ledger.record_attempt(session, judge, _create(catalog, number=2, cs=1400))
    assert second.attempt_number == 2

    with pytest.raises(Conflict, match="Attempt 2 already exists"):
        ledger.record_attempt(session, judge, _create(catalog, number=2))
    with pytest.raises(Conflict, match="Attempt 1 already exists"):
        ledger.record_attempt(session, judge, _create(catalog, number=1))


def test_second_attempt_rejected_when_first_unlocked(session, catalog, judge):
    # only reachable with rows written outside the ledger
    session.add(
        models.Attempt(
            event_id=catalog.event.id,
            competitor_id=catalog.competitors["anna"].id,
            node_id=catalog.nodes["AMB"].id,
            attempt_number=1,
            result_kind="time",
            centiseconds=1000,
            locked=False,
        )
    )
    session.commit()
    with pytest.raises(Conflict, match="Attempt 1 missing or unlocked"):
        ledger.record_attempt(session, judge, _create(catalog, number=2))


def test_scope_checks_come_first(session, catalog, judge):
    with pytest.raises(Forbidden, match="Category not permitted"):
        ledger.record_attempt(session, judge, _create(catalog, who="cyril"))
    with pytest.raises(Forbidden, match="Node not assigned"):
        ledger.record_attempt(session, judge, _create(catalog, node="LOD"))
    # category outranks the out-of-range time
    with pytest.raises(Forbidden):
        ledger.record_attempt(session, judge, _create(catalog, who="cyril", cs=-5))
    # lifecycle outranks the out-of-range time
    with pytest.raises(Conflict):
        ledger.record_attempt(session, judge, _create(catalog, number=2, cs=10**7))
    assert _audit(session) == []


def test_node_check_applies_to_judges_only(session, catalog, calculator):
    attempt = ledger.record_attempt(session, calculator, _create(catalog, node="LOD"))
    assert attempt.recorded_role == "calculator"


@pytest.mark.parametrize("cs", [-1, 120001])
def test_time_out_of_range(session, catalog, judge, cs):
    with pytest.raises(Invalid, match="Time out of range"):
        ledger.record_attempt(session, judge, _create(catalog, cs=cs))


@pytest.mark.parametrize("cs", [0, 120000])
def test_time_range_is_inclusive(session, catalog, judge, cs):
    assert ledger.record_attempt(session, judge, _create(catalog, cs=cs)).centiseconds == cs


def test_unknown_competitor_or_other_event(session, catalog, judge):
    payload = _create(catalog)
    with pytest.raises(NotFound):
        ledger.record_attempt(session, judge, payload.model_copy(update={"competitor_id": 9999}))
    with pytest.raises(NotFound):
        ledger.record_attempt(session, replace(judge, event_id=catalog.event.id + 1), payload)


def test_concurrent_duplicate_becomes_conflict(session, catalog, judge, monkeypatch):
    ledger.record_attempt(session, judge, _create(catalog))
    # simulate a writer that read the ledger before the first insert landed
    monkeypatch.setattr(ledger, "_attempts_for", lambda *args, **kwargs: [])
    with pytest.raises(Conflict, match="Attempt already exists"):
        ledger.record_attempt(session, judge, _create(catalog, cs=999))
    rows = session.execute(select(models.Attempt)).scalars().all()
    assert len(rows) == 1
    assert rows[0].centiseconds == 1500
    assert len(_audit(session)) == 1


def test_amend_switches_result_and_keeps_history(session, catalog, judge, calculator):
    attempt = ledger.record_attempt(session, judge, _create(catalog, cs=1500))
    amended = ledger.amend_attempt(session, calculator, attempt.id, AttemptUpdate(result=FaultResult(fault_code="DNF"), note="fixed"))
    assert amended.result_kind == "fault"
    assert amended.centiseconds is None
    assert amended.fault_code == "DNF"
    assert amended.locked is True
    assert amended.note == "fixed"

    again = ledger.amend_attempt(session, calculator, attempt.id, AttemptUpdate(result=TimeResult(centiseconds=1600)))
    assert again.fault_code is None
    assert again.centiseconds == 1600

    entries = _audit(session, attempt.id)
    assert [e.action for e in entries] == ["attempt_created", "attempt_updated", "attempt_updated"]
    assert entries[1].previous_value["centiseconds"] == 1500
    assert entries[1].new_value["fault_code"] == "DNF"
    assert entries[1].changed_role == "calculator"
    assert entries[2].previous_value["fault_code"] == "DNF"


def test_amend_rejections(session, catalog, judge, calculator):
    attempt = ledger.record_attempt(session, judge, _create(catalog))
    with pytest.raises(Forbidden):
        ledger.amend_attempt(session, judge, attempt.id, AttemptUpdate(result=TimeResult(centiseconds=1)))
    with pytest.raises(NotFound):
        ledger.amend_attempt(session, calculator, 4242, AttemptUpdate(result=TimeResult(centiseconds=1)))
    with pytest.raises(NotFound):
        ledger.amend_attempt(
            session, replace(calculator, event_id=catalog.event.id + 1), attempt.id,
            AttemptUpdate(result=TimeResult(centiseconds=1)),
        )
    with pytest.raises(Invalid):
        ledger.amend_attempt(session, calculator, attempt.id, AttemptUpdate(result=TimeResult(centiseconds=120001)))
    assert len(_audit(session)) == 1


def test_audit_rows_are_append_only(session, catalog, judge):
    attempt = ledger.record_attempt(session, judge, _create(catalog))
    entry = _audit(session, attempt.id)[0]
    entry.action = "tampered"
    with pytest.raises(RuntimeError):
        session.flush()
    session.rollback()
    session.delete(_audit(session, attempt.id)[0])
    with pytest.raises(RuntimeError):
        session.flush()


def test_issue_token_revokes_previous(session, catalog, admin):
    anna = catalog.competitors["anna"]
    first = ledger.issue_token(session, admin, anna)
    assert len(first) == 8
    assert set(first) <= set(ledger.TOKEN_ALPHABET)
    assert ledger.issue_token(session, admin, anna, regenerate=False) == first

    second = ledger.issue_token(session, admin, anna)
    assert second != first
    history = session.execute(
        select(models.QrToken).where(models.QrToken.competitor_id == anna.id).order_by(models.QrToken.id)
    ).scalars().all()
    assert [h.token for h in history] == [first, second]
    assert history[0].revoked_at is not None
    assert history[1].revoked_at is None
    actions = [e.action for e in _audit(session)]
    assert actions == ["token_generated", "token_revoked", "token_generated"]

    with pytest.raises(NotFound):
        ledger.find_competitor_by_token(session, catalog.event.id, first)
    assert ledger.find_competitor_by_token(session, catalog.event.id, f" {second} ").id == anna.id


def test_station_lookup(session, catalog, judge, admin):
    token = ledger.issue_token(session, admin, catalog.competitors["anna"])
    ledger.record_attempt(session, judge, _create(catalog))
    competitor, attempts = ledger.station_lookup(session, judge, token)
    assert competitor.display_name == "Anna"
    assert [a.attempt_number for a in attempts] == [1]

    cyril_token = ledger.issue_token(session, admin, catalog.competitors["cyril"])
    with pytest.raises(Forbidden):
        ledger.station_lookup(session, judge, cyril_token)
    with pytest.raises(Forbidden, match="no assigned nodes"):
        ledger.station_lookup(session, replace(judge, assigned_node_ids=frozenset()), token)
