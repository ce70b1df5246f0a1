"""
Tests: Case collaboration around the workflow.

Assignments (assign / reassign / demotion), comments, notes with
visibility and one-time resolution, the "my cases" queue, workload
summary and due-date arithmetic.
"""

from datetime import date

import pytest

from icsr.core.exceptions import ConflictError, NotFoundError, PermissionDenied, ValidationError
from icsr.models import db as _db
from icsr.models.audit import AuditLog
from icsr.models.case import Case
from icsr.models.notification import Notification
from icsr.models.workflow import CaseAssignment
from icsr.services.contracts import Actor


def _actor(user):
    return Actor(id=user.id, username=user.username)


# ── Assignments ──────────────────────────────────────────────────────────────


def test_assign_case_sets_assignee_audits_and_notifies(service, make_user, make_case):
    manager = make_user("mona", role="manager")
    reviewer = make_user("rita", role="medical_reviewer")
    case = make_case()

    assignment = service.assign_case(
        case.id, reviewer.id, _actor(manager), manager.permissions,
        due_date="2026-02-01", priority="high", notes="Please prioritise",
    )

    assert assignment.is_current is True
    assert assignment.priority == "high"
    assert assignment.due_date == date(2026, 2, 1)
    assert _db.session.get(Case, case.id).current_assignee == reviewer.id

    row = AuditLog.query.filter_by(action_type="case_assign").one()
    assert row.new_value == reviewer.id
    assert row.details["previous_assignee"] is None
    assert Notification.query.filter_by(user_id=reviewer.id, type="assignment").count() == 1


def test_assign_case_without_permission_is_denied(service, make_user, make_case):
    clerk = make_user("dana", role="data_entry")
    case = make_case()

    with pytest.raises(PermissionDenied) as exc:
        service.assign_case(case.id, clerk.id, _actor(clerk), clerk.permissions)

    assert exc.value.user_id == clerk.id
    assert exc.value.permission == "case.assign"

    assert CaseAssignment.query.count() == 0
    assert AuditLog.query.filter_by(action_type="permission_denied").count() == 1


def test_assign_unknown_case_raises_not_found(service, make_user):
    manager = make_user("mona", role="manager")
    with pytest.raises(NotFoundError):
        service.assign_case("missing", "u-1", _actor(manager), manager.permissions)


def test_assign_with_bad_priority_writes_nothing(service, make_user, make_case):
    manager = make_user("mona", role="manager")
    case = make_case()

    with pytest.raises(ValidationError):
        service.assign_case(case.id, "u-1", _actor(manager), manager.permissions, priority="asap")

    assert CaseAssignment.query.count() == 0
    assert _db.session.get(Case, case.id).current_assignee is None


def test_reassign_demotes_previous_assignment(service, make_user, make_case):
    manager = make_user("mona", role="manager")
    first = make_user("rita", role="medical_reviewer")
    second = make_user("otto", role="medical_reviewer")
    case = make_case()

    service.assign_case(case.id, first.id, _actor(manager), manager.permissions)
    service.reassign_case(case.id, second.id, "Rita on leave", _actor(manager), manager.permissions)

    history = service.get_assignment_history(case.id)
    assert [a.assigned_to for a in history] == [second.id, first.id]
    assert [a.is_current for a in history] == [True, False]
    assert service.get_current_assignment(case.id).assigned_to == second.id
    assert CaseAssignment.query.filter_by(case_id=case.id, is_current=True).count() == 1

    row = AuditLog.query.filter_by(action_type="case_reassign").one()
    assert row.old_value == first.id
    assert row.new_value == second.id
    assert row.details["reason"] == "Rita on leave"


def test_create_assignment_keeps_one_current_row(service, make_user, make_case):
    case = make_case()
    service.create_assignment(case.id, "u-1", "u-boss")
    service.create_assignment(case.id, "u-2", "u-boss", priority="urgent")

    current = CaseAssignment.query.filter_by(case_id=case.id, is_current=True).all()
    assert [a.assigned_to for a in current] == ["u-2"]
    assert len(service.get_assignment_history(case.id)) == 2


# ── Comments ─────────────────────────────────────────────────────────────────


def test_comments_are_listed_oldest_first_with_mentions(service, make_case):
    case = make_case()
    service.add_comment(case.id, "First", "u-1")
    second = service.add_comment(case.id, "Second @bob", "u-2", comment_type="query",
                                 mentions=["u-bob", "u-al", "u-bob"])

    assert second.mentions == ["u-al", "u-bob"]
    assert [c.content for c in service.get_comments(case.id)] == ["First", "Second @bob"]


def test_comment_validation(service, make_case):
    case = make_case()
    with pytest.raises(ValidationError):
        service.add_comment(case.id, "   ", "u-1")
    with pytest.raises(ValidationError):
        service.add_comment(case.id, "text", "u-1", comment_type="shout")
    with pytest.raises(NotFoundError):
        service.add_comment("missing", "text", "u-1")


# ── Notes ────────────────────────────────────────────────────────────────────


def test_notes_visibility(service, make_case):
    case = make_case()
    service.add_note(case.id, "mine", "u-1")
    service.add_note(case.id, "theirs", "u-2")
    service.add_note(case.id, "shared", "u-2", visibility="team")

    assert sorted(n.content for n in service.get_notes(case.id, "u-1")) == ["mine", "shared"]
    assert sorted(n.content for n in service.get_notes(case.id, "u-2")) == ["shared", "theirs"]


def test_invalid_note_visibility(service, make_case):
    case = make_case()
    with pytest.raises(ValidationError):
        service.add_note(case.id, "x", "u-1", visibility="public")


def test_resolve_note_once(service, make_user, make_case):
    user = make_user("dana", role="data_entry")
    case = make_case()
    note = service.add_note(case.id, "Check dose", user.id, visibility="team")

    resolved = service.resolve_note(note.id, _actor(user))

    assert resolved.is_resolved is True
    assert resolved.resolved_by == user.id
    assert AuditLog.query.filter_by(action_type="note_resolve").count() == 1

    with pytest.raises(ConflictError, match="Note is already resolved"):
        service.resolve_note(note.id, _actor(user))


def test_resolve_unknown_note(service, make_user):
    user = make_user("dana")
    with pytest.raises(NotFoundError):
        service.resolve_note(4242, _actor(user))


def test_disabled_notes_degrade_quietly(app, make_case):
    from icsr.services.workflow_service import WorkflowService
    service = WorkflowService.from_config(app.config, capabilities={"notes": False})
    case = make_case()
    assert service.add_note(case.id, "ignored", "u-1") is None
    assert service.get_notes(case.id, "u-1") == []


# ── Work queues ──────────────────────────────────────────────────────────────


def test_my_cases_ordering(service, make_case):
    today = date(2026, 3, 1)
    specs = [
        ("B", date(2026, 3, 10), "normal"),
        ("D", None, "urgent"),
        ("E", date(2026, 3, 5), "high"),
        ("A", date(2026, 2, 20), "low"),
        ("C", date(2026, 3, 5), "urgent"),
    ]
    for label, due, priority in specs:
        case = make_case(case_number=f"CASE-{label}", due_date=due)
        service.create_assignment(case.id, "u-me", "u-boss", priority=priority)

    other = make_case(case_number="CASE-X")
    service.create_assignment(other.id, "u-someone-else", "u-boss")
    moved = make_case(case_number="CASE-Y")
    service.create_assignment(moved.id, "u-me", "u-boss")
    service.create_assignment(moved.id, "u-someone-else", "u-boss")

    rows = service.get_my_cases("u-me", today=today)

    assert [r["case_number"] for r in rows] == ["CASE-A", "CASE-C", "CASE-E", "CASE-B", "CASE-D"]
    assert rows[0]["is_overdue"] is True
    assert all(r["is_overdue"] is False for r in rows[1:])


def test_my_cases_respects_limit(service, make_case):
    for _ in range(3):
        case = make_case()
        service.create_assignment(case.id, "u-me", "u-boss")
    assert len(service.get_my_cases("u-me", limit=2)) == 2


def test_workload_summary(service, make_user, make_case):
    manager = make_user("mona", role="manager")
    r1 = make_user("rita", role="medical_reviewer")
    r2 = make_user("otto", role="medical_reviewer")
    c1 = make_case(due_date=date(2026, 2, 1))
    c2 = make_case(due_date=date(2026, 4, 1))
    c3 = make_case()
    make_case()
    make_case("Acknowledged")

    for case, user in ((c1, r1), (c2, r1), (c3, r2)):
        service.assign_case(case.id, user.id, _actor(manager), manager.permissions)

    summary = service.get_workload_summary(today=date(2026, 3, 1))

    assert [u["user_id"] for u in summary["users"]] == [r1.id, r2.id]
    first = summary["users"][0]
    assert first["username"] == "rita"
    assert first["total"] == 2
    assert first["overdue"] == 1
    assert first["by_status"] == {"Draft": 2}
    assert first["by_priority"] == {"normal": 2}
    assert summary["unassigned_cases"] == 1
    assert summary["total_overdue"] == 1


# ── Due dates ────────────────────────────────────────────────────────────────


def test_calculate_due_date():
    from icsr.services.workflow_service import WorkflowService
    assert WorkflowService.calculate_due_date(date(2026, 1, 5), "expedited") == date(2026, 1, 20)
    assert WorkflowService.calculate_due_date("2026-01-05", "non_expedited") == date(2026, 4, 5)
    assert WorkflowService.calculate_due_date("20260105", "expedited") == date(2026, 1, 20)


def test_calculate_due_date_rejects_bad_input():
    from icsr.services.workflow_service import WorkflowService
    with pytest.raises(ValidationError):
        WorkflowService.calculate_due_date("2026-01-05", "whenever")
    with pytest.raises(ValidationError):
        WorkflowService.calculate_due_date("not a date", "expedited")


def test_due_date_info(service, make_case):
    case = make_case(due_date_type="expedited", receipt_date=date(2026, 1, 5))

    before = service.get_due_date_info(case.id, today=date(2026, 1, 18))
    after = service.get_due_date_info(case.id, today=date(2026, 1, 25))

    assert before == {"due_date": "2026-01-20", "due_date_type": "expedited",
                      "days_remaining": 2, "is_overdue": False}
    assert after["days_remaining"] == -5
    assert after["is_overdue"] is True


def test_due_date_info_without_rule(service, make_case):
    case = make_case()
    info = service.get_due_date_info(case.id)
    assert info["due_date"] is None
    assert info["is_overdue"] is False
    assert service.get_due_date_info("missing") is None
