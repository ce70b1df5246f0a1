"""
Tests: Case workflow HTTP endpoints (/api/v1/cases/..., /my-cases, /workload).

Each test builds its users and cases through the ORM factories and drives
the blueprint with the Flask test client; the actor is taken from the
X-User-Id header.
"""

import pytest

from icsr import create_app
from icsr.config import ProductionConfig
from icsr.models.audit import AuditLog

PASSWORD = "correct-horse"


def _h(user, session_id=None):
    headers = {"X-User-Id": user.id}
    if session_id:
        headers["X-Session-Id"] = session_id
    return headers


# ── App-level ────────────────────────────────────────────────────────────────


def test_health(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


def test_unknown_route_is_json_404(client):
    res = client.get("/api/v1/nothing-here")
    assert res.status_code == 404
    assert res.get_json()["error"] == "Not found"


def test_wrong_method_is_405(client, make_user, make_case):
    user = make_user("dana", role="data_entry")
    case = make_case()
    res = client.delete(f"/api/v1/cases/{case.id}/workflow", headers=_h(user))
    assert res.status_code == 405


def test_missing_actor_is_401(client, make_case):
    case = make_case()
    res = client.get(f"/api/v1/cases/{case.id}/workflow")
    assert res.status_code == 401
    assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"


def test_unknown_or_inactive_actor_is_401(client, make_user, make_case):
    case = make_case()
    ghost = make_user("ghost", is_active=False)
    assert client.get(f"/api/v1/cases/{case.id}/workflow", headers={"X-User-Id": "nobody"}).status_code == 401
    assert client.get(f"/api/v1/cases/{case.id}/workflow", headers=_h(ghost)).status_code == 401


# ── Status & actions ─────────────────────────────────────────────────────────


def test_get_workflow_details(client, make_user, make_case):
    user = make_user("dana", role="data_entry")
    case = make_case(owner=user)

    res = client.get(f"/api/v1/cases/{case.id}/workflow", headers=_h(user))

    assert res.status_code == 200
    body = res.get_json()
    assert body["case_id"] == case.id
    assert body["workflow_status"] == "Draft"
    assert body["version"] == 1


def test_get_workflow_unknown_case(client, make_user):
    user = make_user("dana", role="data_entry")
    res = client.get("/api/v1/cases/missing/workflow", headers=_h(user))
    assert res.status_code == 404
    assert res.get_json()["error"] == "Case not found"


def test_available_actions_use_assignee_flag(client, make_user, make_case):
    reviewer = make_user("rita", role="medical_reviewer")
    other = make_user("otto", role="medical_reviewer")
    case = make_case("In Medical Review", assignee=reviewer)

    mine = client.get(f"/api/v1/cases/{case.id}/workflow/actions", headers=_h(reviewer)).get_json()
    theirs = client.get(f"/api/v1/cases/{case.id}/workflow/actions", headers=_h(other)).get_json()

    assert {a["to"] for a in mine["actions"]} == {"Medical Review Complete", "Rejected"}
    reject = next(a for a in mine["actions"] if a["to"] == "Rejected")
    assert reject["requires_comment"] is True
    assert theirs["actions"] == []


def test_statuses_endpoint(client, make_user):
    user = make_user("dana")
    body = client.get("/api/v1/workflow/statuses", headers=_h(user)).get_json()
    assert len(body["statuses"]) == 12
    assert body["statuses"][0] == {"status": "Draft", "label": "Draft",
                                   "description": "Case is being created or edited"}
    assert len(body["transitions"]) == 11


# ── Transition ───────────────────────────────────────────────────────────────


def test_transition_success(client, make_user, make_case):
    user = make_user("dana", role="data_entry")
    case = make_case(owner=user)

    res = client.post(
        f"/api/v1/cases/{case.id}/workflow/transition",
        json={"to_status": "Data Entry Complete", "comment": "Done"},
        headers=_h(user, session_id="sess-9"),
    )

    assert res.status_code == 200
    body = res.get_json()
    assert body["success"] is True
    assert body["case"]["id"] == case.id
    assert body["case"]["workflow_status"] == "Data Entry Complete"
    assert AuditLog.query.filter_by(action_type="workflow_transition").one().session_id == "sess-9"


def test_transition_requires_to_status(client, make_user, make_case):
    user = make_user("dana", role="data_entry")
    case = make_case()
    res = client.post(f"/api/v1/cases/{case.id}/workflow/transition", json={}, headers=_h(user))
    assert res.status_code == 400


def test_transition_rejects_non_string_fields(client, make_user, make_case):
    reviewer = make_user("rita", role="medical_reviewer")
    case = make_case("In Medical Review", assignee=reviewer)
    url = f"/api/v1/cases/{case.id}/workflow/transition"

    numeric_comment = client.post(url, json={"to_status": "Rejected", "comment": 123}, headers=_h(reviewer))
    numeric_target = client.post(url, json={"to_status": 5}, headers=_h(reviewer))
    list_assignee = client.post(url, json={"to_status": "Rejected", "comment": "x", "assign_to": ["u-1"]},
                                headers=_h(reviewer))

    assert numeric_comment.status_code == 400
    assert numeric_comment.get_json()["details"] == {"comment": "must be a string"}
    assert numeric_target.status_code == 400
    assert list_assignee.status_code == 400
    assert client.get(f"/api/v1/cases/{case.id}/workflow", headers=_h(reviewer)).get_json()["workflow_status"] \
        == "In Medical Review"


def test_transition_failures_map_to_status_codes(client, make_user, make_case):
    clerk = make_user("dana", role="data_entry")
    reviewer = make_user("rita", role="medical_reviewer")
    draft = make_case()
    in_review = make_case("In Medical Review", assignee=reviewer)

    cases = [
        (clerk, "missing", {"to_status": "Data Entry Complete"}, 404, "Case not found"),
        (clerk, draft.id, {"to_status": "Approved"}, 409, "Invalid transition from Draft to Approved"),
        (reviewer, draft.id, {"to_status": "Data Entry Complete"}, 403, "Permission denied"),
        (reviewer, in_review.id, {"to_status": "Rejected"}, 422, "Comment is required for this action"),
    ]
    for user, case_id, payload, status, error in cases:
        res = client.post(f"/api/v1/cases/{case_id}/workflow/transition", json=payload, headers=_h(user))
        assert res.status_code == status, payload
        assert res.get_json()["error"] == error


def test_transition_with_signature(client, make_user, make_case):
    approver = make_user("quinn", role="qc_reviewer")
    case = make_case("QC Complete")
    url = f"/api/v1/cases/{case.id}/workflow/transition"

    bad = client.post(url, json={"to_status": "Approved", "signature": {"password": "nope", "meaning": "ok"}},
                      headers=_h(approver))
    good = client.post(url, json={"to_status": "Approved",
                                  "signature": {"password": PASSWORD, "meaning": "I approve"}},
                       headers=_h(approver))

    assert bad.status_code == 422
    assert bad.get_json()["error"] == "Invalid signature"
    assert good.status_code == 200
    assert good.get_json()["case"]["workflow_status"] == "Approved"


def test_transition_with_assignment(client, make_user, make_case):
    manager = make_user("mona", role="manager")
    reviewer = make_user("rita", role="medical_reviewer")
    case = make_case("Data Entry Complete")

    res = client.post(f"/api/v1/cases/{case.id}/workflow/transition",
                      json={"to_status": "In Medical Review", "assign_to": reviewer.id},
                      headers=_h(manager))
    assert res.status_code == 200
    assert res.get_json()["case"]["current_assignee"] == reviewer.id

    current = client.get(f"/api/v1/cases/{case.id}/assignments/current", headers=_h(manager)).get_json()
    assert current["assigned_to"] == reviewer.id


# ── Assignments ──────────────────────────────────────────────────────────────


def test_assign_and_reassign(client, make_user, make_case):
    manager = make_user("mona", role="manager")
    first = make_user("rita", role="medical_reviewer")
    second = make_user("otto", role="medical_reviewer")
    case = make_case()

    res = client.post(f"/api/v1/cases/{case.id}/assignments",
                      json={"assigned_to": first.id, "priority": "urgent", "due_date": "2026-02-01"},
                      headers=_h(manager))
    assert res.status_code == 201
    assert res.get_json()["priority"] == "urgent"

    res = client.post(f"/api/v1/cases/{case.id}/assignments/reassign",
                      json={"assigned_to": second.id, "reason": "Workload"}, headers=_h(manager))
    assert res.status_code == 201

    history = client.get(f"/api/v1/cases/{case.id}/assignments", headers=_h(manager)).get_json()
    assert [a["assigned_to"] for a in history] == [second.id, first.id]


def test_assign_errors(client, make_user, make_case):
    manager = make_user("mona", role="manager")
    clerk = make_user("dana", role="data_entry")
    case = make_case()
    url = f"/api/v1/cases/{case.id}/assignments"

    assert client.post(url, json={}, headers=_h(manager)).status_code == 400
    assert client.post(url, json={"assigned_to": "u-1", "due_date": "soon"}, headers=_h(manager)).status_code == 400
    assert client.post(url, json={"assigned_to": "u-1", "priority": "asap"}, headers=_h(manager)).status_code == 422
    assert client.post(url, json={"assigned_to": "u-1"}, headers=_h(clerk)).status_code == 403
    assert client.post("/api/v1/cases/missing/assignments", json={"assigned_to": "u-1"},
                       headers=_h(manager)).status_code == 404


# ── Comments & notes ─────────────────────────────────────────────────────────


def test_comments(client, make_user, make_case):
    user = make_user("dana", role="data_entry")
    case = make_case()
    url = f"/api/v1/cases/{case.id}/comments"

    res = client.post(url, json={"content": "Query for reporter", "comment_type": "query",
                                 "mentions": ["u-2"]}, headers=_h(user))
    assert res.status_code == 201
    assert res.get_json()["mentions"] == ["u-2"]
    assert client.post(url, json={"content": " "}, headers=_h(user)).status_code == 400

    listed = client.get(url, headers=_h(user)).get_json()
    assert [c["content"] for c in listed] == ["Query for reporter"]


def test_notes_visibility_and_resolution(client, make_user, make_case):
    alice = make_user("alice", role="data_entry")
    bob = make_user("bob", role="data_entry")
    case = make_case()
    url = f"/api/v1/cases/{case.id}/notes"

    client.post(url, json={"content": "private"}, headers=_h(alice))
    team = client.post(url, json={"content": "for everyone", "visibility": "team"}, headers=_h(alice)).get_json()

    assert [n["content"] for n in client.get(url, headers=_h(bob)).get_json()] == ["for everyone"]
    assert len(client.get(url, headers=_h(alice)).get_json()) == 2

    first = client.post(f"/api/v1/notes/{team['id']}/resolve", headers=_h(bob))
    again = client.post(f"/api/v1/notes/{team['id']}/resolve", headers=_h(bob))
    missing = client.post("/api/v1/notes/9999/resolve", headers=_h(bob))

    assert first.status_code == 200
    assert first.get_json()["resolved_by"] == bob.id
    assert again.status_code == 409
    assert again.get_json()["error"] == "Note is already resolved"
    assert missing.status_code == 404


# ── History, queues, due dates ───────────────────────────────────────────────


def test_history(client, make_user, make_case):
    user = make_user("dana", role="data_entry")
    case = make_case(owner=user)
    client.post(f"/api/v1/cases/{case.id}/workflow/transition",
                json={"to_status": "Data Entry Complete"}, headers=_h(user))

    history = client.get(f"/api/v1/cases/{case.id}/history", headers=_h(user)).get_json()

    assert len(history) == 1
    assert history[0]["from_status"] == "Draft"
    assert history[0]["to_status"] == "Data Entry Complete"
    assert history[0]["username"] == "dana"


def test_due_date_endpoint(client, make_user, make_case):
    user = make_user("dana")
    case = make_case(due_date_type="non_expedited")
    body = client.get(f"/api/v1/cases/{case.id}/due-date", headers=_h(user)).get_json()
    assert body["due_date"] == "2026-04-05"
    assert client.get("/api/v1/cases/missing/due-date", headers=_h(user)).status_code == 404


def test_my_cases(client, make_user, make_case):
    manager = make_user("mona", role="manager")
    reviewer = make_user("rita", role="medical_reviewer")
    case = make_case()
    client.post(f"/api/v1/cases/{case.id}/assignments", json={"assigned_to": reviewer.id}, headers=_h(manager))

    rows = client.get("/api/v1/my-cases", headers=_h(reviewer)).get_json()
    assert [r["case_id"] for r in rows] == [case.id]
    assert client.get("/api/v1/my-cases", headers=_h(manager)).get_json() == []


def test_workload_requires_reports_permission(client, make_user, make_case):
    manager = make_user("mona", role="manager")
    clerk = make_user("dana", role="data_entry")
    make_case()

    ok = client.get("/api/v1/workload", headers=_h(manager))
    denied = client.get("/api/v1/workload", headers=_h(clerk))

    assert ok.status_code == 200
    assert ok.get_json()["unassigned_cases"] == 1
    assert denied.status_code == 403


# ── Configuration ────────────────────────────────────────────────────────────


def test_production_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        create_app("production")


def test_production_requires_secret_key(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://db.internal/icsr")
    monkeypatch.delenv("SECRET_KEY", raising=False)
    with pytest.raises(RuntimeError, match="SECRET_KEY"):
        create_app("production")


def test_production_config_rewrites_heroku_scheme(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://db.internal/icsr")
    monkeypatch.setenv("SECRET_KEY", "s3cret")
    assert ProductionConfig().SQLALCHEMY_DATABASE_URI == "postgresql://db.internal/icsr"
