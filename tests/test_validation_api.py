"""
Tests: Validation HTTP endpoints (/api/v1/cases/<id>/validation, /api/v1/validation/...).
"""

import pytest

from icsr.services.validation_engine import ValidationEngineService


def _h(user):
    return {"X-User-Id": user.id}


@pytest.fixture()
def admin(make_user):
    return make_user("root", role="admin")


def _create(client, user, **overrides):
    payload = {
        "rule_code": "CUST-001",
        "rule_name": "Narrative required",
        "validation_expression": "not isEmpty(narrative)",
        "error_message": "Narrative is required",
        "severity": "error",
        "field_path": "narrative",
    }
    payload.update(overrides)
    return client.post("/api/v1/validation/rules", json=payload, headers=_h(user))


# ── Rule CRUD ────────────────────────────────────────────────────────────────


def test_create_and_get_rule(client, admin):
    res = _create(client, admin)
    assert res.status_code == 201
    rule = res.get_json()
    assert rule["rule_code"] == "CUST-001"
    assert rule["is_system"] is False

    fetched = client.get(f"/api/v1/validation/rules/{rule['id']}", headers=_h(admin))
    assert fetched.status_code == 200
    assert fetched.get_json()["rule_name"] == "Narrative required"
    assert client.get("/api/v1/validation/rules/999", headers=_h(admin)).status_code == 404


def test_rule_writes_need_system_configure(client, make_user):
    manager = make_user("mona", role="manager")
    res = _create(client, manager)
    assert res.status_code == 403


def test_create_rule_errors(client, admin):
    assert _create(client, admin).status_code == 201

    duplicate = _create(client, admin)
    assert duplicate.status_code == 409
    assert duplicate.get_json()["error"] == "Rule code CUST-001 already exists"

    bad = _create(client, admin, rule_code="CUST-002", validation_expression="narrative.strip()")
    assert bad.status_code == 422
    assert bad.get_json()["error"].startswith("Invalid expression: ")

    missing = client.post("/api/v1/validation/rules", json={"rule_code": "X"}, headers=_h(admin))
    assert missing.status_code == 422
    assert "rule_name" in missing.get_json()["details"]


def test_update_toggle_delete_custom_rule(client, admin):
    rule_id = _create(client, admin).get_json()["id"]
    url = f"/api/v1/validation/rules/{rule_id}"

    updated = client.put(url, json={"severity": "warning"}, headers=_h(admin))
    assert updated.status_code == 200
    assert updated.get_json()["severity"] == "warning"

    toggled = client.post(f"{url}/toggle", json={"is_active": False}, headers=_h(admin))
    assert toggled.get_json()["is_active"] is False
    assert client.post(f"{url}/toggle", json={}, headers=_h(admin)).status_code == 400

    assert client.delete(url, headers=_h(admin)).get_json() == {"deleted": True}
    assert client.delete(url, headers=_h(admin)).status_code == 404


def test_system_rule_protection(client, admin):
    ValidationEngineService().initialize_system_rules()
    rules = client.get("/api/v1/validation/rules?is_system=true", headers=_h(admin)).get_json()
    assert len(rules) == 10
    rule_id = rules[0]["id"]

    edit = client.put(f"/api/v1/validation/rules/{rule_id}", json={"rule_name": "Mine now"}, headers=_h(admin))
    delete = client.delete(f"/api/v1/validation/rules/{rule_id}", headers=_h(admin))
    toggle = client.post(f"/api/v1/validation/rules/{rule_id}/toggle", json={"is_active": False},
                         headers=_h(admin))

    assert edit.status_code == 422
    assert edit.get_json()["error"] == "System rules cannot be edited"
    assert delete.status_code == 422
    assert delete.get_json()["error"] == "System rules cannot be deleted"
    assert toggle.status_code == 200


def test_rule_list_filters(client, admin):
    _create(client, admin)
    _create(client, admin, rule_code="CUST-002", severity="info", rule_name="Other")

    infos = client.get("/api/v1/validation/rules?severity=info", headers=_h(admin)).get_json()
    found = client.get("/api/v1/validation/rules?search=narrative", headers=_h(admin)).get_json()

    assert [r["rule_code"] for r in infos] == ["CUST-002"]
    assert [r["rule_code"] for r in found] == ["CUST-001"]


def test_rule_test_endpoint(client, admin):
    body = {
        "rule": {"rule_code": "TRY", "validation_expression": "age < 120", "severity": "warning",
                 "error_message": "Implausible age", "field_path": "age"},
        "sample_data": {"age": 130},
    }
    res = client.post("/api/v1/validation/rules/test", json=body, headers=_h(admin))
    assert res.status_code == 200
    out = res.get_json()
    assert out["passed"] is False
    assert out["triggered"] is True
    assert out["result"]["message"] == "Implausible age"

    assert client.post("/api/v1/validation/rules/test", json={}, headers=_h(admin)).status_code == 400


# ── Case validation ──────────────────────────────────────────────────────────


def test_run_and_acknowledge(client, admin, make_case):
    _create(client, admin, rule_code="W-1", severity="warning")
    case = make_case(data={"narrative": ""})

    run = client.post(f"/api/v1/cases/{case.id}/validation/run", headers=_h(admin))
    assert run.status_code == 200
    summary = run.get_json()
    assert summary["warning_count"] == 1
    assert summary["can_submit"] is False

    ack = client.post(f"/api/v1/cases/{case.id}/validation/acknowledge",
                      json={"result_ids": [summary["warnings"][0]["id"]], "notes": "Reporter unreachable"},
                      headers=_h(admin))
    assert ack.get_json() == {"acknowledged": 1}

    stored = client.get(f"/api/v1/cases/{case.id}/validation", headers=_h(admin)).get_json()
    assert stored["can_submit"] is True
    assert stored["warnings"][0]["acknowledgment_notes"] == "Reporter unreachable"


def test_run_validation_unknown_case(client, admin):
    assert client.post("/api/v1/cases/missing/validation/run", headers=_h(admin)).status_code == 404


def test_acknowledge_requires_ids(client, admin, make_case):
    case = make_case()
    res = client.post(f"/api/v1/cases/{case.id}/validation/acknowledge", json={"result_ids": []},
                      headers=_h(admin))
    assert res.status_code == 400


def test_statistics_endpoint(client, admin, make_case):
    _create(client, admin)
    case = make_case()
    client.post(f"/api/v1/cases/{case.id}/validation/run", headers=_h(admin))

    stats = client.get("/api/v1/validation/statistics", headers=_h(admin)).get_json()

    assert stats["total_rules"] == 1
    assert stats["most_triggered"][0]["rule_code"] == "CUST-001"
