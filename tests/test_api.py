"""
HTTP tests for the v1 API using FastAPI's TestClient.

Covers:
- health, logs and the root endpoint
- /kpi: config, preview, submit with automation, duplicates, analytics, reprocess
- /audits and /training: create, transitions and error mapping (400/404)
- /emails: logs, stats, templates, bulk
- /notifications and /employees
- /recipient-groups and group-addressed bulk email
- KPI overrides and unmatched import rows
- /automation: manual run and status
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from conftest import ALL_BAD, NEED_IMPROVEMENT, OUTSTANDING, SATISFACTORY
from kpi_compliance.core.log_store import clear_logs, init_logging_buffer

API = "/api/v1"


def future(days):
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


@pytest.fixture
def fe_id(staff):
    return staff["fe"].id


def submit(client, employee_id, metrics, period="2025-05", **extra):
    body = {"employee_id": employee_id, "period": period, "metrics": metrics}
    body.update(extra)
    return client.post(f"{API}/kpi/scores", json=body)


# ---------------------------------------------------------------------------
# Basics
# ---------------------------------------------------------------------------

class TestBasics:
    def test_root(self, client):
        assert client.get("/").json()["health"] == f"{API}/health"

    def test_health(self, client):
        data = client.get(f"{API}/health").json()
        assert data["status"] == "ok"
        assert data["automation_enabled"] is False

    def test_logs_bad_since(self, client):
        assert client.get(f"{API}/logs", params={"since": "soon"}).status_code == 400

    def test_logs_ok(self, client):
        data = client.get(f"{API}/logs", params={"limit": 5000}).json()
        assert data["count"] == len(data["items"])

    def test_logs_filter_by_logger(self, client):
        init_logging_buffer(100)
        clear_logs()
        log = logging.getLogger("kpi_compliance.tests.api")
        log.setLevel(logging.INFO)
        log.info("scoped line")
        logging.getLogger("other.tests.api").warning("unrelated line")
        data = client.get(f"{API}/logs", params={"logger": "kpi_compliance.tests"}).json()
        assert [i["message"] for i in data["items"]] == ["scoped line"]
        assert client.get(f"{API}/logs", params={"logger": "no.such.logger"}).json()["count"] == 0

    def test_logs_bad_min_level(self, client):
        assert client.get(f"{API}/logs", params={"min_level": "loud"}).status_code == 400

    def test_logs_stats(self, client):
        init_logging_buffer(100)
        clear_logs()
        logging.getLogger("kpi_compliance.tests.api").warning("one")
        stats = client.get(f"{API}/logs/stats").json()
        assert stats["by_level"]["WARNING"] >= 1
        assert stats["capacity"] == 100


# ---------------------------------------------------------------------------
# KPI
# ---------------------------------------------------------------------------

class TestKPIConfig:
    def test_get_hides_internal_keys(self, client):
        cfg = client.get(f"{API}/kpi/config").json()["config"]
        assert "metrics" in cfg
        assert not any(k.startswith("_") for k in cfg)

    def test_update_and_reset(self, client):
        body = {"value": {"low_performer_threshold": 50, "require_action_below": 50}, "updated_by": "admin"}
        resp = client.put(f"{API}/kpi/config/alerts", json=body)
        assert resp.status_code == 200
        assert resp.json()["config"]["alerts"]["low_performer_threshold"] == 50
        reset = client.post(f"{API}/kpi/config/reset").json()["config"]
        assert reset["alerts"]["low_performer_threshold"] == 70

    def test_invalid_section(self, client):
        assert client.put(f"{API}/kpi/config/metadata", json={"value": {}}).status_code == 400

    def test_malformed_section_rejected_and_engine_unaffected(self, client):
        resp = client.put(f"{API}/kpi/config/scheduling", json={"value": "weekly"})
        assert resp.status_code == 400
        resp = client.put(f"{API}/kpi/config/alerts", json={"value": {"low_performer_threshold": "x"}})
        assert resp.status_code == 400
        preview = client.post(f"{API}/kpi/preview", json={"metrics": SATISFACTORY})
        assert preview.status_code == 200
        assert preview.json()["evaluation"]["overall"] == 65

    def test_export(self, client):
        assert "exported_at" in client.get(f"{API}/kpi/config/export").json()


class TestKPIScores:
    def test_preview(self, client):
        resp = client.post(f"{API}/kpi/preview", json={"metrics": NEED_IMPROVEMENT, "period": "2025-05"})
        data = resp.json()
        assert data["evaluation"]["overall"] == 43
        assert len(data["plan"]["audits"]) == 3

    def test_metric_out_of_range_is_422(self, client, fe_id):
        resp = submit(client, fe_id, dict(SATISFACTORY, tat=120))
        assert resp.status_code == 422

    def test_submit_runs_automation(self, client, fe_id, transport):
        resp = submit(client, fe_id, SATISFACTORY)
        assert resp.status_code == 201
        data = resp.json()
        assert data["kpi_score"]["overall"] == 65
        assert data["automation"]["status"] == "completed"
        assert len(transport.sent) == 5

    def test_submit_without_automation(self, client, fe_id):
        data = submit(client, fe_id, SATISFACTORY, process_now=False).json()
        assert data["automation"] is None
        assert data["kpi_score"]["automation_status"] == "pending"
        pending = client.get(f"{API}/kpi/pending-automation").json()
        assert pending["pagination"]["total_items"] == 1

    def test_duplicate_is_409(self, client, fe_id):
        submit(client, fe_id, SATISFACTORY)
        assert submit(client, fe_id, OUTSTANDING).status_code == 409

    def test_bad_period_is_400(self, client, fe_id):
        assert submit(client, fe_id, SATISFACTORY, period="May").status_code == 400

    def test_unknown_employee_is_404(self, client):
        assert submit(client, "missing", SATISFACTORY).status_code == 404

    def test_get_update_delete(self, client, fe_id):
        score_id = submit(client, fe_id, SATISFACTORY).json()["kpi_score"]["id"]
        assert client.get(f"{API}/kpi/scores/{score_id}").json()["rating"] == "Satisfactory"
        updated = client.put(f"{API}/kpi/scores/{score_id}", json={"metrics": {"tat": 95, "negativity": 10}}).json()
        assert updated["overall"] == 80
        assert updated["automation_status"] == "pending"
        assert client.delete(f"{API}/kpi/scores/{score_id}").json()["is_active"] is False
        assert client.get(f"{API}/kpi/scores/{score_id}").status_code == 404

    def test_triggers_and_status(self, client, fe_id):
        score_id = submit(client, fe_id, NEED_IMPROVEMENT).json()["kpi_score"]["id"]
        triggers = client.get(f"{API}/kpi/scores/{score_id}/triggers").json()
        assert triggers["matched_rules"] == ["need_improvement", "low_overall", "major_negativity_present"]
        assert len(triggers["generated"]["trainings"]) == 2
        status = client.get(f"{API}/kpi/scores/{score_id}/automation-status").json()
        assert status["automation_status"] == "completed"
        assert status["generated"]["emails"] == 9

    def test_reprocess(self, client, fe_id):
        score_id = submit(client, fe_id, NEED_IMPROVEMENT).json()["kpi_score"]["id"]
        resp = client.post(f"{API}/kpi/scores/{score_id}/reprocess")
        assert resp.json()["status"] == "completed"
        trainings = client.get(f"{API}/training/employee/{fe_id}").json()
        assert trainings["count"] == 2

    def test_bulk(self, client, staff):
        rows = [
            dict(OUTSTANDING, email="ravi@example.com", period="2025-05"),
            dict(SATISFACTORY, email="nobody@example.com", period="2025-05"),
        ]
        data = client.post(f"{API}/kpi/scores/bulk", json={"rows": rows}).json()
        assert data["succeeded"] == 1
        assert data["unmatched"] == 1
        assert data["automation"] == {"completed": 1, "failed": 0, "skipped": 0}

    def test_employee_views(self, client, fe_id):
        submit(client, fe_id, NEED_IMPROVEMENT, period="2025-04")
        submit(client, fe_id, OUTSTANDING, period="2025-05")
        assert client.get(f"{API}/kpi/employees/{fe_id}/latest").json()["kpi_score"]["period"] == "2025-05"
        assert client.get(f"{API}/kpi/employees/{fe_id}/history").json()["count"] == 2
        assert client.get(f"{API}/kpi/employees/{fe_id}/trends").json()["direction"] == "improving"
        assert client.get(f"{API}/kpi/employees/missing/latest").status_code == 404

    def test_overview_and_low_performers(self, client, fe_id):
        submit(client, fe_id, SATISFACTORY)
        overview = client.get(f"{API}/kpi/overview/stats").json()
        assert overview["requiring_action"] == 1
        low = client.get(f"{API}/kpi/alerts/low-performers").json()
        assert low["count"] == 1

    def test_sheets_import_unconfigured(self, client):
        resp = client.post(f"{API}/kpi/import/google-sheets", json={})
        assert resp.status_code == 400

    def test_override(self, client, fe_id):
        score_id = submit(client, fe_id, SATISFACTORY).json()["kpi_score"]["id"]
        body = {"score": 72, "rating": "Excellent", "reason": "Complaint withdrawn", "overridden_by": "manoj"}
        data = client.put(f"{API}/kpi/scores/{score_id}/override", json=body).json()
        assert (data["overall"], data["calculated_overall"]) == (72, 65)
        assert data["audit_trail"][0]["performed_by"] == "manoj"
        bad = dict(body, rating="Legendary")
        assert client.put(f"{API}/kpi/scores/{score_id}/override", json=bad).status_code == 400
        assert client.put(f"{API}/kpi/scores/missing/override", json=body).status_code == 404

    def test_inactive_employee_submit_is_404(self, client, fe_id):
        client.delete(f"{API}/employees/{fe_id}")
        assert submit(client, fe_id, SATISFACTORY).status_code == 404

    def test_unmatched_rows(self, client, staff):
        rows = [dict(ALL_BAD, email="new.joiner@example.com", period="2025-05")]
        assert client.post(f"{API}/kpi/scores/bulk", json={"rows": rows}).json()["unmatched"] == 1
        listing = client.get(f"{API}/kpi/unmatched").json()
        assert listing["pagination"]["total_items"] == 1
        item_id = listing["items"][0]["id"]

        resp = client.post(f"{API}/kpi/unmatched/{item_id}/match", json={"employee_id": staff["fe"].id})
        assert resp.status_code == 201
        assert resp.json()["automation"]["status"] == "completed"
        assert client.get(f"{API}/kpi/unmatched").json()["pagination"]["total_items"] == 0
        again = client.post(f"{API}/kpi/unmatched/{item_id}/match", json={"employee_id": staff["fe"].id})
        assert again.status_code == 400

    def test_dismiss_unmatched(self, client, staff):
        rows = [dict(SATISFACTORY, employee_code="FE404", period="2025-05")]
        client.post(f"{API}/kpi/scores/bulk", json={"rows": rows})
        item_id = client.get(f"{API}/kpi/unmatched").json()["items"][0]["id"]
        resp = client.request("DELETE", f"{API}/kpi/unmatched/{item_id}", json={"note": "left company"})
        assert resp.json()["status"] == "dismissed"
        dismissed = client.get(f"{API}/kpi/unmatched", params={"status": "dismissed"}).json()
        assert dismissed["items"][0]["note"] == "left company"
        assert client.get(f"{API}/kpi/unmatched", params={"status": "lost"}).status_code == 400


# ---------------------------------------------------------------------------
# Audits and training
# ---------------------------------------------------------------------------

class TestAudits:
    def test_lifecycle(self, client, fe_id):
        resp = client.post(f"{API}/audits", json={
            "employee_id": fe_id, "audit_type": "audit_call", "scheduled_date": future(2),
        })
        assert resp.status_code == 201
        body = resp.json()
        audit_id = body["audit"]["id"]
        assert body["email"]["sent"] == 2

        assert client.post(f"{API}/audits/{audit_id}/start").json()["status"] == "in_progress"
        short = client.post(f"{API}/audits/{audit_id}/complete", json={"findings": "short"})
        assert short.status_code == 422
        done = client.post(f"{API}/audits/{audit_id}/complete", json={
            "findings": "All sampled cases verified correctly.", "compliance_status": "compliant",
        })
        assert done.json()["audit"]["status"] == "completed"
        again = client.post(f"{API}/audits/{audit_id}/complete", json={"findings": "All sampled cases verified."})
        assert again.status_code == 400

    def test_past_date_rejected(self, client, fe_id):
        resp = client.post(f"{API}/audits", json={
            "employee_id": fe_id, "audit_type": "audit_call", "scheduled_date": future(-1),
        })
        assert resp.status_code == 400

    def test_queries(self, client, fe_id):
        client.post(f"{API}/audits", json={"employee_id": fe_id, "audit_type": "cross_check", "scheduled_date": future(2)})
        assert client.get(f"{API}/audits/upcoming", params={"days": 7}).json()["count"] == 1
        assert client.get(f"{API}/audits/scheduled").json()["pagination"]["total_items"] == 1
        assert client.get(f"{API}/audits/stats").json()["total"] == 1
        assert client.get(f"{API}/audits/upcoming", params={"days": 0}).status_code == 400

    def test_cancel(self, client, fe_id):
        audit_id = client.post(f"{API}/audits", json={
            "employee_id": fe_id, "audit_type": "dummy_audit", "scheduled_date": future(5),
        }).json()["audit"]["id"]
        assert client.delete(f"{API}/audits/{audit_id}").json()["status"] == "cancelled"
        assert client.get(f"{API}/audits/missing").status_code == 404


class TestTraining:
    def test_lifecycle(self, client, fe_id):
        resp = client.post(f"{API}/training", json={
            "employee_id": fe_id, "training_type": "app_usage", "due_date": future(7),
        })
        assert resp.status_code == 201
        training_id = resp.json()["id"]
        assert resp.json()["days_until_due"] in (7, 8)
        assert client.get(f"{API}/training/pending").json()["pagination"]["total_items"] == 1
        client.post(f"{API}/training/{training_id}/start")
        done = client.post(f"{API}/training/{training_id}/complete", json={"score": 90})
        assert done.json()["status"] == "completed"
        assert client.post(f"{API}/training/{training_id}/start").status_code == 400
        assert client.get(f"{API}/training/stats").json()["completion_rate"] == pytest.approx(100.0)

    def test_unknown_type_is_400(self, client, fe_id):
        resp = client.post(f"{API}/training", json={
            "employee_id": fe_id, "training_type": "juggling", "due_date": future(7),
        })
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Emails, notifications, employees, automation
# ---------------------------------------------------------------------------

class TestEmails:
    def test_logs_and_stats(self, client, fe_id):
        submit(client, fe_id, SATISFACTORY)
        logs = client.get(f"{API}/emails/logs", params={"template": "audit"}).json()
        assert logs["pagination"]["total_items"] == 2
        log_id = logs["items"][0]["id"]
        assert client.get(f"{API}/emails/logs/{log_id}").json()["can_retry"] is False
        assert client.post(f"{API}/emails/logs/{log_id}/resend").status_code == 400
        assert client.get(f"{API}/emails/stats").json()["by_status"]["sent"] == 5

    def test_templates(self, client):
        items = client.get(f"{API}/emails/templates").json()["items"]
        assert "kpi_score" in {t["key"] for t in items}
        preview = client.post(f"{API}/emails/templates/notification/preview",
                              json={"variables": {"subject": "Hi", "message": "Body"}}).json()
        assert preview["subject"] == "Hi"
        assert client.post(f"{API}/emails/templates/nope/preview", json={}).status_code == 400

    def test_bulk(self, client, staff):
        resp = client.post(f"{API}/emails/bulk", json={"subject": "Notice", "message": "Read me", "roles": ["hod"]})
        assert resp.json()["sent"] == 1

    def test_pagination_limit(self, client):
        assert client.get(f"{API}/emails/logs", params={"limit": 500}).status_code == 400


class TestNotifications:
    def test_inbox_flow(self, client, fe_id):
        submit(client, fe_id, NEED_IMPROVEMENT)
        data = client.get(f"{API}/notifications/{fe_id}").json()
        assert data["unread"] == 2
        first = data["items"][0]["id"]
        assert client.post(f"{API}/notifications/{fe_id}/mark-read", json={"ids": [first]}).json()["updated"] == 1
        assert client.get(f"{API}/notifications/{fe_id}/unread-count").json()["unread"] == 1
        ack = client.post(f"{API}/notifications/{fe_id}/{first}/acknowledge").json()
        assert ack["acknowledged_at"] is not None
        assert client.post(f"{API}/notifications/{fe_id}/mark-all-read").json()["updated"] == 1

    def test_unknown_employee(self, client):
        assert client.get(f"{API}/notifications/missing").status_code == 404


class TestEmployees:
    def test_register_and_conflict(self, client):
        body = {"name": "Neha", "email": "Neha@Example.com", "role": "fe", "employee_code": "FE100"}
        resp = client.post(f"{API}/employees", json=body)
        assert resp.status_code == 201
        assert resp.json()["email"] == "neha@example.com"
        assert client.post(f"{API}/employees", json=body).status_code == 409

    def test_update_to_taken_code_is_409(self, client, staff):
        emp_id = staff["manager"].id
        resp = client.put(f"{API}/employees/{emp_id}", json={"employee_code": "FE001", "email": "new@example.com"})
        assert resp.status_code == 409
        assert client.get(f"{API}/employees/{emp_id}").json()["email"] == "manoj@example.com"

    def test_invalid_role(self, client):
        resp = client.post(f"{API}/employees", json={"name": "X", "email": "x@example.com", "role": "ceo"})
        assert resp.status_code == 400

    def test_list_update_deactivate(self, client, staff):
        assert client.get(f"{API}/employees", params={"role": "manager"}).json()["pagination"]["total_items"] == 1
        emp_id = staff["manager"].id
        assert client.put(f"{API}/employees/{emp_id}", json={"department": "Ops"}).json()["department"] == "Ops"
        client.delete(f"{API}/employees/{emp_id}")
        assert client.get(f"{API}/employees", params={"role": "manager"}).json()["pagination"]["total_items"] == 0

    def test_warnings_and_recognitions(self, client, fe_id):
        warning = client.post(f"{API}/employees/{fe_id}/warnings", json={
            "title": "Late reports", "description": "Three late submissions",
        }).json()
        assert warning["status"] == "active"
        resolved = client.post(f"{API}/employees/warnings/{warning['id']}/resolve", json={"note": "Improved"})
        assert resolved.json()["status"] == "resolved"
        again = client.post(f"{API}/employees/warnings/{warning['id']}/resolve", json={})
        assert again.status_code == 400

        client.post(f"{API}/employees/{fe_id}/recognitions", json={"title": "Star", "reason": "Top TAT"})
        assert client.get(f"{API}/employees/{fe_id}/recognitions").json()["count"] == 1
        stats = client.get(f"{API}/employees/{fe_id}/lifecycle/stats").json()
        assert stats["by_type"] == {"warning": 1, "achievement": 1}
        assert client.get(f"{API}/employees/{fe_id}/lifecycle").json()["count"] == 2


class TestAutomation:
    def test_run_and_status(self, client, fe_id):
        submit(client, fe_id, SATISFACTORY, process_now=False)
        summary = client.post(f"{API}/automation/run").json()
        assert summary["kpi"]["processed"] == 1
        status = client.get(f"{API}/automation/status").json()
        assert status["running"] is False
        assert status["last_summary"]["kpi"]["processed"] == 1
        stats = client.get(f"{API}/automation/stats").json()
        assert stats["kpi"]["completed"] == 1


class TestRecipientGroups:
    def test_crud_and_members(self, client, staff):
        body = {"name": "Leads", "members": [{"email": "manoj@example.com", "role": "manager"}]}
        resp = client.post(f"{API}/recipient-groups", json=body)
        assert resp.status_code == 201
        group_id = resp.json()["id"]
        assert client.post(f"{API}/recipient-groups", json={"name": "leads"}).status_code == 409

        added = client.post(f"{API}/recipient-groups/{group_id}/members", json={"email": "hema@example.com", "role": "hod"})
        assert added.status_code == 201
        assert len(added.json()["members"]) == 2
        removed = client.delete(f"{API}/recipient-groups/{group_id}/members/manoj@example.com").json()
        assert [m["email"] for m in removed["members"]] == ["hema@example.com"]

        updated = client.put(f"{API}/recipient-groups/{group_id}", json={"description": "Heads only"}).json()
        assert updated["description"] == "Heads only"
        assert client.get(f"{API}/recipient-groups").json()["count"] == 1

        assert client.delete(f"{API}/recipient-groups/{group_id}").json()["is_active"] is False
        assert client.get(f"{API}/recipient-groups/{group_id}").status_code == 404

    def test_auto_populate_and_bulk_email(self, client, staff):
        group = client.post(f"{API}/recipient-groups", json={"name": "Field", "criteria": {"roles": ["fe"]}}).json()
        populated = client.post(f"{API}/recipient-groups/{group['id']}/auto-populate").json()
        assert [m["email"] for m in populated["members"]] == ["ravi@example.com"]

        resp = client.post(f"{API}/emails/bulk", json={"subject": "Notice", "message": "Read me", "group_ids": [group["id"]]})
        assert resp.json()["sent"] == 1
        assert client.get(f"{API}/recipient-groups/{group['id']}").json()["usage_count"] == 1
        assert client.get(f"{API}/recipient-groups/stats").json()["total_usage"] == 1

    def test_bad_criteria_is_400(self, client):
        resp = client.post(f"{API}/recipient-groups", json={"name": "X", "criteria": {"roles": ["ceo"]}})
        assert resp.status_code == 400
