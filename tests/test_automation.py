"""
Tests for the KPI trigger processor and the periodic sweeper.

Covers:
- process(): trainings, audits, warnings, recognitions, events and emails
- linking of generated records back to the KPI score
- failure handling: the record is marked failed and can be reprocessed
- reprocess(): earlier open items are withdrawn, never duplicated
- process_pending() and automation_stats()
- AutomationSweeper.run_once(): one pass over all periodic work
- AutomationSweeper start/stop and a loop that survives a failed pass
- the processing claim under concurrent callers
"""

import asyncio
import threading
from datetime import timedelta

import pytest

from conftest import ALL_BAD, NEED_IMPROVEMENT, NOW, OUTSTANDING, SATISFACTORY
from kpi_compliance.automation.sweeper import AutomationSweeper
from kpi_compliance.core.errors import StateTransitionError
from kpi_compliance.kpi import scores
from kpi_compliance.notifications import inbox
from kpi_compliance.people import records
from kpi_compliance.training import assignments


def submit(store, employee, metrics, period="2025-05"):
    return scores.submit_kpi(store, employee.id, period, metrics, now=NOW)


# ---------------------------------------------------------------------------
# process()
# ---------------------------------------------------------------------------

class TestProcess:
    def test_need_improvement_side_effects(self, store, staff, processor):
        fe = staff["fe"]
        record = submit(store, fe, NEED_IMPROVEMENT)
        result = processor.process(record.id, now=NOW)

        assert result["status"] == "completed"
        assert record.processed_at == NOW
        trainings = [store.trainings.get(i) for i in record.generated["trainings"]]
        assert [t.training_type for t in trainings] == ["basic", "negativity_handling"]
        assert all(t.assigned_by == "kpi_trigger" and t.kpi_score_id == record.id for t in trainings)
        assert trainings[0].due_date == NOW + timedelta(days=14)

        audits = [store.audits.get(i) for i in record.generated["audits"]]
        assert [(a.audit_type, a.priority) for a in audits] == [
            ("audit_call", "high"), ("cross_check", "medium"), ("dummy_audit", "high"),
        ]
        assert audits[0].scheduled_date == NOW + timedelta(days=3)
        assert fe.status == "Audited"

    def test_need_improvement_emails(self, store, staff, processor):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)
        processor.process(record.id, now=NOW)
        logs = [store.email_logs.get(i) for i in record.generated["emails"]]
        by_template = {}
        for log in logs:
            by_template.setdefault(log.template, []).append(log.recipient_role)
        assert len(logs) == 9
        assert sorted(by_template["kpi_score"]) == ["coordinator", "fe", "manager"]
        assert sorted(by_template["training"]) == ["coordinator", "fe", "hod", "manager"]
        assert sorted(by_template["audit"]) == ["compliance", "hod"]
        assert all(log.status == "sent" and log.kpi_score_id == record.id for log in logs)

    def test_training_email_links_first_training(self, store, staff, processor):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)
        processor.process(record.id, now=NOW)
        training_logs = store.email_logs.list(lambda l: l.template == "training")
        assert {l.training_id for l in training_logs} == {record.generated["trainings"][0]}

    def test_fe_inbox_receives_notifications(self, store, staff, processor):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)
        processor.process(record.id, now=NOW)
        types = sorted(n.type for n in inbox.list_notifications(store, staff["fe"].id))
        assert types == ["kpi", "training"]

    def test_satisfactory_sends_five_emails(self, store, staff, processor, transport):
        record = submit(store, staff["fe"], SATISFACTORY)
        processor.process(record.id, now=NOW)
        assert len(record.generated["emails"]) == 5
        assert len(transport.sent) == 5
        assert record.generated["trainings"] == []
        assert staff["fe"].status == "Warning"

    def test_unsatisfactory_issues_warning(self, store, staff, processor):
        record = submit(store, staff["fe"], ALL_BAD)
        processor.process(record.id, now=NOW)
        warnings = records.warnings_for(store, staff["fe"].id)
        assert len(warnings) == 1
        assert warnings[0].kpi_score_id == record.id
        assert len(record.generated["audits"]) == 5
        assert len(record.generated["trainings"]) == 3
        types = [e.type for e in records.events_for(store, staff["fe"].id)]
        assert sorted(types) == ["audit", "training", "warning"]

    def test_outstanding_grants_recognition(self, store, staff, processor):
        record = submit(store, staff["fe"], OUTSTANDING)
        processor.process(record.id, now=NOW)
        recognitions = records.recognitions_for(store, staff["fe"].id)
        assert [r.title for r in recognitions] == ["Outstanding Performance Award"]
        event = records.events_for(store, staff["fe"].id)[0]
        assert (event.type, event.category, event.automated) == ("achievement", "positive", True)

    def test_only_pending_records_are_processed(self, store, staff, processor):
        record = submit(store, staff["fe"], SATISFACTORY)
        processor.process(record.id, now=NOW)
        with pytest.raises(StateTransitionError, match="reprocess"):
            processor.process(record.id, now=NOW)

    def test_processing_record_rejected(self, store, staff, processor):
        record = submit(store, staff["fe"], SATISFACTORY)
        record.automation_status = "processing"
        with pytest.raises(StateTransitionError, match="already being processed"):
            processor.process(record.id, now=NOW)
        with pytest.raises(StateTransitionError):
            processor.reprocess(record.id, now=NOW)

    def test_concurrent_process_runs_once(self, store, staff, processor):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)
        barrier = threading.Barrier(6)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                outcomes.append(processor.process(record.id, now=NOW)["status"])
            except StateTransitionError:
                outcomes.append("refused")

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["completed"] + ["refused"] * 5
        assert len(assignments.trainings_for(store, staff["fe"].id)) == 2

    def test_update_refused_while_claimed(self, store, staff, processor):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)
        processor._claim(record.id, ("pending",), NOW)
        with pytest.raises(StateTransitionError, match="being processed"):
            scores.update_kpi(store, record.id, percentages=OUTSTANDING)
        with pytest.raises(StateTransitionError, match="already being processed"):
            processor.process(record.id, now=NOW)


# ---------------------------------------------------------------------------
# Failures and reprocessing
# ---------------------------------------------------------------------------

class TestFailuresAndReprocess:
    def test_error_marks_record_failed(self, store, staff, processor, monkeypatch):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)

        def broken(*args, **kwargs):
            raise RuntimeError("training catalogue offline")

        monkeypatch.setattr(assignments, "assign_training", broken)
        result = processor.process(record.id, now=NOW)
        assert result["status"] == "failed"
        assert result["errors"][0]["type"] == "RuntimeError"
        assert record.automation_errors[0]["message"] == "training catalogue offline"
        assert record.processed_at is None

    def test_email_failures_do_not_fail_automation(self, store, staff, failing_dispatcher):
        from kpi_compliance.automation.processor import KPITriggerProcessor

        processor = KPITriggerProcessor(store, failing_dispatcher)
        record = submit(store, staff["fe"], SATISFACTORY)
        assert processor.process(record.id, now=NOW)["status"] == "completed"
        assert failing_dispatcher.stats()["by_status"]["failed"] == 5

    def test_reprocess_after_failure(self, store, staff, processor, monkeypatch):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)

        def broken(*args, **kwargs):
            raise RuntimeError("training catalogue offline")

        monkeypatch.setattr(assignments, "assign_training", broken)
        processor.process(record.id, now=NOW)
        assert record.automation_status == "failed"
        monkeypatch.undo()
        assert processor.reprocess(record.id, now=NOW)["status"] == "completed"

    def test_reprocess_withdraws_previous_items(self, store, staff, processor):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)
        processor.process(record.id, now=NOW)
        first_trainings = list(record.generated["trainings"])
        first_audits = list(record.generated["audits"])

        processor.reprocess(record.id, now=NOW)
        assert len(assignments.trainings_for(store, staff["fe"].id)) == 2
        assert all(not store.trainings.get(i).is_active for i in first_trainings)
        assert all(store.audits.get(i).status == "cancelled" for i in first_audits)
        assert set(record.generated["trainings"]).isdisjoint(first_trainings)

    def test_completed_training_survives_reprocess(self, store, staff, processor):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)
        processor.process(record.id, now=NOW)
        done = record.generated["trainings"][0]
        assignments.complete_training(store, done, now=NOW)
        processor.reprocess(record.id, now=NOW)
        assert store.trainings.get(done).status == "completed"
        assert store.trainings.get(done).is_active

    def test_update_then_process_replaces_plan(self, store, staff, processor):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)
        processor.process(record.id, now=NOW)
        scores.update_kpi(store, record.id, percentages=OUTSTANDING)
        processor.process(record.id, now=NOW)
        assert assignments.trainings_for(store, staff["fe"].id) == []
        assert record.generated["recognitions"]

    def test_reprocess_does_not_duplicate_warning(self, store, staff, processor):
        fe = staff["fe"]
        record = submit(store, fe, ALL_BAD)
        processor.process(record.id, now=NOW)
        first_warning = record.generated["warnings"][0]
        processor.reprocess(record.id, now=NOW)

        active = records.warnings_for(store, fe.id, status="active")
        assert len(active) == 1
        assert active[0].id != first_warning
        assert store.warnings.get(first_warning).status == "dismissed"
        types = sorted(e.type for e in records.events_for(store, fe.id))
        assert types == ["audit", "training", "warning"]

    def test_reprocess_does_not_duplicate_recognition(self, store, staff, processor):
        fe = staff["fe"]
        record = submit(store, fe, OUTSTANDING)
        processor.process(record.id, now=NOW)
        processor.reprocess(record.id, now=NOW)
        processor.reprocess(record.id, now=NOW)
        assert len(records.recognitions_for(store, fe.id)) == 1
        assert len(records.events_for(store, fe.id)) == 1

    def test_improved_score_dismisses_earlier_warning(self, store, staff, processor):
        fe = staff["fe"]
        record = submit(store, fe, ALL_BAD)
        processor.process(record.id, now=NOW)
        scores.update_kpi(store, record.id, percentages=OUTSTANDING)
        processor.process(record.id, now=NOW)
        assert records.warnings_for(store, fe.id, status="active") == []
        assert len(records.recognitions_for(store, fe.id)) == 1

    def test_manual_warning_survives_reprocess(self, store, staff, processor):
        fe = staff["fe"]
        manual = records.issue_warning(store, fe.id, "Late reports", "Three late submissions")
        record = submit(store, fe, ALL_BAD)
        processor.process(record.id, now=NOW)
        processor.reprocess(record.id, now=NOW)
        active = records.warnings_for(store, fe.id, status="active")
        assert manual.id in {w.id for w in active}
        assert len(active) == 2


# ---------------------------------------------------------------------------
# Batch and stats
# ---------------------------------------------------------------------------

class TestBatch:
    def test_process_pending_skips_failed(self, store, staff, processor):
        a = submit(store, staff["fe"], SATISFACTORY, period="2025-04")
        b = submit(store, staff["fe"], OUTSTANDING, period="2025-05")
        b.automation_status = "failed"
        summary = processor.process_pending(now=NOW)
        assert summary == {"processed": 1, "failed": 0, "errors": []}
        assert a.automation_status == "completed"
        assert b.automation_status == "failed"

    def test_automation_stats(self, store, staff, processor):
        record = submit(store, staff["fe"], NEED_IMPROVEMENT)
        processor.process(record.id, now=NOW)
        stats = processor.automation_stats(now=NOW)
        assert stats["kpi"]["completed"] == 1
        assert stats["training"]["total"] == 2
        assert stats["audits"]["total"] == 3
        assert stats["emails"]["total"] == 9


class TestSweeper:
    def test_run_once(self, store, staff, processor):
        submit(store, staff["fe"], NEED_IMPROVEMENT)
        sweeper = AutomationSweeper(processor, interval_seconds=60)
        summary = sweeper.run_once(now=NOW)
        assert summary["kpi"]["processed"] == 1
        assert summary["trainings_flagged_overdue"] == 0
        assert sweeper.status()["last_run"] == "2025-06-01T12:00:00Z"
        assert not sweeper.running

    def test_run_once_flags_overdue_and_sends_due_mail(self, store, staff, processor, dispatcher):
        fe = staff["fe"]
        assignments.assign_training(store, fe.id, "basic", due_date=NOW + timedelta(days=1), now=NOW)
        dispatcher.bulk_notify("Reminder", "Submit your reports.", employee_ids=[fe.id],
                               scheduled_for=NOW + timedelta(hours=1), now=NOW)
        summary = AutomationSweeper(processor).run_once(now=NOW + timedelta(days=2))
        assert summary["trainings_flagged_overdue"] == 1
        assert summary["scheduled_emails"]["sent"] == 1

    def test_interval_defaults_to_settings(self, processor):
        from kpi_compliance.core.config import Settings

        assert AutomationSweeper(processor).interval_seconds == Settings.AUTOMATION_INTERVAL_SECONDS

    def test_start_loop_survives_failure_and_stop(self, processor, monkeypatch):
        sweeper = AutomationSweeper(processor, interval_seconds=0.01)
        calls = []

        def flaky_run_once(now=None):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("store unavailable")
            return {}

        monkeypatch.setattr(sweeper, "run_once", flaky_run_once)

        async def scenario():
            assert sweeper.start() is True
            assert sweeper.start() is False
            assert sweeper.running
            for _ in range(200):
                if len(calls) >= 3:
                    break
                await asyncio.sleep(0.01)
            still_running = sweeper.running
            await sweeper.stop()
            return still_running

        assert asyncio.run(scenario()) is True
        assert len(calls) >= 3
        assert not sweeper.running
        assert sweeper.status()["running"] is False

    def test_stop_without_start(self, processor):
        sweeper = AutomationSweeper(processor, interval_seconds=0.01)
        asyncio.run(sweeper.stop())
        assert not sweeper.running


class TestOverrideAndReprocess:
    def test_reprocess_keeps_overridden_score_on_employee(self, store, staff, processor):
        fe = staff["fe"]
        record = submit(store, fe, NEED_IMPROVEMENT)
        processor.process(record.id, now=NOW)
        scores.override_kpi(store, record.id, 72, "Excellent", "Audit disputed", now=NOW)
        processor.reprocess(record.id, now=NOW)
        assert (fe.kpi_score, fe.status) == (72, "Active")
        assert len(assignments.trainings_for(store, fe.id)) == 2
