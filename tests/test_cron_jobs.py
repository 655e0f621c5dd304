"""
Tests for the scheduled jobs.

Jobs run against an in-memory SQLite database; the edge functions are
replaced by a fake client that records calls.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from offmarket.core.exceptions import UnknownJobError
from offmarket.core.logger import LogLevel
from offmarket.db.models import (
    AuditLog,
    Campaign,
    Company,
    Enrichment,
    EnrichmentStatus,
    Invitation,
    Report,
    SystemLog,
)
from offmarket.services.cron_jobs import (
    CronJobManager,
    EmailJobResult,
    JobRunResult,
    MaintenanceJobResult,
    run_cron_job,
    sunday_based_weekday,
)
from offmarket.services.edge_functions import EdgeFunctionResponse

# A Sunday
NOW = datetime(2026, 10, 18, 9, 30)


class FakeEdgeClient:
    def __init__(self, fail_ids=(), raise_ids=(), emails_sent=2):
        self.fail_ids = set(fail_ids)
        self.raise_ids = set(raise_ids)
        self.emails_sent = emails_sent
        self.calls = []

    def _respond(self, name, item_id, data=None):
        self.calls.append((name, item_id))
        if item_id in self.raise_ids:
            raise RuntimeError(f"{name} crashed for {item_id}")
        if item_id in self.fail_ids:
            return EdgeFunctionResponse(success=False, error="provider error")
        return EdgeFunctionResponse(success=True, data=data)

    async def enrich_company(self, company_id, providers=None, **kwargs):
        return self._respond("enrich-company", company_id)

    async def send_emails(self, campaign_id=None, user_id=None, immediate=False, **kwargs):
        return self._respond("send-emails", campaign_id, {"emailsSent": self.emails_sent})

    async def generate_report(self, company_id, user_id, tier="ENHANCED", **kwargs):
        return self._respond("generate-report", company_id)


def make_manager(session_factory, edge_client, app_logger, **kwargs):
    return CronJobManager(
        session_factory=session_factory,
        edge_client=edge_client,
        app_logger=app_logger,
        enrichment_delay=0,
        email_delay=0,
        report_delay=0,
        **kwargs,
    )


async def add_all(session_factory, *rows):
    async with session_factory() as session:
        session.add_all(rows)
        await session.commit()


async def count(session_factory, model):
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


class TestEnrichmentJob:

    @pytest.mark.asyncio
    async def test_one_item_failure_does_not_stop_batch(self, session_factory, app_logger, console):
        _, handler = console
        await add_all(session_factory, *[
            Enrichment(company_id=i, created_at=NOW - timedelta(minutes=10 - i)) for i in range(1, 6)
        ])
        edge = FakeEdgeClient(raise_ids={3})
        manager = make_manager(session_factory, edge, app_logger)

        result = await manager.process_pending_enrichments()

        assert (result.processed, result.failed) == (4, 1)
        assert [item_id for _, item_id in edge.calls] == [1, 2, 3, 4, 5]
        errors = handler.entries(LogLevel.ERROR)
        assert len(errors) == 1
        assert errors[0].metadata["job"] == "enrichments"
        assert errors[0].component == "cron:enrichments"

    @pytest.mark.asyncio
    async def test_only_pending_oldest_first_within_batch(self, session_factory, app_logger):
        await add_all(
            session_factory,
            Enrichment(company_id=10, created_at=NOW - timedelta(hours=1)),
            Enrichment(company_id=11, created_at=NOW - timedelta(hours=3)),
            Enrichment(company_id=12, created_at=NOW - timedelta(hours=2)),
            Enrichment(company_id=13, status=EnrichmentStatus.COMPLETED.value),
        )
        edge = FakeEdgeClient(fail_ids={12})
        manager = make_manager(session_factory, edge, app_logger, batch_size=2)

        result = await manager.process_pending_enrichments()

        assert [item_id for _, item_id in edge.calls] == [11, 12]
        assert (result.processed, result.failed) == (1, 1)

    @pytest.mark.asyncio
    async def test_nothing_pending(self, session_factory, app_logger):
        result = await make_manager(session_factory, FakeEdgeClient(), app_logger).process_pending_enrichments()

        assert result == JobRunResult(message="No pending enrichments found")


class TestEmailJob:

    def test_sunday_based_weekday(self):
        assert sunday_based_weekday(NOW) == 0
        assert sunday_based_weekday(NOW + timedelta(days=1)) == 1
        assert sunday_based_weekday(NOW - timedelta(days=1)) == 6

    @pytest.mark.asyncio
    async def test_sends_campaigns_due_now(self, session_factory, app_logger):
        await add_all(
            session_factory,
            Campaign(id=1, name="due", weekday=0, hour=9),
            Campaign(id=2, name="also due", weekday=0, hour=9),
            Campaign(id=3, name="wrong hour", weekday=0, hour=10),
            Campaign(id=4, name="wrong day", weekday=1, hour=9),
            Campaign(id=5, name="inactive", weekday=0, hour=9, is_active=False),
        )
        edge = FakeEdgeClient(fail_ids={2}, emails_sent=4)
        manager = make_manager(session_factory, edge, app_logger)

        result = await manager.process_scheduled_emails(now=NOW)

        assert [item_id for _, item_id in edge.calls] == [1, 2]
        assert (result.processed, result.failed, result.total_emails_sent) == (1, 1, 4)

    @pytest.mark.asyncio
    async def test_no_campaigns(self, session_factory, app_logger):
        result = await make_manager(session_factory, FakeEdgeClient(), app_logger).process_scheduled_emails(now=NOW)

        assert result.processed == 0
        assert result.message == "No campaigns scheduled for day 0 hour 9"


class TestMaintenanceJob:

    @pytest.mark.asyncio
    async def test_applies_retention(self, session_factory, app_logger):
        await add_all(
            session_factory,
            Invitation(email="a@x.test", token="expired", expires_at=NOW - timedelta(days=1)),
            Invitation(email="b@x.test", token="valid", expires_at=NOW + timedelta(days=1)),
            AuditLog(action="LOGIN", entity="USER", created_at=NOW - timedelta(days=91)),
            AuditLog(action="LOGIN", entity="USER", created_at=NOW - timedelta(days=5)),
            SystemLog(level="INFO", category="API", message="old", timestamp=NOW, created_at=NOW - timedelta(days=100)),
            SystemLog(level="INFO", category="API", message="new", timestamp=NOW, created_at=NOW),
            Enrichment(company_id=1, status=EnrichmentStatus.FAILED.value, created_at=NOW - timedelta(days=8)),
            Enrichment(company_id=2, status=EnrichmentStatus.FAILED.value, created_at=NOW - timedelta(days=2)),
            Enrichment(company_id=3, status=EnrichmentStatus.PENDING.value, created_at=NOW - timedelta(days=30)),
        )
        manager = make_manager(session_factory, FakeEdgeClient(), app_logger)

        result = await manager.perform_maintenance(now=NOW)

        assert isinstance(result, MaintenanceJobResult)
        assert result.invitations_cleaned_up == 1
        assert result.audit_logs_archived == 1
        assert result.system_logs_deleted == 1
        assert result.failed_enrichments_deleted == 1
        assert result.failed == 0
        assert await count(session_factory, Invitation) == 1
        assert await count(session_factory, SystemLog) == 1
        assert await count(session_factory, Enrichment) == 2

        async with session_factory() as session:
            audit = await session.execute(select(AuditLog).where(AuditLog.action == "MAINTENANCE"))
            entry = audit.scalars().one()
        assert entry.details["invitations_cleaned_up"] == 1

    @pytest.mark.asyncio
    async def test_failing_step_is_isolated(self, session_factory, app_logger):
        manager = make_manager(session_factory, FakeEdgeClient(), app_logger)
        original_delete = manager._delete

        async def flaky_delete(statement):
            if statement.table.name == "audit_log":
                raise RuntimeError("lock timeout")
            return await original_delete(statement)

        manager._delete = flaky_delete

        result = await manager.perform_maintenance(now=NOW)

        assert result.failed == 1
        assert result.audit_logs_archived == 0
        assert "Maintenance completed" in result.message


class TestReportJob:

    @pytest.mark.asyncio
    async def test_generates_reports_for_recent_enrichments(self, session_factory, app_logger):
        await add_all(
            session_factory,
            Company(id=1, name="Acme Plumbing", user_id="u-1", selected=True),
            Company(id=2, name="Already Reported", user_id="u-1", selected=True),
            Company(id=3, name="No Owner", selected=True),
            Company(id=4, name="Not Selected", user_id="u-2", selected=False),
            Company(id=5, name="Stale", user_id="u-2", selected=True),
            Enrichment(company_id=1, status="COMPLETED", updated_at=NOW - timedelta(hours=2)),
            Enrichment(company_id=2, status="COMPLETED", updated_at=NOW - timedelta(hours=1)),
            Enrichment(company_id=3, status="COMPLETED", updated_at=NOW - timedelta(hours=1)),
            Enrichment(company_id=4, status="COMPLETED", updated_at=NOW - timedelta(hours=1)),
            Enrichment(company_id=5, status="COMPLETED", updated_at=NOW - timedelta(days=2)),
            Report(company_id=2, user_id="u-1", created_at=NOW - timedelta(hours=1)),
        )
        edge = FakeEdgeClient()
        manager = make_manager(session_factory, edge, app_logger)

        result = await manager.generate_daily_reports(now=NOW)

        assert edge.calls == [("generate-report", 1)]
        assert (result.processed, result.failed) == (1, 0)

    @pytest.mark.asyncio
    async def test_repeated_runs_reach_every_eligible_company(self, session_factory, app_logger):
        companies = [Company(id=i, name=f"Company {i}", user_id="u-1", selected=True) for i in range(1, 13)]
        enrichments = [
            Enrichment(company_id=i, status="COMPLETED", updated_at=NOW - timedelta(hours=1)) for i in range(1, 13)
        ]
        await add_all(session_factory, *companies, *enrichments)

        class ReportingEdgeClient(FakeEdgeClient):
            async def generate_report(self, company_id, user_id, tier="ENHANCED", **kwargs):
                await add_all(session_factory, Report(company_id=company_id, user_id=user_id, created_at=NOW))
                return await super().generate_report(company_id, user_id, tier, **kwargs)

        edge = ReportingEdgeClient()
        manager = make_manager(session_factory, edge, app_logger, batch_size=10)

        first = await manager.generate_daily_reports(now=NOW)
        second = await manager.generate_daily_reports(now=NOW)
        third = await manager.generate_daily_reports(now=NOW)

        assert first.processed == 10
        assert second.processed == 2
        assert third.message == "No companies eligible for daily reports"
        assert sorted(item_id for _, item_id in edge.calls) == list(range(1, 13))


class TestRunAll:

    @pytest.mark.asyncio
    async def test_returns_every_result_when_a_job_fails(self, session_factory, app_logger):
        await add_all(session_factory, Enrichment(company_id=1), Enrichment(company_id=2))
        edge = FakeEdgeClient(raise_ids={1, 2})
        manager = make_manager(session_factory, edge, app_logger)

        result = await manager.run_all_jobs()

        assert (result.enrichments.processed, result.enrichments.failed) == (0, 2)
        assert isinstance(result.emails, EmailJobResult)
        assert isinstance(result.maintenance, MaintenanceJobResult)
        assert isinstance(result.reports, JobRunResult)
        assert "- Enrichments: Processed 0 enrichments, 2 failed" in result.summary

    @pytest.mark.asyncio
    async def test_job_level_error_still_returns_result(self, app_logger):
        def broken_session_factory():
            raise RuntimeError("database unavailable")

        manager = make_manager(broken_session_factory, FakeEdgeClient(), app_logger)

        result = await manager.run_all_jobs()

        assert result.enrichments.message == "Error: database unavailable"
        assert result.emails.message == "Error: database unavailable"
        assert result.reports.message == "Error: database unavailable"
        assert result.maintenance.failed == 5

    @pytest.mark.asyncio
    async def test_run_by_name(self, session_factory, app_logger):
        manager = make_manager(session_factory, FakeEdgeClient(), app_logger)

        result = await run_cron_job("enrichments", manager)

        assert result.message == "No pending enrichments found"

    @pytest.mark.asyncio
    async def test_unknown_job(self, session_factory, app_logger):
        manager = make_manager(session_factory, FakeEdgeClient(), app_logger)

        with pytest.raises(UnknownJobError):
            await manager.run("backups")
