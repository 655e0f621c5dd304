"""
Scheduled Jobs

Maintenance sweeps triggered by an external scheduler (see /api/cron):

- enrichments: send PENDING enrichments to the enrichment function
- emails:      dispatch campaigns scheduled for the current weekday and hour
- maintenance: delete expired invitations and old audit/system log rows
- reports:     generate daily reports for recently enriched companies

Design Decisions:
- Each run handles a bounded batch (CRON_BATCH_SIZE) sequentially, with a
  fixed delay between items to respect third-party rate limits
- One item's failure is counted and logged; the remaining items still run
- Every job also catches at job level, so run_all_jobs() always returns all
  four results
- External calls are not retried here; EdgeFunctionClient retries
  transient failures itself
"""

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy import and_, delete, exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from offmarket.core.exceptions import UnknownJobError
from offmarket.core.logger import LogCategory, StructuredLogger
from offmarket.core.request_context import log_context
from offmarket.db.models import (
    AuditLog,
    Campaign,
    Company,
    Enrichment,
    EnrichmentStatus,
    Invitation,
    Report,
    SystemLog,
    utc_now,
)
from offmarket.services.edge_functions import EdgeFunctionClient

FAILED_ENRICHMENT_RETENTION_DAYS = 7
REPORT_LOOKBACK = timedelta(hours=24)
JOB_NAMES = ("enrichments", "emails", "maintenance", "reports", "all")


class JobRunResult(BaseModel):
    processed: int = 0
    failed: int = 0
    message: str = ""


class EmailJobResult(JobRunResult):
    total_emails_sent: int = 0


class MaintenanceJobResult(JobRunResult):
    invitations_cleaned_up: int = 0
    audit_logs_archived: int = 0
    system_logs_deleted: int = 0
    failed_enrichments_deleted: int = 0


class RunAllResult(BaseModel):
    enrichments: JobRunResult
    emails: EmailJobResult
    maintenance: MaintenanceJobResult
    reports: JobRunResult
    summary: str


def sunday_based_weekday(moment: datetime) -> int:
    """Weekday with 0 = Sunday, the convention of Campaign.weekday."""
    return (moment.weekday() + 1) % 7


class CronJobManager:
    """
    Runs the scheduled jobs.

    Args:
        session_factory: Callable returning an async session context manager
        edge_client: Client for the enrichment/report/email functions
        app_logger: Structured logger used for job status
        batch_size: Maximum items per job run
        enrichment_delay / email_delay / report_delay: Seconds between items
        audit_log_retention_days / system_log_retention_days: Maintenance windows
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        edge_client: EdgeFunctionClient,
        app_logger: StructuredLogger,
        batch_size: int = 10,
        enrichment_delay: float = 1.0,
        email_delay: float = 2.0,
        report_delay: float = 3.0,
        audit_log_retention_days: int = 90,
        system_log_retention_days: int = 90,
    ):
        self.session_factory = session_factory
        self.edge_client = edge_client
        self.log = app_logger
        self.batch_size = batch_size
        self.enrichment_delay = enrichment_delay
        self.email_delay = email_delay
        self.report_delay = report_delay
        self.audit_log_retention_days = audit_log_retention_days
        self.system_log_retention_days = system_log_retention_days

    async def _run_items(
        self,
        job: str,
        items: Sequence[Any],
        handle: Callable[[Any], Awaitable[Optional[bool]]],
        delay: float,
    ) -> Tuple[int, int]:
        """
        Apply handle to every item.

        handle returns True (processed), False (failed) or None (skipped).
        Exceptions count as failures and never stop the loop.
        """
        processed = 0
        failed = 0

        for index, item in enumerate(items):
            if index and delay:
                await asyncio.sleep(delay)
            try:
                outcome = await handle(item)
            except Exception as e:
                failed += 1
                self.log.error(
                    LogCategory.CRON_JOB,
                    f"{job}: error processing item",
                    e,
                    {"job": job, "item": _describe(item)},
                )
                continue

            if outcome is True:
                processed += 1
            elif outcome is False:
                failed += 1

        return processed, failed

    def _job_error(self, job: str, error: Exception) -> str:
        self.log.error(LogCategory.CRON_JOB, f"Error running {job} job", error, {"job": job})
        return f"Error: {error}"

    async def process_pending_enrichments(self) -> JobRunResult:
        """Send the oldest PENDING enrichments to the enrichment function."""
        with log_context(component="cron:enrichments"):
            try:
                async with self.session_factory() as session:
                    result = await session.execute(
                        select(Enrichment)
                        .where(Enrichment.status == EnrichmentStatus.PENDING.value)
                        .order_by(Enrichment.created_at)
                        .limit(self.batch_size)
                    )
                    pending = list(result.scalars().all())

                if not pending:
                    return self._finish("enrichments", JobRunResult(message="No pending enrichments found"))

                async def handle(enrichment: Enrichment) -> bool:
                    self.log.debug(
                        LogCategory.ENRICHMENT,
                        f"Processing enrichment {enrichment.id}",
                        {"enrichmentId": enrichment.id, "companyId": enrichment.company_id},
                    )
                    response = await self.edge_client.enrich_company(
                        enrichment.company_id, providers=["hunter", "apollo"]
                    )
                    if not response.success:
                        self.log.warn(
                            LogCategory.ENRICHMENT,
                            f"Enrichment failed: {response.error}",
                            {"enrichmentId": enrichment.id},
                        )
                    return response.success

                processed, failed = await self._run_items("enrichments", pending, handle, self.enrichment_delay)
                return self._finish("enrichments", JobRunResult(
                    processed=processed,
                    failed=failed,
                    message=f"Processed {processed} enrichments, {failed} failed",
                ))
            except Exception as e:
                return JobRunResult(message=self._job_error("enrichments", e))

    async def process_scheduled_emails(self, now: Optional[datetime] = None) -> EmailJobResult:
        """Dispatch active campaigns scheduled for the current weekday and hour (UTC)."""
        now = now or utc_now()
        weekday = sunday_based_weekday(now)

        with log_context(component="cron:emails"):
            try:
                async with self.session_factory() as session:
                    result = await session.execute(
                        select(Campaign)
                        .where(
                            Campaign.is_active == True,  # noqa: E712
                            Campaign.weekday == weekday,
                            Campaign.hour == now.hour,
                        )
                        .order_by(Campaign.id)
                        .limit(self.batch_size)
                    )
                    campaigns = list(result.scalars().all())

                if not campaigns:
                    return self._finish("emails", EmailJobResult(
                        message=f"No campaigns scheduled for day {weekday} hour {now.hour}"
                    ))

                emails_sent = 0

                async def handle(campaign: Campaign) -> bool:
                    nonlocal emails_sent
                    response = await self.edge_client.send_emails(campaign_id=campaign.id, immediate=False)
                    if not response.success:
                        self.log.warn(
                            LogCategory.EMAIL,
                            f"Campaign failed: {response.error}",
                            {"campaignId": campaign.id},
                        )
                        return False
                    if isinstance(response.data, dict):
                        emails_sent += int(response.data.get("emailsSent") or 0)
                    return True

                processed, failed = await self._run_items("emails", campaigns, handle, self.email_delay)
                return self._finish("emails", EmailJobResult(
                    processed=processed,
                    failed=failed,
                    total_emails_sent=emails_sent,
                    message=f"Processed {processed} campaigns, sent {emails_sent} emails, {failed} failed",
                ))
            except Exception as e:
                return EmailJobResult(message=self._job_error("emails", e))

    async def _delete(self, statement) -> int:
        async with self.session_factory() as session:
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount or 0

    async def perform_maintenance(self, now: Optional[datetime] = None) -> MaintenanceJobResult:
        """
        Apply data retention.

        Steps run independently; a failing step is counted in `failed` and
        the others still run.
        """
        now = now or utc_now()
        steps = {
            "invitations_cleaned_up": delete(Invitation).where(Invitation.expires_at < now),
            "audit_logs_archived": delete(AuditLog).where(
                AuditLog.created_at < now - timedelta(days=self.audit_log_retention_days)
            ),
            "system_logs_deleted": delete(SystemLog).where(
                SystemLog.created_at < now - timedelta(days=self.system_log_retention_days)
            ),
            "failed_enrichments_deleted": delete(Enrichment).where(
                Enrichment.status == EnrichmentStatus.FAILED.value,
                Enrichment.created_at < now - timedelta(days=FAILED_ENRICHMENT_RETENTION_DAYS),
            ),
        }

        with log_context(component="cron:maintenance"):
            counts: Dict[str, int] = {}
            failed = 0
            for name, statement in steps.items():
                try:
                    counts[name] = await self._delete(statement)
                except Exception as e:
                    counts[name] = 0
                    failed += 1
                    self.log.error(LogCategory.CRON_JOB, f"Maintenance step {name} failed", e)

            try:
                async with self.session_factory() as session:
                    session.add(AuditLog(
                        user_id=None,
                        action="MAINTENANCE",
                        entity="SYSTEM",
                        details={**counts, "timestamp": now.isoformat()},
                        created_at=now,
                    ))
                    await session.commit()
            except Exception as e:
                failed += 1
                self.log.error(LogCategory.CRON_JOB, "Failed to record maintenance audit entry", e)

            return self._finish("maintenance", MaintenanceJobResult(
                processed=sum(counts.values()),
                failed=failed,
                message=(
                    f"Maintenance completed: {counts['invitations_cleaned_up']} invitations cleaned, "
                    f"{counts['audit_logs_archived']} audit logs archived, "
                    f"{counts['system_logs_deleted']} system logs deleted, "
                    f"{counts['failed_enrichments_deleted']} failed enrichments deleted"
                ),
                **counts,
            ))

    async def generate_daily_reports(self, now: Optional[datetime] = None) -> JobRunResult:
        """
        Generate ENHANCED reports for selected companies enriched in the last
        24 hours that have an owner and no report yet today.

        Already reported companies are excluded before the batch cap so that
        repeated runs reach every eligible company.
        """
        now = now or utc_now()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        reported_today = exists().where(and_(
            Report.company_id == Company.id,
            Report.user_id == Company.user_id,
            Report.created_at >= day_start,
        ))

        with log_context(component="cron:reports"):
            try:
                async with self.session_factory() as session:
                    result = await session.execute(
                        select(Company)
                        .join(Enrichment, Enrichment.company_id == Company.id)
                        .where(
                            Company.selected == True,  # noqa: E712
                            Company.user_id.is_not(None),
                            ~reported_today,
                            Enrichment.status == EnrichmentStatus.COMPLETED.value,
                            Enrichment.updated_at >= now - REPORT_LOOKBACK,
                        )
                        .distinct()
                        .order_by(Company.id)
                        .limit(self.batch_size)
                    )
                    companies = list(result.scalars().all())

                if not companies:
                    return self._finish("reports", JobRunResult(message="No companies eligible for daily reports"))

                async def handle(company: Company) -> bool:
                    response = await self.edge_client.generate_report(company.id, company.user_id, tier="ENHANCED")
                    if not response.success:
                        self.log.warn(
                            LogCategory.CRON_JOB,
                            f"Report generation failed: {response.error}",
                            {"companyId": company.id},
                        )
                    return response.success

                processed, failed = await self._run_items("reports", companies, handle, self.report_delay)
                return self._finish("reports", JobRunResult(
                    processed=processed,
                    failed=failed,
                    message=f"Generated {processed} reports, {failed} failed",
                ))
            except Exception as e:
                return JobRunResult(message=self._job_error("reports", e))

    async def run_all_jobs(self) -> RunAllResult:
        """Run every job in sequence; jobs share downstream rate limits, so never in parallel."""
        started = time.perf_counter()

        enrichments = await self.process_pending_enrichments()
        emails = await self.process_scheduled_emails()
        maintenance = await self.perform_maintenance()
        reports = await self.generate_daily_reports()

        summary = "\n".join([
            "Scheduled jobs completed:",
            f"- Enrichments: {enrichments.message}",
            f"- Emails: {emails.message}",
            f"- Maintenance: {maintenance.message}",
            f"- Reports: {reports.message}",
        ])
        self.log.performance(LogCategory.CRON_JOB, "run_all_jobs", round((time.perf_counter() - started) * 1000, 2))
        self.log.info(LogCategory.CRON_JOB, summary)

        return RunAllResult(
            enrichments=enrichments,
            emails=emails,
            maintenance=maintenance,
            reports=reports,
            summary=summary,
        )

    async def run(self, job_name: str) -> BaseModel:
        """
        Run a job by name.

        Raises:
            UnknownJobError: If job_name is not one of JOB_NAMES
        """
        jobs = {
            "enrichments": self.process_pending_enrichments,
            "emails": self.process_scheduled_emails,
            "maintenance": self.perform_maintenance,
            "reports": self.generate_daily_reports,
            "all": self.run_all_jobs,
        }
        if job_name not in jobs:
            raise UnknownJobError(job_name)
        return await jobs[job_name]()

    def _finish(self, job: str, result: JobRunResult) -> JobRunResult:
        self.log.info(
            LogCategory.CRON_JOB,
            f"{job}: {result.message}",
            {"job": job, "processed": result.processed, "failed": result.failed},
        )
        return result


def _describe(item: Any) -> str:
    item_id = getattr(item, "id", None)
    return f"{type(item).__name__}#{item_id}" if item_id is not None else repr(item)


def build_cron_manager() -> CronJobManager:
    """Build a manager wired to the application's database, logger and settings."""
    from offmarket.core.setting import settings
    from offmarket.core.telemetry_manager import get_api_monitor, get_app_logger
    from offmarket.db.session import async_session_maker

    app_logger = get_app_logger()
    return CronJobManager(
        session_factory=async_session_maker,
        edge_client=EdgeFunctionClient(
            settings.EDGE_FUNCTIONS_URL,
            token=settings.EDGE_FUNCTIONS_TOKEN,
            app_logger=app_logger,
            api_monitor=get_api_monitor(),
        ),
        app_logger=app_logger,
        batch_size=settings.CRON_BATCH_SIZE,
        enrichment_delay=settings.ENRICHMENT_DELAY_SECONDS,
        email_delay=settings.EMAIL_DELAY_SECONDS,
        report_delay=settings.REPORT_DELAY_SECONDS,
        audit_log_retention_days=settings.AUDIT_LOG_RETENTION_DAYS,
        system_log_retention_days=settings.SYSTEM_LOG_RETENTION_DAYS,
    )


async def run_cron_job(job_name: str, manager: Optional[CronJobManager] = None) -> BaseModel:
    """Run a job by name with the given (or a freshly built) manager."""
    return await (manager or build_cron_manager()).run(job_name)
