"""
Reconciliation tick: queues channel renewals and safety-net pulls.

Push notifications can be lost, so a scheduler calls this every few minutes
to enqueue one watch-renew-all job per agency with channels and (optionally)
an incremental pull per channel.
"""

from datetime import UTC, datetime
from typing import Any

from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain.sync_domain import JobProvider
from agency_sync.repositories.sync_job_repository import SyncJobRepository
from agency_sync.repositories.webhook_channel_repository import WebhookChannelRepository

logger = get_logger(__name__)

KIND_WATCH_RENEW_ALL = "watch-renew-all"
KIND_CALENDAR_PULL = "calendar-pull"
MAX_PULLS_PER_AGENCY = 50


class ReconciliationScheduler:
    def __init__(self, jobs: SyncJobRepository, channels: WebhookChannelRepository):
        self.jobs = jobs
        self.channels = channels

    async def tick(self, queue_pull: bool = True) -> dict[str, Any]:
        by_agency = await self.channels.list_agency_channel_ids()
        requested_at = datetime.now(UTC).isoformat()
        queued_renew = queued_pull = 0

        for agency_id, channel_row_ids in by_agency.items():
            await self.jobs.enqueue(
                agency_id,
                JobProvider.CALENDAR,
                KIND_WATCH_RENEW_ALL,
                {"source": "cron-tick", "requested_at": requested_at},
            )
            queued_renew += 1

            if not queue_pull:
                continue
            for row_id in channel_row_ids[:MAX_PULLS_PER_AGENCY]:
                await self.jobs.enqueue(
                    agency_id,
                    JobProvider.CALENDAR,
                    KIND_CALENDAR_PULL,
                    {"channel_id": row_id, "source": "cron-tick", "requested_at": requested_at},
                )
                queued_pull += 1

        logger.info(
            "Reconciliation tick queued jobs",
            agencies=len(by_agency),
            queued_renew=queued_renew,
            queued_pull=queued_pull,
        )
        return {"agencies": len(by_agency), "queued_renew": queued_renew, "queued_pull": queued_pull}
