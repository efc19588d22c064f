from __future__ import annotations

import logging
from datetime import datetime, tzinfo
from typing import Any, Awaitable, Callable, Dict, Optional

import aiocron
from croniter import croniter

LOGGER = logging.getLogger(__name__)

JobRunner = Callable[[str], Awaitable[Any]]


def validate_cron(expression: str) -> str:
    """Return ``expression`` if it is a valid five-field cron expression."""
    expression = str(expression).strip()
    if len(expression.split()) != 5 or not croniter.is_valid(expression):
        raise ValueError(f"Invalid cron expression: {expression!r}")
    return expression


def next_fire(expression: str, moment: datetime) -> datetime:
    """Next firing time strictly after ``moment``, in ``moment``'s zone."""
    return croniter(expression, moment).get_next(datetime)


class MembershipScheduler:
    """Runs the notify and cleanup jobs on their cron schedules.

    Each job is an aiocron crontab evaluated in the configured zone. Manual
    triggers call the same runner directly; nothing stops a manual run from
    overlapping a scheduled one.
    """

    def __init__(
        self,
        bot: Any,
        notify: JobRunner,
        cleanup: JobRunner,
        notify_schedule: str,
        cleanup_schedule: str,
        tz: tzinfo,
    ):
        self.bot = bot
        self.tz = tz
        self.jobs: Dict[str, tuple[str, JobRunner]] = {
            "notify": (validate_cron(notify_schedule), notify),
            "cleanup": (validate_cron(cleanup_schedule), cleanup),
        }
        self.crons: Dict[str, aiocron.Cron] = {}

    @property
    def is_running(self) -> bool:
        return bool(self.crons)

    def start(self) -> None:
        """Create the crontabs; must be called from a running event loop."""
        if self.crons:
            LOGGER.warning("Membership scheduler already running")
            return
        for name, (expression, _runner) in self.jobs.items():
            cron = aiocron.crontab(
                expression,
                func=self._run_scheduled,
                args=(name,),
                start=False,
                tz=self.tz,
            )
            cron.start()
            self.crons[name] = cron
            LOGGER.info(
                "Scheduled %s (%s %s), next run at %s",
                name,
                expression,
                self.tz,
                self.next_run(name).isoformat(),
            )

    async def stop(self) -> None:
        for cron in self.crons.values():
            cron.stop()
        self.crons = {}
        LOGGER.info("Membership scheduler stopped")

    def next_run(self, name: str, now: Optional[datetime] = None) -> datetime:
        expression, _runner = self.jobs[name]
        return next_fire(expression, now or datetime.now(self.tz))

    async def _run_scheduled(self, name: str) -> None:
        await self.bot.wait_until_ready()
        if self.bot.is_closed():
            return
        _expression, runner = self.jobs[name]
        try:
            await runner("scheduled")
        except Exception as exc:
            LOGGER.exception("Scheduled %s run failed: %s", name, exc)

    async def trigger_notify(self) -> Any:
        LOGGER.info("Manual trigger: checking expiring memberships")
        return await self.jobs["notify"][1]("manual")

    async def trigger_cleanup(self) -> Any:
        LOGGER.info("Manual trigger: cleaning up expired memberships")
        return await self.jobs["cleanup"][1]("manual")
