from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional

import discord

from . import audit
from .config import BotConfig
from .dates import format_ddmmyy, parse_ddmmyy, today_in
from .store import MembershipStore, StoreError, StoreUnavailableError, VerifiedMember

LOGGER = logging.getLogger(__name__)

NOTICE_COLOR = 0xFF9500
DatePredicate = Callable[[VerifiedMember], bool]
MemberAction = Callable[[VerifiedMember], Awaitable[Optional[bool]]]


def expires_on(today: date) -> DatePredicate:
    def predicate(member: VerifiedMember) -> bool:
        end = parse_ddmmyy(member.end_date)
        return end is not None and end == today

    return predicate


def expired_before(today: date) -> DatePredicate:
    def predicate(member: VerifiedMember) -> bool:
        end = parse_ddmmyy(member.end_date)
        return end is not None and end < today

    return predicate


def member_label(member: VerifiedMember) -> str:
    name = member.discord_username or member.full_name
    return f"{name} ({member.discord_id})" if name else member.discord_id


@dataclass
class BatchResult:
    found: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)


async def run_batch(
    members: Iterable[VerifiedMember], action: MemberAction, job: str = "batch"
) -> BatchResult:
    """Apply ``action`` to each member in turn.

    One member failing never stops the batch. An action that raises or
    returns False counts as a failure.
    """
    result = BatchResult()
    for member in members:
        result.found += 1
        try:
            outcome = await action(member)
        except Exception as exc:
            LOGGER.error("%s failed for %s: %s", job, member_label(member), exc)
            outcome = False
        if outcome is False:
            result.failed += 1
            result.failures.append(member.discord_id)
        else:
            result.succeeded += 1
    return result


class JobSkipped(Exception):
    """A job precondition failed; the run ends without touching any member."""


@dataclass
class JobReport:
    job: str
    trigger: str
    run_date: str
    found: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: str | None = None

    @property
    def ran(self) -> bool:
        return self.skipped is None


@dataclass
class JobDefinition:
    name: str
    fetch: Callable[[date], Awaitable[List[VerifiedMember]]]
    predicate: Callable[[date], DatePredicate]
    # Builds the per-member action once preconditions hold; raises JobSkipped.
    prepare: Callable[[], Awaitable[MemberAction]]


@dataclass
class IdRepairReport:
    total: int = 0
    fixed: int = 0
    already_valid: int = 0
    errors: int = 0


class MembershipLifecycle:
    """Expiration notices and cleanup for verified members.

    Both jobs share one routine: fetch candidate rows, keep those matching a
    date predicate, apply a per-member action. The scheduler and the manual
    admin commands call the same entry points.
    """

    def __init__(self, client: Any, store: MembershipStore, config: BotConfig):
        self.client = client
        self.store = store
        self.config = config

    def today(self) -> date:
        return today_in(self.config.tzinfo)

    async def run_job(
        self, job: JobDefinition, trigger: str = "scheduled", today: date | None = None
    ) -> JobReport:
        today = today or self.today()
        run_date = format_ddmmyy(today)
        started_at = audit.utcnow_naive()
        report = JobReport(job=job.name, trigger=trigger, run_date=run_date)
        LOGGER.info("Membership %s (%s) starting for %s", job.name, trigger, run_date)
        try:
            if not self.store.is_available():
                raise StoreUnavailableError("Supabase is not configured")
            action = await job.prepare()
            candidates = await job.fetch(today)
            matches = job.predicate(today)
            selected = [member for member in candidates if matches(member)]
            LOGGER.info(
                "Membership %s found %s matching member(s)", job.name, len(selected)
            )
            batch = await run_batch(selected, action, job=job.name)
            report.found = batch.found
            report.succeeded = batch.succeeded
            report.failed = batch.failed
        except StoreUnavailableError:
            LOGGER.warning("Membership %s skipped: Supabase not available", job.name)
            report.skipped = "store unavailable"
        except StoreError as exc:
            LOGGER.error("Membership %s aborted, database error: %s", job.name, exc)
            report.skipped = "store error"
        except JobSkipped as exc:
            LOGGER.error("Membership %s skipped: %s", job.name, exc)
            report.skipped = str(exc)
        LOGGER.info(
            "Membership %s (%s) finished: found=%s succeeded=%s failed=%s",
            job.name,
            trigger,
            report.found,
            report.succeeded,
            report.failed,
        )
        self._record(report, started_at)
        return report

    def _record(self, report: JobReport, started_at: datetime) -> None:
        if not audit.is_initialized():
            return
        try:
            audit.record_job_run(
                report.job,
                report.trigger,
                report.run_date,
                started_at,
                found=report.found,
                succeeded=report.succeeded,
                failed=report.failed,
                skipped=report.skipped,
            )
        except Exception as exc:
            LOGGER.warning("Failed recording %s job run: %s", report.job, exc)

    # -- notify ---------------------------------------------------------

    def notify_job(self) -> JobDefinition:
        async def prepare() -> MemberAction:
            return self.send_expiration_notice

        return JobDefinition(
            name="notify",
            fetch=lambda today: self.store.fetch_expiring_members(format_ddmmyy(today)),
            predicate=expires_on,
            prepare=prepare,
        )

    async def notify_expiring(
        self, trigger: str = "scheduled", today: date | None = None
    ) -> JobReport:
        return await self.run_job(self.notify_job(), trigger, today)

    def build_expiration_notice(self, member: VerifiedMember) -> discord.Embed:
        messages = self.config.messages
        notice = messages["expiration_notice"]
        club = str(messages.get("organization_name", ""))
        description = (
            notice["description"]
            .replace("{full_name}", member.full_name or member.discord_username or "")
            .replace("{club}", club)
        )
        embed = discord.Embed(
            title=notice["title"],
            description=description,
            color=NOTICE_COLOR,
            timestamp=discord.utils.utcnow(),
        )
        bot_user = getattr(self.client, "user", None)
        icon_url = bot_user.display_avatar.url if bot_user else None
        embed.set_footer(text=notice["footer"].replace("{club}", club), icon_url=icon_url)
        return embed

    async def send_expiration_notice(self, member: VerifiedMember) -> bool:
        user_id = int(member.discord_id)
        user = self.client.get_user(user_id)
        if user is None:
            user = await self.client.fetch_user(user_id)
        await user.send(embed=self.build_expiration_notice(member))
        LOGGER.info("Sent expiration notice to %s", member_label(member))
        return True

    # -- cleanup --------------------------------------------------------

    def cleanup_job(self) -> JobDefinition:
        return JobDefinition(
            name="cleanup",
            fetch=lambda _today: self.store.list_verified_members(),
            predicate=expired_before,
            prepare=self._prepare_cleanup,
        )

    async def cleanup_expired(
        self, trigger: str = "scheduled", today: date | None = None
    ) -> JobReport:
        return await self.run_job(self.cleanup_job(), trigger, today)

    async def resolve_member_role(self, guild: Any) -> Any | None:
        role = guild.get_role(self.config.member_role_id)
        if role is not None:
            return role
        LOGGER.info("Member role not cached, fetching roles from the API")
        try:
            roles = await guild.fetch_roles()
        except Exception as exc:
            LOGGER.error("Failed to fetch roles for guild %s: %s", guild.id, exc)
            return None
        return next((r for r in roles if r.id == self.config.member_role_id), None)

    async def _prepare_cleanup(self) -> MemberAction:
        guild = self.client.get_guild(self.config.guild_id)
        if guild is None:
            raise JobSkipped("guild not found")
        role = await self.resolve_member_role(guild)
        if role is None:
            available = ", ".join(
                f'"{r.name}" ({r.id})' for r in getattr(guild, "roles", [])
            )
            LOGGER.error("Member role not found. Available roles: %s", available)
            raise JobSkipped("member role not found")

        async def action(member: VerifiedMember) -> bool:
            return await self.remove_expired_member(guild, role, member)

        return action

    async def remove_expired_member(
        self, guild: Any, role: Any, member: VerifiedMember
    ) -> bool:
        try:
            discord_member = guild.get_member(int(member.discord_id))
            if discord_member is None:
                discord_member = await guild.fetch_member(int(member.discord_id))
            if any(r.id == role.id for r in discord_member.roles):
                await discord_member.remove_roles(role, reason="Membership expired")
                LOGGER.info("Removed member role from %s", member_label(member))
        except Exception as exc:
            # The row is deleted regardless; role removal is opportunistic.
            LOGGER.warning(
                "Could not remove role from %s (member may have left): %s",
                member_label(member),
                exc,
            )
        await self.store.delete_verified_member(member.discord_id)
        LOGGER.info("Removed %s from verified members", member_label(member))
        return True

    # -- discord id repair ----------------------------------------------

    async def repair_discord_ids(self) -> IdRepairReport:
        """Rewrite integer ``discord_id`` values that resolve to a user as text.

        Raises StoreError if the member list cannot be read.
        """
        report = IdRepairReport()
        for member in await self.store.list_verified_members():
            report.total += 1
            raw = member.raw_discord_id
            try:
                if isinstance(raw, int) and not isinstance(raw, bool):
                    await self.client.fetch_user(raw)
                    await self.store.update_discord_id(raw, str(raw))
                    LOGGER.info(
                        "Fixed discord id for %s: %s -> %r",
                        member_label(member),
                        raw,
                        str(raw),
                    )
                    report.fixed += 1
                elif isinstance(raw, str) and raw.isdigit():
                    await self.client.fetch_user(int(raw))
                    report.already_valid += 1
                else:
                    LOGGER.error(
                        "Unexpected discord_id %r for %s", raw, member_label(member)
                    )
                    report.errors += 1
            except Exception as exc:
                LOGGER.warning(
                    "Could not repair id for %s: %s", member_label(member), exc
                )
                report.errors += 1
        LOGGER.info(
            "Discord id repair finished: fixed=%s valid=%s errors=%s",
            report.fixed,
            report.already_valid,
            report.errors,
        )
        return report

