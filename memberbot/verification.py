from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

from .cache import MemberCache, normalize_email
from .store import MembershipStore, StoreError, VerifiedMember

LOGGER = logging.getLogger(__name__)

VERIFY_REASON = "Membership verification"


@dataclass
class SagaStep:
    name: str
    action: Callable[[], Awaitable[Any]]
    compensate: Optional[Callable[[], Awaitable[Any]]] = None


class SagaError(Exception):
    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"Step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause


@dataclass
class Saga:
    """Ordered steps with a best-effort undo for each completed step.

    On failure the compensations of the steps that already succeeded run in
    reverse order. A failing compensation is logged and the rest still run.
    """

    name: str
    steps: List[SagaStep] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    compensated: List[str] = field(default_factory=list)

    def add_step(
        self,
        name: str,
        action: Callable[[], Awaitable[Any]],
        compensate: Optional[Callable[[], Awaitable[Any]]] = None,
    ) -> "Saga":
        self.steps.append(SagaStep(name, action, compensate))
        return self

    async def run(self) -> None:
        done: List[SagaStep] = []
        for step in self.steps:
            try:
                await step.action()
            except Exception as exc:
                LOGGER.warning("Saga %s step %s failed: %s", self.name, step.name, exc)
                await self._rollback(done)
                raise SagaError(step.name, exc) from exc
            done.append(step)
            self.completed.append(step.name)

    async def _rollback(self, done: List[SagaStep]) -> None:
        for step in reversed(done):
            if step.compensate is None:
                continue
            try:
                await step.compensate()
                self.compensated.append(step.name)
            except Exception as exc:
                LOGGER.error(
                    "Saga %s could not compensate step %s: %s", self.name, step.name, exc
                )


class VerificationOutcome(enum.Enum):
    VERIFIED = "verified"
    ALREADY_VERIFIED = "already_verified"
    RESTORED = "restored"
    FAILED = "failed"


@dataclass
class VerificationResult:
    outcome: VerificationOutcome
    reason: str | None = None
    role: Any = None
    record: VerifiedMember | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not VerificationOutcome.FAILED


def _failed(reason: str, role: Any = None) -> VerificationResult:
    return VerificationResult(VerificationOutcome.FAILED, reason=reason, role=role)


def _has_role(member: Any, role_id: int) -> bool:
    return any(getattr(r, "id", None) == role_id for r in getattr(member, "roles", []))


async def resolve_member(guild: Any, user_id: int) -> Any | None:
    member = guild.get_member(user_id)
    if member:
        return member
    try:
        return await guild.fetch_member(user_id)
    except Exception as exc:
        LOGGER.debug("Member %s not found in guild %s: %s", user_id, guild.id, exc)
        return None


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class VerificationService:
    """Binds a Discord account to a roster entry.

    The role is granted before the row is written, never the other way
    round, so a failed write can be undone by removing the role again.
    """

    def __init__(self, store: MembershipStore, cache: MemberCache, member_role_id: int):
        self.store = store
        self.cache = cache
        self.member_role_id = member_role_id

    async def verify(
        self, guild: Any, user_id: int, username: str, email: str
    ) -> VerificationResult:
        email = normalize_email(email)
        if not self.store.is_available():
            LOGGER.warning("Verify user=%s rejected: Supabase disabled", username)
            return _failed("store_unavailable")
        if guild is None:
            LOGGER.error("Verify user=%s rejected: guild not found", username)
            return _failed("guild_missing")
        role = guild.get_role(self.member_role_id)
        if role is None:
            LOGGER.error(
                "Verify user=%s rejected: member role %s not found",
                username,
                self.member_role_id,
            )
            return _failed("role_missing")
        member = await resolve_member(guild, user_id)
        if member is None:
            LOGGER.error("Verify user=%s rejected: not a guild member", username)
            return _failed("member_missing", role)

        try:
            existing = await self.store.get_verified_member(str(user_id))
        except StoreError as exc:
            LOGGER.error("Verify user=%s lookup failed: %s", username, exc)
            return _failed("store_error", role)
        if existing:
            return await self._already_verified(member, role, username, existing)

        try:
            entry = await self._lookup_roster(email)
        except StoreError as exc:
            LOGGER.error("Verify user=%s roster refresh failed: %s", username, exc)
            return _failed("store_error", role)
        if entry is None:
            LOGGER.info("Verify user=%s rejected: email not on roster", username)
            return _failed("not_eligible", role)
        if not entry.full_name:
            LOGGER.error("Verify user=%s rejected: roster entry has no name", username)
            return _failed("roster_incomplete", role)

        record = VerifiedMember(
            discord_id=str(user_id),
            email=email,
            full_name=entry.full_name,
            end_date=entry.end_date,
            discord_username=username,
            verified_at=utcnow_iso(),
        )
        saga = (
            Saga(f"verify:{user_id}")
            .add_step(
                "grant_role",
                lambda: member.add_roles(role, reason=VERIFY_REASON),
                lambda: member.remove_roles(role, reason="Verification rolled back"),
            )
            .add_step("record_member", lambda: self.store.upsert_verified_member(record))
        )
        try:
            await saga.run()
        except SagaError as exc:
            reason = (
                "role_grant_failed"
                if exc.step == "grant_role"
                else "record_write_failed"
            )
            LOGGER.error(
                "Verify user=%s failed at %s: %s (rolled back: %s)",
                username,
                exc.step,
                exc.cause,
                ", ".join(saga.compensated) or "nothing",
            )
            return _failed(reason, role)

        LOGGER.info("Verify user=%s succeeded for %s", username, email)
        return VerificationResult(VerificationOutcome.VERIFIED, role=role, record=record)

    async def _lookup_roster(self, email: str):
        await self.cache.refresh()
        entry = self.cache.get_entry(email)
        if entry is None:
            # Roster rows added since the last refresh
            await self.cache.refresh(force=True)
            entry = self.cache.get_entry(email)
        return entry

    async def _already_verified(
        self, member: Any, role: Any, username: str, existing: VerifiedMember
    ) -> VerificationResult:
        if _has_role(member, self.member_role_id):
            LOGGER.info("Verify user=%s already verified", username)
            return VerificationResult(
                VerificationOutcome.ALREADY_VERIFIED, role=role, record=existing
            )
        try:
            await member.add_roles(role, reason="Restoring verified member role")
        except Exception as exc:
            LOGGER.error("Verify user=%s unable to restore role: %s", username, exc)
            return VerificationResult(
                VerificationOutcome.ALREADY_VERIFIED,
                reason="restore_failed",
                role=role,
                record=existing,
            )
        LOGGER.info("Verify user=%s restored missing member role", username)
        return VerificationResult(VerificationOutcome.RESTORED, role=role, record=existing)
