import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from supabase import Client, create_client

MEMBER_LIST_TABLE = "member_list"
VERIFIED_MEMBERS_TABLE = "verified_members"
EXPIRING_MEMBERS_FUNCTION = "get_expiring_members"
VERIFIED_COLUMNS = (
    "discord_id, email, full_name, end_date, discord_username, verified_at"
)


class StoreError(Exception):
    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class StoreUnavailableError(StoreError):
    pass


@dataclass(frozen=True)
class RosterEntry:
    email: str
    full_name: str
    end_date: str | None = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RosterEntry":
        return cls(
            email=str(row.get("email") or "").strip().lower(),
            full_name=str(row.get("full_name") or "").strip(),
            end_date=row.get("end_date"),
        )


@dataclass
class VerifiedMember:
    discord_id: str
    email: str | None = None
    full_name: str | None = None
    end_date: str | None = None
    discord_username: str | None = None
    verified_at: str | None = None
    # Value exactly as returned by the store; older rows hold an integer.
    raw_discord_id: Any = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "VerifiedMember":
        raw_id = row.get("discord_id")
        return cls(
            discord_id=str(raw_id) if raw_id is not None else "",
            email=row.get("email"),
            full_name=row.get("full_name"),
            end_date=row.get("end_date"),
            discord_username=row.get("discord_username"),
            verified_at=row.get("verified_at"),
            raw_discord_id=raw_id,
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "discord_id": self.discord_id,
            "email": self.email,
            "full_name": self.full_name,
            "end_date": self.end_date,
            "discord_username": self.discord_username,
            "verified_at": self.verified_at,
        }


class MembershipStore:
    """Access to the hosted membership database.

    The Supabase client is only built on first use, so a bot configured
    without store credentials never touches the network. Client calls are
    blocking and run in a worker thread.
    """

    def __init__(self, url: str | None, key: str | None):
        self._url = url
        self._key = key
        self._client: Client | None = None

    def is_available(self) -> bool:
        return bool(self._url and self._key)

    def client(self) -> Client:
        if not self.is_available():
            raise StoreUnavailableError("Supabase is not configured")
        if self._client is None:
            try:
                self._client = create_client(self._url, self._key)
            except Exception as exc:
                raise StoreError(
                    f"Supabase client setup failed: {exc}", "connect"
                ) from exc
        return self._client

    async def _execute(
        self, operation: str, build: Callable[[Client], Any]
    ) -> List[Dict[str, Any]]:
        client = self.client()
        try:
            query = build(client)
            response = await asyncio.to_thread(query.execute)
        except Exception as exc:
            raise StoreError(f"{operation} failed: {exc}", operation) from exc
        data = getattr(response, "data", None)
        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        return list(data)

    async def fetch_roster(self) -> List[RosterEntry]:
        rows = await self._execute(
            "fetch_roster",
            lambda c: c.table(MEMBER_LIST_TABLE).select("email, full_name, end_date"),
        )
        return [RosterEntry.from_row(row) for row in rows if row.get("email")]

    async def get_verified_member(self, discord_id: str) -> Optional[VerifiedMember]:
        rows = await self._execute(
            "get_verified_member",
            lambda c: c.table(VERIFIED_MEMBERS_TABLE)
            .select(VERIFIED_COLUMNS)
            .eq("discord_id", str(discord_id))
            .limit(1),
        )
        return VerifiedMember.from_row(rows[0]) if rows else None

    async def find_verified_member_by_username(
        self, username: str
    ) -> Optional[VerifiedMember]:
        rows = await self._execute(
            "find_verified_member_by_username",
            lambda c: c.table(VERIFIED_MEMBERS_TABLE)
            .select(VERIFIED_COLUMNS)
            .eq("discord_username", username)
            .limit(1),
        )
        return VerifiedMember.from_row(rows[0]) if rows else None

    async def list_verified_members(self) -> List[VerifiedMember]:
        rows = await self._execute(
            "list_verified_members",
            lambda c: c.table(VERIFIED_MEMBERS_TABLE).select(VERIFIED_COLUMNS),
        )
        return [VerifiedMember.from_row(row) for row in rows]

    async def fetch_expiring_members(self, expire_date: str) -> List[VerifiedMember]:
        # Server-side function returns discord_id as text.
        rows = await self._execute(
            "fetch_expiring_members",
            lambda c: c.rpc(EXPIRING_MEMBERS_FUNCTION, {"expire_date": expire_date}),
        )
        return [VerifiedMember.from_row(row) for row in rows]

    async def upsert_verified_member(self, member: VerifiedMember) -> None:
        await self._execute(
            "upsert_verified_member",
            lambda c: c.table(VERIFIED_MEMBERS_TABLE).upsert(
                member.to_row(), on_conflict="discord_id"
            ),
        )

    async def delete_verified_member(self, discord_id: str) -> None:
        await self._execute(
            "delete_verified_member",
            lambda c: c.table(VERIFIED_MEMBERS_TABLE)
            .delete()
            .eq("discord_id", str(discord_id)),
        )

    async def update_discord_id(self, old_id: Any, new_id: str) -> None:
        await self._execute(
            "update_discord_id",
            lambda c: c.table(VERIFIED_MEMBERS_TABLE)
            .update({"discord_id": new_id})
            .eq("discord_id", old_id),
        )
