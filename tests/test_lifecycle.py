import asyncio
from datetime import date

from memberbot import audit
from memberbot.config import BotConfig
from memberbot.lifecycle import (
    MembershipLifecycle,
    expired_before,
    expires_on,
    run_batch,
)
from memberbot.store import MembershipStore
from tests.fakes import (
    FakeClient,
    FakeGuild,
    FakeMember,
    FakeRole,
    FakeStore,
    FakeUser,
    verified,
)

GUILD_ID = 1
ROLE_ID = 555
TODAY = date(2025, 3, 14)
YESTERDAY = "13/03/25"
TODAY_TEXT = "14/03/25"
TOMORROW = "15/03/25"


def make_config(**overrides):
    values = dict(
        token="dummy",
        log_level="INFO",
        guild_id=GUILD_ID,
        member_role_id=ROLE_ID,
        supabase_url="https://example.supabase.co",
        supabase_key="key",
    )
    values.update(overrides)
    return BotConfig(**values)


def make_lifecycle(store, client):
    return MembershipLifecycle(client, store, make_config())


def test_predicates_select_by_date():
    members = [verified(1, YESTERDAY), verified(2, TODAY_TEXT), verified(3, TOMORROW)]
    members.append(verified(4, "not a date"))

    assert [m.discord_id for m in members if expires_on(TODAY)(m)] == ["2"]
    assert [m.discord_id for m in members if expired_before(TODAY)(m)] == ["1"]


def test_run_batch_isolates_failures():
    async def action(member):
        if member.discord_id == "2":
            raise RuntimeError("boom")
        if member.discord_id == "3":
            return False
        return True

    members = [verified(1, TODAY_TEXT), verified(2, TODAY_TEXT), verified(3, TODAY_TEXT)]
    result = asyncio.run(run_batch(members, action))

    assert (result.found, result.succeeded, result.failed) == (3, 1, 2)
    assert result.failures == ["2", "3"]


def test_notify_sends_only_to_members_expiring_today():
    store = FakeStore(
        verified=[verified(1, YESTERDAY), verified(2, TODAY_TEXT, name="Alice A")]
    )
    # The server-side function may return more rows than asked for.
    store.expiring = list(store.verified.values())
    alice = FakeUser(2, "alice")
    client = FakeClient(users=[FakeUser(1), alice])

    report = asyncio.run(make_lifecycle(store, client).notify_expiring(today=TODAY))

    assert (report.found, report.succeeded, report.failed) == (1, 1, 0)
    assert report.run_date == TODAY_TEXT
    embed = alice.sent_embeds[0]
    assert embed.title == "Membership Expiration Notice"
    assert "Alice A" in embed.description
    assert "DUCA" in embed.description
    assert embed.footer.text == "DUCA Membership System"


def test_notify_counts_closed_dms_as_failures():
    store = FakeStore(verified=[verified(1, TODAY_TEXT), verified(2, TODAY_TEXT)])
    client = FakeClient(users=[FakeUser(1, closed_dms=True), FakeUser(2)])

    report = asyncio.run(make_lifecycle(store, client).notify_expiring(today=TODAY))

    assert (report.found, report.succeeded, report.failed) == (2, 1, 1)


def test_notify_skips_when_store_unavailable():
    store = FakeStore(verified=[verified(1, TODAY_TEXT)], available=False)
    client = FakeClient(users=[FakeUser(1)])

    report = asyncio.run(make_lifecycle(store, client).notify_expiring(today=TODAY))

    assert report.skipped == "store unavailable"
    assert not report.ran
    assert client.fetched_users == []


def test_notify_reports_store_error():
    store = FakeStore(verified=[verified(1, TODAY_TEXT)])
    store.fail_list = True

    report = asyncio.run(
        make_lifecycle(store, FakeClient()).notify_expiring(today=TODAY)
    )

    assert report.skipped == "store error"
    assert report.found == 0


def make_guild(*members):
    return FakeGuild(
        id=GUILD_ID,
        roles=[FakeRole(ROLE_ID, "Member")],
        members={m.id: m for m in members},
    )


def test_cleanup_removes_only_expired_members():
    store = FakeStore(
        verified=[verified(1, YESTERDAY), verified(2, TODAY_TEXT), verified(3, TOMORROW)]
    )
    role = FakeRole(ROLE_ID, "Member")
    members = [FakeMember(i, roles=[role]) for i in (1, 2, 3)]
    guild = FakeGuild(id=GUILD_ID, roles=[role], members={m.id: m for m in members})

    report = asyncio.run(
        make_lifecycle(store, FakeClient(guilds=[guild])).cleanup_expired(today=TODAY)
    )

    assert (report.found, report.succeeded, report.failed) == (1, 1, 0)
    assert store.deleted == ["1"]
    assert members[0].removed_roles == [ROLE_ID]
    assert members[1].roles == [role]
    assert set(store.verified) == {"2", "3"}


def test_cleanup_deletes_row_when_member_left_guild():
    store = FakeStore(verified=[verified(7, YESTERDAY)])
    guild = make_guild()

    report = asyncio.run(
        make_lifecycle(store, FakeClient(guilds=[guild])).cleanup_expired(today=TODAY)
    )

    assert report.succeeded == 1
    assert store.deleted == ["7"]


def test_cleanup_continues_after_delete_failure():
    store = FakeStore(verified=[verified(1, YESTERDAY), verified(2, "01/01/25")])
    store.fail_delete_ids = {"1"}
    guild = make_guild(FakeMember(1), FakeMember(2))

    report = asyncio.run(
        make_lifecycle(store, FakeClient(guilds=[guild])).cleanup_expired(today=TODAY)
    )

    assert (report.found, report.succeeded, report.failed) == (2, 1, 1)
    assert store.deleted == ["2"]


def test_cleanup_uses_fetched_role_when_not_cached():
    store = FakeStore(verified=[verified(1, YESTERDAY)])
    role = FakeRole(ROLE_ID, "Member")
    member = FakeMember(1, roles=[role])
    guild = FakeGuild(id=GUILD_ID, api_roles=[role], members={1: member})

    report = asyncio.run(
        make_lifecycle(store, FakeClient(guilds=[guild])).cleanup_expired(today=TODAY)
    )

    assert report.succeeded == 1
    assert member.removed_roles == [ROLE_ID]


def test_cleanup_aborts_without_guild_or_role():
    store = FakeStore(verified=[verified(1, YESTERDAY)])

    no_guild = asyncio.run(
        make_lifecycle(store, FakeClient()).cleanup_expired(today=TODAY)
    )
    no_role = asyncio.run(
        make_lifecycle(
            store, FakeClient(guilds=[FakeGuild(id=GUILD_ID)])
        ).cleanup_expired(today=TODAY)
    )

    assert no_guild.skipped == "guild not found"
    assert no_role.skipped == "member role not found"
    assert store.deleted == []


def test_job_runs_are_recorded(audit_db):
    store = FakeStore(verified=[verified(1, TODAY_TEXT)])
    client = FakeClient(users=[FakeUser(1)])

    asyncio.run(
        make_lifecycle(store, client).notify_expiring(trigger="manual", today=TODAY)
    )

    run = audit.JobRun.get()
    assert (run.job, run.trigger, run.run_date) == ("notify", "manual", TODAY_TEXT)
    assert (run.found, run.succeeded, run.failed) == (1, 1, 0)
    assert run.finished_at is not None


def test_repair_discord_ids():
    store = FakeStore(
        verified=[
            verified(111, TOMORROW, raw=111),
            verified(222, TOMORROW),
            verified("bad", TOMORROW, raw="abc"),
            verified(333, TOMORROW, raw=333),
        ]
    )
    client = FakeClient(users=[FakeUser(111), FakeUser(222)])

    report = asyncio.run(make_lifecycle(store, client).repair_discord_ids())

    assert report.total == 4
    assert report.fixed == 1
    assert report.already_valid == 1
    # Unresolvable user 333 and the non-numeric id
    assert report.errors == 2
    assert store.id_updates == [(111, "111")]


def test_malformed_store_url_reports_store_error(audit_db):
    store = MembershipStore("not-a-url", "key")
    lifecycle = MembershipLifecycle(FakeClient(), store, make_config())

    report = asyncio.run(lifecycle.notify_expiring(today=TODAY))

    assert report.skipped == "store error"
    run = audit.JobRun.get()
    assert run.skipped == "store error"
