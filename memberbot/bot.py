from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import discord
from discord import app_commands
from discord.ext import commands

from . import audit
from .cache import MemberCache
from .config import BotConfig, load_config
from .lifecycle import JobReport, MembershipLifecycle
from .scheduler import MembershipScheduler
from .store import MembershipStore, StoreError
from .verification import VerificationOutcome, VerificationResult, VerificationService

# Default to INFO until the configured level is applied at startup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
)
LOGGER = logging.getLogger(__name__)

ERROR_COLOR = 0xFF3333
SUCCESS_COLOR = 0x33CC33
INFO_COLOR = 0x00AEEF
ADMIN_FOOTER = "Admin Command"
EMBED_DESCRIPTION_LIMIT = 4000


def user_label(user: Any) -> str:
    name = getattr(user, "name", None) or getattr(user, "display_name", None)
    user_id = getattr(user, "id", None)
    return f"{name} ({user_id})" if name else str(user_id)


def _fill(template: str, **values: str) -> str:
    for key, value in values.items():
        template = template.replace("{" + key + "}", value)
    return template


def build_verify_embed(
    result: VerificationResult, messages: Dict[str, Any]
) -> discord.Embed:
    verify = messages["verify"]
    club = str(messages.get("organization_name", ""))
    role = result.role.mention if result.role is not None else "Member"
    footer = _fill(verify["footer"], club=club)
    if result.outcome is VerificationOutcome.VERIFIED:
        embed = discord.Embed(
            title=verify["title"],
            description=_fill(
                verify["success"],
                role=role,
                announcements=verify["member_announcements_channel"],
                resources=verify["member_resources_channel"],
            ),
            color=SUCCESS_COLOR,
        )
        embed.set_footer(text=footer)
        return embed
    if result.ok:
        embed = discord.Embed(
            title=verify["title"],
            description=_fill(verify["already_verified"], role=role),
            color=INFO_COLOR,
        )
        embed.set_footer(text=footer)
        return embed
    # Every failure looks the same to the user; the reason is only logged.
    embed = discord.Embed(
        title=verify["title"], description=verify["error"], color=ERROR_COLOR
    )
    embed.add_field(name="Known Issues", value=verify["known_issues"], inline=False)
    embed.set_footer(text="exit status: 1")
    return embed


def admin_embed(title: str, description: str, color: int) -> discord.Embed:
    embed = discord.Embed(title=title, description=description, color=color)
    embed.set_footer(text=ADMIN_FOOTER)
    return embed


def build_job_embed(title: str, report: JobReport, done_label: str) -> discord.Embed:
    if report.skipped:
        return admin_embed(
            f"❌ {title}", f"Run skipped: {report.skipped}", ERROR_COLOR
        )
    if report.found == 0:
        return admin_embed(
            f"ℹ️ {title}",
            f"No matching memberships for {report.run_date}",
            INFO_COLOR,
        )
    return admin_embed(
        f"✅ {title}",
        f"**Date:** {report.run_date}\n"
        f"**Found:** {report.found} membership(s)\n"
        f"**{done_label}:** {report.succeeded}\n"
        f"**Failed:** {report.failed}",
        SUCCESS_COLOR,
    )


def _truncate(text: str, limit: int = EMBED_DESCRIPTION_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 4] + "\n..."


async def role_diagnostics(guild: Any, role_id: int) -> List[str]:
    """Report how the member role is seen through the cache and the API."""
    lines: List[str] = []
    cached = guild.get_role(role_id)
    if cached:
        lines.append(f'✅ **Cache**: Found "{cached.name}" ({cached.id})')
    else:
        lines.append("❌ **Cache**: Role not found in cache")

    fetched = None
    try:
        roles = await guild.fetch_roles()
        fetched = next((r for r in roles if r.id == role_id), None)
        if fetched:
            lines.append(f'✅ **API Fetch**: Found "{fetched.name}" ({fetched.id})')
        else:
            lines.append("❌ **API Fetch**: Role not returned by the API")
    except Exception as exc:
        lines.append(f"❌ **API Fetch**: Error - {exc}")

    me = guild.me
    perms = me.guild_permissions
    lines.append(
        f"\n**Bot permissions:** Manage Roles: {perms.manage_roles}, "
        f"Administrator: {perms.administrator}"
    )

    all_roles = sorted(
        (r for r in guild.roles if r.id != guild.id),
        key=lambda r: r.position,
        reverse=True,
    )
    listing = "\n".join(
        f'"{r.name}" ({r.id}) - Position: {r.position}' for r in all_roles
    )
    lines.append(f"\n**All Roles in Server:**\n{listing or 'none'}")

    top = me.top_role
    lines.append(
        f'\n**Bot\'s Highest Role:** "{top.name}" ({top.id}) - Position: {top.position}'
    )
    target = cached or fetched
    if target is not None:
        manageable = top.position > target.position
        verdict = "✅ Yes" if manageable else "❌ No (move the bot role above it)"
        lines.append(f"**Can manage member role:** {verdict}")
    return lines


class MembershipBot(commands.Bot):
    AUDIT_CLEANUP_INTERVAL = 24 * 60 * 60

    def __init__(self, config: BotConfig, store: MembershipStore | None = None):
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True
        super().__init__(command_prefix="!", intents=intents, help_command=None)
        self.config = config
        self.store = store or MembershipStore(config.supabase_url, config.supabase_key)
        self.member_cache = MemberCache(
            self.store,
            refresh_interval=timedelta(days=config.roster_refresh_days).total_seconds(),
        )
        self.verification = VerificationService(
            self.store, self.member_cache, config.member_role_id
        )
        self.lifecycle = MembershipLifecycle(self, self.store, config)
        self.scheduler = MembershipScheduler(
            self,
            notify=self.lifecycle.notify_expiring,
            cleanup=self.lifecycle.cleanup_expired,
            notify_schedule=config.notify_schedule,
            cleanup_schedule=config.cleanup_schedule,
            tz=config.tzinfo,
        )
        self.audit_cleanup_task: asyncio.Task[None] | None = None

    def managed_guild(self) -> Optional[discord.Guild]:
        return self.get_guild(self.config.guild_id)

    async def setup_hook(self) -> None:
        audit.init_audit_db(self.config.audit_database_path)
        guild = discord.Object(id=self.config.guild_id)
        self.tree.copy_global_to(guild=guild)
        try:
            await self.tree.sync(guild=guild)
            LOGGER.info("Synced application commands for guild %s", guild.id)
        except Exception as exc:
            LOGGER.warning("Failed to sync commands for guild %s: %s", guild.id, exc)
        await self._warm_member_cache()
        self.scheduler.start()
        self.audit_cleanup_task = self.loop.create_task(self._audit_cleanup_loop())

    async def _warm_member_cache(self) -> None:
        try:
            await self.member_cache.refresh()
        except StoreError as exc:
            LOGGER.error("Initial member cache refresh failed: %s", exc)

    async def close(self) -> None:
        await self.scheduler.stop()
        if self.audit_cleanup_task:
            self.audit_cleanup_task.cancel()
            try:
                await self.audit_cleanup_task
            except asyncio.CancelledError:
                pass
        if audit.is_initialized():
            audit.audit_database.close()
        await super().close()

    async def on_ready(self):
        LOGGER.info("Bot ready as %s", self.user)
        club = str(self.config.messages.get("organization_name", ""))
        try:
            await self.change_presence(
                activity=discord.Activity(type=discord.ActivityType.watching, name=club)
            )
        except Exception as exc:
            LOGGER.warning("Failed to set presence: %s", exc)
        if not self.managed_guild():
            LOGGER.warning(
                "Configured guild %s is not visible to the bot", self.config.guild_id
            )

    async def _audit_cleanup_loop(self):
        await self.wait_until_ready()
        while not self.is_closed():
            try:
                deleted = audit.prune_audit(self.config.audit_retention_days)
                if deleted:
                    LOGGER.info("Pruned %s audit rows", deleted)
            except Exception as exc:
                LOGGER.warning("Audit cleanup failed: %s", exc)
            await asyncio.sleep(self.AUDIT_CLEANUP_INTERVAL)


def _record_audit(actor_id: int, action: str, payload: dict | None = None) -> None:
    if not audit.is_initialized():
        return
    try:
        audit.record_audit(actor_id, action, payload)
    except Exception as exc:
        LOGGER.warning("Failed recording audit entry %s: %s", action, exc)


# Command registrations
async def setup_commands(bot: MembershipBot):
    tree = bot.tree

    async def require_admin(interaction: discord.Interaction) -> bool:
        perms = getattr(interaction.user, "guild_permissions", None)
        if interaction.guild is None or perms is None or not perms.administrator:
            await interaction.response.send_message(
                "You do not have permission to use this command.", ephemeral=True
            )
            return False
        return True

    @bot.listen("on_interaction")
    async def log_app_command(interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.application_command:
            return
        cmd = interaction.command
        data = getattr(interaction, "namespace", None)
        try:
            payload = vars(data) if data else {}
        except Exception:
            payload = str(data)
        # Never log submitted emails verbatim at INFO.
        if isinstance(payload, dict) and "email" in payload:
            payload = {**payload, "email": "<redacted>"}
        guild = interaction.guild
        guild_label = f"{guild.name} ({guild.id})" if guild else "direct-message"
        LOGGER.info(
            "Slash command %s by %s in %s with options %s",
            cmd.qualified_name if cmd else "unknown",
            user_label(interaction.user),
            guild_label,
            payload,
        )

    @tree.error
    async def on_app_command_error(
        interaction: discord.Interaction, error: app_commands.AppCommandError
    ):
        if isinstance(error, app_commands.CheckFailure):
            if not interaction.response.is_done():
                await interaction.response.send_message(
                    "You do not have permission to use this command.",
                    ephemeral=True,
                )
            return
        LOGGER.exception(
            "App command error for %s: %s", user_label(interaction.user), error
        )
        embed = discord.Embed(
            title="❌ Error",
            description="An unexpected error occurred. Please try again later.",
            color=ERROR_COLOR,
        )
        try:
            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except Exception as exc:
            LOGGER.warning("Failed sending error response for command: %s", exc)

    @tree.command(
        name="verify",
        description="Verify your membership and redeem the Member role",
    )
    @app_commands.describe(email="The email address associated with your membership")
    async def verify(interaction: discord.Interaction, email: str):
        await interaction.response.defer(ephemeral=True, thinking=True)
        username = getattr(interaction.user, "name", str(interaction.user.id))
        LOGGER.info("Verify request user=%s", user_label(interaction.user))
        try:
            result = await bot.verification.verify(
                bot.managed_guild(), interaction.user.id, username, email
            )
        except Exception as exc:
            LOGGER.exception("Verify user=%s crashed: %s", username, exc)
            result = VerificationResult(VerificationOutcome.FAILED, reason="error")
        await interaction.followup.send(
            embed=build_verify_embed(result, bot.config.messages), ephemeral=True
        )

    @app_commands.default_permissions(administrator=True)
    @tree.command(
        name="check-expiring",
        description="[ADMIN] Check for memberships expiring today and send notices",
    )
    async def check_expiring(interaction: discord.Interaction):
        if not await require_admin(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        report = await bot.scheduler.trigger_notify()
        _record_audit(
            interaction.user.id,
            "check_expiring",
            {"found": report.found, "sent": report.succeeded, "failed": report.failed},
        )
        await interaction.followup.send(
            embed=build_job_embed(
                "Check Expiring Memberships", report, "Notifications sent"
            ),
            ephemeral=True,
        )

    @app_commands.default_permissions(administrator=True)
    @tree.command(
        name="cleanup-expired",
        description="[ADMIN] Remove roles and records of expired memberships",
    )
    async def cleanup_expired(interaction: discord.Interaction):
        if not await require_admin(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        report = await bot.scheduler.trigger_cleanup()
        _record_audit(
            interaction.user.id,
            "cleanup_expired",
            {
                "found": report.found,
                "removed": report.succeeded,
                "failed": report.failed,
            },
        )
        await interaction.followup.send(
            embed=build_job_embed("Cleanup Expired Memberships", report, "Removed"),
            ephemeral=True,
        )

    @app_commands.default_permissions(administrator=True)
    @tree.command(
        name="check-my-id",
        description="[ADMIN] Compare your Discord ID with the stored verification record",
    )
    async def check_my_id(interaction: discord.Interaction):
        if not await require_admin(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        actual_id = str(interaction.user.id)
        username = getattr(interaction.user, "name", "")
        stored = None
        if bot.store.is_available():
            try:
                stored = await bot.store.get_verified_member(actual_id)
                if stored is None and username:
                    stored = await bot.store.find_verified_member_by_username(username)
            except StoreError as exc:
                LOGGER.error("check-my-id user=%s database error: %s", username, exc)
        stored_id = stored.discord_id if stored else "Not found"
        match = stored_id == actual_id
        _record_audit(interaction.user.id, "check_my_id", {"match": match})
        lines = [
            f"**Your Actual Discord ID:** `{actual_id}`",
            f"**Stored Discord ID:** `{stored_id}`",
            f"**Match:** {'✅ Yes' if match else '❌ No'}",
            "",
        ]
        if stored:
            lines.extend(
                [
                    "**Stored Data:**",
                    f"• Username: {stored.discord_username}",
                    f"• Email: {stored.email}",
                    f"• Verified: {stored.verified_at}",
                    f"• Expires: {stored.end_date}",
                ]
            )
        else:
            lines.append("❌ No verification record found")
        embed = discord.Embed(
            title="🔍 Discord ID Check",
            description="\n".join(lines),
            color=SUCCESS_COLOR if match else ERROR_COLOR,
        )
        embed.set_footer(text="Debug Command")
        await interaction.followup.send(embed=embed, ephemeral=True)

    @app_commands.default_permissions(administrator=True)
    @tree.command(
        name="fix-discord-ids",
        description="[ADMIN] Store numeric Discord IDs as text in the database",
    )
    async def fix_discord_ids(interaction: discord.Interaction):
        if not await require_admin(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        title = "Fix Discord IDs"
        if not bot.store.is_available():
            embed = admin_embed(f"❌ {title}", "Supabase is not available", ERROR_COLOR)
            await interaction.followup.send(embed=embed, ephemeral=True)
            return
        try:
            report = await bot.lifecycle.repair_discord_ids()
        except StoreError as exc:
            LOGGER.error("fix-discord-ids database error: %s", exc)
            embed = admin_embed(f"❌ {title}", "Database error occurred", ERROR_COLOR)
            await interaction.followup.send(embed=embed, ephemeral=True)
            return
        _record_audit(
            interaction.user.id,
            "fix_discord_ids",
            {"fixed": report.fixed, "errors": report.errors},
        )
        if report.total == 0:
            embed = admin_embed(f"ℹ️ {title}", "No verified members found", INFO_COLOR)
        else:
            embed = admin_embed(
                f"✅ {title}",
                f"**Total members:** {report.total}\n"
                f"**Fixed:** {report.fixed}\n"
                f"**Already valid:** {report.already_valid}\n"
                f"**Errors:** {report.errors}",
                SUCCESS_COLOR,
            )
        await interaction.followup.send(embed=embed, ephemeral=True)

    @app_commands.default_permissions(administrator=True)
    @tree.command(
        name="check-role",
        description="[ADMIN] Debug member role visibility and bot permissions",
    )
    async def check_role(interaction: discord.Interaction):
        if not await require_admin(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        guild = bot.managed_guild()
        if guild is None:
            await interaction.followup.send("❌ Guild not found", ephemeral=True)
            return
        role_id = bot.config.member_role_id
        lines = await role_diagnostics(guild, role_id)
        _record_audit(interaction.user.id, "check_role")
        LOGGER.info(
            "check-role by %s: %s", user_label(interaction.user), " | ".join(lines[:2])
        )
        embed = discord.Embed(
            title="🔍 Role Debug Report",
            description=_truncate(
                f"**Target Role ID:** `{role_id}`\n\n" + "\n".join(lines)
            ),
            color=INFO_COLOR,
        )
        embed.set_footer(text="Role Debug Command")
        await interaction.followup.send(embed=embed, ephemeral=True)


async def main():
    bot_config = load_config()
    logging.getLogger().setLevel(bot_config.log_level)
    LOGGER.setLevel(bot_config.log_level)
    if not bot_config.supabase_enabled:
        LOGGER.warning(
            "Supabase credentials missing; verification and expiry jobs are disabled"
        )
    bot = MembershipBot(bot_config)
    await setup_commands(bot)
    async with bot:
        await bot.start(bot_config.token)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
