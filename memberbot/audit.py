from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from peewee import (
    AutoField,
    CharField,
    DateTimeField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

audit_database = SqliteDatabase(None)


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo for SQLite storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BaseModel(Model):
    created_at = DateTimeField(default=utcnow_naive)
    updated_at = DateTimeField(default=utcnow_naive)

    def save(self, *args, **kwargs):  # type: ignore[override]
        self.updated_at = utcnow_naive()
        return super().save(*args, **kwargs)

    class Meta:
        database = audit_database


class AuditEntry(BaseModel):
    id = AutoField()
    actor_discord_id = CharField()
    action = CharField()
    payload = TextField(null=True)


class JobRun(BaseModel):
    id = AutoField()
    job = CharField()
    trigger = CharField()
    run_date = CharField()
    found = IntegerField(default=0)
    succeeded = IntegerField(default=0)
    failed = IntegerField(default=0)
    skipped = CharField(null=True)
    started_at = DateTimeField()
    finished_at = DateTimeField(null=True)


def init_audit_db(path: str) -> SqliteDatabase:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    if not audit_database.is_closed():
        audit_database.close()
    audit_database.init(path)
    audit_database.connect(reuse_if_open=True)
    audit_database.create_tables([AuditEntry, JobRun])
    return audit_database


def is_initialized() -> bool:
    return audit_database.database is not None


def record_audit(actor_discord_id: int | str, action: str, payload: dict | None = None):
    return AuditEntry.create(
        actor_discord_id=str(actor_discord_id),
        action=action,
        payload=json.dumps(payload) if payload else None,
    )


def record_job_run(
    job: str,
    trigger: str,
    run_date: str,
    started_at: datetime,
    found: int = 0,
    succeeded: int = 0,
    failed: int = 0,
    skipped: str | None = None,
) -> JobRun:
    return JobRun.create(
        job=job,
        trigger=trigger,
        run_date=run_date,
        found=found,
        succeeded=succeeded,
        failed=failed,
        skipped=skipped,
        started_at=started_at,
        finished_at=utcnow_naive(),
    )


def prune_audit(retention_days: int) -> int:
    cutoff = utcnow_naive() - timedelta(days=retention_days)
    deleted = AuditEntry.delete().where(AuditEntry.created_at < cutoff).execute()
    deleted += JobRun.delete().where(JobRun.started_at < cutoff).execute()
    return deleted
