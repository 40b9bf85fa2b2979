"""Fingerprints, priority / deadline coercion, dedup window and bulk insert."""
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.models import Task
from app.schemas import TaskCandidate
from app.services.task_rules import (
    build_task_row,
    bulk_create_tasks,
    clamp_priority,
    fingerprint,
    has_recent_task,
    parse_deadline,
)

NOW = datetime(2026, 6, 1, 12, 0, 0)


def test_fingerprint_is_stable_and_normalized():
    assert fingerprint("<ABC@mail.test>") == fingerprint("  <abc@mail.test> ")
    assert fingerprint("a") != fingerprint("b")
    assert len(fingerprint("a")) == 32
    assert len(fingerprint("a", 16)) == 16
    assert len(fingerprint("a", 2)) == 8


@pytest.mark.parametrize(
    "value,expected",
    [(1, 1), (4, 4), (0, 1), (-5, 1), (9, 4), (2.6, 3), ("3", 3), (None, 2), ("high", 2), (True, 2), (float("inf"), 2)],
)
def test_clamp_priority(value, expected):
    assert clamp_priority(value) == expected


def test_parse_deadline_accepts_future_values():
    assert parse_deadline("2026-06-02T09:00:00", NOW) == datetime(2026, 6, 2, 9, 0, 0)
    assert parse_deadline("2026-06-01", NOW) == datetime(2026, 6, 1, 23, 59, 59)
    assert parse_deadline(date(2026, 6, 3), NOW) == datetime(2026, 6, 3, 23, 59, 59)
    # Aware values are converted to naive UTC
    assert parse_deadline("2026-06-02T09:00:00+02:00", NOW) == datetime(2026, 6, 2, 7, 0, 0)
    assert parse_deadline("2026-06-02T09:00:00Z", NOW) == datetime(2026, 6, 2, 9, 0, 0)
    assert parse_deadline(datetime(2026, 6, 5, tzinfo=timezone.utc), NOW) == datetime(2026, 6, 5)


@pytest.mark.parametrize(
    "value",
    [None, "", "   ", "soon", "2026-13-40", "2026-05-31", "2026-06-01T11:59:59", 12345],
)
def test_parse_deadline_rejects_past_and_invalid(value):
    assert parse_deadline(value, NOW) is None


def test_build_task_row_applies_rules():
    candidate = TaskCandidate(
        title="  Confirm onsite  ",
        priority=7,
        deadline="2020-01-01",
        task_type="interview",
        company="Acme",
        links=["https://a.test", "", "  https://b.test "],
    )

    row = build_task_row(candidate, user_id=5, source_fingerprint="fp", now=NOW)

    assert row["title"] == "Confirm onsite"
    assert row["priority"] == 4
    assert row["deadline"] is None
    assert row["status"] == "todo"
    assert row["task_type"] == "interview"
    assert row["company"] == "Acme"
    assert row["role"] is None
    assert row["links"] == ["https://a.test", "https://b.test"]
    assert row["source_fingerprint"] == "fp"
    assert row["created_at"] == NOW
    assert row["user_id"] == 5


def _row(user_id, fp, title, created_at=NOW):
    return build_task_row(TaskCandidate(title=title), user_id, fp, created_at)


async def test_has_recent_task_respects_window_and_owner(session_factory, user, other_user):
    async with session_factory() as db:
        await bulk_create_tasks(db, [
            _row(user.id, "recent", "A", NOW - timedelta(days=2)),
            _row(user.id, "stale", "B", NOW - timedelta(days=10)),
        ])
        await db.commit()

        assert await has_recent_task(db, user.id, "recent", 7, NOW) is True
        assert await has_recent_task(db, user.id, "stale", 7, NOW) is False
        assert await has_recent_task(db, user.id, "unknown", 7, NOW) is False
        assert await has_recent_task(db, other_user.id, "recent", 7, NOW) is False


async def test_bulk_create_skips_duplicates(session_factory, user):
    async with session_factory() as db:
        first = await bulk_create_tasks(db, [_row(user.id, "fp1", "A"), _row(user.id, "fp1", "B")])
        await db.commit()
        second = await bulk_create_tasks(db, [_row(user.id, "fp1", "A"), _row(user.id, "fp2", "A")])
        await db.commit()

        total = (await db.execute(select(func.count(Task.id)).where(Task.user_id == user.id))).scalar_one()

    assert first == 2
    assert second == 1
    assert total == 3


async def test_bulk_create_with_no_rows(session_factory):
    async with session_factory() as db:
        assert await bulk_create_tasks(db, []) == 0
