import logging
import os
from datetime import timedelta

import pytest

from carememo.config import RetentionSettings
from carememo.services.errors import StorageIOError
from carememo.services.models import format_timestamp
from carememo.services.retention import RetentionScheduler

from conftest import NOW, make_record


def _days_ago(days: int) -> str:
    return format_timestamp(NOW - timedelta(days=days))


@pytest.fixture
def watermark_path(tmp_path) -> str:
    return str(tmp_path / "storage" / ".last-cleanup")


@pytest.fixture
def scheduler(store, clock, watermark_path):
    scheduler = RetentionScheduler(store, RetentionSettings(), watermark_path, clock=clock)
    yield scheduler
    if scheduler.running:
        scheduler.stop()


def test_sweep_deletes_expired_records_for_every_user(store, scheduler, watermark_path):
    store.save("alice", make_record(id="conv_old", timestamp=_days_ago(45)))
    store.save("alice", make_record(id="conv_new", timestamp=_days_ago(5)))
    store.save("bob", make_record(id="conv_old", timestamp=_days_ago(60)))

    report = scheduler.run_sweep()

    assert report.users == 2
    assert report.deleted_records == 2
    assert report.failed_users == []
    assert [r.id for r in store.list_conversations("alice").records] == ["conv_new"]
    assert store.list_users() == ["alice"]
    assert scheduler.read_watermark() == NOW
    assert os.path.exists(watermark_path)


def test_one_failing_user_does_not_stop_the_sweep(store, scheduler, monkeypatch):
    store.save("alice", make_record(timestamp=_days_ago(45)))
    store.save("bob", make_record(timestamp=_days_ago(45)))
    store.save("carol", make_record(timestamp=_days_ago(45)))
    original = store.delete_older_than

    def flaky(user_id, months):
        if user_id == "bob":
            raise StorageIOError("disk on fire")
        return original(user_id, months)

    monkeypatch.setattr(store, "delete_older_than", flaky)
    report = scheduler.run_sweep()

    assert report.failed_users == ["bob"]
    assert report.deleted_records == 2
    assert store.list_users() == ["bob"]


def test_start_and_stop_are_idempotent(scheduler, caplog):
    with caplog.at_level(logging.WARNING, logger="carememo.retention"):
        scheduler.start()
        scheduler.start()
        assert scheduler.running
        scheduler.stop()
        scheduler.stop()

    assert not scheduler.running
    assert "already running" in caplog.text
    assert "not running" in caplog.text


def test_startup_sweep_runs_without_watermark(store, scheduler):
    store.save("alice", make_record(timestamp=_days_ago(45)))

    scheduler.start()
    assert scheduler.wait_until_ready(timeout=5)
    scheduler.stop()

    assert store.list_users() == []
    assert scheduler.read_watermark() == NOW


def test_startup_sweep_skipped_with_recent_watermark(store, scheduler, watermark_path):
    store.save("alice", make_record(timestamp=_days_ago(45)))
    with open(watermark_path, "w", encoding="utf-8") as f:
        f.write(_days_ago(10))

    scheduler.start()
    assert scheduler.wait_until_ready(timeout=5)
    scheduler.stop()

    assert store.list_users() == ["alice"]


def test_startup_sweep_runs_with_stale_watermark(store, scheduler, watermark_path):
    store.save("alice", make_record(timestamp=_days_ago(45)))
    with open(watermark_path, "w", encoding="utf-8") as f:
        f.write(_days_ago(31))

    scheduler.start()
    assert scheduler.wait_until_ready(timeout=5)
    scheduler.stop()

    assert store.list_users() == []


def test_corrupt_watermark_counts_as_absent(scheduler, watermark_path):
    with open(watermark_path, "w", encoding="utf-8") as f:
        f.write("yesterday-ish")
    assert scheduler.read_watermark() is None


def test_status_reports_next_run(store, scheduler):
    store.save("alice", make_record())
    scheduler.start()
    assert scheduler.wait_until_ready(timeout=5)

    status = scheduler.status()

    assert status["isRunning"] is True
    assert status["schedule"] == "0 0 1 * *"
    assert status["retentionMonths"] == 1
    assert status["storageStats"]["alice"]["totalConversations"] == 1
    assert status["lastCleanup"] == "2024-06-15T12:00:00.000Z"


def test_cleanup_user_uses_given_months(store, scheduler, watermark_path):
    store.save("alice", make_record(id="conv_45", timestamp=_days_ago(45)))
    store.save("alice", make_record(id="conv_100", timestamp=_days_ago(100)))

    result = scheduler.cleanup_user("alice", months=2)

    assert result.deleted_records == 1
    assert [r.id for r in store.list_conversations("alice").records] == ["conv_45"]
    assert not os.path.exists(watermark_path)


def test_update_settings(scheduler):
    status = scheduler.update_settings(months=3, schedule="0 3 * * 0")
    assert status["retentionMonths"] == 3
    assert status["schedule"] == "0 3 * * 0"

    with pytest.raises(ValueError):
        scheduler.update_settings(schedule="every tuesday")
    with pytest.raises(ValueError):
        scheduler.update_settings(months=0)
    assert scheduler.settings.months == 3


def test_update_settings_restarts_running_loop(scheduler):
    scheduler.start()
    scheduler.update_settings(months=2)
    assert scheduler.running
    assert scheduler.settings.months == 2


def test_invalid_configuration_rejected(store, watermark_path):
    with pytest.raises(ValueError):
        RetentionScheduler(store, RetentionSettings(schedule="nope"), watermark_path)
    with pytest.raises(ValueError):
        RetentionScheduler(store, RetentionSettings(timezone="Mars/Olympus"), watermark_path)
