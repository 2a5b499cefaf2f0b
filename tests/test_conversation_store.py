import json
import logging
import os
from datetime import timedelta

import pytest

from carememo.services.conversation_store import ConversationStore, sanitize_segment
from carememo.services.errors import RecordExists, RecordNotFound
from carememo.services.models import format_timestamp

from conftest import NOW, make_record


def _days_ago(days: int) -> str:
    return format_timestamp(NOW - timedelta(days=days))


def test_sanitize_segment():
    assert sanitize_segment("John/Doe*?") == "John_Doe__"
    assert sanitize_segment(sanitize_segment("John/Doe*?")) == "John_Doe__"
    assert sanitize_segment("") == "unknown"
    assert sanitize_segment(None) == "unknown"
    assert sanitize_segment("..") == "__"
    assert sanitize_segment("Mary-Ann_O.K") == "Mary-Ann_O.K"


def test_save_fills_id_and_timestamp(store):
    saved = store.save("user1", make_record())

    assert saved.id.startswith("conv_")
    assert saved.timestamp == "2024-06-15T12:00:00.000Z"
    assert saved.user_id == "user1"
    assert store.get("user1", saved.id) == saved


def test_save_writes_person_partition(store):
    saved = store.save("user1", make_record("John/Doe*?"))
    path = os.path.join(store.conversations_dir, "user1", "John_Doe__", f"{saved.id}.json")
    assert os.path.isfile(path)
    assert store.get("user1", saved.id).person_name == "John/Doe*?"


def test_save_is_exclusive(store):
    store.save("user1", make_record(id="conv_fixed"))
    with pytest.raises(RecordExists):
        store.save("user1", make_record(id="conv_fixed"))
    # Same id under another person is still a clash for this user.
    with pytest.raises(RecordExists):
        store.save("user1", make_record("Bob", id="conv_fixed"))


def test_save_rejects_invalid_input(store):
    with pytest.raises(ValueError):
        store.save("../escape", make_record())
    with pytest.raises(ValueError):
        store.save("user1", make_record(transcript=""))
    with pytest.raises(ValueError):
        store.save("user1", make_record(id="../../etc"))


def test_failed_records_need_no_summary(store):
    saved = store.save(
        "user1",
        make_record(transcript="", summary="", processing_status="failed", processing_error="boom"),
    )
    assert store.get("user1", saved.id).processing_error == "boom"


def test_get_missing_or_unsafe_id(store):
    with pytest.raises(RecordNotFound):
        store.get("user1", "conv_missing")
    with pytest.raises(RecordNotFound):
        store.get("user1", "../secret")


def test_list_newest_first_with_pagination(store):
    for days in (3, 1, 2):
        store.save("user1", make_record(id=f"conv_{days}", timestamp=_days_ago(days)))

    page = store.list_conversations("user1", limit=2)
    assert [r.id for r in page.records] == ["conv_1", "conv_2"]
    assert page.total == 3
    assert page.has_more is True

    page = store.list_conversations("user1", limit=2, offset=2)
    assert [r.id for r in page.records] == ["conv_3"]
    assert page.has_more is False


def test_list_filters_person_and_search(store):
    store.save("user1", make_record("Alice", summary="Garden talk"))
    store.save("user1", make_record("Bob", transcript="We discussed the weather.", summary="Weather"))

    assert [r.person_name for r in store.list_conversations("user1", person_name="Bob").records] == ["Bob"]
    assert [r.person_name for r in store.list_conversations("user1", search="WEATHER").records] == ["Bob"]
    assert store.list_conversations("user1", search="alice").total == 1
    assert store.list_conversations("nobody").total == 0


def test_corrupt_files_are_skipped_and_logged(store, caplog):
    saved = store.save("user1", make_record())
    partition = os.path.join(store.conversations_dir, "user1", "Alice")
    with open(os.path.join(partition, "conv_broken.json"), "w", encoding="utf-8") as f:
        f.write("{not json")

    with caplog.at_level(logging.WARNING, logger="carememo.storage"):
        page = store.list_conversations("user1")

    assert [r.id for r in page.records] == [saved.id]
    assert "conv_broken.json" in caplog.text


@pytest.mark.parametrize(
    "field, value",
    [
        ("transcript", ["x"]),
        ("summary", 42),
        ("personName", {"first": "Alice"}),
        ("keyTopics", "garden"),
        ("tags", [1, 2]),
        ("emotions", ["happy"]),
        ("metadata", ["offline"]),
        ("duration", "long"),
    ],
)
def test_wrongly_typed_record_is_skipped_during_search(store, caplog, field, value):
    saved = store.save("user1", make_record(transcript="We talked about the garden."))
    bad = saved.to_dict()
    bad.update({"id": "conv_bad", field: value})
    partition = os.path.join(store.conversations_dir, "user1", "Alice")
    with open(os.path.join(partition, "conv_bad.json"), "w", encoding="utf-8") as f:
        json.dump(bad, f)

    with caplog.at_level(logging.WARNING, logger="carememo.storage"):
        page = store.list_conversations("user1", search="garden")

    assert [r.id for r in page.records] == [saved.id]
    assert "conv_bad.json" in caplog.text


def test_update_annotations(store):
    saved = store.save("user1", make_record())
    updated = store.update_annotations("user1", saved.id, notes="Call back", tags=[" family ", ""])

    assert updated.notes == "Call back"
    assert updated.tags == ["family"]
    reloaded = store.get("user1", saved.id)
    assert reloaded.tags == ["family"]
    assert reloaded.transcript == saved.transcript


def test_delete_removes_record_and_owned_audio(store):
    audio = store.save_audio("user1", b"abc", "talk.wav")
    saved = store.save("user1", make_record(audio_path=audio))

    store.delete("user1", saved.id)

    assert not os.path.exists(audio)
    with pytest.raises(RecordNotFound):
        store.get("user1", saved.id)
    with pytest.raises(RecordNotFound):
        store.delete("user1", saved.id)


def test_delete_keeps_shared_and_foreign_audio(store, tmp_path):
    shared = store.save_audio("user1", b"abc", "shared.wav")
    first = store.save("user1", make_record(audio_path=shared))
    store.save("user1", make_record("Bob", audio_path=shared))
    outside = tmp_path / "outside.wav"
    outside.write_bytes(b"keep")
    foreign = store.save("user1", make_record(audio_path=str(outside)))

    store.delete("user1", first.id)
    store.delete("user1", foreign.id)

    assert os.path.exists(shared)
    assert outside.exists()


def test_save_audio_does_not_overwrite(store):
    first = store.save_audio("user1", b"one", "talk.wav")
    second = store.save_audio("user1", b"two", "talk.wav")
    assert first != second
    with open(first, "rb") as f:
        assert f.read() == b"one"


def test_save_audio_reports_each_path_before_creating_it(store):
    store.save_audio("user1", b"one", "talk.wav")
    seen = []

    def before_write(path):
        seen.append((os.path.basename(path), os.path.exists(path)))

    second = store.save_audio("user1", b"two", "talk.wav", before_write=before_write)

    assert seen == [("talk.wav", True), (os.path.basename(second), False)]
    assert os.path.basename(second).endswith("_talk.wav")


def test_find_by_audio_path(store):
    audio = store.save_audio("user1", b"abc", "talk.wav")
    saved = store.save("user1", make_record(audio_path=audio))
    assert store.find_by_audio_path("user1", audio).id == saved.id
    assert store.find_by_audio_path("user1", audio + ".other") is None


def test_delete_older_than(store):
    old_audio = store.save_audio("user1", b"old", "old.wav")
    store.save("user1", make_record("Old Friend", id="conv_45", timestamp=_days_ago(45), audio_path=old_audio))
    store.save("user1", make_record("Alice", id="conv_20", timestamp=_days_ago(20)))
    store.save("user1", make_record("Alice", id="conv_5", timestamp=_days_ago(5)))

    result = store.delete_older_than("user1", 1)

    assert result.deleted_records == 1
    assert result.deleted_audio_files == 1
    assert not os.path.exists(old_audio)
    assert sorted(r.id for r in store.list_conversations("user1").records) == ["conv_20", "conv_5"]
    # The emptied partition is removed, the live one stays.
    assert not os.path.exists(os.path.join(store.conversations_dir, "user1", "Old_Friend"))
    assert os.path.isdir(os.path.join(store.conversations_dir, "user1", "Alice"))


def test_delete_older_than_removes_emptied_user(store):
    store.save("user1", make_record(timestamp=_days_ago(90)))
    result = store.delete_older_than("user1", 1)

    assert result.deleted_records == 1
    assert not os.path.exists(os.path.join(store.conversations_dir, "user1"))
    assert store.list_users() == []


def test_delete_older_than_keeps_audio_still_referenced(store):
    audio = store.save_audio("user1", b"abc", "shared.wav")
    store.save("user1", make_record(timestamp=_days_ago(60), audio_path=audio))
    store.save("user1", make_record(timestamp=_days_ago(1), audio_path=audio))

    result = store.delete_older_than("user1", 1)

    assert result.deleted_records == 1
    assert result.deleted_audio_files == 0
    assert os.path.exists(audio)


def test_delete_older_than_unknown_user(store):
    result = store.delete_older_than("ghost", 1)
    assert (result.deleted_records, result.deleted_audio_files) == (0, 0)


def test_stats_and_insights(store):
    audio = store.save_audio("user1", b"x" * 100, "talk.wav")
    store.save("user1", make_record("Alice", audio_path=audio, duration=30, sentiment="positive", sentiment_score=0.4))
    store.save("user1", make_record("Bob", duration=10, sentiment_score=0.0))

    stats = store.stats("user1")
    assert stats.total_records == 2
    assert stats.audio_bytes == 100
    assert stats.per_person["Alice"]["conversationCount"] == 1
    assert stats.per_person["Alice"]["totalSize"] > 100
    assert stats.total_bytes == stats.record_bytes + 100

    insights = store.insights("user1")
    assert insights["stats"]["totalConversations"] == 2
    assert insights["stats"]["totalDuration"] == 40
    assert insights["stats"]["positiveConversations"] == 1
    assert insights["stats"]["peopleCount"] == 2
    assert insights["personStats"]["Alice"]["avgSentiment"] == 0.4


def test_list_users_and_wipe(store):
    store.save("user1", make_record())
    store.save("user2", make_record())
    store.save_audio("user2", b"abc", "a.wav")
    assert store.list_users() == ["user1", "user2"]

    store.wipe_user("user2")
    assert store.list_users() == ["user1"]
    assert not os.path.exists(store.user_audio_dir("user2"))


def test_records_survive_new_store_instance(store, clock):
    saved = store.save("user1", make_record())
    reopened = ConversationStore(store.base_dir, clock=clock)
    assert reopened.get("user1", saved.id) == saved
