from __future__ import annotations

import json
import logging
import os
import re
import shutil
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Iterator, Optional

from dateutil.relativedelta import relativedelta

from carememo.services.errors import (
    MalformedRecordFile,
    RecordExists,
    RecordNotFound,
    StorageIOError,
)
from carememo.services.models import ConversationRecord, format_timestamp, utc_now

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9._-]+$")


def sanitize_segment(name: Optional[str], default: str = "unknown") -> str:
    """Map free text onto a single safe path segment; applying it twice changes nothing."""
    cleaned = _UNSAFE_CHARS.sub("_", name or "")
    if cleaned in (".", ".."):
        cleaned = cleaned.replace(".", "_")
    return cleaned or default


def is_safe_segment(value: Optional[str]) -> bool:
    return bool(value) and bool(_SAFE_SEGMENT.match(value)) and value not in (".", "..")


def generate_record_id() -> str:
    return f"conv_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@contextmanager
def _storage_io(action: str) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise StorageIOError(f"Failed to {action}: {exc}") from exc


@dataclass
class ConversationPage:
    records: list[ConversationRecord]
    total: int
    has_more: bool

    def to_dict(self) -> dict:
        return {
            "conversations": [record.to_dict() for record in self.records],
            "total": self.total,
            "hasMore": self.has_more,
        }


@dataclass
class RetentionResult:
    deleted_records: int = 0
    deleted_audio_files: int = 0

    def to_dict(self) -> dict:
        return {
            "deletedConversations": self.deleted_records,
            "deletedAudioFiles": self.deleted_audio_files,
        }


@dataclass
class StorageStats:
    total_records: int = 0
    total_bytes: int = 0
    record_bytes: int = 0
    audio_bytes: int = 0
    per_person: dict[str, dict] = field(default_factory=dict)
    storage_path: str = ""

    def to_dict(self) -> dict:
        return {
            "totalConversations": self.total_records,
            "totalSize": self.total_bytes,
            "recordSize": self.record_bytes,
            "audioSize": self.audio_bytes,
            "personStats": self.per_person,
            "storagePath": self.storage_path,
        }


class ConversationStore:
    """Person-partitioned JSON storage for processed conversations and their audio.

    Layout under ``base_dir``::

        conversations/<userId>/<sanitizedPersonName>/<recordId>.json
        audio/<userId>/<sanitizedFilename>

    There is no in-process lock: writers never share a record id, and listings
    skip files that vanish or are half-written while they run.
    """

    def __init__(self, base_dir: str, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._base_dir = base_dir
        self._conversations_dir = os.path.join(base_dir, "conversations")
        self._audio_dir = os.path.join(base_dir, "audio")
        self._clock = clock
        self._logger = logging.getLogger("carememo.storage")
        with _storage_io("initialize local storage"):
            os.makedirs(self._conversations_dir, exist_ok=True)
            os.makedirs(self._audio_dir, exist_ok=True)
        self._logger.info("Local storage initialized at %s", base_dir)

    @property
    def base_dir(self) -> str:
        return self._base_dir

    @property
    def conversations_dir(self) -> str:
        return self._conversations_dir

    @property
    def audio_dir(self) -> str:
        return self._audio_dir

    # ── Paths ──────────────────────────────────────────────────────────

    @staticmethod
    def _user_segment(user_id: str) -> str:
        if not is_safe_segment(user_id):
            raise ValueError(f"Invalid user id: {user_id!r}")
        return user_id

    def user_conversations_dir(self, user_id: str) -> str:
        return os.path.join(self._conversations_dir, self._user_segment(user_id))

    def user_audio_dir(self, user_id: str) -> str:
        return os.path.join(self._audio_dir, self._user_segment(user_id))

    def partition_dir(self, user_id: str, person_name: str) -> str:
        return os.path.join(self.user_conversations_dir(user_id), sanitize_segment(person_name))

    def _person_dirs(self, user_id: str, person_name: Optional[str] = None) -> list[str]:
        user_dir = self.user_conversations_dir(user_id)
        try:
            names = sorted(os.listdir(user_dir))
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StorageIOError(f"Failed to list conversations for {user_id}: {exc}") from exc
        wanted = sanitize_segment(person_name) if person_name else None
        paths: list[str] = []
        for name in names:
            if wanted is not None and name != wanted:
                continue
            path = os.path.join(user_dir, name)
            if os.path.isdir(path):
                paths.append(path)
        return paths

    @staticmethod
    def _record_files(person_dir: str) -> list[str]:
        try:
            names = os.listdir(person_dir)
        except FileNotFoundError:
            return []
        return [os.path.join(person_dir, name) for name in sorted(names) if name.endswith(".json")]

    def _find_record_path(self, user_id: str, record_id: str) -> Optional[str]:
        filename = f"{record_id}.json"
        for person_dir in self._person_dirs(user_id):
            path = os.path.join(person_dir, filename)
            if os.path.isfile(path):
                return path
        return None

    def _owned_audio_path(self, user_id: str, audio_path: Optional[str]) -> Optional[str]:
        """Return the normalized audio path when it lives inside the user's audio directory."""
        if not audio_path:
            return None
        resolved = os.path.realpath(audio_path)
        user_audio = os.path.realpath(self.user_audio_dir(user_id))
        try:
            if os.path.commonpath([resolved, user_audio]) != user_audio:
                return None
        except ValueError:
            return None
        return resolved

    # ── File I/O ───────────────────────────────────────────────────────

    def _read_record(self, path: str) -> ConversationRecord:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return ConversationRecord.from_dict(data)
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError, TypeError) as exc:
            raise MalformedRecordFile(path, str(exc)) from exc

    def _iter_records(
        self, user_id: str, person_name: Optional[str] = None
    ) -> Iterator[tuple[str, ConversationRecord]]:
        for person_dir in self._person_dirs(user_id, person_name):
            for path in self._record_files(person_dir):
                try:
                    yield path, self._read_record(path)
                except FileNotFoundError:
                    self._logger.debug("Conversation file vanished during listing: %s", path)
                except MalformedRecordFile as exc:
                    self._logger.warning("Skipping malformed conversation file: %s error=%s", path, exc.reason)
                except OSError as exc:
                    self._logger.warning("Skipping unreadable conversation file: %s error=%s", path, exc)

    @staticmethod
    def _write_json(path: str, data: dict) -> None:
        temp_path = f"{path}.tmp"
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(temp_path, path)

    def _write_new_json(self, path: str, data: dict, record_id: str) -> None:
        # Hard-linking the finished temp file publishes it atomically and fails if the id is taken.
        temp_path = f"{path}.{uuid.uuid4().hex[:8]}.tmp"
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.link(temp_path, path)
        except FileExistsError as exc:
            raise RecordExists(record_id) from exc
        finally:
            try:
                os.remove(temp_path)
            except FileNotFoundError:
                pass

    # ── Writes ─────────────────────────────────────────────────────────

    def save(self, user_id: str, record: ConversationRecord) -> ConversationRecord:
        self._user_segment(user_id)
        if record.id and not is_safe_segment(record.id):
            raise ValueError(f"Invalid conversation id: {record.id!r}")
        persisted = replace(
            record,
            id=record.id or generate_record_id(),
            user_id=user_id,
            person_name=record.person_name or "unknown",
            timestamp=record.timestamp or format_timestamp(self._clock()),
            metadata=dict(record.metadata),
        )
        persisted.validate()

        with _storage_io(f"save conversation {persisted.id}"):
            if self._find_record_path(user_id, persisted.id):
                raise RecordExists(persisted.id)
            person_dir = self.partition_dir(user_id, persisted.person_name)
            os.makedirs(person_dir, exist_ok=True)
            path = os.path.join(person_dir, f"{persisted.id}.json")
            self._write_new_json(path, persisted.to_dict(), persisted.id)

        self._logger.info(
            "Conversation saved locally: user=%s id=%s person=%s status=%s",
            user_id,
            persisted.id,
            persisted.person_name,
            persisted.processing_status,
        )
        return persisted

    def save_audio(
        self,
        user_id: str,
        audio_bytes: bytes,
        filename: str,
        *,
        before_write: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Write an audio file without overwriting; a taken name gets a random prefix.

        ``before_write`` is called with each candidate path before the file is
        created, so callers can claim the path ahead of any file watcher.
        """
        audio_dir = self.user_audio_dir(user_id)
        safe_name = sanitize_segment(filename, default="audio")
        with _storage_io(f"save audio file {safe_name}"):
            os.makedirs(audio_dir, exist_ok=True)
            path = os.path.join(audio_dir, safe_name)
            if before_write:
                before_write(path)
            try:
                handle = open(path, "xb")
            except FileExistsError:
                path = os.path.join(audio_dir, f"{uuid.uuid4().hex[:8]}_{safe_name}")
                if before_write:
                    before_write(path)
                handle = open(path, "xb")
            with handle:
                handle.write(audio_bytes)
        self._logger.info("Audio file saved locally: user=%s file=%s", user_id, os.path.basename(path))
        return path

    def update_annotations(
        self,
        user_id: str,
        record_id: str,
        *,
        notes: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> ConversationRecord:
        """Update the user-editable fields; transcript and summary are never rewritten."""
        path = self._require_record_path(user_id, record_id)
        record = self._read_record(path)
        if notes is not None:
            record.notes = notes
        if tags is not None:
            record.tags = [tag.strip() for tag in tags if tag and tag.strip()]
        with _storage_io(f"update conversation {record_id}"):
            self._write_json(path, record.to_dict())
        self._logger.info("Conversation annotations updated: user=%s id=%s", user_id, record_id)
        return record

    # ── Reads ──────────────────────────────────────────────────────────

    def _require_record_path(self, user_id: str, record_id: str) -> str:
        if not is_safe_segment(record_id):
            raise RecordNotFound(record_id)
        path = self._find_record_path(user_id, record_id)
        if not path:
            raise RecordNotFound(record_id)
        return path

    def get(self, user_id: str, record_id: str) -> ConversationRecord:
        path = self._require_record_path(user_id, record_id)
        try:
            return self._read_record(path)
        except FileNotFoundError as exc:
            raise RecordNotFound(record_id) from exc
        except OSError as exc:
            raise StorageIOError(f"Failed to read conversation {record_id}: {exc}") from exc

    def list_conversations(
        self,
        user_id: str,
        person_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        search: Optional[str] = None,
    ) -> ConversationPage:
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")
        records = self.all_conversations(user_id, person_name)
        if search:
            needle = search.lower()
            records = [
                record
                for record in records
                if needle in record.transcript.lower()
                or needle in record.summary.lower()
                or needle in record.person_name.lower()
            ]
        total = len(records)
        return ConversationPage(
            records=records[offset : offset + limit],
            total=total,
            has_more=offset + limit < total,
        )

    def all_conversations(
        self, user_id: str, person_name: Optional[str] = None
    ) -> list[ConversationRecord]:
        """Every readable record of a user (optionally one person), newest first."""
        records = [record for _, record in self._iter_records(user_id, person_name)]
        records.sort(key=lambda r: (r.created_at, r.id or ""), reverse=True)
        return records

    def find_by_audio_path(self, user_id: str, audio_path: str) -> Optional[ConversationRecord]:
        target = os.path.realpath(audio_path)
        for _, record in self._iter_records(user_id):
            if record.audio_path and os.path.realpath(record.audio_path) == target:
                return record
        return None

    def list_users(self) -> list[str]:
        try:
            names = sorted(os.listdir(self._conversations_dir))
        except OSError as exc:
            raise StorageIOError(f"Failed to list users: {exc}") from exc
        return [
            name
            for name in names
            if is_safe_segment(name) and os.path.isdir(os.path.join(self._conversations_dir, name))
        ]

    # ── Deletes ────────────────────────────────────────────────────────

    def _remove_audio(self, path: str) -> bool:
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False

    def delete(self, user_id: str, record_id: str) -> None:
        path = self._require_record_path(user_id, record_id)
        try:
            audio = self._owned_audio_path(user_id, self._read_record(path).audio_path)
        except MalformedRecordFile:
            self._logger.warning("Deleting malformed conversation file without audio: %s", path)
            audio = None
        except FileNotFoundError as exc:
            raise RecordNotFound(record_id) from exc

        with _storage_io(f"delete conversation {record_id}"):
            try:
                os.remove(path)
            except FileNotFoundError as exc:
                raise RecordNotFound(record_id) from exc
            if audio and not self._audio_referenced(user_id, audio):
                self._remove_audio(audio)
        self._logger.info("Conversation deleted locally: user=%s id=%s", user_id, record_id)

    def _audio_referenced(self, user_id: str, audio: str) -> bool:
        return self.find_by_audio_path(user_id, audio) is not None

    def delete_older_than(self, user_id: str, months: int) -> RetentionResult:
        if months < 0:
            raise ValueError("months must be non-negative")
        cutoff = self._clock() - relativedelta(months=months)
        result = RetentionResult()
        if not os.path.isdir(self.user_conversations_dir(user_id)):
            return result

        expired: list[tuple[str, ConversationRecord]] = []
        kept_audio: set[str] = set()
        for path, record in self._iter_records(user_id):
            if record.created_at < cutoff:
                expired.append((path, record))
            else:
                audio = self._owned_audio_path(user_id, record.audio_path)
                if audio:
                    kept_audio.add(audio)

        removed_audio: set[str] = set()
        with _storage_io(f"delete old recordings for {user_id}"):
            for path, record in expired:
                try:
                    os.remove(path)
                except FileNotFoundError:
                    continue
                result.deleted_records += 1
                audio = self._owned_audio_path(user_id, record.audio_path)
                if not audio or audio in kept_audio or audio in removed_audio:
                    continue
                if self._remove_audio(audio):
                    removed_audio.add(audio)
                    result.deleted_audio_files += 1
            self._prune_empty_partitions(user_id)

        self._logger.info(
            "Old recordings cleanup completed: user=%s deleted_conversations=%s "
            "deleted_audio_files=%s months=%s",
            user_id,
            result.deleted_records,
            result.deleted_audio_files,
            months,
        )
        return result

    def _prune_empty_partitions(self, user_id: str) -> None:
        for person_dir in self._person_dirs(user_id):
            if not os.listdir(person_dir):
                os.rmdir(person_dir)
                self._logger.debug("Removed empty partition: %s", person_dir)
        user_dir = self.user_conversations_dir(user_id)
        if os.path.isdir(user_dir) and not os.listdir(user_dir):
            os.rmdir(user_dir)

    def wipe_user(self, user_id: str) -> None:
        with _storage_io(f"clean up storage for {user_id}"):
            for path in (self.user_conversations_dir(user_id), self.user_audio_dir(user_id)):
                if os.path.exists(path):
                    shutil.rmtree(path)
        self._logger.info("User storage cleaned up: user=%s", user_id)

    # ── Statistics ─────────────────────────────────────────────────────

    def stats(self, user_id: str) -> StorageStats:
        stats = StorageStats(storage_path=self.user_conversations_dir(user_id))
        counted_audio: set[str] = set()
        with _storage_io(f"compute storage stats for {user_id}"):
            for person_dir in self._person_dirs(user_id):
                person = {"conversationCount": 0, "totalSize": 0}
                for path in self._record_files(person_dir):
                    try:
                        size = os.path.getsize(path)
                    except FileNotFoundError:
                        continue
                    person["conversationCount"] += 1
                    person["totalSize"] += size
                    stats.record_bytes += size
                    try:
                        audio = self._owned_audio_path(user_id, self._read_record(path).audio_path)
                    except (MalformedRecordFile, FileNotFoundError):
                        audio = None
                    if audio and audio not in counted_audio and os.path.isfile(audio):
                        counted_audio.add(audio)
                        person["totalSize"] += os.path.getsize(audio)
                stats.total_records += person["conversationCount"]
                stats.per_person[os.path.basename(person_dir)] = person

            audio_dir = self.user_audio_dir(user_id)
            if os.path.isdir(audio_dir):
                for root, _, files in os.walk(audio_dir):
                    for name in files:
                        stats.audio_bytes += os.path.getsize(os.path.join(root, name))
        stats.total_bytes = stats.record_bytes + stats.audio_bytes
        return stats

    def insights(self, user_id: str) -> dict:
        """Conversation analytics over every stored record of a user."""
        records = [record for _, record in self._iter_records(user_id)]
        count = len(records)
        total_duration = sum(record.duration or 0 for record in records)
        total_sentiment = sum(record.sentiment_score or 0 for record in records)

        per_person: dict[str, dict] = {}
        for record in sorted(records, key=lambda r: r.created_at):
            person = per_person.setdefault(
                record.person_name,
                {"conversationCount": 0, "totalDuration": 0.0, "_sentiment": 0.0, "lastConversation": None},
            )
            person["conversationCount"] += 1
            person["totalDuration"] += record.duration or 0
            person["_sentiment"] += record.sentiment_score or 0
            person["lastConversation"] = record.timestamp
        for person in per_person.values():
            person["avgSentiment"] = round(person.pop("_sentiment") / person["conversationCount"], 4)

        return {
            "stats": {
                "totalConversations": count,
                "totalDuration": total_duration,
                "avgDuration": total_duration / count if count else 0,
                "avgSentimentScore": round(total_sentiment / count, 4) if count else 0,
                "positiveConversations": sum(1 for r in records if r.sentiment == "positive"),
                "negativeConversations": sum(1 for r in records if r.sentiment == "negative"),
                "neutralConversations": sum(1 for r in records if r.sentiment == "neutral"),
                "peopleCount": len(per_person),
            },
            "personStats": per_person,
        }
