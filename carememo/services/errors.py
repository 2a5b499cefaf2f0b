from __future__ import annotations


class ProviderUnavailable(RuntimeError):
    """A provider tier could not serve the call (unreachable, timed out, not loaded).

    Recovered by demoting to the next tier; only the fallback tier never raises it.
    """


class TranscriptionFailed(RuntimeError):
    pass


class SummarizationFailed(RuntimeError):
    pass


class StorageError(RuntimeError):
    pass


class StorageIOError(StorageError):
    pass


class RecordNotFound(StorageError):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"Conversation not found: {record_id}")
        self.record_id = record_id


class RecordExists(StorageError):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"Conversation already exists: {record_id}")
        self.record_id = record_id


class MalformedRecordFile(StorageError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Malformed conversation file {path}: {reason}")
        self.path = path
        self.reason = reason
