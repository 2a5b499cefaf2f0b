from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import HTTPException

from carememo.services.errors import MalformedRecordFile, RecordNotFound, StorageIOError


@contextmanager
def http_errors(logger: logging.Logger, action: str) -> Iterator[None]:
    """Translate storage and validation errors raised inside a route into HTTP responses."""
    try:
        yield
    except HTTPException:
        raise
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail="Conversation not found") from exc
    except ValueError as exc:
        logger.warning("%s rejected: %s", action, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (StorageIOError, MalformedRecordFile) as exc:
        logger.error("%s failed: %s", action, exc)
        raise HTTPException(status_code=500, detail="Storage error") from exc
