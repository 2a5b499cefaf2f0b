"""Three-tier capability selection shared by the transcription and summarization services.

Each service is built with an ordered list of ``(Tier, provider)`` pairs that
survived availability probing, always ending with the fallback provider. A call
walks the list in order; a tier that raises ``ProviderUnavailable``, times out,
or crashes with an unexpected error is skipped for that call only.
``TranscriptionFailed`` and ``SummarizationFailed`` describe the input rather
than the tier and are raised unchanged. The list itself never changes after
construction, so a demoted tier is tried again on the next call and a missing
tier only appears after the service is rebuilt.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

from carememo.services.errors import ProviderUnavailable, SummarizationFailed, TranscriptionFailed

T = TypeVar("T")
R = TypeVar("R")


class Tier(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    FALLBACK = "fallback"


def call_with_timeout(fn: Callable[..., R], timeout: Optional[float], *args, **kwargs) -> R:
    """Run ``fn`` on a helper thread and give up after ``timeout`` seconds.

    A timed-out call keeps running on its worker thread until the provider
    returns; the caller is released immediately with ``ProviderUnavailable``.
    """
    if not timeout or timeout <= 0:
        return fn(*args, **kwargs)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="provider-call")
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as exc:
        future.cancel()
        raise ProviderUnavailable(f"Provider call exceeded {timeout:.1f}s") from exc
    finally:
        executor.shutdown(wait=False)


class TierChain(Generic[T]):
    def __init__(
        self,
        kind: str,
        providers: list[tuple[Tier, T]],
        *,
        timeout: Optional[float] = None,
    ) -> None:
        if not providers:
            raise ValueError(f"No {kind} providers configured")
        self._kind = kind
        self._providers = list(providers)
        self._timeout = timeout
        self._logger = logging.getLogger(f"carememo.tiers.{kind}")

    @property
    def active_tier(self) -> Tier:
        return self._providers[0][0]

    @property
    def tiers(self) -> list[Tier]:
        return [tier for tier, _ in self._providers]

    def call(self, fn: Callable[[T], R]) -> tuple[R, Tier]:
        last_error: Optional[Exception] = None
        for tier, provider in self._providers:
            try:
                if tier is Tier.FALLBACK:
                    return fn(provider), tier
                return call_with_timeout(fn, self._timeout, provider), tier
            except (TranscriptionFailed, SummarizationFailed):
                raise
            except ProviderUnavailable as exc:
                last_error = exc
                self._logger.warning(
                    "%s tier=%s unavailable, demoting for this call: %s",
                    self._kind,
                    tier.value,
                    exc,
                )
            except Exception as exc:
                if tier is Tier.FALLBACK:
                    raise
                last_error = exc
                self._logger.exception(
                    "%s tier=%s failed unexpectedly, demoting for this call",
                    self._kind,
                    tier.value,
                )
        raise ProviderUnavailable(f"All {self._kind} tiers exhausted") from last_error
