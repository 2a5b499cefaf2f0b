from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from carememo.services.tiering import Tier, TierChain
from carememo.services.transcription.base import TranscriptionProvider, TranscriptionResult
from carememo.services.transcription.fallback import FallbackTranscriptionProvider
from carememo.services.transcription.remote import RemoteTranscriptionProvider
from carememo.services.transcription.whisper_local import FasterWhisperProvider, WhisperConfig

if TYPE_CHECKING:
    from carememo.config import TranscriptionSettings

_logger = logging.getLogger("carememo.transcription")


class TranscriptionService:
    """Tiered speech-to-text: local whisper, then a remote endpoint, then the placeholder.

    ``TranscriptionFailed`` from any tier is not a demotion signal; it means the
    audio itself is unusable and is raised to the caller unchanged.
    """

    def __init__(
        self,
        providers: list[tuple[Tier, TranscriptionProvider]],
        *,
        timeout: Optional[float] = None,
    ) -> None:
        self._chain: TierChain[TranscriptionProvider] = TierChain(
            "transcription", providers, timeout=timeout
        )

    @property
    def active_tier(self) -> Tier:
        return self._chain.active_tier

    @property
    def tiers(self) -> list[Tier]:
        return self._chain.tiers

    def transcribe(self, audio_bytes: bytes, filename: str) -> tuple[TranscriptionResult, Tier]:
        return self._chain.call(lambda provider: provider.transcribe(audio_bytes, filename))


def build_transcription_service(
    settings: "TranscriptionSettings", temp_dir: Optional[str] = None
) -> TranscriptionService:
    """Probe the configured tiers once and build the service from the ones that answered."""
    providers: list[tuple[Tier, TranscriptionProvider]] = []

    if settings.local_model:
        local = FasterWhisperProvider(
            WhisperConfig(
                model_size=settings.local_model,
                device=settings.device,
                compute_type=settings.compute_type,
                language=settings.language,
            ),
            temp_dir=temp_dir,
        )
        try:
            local.load()
            providers.append((Tier.LOCAL, local))
            _logger.info("Whisper model initialized: %s", settings.local_model)
        except Exception as exc:
            _logger.warning("Whisper model initialization failed: %s", exc)
    else:
        _logger.info("No local whisper model configured")

    if settings.remote_base_url and settings.remote_api_key:
        providers.append(
            (
                Tier.REMOTE,
                RemoteTranscriptionProvider(
                    base_url=settings.remote_base_url,
                    api_key=settings.remote_api_key,
                    model=settings.remote_model,
                    timeout=settings.timeout_seconds,
                ),
            )
        )
        _logger.info("Remote transcription configured: %s", settings.remote_base_url)

    providers.append((Tier.FALLBACK, FallbackTranscriptionProvider()))
    service = TranscriptionService(providers, timeout=settings.timeout_seconds)
    _logger.info(
        "Transcription tiers: %s", ", ".join(tier.value for tier in service.tiers)
    )
    return service
