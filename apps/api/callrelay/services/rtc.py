"""RTC client configuration derived from settings.

Browsers and the Python client fetch this once before acquiring media so both
sides share ICE servers, capture constraints and reconnect timings."""
from __future__ import annotations

from ..core.config import Settings, settings as default_settings
from ..schemas.rtc import (
    AudioConstraints,
    IceServer,
    MediaConstraints,
    RtcConfigResponse,
    VideoConstraints,
)


def media_constraints(config: Settings | None = None) -> MediaConstraints:
    """Return capture constraints for local media acquisition."""

    config = config or default_settings
    return MediaConstraints(
        audio=AudioConstraints(
            echo_cancellation=config.audio_echo_cancellation,
            noise_suppression=config.audio_noise_suppression,
            auto_gain_control=config.audio_auto_gain_control,
        ),
        video=VideoConstraints(
            width=config.video_width,
            height=config.video_height,
            frame_rate=config.video_frame_rate,
            facing_mode=config.video_facing_mode,
        ),
    )


def client_config(config: Settings | None = None) -> RtcConfigResponse:
    """Produce the configuration payload served to clients."""

    config = config or default_settings
    return RtcConfigResponse(
        signaling_url=config.signaling_url,
        ice_servers=[IceServer(urls=list(config.ice_servers))] if config.ice_servers else [],
        media_constraints=media_constraints(config),
        reconnect_attempts=config.reconnect_attempts,
        reconnect_delay_ms=int(config.reconnect_delay_seconds * 1000),
        health_interval_ms=int(config.health_interval_seconds * 1000),
    )
