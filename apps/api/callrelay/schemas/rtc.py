"""Data contracts for RTC client configuration."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class IceServer(_CamelModel):
    urls: list[str] = Field(..., description="STUN/TURN server URLs")


class AudioConstraints(_CamelModel):
    echo_cancellation: bool = Field(default=True, alias="echoCancellation")
    noise_suppression: bool = Field(default=True, alias="noiseSuppression")
    auto_gain_control: bool = Field(default=True, alias="autoGainControl")


class VideoConstraints(_CamelModel):
    width: int = Field(default=1280, ge=1)
    height: int = Field(default=720, ge=1)
    frame_rate: int = Field(default=30, ge=1, alias="frameRate")
    facing_mode: str = Field(default="user", alias="facingMode")
    device_id: str | None = Field(default=None, alias="deviceId")


class MediaConstraints(_CamelModel):
    audio: AudioConstraints = Field(default_factory=AudioConstraints)
    video: VideoConstraints = Field(default_factory=VideoConstraints)


class RtcConfigResponse(_CamelModel):
    signaling_url: str = Field(..., alias="signalingUrl")
    ice_servers: list[IceServer] = Field(..., alias="iceServers")
    media_constraints: MediaConstraints = Field(..., alias="mediaConstraints")
    reconnect_attempts: int = Field(..., ge=0, alias="reconnectAttempts")
    reconnect_delay_ms: int = Field(..., ge=0, alias="reconnectDelayMs")
    health_interval_ms: int = Field(..., ge=1, alias="healthIntervalMs")
