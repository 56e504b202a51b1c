"""Configuration loading + normalization for the relay service."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from .config_manager import ConfigManager, get_config_manager
from .paths import DEFAULT_MEDIA_ROOT

NDI_SERVICE_TYPE = "_ndi._tcp.local."
DEFAULT_BRIDGE_DEVICES: tuple[str, ...] = (
    "OBS Virtual Camera",
    "OBS-Camera",
    "obs-virtual-camera",
)


def _default_device_backend() -> str:
    if sys.platform.startswith("win"):
        return "dshow"
    if sys.platform == "darwin":
        return "avfoundation"
    return "v4l2"


@dataclass(slots=True, frozen=True)
class DiscoverySettings:
    """How long and where to look for network video sources."""

    service_type: str = NDI_SERVICE_TYPE
    window: float = 5.0
    query_offsets: tuple[float, ...] = (0.0, 1.0, 2.0)
    registry_timeout: float = 2.0
    static_sources: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class CaptureSettings:
    """ffmpeg invocation and session supervision knobs."""

    ffmpeg_path: str = "ffmpeg"
    device_backend: str = field(default_factory=_default_device_backend)
    bridge_devices: tuple[str, ...] = DEFAULT_BRIDGE_DEVICES
    device_probe_timeout: float = 3.0
    first_data_timeout: float = 10.0
    stop_timeout: float = 2.0
    frame_rate: int = 30
    jpeg_quality: int = 3
    read_chunk_size: int = 64 * 1024
    max_frame_bytes: int = 8 * 1024 * 1024
    max_decode_overflows: int = 3
    subscriber_queue_size: int = 30


@dataclass(slots=True, frozen=True)
class RelaySettings:
    """Normalized configuration derived from config.txt and CLI args."""

    host: str = "0.0.0.0"
    port: int = 8080
    localhost_only: bool = False
    debug: bool = False
    log_level: str = "info"
    log_file: Path | None = None
    console_output: bool = True
    media_root: Path = DEFAULT_MEDIA_ROOT
    metadata_prefix_bytes: int = 512 * 1024
    max_movie_box_bytes: int = 16 * 1024 * 1024
    cleanup_orphans: bool = True
    discovery: DiscoverySettings = field(default_factory=DiscoverySettings)
    capture: CaptureSettings = field(default_factory=CaptureSettings)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, str],
        config_manager: ConfigManager | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "RelaySettings":
        """Build settings from a parsed config dict; unknown keys are ignored."""
        cm = config_manager or get_config_manager()
        env = os.environ if environ is None else environ
        cfg = dict(config)
        defaults = cls()
        discovery_defaults = DiscoverySettings()
        capture_defaults = CaptureSettings()

        default_port = defaults.port
        if env.get("PORT", "").isdigit():
            default_port = int(env["PORT"])

        offsets = tuple(
            float(item) for item in cm.get_list(cfg, "discovery_query_offsets")
            if _is_number(item)
        ) or discovery_defaults.query_offsets

        discovery = DiscoverySettings(
            service_type=cm.get_str(cfg, "service_type", discovery_defaults.service_type),
            window=cm.get_float(cfg, "discovery_window", discovery_defaults.window),
            query_offsets=offsets,
            registry_timeout=cm.get_float(cfg, "registry_timeout", discovery_defaults.registry_timeout),
            static_sources=tuple(cm.get_list(cfg, "static_sources")),
        )

        capture = CaptureSettings(
            ffmpeg_path=cm.get_str(cfg, "ffmpeg_path", capture_defaults.ffmpeg_path),
            device_backend=cm.get_str(cfg, "device_backend", capture_defaults.device_backend),
            bridge_devices=tuple(cm.get_list(cfg, "bridge_devices", capture_defaults.bridge_devices)),
            device_probe_timeout=cm.get_float(cfg, "device_probe_timeout", capture_defaults.device_probe_timeout),
            first_data_timeout=cm.get_float(cfg, "first_data_timeout", capture_defaults.first_data_timeout),
            stop_timeout=cm.get_float(cfg, "stop_timeout", capture_defaults.stop_timeout),
            frame_rate=cm.get_int(cfg, "frame_rate", capture_defaults.frame_rate),
            jpeg_quality=cm.get_int(cfg, "jpeg_quality", capture_defaults.jpeg_quality),
            read_chunk_size=cm.get_int(cfg, "read_chunk_size", capture_defaults.read_chunk_size),
            max_frame_bytes=cm.get_int(cfg, "max_frame_bytes", capture_defaults.max_frame_bytes),
            max_decode_overflows=cm.get_int(cfg, "max_decode_overflows", capture_defaults.max_decode_overflows),
            subscriber_queue_size=cm.get_int(cfg, "subscriber_queue_size", capture_defaults.subscriber_queue_size),
        )

        log_file = cm.get_str(cfg, "log_file", "")
        media_root = cm.get_str(cfg, "media_root", "")

        return cls(
            host=cm.get_str(cfg, "host", defaults.host),
            port=cm.get_int(cfg, "port", default_port),
            localhost_only=cm.get_bool(cfg, "localhost_only", defaults.localhost_only),
            debug=cm.get_bool(cfg, "debug", defaults.debug),
            log_level=cm.get_str(cfg, "log_level", defaults.log_level),
            log_file=Path(log_file) if log_file else None,
            console_output=cm.get_bool(cfg, "console_output", defaults.console_output),
            media_root=Path(media_root).expanduser() if media_root else defaults.media_root,
            metadata_prefix_bytes=cm.get_int(cfg, "metadata_prefix_bytes", defaults.metadata_prefix_bytes),
            max_movie_box_bytes=cm.get_int(cfg, "max_movie_box_bytes", defaults.max_movie_box_bytes),
            cleanup_orphans=cm.get_bool(cfg, "cleanup_orphans", defaults.cleanup_orphans),
            discovery=discovery,
            capture=capture,
        )

    def with_args(self, args: Any) -> "RelaySettings":
        """Overlay CLI arguments that were explicitly given (not None)."""
        updates: dict[str, Any] = {}
        for name in ("host", "port", "log_level", "log_file", "media_root", "console_output"):
            value = getattr(args, name, None)
            if value is not None:
                updates[name] = value
        if getattr(args, "debug", False):
            updates["debug"] = True

        settings = replace(self, **updates)

        ffmpeg = getattr(args, "ffmpeg", None)
        if ffmpeg:
            settings = replace(settings, capture=replace(settings.capture, ffmpeg_path=ffmpeg))
        return settings


def _is_number(value: str) -> bool:
    try:
        float(value)
    except ValueError:
        return False
    return True


__all__ = [
    "CaptureSettings",
    "DiscoverySettings",
    "RelaySettings",
    "NDI_SERVICE_TYPE",
]
