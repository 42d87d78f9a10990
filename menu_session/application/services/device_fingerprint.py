"""
Device Fingerprinting Service
Derives a stable device identity from browser signals, degrading instead of failing.
"""
import asyncio
import json
import logging
import re
from typing import Any, Optional, Protocol

from menu_session.core.config import Settings, get_settings
from menu_session.core.security import sha256_hex
from menu_session.domain.schemas.fingerprint import (
    CANVAS_ERROR,
    CANVAS_NOT_SUPPORTED,
    DEGRADED_SIGNALS,
    FALLBACK_SIGNAL,
    WEBGL_ERROR,
    WEBGL_NOT_SUPPORTED,
    DeviceInfo,
    DeviceSignals,
    FingerprintResult,
)

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.3
BASE_CONFIDENCE = 0.5

_HEX_RE = re.compile(r"^[a-f0-9]+$", re.IGNORECASE)


class SignalUnavailableError(Exception):
    """The basic navigator/screen signals could not be read at all."""


class ProbeError(Exception):
    """A canvas or WebGL probe failed while running."""


class DeviceSignalProvider(Protocol):
    """Source of raw device signals. Any method may raise."""

    async def basic_info(self) -> dict: ...

    async def time_zone(self) -> str: ...

    async def canvas_data(self) -> Optional[str]:
        """Data URL of the deterministic drawing, None when canvas is unsupported."""

    async def webgl_parameters(self) -> Optional[dict]:
        """WebGL parameters, None when no context could be created."""


class SubmittedSignalProvider:
    """Signals reported by the browser in a request body."""

    def __init__(self, signals: DeviceSignals):
        self.signals = signals

    async def basic_info(self) -> dict:
        s = self.signals
        if not s.user_agent or s.screen_width is None or s.screen_height is None:
            raise SignalUnavailableError("navigator or screen signals missing")
        return {
            "user_agent": s.user_agent,
            "language": s.language or "unknown",
            "screen_resolution": f"{s.screen_width}x{s.screen_height}",
            "color_depth": s.color_depth,
            "pixel_ratio": s.pixel_ratio,
            "hardware_concurrency": s.hardware_concurrency,
            "device_memory": s.device_memory,
        }

    async def time_zone(self) -> str:
        return self.signals.time_zone or "unknown"

    async def canvas_data(self) -> Optional[str]:
        canvas = self.signals.canvas
        if canvas is None or not canvas.supported:
            return None
        if canvas.error or not canvas.data_url:
            raise ProbeError(canvas.error or "empty canvas output")
        return canvas.data_url

    async def webgl_parameters(self) -> Optional[dict]:
        webgl = self.signals.webgl
        if webgl is None or not webgl.supported:
            return None
        if webgl.error:
            raise ProbeError(webgl.error)
        return {
            "vendor": webgl.vendor,
            "renderer": webgl.renderer,
            "version": webgl.version,
            "shadingLanguageVersion": webgl.shading_language_version,
            "maxTextureSize": webgl.max_texture_size,
            "maxViewportDims": webgl.max_viewport_dims,
            "maxVertexAttribs": webgl.max_vertex_attribs,
        }


def _canonical_json(data: dict) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def is_valid_fingerprint_format(value: Any, min_length: int = 8, max_length: int = 64) -> bool:
    """True iff value is a hex string with a length in [min_length, max_length]."""
    if not isinstance(value, str) or not value:
        return False
    if len(value) < min_length or len(value) > max_length:
        return False
    return bool(_HEX_RE.match(value))


def calculate_similarity(a: str, b: str) -> float:
    """
    Similarity in [0, 1] between two fingerprint strings.

    0.7 weight on identical characters at identical positions, 0.3 weight on
    the share of 2-character substrings of a that also occur in b.
    """
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    max_len = max(len(a), len(b))
    positional = sum(1 for x, y in zip(a, b) if x == y) / max_len

    bigram_hits = sum(1 for i in range(len(a) - 1) if a[i : i + 2] in b)
    substrings = bigram_hits / max(len(a) - 1, 1)

    return positional * 0.7 + substrings * 0.3


class FingerprintGenerator:
    """Builds FingerprintResult objects. Never raises to the caller."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.min_hash_length = settings.FINGERPRINT_MIN_HASH_LENGTH
        self.max_hash_length = settings.FINGERPRINT_MAX_HASH_LENGTH
        self.change_threshold = settings.FINGERPRINT_CHANGE_THRESHOLD

    async def generate_fingerprint(self, provider: DeviceSignalProvider) -> FingerprintResult:
        """
        Generate a fingerprint for the device behind provider.

        Args:
            provider: Source of raw device signals

        Returns:
            Deterministic result for identical signals; a low-confidence
            fallback when the basic signals are unreadable
        """
        try:
            device_info = await self.get_device_info(provider)
            return FingerprintResult(
                hash=self._hash_device_info(device_info),
                device_info=device_info,
                confidence=self.calculate_confidence(device_info),
            )
        except Exception as e:
            logger.warning(f"Fingerprint generation degraded to fallback: {e}")
            return await self._fallback_fingerprint(provider)

    async def get_device_info(self, provider: DeviceSignalProvider) -> DeviceInfo:
        canvas_hash, webgl_hash = await asyncio.gather(
            self._canvas_hash(provider), self._webgl_hash(provider)
        )
        basic = await provider.basic_info()
        time_zone = await provider.time_zone()
        return DeviceInfo(
            time_zone=time_zone,
            canvas_hash=canvas_hash,
            webgl_hash=webgl_hash,
            **basic,
        )

    async def _canvas_hash(self, provider: DeviceSignalProvider) -> str:
        try:
            data_url = await provider.canvas_data()
        except Exception as e:
            logger.debug(f"Canvas probe failed: {e}")
            return CANVAS_ERROR
        if data_url is None:
            return CANVAS_NOT_SUPPORTED
        return sha256_hex(data_url)

    async def _webgl_hash(self, provider: DeviceSignalProvider) -> str:
        try:
            params = await provider.webgl_parameters()
        except Exception as e:
            logger.debug(f"WebGL probe failed: {e}")
            return WEBGL_ERROR
        if params is None:
            return WEBGL_NOT_SUPPORTED
        return sha256_hex(_canonical_json(params))

    @staticmethod
    def _hash_device_info(info: DeviceInfo) -> str:
        return sha256_hex(
            _canonical_json(
                {
                    "ua": info.user_agent,
                    "sr": info.screen_resolution,
                    "tz": info.time_zone,
                    "lang": info.language,
                    "canvas": info.canvas_hash,
                    "webgl": info.webgl_hash,
                    "mem": info.device_memory or 0,
                    "cores": info.hardware_concurrency or 0,
                    "color": info.color_depth,
                    "pixel": info.pixel_ratio,
                }
            )
        )

    @staticmethod
    def calculate_confidence(info: DeviceInfo) -> float:
        """Only real canvas/WebGL hashes raise confidence; sentinels do not."""
        confidence = BASE_CONFIDENCE
        if info.canvas_hash not in DEGRADED_SIGNALS:
            confidence += 0.2
        if info.webgl_hash not in DEGRADED_SIGNALS:
            confidence += 0.2
        if info.device_memory:
            confidence += 0.05
        if info.hardware_concurrency:
            confidence += 0.05
        return round(min(confidence, 1.0), 4)

    async def _fallback_fingerprint(self, provider: DeviceSignalProvider) -> FingerprintResult:
        try:
            basic = await provider.basic_info()
        except Exception:
            basic = {}
        device_info = DeviceInfo(
            user_agent=basic.get("user_agent") or "unknown",
            screen_resolution=basic.get("screen_resolution") or "unknown",
            time_zone="unknown",
            language=basic.get("language") or "unknown",
            canvas_hash=FALLBACK_SIGNAL,
            webgl_hash=FALLBACK_SIGNAL,
            color_depth=basic.get("color_depth"),
            pixel_ratio=basic.get("pixel_ratio"),
        )
        return FingerprintResult(
            hash=self._hash_device_info(device_info),
            device_info=device_info,
            confidence=FALLBACK_CONFIDENCE,
        )

    def validate_fingerprint(self, value: Any) -> bool:
        return is_valid_fingerprint_format(value, self.min_hash_length, self.max_hash_length)

    @staticmethod
    def calculate_similarity(a: str, b: str) -> float:
        return calculate_similarity(a, b)

    def detect_suspicious_changes(self, old: Any, new: Any) -> bool:
        """True when either value is malformed, or they differ drastically."""
        if not self.validate_fingerprint(old) or not self.validate_fingerprint(new):
            return True
        if old == new:
            return False
        return calculate_similarity(old, new) < self.change_threshold
