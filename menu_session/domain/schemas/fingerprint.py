"""
Fingerprint Schemas
Device signals, derived fingerprints and their persisted records.
"""
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CANVAS_NOT_SUPPORTED = "canvas-not-supported"
CANVAS_ERROR = "canvas-error"
WEBGL_NOT_SUPPORTED = "webgl-not-supported"
WEBGL_ERROR = "webgl-error"
FALLBACK_SIGNAL = "fallback"

DEGRADED_SIGNALS = frozenset(
    {CANVAS_NOT_SUPPORTED, CANVAS_ERROR, WEBGL_NOT_SUPPORTED, WEBGL_ERROR, FALLBACK_SIGNAL}
)

RiskLevel = Literal["low", "medium", "high"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Snake case in Python, camelCase on the wire and in storage."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==========================================
# RAW SIGNALS (submitted by the browser)
# ==========================================


class CanvasProbe(CamelModel):
    """Outcome of the deterministic canvas drawing."""

    supported: bool = True
    data_url: Optional[str] = None
    error: Optional[str] = None


class WebGLProbe(CamelModel):
    """WebGL context parameters read by the browser."""

    supported: bool = True
    vendor: Optional[str] = None
    renderer: Optional[str] = None
    version: Optional[str] = None
    shading_language_version: Optional[str] = None
    max_texture_size: Optional[int] = None
    max_viewport_dims: Optional[list[int]] = None
    max_vertex_attribs: Optional[int] = None
    error: Optional[str] = None


class DeviceSignals(CamelModel):
    """Everything the browser could read about itself."""

    user_agent: Optional[str] = Field(None, max_length=1024)
    language: Optional[str] = Field(None, max_length=64)
    screen_width: Optional[int] = None
    screen_height: Optional[int] = None
    color_depth: Optional[int] = None
    pixel_ratio: Optional[float] = None
    time_zone: Optional[str] = Field(None, max_length=64)
    hardware_concurrency: Optional[int] = None
    device_memory: Optional[float] = None
    canvas: Optional[CanvasProbe] = None
    webgl: Optional[WebGLProbe] = None


# ==========================================
# DERIVED IDENTITY
# ==========================================


class DeviceInfo(CamelModel):
    user_agent: str
    screen_resolution: str
    time_zone: str
    language: str
    canvas_hash: str
    webgl_hash: str
    color_depth: Optional[int] = None
    pixel_ratio: Optional[float] = None
    hardware_concurrency: Optional[int] = None
    device_memory: Optional[float] = None


class FingerprintResult(CamelModel):
    hash: str
    device_info: DeviceInfo
    confidence: float = Field(..., ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utcnow)


class StoredFingerprint(CamelModel):
    """Persisted record, keyed by hash."""

    hash: str
    device_info: DeviceInfo
    confidence: float = Field(..., ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)
    usage_count: int = Field(default=0, ge=0)
    is_blocked: bool = False
    suspicious_activity: int = Field(default=0, ge=0)
    block_reason: Optional[str] = None


class StoreMetadata(CamelModel):
    last_cleanup: datetime = Field(default_factory=utcnow)
    total_generated: int = 0
    version: str


class FingerprintEnvelope(CamelModel):
    """Persisted format of the whole fingerprint store."""

    fingerprints: dict[str, StoredFingerprint] = Field(default_factory=dict)
    metadata: StoreMetadata


# ==========================================
# DETECTION RESULTS
# ==========================================


class FingerprintValidation(CamelModel):
    is_valid: bool
    is_suspicious: bool = False
    is_blocked: bool = False
    similarity: Optional[float] = None
    reason: Optional[str] = None


class ChangeAnalysis(CamelModel):
    has_changed: bool
    similarity: float
    suspicious_changes: list[str] = Field(default_factory=list)
    risk_level: Optional[RiskLevel] = None


class ActivityPattern(CamelModel):
    type: Literal["usage_spike", "rapid_changes", "blocked_fingerprint"]
    severity: RiskLevel
    description: str
    metadata: dict = Field(default_factory=dict)
    detected_at: datetime = Field(default_factory=utcnow)


class SecurityReport(CamelModel):
    fingerprint: str
    risk_score: float
    risk_level: RiskLevel
    is_blocked: bool
    patterns: list[ActivityPattern] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class CountEntry(CamelModel):
    value: str
    count: int


class FingerprintAnalytics(CamelModel):
    total_fingerprints: int = 0
    blocked_count: int = 0
    suspicious_activity: int = 0
    average_confidence: float = 0.0
    top_user_agents: list[CountEntry] = Field(default_factory=list)
    top_resolutions: list[CountEntry] = Field(default_factory=list)
    top_time_zones: list[CountEntry] = Field(default_factory=list)


class AuditEntry(CamelModel):
    """One security audit event recorded for a device."""

    event_type: str
    risk_score: int
    store_id: Optional[str] = None
    customer_id: Optional[str] = None
    ip_address: str
    created_at: datetime
