"""
Fingerprint Detection / Risk Engine
Read-only analysis of stored fingerprints: validation, change detection, activity patterns, risk scoring.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from menu_session.application.services.device_fingerprint import (
    calculate_similarity,
    is_valid_fingerprint_format,
)
from menu_session.application.services.fingerprint_store import FingerprintStore
from menu_session.core.config import RiskSettings, Settings, get_settings
from menu_session.domain.schemas.fingerprint import (
    ActivityPattern,
    ChangeAnalysis,
    DeviceInfo,
    FingerprintValidation,
    RiskLevel,
    SecurityReport,
    StoredFingerprint,
    utcnow,
)

logger = logging.getLogger(__name__)

_RISK_ORDER = {"low": 0, "medium": 1, "high": 2}


class FingerprintDetectionService:
    """
    Risk engine over the fingerprint store.

    Never mutates the store: callers decide whether to persist a block.
    """

    def __init__(
        self,
        store: FingerprintStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.store = store
        self.risk: RiskSettings = settings.RISK
        self.min_hash_length = settings.FINGERPRINT_MIN_HASH_LENGTH
        self.max_hash_length = settings.FINGERPRINT_MAX_HASH_LENGTH
        self._clock = clock

    def is_valid_format(self, value: Any) -> bool:
        return is_valid_fingerprint_format(value, self.min_hash_length, self.max_hash_length)

    def _is_young(self, record: StoredFingerprint) -> bool:
        return self._clock() - record.created_at < timedelta(hours=self.risk.early_window_hours)

    async def validate_fingerprint(
        self, fingerprint: Any, previous_fingerprint: Optional[str] = None
    ) -> FingerprintValidation:
        """
        Validate a fingerprint and flag suspicious activity.

        Args:
            fingerprint: Hash presented by the device
            previous_fingerprint: Hash the device presented before, if any

        Returns:
            Validation outcome; invalid format and blocked records are never valid
        """
        if not self.is_valid_format(fingerprint):
            return FingerprintValidation(
                is_valid=False,
                is_suspicious=True,
                reason="Formato de fingerprint inválido",
            )

        record = await self.store.get(fingerprint)
        if record is not None and record.is_blocked:
            return FingerprintValidation(
                is_valid=False,
                is_suspicious=True,
                is_blocked=True,
                reason="Fingerprint bloqueado por atividade suspeita",
            )

        similarity = 1.0
        changed_suspiciously = False
        if previous_fingerprint and previous_fingerprint != fingerprint:
            similarity = calculate_similarity(previous_fingerprint, fingerprint)
            changed_suspiciously = similarity < self.risk.suspicious_threshold

        patterns = self._patterns_for(record) if record else []
        has_high_risk = any(p.severity == "high" for p in patterns)

        reason = None
        if changed_suspiciously:
            reason = "Mudança suspeita detectada"
        elif has_high_risk:
            reason = "Padrão de atividade de alto risco"

        return FingerprintValidation(
            is_valid=True,
            is_suspicious=changed_suspiciously or has_high_risk,
            is_blocked=False,
            similarity=similarity,
            reason=reason,
        )

    async def detect_suspicious_changes(self, old_hash: str, new_hash: str) -> ChangeAnalysis:
        similarity = calculate_similarity(old_hash, new_hash)
        has_changed = old_hash != new_hash
        changes: list[str] = []
        risk_level: Optional[RiskLevel] = None

        if not has_changed:
            return ChangeAnalysis(has_changed=False, similarity=similarity)

        if similarity < 0.1:
            changes.append("Mudança drástica no fingerprint")
            risk_level = "high"
        elif similarity < 0.3:
            changes.append("Mudança significativa no fingerprint")
            risk_level = "medium"
        elif similarity < 0.7:
            changes.append("Mudança moderada no fingerprint")
            risk_level = "low"

        old_record = await self.store.get(old_hash)
        new_record = await self.store.get(new_hash)
        if old_record and new_record:
            device_changes, hardware_changed = self.compare_device_info(
                old_record.device_info, new_record.device_info
            )
            changes.extend(device_changes)
            # Rendering stack changes weigh more than locale changes
            if hardware_changed and _RISK_ORDER.get(risk_level or "low", 0) < _RISK_ORDER["medium"]:
                risk_level = "medium"

        return ChangeAnalysis(
            has_changed=True,
            similarity=similarity,
            suspicious_changes=changes,
            risk_level=risk_level,
        )

    @staticmethod
    def compare_device_info(old: DeviceInfo, new: DeviceInfo) -> tuple[list[str], bool]:
        """Describe differing fields; the flag is True when canvas or WebGL changed."""
        changes = []
        if old.user_agent != new.user_agent:
            changes.append("User Agent alterado")
        if old.screen_resolution != new.screen_resolution:
            changes.append("Resolução de tela alterada")
        if old.time_zone != new.time_zone:
            changes.append("Fuso horário alterado")
        if old.language != new.language:
            changes.append("Idioma alterado")

        hardware_changed = False
        if old.canvas_hash != new.canvas_hash:
            changes.append("Canvas fingerprint alterado")
            hardware_changed = True
        if old.webgl_hash != new.webgl_hash:
            changes.append("WebGL fingerprint alterado")
            hardware_changed = True
        return changes, hardware_changed

    def _patterns_for(self, record: StoredFingerprint) -> list[ActivityPattern]:
        risk = self.risk
        patterns: list[ActivityPattern] = []

        if record.usage_count > risk.usage_spike_threshold:
            patterns.append(
                ActivityPattern(
                    type="usage_spike",
                    severity="medium",
                    description=f"Uso excessivo detectado: {record.usage_count} acessos",
                    metadata={"usageCount": record.usage_count},
                )
            )

        if record.suspicious_activity > risk.rapid_changes_threshold:
            patterns.append(
                ActivityPattern(
                    type="rapid_changes",
                    severity=(
                        "high"
                        if record.suspicious_activity > risk.rapid_changes_high_threshold
                        else "medium"
                    ),
                    description=f"Múltiplas atividades suspeitas: {record.suspicious_activity}",
                    metadata={"suspiciousCount": record.suspicious_activity},
                )
            )

        if record.is_blocked:
            patterns.append(
                ActivityPattern(
                    type="blocked_fingerprint",
                    severity="high",
                    description="Fingerprint foi bloqueado por atividade suspeita",
                    metadata={"blockedAt": record.last_seen.isoformat()},
                )
            )

        if self._is_young(record) and record.usage_count > risk.early_usage_threshold:
            hours_active = (self._clock() - record.created_at).total_seconds() / 3600
            patterns.append(
                ActivityPattern(
                    type="rapid_changes",
                    severity="high",
                    description="Muitos acessos em pouco tempo",
                    metadata={
                        "hoursActive": round(hours_active, 2),
                        "usageCount": record.usage_count,
                    },
                )
            )

        return patterns

    async def analyze_activity_pattern(self, fingerprint: str) -> list[ActivityPattern]:
        record = await self.store.get(fingerprint)
        if record is None:
            return []
        return self._patterns_for(record)

    async def should_block_fingerprint(self, fingerprint: str) -> bool:
        record = await self.store.get(fingerprint)
        if record is None:
            return False
        if record.is_blocked:
            return True
        if record.suspicious_activity >= self.risk.block_threshold:
            return True
        if self._is_young(record) and record.usage_count > self.risk.early_usage_block_threshold:
            return True
        return any(p.severity == "high" for p in self._patterns_for(record))

    def _score(self, record: Optional[StoredFingerprint]) -> float:
        risk = self.risk
        if record is None:
            return risk.unknown_baseline

        score = min(record.suspicious_activity / risk.block_threshold, 1.0) * risk.weight_suspicious
        score += min(record.usage_count / risk.usage_normalizer, 1.0) * risk.weight_usage
        if record.is_blocked:
            score += risk.weight_blocked
        score += (1.0 - record.confidence) * risk.weight_confidence

        high_patterns = sum(1 for p in self._patterns_for(record) if p.severity == "high")
        score += min(high_patterns / 3, 1.0) * risk.weight_patterns
        return min(score, 1.0)

    async def calculate_risk_score(self, fingerprint: str) -> float:
        """Weighted risk in [0, 1]; unknown fingerprints get a small baseline."""
        return self._score(await self.store.get(fingerprint))

    async def generate_security_report(self, fingerprint: str) -> SecurityReport:
        record = await self.store.get(fingerprint)
        risk_score = self._score(record)
        patterns = self._patterns_for(record) if record else []

        risk_level: RiskLevel = "low"
        if risk_score > 0.7:
            risk_level = "high"
        elif risk_score > 0.4:
            risk_level = "medium"

        recommendations = []
        if risk_score > 0.5:
            recommendations.append("Considerar bloqueio temporário")
        if any(p.type == "usage_spike" for p in patterns):
            recommendations.append("Monitorar frequência de acesso")
        if any(p.type == "rapid_changes" for p in patterns):
            recommendations.append("Implementar verificação adicional")

        return SecurityReport(
            fingerprint=fingerprint,
            risk_score=round(risk_score, 4),
            risk_level=risk_level,
            is_blocked=bool(record and record.is_blocked),
            patterns=patterns,
            recommendations=recommendations,
        )
