"""
Device fingerprint generation unit tests
"""
import pytest

from menu_session.application.services.device_fingerprint import (
    FingerprintGenerator,
    SubmittedSignalProvider,
    calculate_similarity,
    is_valid_fingerprint_format,
)
from menu_session.domain.schemas.fingerprint import (
    CANVAS_ERROR,
    CANVAS_NOT_SUPPORTED,
    FALLBACK_SIGNAL,
    WEBGL_ERROR,
    CanvasProbe,
    WebGLProbe,
)


@pytest.fixture
def generator(settings):
    return FingerprintGenerator(settings)


class TestGenerateFingerprint:
    @pytest.mark.asyncio
    async def test_same_signals_give_same_hash(self, generator, signals):
        first = await generator.generate_fingerprint(SubmittedSignalProvider(signals))
        second = await generator.generate_fingerprint(SubmittedSignalProvider(signals))

        assert first.hash == second.hash
        assert len(first.hash) == 64
        assert first.confidence == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_different_screen_changes_hash(self, generator, signals):
        other = signals.model_copy(update={"screen_width": 414})

        first = await generator.generate_fingerprint(SubmittedSignalProvider(signals))
        second = await generator.generate_fingerprint(SubmittedSignalProvider(other))

        assert first.hash != second.hash

    @pytest.mark.asyncio
    async def test_failing_probes_use_error_sentinels(self, generator, signals):
        broken = signals.model_copy(
            update={
                "canvas": CanvasProbe(error="SecurityError: canvas tainted"),
                "webgl": WebGLProbe(error="context lost"),
            }
        )

        result = await generator.generate_fingerprint(SubmittedSignalProvider(broken))

        assert result.device_info.canvas_hash == CANVAS_ERROR
        assert result.device_info.webgl_hash == WEBGL_ERROR
        assert result.hash
        assert result.confidence == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_unsupported_canvas_lowers_confidence(self, generator, signals):
        no_canvas = signals.model_copy(update={"canvas": CanvasProbe(supported=False)})

        result = await generator.generate_fingerprint(SubmittedSignalProvider(no_canvas))

        assert result.device_info.canvas_hash == CANVAS_NOT_SUPPORTED
        assert result.confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_missing_basic_signals_fall_back(self, generator, signals):
        headless = signals.model_copy(update={"user_agent": None})

        result = await generator.generate_fingerprint(SubmittedSignalProvider(headless))

        assert result.confidence == pytest.approx(0.3)
        assert result.device_info.canvas_hash == FALLBACK_SIGNAL
        assert result.device_info.user_agent == "unknown"
        assert is_valid_fingerprint_format(result.hash)


class TestFingerprintFormat:
    @pytest.mark.parametrize("value", ["a" * 8, "ABCDEF0123456789", "f" * 64])
    def test_valid_hex(self, value):
        assert is_valid_fingerprint_format(value) is True

    @pytest.mark.parametrize("value", [None, "", "abc", "g" * 10, "a" * 65, 12345678])
    def test_invalid_values(self, value):
        assert is_valid_fingerprint_format(value) is False


class TestSimilarity:
    def test_identical_and_empty(self):
        assert calculate_similarity("abcd", "abcd") == 1.0
        assert calculate_similarity("", "abcd") == 0.0

    def test_positional_and_substring_weights(self):
        # 3/4 positions match, 2 of 3 bigrams occur in the other string
        assert calculate_similarity("abcd", "abcf") == pytest.approx(0.75 * 0.7 + (2 / 3) * 0.3)

    def test_detect_suspicious_changes(self, generator):
        assert generator.detect_suspicious_changes("not-hex", "a" * 16) is True
        assert generator.detect_suspicious_changes("a" * 16, "a" * 16) is False
        assert generator.detect_suspicious_changes("a" * 16, "b" * 16) is True
        assert generator.detect_suspicious_changes("a" * 16, "a" * 15 + "b") is False
