"""
Tests for the PAD emotional state estimator.
"""

import pytest

from campaign_engine.engine.emotional_state import EmotionalStateEstimator, PadBand
from campaign_engine.engine.models import PadVector


@pytest.fixture
def estimator():
    return EmotionalStateEstimator(decay_factor=0.7, low=0.3, high=0.7)


class TestSmoothing:

    def test_update_formula(self, estimator):
        """new = current * decay + target * (1 - decay)."""
        pad = estimator.update(PadVector(), pleasure=1.0)
        assert pad.pleasure == pytest.approx(0.65)
        assert pad.arousal == 0.5
        assert pad.dominance == 0.5

    def test_no_signal_holds(self, estimator):
        """Text without markers keeps every axis."""
        pad = PadVector(0.2, 0.8, 0.4)
        assert estimator.observe_text(pad, "12345") == pad
        assert estimator.observe_text(pad, "") == pad

    def test_sentiment_score_clamped(self, estimator):
        """Out-of-range scores are clamped to [0, 1]."""
        pad = estimator.observe_sentiment(PadVector(), 7)
        assert pad.pleasure == pytest.approx(0.65)

    def test_invalid_sentiment_ignored(self, estimator):
        """The estimator never raises on bad input."""
        assert estimator.observe_sentiment(PadVector(), "n/a") == PadVector()
        assert estimator.observe_sentiment(PadVector(), float("nan")) == PadVector()

    def test_repeated_negative_turns_reach_low(self, estimator):
        """Consistent negativity drives pleasure into the LOW band."""
        pad = PadVector()
        for _ in range(4):
            pad = estimator.observe_text(pad, "isso é um absurdo, péssimo atendimento")
        assert estimator.band(pad.pleasure) == PadBand.LOW


class TestTextHeuristics:

    def test_positive_message(self, estimator):
        """Gratitude raises pleasure."""
        scores = estimator.score_text("Obrigado, adorei!")
        assert scores["pleasure"] == 1.0

    def test_negated_interest_is_negative(self, estimator):
        """'não quero' is not read as interest."""
        scores = estimator.score_text("não quero")
        assert scores["pleasure"] == 0.0

    def test_shouting_raises_arousal(self, estimator):
        """Capitals and repeated exclamations excite."""
        scores = estimator.score_text("RESPONDE AGORA!!")
        assert scores["arousal"] >= 0.9

    def test_curt_reply_is_low_arousal(self, estimator):
        """'ok' alone is disengaged."""
        assert estimator.score_text("ok")["arousal"] == 0.15

    def test_dominance(self, estimator):
        """Demands vs hesitation."""
        assert estimator.score_text("exijo que resolva isso")["dominance"] == 0.85
        assert estimator.score_text("não sei, o que você acha?")["dominance"] == 0.2


class TestInstructions:

    def test_medium_state_has_no_instruction(self, estimator):
        """Baseline produces no emotional block."""
        assert estimator.instruction(PadVector()) == ""

    def test_frustrated_lead(self, estimator):
        """Low pleasure plus high arousal asks to calm down."""
        keys = estimator.instruction_keys(PadVector(0.1, 0.9, 0.5))
        assert keys == ["LOW_PLEASURE", "HIGH_AROUSAL_NEG"]

    def test_excited_lead(self, estimator):
        """High pleasure plus high arousal pushes towards closing."""
        keys = estimator.instruction_keys(PadVector(0.9, 0.9, 0.5))
        assert keys == ["HIGH_AROUSAL_POS", "HIGH_PLEASURE"]

    def test_instruction_wrapped(self, estimator):
        """Instructions are wrapped in emotional_context tags."""
        text = estimator.instruction(PadVector(0.5, 0.5, 0.1))
        assert text.startswith("<emotional_context>")
        assert text.endswith("</emotional_context>")
        assert "diretivo" in text

    def test_band_boundaries(self, estimator):
        """0.3 and 0.7 are MEDIUM."""
        assert estimator.band(0.29) == PadBand.LOW
        assert estimator.band(0.3) == PadBand.MEDIUM
        assert estimator.band(0.7) == PadBand.MEDIUM
        assert estimator.band(0.71) == PadBand.HIGH
