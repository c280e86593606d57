"""
Emotional State Estimator (PAD: Pleasure-Arousal-Dominance).

Each axis lives in [0, 1] and moves by exponential smoothing towards the
target observed in the latest turn:

    new = current * decay + target * (1 - decay)

Targets come from the agent output (sentiment_score drives pleasure) or from
lightweight Portuguese lexicon heuristics on the inbound text. Without a
signal an axis keeps its previous value; the estimator never raises.

The estimate is quantised into LOW / MEDIUM / HIGH bands and mapped to a
fixed instruction table injected into agentic prompts.
"""

import re
from enum import Enum
from typing import Dict, List, Optional

from campaign_engine.engine.models import PadVector
from campaign_engine.settings import settings


class PadBand(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


EMOTIONAL_INSTRUCTIONS: Dict[str, str] = {
    "LOW_PLEASURE": "⚠️ O lead está com humor negativo. Seja empático, evite pressão de vendas.",
    "HIGH_PLEASURE": "✅ O lead está receptivo! Mantenha o entusiasmo e sugira próximos passos.",
    "LOW_AROUSAL": "💤 O lead está desengajado. Faça perguntas para despertar interesse.",
    "HIGH_AROUSAL_POS": "🔥 O lead está animado! Aproveite o momento para conduzir ao fechamento.",
    "HIGH_AROUSAL_NEG": "😠 O lead está agitado/frustrado. Acalme a situação antes de prosseguir.",
    "HIGH_DOMINANCE": "👑 O lead quer controle. Seja consultivo, não imperativo.",
    "LOW_DOMINANCE": "🤝 O lead precisa de orientação. Seja mais diretivo nas sugestões.",
}

# Lexicon markers (pt-BR). Matched as regex on the lowercased message.
POSITIVE_MARKERS: List[str] = [
    r"\bobrigad[oa]\b", r"\bóti?m[oa]\b", r"\bperfeito\b", r"\bgostei\b", r"\badorei\b",
    r"\blegal\b", r"\bshow\b", r"\bmaravilh", r"\bexcelente\b", r"\bsim\b",
    r"(?<!não )\binteressad[oa]\b", r"(?<!não )\bquero\b", r"\bbacana\b", r"\btop\b", r"😍|😀|😃|👍|🙏|❤️",
]
NEGATIVE_MARKERS: List[str] = [
    r"\bnão quero\b", r"\bpéssim[oa]\b", r"\bhorr[ií]vel\b", r"\bchato\b", r"\bcaro\b",
    r"\babsurdo\b", r"\bdecepcion", r"\bpara de\b", r"\bparem\b", r"\bspam\b",
    r"\bnão tenho interesse\b", r"\bsem interesse\b", r"\bruim\b", r"\bdesisto\b", r"😡|😠|👎|🤬",
]
HIGH_AROUSAL_MARKERS: List[str] = [
    r"!{2,}", r"\burgente\b", r"\bagora\b", r"\brápido\b", r"\bjá\b", r"\bimediatamente\b",
    r"\bcorre\b", r"\bnossa\b", r"\bcaramba\b",
]
LOW_AROUSAL_MARKERS: List[str] = [
    r"^\s*(ok|hm+|sei|talvez|tanto faz|pode ser|blz|tá|ta|uhum|aham)\s*[.!]?\s*$",
]
HIGH_DOMINANCE_MARKERS: List[str] = [
    r"\bexijo\b", r"\bquero falar com\b", r"\bme passa\b", r"\bmanda\b", r"\bpreciso que\b",
    r"\bresolva\b", r"\bsó responde\b", r"\bdecido eu\b",
]
LOW_DOMINANCE_MARKERS: List[str] = [
    r"\bnão sei\b", r"\bestou em dúvida\b", r"\bdúvida\b", r"\bme ajuda\b", r"\bme ajude\b",
    r"\bo que você acha\b", r"\bme indica\b", r"\bqual (você )?recomenda\b", r"\bconfus[oa]\b",
]

# Minimum length of an all-caps word to count as shouting
_CAPS_WORD = re.compile(r"\b[A-ZÀ-Ý]{4,}\b")


class EmotionalStateEstimator:
    """
    Updates the PAD estimate of a conversation and derives prompt directives.

    Usage:
        estimator = EmotionalStateEstimator()
        pad = estimator.observe_text(state.pad, "Isso é um absurdo!!!")
        directive = estimator.instruction(pad)
    """

    def __init__(
        self,
        decay_factor: Optional[float] = None,
        low: Optional[float] = None,
        high: Optional[float] = None,
    ):
        self.decay_factor = decay_factor if decay_factor is not None else settings.emotion.decay_factor
        self.low = low if low is not None else settings.emotion.low
        self.high = high if high is not None else settings.emotion.high
        self._patterns = {
            name: [re.compile(m, re.IGNORECASE | re.UNICODE) for m in markers]
            for name, markers in (
                ("positive", POSITIVE_MARKERS),
                ("negative", NEGATIVE_MARKERS),
                ("high_arousal", HIGH_AROUSAL_MARKERS),
                ("low_arousal", LOW_AROUSAL_MARKERS),
                ("high_dominance", HIGH_DOMINANCE_MARKERS),
                ("low_dominance", LOW_DOMINANCE_MARKERS),
            )
        }

    @staticmethod
    def baseline() -> PadVector:
        p, a, d = settings.emotion.baseline
        return PadVector(pleasure=p, arousal=a, dominance=d)

    # ---------------------------------------------------------------- updates

    def _smooth(self, current: float, target: Optional[float]) -> float:
        if target is None:
            return current
        value = current * self.decay_factor + target * (1 - self.decay_factor)
        return min(1.0, max(0.0, value))

    def update(
        self,
        pad: PadVector,
        pleasure: Optional[float] = None,
        arousal: Optional[float] = None,
        dominance: Optional[float] = None,
    ) -> PadVector:
        """Move each axis towards its target; None holds the axis."""
        return PadVector(
            pleasure=self._smooth(pad.pleasure, pleasure),
            arousal=self._smooth(pad.arousal, arousal),
            dominance=self._smooth(pad.dominance, dominance),
        )

    def observe_sentiment(self, pad: PadVector, sentiment_score) -> PadVector:
        """Apply an agent-reported sentiment score in [0, 1] to pleasure."""
        try:
            score = float(sentiment_score)
        except (TypeError, ValueError):
            return pad
        if score != score:  # NaN
            return pad
        return self.update(pad, pleasure=min(1.0, max(0.0, score)))

    def observe_text(self, pad: PadVector, text: Optional[str]) -> PadVector:
        """Apply lexicon heuristics on an inbound message."""
        if not text or not text.strip():
            return pad
        targets = self.score_text(text)
        return self.update(pad, **targets)

    def score_text(self, text: str) -> Dict[str, Optional[float]]:
        """Per-axis targets for a message; None where there is no signal."""
        lowered = text.lower()
        counts = {
            name: sum(1 for p in patterns if p.search(lowered))
            for name, patterns in self._patterns.items()
        }

        pleasure = None
        polar = counts["positive"] + counts["negative"]
        if polar:
            pleasure = 0.5 + 0.5 * (counts["positive"] - counts["negative"]) / polar

        arousal = None
        excitement = counts["high_arousal"] + len(_CAPS_WORD.findall(text))
        if excitement:
            arousal = min(1.0, 0.7 + 0.1 * excitement)
        elif counts["low_arousal"]:
            arousal = 0.15

        dominance = None
        if counts["high_dominance"] > counts["low_dominance"]:
            dominance = 0.85
        elif counts["low_dominance"] > counts["high_dominance"]:
            dominance = 0.2

        return {"pleasure": pleasure, "arousal": arousal, "dominance": dominance}

    # ------------------------------------------------------------ directives

    def band(self, value: float) -> PadBand:
        if value < self.low:
            return PadBand.LOW
        if value > self.high:
            return PadBand.HIGH
        return PadBand.MEDIUM

    def instruction_keys(self, pad: PadVector) -> List[str]:
        pleasure = self.band(pad.pleasure)
        arousal = self.band(pad.arousal)
        dominance = self.band(pad.dominance)

        keys = []
        if pleasure == PadBand.LOW:
            keys.append("LOW_PLEASURE")
        if arousal == PadBand.HIGH:
            keys.append("HIGH_AROUSAL_NEG" if pleasure == PadBand.LOW else "HIGH_AROUSAL_POS")
        elif arousal == PadBand.LOW:
            keys.append("LOW_AROUSAL")
        if dominance == PadBand.HIGH:
            keys.append("HIGH_DOMINANCE")
        elif dominance == PadBand.LOW:
            keys.append("LOW_DOMINANCE")
        if pleasure == PadBand.HIGH:
            keys.append("HIGH_PLEASURE")
        return keys

    def instruction(self, pad: Optional[PadVector]) -> str:
        """Prompt block for the current estimate, empty when all axes are MEDIUM."""
        if pad is None:
            return ""
        keys = self.instruction_keys(pad)
        if not keys:
            return ""
        body = "\n".join(EMOTIONAL_INSTRUCTIONS[k] for k in keys)
        return f"<emotional_context>\n{body}\n</emotional_context>"
