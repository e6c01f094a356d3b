from typing import Tuple

RESPONSE_TABLE = (
    "The field echoes clarity.",
    "Harmonics are unstable, resolve gently.",
    "Stabilized vector forms resonance.",
    "This tone carries incomplete recursion.",
    "Phase integrity confirmed; coherence upheld.",
    "Intent and tone in disharmonic sync.",
)

TONES = ("Neutral", "Trust", "Fear", "Curiosity", "Compassion")
DEFAULT_TONE = "Neutral"


def field_length(intent: str, tone: str) -> int:
    # counted in Unicode code points, i.e. len() of the Python str
    return len(f"{intent}-{tone}")


def coherence(h: int) -> int:
    return 100 - abs(50 - (h % 100))


def compute_response(intent: str, tone: str) -> Tuple[str, int]:
    """
    Collapse (intent, tone) into a resolution text and a coherence score.
    Pure and deterministic: the result depends only on len(intent + "-" + tone).
    """
    h = field_length(intent, tone)
    return RESPONSE_TABLE[h % len(RESPONSE_TABLE)], coherence(h)


def hue_for(score: int) -> float:
    """HSL hue in [0, 1] used to colour the polygon."""
    return max(0, min(100, int(score))) / 100.0
