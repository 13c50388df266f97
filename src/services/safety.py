"""Direction/speed safety table for the spot's shoreline."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Literal

SafetyLevel = Literal["low", "medium", "good", "high", "danger"]
WindType = Literal["onshore", "offshore", "sideshore"]

OFFSHORE_RANGE = (225.0, 315.0)  # SW-NW, blowing from land to sea
ONSHORE_RANGE = (45.0, 135.0)  # NE-SE, blowing from sea to land

LOW_SPEED = 5.0
GOOD_RANGE = (12.0, 20.0)
HIGH_RANGE = (15.0, 25.0)
EXTREME_SPEED = 30.0

SAFETY_TEXT: Dict[str, str] = {
    "low": "Light wind",
    "medium": "Moderate",
    "good": "Good conditions",
    "high": "Excellent conditions!",
    "danger": "Dangerous!",
}


@dataclass(frozen=True, slots=True)
class SafetyAssessment:
    level: SafetyLevel
    wind_type: WindType
    is_offshore: bool
    is_onshore: bool
    text: str

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["windType"] = data.pop("wind_type")
        data["isOffshore"] = data.pop("is_offshore")
        data["isOnshore"] = data.pop("is_onshore")
        return data


def wind_type(direction: float) -> WindType:
    direction = direction % 360.0
    if OFFSHORE_RANGE[0] <= direction <= OFFSHORE_RANGE[1]:
        return "offshore"
    if ONSHORE_RANGE[0] <= direction <= ONSHORE_RANGE[1]:
        return "onshore"
    return "sideshore"


def classify_safety(direction: float | None, speed: float | None) -> SafetyAssessment:
    kind = wind_type(direction) if direction is not None else "sideshore"
    knots = max(speed or 0.0, 0.0)
    offshore = kind == "offshore"
    onshore = kind == "onshore"

    level: SafetyLevel
    if offshore:
        level = "danger"
    elif knots < LOW_SPEED:
        level = "low"
    elif onshore and HIGH_RANGE[0] <= knots <= HIGH_RANGE[1]:
        level = "high"
    elif GOOD_RANGE[0] <= knots <= GOOD_RANGE[1]:
        level = "good"
    elif knots > EXTREME_SPEED:
        level = "danger"
    else:
        level = "medium"

    return SafetyAssessment(
        level=level,
        wind_type=kind,
        is_offshore=offshore,
        is_onshore=onshore,
        text=SAFETY_TEXT[level],
    )


__all__ = ["SafetyAssessment", "classify_safety", "wind_type"]
