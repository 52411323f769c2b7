"""
Measurement parsing and unit conversion.

Turns free-form spoken/typed text ("I'm about five foot ten", "11 stone 6")
into typed height/weight quantities, and converts between units.

All conversion goes through `convert()` with one canonical policy:
exact constants, results rounded to one decimal place.
"""

import logging
import re
from dataclasses import dataclass
from typing import Literal

from onboarding.errors import UnitConversionError
from onboarding.text_numbers import replace_number_words

logger = logging.getLogger(__name__)

HeightUnit = Literal["in", "cm"]
WeightUnit = Literal["lbs", "kg"]
Unit = Literal["in", "cm", "lbs", "kg"]

CM_PER_INCH = 2.54
KG_PER_POUND = 0.45359237
POUNDS_PER_STONE = 14

HEIGHT_UNITS = ("in", "cm")
WEIGHT_UNITS = ("lbs", "kg")

# Order matters: longer phrases first so "my height is" wins over "i".
FILLER_PHRASES = (
    "my height is",
    "my weight is",
    "i stand",
    "i measure",
    "i weigh",
    "i am",
    "i'm",
    "approximately",
    "about",
    "around",
    "almost",
)

_FILLER_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(p) for p in FILLER_PHRASES) + r")(?=\s|$)",
    re.IGNORECASE,
)

_NUM = r"(\d+(?:\.\d+)?)"


@dataclass(frozen=True)
class Measurement:
    """A number with its unit."""

    value: float
    unit: Unit

    def to_dict(self) -> dict:
        return {"value": self.value, "unit": self.unit}

    @classmethod
    def from_dict(cls, data: dict) -> "Measurement":
        return cls(value=float(data["value"]), unit=data["unit"])


# =============================================================================
# Pattern families
# =============================================================================

_WEIGHT_UNIT = r"(?:pounds|pound|lbs|lb\b|kilograms|kilogram|kilos|kilo|kgs|kg\b|stone|st\b)"

# The inches number must not be the start of a weight ("6 feet 180 pounds")
_FEET_INCHES = re.compile(
    rf"{_NUM}\s*(?:feet|foot|ft|')\s*(?:and\s*)?{_NUM}(?![\d.])(?!\s*{_WEIGHT_UNIT})\s*(?:inches|inch|in\b|\"|″)?",
    re.IGNORECASE,
)
_FEET = re.compile(rf"{_NUM}\s*(?:feet|foot|ft|')", re.IGNORECASE)
_INCHES = re.compile(rf"{_NUM}\s*(?:inches|inch|in\b|\"|″)", re.IGNORECASE)
_CENTIMETERS = re.compile(rf"{_NUM}\s*(?:centimeters|centimetres|cm\b)", re.IGNORECASE)
_METERS = re.compile(rf"{_NUM}\s*(?:meters|metres|m\b)", re.IGNORECASE)

_POUNDS = re.compile(rf"{_NUM}\s*(?:pounds|pound|lbs|lb\b)", re.IGNORECASE)
_KILOGRAMS = re.compile(rf"{_NUM}\s*(?:kilograms|kilogram|kilos|kilo|kgs|kg\b)", re.IGNORECASE)
_STONE = re.compile(
    rf"{_NUM}\s*(?:stone|st\b)\s*(?:and\s*)?(?:{_NUM}\s*(?:pounds|pound|lbs|lb\b)?)?",
    re.IGNORECASE,
)
_STONE_PREFIX = re.compile(r"(?:stone|st)\s*(?:and\s*)?$", re.IGNORECASE)


def normalize_text(text: str) -> str:
    """Lowercase, strip filler phrases and turn number words into digits."""
    clean = text.lower().strip()
    clean = _FILLER_RE.sub(" ", clean)
    clean = replace_number_words(clean)
    return re.sub(r"\s+", " ", clean).strip()


def _height_from_feet_inches(match: re.Match) -> Measurement:
    feet, inches = float(match.group(1)), float(match.group(2))
    return Measurement(feet * 12 + inches, "in")


def _height_from_feet(match: re.Match) -> Measurement:
    return Measurement(float(match.group(1)) * 12, "in")


def _height_from_inches(match: re.Match) -> Measurement:
    return Measurement(float(match.group(1)), "in")


def _height_from_centimeters(match: re.Match) -> Measurement:
    return Measurement(float(match.group(1)), "cm")


def _height_from_meters(match: re.Match) -> Measurement:
    return Measurement(round(float(match.group(1)) * 100, 1), "cm")


HEIGHT_FAMILIES = (
    ("feet_inches", _FEET_INCHES, _height_from_feet_inches),
    ("feet", _FEET, _height_from_feet),
    ("inches", _INCHES, _height_from_inches),
    ("centimeters", _CENTIMETERS, _height_from_centimeters),
    ("meters", _METERS, _height_from_meters),
)


def parse_height(text: str) -> Measurement | None:
    """
    Parse a height from free text.

    Families are tried in order and the first match wins:
    feet+inches, feet, inches, centimeters, meters.
    Returns None when nothing matches; the caller should ask again.
    """
    if not text or not text.strip():
        return None

    clean = normalize_text(text)
    for name, pattern, build in HEIGHT_FAMILIES:
        match = pattern.search(clean)
        if match:
            result = build(match)
            logger.debug(f"Height {text!r} matched {name}: {result}")
            return result

    logger.debug(f"No height pattern matched: {text!r}")
    return None


def _match_pounds(clean: str) -> re.Match | None:
    # "11 stone 6 lbs": the 6 lbs belongs to the stone family
    for match in _POUNDS.finditer(clean):
        if not _STONE_PREFIX.search(clean[: match.start()].rstrip()):
            return match
    return None


def parse_weight(text: str) -> Measurement | None:
    """
    Parse a weight from free text.

    Families are tried in order and the first match wins:
    pounds, kilograms, stone (converted to pounds with any remainder).
    """
    if not text or not text.strip():
        return None

    clean = normalize_text(text)

    match = _match_pounds(clean)
    if match:
        return Measurement(float(match.group(1)), "lbs")

    match = _KILOGRAMS.search(clean)
    if match:
        return Measurement(float(match.group(1)), "kg")

    match = _STONE.search(clean)
    if match:
        stone = float(match.group(1))
        remainder = float(match.group(2)) if match.group(2) else 0.0
        return Measurement(stone * POUNDS_PER_STONE + remainder, "lbs")

    logger.debug(f"No weight pattern matched: {text!r}")
    return None


# =============================================================================
# Conversion
# =============================================================================

_FACTORS: dict[tuple[str, str], float] = {
    ("in", "cm"): CM_PER_INCH,
    ("cm", "in"): 1 / CM_PER_INCH,
    ("lbs", "kg"): KG_PER_POUND,
    ("kg", "lbs"): 1 / KG_PER_POUND,
}


def convert(value: float, from_unit: str, to_unit: str) -> float:
    """
    Convert between compatible units, rounded to one decimal place.

    Raises:
        UnitConversionError: If the units are unknown or incompatible
            (e.g. inches to kilograms).
    """
    if from_unit == to_unit:
        if from_unit not in HEIGHT_UNITS + WEIGHT_UNITS:
            raise UnitConversionError(f"Unknown unit: {from_unit}")
        return round(float(value), 1)

    factor = _FACTORS.get((from_unit, to_unit))
    if factor is None:
        raise UnitConversionError(f"Cannot convert {from_unit} to {to_unit}")
    return round(float(value) * factor, 1)


def convert_height(value: float, from_unit: HeightUnit, to_unit: HeightUnit) -> float:
    if from_unit not in HEIGHT_UNITS or to_unit not in HEIGHT_UNITS:
        raise UnitConversionError(f"Not a height conversion: {from_unit} -> {to_unit}")
    return convert(value, from_unit, to_unit)


def convert_weight(value: float, from_unit: WeightUnit, to_unit: WeightUnit) -> float:
    if from_unit not in WEIGHT_UNITS or to_unit not in WEIGHT_UNITS:
        raise UnitConversionError(f"Not a weight conversion: {from_unit} -> {to_unit}")
    return convert(value, from_unit, to_unit)


def format_measurement(measurement: Measurement) -> str:
    """Human-readable form: 5'10", 178 cm, 160 lbs."""
    value, unit = measurement.value, measurement.unit
    if unit == "in":
        feet, inches = divmod(round(value), 12)
        return f"{feet}'{inches}\""
    return f"{value:g} {unit}"
