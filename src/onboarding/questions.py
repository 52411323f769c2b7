"""
Onboarding question model.

A Question is a tagged variant: one frozen dataclass per QuestionKind.
Anything that behaves differently per kind branches on `question.kind`
and ends with an explicit error for an unhandled kind.

Also owns answer validation/normalization and the JSON encoding used for
persistence (sets <-> sorted lists, Measurement <-> {value, unit},
date <-> ISO string).
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, ClassVar, Literal

from pydantic import BaseModel

from onboarding.errors import AnswerValidationError
from onboarding.gateway import ParseContext
from onboarding.measurements import Measurement, parse_height, parse_weight
from onboarding.text_numbers import text_to_date, text_to_number

logger = logging.getLogger(__name__)

FieldType = Literal["text", "number", "date", "boolean", "height", "weight"]

# Returns an error message, or None when the value is acceptable
Validator = Callable[[Any], str | None]

DETAILS_SUFFIX = "_details"

_TRUE_WORDS = {"yes", "y", "true", "yeah", "yep", "correct", "i agree", "agree", "accept"}
_FALSE_WORDS = {"no", "n", "false", "nope", "disagree"}


class QuestionKind(str, Enum):
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"
    FORM = "form"


class UnhandledQuestionKind(TypeError):
    def __init__(self, kind: Any):
        super().__init__(f"Unhandled question kind: {kind!r}")


@dataclass(frozen=True)
class Option:
    value: str
    label: str
    icon: str | None = None
    synonyms: tuple[str, ...] = ()
    exclusive: bool = False  # e.g. "none": clears every other selection

    def phrases(self) -> list[str]:
        """Lowercased phrases that identify this option in free text."""
        phrases = {self.label.lower(), self.value.lower(), self.value.lower().replace("-", " ").replace("_", " ")}
        phrases.update(s.lower() for s in self.synonyms)
        return sorted((p for p in phrases if p), key=len, reverse=True)

    def matches(self, text: str) -> bool:
        """Case-insensitive containment of label, value or synonym in `text`."""
        haystack = text.lower()
        return any(re.search(rf"(?<!\w){re.escape(p)}(?!\w)", haystack) for p in self.phrases())

    def to_dict(self) -> dict:
        data = {"value": self.value, "label": self.label}
        if self.icon:
            data["icon"] = self.icon
        if self.exclusive:
            data["exclusive"] = True
        return data


@dataclass(frozen=True)
class DetailRequirement:
    """
    Follow-up free-text prompt after a question is answered.

    When `when` is None any non-empty answer triggers it; otherwise only
    answers containing one of the listed option values do.
    """

    prompt: str
    when: frozenset[str] | None = None
    voice_prompt: str = ""

    def applies(self, value: Any) -> bool:
        if value is None or value == "" or value == set():
            return False
        if self.when is None:
            return True
        if isinstance(value, bool):
            return ("yes" if value else "no") in self.when
        if isinstance(value, str):
            return value in self.when
        if isinstance(value, (set, frozenset, list, tuple)):
            return bool(self.when.intersection(value))
        return False


@dataclass(frozen=True)
class FormField:
    id: str
    label: str
    type: FieldType = "text"
    required: bool = True
    min_value: float | None = None
    max_value: float | None = None
    min_length: int | None = None
    choices: tuple[Option, ...] = ()
    validator: Validator | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"id": self.id, "label": self.label, "type": self.type, "required": self.required}
        if self.min_value is not None:
            data["min"] = self.min_value
        if self.max_value is not None:
            data["max"] = self.max_value
        if self.choices:
            data["choices"] = [c.to_dict() for c in self.choices]
        return data


@dataclass(frozen=True, kw_only=True)
class _QuestionBase:
    id: str
    text: str
    voice_prompt: str = ""
    required: bool = True
    context: ParseContext = ParseContext.GENERAL
    detail: DetailRequirement | None = None
    validator: Validator | None = None

    @property
    def details_key(self) -> str:
        return f"{self.id}{DETAILS_SUFFIX}"

    @property
    def spoken_prompt(self) -> str:
        return self.voice_prompt or self.text


@dataclass(frozen=True, kw_only=True)
class SingleSelectQuestion(_QuestionBase):
    kind: ClassVar[QuestionKind] = QuestionKind.SINGLE_SELECT
    options: tuple[Option, ...]


@dataclass(frozen=True, kw_only=True)
class MultiSelectQuestion(_QuestionBase):
    kind: ClassVar[QuestionKind] = QuestionKind.MULTI_SELECT
    options: tuple[Option, ...]
    min_selections: int = 1
    max_selections: int | None = None


@dataclass(frozen=True, kw_only=True)
class FormQuestion(_QuestionBase):
    kind: ClassVar[QuestionKind] = QuestionKind.FORM
    fields: tuple[FormField, ...]

    def field(self, field_id: str) -> FormField:
        for f in self.fields:
            if f.id == field_id:
                return f
        raise KeyError(f"{self.id} has no field {field_id!r}")


Question = SingleSelectQuestion | MultiSelectQuestion | FormQuestion


@dataclass(frozen=True)
class Section:
    """
    One onboarding section: ordered questions plus an optional pydantic
    contract validated when the section is finalized.
    """

    id: str
    title: str
    questions: tuple[Question, ...]
    voice_prompt: str = ""
    skippable: bool = True
    response_model: type[BaseModel] | None = None
    description: str = ""

    def __post_init__(self):
        if not self.questions:
            raise ValueError(f"Section {self.id!r} has no questions")
        ids = [q.id for q in self.questions]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Section {self.id!r} has duplicate question ids")

    def question(self, question_id: str) -> Question:
        for q in self.questions:
            if q.id == question_id:
                return q
        raise KeyError(f"Section {self.id!r} has no question {question_id!r}")

    def index_of(self, question_id: str) -> int:
        for i, q in enumerate(self.questions):
            if q.id == question_id:
                return i
        raise KeyError(f"Section {self.id!r} has no question {question_id!r}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "skippable": self.skippable,
            "voice_prompt": self.voice_prompt,
            "questions": [question_to_dict(q) for q in self.questions],
        }


def question_to_dict(question: Question) -> dict:
    data: dict[str, Any] = {
        "id": question.id,
        "kind": question.kind.value,
        "text": question.text,
        "voice_prompt": question.spoken_prompt,
        "required": question.required,
    }
    if question.detail is not None:
        data["detail"] = {
            "prompt": question.detail.prompt,
            "when": sorted(question.detail.when) if question.detail.when else None,
        }

    if question.kind == QuestionKind.SINGLE_SELECT:
        data["options"] = [o.to_dict() for o in question.options]
    elif question.kind == QuestionKind.MULTI_SELECT:
        data["options"] = [o.to_dict() for o in question.options]
        data["min_selections"] = question.min_selections
        data["max_selections"] = question.max_selections
    elif question.kind == QuestionKind.FORM:
        data["fields"] = [f.to_dict() for f in question.fields]
    else:
        raise UnhandledQuestionKind(question.kind)
    return data


# =============================================================================
# Validation
# =============================================================================


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def resolve_option(options: tuple[Option, ...], raw: Any) -> str | None:
    """Resolve a raw value (value or label, any case) to an option value."""
    if not isinstance(raw, str):
        return None
    needle = raw.strip().lower()
    for option in options:
        if needle in (option.value.lower(), option.label.lower()):
            return option.value
    return None


def _coerce_field(form_field: FormField, raw: Any) -> Any:
    """Coerce one form field value to its type. Raises ValueError with a message."""
    kind = form_field.type

    if kind == "text":
        if form_field.choices:
            value = resolve_option(form_field.choices, raw)
            if value is None:
                raise ValueError("Please choose one of the listed options")
            return value
        text = str(raw).strip()
        if form_field.min_length and len(text) < form_field.min_length:
            raise ValueError(f"Must be at least {form_field.min_length} characters")
        return text

    if kind == "number":
        if isinstance(raw, bool):
            raise ValueError("Please enter a number")
        value = raw if isinstance(raw, (int, float)) else text_to_number(str(raw))
        if value is None:
            raise ValueError("Please enter a number")
        if form_field.min_value is not None and value < form_field.min_value:
            raise ValueError(f"Must be at least {form_field.min_value:g}")
        if form_field.max_value is not None and value > form_field.max_value:
            raise ValueError(f"Must be at most {form_field.max_value:g}")
        return value

    if kind == "date":
        if isinstance(raw, date):
            return raw
        value = text_to_date(str(raw))
        if value is None:
            raise ValueError("Please enter a valid date")
        return value

    if kind == "boolean":
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE_WORDS:
            return True
        if text in _FALSE_WORDS:
            return False
        raise ValueError("Please answer yes or no")

    if kind in ("height", "weight"):
        if isinstance(raw, Measurement):
            value = raw
        elif isinstance(raw, dict):
            try:
                value = Measurement.from_dict(raw)
            except (KeyError, TypeError, ValueError):
                raise ValueError("Invalid measurement")
        else:
            value = parse_height(str(raw)) if kind == "height" else parse_weight(str(raw))
        allowed = ("in", "cm") if kind == "height" else ("lbs", "kg")
        if value is None or value.unit not in allowed:
            raise ValueError(f"Please enter a {kind} with a unit")
        if value.value <= 0:
            raise ValueError(f"{form_field.label} must be positive")
        return value

    raise ValueError(f"Unknown field type {kind!r}")


def validate_answer(question: Question, value: Any, partial: bool = False) -> Any:
    """
    Validate and normalize an answer for `question`.

    For form questions `partial=True` skips required checks on fields that
    are absent, so fields can be committed one at a time. For multi-select
    questions it skips the minimum-selection check while a set is being
    edited one option at a time.

    Returns:
        The normalized value (str, set[str] or dict)

    Raises:
        AnswerValidationError: errors keyed by question id, or
            "<question_id>.<field_id>" for form fields
    """
    errors: dict[str, str] = {}
    qid = question.id

    if question.kind == QuestionKind.SINGLE_SELECT:
        if _is_blank(value):
            if question.required:
                raise AnswerValidationError({qid: "Please choose an option"})
            return None
        normalized = resolve_option(question.options, value)
        if normalized is None:
            raise AnswerValidationError({qid: f"{value!r} is not one of the options"})

    elif question.kind == QuestionKind.MULTI_SELECT:
        if value is None:
            value = set()
        if isinstance(value, str):
            value = {value}
        normalized = set()
        for raw in value:
            resolved = resolve_option(question.options, raw)
            if resolved is None:
                raise AnswerValidationError({qid: f"{raw!r} is not one of the options"})
            normalized.add(resolved)
        minimum = question.min_selections if question.required and not partial else 0
        if len(normalized) < minimum:
            errors[qid] = f"Please choose at least {minimum}"
        elif question.max_selections is not None and len(normalized) > question.max_selections:
            errors[qid] = f"Please choose at most {question.max_selections}"

    elif question.kind == QuestionKind.FORM:
        if not isinstance(value, dict):
            raise AnswerValidationError({qid: "Expected a mapping of field values"})
        unknown = set(value) - {f.id for f in question.fields}
        if unknown:
            raise AnswerValidationError({qid: f"Unknown fields: {', '.join(sorted(unknown))}"})
        normalized = {}
        for form_field in question.fields:
            key = f"{qid}.{form_field.id}"
            raw = value.get(form_field.id)
            if _is_blank(raw):
                if form_field.required and not partial:
                    errors[key] = f"{form_field.label} is required"
                continue
            try:
                coerced = _coerce_field(form_field, raw)
            except ValueError as e:
                errors[key] = str(e)
                continue
            if form_field.validator is not None:
                message = form_field.validator(coerced)
                if message:
                    errors[key] = message
                    continue
            normalized[form_field.id] = coerced

    else:
        raise UnhandledQuestionKind(question.kind)

    if errors:
        raise AnswerValidationError(errors)

    if question.validator is not None:
        message = question.validator(normalized)
        if message:
            raise AnswerValidationError({qid: message})

    return normalized


def is_answered(question: Question, value: Any) -> bool:
    """True when `value` is a complete, valid answer to `question`."""
    if value is None:
        return not question.required
    try:
        validate_answer(question, value)
    except AnswerValidationError:
        return False
    return True


# =============================================================================
# Persistence encoding
# =============================================================================


def encode_value(value: Any) -> Any:
    """JSON-safe form of an answer value."""
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, Measurement):
        return value.to_dict()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def _decode_field(form_field: FormField, raw: Any) -> Any:
    if raw is None:
        return None
    if form_field.type in ("height", "weight") and isinstance(raw, dict):
        return Measurement.from_dict(raw)
    if form_field.type == "date" and isinstance(raw, str):
        return date.fromisoformat(raw)
    return raw


def decode_answer(question: Question, raw: Any) -> Any:
    """Reverse encode_value for an answer to `question`."""
    if raw is None:
        return None
    if question.kind == QuestionKind.SINGLE_SELECT:
        return raw
    if question.kind == QuestionKind.MULTI_SELECT:
        return set(raw)
    if question.kind == QuestionKind.FORM:
        decoded = {}
        for form_field in question.fields:
            if form_field.id in raw:
                decoded[form_field.id] = _decode_field(form_field, raw[form_field.id])
        return decoded
    raise UnhandledQuestionKind(question.kind)


def decode_section_answers(section: Section, raw: dict) -> dict[str, Any]:
    """Decode a persisted section mapping; unknown keys are dropped."""
    answers: dict[str, Any] = {}
    for question in section.questions:
        if question.id in raw:
            try:
                answers[question.id] = decode_answer(question, raw[question.id])
            except (TypeError, ValueError, KeyError) as e:
                logger.warning(f"Dropping undecodable answer {section.id}.{question.id}: {e}")
        if question.details_key in raw:
            answers[question.details_key] = raw[question.details_key]
    return answers
