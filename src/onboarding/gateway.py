"""
Response Parsing Gateway.

Sends a transcript plus a context tag to the AI parsing service and returns
structured entities. The service is untrusted: whatever it returns is
re-validated here, and any failure (empty transcript, service error, output
that breaks the schema) becomes a soft failure carrying the original
transcript, so the caller can fall back to manual entry.

Two backends:
- LLMParsingBackend: Instructor + OpenAI via nutriflow.llm.call_llm
- HttpParsingBackend: POST {text, context} to a parsing service
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from nutriflow.config import settings
from nutriflow.llm import call_llm
from nutriflow.observability import ParseCall, ParseOutcome, log_parse
from onboarding.errors import ParsingError
from onboarding.measurements import Measurement

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.8


class ParseContext(str, Enum):
    """Which kind of question is being answered. Sent to the parsing service."""

    GENERAL = "general"
    NAME = "name"
    MEASUREMENTS = "measurements"
    HEALTH_CONDITIONS = "health_conditions"
    CONDITION_DETAILS = "condition_details"
    HEALTH_HISTORY = "health_history"
    LIFESTYLE = "lifestyle"
    EATING = "eating"
    COOKING = "cooking"
    CUISINE = "cuisine"
    DIETARY = "dietary"
    FITNESS = "fitness"
    HYDRATION_SLEEP = "hydration_sleep"
    PERSONALIZATION = "personalization"


# =============================================================================
# Service contract
# =============================================================================


class Intent(str, Enum):
    PROVIDE_CONDITION = "provide_condition"
    PROVIDE_CONDITION_DETAILS = "provide_condition_details"
    PROVIDE_HEALTH_HISTORY = "provide_health_history"
    PROVIDE_PREFERENCE = "provide_preference"
    UNKNOWN = "unknown"


class ConditionDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    diagnosis_date: str | None = None
    medications: list[str] = Field(default_factory=list)
    symptoms: list[str] = Field(default_factory=list)
    severity: str | None = None
    frequency: str | None = None
    triggers: list[str] = Field(default_factory=list)


class Condition(BaseModel):
    name: str = Field(min_length=1)
    details: ConditionDetails | None = None


class DateEntity(BaseModel):
    value: str
    type: str | None = None


class Medication(BaseModel):
    name: str = Field(min_length=1)
    dosage: str | None = None
    frequency: str | None = None


class ParsedEntities(BaseModel):
    conditions: list[Condition] = Field(default_factory=list)
    dates: list[DateEntity] = Field(default_factory=list)
    medications: list[Medication] = Field(default_factory=list)
    mentions: list[str] = Field(
        default_factory=list,
        description="Other things the user named: foods, cuisines, activities, options",
    )


class IntentParse(BaseModel):
    """Intent/entity parse of one transcript."""

    intent: Intent = Intent.UNKNOWN
    entities: ParsedEntities = Field(default_factory=ParsedEntities)
    details: str | None = None


class HeightValue(BaseModel):
    value: float = Field(gt=0)
    unit: Literal["in", "cm"]


class WeightValue(BaseModel):
    value: float = Field(gt=0)
    unit: Literal["lbs", "kg"]


class MeasurementParse(BaseModel):
    """Measurement parse with the service's confidence in [0, 1]."""

    height: HeightValue | None = None
    weight: WeightValue | None = None
    confidence: float = Field(ge=0.0, le=1.0)


# =============================================================================
# Results
# =============================================================================


@dataclass
class ParseResult:
    """Either a validated IntentParse or a soft failure with the raw transcript."""

    transcript: str
    parse: IntentParse | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.parse is not None

    def candidate_texts(self) -> list[str]:
        """Every string worth matching against options, most specific first."""
        if self.parse is None:
            return [self.transcript] if self.transcript else []
        entities = self.parse.entities
        texts = [c.name for c in entities.conditions]
        texts += [m.name for m in entities.medications]
        texts += list(entities.mentions)
        if self.parse.details:
            texts.append(self.parse.details)
        if self.transcript:
            texts.append(self.transcript)
        return texts


@dataclass
class MeasurementParseResult:
    transcript: str
    parse: MeasurementParse | None = None
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.parse is not None

    @property
    def confidence(self) -> float:
        return self.parse.confidence if self.parse else 0.0

    @property
    def reliable(self) -> bool:
        return self.parse is not None and self.parse.confidence >= self.threshold

    @property
    def height(self) -> Measurement | None:
        if self.parse is None or self.parse.height is None:
            return None
        return Measurement(self.parse.height.value, self.parse.height.unit)

    @property
    def weight(self) -> Measurement | None:
        if self.parse is None or self.parse.weight is None:
            return None
        return Measurement(self.parse.weight.value, self.parse.weight.unit)


# =============================================================================
# Backends
# =============================================================================


class ParsingBackend(Protocol):
    async def parse_intent(self, transcript: str, context: ParseContext) -> Any:
        ...

    async def parse_measurements(self, transcript: str) -> Any:
        ...


INTENT_SYSTEM_PROMPT = """You are a professional medical scribe helping a user fill in a nutrition onboarding questionnaire.

Extract structured information from the user's spoken answer:
- intent: what the user is doing (providing a condition, condition details, health history, a preference, or unknown)
- entities.conditions: medical conditions with any details mentioned
- entities.dates: dates with what they refer to (diagnosis, birth, ...)
- entities.medications: medication names with dosage and frequency when given
- entities.mentions: any other options the user named (foods, cuisines, activities, equipment, habits)
- details: remaining free-text detail worth keeping

Only extract what the user actually said. Never invent values."""

MEASUREMENT_SYSTEM_PROMPT = """Extract the user's height and weight from their spoken answer.

- height unit is "in" or "cm"; convert feet and inches to total inches
- weight unit is "lbs" or "kg"; convert stone to pounds
- confidence is how sure you are the numbers and units were heard correctly, from 0 to 1
Leave a measurement null if it was not mentioned."""


class LLMParsingBackend:
    """Parse through the Instructor-wrapped OpenAI client."""

    @property
    def name(self) -> str:
        return f"llm ({settings.parsing_model})"

    async def parse_intent(self, transcript: str, context: ParseContext) -> dict:
        result = await call_llm(
            response_model=IntentParse,
            system_prompt=INTENT_SYSTEM_PROMPT,
            user_prompt=f'Context: {context.value}\nAnswer: "{transcript}"',
            context=f"parse_{context.value}",
        )
        return result.model_dump(mode="json")

    async def parse_measurements(self, transcript: str) -> dict:
        result = await call_llm(
            response_model=MeasurementParse,
            system_prompt=MEASUREMENT_SYSTEM_PROMPT,
            user_prompt=f'Answer: "{transcript}"',
            context="parse_measurements",
            temperature=0.0,
        )
        return result.model_dump(mode="json")


class HttpParsingBackend:
    """POST {text, context} to an external parsing service."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _post(self, text: str, context: str) -> Any:
        response = await self._client.post(self.base_url, json={"text": text, "context": context})
        response.raise_for_status()
        return response.json()

    async def parse_intent(self, transcript: str, context: ParseContext) -> Any:
        return await self._post(transcript, context.value)

    async def parse_measurements(self, transcript: str) -> Any:
        return await self._post(transcript, ParseContext.MEASUREMENTS.value)

    async def aclose(self) -> None:
        await self._client.aclose()


# =============================================================================
# Gateway
# =============================================================================


def _validate(model: type[BaseModel], raw: Any) -> BaseModel:
    """Validate raw backend output against its contract. Raises ParsingError."""
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(mode="json")
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ParsingError(f"Response is not JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ParsingError(f"Expected an object, got {type(raw).__name__}")
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise ParsingError(f"{model.__name__} contract violated: {e.error_count()} error(s)") from e


class ResponseParsingGateway:
    """
    Soft-failing front door to the parsing service.

    Never raises for service or contract problems; callers inspect `.ok`.
    """

    def __init__(self, backend: ParsingBackend, confidence_threshold: float | None = None):
        self.backend = backend
        self.confidence_threshold = (
            DEFAULT_CONFIDENCE_THRESHOLD if confidence_threshold is None else confidence_threshold
        )

    def _record(self, context: ParseContext, model: type[BaseModel], transcript: str, outcome: ParseOutcome, **kwargs) -> None:
        log_parse(ParseCall(
            context=context.value,
            backend=getattr(self.backend, "name", type(self.backend).__name__),
            response_model=model.__name__,
            transcript=transcript,
            outcome=outcome,
            **kwargs,
        ))

    async def parse(self, transcript: str, context: ParseContext = ParseContext.GENERAL) -> ParseResult:
        if not transcript or not transcript.strip():
            return ParseResult(transcript=transcript or "", error="empty transcript")

        text = transcript.strip()
        raw = None
        try:
            raw = await self.backend.parse_intent(text, context)
            parse = _validate(IntentParse, raw)
        except ParsingError as e:
            logger.warning(f"Parse [{context.value}] rejected: {e}")
            self._record(context, IntentParse, text, ParseOutcome.SOFT_FAILURE, raw=raw, error=str(e))
            return ParseResult(transcript=transcript, error=str(e))
        except Exception as e:
            logger.warning(f"Parse [{context.value}] failed: {type(e).__name__}: {e}")
            self._record(context, IntentParse, text, ParseOutcome.SOFT_FAILURE, error=f"{type(e).__name__}: {e}")
            return ParseResult(transcript=transcript, error=str(e))

        logger.debug(f"Parse [{context.value}] intent={parse.intent.value}")
        self._record(
            context, IntentParse, text, ParseOutcome.ACCEPTED, raw=parse, extra={"Intent": parse.intent.value}
        )
        return ParseResult(transcript=transcript, parse=parse)

    async def parse_measurements(self, transcript: str) -> MeasurementParseResult:
        threshold = self.confidence_threshold
        context = ParseContext.MEASUREMENTS
        if not transcript or not transcript.strip():
            return MeasurementParseResult(transcript=transcript or "", threshold=threshold, error="empty transcript")

        text = transcript.strip()
        raw = None
        try:
            raw = await self.backend.parse_measurements(text)
            parse = _validate(MeasurementParse, raw)
        except ParsingError as e:
            logger.warning(f"Measurement parse rejected: {e}")
            self._record(context, MeasurementParse, text, ParseOutcome.SOFT_FAILURE, raw=raw, error=str(e))
            return MeasurementParseResult(transcript=transcript, threshold=threshold, error=str(e))
        except Exception as e:
            logger.warning(f"Measurement parse failed: {type(e).__name__}: {e}")
            self._record(context, MeasurementParse, text, ParseOutcome.SOFT_FAILURE, error=f"{type(e).__name__}: {e}")
            return MeasurementParseResult(transcript=transcript, threshold=threshold, error=str(e))

        result = MeasurementParseResult(transcript=transcript, parse=parse, threshold=threshold)
        if not result.reliable:
            logger.info(f"Measurement parse below threshold ({parse.confidence:.2f} < {threshold})")
        self._record(
            context,
            MeasurementParse,
            text,
            ParseOutcome.ACCEPTED if result.reliable else ParseOutcome.BELOW_THRESHOLD,
            raw=parse,
            confidence=parse.confidence,
            threshold=threshold,
        )
        return result

    async def aclose(self) -> None:
        """Release the backend's connections, if it holds any."""
        close = getattr(self.backend, "aclose", None)
        if close is not None:
            await close()


def build_gateway() -> ResponseParsingGateway | None:
    """Gateway for the configured backend, or None when none is usable."""
    if settings.parsing_backend == "http":
        if not settings.parsing_service_url:
            logger.warning("PARSING_BACKEND=http but PARSING_SERVICE_URL is not set")
            return None
        backend: ParsingBackend = HttpParsingBackend(settings.parsing_service_url)
    else:
        if not settings.llm_enabled:
            logger.info("No OPENAI_API_KEY, voice answers use local matching only")
            return None
        backend = LLMParsingBackend()
    return ResponseParsingGateway(backend, confidence_threshold=settings.confidence_threshold)
