"""
Default onboarding catalog.

Every section is configuration for the one SectionMachine engine; nothing
here has behavior beyond validators. Option ids are stable (they end up in
persisted progress), labels can change freely.
"""

import logging
from datetime import date
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from onboarding.gateway import ParseContext
from onboarding.measurements import Measurement
from onboarding.questions import (
    DetailRequirement,
    FormField,
    FormQuestion,
    MultiSelectQuestion,
    Option,
    Section,
    SingleSelectQuestion,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Option lists
# =============================================================================

CUISINE_OPTIONS = [
    {"id": "italian", "label": "Italian", "icon": "🇮🇹"},
    {"id": "mexican", "label": "Mexican", "icon": "🇲🇽"},
    {"id": "chinese", "label": "Chinese", "icon": "🇨🇳"},
    {"id": "japanese", "label": "Japanese", "icon": "🇯🇵"},
    {"id": "indian", "label": "Indian", "icon": "🇮🇳"},
    {"id": "thai", "label": "Thai", "icon": "🇹🇭"},
    {"id": "korean", "label": "Korean", "icon": "🇰🇷"},
    {"id": "vietnamese", "label": "Vietnamese", "icon": "🇻🇳"},
    {"id": "mediterranean", "label": "Mediterranean", "icon": "🫒"},
    {"id": "middle-eastern", "label": "Middle Eastern", "icon": "🧆"},
    {"id": "french", "label": "French", "icon": "🇫🇷"},
    {"id": "spanish", "label": "Spanish", "icon": "🇪🇸"},
    {"id": "greek", "label": "Greek", "icon": "🇬🇷"},
    {"id": "american", "label": "American", "icon": "🇺🇸"},
    {"id": "caribbean", "label": "Caribbean", "icon": "🏝️"},
    {"id": "ethiopian", "label": "Ethiopian", "icon": "🇪🇹"},
]

MAX_CUISINE_SELECTIONS = 7

EQUIPMENT_OPTIONS = [
    {"id": "microwave", "label": "Microwave", "icon": "📡"},
    {"id": "oven", "label": "Oven", "icon": "🔲"},
    {"id": "stovetop", "label": "Stovetop", "icon": "🔥"},
    {"id": "air-fryer", "label": "Air Fryer", "icon": "🍟"},
    {"id": "slow-cooker", "label": "Slow Cooker", "icon": "🥘"},
    {"id": "pressure-cooker", "label": "Pressure Cooker", "icon": "♨️"},
    {"id": "blender", "label": "Blender", "icon": "🥤"},
    {"id": "grill", "label": "Grill/BBQ", "icon": "🔥"},
]

COMMON_ALLERGENS = ["peanuts", "tree nuts", "milk", "eggs", "wheat", "soy", "fish", "shellfish", "sesame"]

GENDER_VALUES = ("male", "female", "non-binary", "prefer_not_to_say", "custom")


def _options(items: list[dict]) -> tuple[Option, ...]:
    return tuple(Option(value=i["id"], label=i["label"], icon=i.get("icon")) for i in items)


def _choices(*pairs: tuple[str, str]) -> tuple[Option, ...]:
    return tuple(Option(value=v, label=label) for v, label in pairs)


NONE_OPTION = Option(value="none", label="None", synonyms=("nothing", "none of them", "none of these"), exclusive=True)


# =============================================================================
# Validators
# =============================================================================


def _must_accept(value: bool) -> str | None:
    return None if value is True else "You must accept to continue"


def _plausible_birth_date(value: date) -> str | None:
    today = date.today()
    age = today.year - value.year - ((today.month, today.day) < (value.month, value.day))
    if age < 13:
        return "You must be at least 13 years old"
    if age > 120:
        return "Please check the year"
    return None


def _plausible_height(value: Measurement) -> str | None:
    inches = value.value if value.unit == "in" else value.value / 2.54
    return None if 36 <= inches <= 96 else "That height looks off, please check it"


def _plausible_weight(value: Measurement) -> str | None:
    pounds = value.value if value.unit == "lbs" else value.value / 0.45359237
    return None if 50 <= pounds <= 700 else "That weight looks off, please check it"


# =============================================================================
# Section contracts
# =============================================================================


class LegalResponse(BaseModel):
    name: str = Field(min_length=2)
    terms_accepted: Literal[True]
    privacy_accepted: Literal[True]
    medical_disclaimer_accepted: Literal[True]


class BaselineResponse(BaseModel):
    date_of_birth: date
    gender: Literal["male", "female", "non-binary", "prefer_not_to_say", "custom"]
    gender_details: str | None = None
    height: Measurement
    weight: Measurement

    @model_validator(mode="after")
    def custom_gender_needs_details(self) -> "BaselineResponse":
        if self.gender == "custom" and not (self.gender_details or "").strip():
            raise ValueError("Please describe your gender")
        return self


class HealthResponse(BaseModel):
    conditions: list[str]
    conditions_details: str | None = None
    medications: str | None = None
    family_history: list[str] = Field(default_factory=list)

    @field_validator("conditions", "family_history", mode="before")
    @classmethod
    def sorted_list(cls, v):
        return sorted(v) if isinstance(v, (set, frozenset)) else v

    @model_validator(mode="after")
    def none_is_exclusive(self) -> "HealthResponse":
        if "none" in self.conditions and len(self.conditions) > 1:
            raise ValueError("'None' cannot be combined with other conditions")
        return self


class CuisineResponse(BaseModel):
    favorite_cuisines: list[str] = Field(min_length=1, max_length=MAX_CUISINE_SELECTIONS)

    @field_validator("favorite_cuisines", mode="before")
    @classmethod
    def sorted_list(cls, v):
        return sorted(v) if isinstance(v, (set, frozenset)) else v


class PersonalizationResponse(BaseModel):
    meal_prep: Literal["yes", "no", "maybe_later"]
    additional_info: str | None = None
    preview: Literal["preview", "skip", "finish"]


# =============================================================================
# Sections
# =============================================================================

LEGAL = Section(
    id="legal",
    title="Welcome",
    voice_prompt="Welcome! Before we start, I need your name and your agreement to our terms.",
    skippable=False,
    response_model=LegalResponse,
    questions=(
        FormQuestion(
            id="name",
            text="What should we call you?",
            voice_prompt="What's your name?",
            context=ParseContext.NAME,
            fields=(FormField(id="name", label="Name", min_length=2),),
        ),
        FormQuestion(
            id="consent",
            text="Please review and accept our terms",
            voice_prompt="Do you accept the terms of service, the privacy policy and the medical disclaimer?",
            fields=(
                FormField(id="terms_accepted", label="Terms of service", type="boolean", validator=_must_accept),
                FormField(id="privacy_accepted", label="Privacy policy", type="boolean", validator=_must_accept),
                FormField(
                    id="medical_disclaimer_accepted",
                    label="Medical disclaimer",
                    type="boolean",
                    validator=_must_accept,
                ),
            ),
        ),
    ),
)

BASELINE = Section(
    id="baseline",
    title="About You",
    voice_prompt="Let's get some baseline numbers.",
    response_model=BaselineResponse,
    questions=(
        FormQuestion(
            id="date_of_birth",
            text="When were you born?",
            voice_prompt="What's your date of birth?",
            fields=(FormField(id="date_of_birth", label="Date of birth", type="date", validator=_plausible_birth_date),),
        ),
        SingleSelectQuestion(
            id="gender",
            text="How do you identify?",
            options=(
                Option("male", "Male", synonyms=("man",)),
                Option("female", "Female", synonyms=("woman",)),
                Option("non-binary", "Non-binary", synonyms=("nonbinary", "enby")),
                Option("prefer_not_to_say", "Prefer not to say", synonyms=("rather not say",)),
                Option("custom", "Self-describe", synonyms=("custom", "other")),
            ),
            detail=DetailRequirement(prompt="How do you describe your gender?", when=frozenset({"custom"})),
        ),
        FormQuestion(
            id="measurements",
            text="What are your height and weight?",
            voice_prompt="How tall are you, and how much do you weigh?",
            context=ParseContext.MEASUREMENTS,
            fields=(
                FormField(id="height", label="Height", type="height", validator=_plausible_height),
                FormField(id="weight", label="Weight", type="weight", validator=_plausible_weight),
            ),
        ),
    ),
)

HEALTH = Section(
    id="health",
    title="Health History",
    voice_prompt="Now a few questions about your health.",
    response_model=HealthResponse,
    questions=(
        MultiSelectQuestion(
            id="conditions",
            text="Do you have any of these conditions?",
            voice_prompt="Do you have any medical conditions, like high blood pressure, diabetes or asthma?",
            context=ParseContext.HEALTH_CONDITIONS,
            options=(
                Option("hypertension", "High Blood Pressure", synonyms=("hypertension", "blood pressure")),
                Option("diabetes", "Diabetes", synonyms=("diabetic", "type 1", "type 2")),
                Option("respiratory", "Respiratory", synonyms=("asthma", "copd")),
                Option("heart", "Heart Condition", synonyms=("heart disease", "heart")),
                Option("thyroid", "Thyroid", synonyms=("hypothyroidism", "hyperthyroidism")),
                Option("allergies", "Allergies", synonyms=("allergy", "allergic")),
                NONE_OPTION,
            ),
            detail=DetailRequirement(
                prompt="Tell us more: when were you diagnosed, and what are you taking for it?",
                when=frozenset({"hypertension", "diabetes", "respiratory", "heart", "thyroid", "allergies"}),
            ),
        ),
        FormQuestion(
            id="medications",
            text="Are you taking any medications or supplements?",
            required=False,
            context=ParseContext.HEALTH_HISTORY,
            fields=(FormField(id="medications", label="Medications", required=False),),
        ),
        MultiSelectQuestion(
            id="family_history",
            text="Any family history of these?",
            required=False,
            context=ParseContext.HEALTH_HISTORY,
            options=(
                Option("heart_disease", "Heart Disease"),
                Option("diabetes", "Diabetes"),
                Option("cancer", "Cancer"),
                Option("obesity", "Obesity"),
                NONE_OPTION,
            ),
        ),
    ),
)

LIFESTYLE = Section(
    id="lifestyle",
    title="Lifestyle",
    questions=(
        SingleSelectQuestion(
            id="energy_levels",
            text="How are your energy levels during the day?",
            context=ParseContext.LIFESTYLE,
            options=(
                Option("consistently_high", "Consistently High", synonyms=("high", "great")),
                Option("afternoon_slumps", "Afternoon Slumps", synonyms=("slump", "afternoon crash")),
                Option("tired_all_day", "Tired All Day", synonyms=("tired", "exhausted")),
                Option("up_and_down", "Up and Down", synonyms=("varies",)),
            ),
            detail=DetailRequirement(
                prompt="When do you feel it most, and what do you think causes it?",
                when=frozenset({"afternoon_slumps", "tired_all_day"}),
            ),
        ),
        SingleSelectQuestion(
            id="stress_level",
            text="How would you rate your stress level?",
            context=ParseContext.LIFESTYLE,
            options=(
                Option("low", "Low"),
                Option("moderate", "Moderate", synonyms=("medium",)),
                Option("high", "High", synonyms=("stressed",)),
            ),
            detail=DetailRequirement(prompt="What usually triggers it?", when=frozenset({"high"})),
        ),
    ),
)

EATING = Section(
    id="eating",
    title="Eating Habits",
    questions=(
        SingleSelectQuestion(
            id="meals_per_day",
            text="How many meals do you eat per day?",
            context=ParseContext.EATING,
            options=(
                Option("2", "2 Meals", synonyms=("two", "2")),
                Option("3", "3 Meals", synonyms=("three", "3")),
                Option("4", "4 Meals", synonyms=("four", "4")),
                Option("5", "5+ Meals", synonyms=("five", "5", "more than four")),
            ),
        ),
        SingleSelectQuestion(
            id="snacking",
            text="How often do you snack?",
            context=ParseContext.EATING,
            options=_choices(("rarely", "Rarely"), ("sometimes", "Sometimes"), ("often", "Often"), ("very_often", "Very Often")),
        ),
        SingleSelectQuestion(
            id="meal_planning_style",
            text="How do you plan your meals?",
            context=ParseContext.EATING,
            options=_choices(
                ("strict", "Strict Planning"),
                ("flexible", "Flexible Planning"),
                ("intuitive", "Intuitive Eating"),
                ("none", "No Planning"),
            ),
        ),
    ),
)

COOKING = Section(
    id="cooking",
    title="Cooking",
    questions=(
        SingleSelectQuestion(
            id="cooking_skill",
            text="How would you describe your cooking skills?",
            context=ParseContext.COOKING,
            options=_choices(
                ("beginner", "Beginner"),
                ("intermediate", "Intermediate"),
                ("advanced", "Advanced"),
                ("expert", "Expert"),
            ),
        ),
        SingleSelectQuestion(
            id="cooking_frequency",
            text="How often do you cook?",
            context=ParseContext.COOKING,
            options=_choices(
                ("rarely", "Rarely"),
                ("few_times_month", "Few Times Monthly"),
                ("few_times_week", "Few Times Weekly"),
                ("daily", "Daily"),
            ),
        ),
        MultiSelectQuestion(
            id="equipment",
            text="What equipment do you have?",
            context=ParseContext.COOKING,
            options=_options(EQUIPMENT_OPTIONS),
        ),
    ),
)

CUISINE = Section(
    id="cuisine",
    title="Cuisines",
    response_model=CuisineResponse,
    questions=(
        MultiSelectQuestion(
            id="favorite_cuisines",
            text="Which cuisines do you enjoy?",
            voice_prompt="Which cuisines do you enjoy? Name as many as you like.",
            context=ParseContext.CUISINE,
            options=_options(CUISINE_OPTIONS),
            max_selections=MAX_CUISINE_SELECTIONS,
        ),
    ),
)

DIETARY = Section(
    id="dietary",
    title="Dietary Preferences",
    questions=(
        SingleSelectQuestion(
            id="diet_type",
            text="Which best describes your diet?",
            context=ParseContext.DIETARY,
            options=_choices(
                ("omnivore", "Omnivore"),
                ("vegetarian", "Vegetarian"),
                ("vegan", "Vegan"),
                ("pescatarian", "Pescatarian"),
            ),
        ),
        MultiSelectQuestion(
            id="allergies",
            text="Do you have any food allergies?",
            required=False,
            context=ParseContext.DIETARY,
            options=tuple(Option(a.replace(" ", "-"), a.title()) for a in COMMON_ALLERGENS) + (NONE_OPTION,),
            detail=DetailRequirement(prompt="How severe are your reactions?", when=frozenset({"peanuts", "tree-nuts", "shellfish"})),
        ),
    ),
)

GROCERY = Section(
    id="grocery",
    title="Grocery Shopping",
    questions=(
        SingleSelectQuestion(
            id="shopping_frequency",
            text="How often do you shop for groceries?",
            options=_choices(
                ("daily", "Daily"),
                ("twice_week", "Twice a Week"),
                ("weekly", "Weekly"),
                ("biweekly", "Biweekly"),
                ("monthly", "Monthly"),
            ),
        ),
        SingleSelectQuestion(
            id="budget_range",
            text="What is your grocery budget like?",
            options=_choices(
                ("budget", "Budget-Conscious"),
                ("moderate", "Moderate"),
                ("premium", "Premium"),
                ("no_preference", "No Preference"),
            ),
        ),
    ),
)

FITNESS = Section(
    id="fitness",
    title="Fitness",
    questions=(
        SingleSelectQuestion(
            id="activity_level",
            text="How active are you?",
            context=ParseContext.FITNESS,
            options=_choices(
                ("sedentary", "Sedentary"),
                ("lightly_active", "Lightly Active"),
                ("moderately_active", "Moderately Active"),
                ("very_active", "Very Active"),
                ("extra_active", "Extra Active"),
            ),
        ),
        MultiSelectQuestion(
            id="fitness_goals",
            text="What are your fitness goals?",
            context=ParseContext.FITNESS,
            options=(
                Option("weight_loss", "Weight Loss", synonyms=("lose weight",)),
                Option("muscle_gain", "Muscle Gain", synonyms=("build muscle", "get stronger")),
                Option("endurance", "Endurance"),
                Option("health", "General Health", synonyms=("healthy", "health")),
            ),
        ),
    ),
)

HYDRATION_SLEEP = Section(
    id="hydration_sleep",
    title="Hydration & Sleep",
    questions=(
        FormQuestion(
            id="water_intake",
            text="How many glasses of water do you drink a day?",
            context=ParseContext.HYDRATION_SLEEP,
            fields=(FormField(id="glasses_per_day", label="Glasses per day", type="number", min_value=0, max_value=40),),
        ),
        FormQuestion(
            id="sleep_hours",
            text="How many hours do you sleep on a typical night?",
            context=ParseContext.HYDRATION_SLEEP,
            fields=(FormField(id="sleep_hours", label="Hours of sleep", type="number", min_value=0, max_value=24),),
        ),
        SingleSelectQuestion(
            id="sleep_quality",
            text="How would you rate your sleep quality?",
            context=ParseContext.HYDRATION_SLEEP,
            options=_choices(("excellent", "Excellent"), ("good", "Good"), ("fair", "Fair"), ("poor", "Poor")),
        ),
    ),
)

PERSONALIZATION = Section(
    id="personalization",
    title="Personalize Your Plan",
    voice_prompt="Almost done. A couple of questions about how you want your plan.",
    response_model=PersonalizationResponse,
    questions=(
        SingleSelectQuestion(
            id="meal_prep",
            text="Do you want help with meal prep strategies?",
            context=ParseContext.PERSONALIZATION,
            options=(
                Option("yes", "Yes", synonyms=("help me prep", "sure", "yeah")),
                Option("no", "No", synonyms=("not needed", "no thanks")),
                Option("maybe_later", "Maybe Later", synonyms=("later", "decide later", "maybe")),
            ),
        ),
        FormQuestion(
            id="additional_info",
            text="Anything else we should know when building your plan?",
            required=False,
            context=ParseContext.PERSONALIZATION,
            fields=(FormField(id="additional_info", label="Anything else", required=False),),
        ),
        SingleSelectQuestion(
            id="preview",
            text="Would you like to see a preview of your personalized plan?",
            context=ParseContext.PERSONALIZATION,
            options=(
                Option("preview", "Show Preview", synonyms=("see sample plan", "show me")),
                Option("skip", "Skip Preview", synonyms=("skip", "go to dashboard")),
                Option("finish", "Finish Setup", synonyms=("finish", "done", "complete")),
            ),
        ),
    ),
)

DEFAULT_SECTIONS: tuple[Section, ...] = (
    LEGAL,
    BASELINE,
    HEALTH,
    LIFESTYLE,
    EATING,
    COOKING,
    CUISINE,
    DIETARY,
    GROCERY,
    FITNESS,
    HYDRATION_SLEEP,
    PERSONALIZATION,
)


def get_sections() -> tuple[Section, ...]:
    return DEFAULT_SECTIONS


def get_section(section_id: str) -> Section:
    for section in DEFAULT_SECTIONS:
        if section.id == section_id:
            return section
    raise KeyError(f"Unknown section: {section_id}")
