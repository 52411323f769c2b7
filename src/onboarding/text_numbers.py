"""
Spoken-number helpers.

Speech recognizers frequently return numbers as words ("five feet ten",
"one hundred and fifty pounds", "december fifteenth nineteen eighty").
These helpers turn such phrases into digits, ages and dates so the
measurement parser and the date/number form fields can accept them.
"""

import logging
import re
from datetime import date, datetime

logger = logging.getLogger(__name__)


WORD_NUMBERS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15,
    "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19, "twenty": 20,
    "thirty": 30, "forty": 40, "fifty": 50, "sixty": 60, "seventy": 70,
    "eighty": 80, "ninety": 90,
    "hundred": 100, "thousand": 1000, "million": 1000000,
}

ORDINAL_WORDS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "sixth": 6, "seventh": 7, "eighth": 8, "ninth": 9, "tenth": 10,
    "eleventh": 11, "twelfth": 12, "thirteenth": 13, "fourteenth": 14,
    "fifteenth": 15, "sixteenth": 16, "seventeenth": 17, "eighteenth": 18,
    "nineteenth": 19, "twentieth": 20, "thirtieth": 30,
}

MONTHS = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sep": 9, "sept": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}

_SKIP_WORDS = {"and", "the", "&"}

_NUMBER_WORD = "|".join(sorted(WORD_NUMBERS, key=len, reverse=True))
_NUMBER_RUN = re.compile(
    rf"\b(?:{_NUMBER_WORD})(?:[\s-]+(?:and[\s-]+)?(?:{_NUMBER_WORD}))*\b",
    re.IGNORECASE,
)

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%B %d %Y", "%b %d %Y", "%d %B %Y", "%d %b %Y")


def words_to_number(text: str) -> float | None:
    """
    Convert a phrase of number words (and/or digits) to a number.

    "twenty five" -> 25, "one hundred and fifty" -> 150, "2 thousand" -> 2000.
    Returns None when the phrase contains no number at all.
    """
    result = 0.0
    current = 0.0
    found = False

    for word in re.split(r"[\s-]+", text.lower().strip()):
        if not word or word in _SKIP_WORDS:
            continue

        try:
            current += float(word)
            found = True
            continue
        except ValueError:
            pass

        value = WORD_NUMBERS.get(word)
        if value is None:
            continue
        found = True

        if value == 100:
            current = (current or 1) * value
        elif value >= 1000:
            result += (current or 1) * value
            current = 0
        else:
            current += value

    if not found:
        return None
    total = result + current
    return int(total) if total == int(total) else total


def _number_class(word: str) -> str:
    value = WORD_NUMBERS[word]
    if value >= 1000:
        return "scale"
    if value == 100:
        return "hundred"
    if value >= 20:
        return "tens"
    if value >= 10:
        return "teens"
    return "units"


# (previous, next) word classes that start a new number: "five ten" is 5 10
_RUN_BREAKS = {
    ("units", "units"), ("units", "teens"), ("units", "tens"),
    ("teens", "units"), ("teens", "teens"), ("teens", "tens"),
    ("tens", "teens"), ("tens", "tens"),
    ("hundred", "hundred"),
}


def split_number_run(run: str) -> list[tuple[str, str]]:
    """
    Split a run of number words into separate numbers.

    "and" only joins inside a hundreds or thousands phrase
    ("one hundred and sixty"); elsewhere it separates two quantities
    ("ten and one hundred sixty" -> 10, 160).

    Returns (joiner, phrase) pairs; the joiner is the text that preceded
    the phrase in the run ("" for the first).
    """
    groups: list[tuple[str, list[str]]] = []
    previous = None
    pending_and = False

    for word in re.split(r"[\s-]+", run.lower().strip()):
        if not word:
            continue
        if word == "and":
            pending_and = True
            continue
        cls = _number_class(word)
        starts_new = previous is None
        if previous is not None:
            if pending_and and previous not in ("hundred", "scale"):
                starts_new = True
            elif (previous, cls) in _RUN_BREAKS:
                starts_new = True
        if starts_new:
            joiner = "" if previous is None else (" and " if pending_and else " ")
            groups.append((joiner, [word]))
        else:
            groups[-1][1].append(word)
        previous = cls
        pending_and = False

    return [(joiner, " ".join(words)) for joiner, words in groups]


def replace_number_words(text: str) -> str:
    """Replace every run of spelled-out numbers in `text` with digits."""

    def _sub(match: re.Match) -> str:
        parts = []
        for joiner, phrase in split_number_run(match.group(0)):
            value = words_to_number(phrase)
            parts.append(joiner + (phrase if value is None else f"{value:g}"))
        return "".join(parts)

    return _NUMBER_RUN.sub(_sub, text)


def text_to_number(text: str) -> float | None:
    """Extract the first number from free text, spelled out or not."""
    normalized = replace_number_words(text.lower())
    match = re.search(r"-?\d+(?:\.\d+)?", normalized)
    if not match:
        return None
    value = float(match.group(0))
    return int(value) if value == int(value) else value


def text_to_age(text: str) -> int | None:
    """Convert "I'm twenty five years old" to 25. Implausible ages return None."""
    clean = text.lower().strip()
    clean = re.sub(r"years?\s+old", "", clean)
    clean = re.sub(r"\bi'?m\b|\bi am\b|\bage\b", "", clean)
    value = text_to_number(clean)
    if value is None or not 0 < value < 130:
        return None
    return int(value)


def _token_value(token: str) -> int | None:
    """Value of a single date token: digits, number words or ordinals."""
    token = token.strip().lower()
    if token.isdigit():
        return int(token)
    if token in ORDINAL_WORDS:
        return ORDINAL_WORDS[token]
    if token in WORD_NUMBERS:
        return WORD_NUMBERS[token]
    if "-" in token:
        parts = [_token_value(p) for p in token.split("-")]
        if all(p is not None for p in parts):
            return sum(parts)
    return None


def _find_year(words: list[str]) -> tuple[int | None, set[int]]:
    """Find a year as "1980", "nineteen eighty (five)" or "two thousand (five)"."""
    for i, word in enumerate(words):
        if word.isdigit() and 1900 <= int(word) <= 2099:
            return int(word), {i}

    for i, word in enumerate(words[:-1]):
        century = _token_value(word)
        if century in (19, 20) and word not in ORDINAL_WORDS:
            tail = _token_value(words[i + 1])
            if tail is None or not 0 <= tail <= 99:
                continue
            span = {i, i + 1}
            if tail >= 20 and tail % 10 == 0 and i + 2 < len(words):
                unit = _token_value(words[i + 2])
                if unit is not None and 0 < unit < 10 and words[i + 2] not in ORDINAL_WORDS:
                    tail += unit
                    span.add(i + 2)
            return century * 100 + tail, span

        if word == "two" and words[i + 1] == "thousand":
            year = 2000
            span = {i, i + 1}
            if i + 2 < len(words) and words[i + 2] not in MONTHS:
                extra = _token_value(words[i + 2])
                if extra is not None and extra < 100:
                    year += extra
                    span.add(i + 2)
            return year, span

    return None, set()


def text_to_date(text: str) -> date | None:
    """
    Convert a spoken or typed date to a `date`.

    Accepts ISO / US numeric formats, "December 15 1980",
    "15th of December 1980" and fully spoken forms such as
    "december fifteenth nineteen eighty".
    """
    clean = text.lower().strip()
    clean = re.sub(r"(\d+)(st|nd|rd|th)\b", r"\1", clean)
    clean = re.sub(r"[,.]", " ", clean)
    clean = re.sub(r"\s+", " ", clean).strip()

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(clean, fmt).date()
        except ValueError:
            continue

    words = [w for w in clean.split(" ") if w not in ("of", "the", "on")]

    month_pos = next((i for i, w in enumerate(words) if w in MONTHS), None)
    if month_pos is None:
        return None
    month = MONTHS[words[month_pos]]

    year, year_span = _find_year(words)
    if year is None:
        return None

    day = None
    for j in (month_pos + 1, month_pos - 1):
        if 0 <= j < len(words) and j not in year_span:
            value = _token_value(words[j])
            if value is not None and 1 <= value <= 31:
                day = value
                break
    # "twenty first" spoken as two tokens after the month
    if day is not None and day in (20, 30) and month_pos + 2 < len(words):
        nxt = month_pos + 2
        if nxt not in year_span:
            unit = _token_value(words[nxt])
            if unit is not None and 0 < unit < 10:
                day += unit

    if day is None:
        return None

    try:
        return date(year, month, day)
    except ValueError:
        logger.debug(f"Rejected impossible date: {year}-{month}-{day} from {text!r}")
        return None
