"""Turn raw model text into a structurally valid analysis payload.

normalize() never raises for malformed model output. It returns either
ParseSuccess (the model's JSON, with missing fields filled in) or
ParseFallback (a static structure explaining that the analysis could not be
read). Callers branch on the type instead of trusting an implicit shape.

Heuristic checks are advisory: they prepend warnings to ``suggestions`` and
never change the parsed values.
"""

import copy
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from application.models import AnalysisType
from backend.observability import AccessMetrics

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD = 0.5
LOW_CONFIDENCE_WARNING = (
    "Low confidence: these results are uncertain and should be verified against primary sources."
)

_LEADING_FENCE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?")
_TRAILING_FENCE = re.compile(r"\n?\s*```\s*$")

_PLACE_WORDS = re.compile(
    r"\b(county|parish|township|city|village|town|street|road|river|church|"
    r"cemetery|province|shire|state|island|valley)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ResponseShape:
    """Expected top-level fields, their neutral defaults and per-item defaults."""

    fields: Dict[str, Any]
    item_defaults: Dict[str, Dict[str, Any]]
    fallback_message: str


SHAPES: Dict[AnalysisType, ResponseShape] = {
    AnalysisType.DOCUMENT: ResponseShape(
        fields={"names": [], "dates": [], "places": [], "relationships": [], "suggestions": []},
        item_defaults={
            "names": {"text": "", "type": "person", "confidence": 0.0},
            "dates": {"text": "", "type": "other", "confidence": 0.0},
            "places": {"text": "", "confidence": 0.0},
            "relationships": {"person1": "", "person2": "", "type": "", "confidence": 0.0},
        },
        fallback_message=(
            "We couldn't read the analysis for this document. "
            "Try again, or upload a clearer scan or transcription."
        ),
    ),
    AnalysisType.DNA: ResponseShape(
        fields={"ethnicity": {}, "regions": [], "matches": [], "haplogroups": {}, "suggestions": []},
        item_defaults={
            "matches": {"name": "", "relationship": "", "confidence": 0.0, "sharedDNA": 0.0},
        },
        fallback_message=(
            "We couldn't interpret the DNA analysis. "
            "Check that the uploaded data is complete and try again."
        ),
    ),
    AnalysisType.FAMILY_TREE: ResponseShape(
        fields={"individuals": [], "suggestions": []},
        item_defaults={
            "individuals": {
                "id": "",
                "name": "",
                "birthDate": "",
                "deathDate": "",
                "birthPlace": "",
                "relationships": [],
            },
        },
        fallback_message=(
            "We couldn't build tree suggestions from this information. "
            "Add more names, dates or places and try again."
        ),
    ),
    AnalysisType.PHOTO: ResponseShape(
        fields={"individuals": [], "timeEra": "", "location": "", "occasion": "", "suggestions": []},
        item_defaults={
            "individuals": {
                "description": "",
                "estimatedAge": None,
                "gender": "",
                "confidence": 0.0,
                "relationships": [],
            },
        },
        fallback_message=(
            "We couldn't read the photo analysis. "
            "Try again with a more detailed description of the photo."
        ),
    ),
}

RESEARCH_FALLBACK = (
    "Sorry, I couldn't put together an answer just now. Please rephrase your question and try again."
)


@dataclass
class ParseSuccess:
    data: Dict[str, Any]
    warnings: List[str] = field(default_factory=list)
    low_confidence: bool = False

    status = "success"


@dataclass
class ParseFallback:
    data: Dict[str, Any]
    warning: str

    status = "fallback"

    @property
    def warnings(self) -> List[str]:
        return [self.warning]


ParsedResult = Union[ParseSuccess, ParseFallback]


# ---------------------------------------------------------------------------
# Text cleanup and extraction
# ---------------------------------------------------------------------------


def strip_code_fences(raw: str) -> str:
    """Remove a leading ```lang fence and a trailing ``` fence."""
    text = raw.strip()
    if text.startswith("```"):
        text = _LEADING_FENCE.sub("", text, count=1)
        text = _TRAILING_FENCE.sub("", text, count=1)
    return text.strip()


def find_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` span, ignoring braces inside strings.

    One pass with a stack of open braces. An opening brace that never closes
    does not hide a complete object after it.
    """
    start = text.find("{")
    if start == -1:
        return None

    open_braces: List[int] = []
    first: Optional[int] = None
    end = -1
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            open_braces.append(i)
        elif ch == "}" and open_braces:
            opened = open_braces.pop()
            if first is None or opened < first:
                first, end = opened, i
            if not open_braces:
                # Nothing earlier is still open, so no later span can start sooner
                break

    if first is None:
        return None
    return text[first:end + 1]


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object out of model text, or None if there isn't one."""
    cleaned = strip_code_fences(raw)
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except (ValueError, RecursionError):
        pass

    span = find_balanced_object(cleaned)
    if span is None:
        return None
    try:
        parsed = json.loads(span)
    except (ValueError, RecursionError):
        return None
    return parsed if isinstance(parsed, dict) else None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _matches_default_type(value: Any, default: Any) -> bool:
    if default is None:
        return value is None or (isinstance(value, (int, float)) and not isinstance(value, bool))
    if isinstance(default, bool):
        return isinstance(value, bool)
    if isinstance(default, (int, float)):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return isinstance(value, type(default))


def _fill_defaults(obj: Dict[str, Any], defaults: Dict[str, Any], path: str, notes: List[str]) -> None:
    for key, default in defaults.items():
        if key not in obj:
            obj[key] = copy.deepcopy(default)
        elif not _matches_default_type(obj[key], default):
            notes.append(f"{path}{key}: expected {type(default).__name__}, replaced with default")
            obj[key] = copy.deepcopy(default)


def validate_shape(data: Dict[str, Any], shape: ResponseShape) -> List[str]:
    """Fill missing or mistyped fields in place. Returns notes for logging."""
    notes: List[str] = []
    _fill_defaults(data, shape.fields, "", notes)

    for list_key, item_defaults in shape.item_defaults.items():
        items = data[list_key]
        kept = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                notes.append(f"{list_key}[{index}]: not an object, dropped")
                continue
            _fill_defaults(item, item_defaults, f"{list_key}[{index}].", notes)
            kept.append(item)
        data[list_key] = kept

    data["suggestions"] = [str(s) for s in data["suggestions"] if s is not None]
    return notes


# ---------------------------------------------------------------------------
# Advisory heuristics
# ---------------------------------------------------------------------------


def _document_warnings(data: Dict[str, Any]) -> List[str]:
    warnings = []
    for name in data["names"]:
        text = str(name.get("text", ""))
        if name.get("type") == "person" and _PLACE_WORDS.search(text):
            warnings.append(f"Check '{text}': it is labeled as a person but looks like a place name.")
    return warnings


def _dna_warnings(data: Dict[str, Any]) -> List[str]:
    values = [
        v for v in data["ethnicity"].values()
        if isinstance(v, (int, float)) and not isinstance(v, bool)
    ]
    if not values:
        return []
    total = sum(values)
    # Accept either percentages or fractions
    if total <= 1.5:
        total *= 100
    if abs(total - 100) > 5:
        return [f"Ethnicity estimates add up to {total:.0f}%, not 100%. Treat the breakdown with caution."]
    return []


def _photo_warnings(data: Dict[str, Any]) -> List[str]:
    warnings = []
    for person in data["individuals"]:
        age = person.get("estimatedAge")
        if isinstance(age, (int, float)) and not 0 <= age <= 120:
            warnings.append(
                f"Estimated age {age} for '{person.get('description', '')}' is implausible."
            )
    return warnings


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _relationships(item: Dict[str, Any]) -> List[Any]:
    """Nested relationships, or nothing when the model sent a non-list."""
    rels = item.get("relationships")
    return rels if isinstance(rels, list) else []


def _tree_warnings(data: Dict[str, Any]) -> List[str]:
    ids = {str(p.get("id")) for p in data["individuals"] if p.get("id")}
    warnings = []
    for person in data["individuals"]:
        for rel in _relationships(person):
            if isinstance(rel, dict) and rel.get("relatedTo") and str(rel["relatedTo"]) not in ids:
                warnings.append(
                    f"'{person.get('name', '')}' is linked to an unknown person ({rel['relatedTo']})."
                )
    return warnings


_HEURISTICS = {
    AnalysisType.DOCUMENT: _document_warnings,
    AnalysisType.DNA: _dna_warnings,
    AnalysisType.PHOTO: _photo_warnings,
    AnalysisType.FAMILY_TREE: _tree_warnings,
}


def _confidences(data: Dict[str, Any], shape: ResponseShape) -> List[float]:
    values = []
    for list_key in shape.item_defaults:
        for item in data[list_key]:
            conf = item.get("confidence")
            if _is_number(conf):
                values.append(float(conf))
            for rel in _relationships(item):
                if isinstance(rel, dict) and _is_number(rel.get("confidence")):
                    values.append(float(rel["confidence"]))
    return values


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def fallback_for(analysis_type: AnalysisType) -> Dict[str, Any]:
    """A fresh copy of the fallback structure for an analysis type."""
    if analysis_type == AnalysisType.RESEARCH:
        return {"reply": RESEARCH_FALLBACK}
    shape = SHAPES[analysis_type]
    data = copy.deepcopy(shape.fields)
    data["suggestions"] = [shape.fallback_message]
    return data


def _fallback(analysis_type: AnalysisType, raw: str, warning: str) -> ParseFallback:
    logger.warning(
        "Using fallback for %s response: %s | raw=%r", analysis_type.value, warning, raw[:200]
    )
    AccessMetrics.ai_parse_fallbacks_total().add(1, {"analysis_type": analysis_type.value})
    return ParseFallback(data=fallback_for(analysis_type), warning=warning)


def normalize(raw_text: Optional[str], analysis_type: AnalysisType) -> ParsedResult:
    """Normalize raw model output for ``analysis_type``.

    Research chat is free text and is returned as ``{"reply": text}``.
    """
    analysis_type = AnalysisType(analysis_type)
    raw = raw_text or ""

    if analysis_type == AnalysisType.RESEARCH:
        reply = raw.strip()
        if not reply:
            return _fallback(analysis_type, raw, "empty response")
        return ParseSuccess(data={"reply": reply})

    data = extract_json_object(raw)
    if data is None:
        return _fallback(analysis_type, raw, "response was not valid JSON")

    shape = SHAPES[analysis_type]
    try:
        notes = validate_shape(data, shape)
        warnings = _HEURISTICS[analysis_type](data)
        confidences = _confidences(data, shape)
    except (TypeError, ValueError, RecursionError) as e:
        return _fallback(analysis_type, raw, f"response could not be repaired ({type(e).__name__})")
    if notes:
        logger.info("Repaired %s response: %s", analysis_type.value, "; ".join(notes[:10]))

    low_confidence = bool(confidences) and (
        sum(confidences) / len(confidences) < LOW_CONFIDENCE_THRESHOLD
    )
    if low_confidence:
        warnings.insert(0, LOW_CONFIDENCE_WARNING)

    if warnings:
        data["suggestions"] = warnings + data["suggestions"]

    return ParseSuccess(data=data, warnings=warnings, low_confidence=low_confidence)
