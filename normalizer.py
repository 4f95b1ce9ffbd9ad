"""
normalizer.py — raw provider text → one canonical AnalysisResult.

Providers answer in two very different shapes: a JSON object matching the
prompt's schema (usually, sometimes wrapped in markdown or prose) or plain
free text. normalize() tries a list of parse strategies in order behind one
interface:

  StructuredStrategy — first well-formed {...} carrying canonical keys
  FreeTextStrategy   — keyword/section heuristics, boilerplate defaults

Confidence is always recomputed from the raw text, never taken from what the
model claims, so results stay comparable across providers and parse paths.

normalize() is pure: the same input always yields an identical result, and
it never raises for any string input.
"""
from __future__ import annotations

import json
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterator, Optional, Sequence

logger = logging.getLogger(__name__)


# ── Canonical result types ────────────────────────────────────────────────────

class ItemCategory(str, Enum):
    PLASTIC    = "plastic"
    METAL      = "metal"
    PAPER      = "paper"
    GLASS      = "glass"
    ELECTRONIC = "electronic"
    TEXTILE    = "textile"
    ORGANIC    = "organic"
    OTHER      = "other"


class ParsePath(str, Enum):
    STRUCTURED = "structured"
    FREE_TEXT  = "free_text"
    DEFAULT    = "default"      # empty payload, boilerplate only


@dataclass(frozen=True)
class RecyclingLocation:
    name: str
    address: str = ""
    distance: float = 0.0       # km, rough


@dataclass(frozen=True)
class ReuseIdea:
    title: str
    description: str = ""
    difficulty: str = "medium"  # easy | medium | hard


@dataclass(frozen=True)
class DonationOrganization:
    name: str
    description: str = ""


@dataclass(frozen=True)
class RecycleRecommendation:
    possible: bool = False
    instructions: str = ""
    locations: tuple[RecyclingLocation, ...] = ()


@dataclass(frozen=True)
class ReuseRecommendation:
    possible: bool = False
    ideas: tuple[ReuseIdea, ...] = ()


@dataclass(frozen=True)
class DonateRecommendation:
    possible: bool = False
    organizations: tuple[DonationOrganization, ...] = ()


@dataclass(frozen=True)
class Recommendations:
    recycle: RecycleRecommendation = field(default_factory=RecycleRecommendation)
    reuse: ReuseRecommendation = field(default_factory=ReuseRecommendation)
    donate: DonateRecommendation = field(default_factory=DonateRecommendation)


@dataclass(frozen=True)
class EnvironmentalImpact:
    carbon_footprint: float = 0.0   # kg CO2 if thrown away
    carbon_saved: float = 0.0       # kg CO2 avoided
    waste_reduction: float = 0.0    # kg kept out of landfill
    energy_saved: float = 0.0       # kWh


@dataclass(frozen=True)
class AnalysisResult:
    """The single shape every consumer relies on, whichever provider or parse path produced it."""
    item_name: str
    item_category: ItemCategory
    confidence: float               # 0–1, recomputed from the raw text
    description: str
    recommendations: Recommendations
    environmental: EnvironmentalImpact
    parse_path: ParsePath
    processing_time_ms: int = 0
    provider: str = ""

    def with_timing(self, processing_time_ms: int, provider: str = "") -> "AnalysisResult":
        """Return a copy carrying end-to-end timing and the provider that answered."""
        return replace(
            self,
            processing_time_ms=max(int(processing_time_ms), 0),
            provider=provider or self.provider,
        )

    def to_dict(self) -> dict:
        recs = self.recommendations
        env = self.environmental
        return {
            "item_name": self.item_name,
            "item_category": self.item_category.value,
            "confidence": self.confidence,
            "description": self.description,
            "recommendations": {
                "recycle": {
                    "possible": recs.recycle.possible,
                    "instructions": recs.recycle.instructions,
                    "locations": [
                        {"name": l.name, "address": l.address, "distance": l.distance}
                        for l in recs.recycle.locations
                    ],
                },
                "reuse": {
                    "possible": recs.reuse.possible,
                    "ideas": [
                        {"title": i.title, "description": i.description, "difficulty": i.difficulty}
                        for i in recs.reuse.ideas
                    ],
                },
                "donate": {
                    "possible": recs.donate.possible,
                    "organizations": [
                        {"name": o.name, "description": o.description}
                        for o in recs.donate.organizations
                    ],
                },
            },
            "environmental": {
                "carbon_footprint": env.carbon_footprint,
                "carbon_saved": env.carbon_saved,
                "waste_reduction": env.waste_reduction,
                "energy_saved": env.energy_saved,
            },
            "parse_path": self.parse_path.value,
            "processing_time_ms": self.processing_time_ms,
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AnalysisResult":
        """Rebuild a result read back from the status store."""
        return cls(
            item_name=_as_text(data.get("item_name")),
            item_category=_coerce_category(data.get("item_category"), ""),
            confidence=min(_as_float(data.get("confidence")), 1.0),
            description=_as_text(data.get("description")),
            recommendations=_recommendations_from(data.get("recommendations")),
            environmental=_environmental_from(data.get("environmental")),
            parse_path=ParsePath(data.get("parse_path", ParsePath.STRUCTURED.value)),
            processing_time_ms=int(_as_float(data.get("processing_time_ms"))),
            provider=_as_text(data.get("provider")),
        )


# ── Boilerplate (provider-agnostic) ───────────────────────────────────────────

DEFAULT_LOCATIONS = (
    RecyclingLocation("Local Recycling Center", "Check your city's website", 5),
    RecyclingLocation("Nearby Collection Point", "Community centers or schools", 2),
)

COMMON_ORGANIZATIONS = (
    DonationOrganization("Goodwill", "Accepts clothing, household items, and electronics"),
    DonationOrganization("Salvation Army", "Accepts furniture, clothing, and household goods"),
    DonationOrganization("Local Food Banks", "For non-perishable food items"),
    DonationOrganization("Libraries", "For books and educational materials"),
    DonationOrganization("Animal Shelters", "For towels, blankets, and pet supplies"),
)

DEFAULT_RECYCLE_INSTRUCTIONS = "Check with your local recycling center for specific guidelines."

DEFAULT_REUSE_IDEAS = (
    ReuseIdea("Creative Storage", "Use as storage container for small items", "easy"),
    ReuseIdea("DIY Project", "Transform into a useful household item", "medium"),
)

DEFAULT_ENVIRONMENTAL = EnvironmentalImpact(
    carbon_footprint=0.5, carbon_saved=0.3, waste_reduction=1.0, energy_saved=2.0,
)

DEFAULT_DESCRIPTION = (
    "Unable to fully analyze the image, but here are general sustainability recommendations."
)

UNKNOWN_ITEM = "Unknown item"

# Share of the footprint assumed avoided when only the footprint is reported
CARBON_SAVED_RATIO = 0.6


def default_recommendations() -> Recommendations:
    return Recommendations(
        recycle=RecycleRecommendation(True, DEFAULT_RECYCLE_INSTRUCTIONS, DEFAULT_LOCATIONS),
        reuse=ReuseRecommendation(True, DEFAULT_REUSE_IDEAS),
        donate=DonateRecommendation(True, COMMON_ORGANIZATIONS[:3]),
    )


def default_result(raw_payload: str = "") -> AnalysisResult:
    """Lowest-confidence result for an empty or unusable payload."""
    return AnalysisResult(
        item_name=UNKNOWN_ITEM,
        item_category=ItemCategory.OTHER,
        confidence=compute_confidence(raw_payload),
        description=DEFAULT_DESCRIPTION,
        recommendations=default_recommendations(),
        environmental=DEFAULT_ENVIRONMENTAL,
        parse_path=ParsePath.DEFAULT,
    )


# ── Confidence ────────────────────────────────────────────────────────────────

_DIGIT_RE = re.compile(r"\d")


def compute_confidence(raw_payload: str) -> float:
    """
    0.5 base, +0.2 for a response longer than 100 characters, +0.1 each for
    recycle / reuse / donate content, +0.1 for any numbers. Capped at 1.0.
    """
    text = raw_payload.lower()
    score = 0.5
    if len(raw_payload) > 100:
        score += 0.2
    for stem in ("recycl", "reus", "donat"):
        if stem in text:
            score += 0.1
    if _DIGIT_RE.search(raw_payload):
        score += 0.1
    return min(round(score, 2), 1.0)


# ── Category lexicon ──────────────────────────────────────────────────────────

# Whole-word matches only: "can" alone would match "can be recycled".
CATEGORY_KEYWORDS: dict[ItemCategory, tuple[str, ...]] = {
    ItemCategory.PLASTIC:    ("plastic", "bottle", "container", "bag", "wrap", "polyethylene"),
    ItemCategory.METAL:      ("metal", "aluminum", "aluminium", "steel", "iron", "tin", "copper", "soda can", "tin can"),
    ItemCategory.PAPER:      ("paper", "cardboard", "book", "magazine", "newspaper", "carton"),
    ItemCategory.GLASS:      ("glass", "jar", "window"),
    ItemCategory.ELECTRONIC: ("electronic", "electronics", "computer", "phone", "battery", "cable", "device", "laptop", "charger"),
    ItemCategory.TEXTILE:    ("fabric", "cloth", "clothing", "shirt", "pants", "textile", "jacket", "shoe"),
    ItemCategory.ORGANIC:    ("food", "organic", "fruit", "vegetable", "compost", "peel"),
}

_CATEGORY_PATTERNS = {
    category: re.compile(
        r"\b(?:" + "|".join(re.escape(k).replace(" ", r"\s+") for k in keywords) + r")(?:e?s)?\b",
        re.IGNORECASE,
    )
    for category, keywords in CATEGORY_KEYWORDS.items()
}


def infer_category(text: str) -> ItemCategory:
    """Category with the most keyword hits; ties go to the earlier lexicon entry."""
    best, best_hits = ItemCategory.OTHER, 0
    for category, pattern in _CATEGORY_PATTERNS.items():
        hits = len(pattern.findall(text))
        if hits > best_hits:
            best, best_hits = category, hits
    return best


def _coerce_category(value: Any, context: str) -> ItemCategory:
    raw = _as_text(value).lower()
    try:
        return ItemCategory(raw)
    except ValueError:
        pass
    if raw:
        guessed = infer_category(raw)
        if guessed is not ItemCategory.OTHER:
            return guessed
    return infer_category(context) if context else ItemCategory.OTHER


# ── Field coercion helpers ────────────────────────────────────────────────────

def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return default


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "\n".join(_as_text(v) for v in value if v is not None).strip()
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value).strip()


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "y", "1", "possible")
    return bool(value)


def _as_float(value: Any) -> float:
    """Non-negative finite float; anything unparseable is 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value)
        value = match.group(0) if match else None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return max(number, 0.0)


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    if isinstance(value, list):
        return value
    if value is None or value == "":
        return []
    return [value]


def _normalise_difficulty(value: Any, description: str) -> str:
    raw = _as_text(value).lower()
    if raw in ("easy", "medium", "hard"):
        return raw
    return assess_difficulty(description)


def _locations_from(value: Any) -> tuple[RecyclingLocation, ...]:
    locations = []
    for item in _as_list(value):
        if isinstance(item, dict):
            name = _as_text(_pick(item, "name", "title"))
            if name:
                locations.append(RecyclingLocation(
                    name=name,
                    address=_as_text(item.get("address")),
                    distance=_as_float(item.get("distance")),
                ))
        elif _as_text(item):
            locations.append(RecyclingLocation(name=_as_text(item)))
    return tuple(locations)


def _ideas_from(value: Any) -> tuple[ReuseIdea, ...]:
    ideas = []
    for item in _as_list(value):
        if isinstance(item, dict):
            description = _as_text(_pick(item, "description", "details", "steps"))
            title = _as_text(_pick(item, "title", "name")) or _idea_title(description)
            if title:
                ideas.append(ReuseIdea(title, description, _normalise_difficulty(item.get("difficulty"), description)))
        elif _as_text(item):
            text = _as_text(item)
            ideas.append(ReuseIdea(_idea_title(text), text, assess_difficulty(text)))
    return tuple(ideas)


def _organizations_from(value: Any) -> tuple[DonationOrganization, ...]:
    organizations = []
    for item in _as_list(value):
        if isinstance(item, dict):
            name = _as_text(_pick(item, "name", "title"))
            if name:
                organizations.append(DonationOrganization(name, _as_text(item.get("description"))))
        elif _as_text(item):
            organizations.append(DonationOrganization(_as_text(item)))
    return tuple(organizations)


def _recommendations_from(value: Any) -> Recommendations:
    recs = _as_dict(value)
    recycle = _as_dict(recs.get("recycle"))
    reuse = _as_dict(recs.get("reuse"))
    donate = _as_dict(recs.get("donate"))
    return Recommendations(
        recycle=RecycleRecommendation(
            possible=_as_bool(recycle.get("possible")),
            instructions=_as_text(_pick(recycle, "instructions", "steps")),
            locations=_locations_from(recycle.get("locations")),
        ),
        reuse=ReuseRecommendation(
            possible=_as_bool(reuse.get("possible")),
            ideas=_ideas_from(reuse.get("ideas")),
        ),
        donate=DonateRecommendation(
            possible=_as_bool(donate.get("possible")),
            organizations=_organizations_from(donate.get("organizations")),
        ),
    )


def _environmental_from(value: Any) -> EnvironmentalImpact:
    env = _as_dict(value)
    return EnvironmentalImpact(
        carbon_footprint=_as_float(_pick(env, "carbonFootprint", "carbon_footprint")),
        carbon_saved=_as_float(_pick(env, "carbonSaved", "carbon_saved")),
        waste_reduction=_as_float(_pick(env, "wasteReduction", "waste_reduction")),
        energy_saved=_as_float(_pick(env, "energySaved", "energy_saved")),
    )


# ── Text helpers (free-text path) ─────────────────────────────────────────────

_MARKDOWN_RE = re.compile(r"[*_`#>]+")
_LEADING_MARKER_RE = re.compile(r"^[\s•\-*\d.)]+")
_ITEM_LINE_RE = re.compile(
    r"^\W*(?:(?:identified\s+)?item(?:\s+name)?|object)\s*[:\-]\s*(.+)$"
    r"|^\W*the\s+item\s+(?:in\s+(?:this|the)\s+image\s+)?is\s+(.+)$",
    re.IGNORECASE,
)
_CO2_RE = re.compile(r"(\d+(?:\.\d+)?)\s*kg\s*(?:of\s+)?co(?:2|₂)", re.IGNORECASE)


def _clean_line(line: str) -> str:
    return _MARKDOWN_RE.sub("", line).strip()


def _idea_title(text: str) -> str:
    head = re.split(r"[.:]", text, maxsplit=1)[0].strip()
    return (head or text)[:60].strip()


def assess_difficulty(idea: str) -> str:
    lower = idea.lower()
    if any(k in lower for k in ("cut", "modify", "build", "construct", "paint", "drill", "sew")):
        return "hard"
    if any(k in lower for k in ("use as", "place", "store", "hold")):
        return "easy"
    return "medium"


def _first_lines(text: str) -> list[str]:
    return [_clean_line(l) for l in text.splitlines() if _clean_line(l)]


def _item_name(lines: Sequence[str]) -> str:
    for line in lines[:5]:
        match = _ITEM_LINE_RE.match(line)
        name = (match.group(1) or match.group(2) or "").strip() if match else ""
        if name:
            return _LEADING_MARKER_RE.sub("", name).strip(" .")[:80]
    if not lines:
        return UNKNOWN_ITEM
    first = _LEADING_MARKER_RE.sub("", lines[0])
    sentence = re.split(r"(?<=[.!?])\s", first, maxsplit=1)[0]
    return sentence.strip(" .")[:80] or UNKNOWN_ITEM


# ── Section extraction ────────────────────────────────────────────────────────

SECTION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "recycle": ("recycl", "recyl"),
    "reuse":   ("reus", "repurpos", "upcycl"),
    "donate":  ("donat", "give away", "charity"),
}

# Headings of sections other than the three actions
_OTHER_HEADINGS = ("environment", "carbon", "impact", "category", "summary", "conclusion", "estimate")

_HEADING_SHAPE_RE = re.compile(r"^\s*(?:#{1,6}\s+|\*\*[^*]+\*\*\s*:?\s*$|\d+[.)]\s+|[A-Z][A-Z /&-]{3,}:?\s*$)")


def _looks_like_heading(line: str) -> bool:
    stripped = line.strip()
    if not stripped or len(stripped) > 80:
        return False
    return bool(_HEADING_SHAPE_RE.match(stripped)) or stripped.endswith(":")


def extract_section(text: str, action: str) -> str:
    """
    Text of the section about `action`: from the first line mentioning one of
    its keywords (headings preferred) up to the next heading that belongs to
    another section.
    """
    own = SECTION_KEYWORDS[action]
    others = tuple(k for name, kws in SECTION_KEYWORDS.items() if name != action for k in kws)
    lines = text.splitlines()

    def mentions(line: str, keywords: Sequence[str]) -> bool:
        lower = line.lower()
        return any(k in lower for k in keywords)

    start = next(
        (i for i, l in enumerate(lines) if _looks_like_heading(l) and mentions(l, own)),
        None,
    )
    if start is None:
        start = next((i for i, l in enumerate(lines) if mentions(l, own)), None)
    if start is None:
        return ""

    section = [lines[start]]
    for line in lines[start + 1:]:
        if _looks_like_heading(line) and not mentions(line, own) and (
            mentions(line, others) or mentions(line, _OTHER_HEADINGS)
        ):
            break
        section.append(line)
    return "\n".join(section).strip()


def extract_reuse_ideas(section: str, limit: int = 5) -> tuple[ReuseIdea, ...]:
    ideas = []
    for line in section.splitlines()[1:]:
        stripped = line.strip()
        if not stripped or not (stripped[0] in "•-*" or re.match(r"^\d+[.)]", stripped)):
            continue
        idea = _clean_line(_LEADING_MARKER_RE.sub("", stripped))
        if len(idea) > 10:
            ideas.append(ReuseIdea(_idea_title(idea), idea, assess_difficulty(idea)))
        if len(ideas) == limit:
            break
    return tuple(ideas)


def extract_organizations(section: str, limit: int = 3) -> tuple[DonationOrganization, ...]:
    """Known organisations mentioned in the section first, topped up from the common list."""
    lower = section.lower()
    mentioned = [o for o in COMMON_ORGANIZATIONS if o.name.lower().rstrip("s") in lower]
    rest = [o for o in COMMON_ORGANIZATIONS if o not in mentioned]
    return tuple((mentioned + rest)[:limit])


def extract_environmental(text: str) -> EnvironmentalImpact:
    match = _CO2_RE.search(text)
    if not match:
        return DEFAULT_ENVIRONMENTAL
    footprint = float(match.group(1))
    return replace(
        DEFAULT_ENVIRONMENTAL,
        carbon_footprint=footprint,
        carbon_saved=round(footprint * CARBON_SAVED_RATIO, 3),
    )


def _says(section: str, positive: Sequence[str], negative: Sequence[str]) -> bool:
    lower = section.lower()
    if any(n in lower for n in negative):
        return False
    return any(p in lower for p in positive)


# ── JSON discovery (structured path) ──────────────────────────────────────────

def iter_json_objects(text: str) -> Iterator[dict]:
    """Yield every well-formed {...} object in text, in order of its opening brace."""
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, _ = decoder.raw_decode(text, idx)
        except (json.JSONDecodeError, RecursionError):
            obj = None
        if isinstance(obj, dict):
            yield obj
        idx = text.find("{", idx + 1)


_CANONICAL_KEYS = frozenset({
    "itemName", "item_name", "itemCategory", "item_category",
    "recommendations", "environmental",
})


# ── Strategies ────────────────────────────────────────────────────────────────

class ParseStrategy(ABC):
    path: ParsePath

    @abstractmethod
    def parse(self, raw_payload: str) -> Optional[AnalysisResult]:
        """Return a result, or None to let the next strategy try."""
        ...


class StructuredStrategy(ParseStrategy):
    path = ParsePath.STRUCTURED

    def parse(self, raw_payload: str) -> Optional[AnalysisResult]:
        data = next((o for o in iter_json_objects(raw_payload) if _CANONICAL_KEYS & o.keys()), None)
        if data is None:
            return None

        description = _as_text(data.get("description"))
        item_name = _as_text(_pick(data, "itemName", "item_name", "name", "item"))
        if not item_name:
            item_name = _item_name(_first_lines(description)) if description else UNKNOWN_ITEM

        recommendations = _recommendations_from(data.get("recommendations"))
        return AnalysisResult(
            item_name=item_name,
            item_category=_coerce_category(
                _pick(data, "itemCategory", "item_category", "category"),
                f"{item_name}\n{description}",
            ),
            confidence=compute_confidence(raw_payload),
            description=description,
            recommendations=recommendations,
            environmental=_environmental_from(data.get("environmental")),
            parse_path=self.path,
        )


class FreeTextStrategy(ParseStrategy):
    path = ParsePath.FREE_TEXT

    def parse(self, raw_payload: str) -> Optional[AnalysisResult]:
        if not raw_payload.strip():
            return default_result(raw_payload)

        lines = _first_lines(raw_payload)
        recycle_text = extract_section(raw_payload, "recycle")
        reuse_text = extract_section(raw_payload, "reuse")
        donate_text = extract_section(raw_payload, "donate")

        recycle = RecycleRecommendation(
            possible=bool(recycle_text) and _says(
                recycle_text,
                ("yes", "can be recycled", "recyclable"),
                ("not recyclable", "cannot be recycled", "can't be recycled", "non-recyclable"),
            ),
            instructions="\n".join(_first_lines(recycle_text)) or DEFAULT_RECYCLE_INSTRUCTIONS,
            locations=DEFAULT_LOCATIONS,
        )
        ideas = extract_reuse_ideas(reuse_text)
        reuse = ReuseRecommendation(
            possible=len(reuse_text) > 50,
            ideas=ideas or DEFAULT_REUSE_IDEAS,
        )
        donate = DonateRecommendation(
            possible=bool(donate_text) and _says(
                donate_text,
                ("yes", "suitable", "can be donated", "accept"),
                ("not suitable", "cannot be donated", "can't be donated", "should not be donated"),
            ),
            organizations=extract_organizations(donate_text),
        )

        return AnalysisResult(
            item_name=_item_name(lines),
            item_category=infer_category(raw_payload),
            confidence=compute_confidence(raw_payload),
            description=(lines[0] if lines else DEFAULT_DESCRIPTION)[:300],
            recommendations=Recommendations(recycle, reuse, donate),
            environmental=extract_environmental(raw_payload),
            parse_path=self.path,
        )


DEFAULT_STRATEGIES: tuple[ParseStrategy, ...] = (StructuredStrategy(), FreeTextStrategy())


def normalize(
    raw_payload: Optional[str],
    strategies: Sequence[ParseStrategy] = DEFAULT_STRATEGIES,
) -> AnalysisResult:
    """Parse a provider's raw text into the canonical AnalysisResult. Never raises."""
    text = raw_payload if isinstance(raw_payload, str) else ""
    for strategy in strategies:
        try:
            result = strategy.parse(text)
        except (ValueError, TypeError, KeyError, AttributeError, IndexError, RecursionError) as exc:
            logger.warning("%s strategy failed, trying next: %s", strategy.path.value, exc)
            continue
        if result is not None:
            logger.debug("Normalised via %s path (confidence=%.2f)", result.parse_path.value, result.confidence)
            return result
    return default_result(text)
