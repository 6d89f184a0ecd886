"""Supplier SKU parsing and fuzzy scoring of channel catalog candidates."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from stocksync.integrations.base import CandidateProduct


UNKNOWN_PATTERN = "unknown"

# Ordered, first match wins
_SKU_PATTERNS = [
    # noxa_E467W-White-2-CCSALE (vendor_base-color-size[-suffix])
    (
        "vendor_full",
        re.compile(
            r"^(?P<vendor>[A-Za-z]+)_(?P<base>[A-Za-z0-9]+)-(?P<color>[A-Za-z]+)-(?P<size>[A-Za-z0-9]+)"
            r"(?:-(?P<suffix>[A-Za-z0-9]+))?$"
        ),
    ),
    # noxa_E467W (vendor_base)
    ("vendor_base", re.compile(r"^(?P<vendor>[A-Za-z]+)_(?P<base>[A-Za-z0-9]+)$")),
    # E467W-White-2 (base-color-size[-suffix], no vendor prefix)
    (
        "no_vendor",
        re.compile(
            r"^(?P<base>[A-Za-z0-9]+)-(?P<color>[A-Za-z]+)-(?P<size>[A-Za-z0-9]+)"
            r"(?:-(?P<suffix>[A-Za-z0-9]+))?$"
        ),
    ),
    # E467W (main SKU only)
    ("main_sku", re.compile(r"^(?P<base>[A-Z0-9]+)$")),
]

COLOR_ALIASES: Dict[str, List[str]] = {
    "white": ["white", "wht", "w"],
    "black": ["black", "blk", "b"],
    "red": ["red", "r"],
    "blue": ["blue", "blu", "bl"],
    "green": ["green", "grn", "g"],
    "pink": ["pink", "pnk", "p"],
    "purple": ["purple", "prpl", "pur"],
    "yellow": ["yellow", "ylw", "y"],
    "orange": ["orange", "org", "o"],
    "gray": ["gray", "grey", "gry", "gr"],
    "brown": ["brown", "brn", "br"],
    "navy": ["navy", "nvy", "n"],
    "beige": ["beige", "bge", "bg"],
    "cream": ["cream", "crm", "cr"],
}

SIZE_ALIASES: Dict[str, List[str]] = {
    "XS": ["xs", "extra-small", "xsmall"],
    "S": ["s", "small"],
    "M": ["m", "medium", "med"],
    "L": ["l", "large", "lg"],
    "XL": ["xl", "extra-large", "xlarge"],
    "XXL": ["xxl", "2xl", "extra-extra-large"],
    "XXXL": ["xxxl", "3xl"],
    "0": ["0", "zero"],
    "2": ["2", "two"],
    "4": ["4", "four"],
    "6": ["6", "six"],
    "8": ["8", "eight"],
    "10": ["10", "ten"],
    "12": ["12", "twelve"],
    "14": ["14", "fourteen"],
    "16": ["16", "sixteen"],
    "18": ["18", "eighteen"],
    "20": ["20", "twenty"],
}

_COLOR_LOOKUP = {alias: standard for standard, aliases in COLOR_ALIASES.items() for alias in aliases}
_SIZE_LOOKUP = {alias: standard for standard, aliases in SIZE_ALIASES.items() for alias in aliases}

# Score weights, summed then capped at MAX_SCORE
EXACT_KEY_WEIGHT = 50
BASE_IN_TITLE_WEIGHT = 40
BASE_IN_VARIANT_SKU_WEIGHT = 35
UNPARSED_TITLE_WEIGHT = 30
COLOR_IN_TITLE_WEIGHT = 15
COLOR_IN_VARIANT_WEIGHT = 10
SIZE_IN_VARIANT_WEIGHT = 10
MAX_SCORE = 100

MAX_SKU_LENGTH = 100
_VALID_SKU = re.compile(r"^[A-Za-z0-9_-]+$")
_TOKEN_SPLIT = re.compile(r"[^A-Za-z0-9]+")


@dataclass(frozen=True)
class ParsedSku:
    original: str
    base_product_key: str
    pattern: str = UNKNOWN_PATTERN
    vendor: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None
    raw_color: Optional[str] = None
    raw_size: Optional[str] = None
    suffix: Optional[str] = None

    @property
    def is_parsed(self) -> bool:
        return self.pattern != UNKNOWN_PATTERN

    @property
    def is_variant(self) -> bool:
        return bool(self.color or self.size)


@dataclass
class MatchResult:
    candidate: Any
    score: int
    reasons: List[str] = field(default_factory=list)

    @property
    def confidence(self) -> str:
        return confidence_level(self.score)


def standardize_color(color: Optional[str]) -> Optional[str]:
    """Map a color alias to its canonical name; unknown colors pass through unchanged."""
    if not color:
        return color
    return _COLOR_LOOKUP.get(color.strip().lower(), color)


def standardize_size(size: Optional[str]) -> Optional[str]:
    """Map a size alias to its canonical token; unknown sizes are upper-cased."""
    if not size:
        return size
    return _SIZE_LOOKUP.get(size.strip().lower(), size.strip().upper())


def parse(sku: Optional[str]) -> ParsedSku:
    """
    Parse a supplier SKU into base product key and attributes.

    Never raises: unrecognized input comes back with the SKU itself as the
    base product key and no attributes.
    """
    original = "" if sku is None else str(sku)
    trimmed = original.strip()

    for name, regex in _SKU_PATTERNS:
        match = regex.match(trimmed)
        if not match:
            continue
        groups = match.groupdict()
        raw_color = groups.get("color")
        raw_size = groups.get("size")
        return ParsedSku(
            original=original,
            base_product_key=groups["base"],
            pattern=name,
            vendor=groups.get("vendor"),
            color=standardize_color(raw_color),
            size=standardize_size(raw_size),
            raw_color=raw_color,
            raw_size=raw_size,
            suffix=groups.get("suffix") or None,
        )

    return ParsedSku(original=original, base_product_key=original)


def _tokens(text: Optional[str]) -> List[str]:
    return [token for token in _TOKEN_SPLIT.split((text or "").lower()) if token]


def _keys_equal(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return left.strip().casefold() == right.strip().casefold()


def _strip_vendor(sku: str) -> str:
    return re.sub(r"^[A-Za-z]+_", "", sku.strip())


def _has_color(text: Optional[str], color: str) -> bool:
    wanted = color.lower()
    return any((standardize_color(token) or "").lower() == wanted for token in _tokens(text))


def _has_size(text: Optional[str], size: str) -> bool:
    wanted = size.upper()
    return any(standardize_size(token) == wanted for token in _tokens(text))


def _score_with_reasons(parsed: ParsedSku, candidate: "CandidateProduct") -> tuple[int, List[str]]:
    title = candidate.title or ""
    title_lower = title.lower()
    variants = list(candidate.variants or [])
    score = 0
    reasons: List[str] = []

    if any(_keys_equal(variant.sku, parsed.original) for variant in variants):
        score += EXACT_KEY_WEIGHT
        reasons.append("Exact SKU match found")

    if not parsed.is_parsed:
        stripped = _strip_vendor(parsed.original).lower()
        if stripped and stripped in title_lower:
            score += UNPARSED_TITLE_WEIGHT
            reasons.append("SKU found in title")
        return min(score, MAX_SCORE), reasons

    base = parsed.base_product_key.lower()
    if base in title_lower:
        score += BASE_IN_TITLE_WEIGHT
        reasons.append("Product code found in title")
    if any(variant.sku and base in variant.sku.lower() for variant in variants):
        score += BASE_IN_VARIANT_SKU_WEIGHT
        reasons.append("Product code found in variant SKU")

    if parsed.color:
        if _has_color(title, parsed.color):
            score += COLOR_IN_TITLE_WEIGHT
            reasons.append("Color match in title")
        if any(_has_color(variant.title, parsed.color) for variant in variants):
            score += COLOR_IN_VARIANT_WEIGHT
            reasons.append("Color match in variant")

    if parsed.size and any(_has_size(variant.title, parsed.size) for variant in variants):
        score += SIZE_IN_VARIANT_WEIGHT
        reasons.append("Size match in variant")

    return min(score, MAX_SCORE), reasons


def score(parsed: ParsedSku, candidate: "CandidateProduct") -> int:
    """Score a channel product against a parsed SKU, 0..100."""
    return _score_with_reasons(parsed, candidate)[0]


def match_reasons(parsed: ParsedSku, candidate: "CandidateProduct") -> List[str]:
    return _score_with_reasons(parsed, candidate)[1]


def rank(parsed: ParsedSku, candidates: Sequence["CandidateProduct"]) -> List[MatchResult]:
    """
    Rank candidates by score, best first.

    Zero scores are dropped. Equal scores keep the order the candidates
    were given in.
    """
    results = []
    for candidate in candidates:
        value, reasons = _score_with_reasons(parsed, candidate)
        if value > 0:
            results.append(MatchResult(candidate=candidate, score=value, reasons=reasons))
    # sorted() is stable, so ties keep candidate order
    return sorted(results, key=lambda result: result.score, reverse=True)


def match_variant(parsed: ParsedSku, candidate: "CandidateProduct"):
    """
    Pick the single variant of `candidate` that agrees with the parsed attributes.

    Returns None when no variant or more than one variant fits.
    """
    exact = [variant for variant in candidate.variants if _keys_equal(variant.sku, parsed.original)]
    if len(exact) == 1:
        return exact[0]

    if not parsed.is_variant:
        return candidate.variants[0] if len(candidate.variants) == 1 else None

    fits = []
    for variant in candidate.variants:
        text = f"{variant.title or ''} {variant.sku or ''}"
        if parsed.color and not _has_color(text, parsed.color):
            continue
        if parsed.size and not _has_size(text, parsed.size):
            continue
        fits.append(variant)
    return fits[0] if len(fits) == 1 else None


def confidence_level(value: int) -> str:
    if value >= 80:
        return "high"
    if value >= 60:
        return "medium"
    if value >= 40:
        return "low"
    return "none"


def search_terms(parsed: ParsedSku) -> List[str]:
    """Terms worth querying the channel catalog with, most specific last."""
    terms: List[str] = []
    if parsed.base_product_key:
        terms.append(parsed.base_product_key)
    if parsed.original:
        terms.append(parsed.original)
    if parsed.vendor:
        terms.append(_strip_vendor(parsed.original))
    if parsed.color and parsed.size:
        terms.append(f"{parsed.base_product_key} {parsed.color} {parsed.size}")
    # Drop duplicates, keep order
    return list(dict.fromkeys(term for term in terms if term))


def are_related(first: str, second: str) -> bool:
    """True when both SKUs belong to the same base product."""
    return parse(first).base_product_key == parse(second).base_product_key


def validate_sku(sku: Optional[str]) -> Dict[str, Any]:
    if not sku or not isinstance(sku, str):
        return {"is_valid": False, "error": "SKU must be a non-empty string"}
    trimmed = sku.strip()
    if not trimmed:
        return {"is_valid": False, "error": "SKU cannot be empty"}
    if len(trimmed) > MAX_SKU_LENGTH:
        return {"is_valid": False, "error": f"SKU is too long (max {MAX_SKU_LENGTH} characters)"}
    if not _VALID_SKU.match(trimmed):
        return {
            "is_valid": False,
            "error": "SKU contains invalid characters (only letters, numbers, underscore, and hyphen allowed)",
        }
    return {"is_valid": True, "parsed": parse(trimmed)}
