"""Normalization of offender names, postcodes and company numbers.

All functions here are pure: the same input always yields the same
output, and cosmetic variants (case, punctuation, spacing, legal suffix)
of one organization name collapse to the same normalized string.
"""

import re
import unicodedata

from ..models.base import BusinessType

# Longest first so "public limited company" wins over "company".
LEGAL_SUFFIXES = (
    "public limited company",
    "limited liability partnership",
    "incorporated",
    "corporation",
    "limited",
    "company",
    "corp",
    "ltd",
    "plc",
    "llp",
    "llc",
    "inc",
    "cic",
    "lp",
    "co",
)

_SUFFIX_RE = re.compile(r"\s+(?:" + "|".join(re.escape(s) for s in LEGAL_SUFFIXES) + r")$")
_DROPPED_CHARS_RE = re.compile(r"['’.]")
_NON_ALNUM_RE = re.compile(r"[^0-9a-z]+")
_WHITESPACE_RE = re.compile(r"\s+")

# UK postcode, e.g. "SW1A 1AA", "M1 1AE", "B33 8TH"
_POSTCODE_RE = re.compile(r"\b([A-Z]{1,2}\d[A-Z\d]?)\s*(\d[A-Z]{2})\b")
_COMPANY_NUMBER_RE = re.compile(r"^(?:[A-Z]{2})?\d{6,8}$")


def normalize_name(name: str | None) -> str:
    """Normalize an organization name for matching.

    Casefolds, folds accents, maps ``&`` to ``and``, turns punctuation into
    whitespace, collapses whitespace and strips trailing legal-entity
    suffixes (repeatedly, so "Acme Co Ltd" becomes "acme").

    Args:
        name: Raw name as published by the source

    Returns:
        Normalized name (empty string for empty input)
    """
    if not name:
        return ""

    text = unicodedata.normalize("NFKD", name)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.casefold().replace("&", " and ")
    text = _DROPPED_CHARS_RE.sub("", text)
    text = _NON_ALNUM_RE.sub(" ", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()

    while True:
        stripped = _SUFFIX_RE.sub("", text)
        if stripped == text or not stripped:
            break
        text = stripped

    return text


def normalize_postcode(value: str | None) -> str | None:
    """Canonical UK postcode ("sw1a1aa" -> "SW1A 1AA"), or None."""
    if not value:
        return None
    match = _POSTCODE_RE.search(value.upper())
    if match is None:
        return None
    return f"{match.group(1)} {match.group(2)}"


def extract_postcode(address: str | None) -> str | None:
    """Pull the last UK postcode out of a free-text address."""
    if not address:
        return None
    matches = _POSTCODE_RE.findall(address.upper())
    if not matches:
        return None
    outward, inward = matches[-1]
    return f"{outward} {inward}"


def postcode_key(postcode: str | None) -> str:
    """Postcode component of the offender unique key."""
    return normalize_postcode(postcode) or ""


def clean_company_number(value: str | None) -> str | None:
    """Clean a Companies House registration number.

    Removes the "(opens in new tab)" link suffix some registers append,
    strips whitespace and pads legacy all-digit numbers to eight digits.
    Returns None when the result does not look like a company number.
    """
    if not value:
        return None
    cleaned = value.replace("(opens in new tab)", "")
    cleaned = re.sub(r"\s+", "", cleaned).upper()
    if cleaned.isdigit() and 6 <= len(cleaned) < 8:
        cleaned = cleaned.zfill(8)
    if not _COMPANY_NUMBER_RE.match(cleaned):
        return None
    return cleaned


def detect_business_type(name: str | None) -> BusinessType:
    """Infer the legal form of an offender from its published name."""
    if not name:
        return BusinessType.OTHER
    upper = name.upper()
    if re.search(r"\bPLC\b|PUBLIC LIMITED COMPANY", upper):
        return BusinessType.PLC
    if re.search(r"\bLLP\b|\bPARTNERSHIP\b", upper):
        return BusinessType.PARTNERSHIP
    if re.search(r"\bLIMITED\b|\bLTD\b|\bLLC\b|\bINC\b|\bCORP\b|\bCORPORATION\b", upper):
        return BusinessType.LIMITED_COMPANY
    if re.search(r"\b(?:COUNCIL|TRUST|AUTHORITY|UNIVERSITY|SERVICES|GROUP)\b", upper):
        return BusinessType.OTHER
    return BusinessType.INDIVIDUAL
