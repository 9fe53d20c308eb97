"""Shared normalization utilities for record deduplication.

This module provides common functionality used by:
- dedup.py (candidate keys, pairwise matching)
- metadata.py (BibTeX and JSON metadata adapters)

Includes key normalization, title key construction, author comparison,
ISBN/ISSN/DOI handling and record id helpers.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable

# ------------- Constants & Regex -------------

# All ASCII characters that are not letters or digits
_KEY_STRIP_RE = re.compile(r"[\x00-\x2F\x3A-\x40\x5B-\x60\x7B-\x7F]")

_ISBN_RE = re.compile(r"([0-9]{9,12}[0-9xX])")
_ISSN_RE = re.compile(r"([0-9]{4})-?([0-9]{3}[0-9xX])")
_TRAILING_DIGITS_RE = re.compile(r"(\d+)$")

_LATEX_CMD_RE = re.compile(r"\\[a-zA-Z]+(\s*\[[^\]]*\])?(\s*\{[^}]*\})?")
_LATEX_MATH_RE = re.compile(r"\$[^$]*\$")
_BRACES_RE = re.compile(r"[{}]")

TITLE_KEY_MAX_LENGTH = 200
ID_KEY_MAX_LENGTH = 200

# ------------- Text Normalization -------------


def safe_lower(x: str | None) -> str:
    """Null-safe lowercase and strip."""
    return (x or "").lower().strip()


def strip_diacritics(text: str, preserve: Iterable[str] = ()) -> str:
    """Remove diacritics from text (e.g., 'café' -> 'cafe').

    Characters listed in ``preserve`` are kept as is, which allows e.g. Finnish
    'å', 'ä' and 'ö' to stay distinct from 'a' and 'o'.
    """
    keep = set(preserve)
    out = []
    for ch in text:
        if ch in keep:
            out.append(ch)
            continue
        nfkd = unicodedata.normalize("NFKD", ch)
        out.append("".join(c for c in nfkd if not unicodedata.combining(c)))
    return "".join(out)


def latex_to_plain(text: str) -> str:
    """Remove LaTeX commands, math, and braces from text."""
    if not text:
        return ""
    t = _LATEX_MATH_RE.sub(" ", text)
    t = _LATEX_CMD_RE.sub(" ", t)
    t = _BRACES_RE.sub("", t)
    t = re.sub(r"\s+", " ", t)
    return t.strip()


def normalize_key(text: str | None, form: str = "NFKC", preserve: Iterable[str] = ()) -> str:
    """Normalize a string for use as a match key.

    Folds diacritics, drops ASCII whitespace and punctuation, applies the
    requested Unicode normalization form and lowercases the result.

    Args:
        text: String to normalize
        form: Unicode normalization form (NFC, NFD, NFKC or NFKD)
        preserve: Characters excluded from diacritic folding

    Returns:
        Normalized key, possibly empty
    """
    if not text:
        return ""
    t = strip_diacritics(text, preserve)
    t = _KEY_STRIP_RE.sub("", t)
    t = unicodedata.normalize(form, t)
    return t.strip().lower()


def create_title_key(
    title: str,
    form: str = "NFKC",
    full_title_prefixes: Iterable[str] = (),
    preserve: Iterable[str] = (),
) -> str:
    """Create a normalized title key for candidate lookup.

    Words are concatenated until more than three long (>3 chars) words or more
    than 35 significant characters have been collected. Titles starting with one
    of ``full_title_prefixes`` (already normalized) may use up to 100 characters.
    """
    full = False
    prefixes = [p for p in full_title_prefixes if p]
    if prefixes:
        normal_title = normalize_key(title, form, preserve)
        full = any(normal_title.startswith(p) for p in prefixes)

    key = ""
    long_words = 0
    key_len = 0
    for word in title.split(" "):
        key += word
        word_len = len(word)
        if word_len > 3:
            long_words += 1
        key_len += word_len
        if not full and (long_words > 3 or key_len > 35):
            break
        if full and key_len > 100:
            break
    return normalize_key(key[:TITLE_KEY_MAX_LENGTH], form, preserve)


# ------------- Author Handling -------------


def split_authors_bibtex(author_field: str) -> list[str]:
    """Split BibTeX 'A and B and C' author string into individual names."""
    if not author_field:
        return []
    parts = [p.strip() for p in re.split(r"\s+\band\b\s+", author_field, flags=re.IGNORECASE) if p.strip()]
    return parts


def author_key_part(author: str) -> str:
    """Return the family-name part of an inverted 'Family, Given' author string."""
    return re.split(r",\s", author, maxsplit=1)[0]


def author_match(a1: str, a2: str) -> bool:
    """Lenient comparison of two normalized author strings.

    Matches identical strings, strings where the shorter one is a prefix of the
    longer one (both at least 6 characters), and space-separated names whose
    first words are equal and whose remaining words share an initial letter.
    """
    if a1 == a2:
        return True
    a1l = len(a1)
    a2l = len(a2)
    if a1l < 6 or a2l < 6:
        return False
    n = min(a1l, a2l)
    if a1[:n] == a2[:n]:
        return True

    words1 = a1.split(" ")
    words2 = a2.split(" ")
    for i in range(min(len(words1), len(words2))):
        if words1[i] != words2[i]:
            # First word needs to match
            if i == 0:
                return False
            if words1[i][:1] != words2[i][:1]:
                return False
    return True


# ------------- Identifier Utilities -------------


def isbn10to13(isbn: str) -> str | None:
    """Convert an ISBN-10 to ISBN-13, or return None if not a valid ISBN-10 shape."""
    m = re.fullmatch(r"([0-9]{9})[0-9xX]", isbn)
    if not m:
        return None
    digits = [int(c) for c in m.group(1)]
    total = 38 + 3 * (digits[0] + digits[2] + digits[4] + digits[6] + digits[8])
    total += digits[1] + digits[3] + digits[5] + digits[7]
    check = (10 - (total % 10)) % 10
    return f"978{m.group(1)}{check}"


def normalize_isbn(isbn: str | None) -> str:
    """Normalize an ISBN to its 13-digit form; returns '' for unparseable input."""
    if not isbn:
        return ""
    m = _ISBN_RE.search(isbn.replace("-", ""))
    if not m:
        return ""
    value = m.group(1)
    if len(value) == 10:
        value = isbn10to13(value) or ""
    return value


def normalize_issn(issn: str | None) -> str:
    """Normalize an ISSN to NNNN-NNNC form; returns '' for unparseable input."""
    if not issn:
        return ""
    m = _ISSN_RE.search(issn)
    if not m:
        return ""
    return f"{m.group(1)}-{m.group(2).upper()}"


def doi_normalize(doi: str | None) -> str | None:
    """Normalize a DOI by removing URL prefix and lowercasing."""
    if not doi:
        return None
    d = doi.strip()
    d = re.sub(r"^https?://(dx\.)?doi\.org/", "", d, flags=re.IGNORECASE)
    return d.lower()


def create_id_sort_key(record_id: str) -> tuple[int, int, str]:
    """Sort key for component part ids.

    Ids ending in a digit run sort numerically by that run and before ids
    without one; ties and the rest sort by the id itself.
    """
    m = _TRAILING_DIGITS_RE.search(record_id)
    if m:
        return (0, int(m.group(1)), record_id)
    return (1, 0, record_id)


def get_source_from_id(record_id: str) -> str:
    """Return the source prefix of a source-qualified record id ('src.local')."""
    return record_id.split(".", 1)[0]


def unique_list(values: Iterable[str]) -> list[str]:
    """Drop empty and duplicate values while keeping order."""
    seen: set[str] = set()
    out = []
    for v in values:
        if v and v not in seen:
            seen.add(v)
            out.append(v)
    return out
