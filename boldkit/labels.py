"""
Species Label Classification

This module turns the free-text species labels found in BOLD exports into a
small set of semantic kinds that the curation rules can reason about.

Label kinds:
- EMPTY: blank or a placeholder such as "None", "NA", "unknown"
- OPEN: open nomenclature ("Homo sp.", "Homo cf. sapiens", "Aus bus complex")
  or anything that is not a clean binomial
- RESOLVED: a clean binomial "Genus epithet"; the canonical form keeps the
  genus as written and lowercases the epithet

Helpers:
- normalize_label: whitespace clean-up and placeholder removal for any field
- infer_genus: recover a genus from the head of an open/empty label
- provisional_species: build the "Genus sp. BIN" label used when no species
  can be trusted

Example Usage:
    >>> from boldkit.labels import parse_species, SpeciesKind
    >>> info = parse_species("Homo  Sapiens")
    >>> info.kind is SpeciesKind.RESOLVED
    True
    >>> info.canonical
    'Homo sapiens'
    >>> parse_species("Homo sp. BOLD:AAA0001").kind
    <SpeciesKind.OPEN: 'open'>
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

import pandas as pd

# Placeholder values that carry no taxonomic information (case-insensitive)
PLACEHOLDER_TOKENS = frozenset({
    "",
    "-",
    "n/a",
    "na",
    "none",
    "null",
    "unclassified",
    "undetermined",
    "unidentified",
    "unknown",
})

# Markers of open nomenclature, compared after normalize_token()
OPEN_NOMENCLATURE_TOKENS = frozenset({
    "aff",
    "cf",
    "complex",
    "group",
    "indet",
    "nr",
    "sp",
    "spp",
    "species",
    "undescribed",
    "unknown",
})

_TOKEN_PUNCTUATION = ".,;:()[]{}"


class SpeciesKind(Enum):
    """Semantic kind of a species label."""
    EMPTY = "empty"
    OPEN = "open"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class SpeciesLabelInfo:
    """
    Result of classifying a species label.

    Attributes
    ----------
    kind : SpeciesKind
        Semantic kind of the label
    normalized : str
        Whitespace-normalized label ("" for EMPTY)
    genus : str
        Genus token as written (RESOLVED only)
    epithet : str
        Lowercased specific epithet (RESOLVED only)
    canonical : str
        "Genus epithet" (RESOLVED only)
    """
    kind: SpeciesKind
    normalized: str = ""
    genus: str = ""
    epithet: str = ""
    canonical: str = ""

    @property
    def is_resolved(self) -> bool:
        return self.kind is SpeciesKind.RESOLVED


# ============================================================================
# Token helpers
# ============================================================================

def normalize_label(value: Any) -> str:
    """
    Trim and collapse whitespace, mapping placeholders to "".

    Parameters
    ----------
    value : Any
        Raw field value; None/NaN are treated as empty

    Returns
    -------
    str
        Normalized value, or "" for blanks and placeholders

    Examples
    --------
    >>> normalize_label("  Panthera   leo  ")
    'Panthera leo'
    >>> normalize_label("None")
    ''
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        if pd.isna(value):
            return ""
        value = str(value)
    value = " ".join(value.split())
    if value.lower() in PLACEHOLDER_TOKENS:
        return ""
    return value


def normalize_token(token: str) -> str:
    """Lowercase a token and strip surrounding punctuation."""
    return token.strip().lower().strip(_TOKEN_PUNCTUATION)


def is_open_marker(token: str) -> bool:
    """True if the token is an open-nomenclature marker (sp., cf., aff., ...)."""
    return normalize_token(token) in OPEN_NOMENCLATURE_TOKENS


def is_genus_token(token: str) -> bool:
    """
    True if the token looks like a genus name.

    A genus starts with an uppercase letter; the remaining characters are
    letters or hyphens.
    """
    token = token.strip()
    if not token:
        return False
    head, rest = token[0], token[1:]
    if not (head.isalpha() and head.isupper()):
        return False
    return all(ch.isalpha() or ch == "-" for ch in rest)


def is_epithet_token(token: str) -> bool:
    """True if the token is non-empty and made only of lowercase letters or hyphens."""
    token = token.strip()
    if not token:
        return False
    return all((ch.isalpha() and ch.islower()) or ch == "-" for ch in token)


# ============================================================================
# Classification
# ============================================================================

def parse_species(label: Any) -> SpeciesLabelInfo:
    """
    Classify a species label as EMPTY, OPEN or RESOLVED.

    Parameters
    ----------
    label : Any
        Free-text species label

    Returns
    -------
    SpeciesLabelInfo
        Classification result; canonical is set only for RESOLVED labels

    Examples
    --------
    >>> parse_species("Homo sapiens").canonical
    'Homo sapiens'
    >>> parse_species("Homo cf. sapiens").kind
    <SpeciesKind.OPEN: 'open'>
    >>> parse_species("None").kind
    <SpeciesKind.EMPTY: 'empty'>

    Notes
    -----
    The epithet is lowercased before the shape check, so "Homo Sapiens"
    resolves to "Homo sapiens". Any open-nomenclature marker anywhere in the
    label makes it OPEN.
    """
    norm = normalize_label(label)
    if not norm:
        return SpeciesLabelInfo(kind=SpeciesKind.EMPTY)

    parts = norm.split(" ")
    if len(parts) < 2:
        return SpeciesLabelInfo(kind=SpeciesKind.OPEN, normalized=norm)

    if any(is_open_marker(part) for part in parts):
        return SpeciesLabelInfo(kind=SpeciesKind.OPEN, normalized=norm)

    genus = parts[0]
    epithet = parts[1].lower()
    if not is_genus_token(genus) or not is_epithet_token(epithet):
        return SpeciesLabelInfo(kind=SpeciesKind.OPEN, normalized=norm)

    return SpeciesLabelInfo(
        kind=SpeciesKind.RESOLVED,
        normalized=norm,
        genus=genus,
        epithet=epithet,
        canonical=f"{genus} {epithet}",
    )


def infer_genus(label: Any) -> str:
    """
    Infer a bare genus from the head token of a label.

    Examples
    --------
    >>> infer_genus("Homo sp. BOLD:AAA0001")
    'Homo'
    >>> infer_genus("cf. sapiens")
    ''
    """
    norm = normalize_label(label)
    if not norm:
        return ""
    head = norm.split(" ")[0]
    if is_open_marker(head):
        return ""
    return head if is_genus_token(head) else ""


def provisional_species(genus: Any, bin_uri: Any) -> str:
    """
    Build a BIN-provisional species label, "Genus sp. BIN".

    Returns "" when either the genus or the BIN is empty; there is no
    fallback to any other record identifier.

    Examples
    --------
    >>> provisional_species("Canis", "BOLD:AAA1111")
    'Canis sp. BOLD:AAA1111'
    >>> provisional_species("Canis", "")
    ''
    """
    genus = normalize_label(genus)
    bin_uri = normalize_label(bin_uri)
    if not genus or not bin_uri:
        return ""
    return f"{genus} sp. {bin_uri}"
