"""
Tests for species label classification.

Tests cover:
- Placeholder and whitespace normalization
- Token shape checks (genus, epithet, open-nomenclature markers)
- Species kind classification and canonical forms
- Genus inference and provisional labels
"""

import math

import pytest

from boldkit.labels import (
    SpeciesKind,
    infer_genus,
    is_epithet_token,
    is_genus_token,
    is_open_marker,
    normalize_label,
    normalize_token,
    parse_species,
    provisional_species,
)


class TestNormalizeLabel:
    """Test field normalization."""

    def test_collapses_whitespace(self):
        assert normalize_label("  Panthera   leo  ") == "Panthera leo"

    def test_tabs_and_newlines_collapse(self):
        assert normalize_label("Panthera\tleo\n") == "Panthera leo"

    @pytest.mark.parametrize("value", ["", "   ", "-", "NA", "n/a", "None", "NULL",
                                       "unknown", "Unclassified", "undetermined",
                                       "unidentified"])
    def test_placeholders_become_empty(self, value):
        assert normalize_label(value) == ""

    def test_none_and_nan(self):
        assert normalize_label(None) == ""
        assert normalize_label(float("nan")) == ""
        assert normalize_label(math.nan) == ""

    def test_non_placeholder_kept(self):
        assert normalize_label("BOLD:AAA1111") == "BOLD:AAA1111"


class TestTokenHelpers:
    """Test token shape checks."""

    def test_normalize_token_strips_punctuation(self):
        assert normalize_token(" (cf.) ") == "cf"
        assert normalize_token("Sp.") == "sp"

    @pytest.mark.parametrize("token", ["sp.", "Sp", "spp.", "cf.", "aff.", "nr.",
                                       "complex", "group", "indet.", "species",
                                       "undescribed", "unknown"])
    def test_open_markers(self, token):
        assert is_open_marker(token)

    def test_not_open_marker(self):
        assert not is_open_marker("sapiens")
        assert not is_open_marker("Homo")

    def test_genus_token(self):
        assert is_genus_token("Homo")
        assert is_genus_token("Aus-bus")
        assert not is_genus_token("homo")
        assert not is_genus_token("Homo1")
        assert not is_genus_token("")

    def test_epithet_token(self):
        assert is_epithet_token("sapiens")
        assert is_epithet_token("novae-angliae")
        assert not is_epithet_token("Sapiens")
        assert not is_epithet_token("sapiens x")
        assert not is_epithet_token("")


class TestParseSpecies:
    """Test species label classification."""

    def test_empty(self):
        info = parse_species("None")
        assert info.kind is SpeciesKind.EMPTY
        assert info.canonical == ""
        assert not info.is_resolved

    def test_resolved_binomial(self):
        info = parse_species("Homo sapiens")
        assert info.kind is SpeciesKind.RESOLVED
        assert info.genus == "Homo"
        assert info.epithet == "sapiens"
        assert info.canonical == "Homo sapiens"

    def test_epithet_is_lowercased(self):
        info = parse_species("Homo  Sapiens")
        assert info.is_resolved
        assert info.canonical == "Homo sapiens"
        assert info.normalized == "Homo Sapiens"

    def test_trinomial_resolves_to_binomial(self):
        info = parse_species("Homo sapiens neanderthalensis")
        assert info.is_resolved
        assert info.canonical == "Homo sapiens"

    @pytest.mark.parametrize("label", [
        "Homo",
        "Homo sp.",
        "Homo sp. BOLD:AAA0001",
        "Homo cf. sapiens",
        "Homo aff. sapiens",
        "Homo sapiens complex",
        "homo sapiens",
        "Homo sapiens2",
        "sp. Homo",
    ])
    def test_open_labels(self, label):
        info = parse_species(label)
        assert info.kind is SpeciesKind.OPEN
        assert info.canonical == ""
        assert info.normalized == normalize_label(label)

    @pytest.mark.parametrize("label", ["Homo Sapiens", "Panthera  leo", "Aus-bus cus dus"])
    def test_canonical_is_stable(self, label):
        first = parse_species(label)
        second = parse_species(first.canonical)
        assert second.is_resolved
        assert second.canonical == first.canonical


class TestInferGenus:
    """Test genus inference from label heads."""

    def test_from_open_label(self):
        assert infer_genus("Homo sp. BOLD:AAA0001") == "Homo"

    def test_from_single_token(self):
        assert infer_genus("Homo") == "Homo"

    def test_marker_head(self):
        assert infer_genus("cf. sapiens") == ""

    def test_not_genus_shaped(self):
        assert infer_genus("homo sp.") == ""
        assert infer_genus("") == ""


class TestProvisionalSpecies:
    """Test BIN-provisional labels."""

    def test_builds_label(self):
        assert provisional_species("Canis", "BOLD:AAA1111") == "Canis sp. BOLD:AAA1111"

    def test_missing_bin(self):
        assert provisional_species("Canis", "") == ""
        assert provisional_species("Canis", "None") == ""

    def test_missing_genus(self):
        assert provisional_species("", "BOLD:AAA1111") == ""
