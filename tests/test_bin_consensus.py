"""
Unit tests for BIN consensus species resolution.

Tests cover:
- Observation filtering (blank BINs, unresolved labels, genus mismatches)
- Single-species and majority acceptance
- Conflicts, including exact ties
- Order independence of the decision
- Summary counts after finalize()
"""

import unittest

from boldkit.bin_consensus import BinResolution, BinSpeciesResolver


class TestObserve(unittest.TestCase):
    """Test which observations are counted."""

    def setUp(self):
        self.resolver = BinSpeciesResolver()

    def test_blank_bin_ignored(self):
        self.resolver.observe("", "Homo", "Homo sapiens")
        self.resolver.observe("None", "Homo", "Homo sapiens")
        self.assertEqual(len(self.resolver), 0)

    def test_unresolved_species_ignored(self):
        self.resolver.observe("BOLD:AAA0001", "Homo", "Homo sp.")
        self.resolver.observe("BOLD:AAA0001", "Homo", "")
        self.assertEqual(len(self.resolver), 0)

    def test_genus_mismatch_ignored(self):
        self.resolver.observe("BOLD:AAA0001", "Pan", "Homo sapiens")
        self.assertEqual(self.resolver.species_counts("BOLD:AAA0001"), {})

    def test_genus_compared_case_insensitively(self):
        self.resolver.observe("BOLD:AAA0001", "HOMO", "Homo sapiens")
        self.assertEqual(self.resolver.species_counts("BOLD:AAA0001"), {"Homo sapiens": 1})

    def test_counts_canonical_form(self):
        self.resolver.observe("BOLD:AAA0001", "", "Homo Sapiens")
        self.resolver.observe(" BOLD:AAA0001 ", "Homo", "Homo  sapiens")
        self.assertEqual(self.resolver.species_counts("BOLD:AAA0001"), {"Homo sapiens": 2})
        self.assertEqual(list(self.resolver.bins()), ["BOLD:AAA0001"])


class TestResolve(unittest.TestCase):
    """Test per-BIN decisions."""

    def setUp(self):
        self.resolver = BinSpeciesResolver()

    def _observe(self, bin_uri, *labels):
        for label in labels:
            self.resolver.observe(bin_uri, "", label)

    def test_unknown_bin(self):
        self.assertEqual(self.resolver.resolve("BOLD:NOPE"), BinResolution())
        self.assertEqual(self.resolver.resolve(""), BinResolution())

    def test_single_species_accepted(self):
        self._observe("BOLD:BIN1", "Homo sapiens")
        resolution = self.resolver.resolve("BOLD:BIN1")
        self.assertTrue(resolution.accepted)
        self.assertFalse(resolution.conflict)
        self.assertEqual(resolution.canonical, "Homo sapiens")

    def test_strict_majority_accepted(self):
        self._observe("BOLD:BIN1", "Homo sapiens", "Homo sapiens", "Homo erectus")
        self.assertEqual(self.resolver.canonical("BOLD:BIN1"), ("Homo sapiens", True))

    def test_exact_tie_is_conflict(self):
        self._observe("BOLD:BIN3", "Homo sapiens", "Homo erectus")
        resolution = self.resolver.resolve("BOLD:BIN3")
        self.assertTrue(resolution.conflict)
        self.assertFalse(resolution.accepted)
        self.assertEqual(resolution.canonical, "")
        self.assertEqual(self.resolver.canonical("BOLD:BIN3"), ("", False))

    def test_plurality_without_majority_is_conflict(self):
        # 2 of 5 is the largest share but not more than half
        self._observe(
            "BOLD:BIN4",
            "Aus bus", "Aus bus", "Aus cus", "Aus dus", "Aus eus",
        )
        self.assertTrue(self.resolver.resolve("BOLD:BIN4").conflict)

    def test_order_independent(self):
        labels = ["Homo sapiens", "Homo erectus", "Homo sapiens", "Homo sapiens", "Homo naledi"]
        other = BinSpeciesResolver()
        for label in labels:
            self.resolver.observe("BOLD:BIN5", "", label)
        for label in reversed(labels):
            other.observe("BOLD:BIN5", "", label)
        self.assertEqual(self.resolver.resolve("BOLD:BIN5"), other.resolve("BOLD:BIN5"))


class TestFinalize(unittest.TestCase):
    """Test summary and cached canonical lookups."""

    def test_summary_counts(self):
        resolver = BinSpeciesResolver()
        resolver.observe("BOLD:BIN1", "Homo", "Homo sapiens")
        resolver.observe("BOLD:BIN1", "Homo", "Homo sapiens")
        resolver.observe("BOLD:BIN3", "Homo", "Homo sapiens")
        resolver.observe("BOLD:BIN3", "Homo", "Homo erectus")
        resolver.observe("BOLD:BIN9", "Canis", "Canis lupus")

        summary = resolver.finalize()
        self.assertEqual(summary.to_dict(), {"observed": 3, "canonical": 2, "conflicted": 1})

    def test_summary_without_finalize(self):
        resolver = BinSpeciesResolver()
        resolver.observe("BOLD:BIN1", "Homo", "Homo sapiens")
        self.assertEqual(resolver.summary().to_dict(), {"observed": 1, "canonical": 1, "conflicted": 0})

    def test_canonical_info(self):
        resolver = BinSpeciesResolver()
        resolver.observe("BOLD:BIN1", "Homo", "Homo sapiens")

        info = resolver.canonical_info("BOLD:BIN1")
        self.assertIsNotNone(info)
        self.assertEqual(info.genus, "Homo")
        self.assertEqual(info.canonical, "Homo sapiens")
        self.assertIsNone(resolver.canonical_info("BOLD:OTHER"))
        self.assertIsNone(resolver.canonical_info(""))

    def test_canonical_info_refreshes_after_new_observations(self):
        resolver = BinSpeciesResolver()
        resolver.observe("BOLD:BIN1", "Homo", "Homo sapiens")
        self.assertIsNotNone(resolver.canonical_info("BOLD:BIN1"))

        resolver.observe("BOLD:BIN1", "Homo", "Homo erectus")
        self.assertIsNone(resolver.canonical_info("BOLD:BIN1"))


if __name__ == '__main__':
    unittest.main()
