"""
BIN Consensus Species Resolution

Collects (BIN, canonical species) observations across a whole BOLD export and
decides, per Barcode Index Number, whether the BIN carries one trustworthy
species name.

Decision rule for a BIN:
- one distinct resolved species observed -> accepted
- several species -> rank by count (descending), then canonical name
  (ascending) so the winner does not depend on row order; the top species is
  accepted only with a strict majority of the BIN's observations AND a count
  strictly above the runner-up; otherwise the BIN is conflicted
- no resolved observations -> neither accepted nor conflicted

Only RESOLVED binomials are counted. Rows whose explicit genus disagrees with
the genus of the species label are ignored, since they usually come from
cross-contaminated or mis-keyed records.

Example Usage:
    >>> from boldkit.bin_consensus import BinSpeciesResolver
    >>> resolver = BinSpeciesResolver()
    >>> resolver.observe("BOLD:AAA1111", "Homo", "Homo sapiens")
    >>> resolver.observe("BOLD:AAA1111", "Homo", "Homo sapiens")
    >>> resolver.observe("BOLD:AAA1111", "Homo", "Homo erectus")
    >>> resolver.resolve("BOLD:AAA1111")
    BinResolution(canonical='Homo sapiens', accepted=True, conflict=False)
"""

from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple
import logging

from .labels import SpeciesLabelInfo, normalize_label, parse_species

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BinResolution:
    """
    Outcome of resolving one BIN.

    An accepted resolution carries the canonical species; a conflicted one
    carries none. The default instance means "no evidence for this BIN".
    """
    canonical: str = ""
    accepted: bool = False
    conflict: bool = False


@dataclass(frozen=True)
class BinSummary:
    """Counts of observed, accepted and conflicted BINs."""
    observed: int = 0
    canonical: int = 0
    conflicted: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "observed": self.observed,
            "canonical": self.canonical,
            "conflicted": self.conflicted,
        }


class BinSpeciesResolver:
    """
    Per-BIN species counter with deterministic majority resolution.

    One resolver is built per input file: feed every row to observe() in a
    priming pass, then query resolve()/canonical_info() while curating.
    """

    def __init__(self):
        self._counts: Dict[str, Counter] = {}
        self._decisions: Optional[Dict[str, SpeciesLabelInfo]] = None

    def observe(self, bin_uri, genus, species) -> None:
        """
        Record one (BIN, species) observation.

        Parameters
        ----------
        bin_uri : str
            BIN identifier (e.g. "BOLD:AAA1111"); blank values are ignored
        genus : str
            Genus field of the same row; when set it must agree with the
            genus of the species label (case-insensitive)
        species : str
            Species label; only RESOLVED binomials are counted
        """
        bin_key = normalize_label(bin_uri)
        if not bin_key:
            return
        info = parse_species(species)
        if not info.is_resolved:
            return
        genus = normalize_label(genus)
        if genus and genus.lower() != info.genus.lower():
            logger.debug(
                f"Ignoring {info.canonical} in {bin_key}: row genus {genus} disagrees"
            )
            return

        self._counts.setdefault(bin_key, Counter())[info.canonical] += 1
        self._decisions = None

    def bins(self) -> Iterator[str]:
        """Iterate over BINs with at least one counted observation."""
        return iter(self._counts)

    def species_counts(self, bin_uri) -> Dict[str, int]:
        """Return a copy of the species counts for a BIN."""
        return dict(self._counts.get(normalize_label(bin_uri), {}))

    def resolve(self, bin_uri) -> BinResolution:
        """
        Decide whether a BIN has an acceptable canonical species.

        Parameters
        ----------
        bin_uri : str
            BIN identifier

        Returns
        -------
        BinResolution
            accepted with the canonical species, conflicted, or empty when
            nothing was observed for the BIN
        """
        bin_key = normalize_label(bin_uri)
        if not bin_key:
            return BinResolution()
        counts = self._counts.get(bin_key)
        if not counts:
            return BinResolution()

        if len(counts) == 1:
            (species,) = counts
            return BinResolution(canonical=species, accepted=True)

        # sort by count desc, then species name for determinism
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        best, best_count = ranked[0]
        second_count = ranked[1][1]
        total = sum(counts.values())

        if best_count > second_count and best_count * 2 > total:
            return BinResolution(canonical=best, accepted=True)
        return BinResolution(conflict=True)

    def canonical(self, bin_uri) -> Tuple[str, bool]:
        """Return (canonical species, accepted) for a BIN."""
        resolution = self.resolve(bin_uri)
        if resolution.accepted:
            return resolution.canonical, True
        return "", False

    def finalize(self) -> BinSummary:
        """
        Resolve every observed BIN once and cache the accepted species.

        Must be called after the priming pass; canonical_info() reads from
        the cache built here.
        """
        decisions: Dict[str, SpeciesLabelInfo] = {}
        canonical = 0
        conflicted = 0
        for bin_key in self._counts:
            resolution = self.resolve(bin_key)
            if resolution.accepted:
                info = parse_species(resolution.canonical)
                if info.is_resolved:
                    decisions[bin_key] = info
                    canonical += 1
            elif resolution.conflict:
                conflicted += 1
        self._decisions = decisions
        return BinSummary(
            observed=len(self._counts),
            canonical=canonical,
            conflicted=conflicted,
        )

    def summary(self) -> BinSummary:
        """BIN counts from a fresh finalize() pass."""
        return self.finalize()

    def canonical_info(self, bin_uri) -> Optional[SpeciesLabelInfo]:
        """
        Parsed canonical species for an accepted BIN, or None.

        Finalizes lazily if observations were added since the last call.
        """
        if self._decisions is None:
            self.finalize()
        bin_key = normalize_label(bin_uri)
        if not bin_key:
            return None
        return self._decisions.get(bin_key)

    def __len__(self) -> int:
        return len(self._counts)
