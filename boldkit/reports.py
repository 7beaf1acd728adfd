"""
Curation and Split Reports

This module holds the counters and writers behind the two run reports:

- Curation report (JSON): protocol, ruleset version, BIN summary and per-rule
  counters for an extract run
- Curation audit trail (TSV): one before/after row for every record whose
  labels were changed by curation
- Split report (JSON): class and per-bucket record counts for a split run
- Format report (JSON): records seen, written and skipped while formatting
  classifier references

Rule identifiers defined here are stable: they are used as JSON keys in the
curation report and as values in the audit trail.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, IO, Iterable, List, Optional, Union

from .utils import atomic_output

logger = logging.getLogger(__name__)

RULESET_VERSION = "bioscan-5m.v1"

# Curation rule identifiers, in application order
RULE_PLACEHOLDER_NORMALIZE = "placeholder_normalize"
RULE_SUBFAMILY_FILL = "subfamily_fill_from_family_tribe"
RULE_EPITHET_ONLY_FIX = "species_epithet_only_fix"
RULE_GENUS_FROM_RESOLVED = "genus_from_resolved_species"
RULE_GENUS_INFERRED = "genus_inferred_from_species"
RULE_BIN_CANONICAL_ADOPT = "bin_canonical_species_adopt"
RULE_GENUS_SPECIES_MISMATCH_DEMOTE = "genus_species_mismatch_demote"
RULE_OPEN_TO_BIN_PROVISIONAL = "open_or_empty_to_bin_provisional"
RULE_PROVISIONAL_DROPPED_NO_BIN = "provisional_dropped_missing_bin"

RULE_IDS = (
    RULE_PLACEHOLDER_NORMALIZE,
    RULE_SUBFAMILY_FILL,
    RULE_EPITHET_ONLY_FIX,
    RULE_GENUS_FROM_RESOLVED,
    RULE_GENUS_INFERRED,
    RULE_BIN_CANONICAL_ADOPT,
    RULE_GENUS_SPECIES_MISMATCH_DEMOTE,
    RULE_OPEN_TO_BIN_PROVISIONAL,
    RULE_PROVISIONAL_DROPPED_NO_BIN,
)

AUDIT_COLUMNS = [
    "processid",
    "bin_uri",
    "genus_before",
    "species_before",
    "subfamily_before",
    "genus_after",
    "species_after",
    "subfamily_after",
    "rules",
]


# ============================================================================
# Curation statistics
# ============================================================================

@dataclass
class CurationStats:
    """
    Row and per-rule counters for one curation run.

    Each rule counts the rows on which it fired (at most once per row).
    """
    rows_total: int = 0
    rows_changed: int = 0
    rule_counts: Dict[str, int] = field(
        default_factory=lambda: {rule: 0 for rule in RULE_IDS}
    )

    def add_rules(self, rules: Iterable[str]) -> None:
        """Increment the counter of every known rule in `rules`."""
        for rule in set(rules):
            if rule in self.rule_counts:
                self.rule_counts[rule] += 1
            else:
                logger.warning(f"Ignoring unknown curation rule: {rule}")

    def to_dict(self) -> Dict[str, int]:
        out = {
            "rows_total": self.rows_total,
            "rows_changed": self.rows_changed,
        }
        for rule in RULE_IDS:
            out[rule] = self.rule_counts.get(rule, 0)
        return out


# ============================================================================
# Audit trail
# ============================================================================

def audit_field(value: Any) -> str:
    """Make a value safe for a single TSV cell (tabs and newlines -> spaces)."""
    if value is None:
        return ""
    text = str(value)
    for ch in ("\t", "\n", "\r"):
        text = text.replace(ch, " ")
    return text


class AuditTrail:
    """
    Row-level before/after TSV writer for curated records.

    The file is written under a temporary name and moved into place when the
    trail is closed without error.

    Examples
    --------
    >>> with AuditTrail("audit.tsv") as audit:
    ...     audit.write_row(before, after, {"species_epithet_only_fix"})
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.rows_written = 0
        self._context = None
        self._handle: Optional[IO[str]] = None

    def open(self) -> 'AuditTrail':
        self._context = atomic_output(self.path)
        tmp_path = self._context.__enter__()
        self._handle = open(tmp_path, "w", encoding="utf-8", newline="")
        self._handle.write("\t".join(AUDIT_COLUMNS) + "\n")
        return self

    def write_row(self, before, after, rules: Iterable[str]) -> None:
        """
        Write one changed record.

        Parameters
        ----------
        before, after : TaxonRecord
            Snapshot before curation and the curated record
        rules : Iterable[str]
            Rule identifiers that fired; written sorted and comma-joined
        """
        if self._handle is None:
            raise RuntimeError("AuditTrail is not open")
        line = "\t".join([
            audit_field(after.processid),
            audit_field(after.bin_uri),
            audit_field(before.genus),
            audit_field(before.species),
            audit_field(before.subfamily),
            audit_field(after.genus),
            audit_field(after.species),
            audit_field(after.subfamily),
            ",".join(sorted(set(rules))),
        ])
        self._handle.write(line + "\n")
        self.rows_written += 1

    def close(self, exc_info=(None, None, None)) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        context, self._context = self._context, None
        try:
            handle.close()
        finally:
            context.__exit__(*exc_info)
        if exc_info[0] is None:
            logger.debug(f"Audit trail: {self.rows_written} rows -> {self.path}")

    def __enter__(self) -> 'AuditTrail':
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close((exc_type, exc, tb))
        return False


# ============================================================================
# JSON reports
# ============================================================================

def _write_json(path: Union[str, Path], payload: Dict[str, Any]) -> Path:
    path = Path(path)
    with atomic_output(path) as tmp_path:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.write("\n")
    return path


def write_curation_report(
    report_path: Union[str, Path],
    protocol: str,
    input_path: Union[str, Path],
    bin_summary: Dict[str, int],
    stats: CurationStats,
    audit_path: Optional[Union[str, Path]] = None,
) -> Path:
    """
    Write the JSON curation report.

    Parameters
    ----------
    report_path : Union[str, Path]
        Destination JSON file
    protocol : str
        Curation protocol name
    input_path : Union[str, Path]
        The curated input file, recorded as given
    bin_summary : Dict[str, int]
        observed / canonical / conflicted BIN counts
    stats : CurationStats
        Row and rule counters
    audit_path : Union[str, Path], optional
        Audit trail location; the key is omitted when no audit was written

    Returns
    -------
    Path
        Path of the written report
    """
    report: Dict[str, Any] = {
        "protocol": protocol,
        "ruleset_version": RULESET_VERSION,
        "input_path": str(input_path),
    }
    if audit_path:
        report["audit_path"] = str(audit_path)
    report["bin_summary"] = {
        "observed": int(bin_summary.get("observed", 0)),
        "canonical": int(bin_summary.get("canonical", 0)),
        "conflicted": int(bin_summary.get("conflicted", 0)),
    }
    report["stats"] = stats.to_dict()

    path = _write_json(report_path, report)
    logger.info(f"extract ({protocol}): report -> {path}")
    return path


# ============================================================================
# Split statistics
# ============================================================================

@dataclass
class SplitStats:
    """Class counts and per-bucket record counts for one split run."""
    total_records: int = 0
    total_classes: int = 0
    seen_classes: int = 0
    unseen_classes: int = 0
    heldout_classes: int = 0
    bucket_records: Dict[str, int] = field(default_factory=dict)

    def to_dict(self, bucket_names: Iterable[str]) -> Dict[str, int]:
        """
        Flatten to the report layout; buckets become "<name>_records" keys.

        Parameters
        ----------
        bucket_names : Iterable[str]
            Bucket file stems in report order (missing buckets count 0)
        """
        out = {
            "total_records": self.total_records,
            "total_classes": self.total_classes,
            "seen_classes": self.seen_classes,
            "unseen_classes": self.unseen_classes,
            "heldout_classes": self.heldout_classes,
        }
        for name in bucket_names:
            out[f"{name}_records"] = int(self.bucket_records.get(name, 0))
        return out


def write_split_report(
    report_path: Union[str, Path],
    input_path: Union[str, Path],
    out_dir: Union[str, Path],
    classifiers: List[str],
    pruned_taxids: int,
    stats: Dict[str, int],
) -> Path:
    """
    Write the JSON split report.

    Parameters
    ----------
    report_path : Union[str, Path]
        Destination JSON file
    input_path : Union[str, Path]
        Input FASTA that was split
    out_dir : Union[str, Path]
        Split output directory
    classifiers : List[str]
        Reference formats produced from the training split
    pruned_taxids : int
        Number of taxa kept in the pruned taxdump
    stats : Dict[str, int]
        Output of SplitStats.to_dict()
    """
    report = {
        "input": str(input_path),
        "out_dir": str(out_dir),
        "classifiers": list(classifiers),
        "pruned_taxids": int(pruned_taxids),
        "stats": dict(stats),
    }
    path = _write_json(report_path, report)
    logger.info(f"split: report -> {path}")
    return path


# ============================================================================
# Format report
# ============================================================================

def write_format_report(report_path: Union[str, Path], stats: Dict[str, int]) -> Path:
    """Write total / written / missing_taxid / missing_ranks counts as JSON."""
    payload = {
        key: int(stats.get(key, 0))
        for key in ("total", "written", "missing_taxid", "missing_ranks")
    }
    path = _write_json(report_path, payload)
    logger.info(f"format: report -> {path}")
    return path
