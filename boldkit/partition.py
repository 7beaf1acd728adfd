"""
Deterministic Barcode Partitioning

This module splits a barcode FASTA into open-world / closed-world evaluation
buckets without leaking identical barcodes across buckets.

Algorithm:
1. Collect FASTA record ids and look up each record's species label in the
   taxonomy table written by the extract stage
2. Group records by exact sequence identity (MD5 of the sequence); a group
   whose records carry different labels is "conflicted" and goes to pretrain
3. For each label, order its groups by digest and classify the label:
   - seen: >= 8 records over >= 2 distinct barcodes
     -> seen_test, seen_val, seen_train
   - unseen: first byte of MD5(label) < 128
     -> test_unseen, val_unseen, keys_unseen
   - otherwise held out -> other_heldout
4. Fill each bucket's quota with whole barcode groups; the last bucket of a
   policy takes whatever remains
5. Stream the FASTA again and write every record to exactly one bucket;
   records without a usable label go to pretrain

Quotas (total = records of the label):
- test = min(25, ceil(2 * total / 10))
- seen val = ceil((total - test) / 20)
- unseen val = ceil((total - test) / 5)

The result depends only on the input contents: re-running on the same data
reproduces the same buckets byte-for-byte.
"""

from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union
import logging
import re

from .config import PipelineConfig, SplitConfig
from .formatting import format_references
from .labels import normalize_label
from .reports import SplitStats, write_split_report
from .taxdump import load_taxdump, load_taxid_map, prune_taxonomy, write_pruned_taxdump
from .utils import (
    InputFormatError,
    atomic_output,
    ceil_div,
    create_output_directory,
    iter_fasta,
    iter_tsv_chunks,
    label_hash_byte,
    sequence_digest,
    write_fasta_record,
)

logger = logging.getLogger(__name__)


class SplitIntegrityError(ValueError):
    """Input data that cannot be split consistently (duplicates, clashing labels)."""
    pass


class SplitBucket(Enum):
    """Output buckets; the value is the file stem used on disk and in reports."""
    SEEN_TRAIN = "seen_train"
    SEEN_VAL = "seen_val"
    SEEN_TEST = "seen_test"
    UNSEEN_TEST = "test_unseen"
    UNSEEN_VAL = "val_unseen"
    UNSEEN_KEYS = "keys_unseen"
    OTHER_HELDOUT = "other_heldout"
    PRETRAIN = "pretrain"

    @property
    def filename(self) -> str:
        return f"{self.value}.fasta"


# Class policies
POLICY_SEEN = "seen"
POLICY_UNSEEN = "unseen"
POLICY_HELDOUT = "heldout"

# A target of -1 takes every remaining group
REMAINDER = -1


@dataclass
class BarcodeGroup:
    """Records sharing one exact sequence."""
    digest: bytes
    label: str
    count: int = 0
    conflict: bool = False


@dataclass
class SplitPlan:
    """
    Bucket decision for every barcode group of one input.

    Attributes
    ----------
    group_buckets : Dict[bytes, SplitBucket]
        Bucket of each non-conflicted group, keyed by sequence digest
    conflicted : Set[bytes]
        Digests of groups whose records carry different labels
    invalid_ids : Set[str]
        Record ids without a usable species label
    stats : SplitStats
        Class counts and total records seen while planning
    """
    group_buckets: Dict[bytes, SplitBucket] = field(default_factory=dict)
    conflicted: Set[bytes] = field(default_factory=set)
    invalid_ids: Set[str] = field(default_factory=set)
    stats: SplitStats = field(default_factory=SplitStats)

    def bucket_for(self, record_id: str, digest: bytes, labels: Dict[str, str]) -> SplitBucket:
        """Bucket of one record; anything not planned goes to pretrain."""
        if record_id in self.invalid_ids or record_id not in labels:
            return SplitBucket.PRETRAIN
        if digest in self.conflicted:
            return SplitBucket.PRETRAIN
        return self.group_buckets.get(digest, SplitBucket.PRETRAIN)


# ============================================================================
# Input collection
# ============================================================================

def collect_fasta_ids(fasta_path: Union[str, Path]) -> Set[str]:
    """
    Return the set of record ids in a FASTA file.

    Raises
    ------
    InputFormatError
        If a record has an empty id or the file has no records
    SplitIntegrityError
        If a record id appears twice
    """
    ids: Set[str] = set()
    for record_id, _ in iter_fasta(fasta_path):
        if not record_id:
            raise InputFormatError(f"found FASTA record with empty ID in {fasta_path}")
        if record_id in ids:
            raise SplitIntegrityError(f"duplicate processid in input FASTA: {record_id}")
        ids.add(record_id)

    if not ids:
        raise InputFormatError(f"input FASTA appears empty: {fasta_path}")
    return ids


def load_process_label_map(
    tsv_path: Union[str, Path],
    wanted_ids: Set[str],
    chunk_size: int = 100_000,
) -> Tuple[Dict[str, str], Set[str]]:
    """
    Read processid -> species labels for the wanted record ids.

    Parameters
    ----------
    tsv_path : Union[str, Path]
        Taxonomy table with processid and species columns
    wanted_ids : Set[str]
        Record ids present in the FASTA being split
    chunk_size : int, optional
        TSV rows per chunk

    Returns
    -------
    labels : Dict[str, str]
        Species label of every wanted id that has one
    invalid : Set[str]
        Wanted ids whose label is empty, a placeholder, or absent

    Raises
    ------
    InputFormatError
        Missing columns or a row with an empty processid
    SplitIntegrityError
        A processid mapped to two different labels, or no wanted id found
    """
    labels: Dict[str, str] = {}
    invalid: Set[str] = set()
    found = 0

    columns = ["processid", "species"]
    for chunk in iter_tsv_chunks(tsv_path, columns, chunk_size):
        for line, pid, label in chunk[columns].itertuples(index=True, name=None):
            if not pid:
                raise InputFormatError(f"{tsv_path} line {line}: empty processid")
            if pid not in wanted_ids:
                continue
            if not normalize_label(label):
                invalid.add(pid)
                continue
            previous = labels.get(pid)
            if previous is not None and previous != label:
                raise SplitIntegrityError(
                    f"{tsv_path} line {line}: processid {pid} maps to multiple "
                    f"labels ({previous}, {label})"
                )
            labels[pid] = label
            found += 1

    if found == 0:
        raise SplitIntegrityError(
            f"taxonkit input has no matching process IDs for input FASTA: {tsv_path}"
        )

    invalid.update(pid for pid in wanted_ids if pid not in labels)
    if invalid:
        logger.info(
            f"split: {len(invalid)} records missing species label "
            f"(moved to {SplitBucket.PRETRAIN.value})"
        )
    return labels, invalid


# ============================================================================
# Class policy
# ============================================================================

def compute_test_quota(total: int, config: SplitConfig) -> int:
    """Records reserved for the test bucket of a class."""
    fraction = ceil_div(
        config.test_fraction_numerator * total, config.test_fraction_denominator
    )
    return min(config.test_cap, fraction)


def classify_label(
    label: str,
    total_records: int,
    n_barcodes: int,
    config: SplitConfig,
) -> str:
    """
    Decide whether a class is seen, unseen or held out.

    Examples
    --------
    >>> classify_label("Aus bus", 10, 3, SplitConfig())
    'seen'
    """
    if total_records >= config.seen_min_records and n_barcodes >= config.seen_min_barcodes:
        return POLICY_SEEN
    if label_hash_byte(label) < config.unseen_hash_threshold:
        return POLICY_UNSEEN
    return POLICY_HELDOUT


def assign_units(
    groups: List[BarcodeGroup],
    targets: List[Tuple[SplitBucket, int]],
) -> Dict[bytes, SplitBucket]:
    """
    Distribute ordered barcode groups over buckets with record quotas.

    Each bucket takes whole groups until its accumulated record count
    reaches its target (so it may overshoot); a target of -1 takes all
    remaining groups. Groups left over after the last target are not
    assigned.

    Parameters
    ----------
    groups : List[BarcodeGroup]
        Groups in assignment order
    targets : List[Tuple[SplitBucket, int]]
        (bucket, record target) pairs in fill order

    Returns
    -------
    Dict[bytes, SplitBucket]
        Bucket per group digest

    Examples
    --------
    Groups of 6, 3 and 1 records with a test target of 2 and a val target
    of 1 give test={6}, val={3}, train={1}.
    """
    assignment: Dict[bytes, SplitBucket] = {}
    idx = 0
    for bucket, target in targets:
        if idx >= len(groups):
            break
        if target < 0:
            for group in groups[idx:]:
                assignment[group.digest] = bucket
            idx = len(groups)
            break
        accumulated = 0
        while idx < len(groups) and accumulated < target:
            assignment[groups[idx].digest] = bucket
            accumulated += groups[idx].count
            idx += 1
    return assignment


# ============================================================================
# Planning (pass 1)
# ============================================================================

def build_split_plan(
    fasta_path: Union[str, Path],
    labels: Dict[str, str],
    invalid_ids: Iterable[str],
    config: Optional[SplitConfig] = None,
) -> SplitPlan:
    """
    Group records by sequence and choose a bucket for every group.

    Parameters
    ----------
    fasta_path : Union[str, Path]
        Input FASTA
    labels : Dict[str, str]
        Species label per record id
    invalid_ids : Iterable[str]
        Record ids already known to lack a usable label
    config : SplitConfig, optional
        Policy thresholds (default: BIOSCAN-5M values)

    Returns
    -------
    SplitPlan
        Group buckets, conflicted groups, invalid ids and class statistics
    """
    config = config or SplitConfig()
    invalid = set(invalid_ids)
    stats = SplitStats()
    groups: Dict[bytes, BarcodeGroup] = {}

    for record_id, sequence in iter_fasta(fasta_path):
        stats.total_records += 1
        if record_id in invalid:
            continue
        label = labels.get(record_id)
        if label is None:
            invalid.add(record_id)
            continue

        digest = sequence_digest(sequence)
        group = groups.get(digest)
        if group is None:
            group = groups[digest] = BarcodeGroup(digest=digest, label=label)
        elif group.label != label:
            group.conflict = True
        group.count += 1

    conflicted = {digest for digest, group in groups.items() if group.conflict}
    by_label: Dict[str, List[BarcodeGroup]] = {}
    for group in groups.values():
        if not group.conflict:
            by_label.setdefault(group.label, []).append(group)

    group_buckets: Dict[bytes, SplitBucket] = {}
    stats.total_classes = len(by_label)
    for label, units in by_label.items():
        units.sort(key=lambda g: g.digest)
        total = sum(g.count for g in units)
        policy = classify_label(label, total, len(units), config)
        test_target = compute_test_quota(total, config)

        if policy == POLICY_SEEN:
            stats.seen_classes += 1
            targets = [
                (SplitBucket.SEEN_TEST, test_target),
                (SplitBucket.SEEN_VAL, ceil_div(total - test_target, config.seen_val_divisor)),
                (SplitBucket.SEEN_TRAIN, REMAINDER),
            ]
        elif policy == POLICY_UNSEEN:
            stats.unseen_classes += 1
            targets = [
                (SplitBucket.UNSEEN_TEST, test_target),
                (SplitBucket.UNSEEN_VAL, ceil_div(total - test_target, config.unseen_val_divisor)),
                (SplitBucket.UNSEEN_KEYS, REMAINDER),
            ]
        else:
            stats.heldout_classes += 1
            targets = [(SplitBucket.OTHER_HELDOUT, REMAINDER)]

        group_buckets.update(assign_units(units, targets))

    if conflicted:
        logger.info(
            f"split: {len(conflicted)} barcode groups span multiple species labels "
            f"(moved to {SplitBucket.PRETRAIN.value})"
        )

    return SplitPlan(
        group_buckets=group_buckets,
        conflicted=conflicted,
        invalid_ids=invalid,
        stats=stats,
    )


# ============================================================================
# Writing (pass 2)
# ============================================================================

def write_split_fastas(
    fasta_path: Union[str, Path],
    out_dir: Union[str, Path],
    plan: SplitPlan,
    labels: Dict[str, str],
) -> Tuple[Dict[SplitBucket, int], Set[str]]:
    """
    Write every input record to its bucket FASTA.

    All eight bucket files are written (possibly empty). They are produced
    under temporary names and only moved into place once the whole input has
    been written; on error no bucket file is left behind.

    Returns
    -------
    counts : Dict[SplitBucket, int]
        Records written per bucket (every bucket present)
    seen_train_ids : Set[str]
        Ids of the records written to seen_train
    """
    out_dir = create_output_directory(out_dir)
    counts = {bucket: 0 for bucket in SplitBucket}
    seen_train_ids: Set[str] = set()

    with ExitStack() as stack:
        handles = {}
        for bucket in SplitBucket:
            tmp_path = stack.enter_context(atomic_output(out_dir / bucket.filename))
            handles[bucket] = stack.enter_context(
                open(tmp_path, "w", encoding="utf-8", newline="")
            )

        for record_id, sequence in iter_fasta(fasta_path):
            bucket = plan.bucket_for(record_id, sequence_digest(sequence), labels)
            write_fasta_record(handles[bucket], record_id, sequence)
            counts[bucket] += 1
            if bucket is SplitBucket.SEEN_TRAIN:
                seen_train_ids.add(record_id)

    return counts, seen_train_ids


# ============================================================================
# Orchestration
# ============================================================================

def split_dataset(
    input_fasta: Union[str, Path],
    taxonkit_input: Union[str, Path],
    taxdump_dir: Union[str, Path],
    out_dir: Union[str, Path],
    taxid_map: Optional[Union[str, Path]] = None,
    config: Optional[PipelineConfig] = None,
) -> Dict:
    """
    Split a barcode FASTA, prune the taxdump to seen_train and format references.

    Parameters
    ----------
    input_fasta : Union[str, Path]
        Barcode FASTA (plain or .gz); record ids are processids
    taxonkit_input : Union[str, Path]
        Taxonomy table from the extract stage (processid, species columns)
    taxdump_dir : Union[str, Path]
        Directory with nodes.dmp, names.dmp and taxid.map
    out_dir : Union[str, Path]
        Output directory for bucket FASTAs, taxdump_pruned/, formatted/ and
        split_report.json
    taxid_map : Union[str, Path], optional
        taxid.map override (default: taxdump_dir/taxid.map)
    config : PipelineConfig, optional
        Split and format settings

    Returns
    -------
    Dict
        The split report
    """
    config = config or PipelineConfig()
    out_dir = create_output_directory(out_dir)
    taxdump_dir = Path(taxdump_dir)

    fasta_ids = collect_fasta_ids(input_fasta)
    labels, invalid = load_process_label_map(
        taxonkit_input, fasta_ids, chunk_size=config.curation.chunk_size
    )
    plan = build_split_plan(input_fasta, labels, invalid, config.split)
    counts, seen_train_ids = write_split_fastas(input_fasta, out_dir, plan, labels)

    stats = plan.stats
    stats.bucket_records = {bucket.value: counts[bucket] for bucket in SplitBucket}

    # Prune the taxonomy to the training split
    map_path = Path(taxid_map) if taxid_map else taxdump_dir / "taxid.map"
    pid_to_taxid = load_taxid_map(map_path)
    dump = load_taxdump(taxdump_dir)
    keep, train_taxids = prune_taxonomy(
        seen_train_ids, pid_to_taxid, dump, max_depth=config.split.max_ancestor_depth
    )
    pruned_dir = write_pruned_taxdump(out_dir / "taxdump_pruned", dump, keep, train_taxids)

    seen_train = out_dir / SplitBucket.SEEN_TRAIN.filename
    formatted_dir = out_dir / "formatted"
    logger.info(f"split: format references from {seen_train} -> {formatted_dir}")
    format_references(
        seen_train,
        formatted_dir,
        pruned_dir,
        classifiers=config.format.classifiers,
        require_ranks=config.format.require_ranks,
    )

    logger.info(
        f"split: records={stats.total_records} classes={stats.total_classes} "
        f"seen-classes={stats.seen_classes} unseen-classes={stats.unseen_classes} "
        f"heldout-classes={stats.heldout_classes}"
    )
    logger.info(f"split: pruned taxdump -> {pruned_dir} (kept_taxids={len(keep)})")

    stats_dict = stats.to_dict(bucket.value for bucket in SplitBucket)
    write_split_report(
        out_dir / "split_report.json",
        input_path=input_fasta,
        out_dir=out_dir,
        classifiers=list(config.format.classifiers),
        pruned_taxids=len(keep),
        stats=stats_dict,
    )
    return {
        "input": str(input_fasta),
        "out_dir": str(out_dir),
        "classifiers": list(config.format.classifiers),
        "pruned_taxids": len(keep),
        "stats": stats_dict,
    }


# ============================================================================
# Multiple markers
# ============================================================================

_UNSAFE_TAG_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_tag(marker: str) -> str:
    """Marker name usable as a directory name ("COI 5P/x" -> "COI_5P_x")."""
    return _UNSAFE_TAG_CHARS.sub("_", marker)


def resolve_marker_input(marker_dir: Union[str, Path], marker: str) -> Path:
    """
    Locate the FASTA of a marker in a marker directory.

    Looks for <marker>.fasta.gz, then <marker>.fasta.

    Raises
    ------
    FileNotFoundError
        If neither file exists
    """
    marker_dir = Path(marker_dir)
    candidates = [marker_dir / f"{marker}.fasta.gz", marker_dir / f"{marker}.fasta"]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    raise FileNotFoundError(
        f"No FASTA for marker {marker} in {marker_dir} "
        f"(tried {', '.join(c.name for c in candidates)})"
    )


def split_markers(
    markers: Iterable[str],
    marker_dir: Union[str, Path],
    taxonkit_input: Union[str, Path],
    taxdump_dir: Union[str, Path],
    out_dir: Union[str, Path],
    taxid_map: Optional[Union[str, Path]] = None,
    config: Optional[PipelineConfig] = None,
) -> Dict[str, Dict]:
    """
    Run split_dataset once per marker FASTA.

    Each marker is split independently into out_dir/<safe marker tag>. Every
    marker FASTA is located before the first split starts, so a missing file
    fails the run without partial output.

    Parameters
    ----------
    markers : Iterable[str]
        Marker names, e.g. ["COI-5P", "ITS"]
    marker_dir : Union[str, Path]
        Directory holding <marker>.fasta(.gz) files

    Returns
    -------
    Dict[str, Dict]
        Split report per marker, in the given order
    """
    markers = [m for m in (marker.strip() for marker in markers) if m]
    if not markers:
        raise ValueError("No input FASTA and no markers given")

    inputs = [(marker, resolve_marker_input(marker_dir, marker)) for marker in markers]
    reports = {}
    for marker, fasta in inputs:
        target = Path(out_dir) / safe_tag(marker)
        logger.info(f"split: marker {marker}: {fasta} -> {target}")
        reports[marker] = split_dataset(
            fasta,
            taxonkit_input,
            taxdump_dir,
            target,
            taxid_map=taxid_map,
            config=config,
        )
    return reports
