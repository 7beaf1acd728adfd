"""
Classifier Reference Formatting

Turns a FASTA (normally the seen_train split) plus a taxdump into reference
files for common taxonomic classifiers.

Outputs per classifier:
- blast: blast.fasta + blast_seqid2taxid.map ("id<TAB>taxid")
- kraken2: kraken2.fasta with ">id|kraken:taxid|N" headers
- sintax: sintax.fasta with ">id;tax=d:..,p:..,c:..,o:..,f:..,g:..,s:.."
- rdp: rdp_seqs.fasta + rdp_lineage.tsv ("id<TAB>name<TAB>name...")
- idtaxa: idtaxa_seqs.fasta + idtaxa_lineage.tsv ("id<TAB>Root;name;...")
- protax: protax_seqs.fasta + protax_seqid2tax.tsv ("id<TAB>name;name;...")

A record is written only when it has a taxid and its lineage names every
required rank.
"""

from contextlib import ExitStack
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, IO, Iterable, List, Optional, Union
import logging

from .config import DEFAULT_REQUIRE_RANKS, SUPPORTED_CLASSIFIERS
from .reports import write_format_report
from .taxdump import load_taxdump, load_taxid_map
from .utils import atomic_output, create_output_directory, iter_fasta, write_fasta_record

logger = logging.getLogger(__name__)

# Output files of each classifier, FASTA first
CLASSIFIER_FILES = {
    "blast": ("blast.fasta", "blast_seqid2taxid.map"),
    "kraken2": ("kraken2.fasta",),
    "sintax": ("sintax.fasta",),
    "rdp": ("rdp_seqs.fasta", "rdp_lineage.tsv"),
    "idtaxa": ("idtaxa_seqs.fasta", "idtaxa_lineage.tsv"),
    "protax": ("protax_seqs.fasta", "protax_seqid2tax.tsv"),
}

SINTAX_PREFIXES = ("d", "p", "c", "o", "f", "g", "s")

# Characters that act as separators in one of the output formats
_SEPARATORS = (";", ",", ":", "\t", "|")


@dataclass
class FormatStats:
    """Record counts of one formatting run."""
    total: int = 0
    written: int = 0
    missing_taxid: int = 0
    missing_ranks: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def sanitize_taxon(name: str) -> str:
    """Replace separator characters in a taxon name with underscores."""
    name = name.strip()
    for ch in _SEPARATORS:
        name = name.replace(ch, "_")
    return name


def build_lineage(lineage: Dict[str, str], ranks: Iterable[str]) -> List[str]:
    """
    Sanitized names for the given ranks, top-down.

    Returns an empty list if any rank is missing. With no ranks requested,
    the standard ranks present in the lineage are used.
    """
    ranks = list(ranks)
    if not ranks:
        return [sanitize_taxon(lineage[r]) for r in DEFAULT_REQUIRE_RANKS if lineage.get(r)]

    names = []
    for rank in ranks:
        name = lineage.get(rank, "")
        if not name:
            return []
        names.append(sanitize_taxon(name))
    return names


def sintax_lineage(names: List[str]) -> str:
    """
    SINTAX "tax=" value for a top-down list of names.

    Examples
    --------
    >>> sintax_lineage(["Animalia", "Chordata"])
    'd:Animalia,p:Chordata'
    """
    return ",".join(f"{prefix}:{name}" for prefix, name in zip(SINTAX_PREFIXES, names))


def _normalize_classifiers(classifiers: Iterable[str]) -> List[str]:
    out = []
    for name in classifiers:
        name = name.strip().lower()
        if not name or name in out:
            continue
        if name not in SUPPORTED_CLASSIFIERS:
            raise ValueError(
                f"Unknown classifier: {name}. Supported: {', '.join(SUPPORTED_CLASSIFIERS)}"
            )
        out.append(name)
    if not out:
        raise ValueError("classifier must not be empty")
    return out


def _write_record(
    classifier: str,
    handles: List[IO[str]],
    record_id: str,
    sequence: str,
    taxid: int,
    names: List[str],
) -> None:
    if classifier == "blast":
        write_fasta_record(handles[0], record_id, sequence)
        handles[1].write(f"{record_id}\t{taxid}\n")
    elif classifier == "kraken2":
        write_fasta_record(handles[0], f"{record_id}|kraken:taxid|{taxid}", sequence)
    elif classifier == "sintax":
        write_fasta_record(handles[0], f"{record_id};tax={sintax_lineage(names)}", sequence)
    elif classifier == "rdp":
        write_fasta_record(handles[0], record_id, sequence)
        handles[1].write(record_id + "\t" + "\t".join(names) + "\n")
    elif classifier == "idtaxa":
        write_fasta_record(handles[0], record_id, sequence)
        handles[1].write(f"{record_id}\tRoot;" + ";".join(names) + "\n")
    elif classifier == "protax":
        write_fasta_record(handles[0], record_id, sequence)
        handles[1].write(record_id + "\t" + ";".join(names) + "\n")


def format_references(
    input_fasta: Union[str, Path],
    out_dir: Union[str, Path],
    taxdump_dir: Union[str, Path],
    classifiers: Iterable[str] = ("blast", "kraken2", "sintax"),
    require_ranks: Iterable[str] = DEFAULT_REQUIRE_RANKS,
    taxid_map: Optional[Union[str, Path]] = None,
    report_path: Optional[Union[str, Path]] = None,
) -> FormatStats:
    """
    Write classifier reference files for the records of a FASTA.

    Parameters
    ----------
    input_fasta : Union[str, Path]
        Sequences to format; record ids are looked up in the taxid map
    out_dir : Union[str, Path]
        Output directory
    taxdump_dir : Union[str, Path]
        Directory with nodes.dmp and names.dmp (and taxid.map by default)
    classifiers : Iterable[str], optional
        Classifier names (default: blast, kraken2, sintax)
    require_ranks : Iterable[str], optional
        Ranks a record's lineage must name to be written
    taxid_map : Union[str, Path], optional
        taxid.map override (default: taxdump_dir/taxid.map)
    report_path : Union[str, Path], optional
        Also write the counts as a JSON report here

    Returns
    -------
    FormatStats
        total / written / missing_taxid / missing_ranks counts

    Raises
    ------
    ValueError
        If a classifier name is unknown or the list is empty
    """
    selected = _normalize_classifiers(classifiers)
    require_ranks = list(require_ranks)
    taxdump_dir = Path(taxdump_dir)
    out_dir = create_output_directory(out_dir)

    pid_to_taxid = load_taxid_map(taxid_map or taxdump_dir / "taxid.map")
    dump = load_taxdump(taxdump_dir)
    lineage_cache: Dict[int, List[str]] = {}
    stats = FormatStats()

    with ExitStack() as stack:
        writers: Dict[str, List[IO[str]]] = {}
        for classifier in selected:
            handles = []
            for filename in CLASSIFIER_FILES[classifier]:
                tmp_path = stack.enter_context(atomic_output(out_dir / filename))
                handles.append(
                    stack.enter_context(open(tmp_path, "w", encoding="utf-8", newline=""))
                )
            writers[classifier] = handles

        for record_id, sequence in iter_fasta(input_fasta):
            stats.total += 1
            taxid = pid_to_taxid.get(record_id) if record_id else None
            if taxid is None:
                stats.missing_taxid += 1
                continue

            names = lineage_cache.get(taxid)
            if names is None:
                names = lineage_cache[taxid] = build_lineage(dump.lineage(taxid), require_ranks)
            if not names:
                stats.missing_ranks += 1
                continue

            for classifier, handles in writers.items():
                _write_record(classifier, handles, record_id, sequence, taxid, names)
            stats.written += 1

    logger.info(
        f"format: total={stats.total} kept={stats.written} "
        f"missing-taxid={stats.missing_taxid} missing-ranks={stats.missing_ranks}"
    )
    if report_path:
        write_format_report(report_path, stats.to_dict())
    return stats
