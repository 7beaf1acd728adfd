"""
NCBI-style Taxdump Reading, Pruning and Writing

The taxdump built from the extract table (nodes.dmp, names.dmp and a
processid -> taxid map) covers every record. For a classifier reference only
the taxa reachable from the training split are needed; this module computes
that subtree and writes it back in the same layout.

File layouts:
- nodes.dmp: "taxid\\t|\\tparent\\t|\\trank\\t|" (extra columns ignored)
- names.dmp: "taxid\\t|\\tname\\t|\\tunique name\\t|\\tname class\\t|";
  only "scientific name" rows are used
- taxid.map: "processid\\ttaxid"

Pruning walks each training record's ancestor chain, keeping every taxon
visited. A walk stops at a taxon that is already kept, a taxon missing from
nodes.dmp, a root (parent <= 0 or parent == self) or after max_depth hops.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Set, Tuple, Union
import logging

from .utils import InputFormatError, atomic_output, create_output_directory, open_text

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 128


class PruneError(ValueError):
    """The training split cannot be mapped onto the taxonomy."""
    pass


@dataclass(frozen=True)
class TaxNode:
    """One taxon of the tree."""
    taxid: int
    parent: int
    rank: str
    name: str = ""

    @property
    def is_root(self) -> bool:
        return self.parent <= 0 or self.parent == self.taxid


class TaxDump:
    """
    In-memory taxonomy keyed by taxid.

    Parameters
    ----------
    nodes : Dict[int, TaxNode]
        All taxa of the dump
    """

    def __init__(self, nodes: Dict[int, TaxNode]):
        self.nodes = nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, taxid) -> bool:
        return taxid in self.nodes

    def get(self, taxid: int) -> Optional[TaxNode]:
        return self.nodes.get(taxid)

    def lineage(self, taxid: int, max_depth: int = DEFAULT_MAX_DEPTH) -> Dict[str, str]:
        """
        Map rank -> scientific name along the ancestor chain of a taxon.

        The nearest taxon wins when a rank repeats. Unnamed taxa and the
        "no rank" placeholder rank are skipped.

        Examples
        --------
        >>> dump.lineage(5)
        {'species': 'Aus bus', 'genus': 'Aus', 'family': 'Aidae', ...}
        """
        out: Dict[str, str] = {}
        cur = taxid
        for _ in range(max_depth):
            if cur <= 0:
                break
            node = self.nodes.get(cur)
            if node is None:
                break
            if node.name and node.rank and node.rank != "no rank":
                out.setdefault(node.rank, node.name)
            if node.is_root:
                break
            cur = node.parent
        return out


# ============================================================================
# Readers
# ============================================================================

def _dmp_fields(line: str):
    return [part.strip() for part in line.rstrip("\n").split("|")]


def _parse_int(value: str, path: Path, line_no: int) -> int:
    try:
        return int(value)
    except ValueError:
        raise InputFormatError(f"{path} line {line_no}: invalid taxid {value!r}")


def load_taxdump(taxdump_dir: Union[str, Path]) -> TaxDump:
    """
    Read nodes.dmp and names.dmp from a taxdump directory.

    Raises
    ------
    FileNotFoundError
        If either file is missing
    InputFormatError
        If a taxid or parent id is not an integer
    """
    taxdump_dir = Path(taxdump_dir)
    nodes_path = taxdump_dir / "nodes.dmp"
    names_path = taxdump_dir / "names.dmp"
    for path in (nodes_path, names_path):
        if not path.exists():
            raise FileNotFoundError(f"taxdump file not found: {path}")

    parents: Dict[int, Tuple[int, str]] = {}
    with open_text(nodes_path) as fh:
        for line_no, line in enumerate(fh, start=1):
            parts = _dmp_fields(line)
            if len(parts) < 3 or not parts[0]:
                continue
            taxid = _parse_int(parts[0], nodes_path, line_no)
            parent = _parse_int(parts[1], nodes_path, line_no)
            parents[taxid] = (parent, parts[2])

    names: Dict[int, str] = {}
    with open_text(names_path) as fh:
        for line_no, line in enumerate(fh, start=1):
            parts = _dmp_fields(line)
            if len(parts) < 4 or not parts[0]:
                continue
            if parts[3] != "scientific name":
                continue
            taxid = _parse_int(parts[0], names_path, line_no)
            names.setdefault(taxid, parts[1])

    nodes = {
        taxid: TaxNode(taxid=taxid, parent=parent, rank=rank, name=names.get(taxid, ""))
        for taxid, (parent, rank) in parents.items()
    }
    logger.debug(f"Loaded {len(nodes)} taxa ({len(names)} named) from {taxdump_dir}")
    return TaxDump(nodes)


def load_taxid_map(map_path: Union[str, Path]) -> Dict[str, int]:
    """
    Read a "processid<TAB>taxid" map.

    Raises
    ------
    FileNotFoundError
        If the file doesn't exist
    InputFormatError
        If a line has fewer than two fields or a non-integer taxid
    """
    path = Path(map_path)
    if not path.exists():
        raise FileNotFoundError(f"taxid map not found: {path}")

    mapping: Dict[str, int] = {}
    with open_text(path) as fh:
        for line_no, line in enumerate(fh, start=1):
            line = line.rstrip("\r\n")
            if not line.strip():
                continue
            parts = line.split("\t")
            if len(parts) < 2:
                raise InputFormatError(f"{path} line {line_no}: expected processid and taxid")
            mapping[parts[0].strip()] = _parse_int(parts[1].strip(), path, line_no)
    return mapping


# ============================================================================
# Pruning
# ============================================================================

def prune_taxonomy(
    train_ids: Iterable[str],
    pid_to_taxid: Dict[str, int],
    dump: TaxDump,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Tuple[Set[int], Dict[str, int]]:
    """
    Collect the taxa needed to place every training record.

    Parameters
    ----------
    train_ids : Iterable[str]
        Ids of the records in the training split
    pid_to_taxid : Dict[str, int]
        Full processid -> taxid map
    dump : TaxDump
        Full taxonomy
    max_depth : int, optional
        Maximum ancestor hops per record (default: 128)

    Returns
    -------
    keep : Set[int]
        Taxids to keep (leaves and all ancestors reached)
    train_taxids : Dict[str, int]
        processid -> taxid restricted to the training records

    Raises
    ------
    PruneError
        If there are no training records or one of them has no taxid
    """
    train_ids = list(train_ids)
    if not train_ids:
        raise PruneError("no seen_train sequences found; cannot prune taxdump")

    keep: Set[int] = set()
    train_taxids: Dict[str, int] = {}
    for pid in train_ids:
        taxid = pid_to_taxid.get(pid)
        if taxid is None:
            raise PruneError(f"taxid not found for seen_train processid {pid}")
        train_taxids[pid] = taxid

        cur = taxid
        depth = 0
        while depth < max_depth and cur > 0:
            if cur in keep:
                break
            keep.add(cur)
            node = dump.get(cur)
            if node is None or node.is_root:
                break
            cur = node.parent
            depth += 1

    return keep, train_taxids


def write_pruned_taxdump(
    out_dir: Union[str, Path],
    dump: TaxDump,
    keep: Set[int],
    train_taxids: Dict[str, int],
) -> Path:
    """
    Write nodes.dmp, names.dmp and taxid.map for the kept taxa.

    Taxa are written in ascending taxid order, map rows in processid order.
    Kept ids that are missing from the dump are skipped, as are unnamed
    taxa in names.dmp.

    Returns
    -------
    Path
        The output directory
    """
    out_dir = create_output_directory(out_dir)
    ids = sorted(keep)

    with atomic_output(out_dir / "nodes.dmp") as tmp_path:
        with open(tmp_path, "w", encoding="utf-8", newline="") as f:
            for taxid in ids:
                node = dump.get(taxid)
                if node is None:
                    continue
                f.write(f"{taxid}\t|\t{node.parent}\t|\t{node.rank}\t|\n")

    with atomic_output(out_dir / "names.dmp") as tmp_path:
        with open(tmp_path, "w", encoding="utf-8", newline="") as f:
            for taxid in ids:
                node = dump.get(taxid)
                if node is None or not node.name:
                    continue
                f.write(f"{taxid}\t|\t{node.name}\t|\t\t|\tscientific name\t|\n")

    with atomic_output(out_dir / "taxid.map") as tmp_path:
        with open(tmp_path, "w", encoding="utf-8", newline="") as f:
            for pid in sorted(train_taxids):
                f.write(f"{pid}\t{train_taxids[pid]}\n")

    logger.debug(f"Wrote pruned taxdump ({len(ids)} taxa) -> {out_dir}")
    return out_dir
