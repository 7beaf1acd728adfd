"""
BIN-aware Species Label Curation

This module extracts the taxonomy table used to build a taxdump from a BOLD
TSV export, optionally repairing species labels on the way.

Curation protocols:
- none: labels are trimmed and passed through unchanged
- bioscan-5m: an ordered set of repair rules driven by BIN consensus

bioscan-5m rule order (each record, every rule fires at most once):
1. placeholder_normalize - blank out "None", "NA", "unknown", ... in every
   rank field and the BIN; collapse whitespace
2. subfamily_fill_from_family_tribe - family and tribe set but no subfamily
   -> "<Family> subfam. incertae sedis"
3. species_epithet_only_fix - genus set and species is a bare epithet
   -> "<Genus> <epithet>"
4. species resolution:
   - resolved binomial: take its genus when the record has none
     (genus_from_resolved_species); keep it when the genera agree; otherwise
     adopt the BIN's canonical species when its genus matches
     (bin_canonical_species_adopt) or demote to "<Genus> sp. <BIN>"
     (genus_species_mismatch_demote)
   - open/empty label: infer the genus from the label head when missing
     (genus_inferred_from_species); adopt the BIN's canonical species when
     the genus is empty or matches; otherwise "<Genus> sp. <BIN>"
     (open_or_empty_to_bin_provisional)
5. provisional_dropped_missing_bin - a provisional label was needed but the
   record has no BIN (or no genus), so the species stays empty

The bioscan-5m curator needs a priming pass over the whole input to build
BIN evidence before any record is curated.

Example Usage:
    >>> from boldkit.config import CurationConfig
    >>> from boldkit.curation import extract_taxonomy
    >>> config = CurationConfig(protocol="bioscan-5m", report_path="curation.json")
    >>> extract_taxonomy("BOLD_Public.tsv", "taxonkit_input.tsv", config)
"""

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional, Set, Tuple, Union
import logging

from .bin_consensus import BinSpeciesResolver
from .config import CurationConfig, PROTOCOL_BIOSCAN_5M, PROTOCOL_NONE
from .labels import (
    SpeciesKind,
    SpeciesLabelInfo,
    infer_genus,
    is_epithet_token,
    normalize_label,
    parse_species,
    provisional_species,
)
from .reports import (
    AuditTrail,
    CurationStats,
    RULE_BIN_CANONICAL_ADOPT,
    RULE_EPITHET_ONLY_FIX,
    RULE_GENUS_FROM_RESOLVED,
    RULE_GENUS_INFERRED,
    RULE_GENUS_SPECIES_MISMATCH_DEMOTE,
    RULE_OPEN_TO_BIN_PROVISIONAL,
    RULE_PLACEHOLDER_NORMALIZE,
    RULE_PROVISIONAL_DROPPED_NO_BIN,
    RULE_SUBFAMILY_FILL,
    write_curation_report,
)
from .utils import (
    DEFAULT_CHUNK_SIZE,
    atomic_output,
    iter_tsv_chunks,
    read_tsv_header,
    validate_required_columns,
)

logger = logging.getLogger(__name__)

# Rank columns of the BOLD export, top-down
RANK_COLUMNS = (
    "kingdom", "phylum", "class", "order", "family",
    "subfamily", "tribe", "genus", "species",
)

REQUIRED_COLUMNS = ["processid", "bin_uri", *RANK_COLUMNS]

# Columns of the taxonomy table written by extract_taxonomy
OUTPUT_COLUMNS = [*RANK_COLUMNS, "processid"]


@dataclass
class TaxonRecord:
    """
    One barcode record's identifiers and rank labels.

    "class" is a keyword, so that rank is stored as `class_`.
    """
    processid: str = ""
    bin_uri: str = ""
    kingdom: str = ""
    phylum: str = ""
    class_: str = ""
    order: str = ""
    family: str = ""
    subfamily: str = ""
    tribe: str = ""
    genus: str = ""
    species: str = ""

    @classmethod
    def from_values(cls, processid, bin_uri, *ranks) -> 'TaxonRecord':
        """Build a record from processid, BIN and the nine rank values."""
        return cls(processid, bin_uri, *ranks)

    def rank_values(self) -> Tuple[str, ...]:
        return (
            self.kingdom, self.phylum, self.class_, self.order, self.family,
            self.subfamily, self.tribe, self.genus, self.species,
        )

    def compared_fields(self) -> Tuple[str, ...]:
        """Fields that decide whether curation changed a record."""
        return self.rank_values() + (self.bin_uri,)

    def copy(self) -> 'TaxonRecord':
        return replace(self)


_LABEL_FIELDS = [f.name for f in fields(TaxonRecord) if f.name != "processid"]


# ============================================================================
# Curation rule steps
# ============================================================================

def normalize_placeholders(record: TaxonRecord) -> bool:
    """Normalize every rank field and the BIN; True if anything changed."""
    changed = False
    for name in _LABEL_FIELDS:
        value = getattr(record, name)
        normalized = normalize_label(value)
        if normalized != value:
            setattr(record, name, normalized)
            changed = True
    return changed


def fill_subfamily(record: TaxonRecord) -> bool:
    """Fill a subfamily hole between a known family and tribe."""
    if record.family and record.tribe and not record.subfamily:
        record.subfamily = f"{record.family} subfam. incertae sedis"
        return True
    return False


def fix_epithet_only(record: TaxonRecord) -> bool:
    """Prefix a bare epithet in the species field with the record's genus."""
    if record.genus and is_epithet_token(record.species):
        record.species = f"{record.genus} {record.species.lower()}"
        return True
    return False


def resolve_species(
    record: TaxonRecord,
    bin_canonical: Optional[SpeciesLabelInfo],
) -> Set[str]:
    """
    Settle the record's genus and species; returns the rules that fired.

    Parameters
    ----------
    record : TaxonRecord
        Record after placeholder, subfamily and epithet steps (modified in place)
    bin_canonical : SpeciesLabelInfo, optional
        Accepted canonical species of the record's BIN, if any
    """
    fired: Set[str] = set()
    info = parse_species(record.species)
    genus = record.genus
    species = record.species

    if info.kind is SpeciesKind.RESOLVED:
        if not genus:
            genus, species = info.genus, info.canonical
            fired.add(RULE_GENUS_FROM_RESOLVED)
        elif genus.lower() == info.genus.lower():
            genus, species = info.genus, info.canonical
        elif bin_canonical is not None and genus.lower() == bin_canonical.genus.lower():
            genus, species = bin_canonical.genus, bin_canonical.canonical
            fired.add(RULE_BIN_CANONICAL_ADOPT)
        else:
            species = provisional_species(genus, record.bin_uri)
            fired.add(RULE_GENUS_SPECIES_MISMATCH_DEMOTE)
    else:
        if not genus:
            genus = infer_genus(info.normalized)
            if genus:
                fired.add(RULE_GENUS_INFERRED)

        if bin_canonical is not None and (
            not genus or genus.lower() == bin_canonical.genus.lower()
        ):
            genus, species = bin_canonical.genus, bin_canonical.canonical
            fired.add(RULE_BIN_CANONICAL_ADOPT)
        else:
            species = provisional_species(genus, record.bin_uri)
            fired.add(RULE_OPEN_TO_BIN_PROVISIONAL)

    record.genus = genus
    record.species = species

    provisional = fired & {RULE_OPEN_TO_BIN_PROVISIONAL, RULE_GENUS_SPECIES_MISMATCH_DEMOTE}
    if provisional and not record.species:
        fired.add(RULE_PROVISIONAL_DROPPED_NO_BIN)
    return fired


# ============================================================================
# Curators
# ============================================================================

class NoopCurator:
    """Curator for the "none" protocol: records pass through unchanged."""

    protocol = PROTOCOL_NONE

    def curate(self, record: TaxonRecord) -> Set[str]:
        return set()

    def close(self, success: bool = True) -> None:
        pass


class BioscanCurator:
    """
    BIN-aware curator implementing the bioscan-5m ruleset.

    Lifecycle: construct, prime() over the whole input, curate() every
    record, then close() to write the report and finish the audit trail.

    Parameters
    ----------
    config : CurationConfig
        Protocol, report and audit settings
    input_path : Union[str, Path], optional
        Recorded in the report; when given, prime() is run immediately
    """

    protocol = PROTOCOL_BIOSCAN_5M

    def __init__(
        self,
        config: CurationConfig,
        input_path: Optional[Union[str, Path]] = None,
    ):
        self.config = config
        self.input_path = input_path
        self.resolver = BinSpeciesResolver()
        self.stats = CurationStats()
        self.bin_summary = self.resolver.finalize()
        self._audit: Optional[AuditTrail] = None

        if config.audit_path is not None:
            self._audit = AuditTrail(config.audit_path).open()

        if input_path is not None:
            try:
                self.prime(input_path)
            except BaseException as e:
                self._discard_audit(e)
                raise

    def prime(self, input_path: Union[str, Path]) -> None:
        """
        Collect BIN evidence from every row of a BOLD TSV.

        Raises
        ------
        InputFormatError
            If the file is empty or lacks bin_uri, genus or species columns
        """
        columns = ["bin_uri", "genus", "species"]
        rows = 0
        for chunk in iter_tsv_chunks(input_path, columns, self.config.chunk_size):
            for bin_uri, genus, species in chunk[columns].itertuples(index=False, name=None):
                self.resolver.observe(bin_uri, genus, species)
            rows += len(chunk)

        self.bin_summary = self.resolver.finalize()
        logger.debug(f"Primed BIN evidence from {rows} rows of {input_path}")

    def prime_records(self, records) -> None:
        """Collect BIN evidence from in-memory records."""
        for record in records:
            self.resolver.observe(record.bin_uri, record.genus, record.species)
        self.bin_summary = self.resolver.finalize()

    def curate(self, record: TaxonRecord) -> Set[str]:
        """
        Apply the bioscan-5m rules to one record in place.

        Returns
        -------
        Set[str]
            Identifiers of the rules that fired
        """
        self.stats.rows_total += 1
        original = record.copy()
        fired: Set[str] = set()

        if normalize_placeholders(record):
            fired.add(RULE_PLACEHOLDER_NORMALIZE)
        if fill_subfamily(record):
            fired.add(RULE_SUBFAMILY_FILL)
        if fix_epithet_only(record):
            fired.add(RULE_EPITHET_ONLY_FIX)

        fired |= resolve_species(record, self.resolver.canonical_info(record.bin_uri))

        changed = original.compared_fields() != record.compared_fields()
        if changed:
            self.stats.rows_changed += 1
            if self._audit is not None:
                self._audit.write_row(original, record, fired)
        self.stats.add_rules(fired)
        return fired

    def close(self, success: bool = True) -> None:
        """
        Finish the run: log the BIN summary, write the report, close the audit.

        With success=False the partial audit trail is removed and no report
        is written.
        """
        if not success:
            self._discard_audit(RuntimeError("curation aborted"))
            return

        summary = self.bin_summary
        logger.info(
            f"extract ({self.protocol}): bins-observed={summary.observed} "
            f"bins-canonical={summary.canonical} bins-conflicted={summary.conflicted}"
        )
        try:
            if self.config.report_path is not None:
                write_curation_report(
                    self.config.report_path,
                    protocol=self.protocol,
                    input_path=self.input_path or "",
                    bin_summary=summary.to_dict(),
                    stats=self.stats,
                    audit_path=self.config.audit_path,
                )
        finally:
            if self._audit is not None:
                audit, self._audit = self._audit, None
                audit.close()

    def _discard_audit(self, error: BaseException) -> None:
        if self._audit is not None:
            audit, self._audit = self._audit, None
            audit.close((type(error), error, error.__traceback__))


def make_curator(
    config: CurationConfig,
    input_path: Optional[Union[str, Path]] = None,
):
    """
    Build the curator for the configured protocol.

    For bioscan-5m with an input path, the returned curator is already primed.
    """
    if config.protocol == PROTOCOL_NONE:
        return NoopCurator()
    if config.protocol == PROTOCOL_BIOSCAN_5M:
        return BioscanCurator(config, input_path)
    raise ValueError(f"unsupported extraction curation protocol {config.protocol!r}")


# ============================================================================
# Extraction
# ============================================================================

def fill_missing_species(record: TaxonRecord, allow_processid: bool) -> None:
    """
    Give a record with a genus but no species a "<Genus> sp. <suffix>" label.

    The suffix is the BIN; when the BIN is empty the processid is used only
    if `allow_processid` is set. Without a suffix the species stays empty.
    """
    if not record.genus or record.species:
        return
    suffix = normalize_label(record.bin_uri)
    if not suffix and allow_processid:
        suffix = record.processid
    if suffix:
        record.species = f"{record.genus} sp. {suffix}"


def _clean(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def extract_taxonomy(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    config: Optional[CurationConfig] = None,
    overwrite: bool = False,
) -> Optional[int]:
    """
    Build the taxonomy table from a BOLD TSV, curating labels on the way.

    Parameters
    ----------
    input_path : Union[str, Path]
        BOLD TSV export (plain or .gz) with processid, bin_uri and rank columns
    output_path : Union[str, Path]
        Output TSV: kingdom..species then processid, with a header row
    config : CurationConfig, optional
        Curation settings (default: protocol "none")
    overwrite : bool, optional
        Replace an existing output file (default: False)

    Returns
    -------
    int or None
        Number of rows written, or None when the output already existed

    Raises
    ------
    FileNotFoundError
        If the input file doesn't exist
    InputFormatError
        If the input is empty, lacks a required column or cannot be parsed

    Notes
    -----
    The output (and the audit trail, if any) is written under a temporary
    name and only moved into place after every row has been processed.
    """
    config = config or CurationConfig()
    input_path = Path(input_path)
    output_path = Path(output_path)

    if not overwrite and output_path.exists():
        logger.warning(f"Output exists, skipping: {output_path}")
        return None

    validate_required_columns(read_tsv_header(input_path), REQUIRED_COLUMNS, source=input_path)

    logger.info(f"extract ({config.protocol}): {input_path} -> {output_path}")
    curator = make_curator(config, input_path)
    chunk_size = config.chunk_size or DEFAULT_CHUNK_SIZE
    allow_processid = not config.enabled

    rows = 0
    success = False
    try:
        with atomic_output(output_path) as tmp_path:
            with open(tmp_path, "w", encoding="utf-8", newline="") as out:
                out.write("\t".join(OUTPUT_COLUMNS) + "\n")
                for chunk in iter_tsv_chunks(input_path, REQUIRED_COLUMNS, chunk_size):
                    for values in chunk[REQUIRED_COLUMNS].itertuples(index=False, name=None):
                        processid, bin_uri, *ranks = values
                        record = TaxonRecord.from_values(
                            _clean(processid), _clean(bin_uri), *(_clean(v) for v in ranks)
                        )
                        curator.curate(record)
                        fill_missing_species(record, allow_processid)
                        out.write("\t".join((*record.rank_values(), record.processid)) + "\n")
                    rows += len(chunk)
        success = True
    finally:
        curator.close(success=success)

    logger.info(f"extract: wrote {rows} rows -> {output_path}")
    return rows
