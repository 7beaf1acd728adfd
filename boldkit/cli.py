#!/usr/bin/env python3
"""
BOLDKit Command-Line Interface

Subcommands:
  extract  Build the taxonomy table from a BOLD TSV, optionally curating
           species labels (protocols: none, bioscan-5m)
  split    Partition a barcode FASTA into seen/unseen/held-out buckets,
           prune the taxdump to the training split and format references
  format   Format classifier references from any FASTA and taxdump

Exit status: 0 on success, 1 on error, 130 when interrupted.
"""

import argparse
import sys
import logging
from pathlib import Path
from typing import List, Optional

from . import __version__, config, utils
from .curation import extract_taxonomy
from .formatting import format_references
from .partition import split_dataset, split_markers

logger = logging.getLogger(__name__)


def _load_config(config_path: Optional[Path]) -> config.PipelineConfig:
    """Defaults, then the config file, then BOLDKIT_* environment overrides."""
    cfg = config.get_default_config()
    if config_path is not None:
        cfg = config.load_config_from_file(config_path)
    env_overrides = config.load_config_from_env()
    if env_overrides:
        cfg = cfg.update(**env_overrides)
    return cfg


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--config',
        type=Path,
        default=None,
        help='YAML or JSON configuration file'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Logging verbosity (default: INFO)'
    )
    parser.add_argument(
        '--log-file',
        type=Path,
        default=None,
        help='Also write log messages to this file'
    )


def _run(command: str, func, *args, **kwargs) -> int:
    """Call a stage function and translate failures into exit codes."""
    try:
        func(*args, **kwargs)
        return 0
    except KeyboardInterrupt:
        print(f"\n\n{command} interrupted by user", file=sys.stderr)
        return 130
    except Exception as e:
        logger.error(f"{command} failed: {e}")
        logger.debug("Traceback:", exc_info=True)
        return 1


# ============================================================================
# extract
# ============================================================================

def main_extract(argv=None) -> int:
    """
    CLI entry point for the 'extract' subcommand.

    Example:
        boldkit extract \
            --input BOLD_Public.tsv.gz \
            --output taxonkit_input.tsv \
            --curate-protocol bioscan-5m \
            --curate-report reports/curation.json \
            --curate-audit reports/curation_audit.tsv
    """
    parser = argparse.ArgumentParser(
        prog="boldkit extract",
        description="Build the taxonomy table from a BOLD TSV export",
    )
    parser.add_argument(
        '--input',
        required=True,
        type=Path,
        help='BOLD TSV input (plain or .gz)'
    )
    parser.add_argument(
        '--output',
        type=Path,
        default=Path('taxonkit_input.tsv'),
        help='Output taxonomy TSV (default: taxonkit_input.tsv)'
    )
    parser.add_argument(
        '--curate-protocol',
        default=None,
        help='Curation protocol: none or bioscan-5m (default: none)'
    )
    parser.add_argument(
        '--curate-report',
        type=Path,
        default=None,
        help='Optional curation JSON report path'
    )
    parser.add_argument(
        '--curate-audit',
        type=Path,
        default=None,
        help='Optional curation audit TSV path (changed rows only)'
    )
    parser.add_argument(
        '--force',
        action='store_true',
        help='Overwrite an existing output file'
    )
    _add_common_arguments(parser)
    args = parser.parse_args(argv)

    try:
        cfg = _load_config(args.config)
        updates = {}
        if args.curate_protocol is not None:
            updates['curation__protocol'] = args.curate_protocol
        if args.curate_report is not None:
            updates['curation__report_path'] = args.curate_report
        if args.curate_audit is not None:
            updates['curation__audit_path'] = args.curate_audit
        if args.force:
            updates['overwrite_existing'] = True
        if args.log_level is not None:
            updates['log_level'] = args.log_level
        cfg = cfg.update(**updates)
    except (OSError, TypeError, ValueError) as e:
        print(f"Error: invalid extraction curation config: {e}", file=sys.stderr)
        return 1

    utils.setup_logging(
        log_level=cfg.log_level,
        log_file=str(args.log_file) if args.log_file else None,
    )
    for warning in config.validate_config(cfg):
        logger.warning(warning)

    return _run(
        "extract",
        extract_taxonomy,
        args.input,
        args.output,
        cfg.curation,
        overwrite=cfg.overwrite_existing,
    )


# ============================================================================
# split
# ============================================================================

def _add_format_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--classifier',
        default=None,
        help='Comma-separated classifiers for reference formatting '
             '(blast,kraken2,sintax,rdp,idtaxa,protax; default: blast,kraken2,sintax)'
    )
    parser.add_argument(
        '--require-ranks',
        default=None,
        help='Comma-separated ranks required to keep a sequence '
             '(default: kingdom,phylum,class,order,family,genus,species; empty disables)'
    )


def _format_updates(args) -> dict:
    updates = {}
    if args.classifier is not None:
        updates['format__classifiers'] = tuple(utils.split_list(args.classifier))
    if args.require_ranks is not None:
        updates['format__require_ranks'] = tuple(utils.split_list(args.require_ranks))
    if args.log_level is not None:
        updates['log_level'] = args.log_level
    return updates


def main_split(argv=None) -> int:
    """
    CLI entry point for the 'split' subcommand.

    Example:
        boldkit split \
            --input marker_fastas/COI-5P.fasta.gz \
            --taxonkit-input taxonkit_input.tsv \
            --taxdump-dir bold-taxdump \
            --outdir libraries/COI-5P

    Without --input, every marker in --markers is split from
    <marker-dir>/<marker>.fasta(.gz) into <outdir>/<marker>:
        boldkit split --markers COI-5P,ITS --marker-dir marker_fastas --outdir libraries
    """
    parser = argparse.ArgumentParser(
        prog="boldkit split",
        description="Partition a barcode FASTA into open-world evaluation splits",
    )
    parser.add_argument(
        '--input',
        type=Path,
        default=None,
        help='Input FASTA (plain or .gz); record ids are processids'
    )
    parser.add_argument(
        '--markers',
        default='COI-5P',
        help='Comma-separated markers to split when --input is not given '
             '(default: COI-5P)'
    )
    parser.add_argument(
        '--marker-dir',
        type=Path,
        default=Path('marker_fastas'),
        help='Directory with <marker>.fasta(.gz) files (default: marker_fastas)'
    )
    parser.add_argument(
        '--taxonkit-input',
        type=Path,
        default=Path('taxonkit_input.tsv'),
        help='Taxonomy TSV with processid/species columns (default: taxonkit_input.tsv)'
    )
    parser.add_argument(
        '--taxdump-dir',
        type=Path,
        default=Path('bold-taxdump'),
        help='Taxdump directory with nodes.dmp/names.dmp/taxid.map (default: bold-taxdump)'
    )
    parser.add_argument(
        '--taxid-map',
        type=Path,
        default=None,
        help='Optional taxid.map override'
    )
    parser.add_argument(
        '--outdir',
        type=Path,
        default=Path('libraries'),
        help='Output directory (default: libraries)'
    )
    _add_format_arguments(parser)
    _add_common_arguments(parser)
    args = parser.parse_args(argv)

    try:
        cfg = _load_config(args.config).update(**_format_updates(args))
    except (OSError, TypeError, ValueError) as e:
        print(f"Error: invalid split config: {e}", file=sys.stderr)
        return 1

    utils.setup_logging(
        log_level=cfg.log_level,
        log_file=str(args.log_file) if args.log_file else None,
    )
    for warning in config.validate_config(cfg):
        logger.warning(warning)

    if args.input is None:
        # one split per marker, each in outdir/<marker tag>
        return _run(
            "split",
            split_markers,
            utils.split_list(args.markers),
            args.marker_dir,
            args.taxonkit_input,
            args.taxdump_dir,
            args.outdir,
            taxid_map=args.taxid_map,
            config=cfg,
        )
    return _run(
        "split",
        split_dataset,
        args.input,
        args.taxonkit_input,
        args.taxdump_dir,
        args.outdir,
        taxid_map=args.taxid_map,
        config=cfg,
    )


# ============================================================================
# format
# ============================================================================

def main_format(argv=None) -> int:
    """CLI entry point for the 'format' subcommand."""
    parser = argparse.ArgumentParser(
        prog="boldkit format",
        description="Format classifier reference files from a FASTA and taxdump",
    )
    parser.add_argument(
        '--input',
        required=True,
        type=Path,
        help='Input FASTA (plain or .gz)'
    )
    parser.add_argument(
        '--outdir',
        type=Path,
        default=Path('formatted'),
        help='Output directory (default: formatted)'
    )
    parser.add_argument(
        '--taxdump-dir',
        type=Path,
        default=Path('bold-taxdump'),
        help='Taxdump directory with nodes.dmp/names.dmp/taxid.map (default: bold-taxdump)'
    )
    parser.add_argument(
        '--taxid-map',
        type=Path,
        default=None,
        help='Optional taxid.map override'
    )
    parser.add_argument(
        '--report',
        type=Path,
        default=None,
        help='Optional JSON report of written and skipped records'
    )
    _add_format_arguments(parser)
    _add_common_arguments(parser)
    args = parser.parse_args(argv)

    try:
        cfg = _load_config(args.config).update(**_format_updates(args))
    except (OSError, TypeError, ValueError) as e:
        print(f"Error: invalid format config: {e}", file=sys.stderr)
        return 1

    utils.setup_logging(
        log_level=cfg.log_level,
        log_file=str(args.log_file) if args.log_file else None,
    )
    return _run(
        "format",
        format_references,
        args.input,
        args.outdir,
        args.taxdump_dir,
        classifiers=cfg.format.classifiers,
        require_ranks=cfg.format.require_ranks,
        taxid_map=args.taxid_map,
        report_path=args.report,
    )


SUBCOMMANDS = {
    "extract": main_extract,
    "split": main_split,
    "format": main_format,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    argv = list(sys.argv[1:] if argv is None else argv)

    if argv and argv[0] in SUBCOMMANDS:
        return SUBCOMMANDS[argv[0]](argv[1:])

    parser = argparse.ArgumentParser(
        prog="boldkit",
        description='BOLDKit: BIN-aware label curation and leakage-free splits for BOLD barcodes',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Extract the taxonomy table with BIN-aware curation
  boldkit extract --input BOLD_Public.tsv --output taxonkit_input.tsv \\
      --curate-protocol bioscan-5m --curate-report curation.json

  # Split a marker FASTA and build classifier references
  boldkit split --input COI-5P.fasta --taxonkit-input taxonkit_input.tsv \\
      --taxdump-dir bold-taxdump --outdir libraries/COI-5P

Run 'boldkit <command> --help' for the options of each command.
        """
    )
    parser.add_argument('command', choices=sorted(SUBCOMMANDS), help='Subcommand to run')
    parser.add_argument(
        '--version',
        action='version',
        version=f'BOLDKit {__version__}'
    )
    parser.parse_args(argv)
    return 1


if __name__ == '__main__':
    sys.exit(main())
