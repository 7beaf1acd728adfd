"""
BOLDKit: BIN-aware Label Curation and Leakage-free Splits for BOLD Barcodes

BOLDKit prepares BOLD (Barcode of Life Data System) exports for training and
evaluating DNA barcode classifiers. It repairs noisy species labels using
Barcode Index Number (BIN) consensus and partitions barcode collections into
reproducible open-world / closed-world splits in which identical sequences
never cross bucket boundaries.

Core functionality includes:
- Species label classification (empty, open nomenclature, resolved binomial)
- BIN consensus species resolution
- Rule-based label curation with JSON report and audit trail
- Deterministic hash-based partitioning into eight split buckets
- Taxonomy pruning to the training split and classifier reference formatting
"""

__version__ = "0.1.0"

# Import main modules for easy access
from . import labels
from . import bin_consensus
from . import curation
from . import partition
from . import taxdump
from . import formatting
from . import utils

__all__ = [
    "labels",
    "bin_consensus",
    "curation",
    "partition",
    "taxdump",
    "formatting",
    "utils",
]
