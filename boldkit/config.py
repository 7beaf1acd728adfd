"""
Configuration Management for BOLDKit

This module provides the configuration system for the extract (curation) and
split (partitioning, pruning, formatting) stages, built from frozen
dataclasses. The configuration system supports:

1. Default parameter values matching the BIOSCAN-5M split policy
2. Loading configuration from YAML/JSON files
3. Environment variable overrides (BOLDKIT_ prefix)
4. Validation on construction

Configuration Structure:
- CurationConfig: Label curation protocol and report/audit outputs
- SplitConfig: Seen/unseen class thresholds, quota fractions, hash threshold
- FormatConfig: Classifier reference formats and required ranks
- PipelineConfig: Master configuration combining all components

Key Design Principles:
- Immutable configuration objects (frozen dataclasses)
- Every policy threshold is a named, overridable field
- Easy override mechanism for custom runs

Example Usage:
    >>> from boldkit.config import get_default_config, load_config_from_file
    >>>
    >>> config = get_default_config()
    >>> print(config.split.test_cap)
    25
    >>>
    >>> config = load_config_from_file("boldkit.yaml")
    >>>
    >>> custom_config = config.update(
    ...     curation__protocol="bioscan-5m",
    ...     split__unseen_hash_threshold=64
    ... )
"""

from dataclasses import dataclass, field, asdict, replace
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple, Union
import os
import json
import logging

import yaml

logger = logging.getLogger(__name__)

# Curation protocols
PROTOCOL_NONE = "none"
PROTOCOL_BIOSCAN_5M = "bioscan-5m"
SUPPORTED_PROTOCOLS = (PROTOCOL_NONE, PROTOCOL_BIOSCAN_5M)

# Classifier reference formats
SUPPORTED_CLASSIFIERS = ("blast", "kraken2", "sintax", "rdp", "idtaxa", "protax")

DEFAULT_CLASSIFIERS = ("blast", "kraken2", "sintax")
DEFAULT_REQUIRE_RANKS = (
    "kingdom", "phylum", "class", "order", "family", "genus", "species"
)


def _as_tuple(value: Any) -> Tuple[str, ...]:
    """Accept a comma-separated string or any sequence of names."""
    if value is None:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(str(item).strip() for item in value if str(item).strip())


# ============================================================================
# Curation Configuration
# ============================================================================

@dataclass(frozen=True)
class CurationConfig:
    """
    Configuration for species-label curation during extraction.

    Attributes
    ----------
    protocol : str
        Curation protocol (default: "none").
        Options: "none" (labels passed through), "bioscan-5m" (BIN-aware
        repair rules). Case-insensitive; blank means "none".

    report_path : Path, optional
        JSON curation report destination (default: None = no report)

    audit_path : Path, optional
        Row-level audit TSV destination (default: None = no audit).
        Only rows changed by curation are written.

    chunk_size : int
        Number of TSV rows read per chunk (default: 100,000)
    """
    protocol: str = PROTOCOL_NONE
    report_path: Optional[Path] = None
    audit_path: Optional[Path] = None
    chunk_size: int = 100_000

    def __post_init__(self):
        """Normalize and validate configuration parameters."""
        protocol = (self.protocol or "").strip().lower() or PROTOCOL_NONE
        object.__setattr__(self, 'protocol', protocol)
        if protocol not in SUPPORTED_PROTOCOLS:
            raise ValueError(
                f"unknown protocol {protocol!r} "
                f"(supported: {','.join(SUPPORTED_PROTOCOLS)})"
            )

        for name in ('report_path', 'audit_path'):
            value = getattr(self, name)
            if isinstance(value, str):
                value = value.strip()
                value = Path(value) if value else None
                object.__setattr__(self, name, value)
            if value is not None and str(value) == ".":
                raise ValueError(f"invalid {name.replace('_', ' ')} {str(value)!r}")

        if self.chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")

    @property
    def enabled(self) -> bool:
        """True when a curation protocol other than "none" is selected."""
        return self.protocol != PROTOCOL_NONE


# ============================================================================
# Split Configuration
# ============================================================================

@dataclass(frozen=True)
class SplitConfig:
    """
    Configuration for barcode partitioning and taxonomy pruning.

    Attributes
    ----------
    seen_min_records : int
        Minimum records for a species to be a "seen" class (default: 8)

    seen_min_barcodes : int
        Minimum distinct barcodes for a "seen" class (default: 2)

    test_cap : int
        Upper bound of the test quota for any class (default: 25)

    test_fraction_numerator, test_fraction_denominator : int
        Test quota fraction, ceil(total * num / den) (default: 2/10)

    seen_val_divisor : int
        Seen validation quota, ceil((total - test) / divisor) (default: 20)

    unseen_val_divisor : int
        Unseen validation quota, ceil((total - test) / divisor) (default: 5)

    unseen_hash_threshold : int
        Non-seen classes whose label hash byte is below this value become
        "unseen"; the rest are held out (default: 128, roughly half).
        Range 0-256.

    max_ancestor_depth : int
        Maximum parent hops when collecting ancestors for pruning
        (default: 128)

    Notes
    -----
    The defaults reproduce the BIOSCAN-5M open-world split: classes with
    >= 8 records across >= 2 barcodes are closed-world ("seen"), and about
    half of the remaining classes form the open-world ("unseen") set.
    """
    seen_min_records: int = 8
    seen_min_barcodes: int = 2
    test_cap: int = 25
    test_fraction_numerator: int = 2
    test_fraction_denominator: int = 10
    seen_val_divisor: int = 20
    unseen_val_divisor: int = 5
    unseen_hash_threshold: int = 128
    max_ancestor_depth: int = 128

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.seen_min_records < 1:
            raise ValueError("seen_min_records must be at least 1")
        if self.seen_min_barcodes < 1:
            raise ValueError("seen_min_barcodes must be at least 1")
        if self.test_cap < 0:
            raise ValueError("test_cap must be non-negative")
        if self.test_fraction_numerator < 0 or self.test_fraction_denominator < 1:
            raise ValueError("test fraction must be non-negative with a positive denominator")
        if self.seen_val_divisor < 1 or self.unseen_val_divisor < 1:
            raise ValueError("validation divisors must be at least 1")
        if not 0 <= self.unseen_hash_threshold <= 256:
            raise ValueError("unseen_hash_threshold must be between 0 and 256")
        if self.max_ancestor_depth < 1:
            raise ValueError("max_ancestor_depth must be at least 1")


# ============================================================================
# Format Configuration
# ============================================================================

@dataclass(frozen=True)
class FormatConfig:
    """
    Configuration for classifier reference formatting.

    Attributes
    ----------
    classifiers : tuple of str
        Reference formats to write (default: blast, kraken2, sintax).
        Options: blast, kraken2, sintax, rdp, idtaxa, protax

    require_ranks : tuple of str
        Ranks that must be present in a record's lineage for it to be kept
        (default: kingdom, phylum, class, order, family, genus, species).
        Empty disables the check.
    """
    classifiers: Tuple[str, ...] = DEFAULT_CLASSIFIERS
    require_ranks: Tuple[str, ...] = DEFAULT_REQUIRE_RANKS

    def __post_init__(self):
        """Normalize lists and validate classifier names."""
        classifiers = tuple(c.lower() for c in _as_tuple(self.classifiers))
        object.__setattr__(self, 'classifiers', classifiers)
        object.__setattr__(self, 'require_ranks', _as_tuple(self.require_ranks))

        if not classifiers:
            raise ValueError("classifier must not be empty")
        unknown = [c for c in classifiers if c not in SUPPORTED_CLASSIFIERS]
        if unknown:
            raise ValueError(
                f"Unknown classifier(s): {unknown}. "
                f"Supported: {', '.join(SUPPORTED_CLASSIFIERS)}"
            )


# ============================================================================
# Pipeline Configuration
# ============================================================================

@dataclass(frozen=True)
class PipelineConfig:
    """
    Master configuration for BOLDKit.

    Attributes
    ----------
    curation : CurationConfig
        Extraction curation configuration

    split : SplitConfig
        Partitioning and pruning configuration

    format : FormatConfig
        Classifier formatting configuration

    log_level : str
        Logging level (default: "INFO")

    overwrite_existing : bool
        Overwrite existing extract output (default: False)
    """
    curation: CurationConfig = field(default_factory=CurationConfig)
    split: SplitConfig = field(default_factory=SplitConfig)
    format: FormatConfig = field(default_factory=FormatConfig)
    log_level: str = "INFO"
    overwrite_existing: bool = False

    def __post_init__(self):
        """Validate configuration."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")

    def update(self, **kwargs) -> 'PipelineConfig':
        """
        Create a new configuration with updated values.

        Supports nested updates using double underscore notation:
        config.update(split__test_cap=30)

        Parameters
        ----------
        **kwargs
            Configuration parameters to update. Use double underscore
            for nested parameters (e.g., curation__protocol)

        Returns
        -------
        PipelineConfig
            New configuration object with updates

        Examples
        --------
        >>> config = get_default_config()
        >>> new_config = config.update(
        ...     log_level="DEBUG",
        ...     curation__protocol="bioscan-5m",
        ...     format__classifiers="blast,rdp"
        ... )
        """
        top_level = {}
        nested = {}

        for key, value in kwargs.items():
            if '__' in key:
                component, param = key.split('__', 1)
                nested.setdefault(component, {})[param] = value
            else:
                top_level[key] = value

        for component, updates in nested.items():
            current = getattr(self, component)
            top_level[component] = replace(current, **updates)

        return replace(self, **top_level)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a nested dictionary."""
        return asdict(self)

    def to_yaml(self, output_path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        config_dict = _to_serializable(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {path}")

    def to_json(self, output_path: Union[str, Path]) -> None:
        """Save configuration to JSON file."""
        config_dict = _to_serializable(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(config_dict, f, indent=2)

        logger.info(f"Configuration saved to {path}")


# ============================================================================
# Helper Functions
# ============================================================================

def get_default_config() -> PipelineConfig:
    """Get default pipeline configuration."""
    return PipelineConfig()


def load_config_from_file(config_path: Union[str, Path]) -> PipelineConfig:
    """
    Load configuration from YAML or JSON file.

    Automatically detects file format based on extension. Sections that are
    omitted keep their defaults.

    Parameters
    ----------
    config_path : Union[str, Path]
        Path to configuration file (.yaml, .yml, or .json)

    Returns
    -------
    PipelineConfig
        Loaded configuration

    Raises
    ------
    FileNotFoundError
        If configuration file doesn't exist
    ValueError
        If file format is not supported or a value is invalid
    """
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()

    if suffix in ['.yaml', '.yml']:
        with open(path, 'r') as f:
            config_dict = yaml.safe_load(f)
    elif suffix == '.json':
        with open(path, 'r') as f:
            config_dict = json.load(f)
    else:
        raise ValueError(f"Unsupported config file format: {suffix}")

    logger.info(f"Loaded configuration from {path}")
    return _dict_to_config(config_dict or {})


def _dict_to_config(config_dict: Dict[str, Any]) -> PipelineConfig:
    """Convert a (possibly partial) dictionary to a PipelineConfig."""
    config_dict = dict(config_dict)
    nested_configs = {}

    if 'curation' in config_dict:
        nested_configs['curation'] = CurationConfig(**(config_dict.pop('curation') or {}))

    if 'split' in config_dict:
        nested_configs['split'] = SplitConfig(**(config_dict.pop('split') or {}))

    if 'format' in config_dict:
        nested_configs['format'] = FormatConfig(**(config_dict.pop('format') or {}))

    return PipelineConfig(**nested_configs, **config_dict)


def _to_serializable(obj: Any) -> Any:
    """Recursively convert Paths to strings and tuples to lists."""
    if isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, dict):
        return {k: _to_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_serializable(item) for item in obj]
    else:
        return obj


def load_config_from_env() -> Dict[str, Any]:
    """
    Load configuration overrides from environment variables.

    Environment variables should be prefixed with BOLDKIT_
    and use double underscores for nesting:

    BOLDKIT_SPLIT__TEST_CAP=30
    BOLDKIT_CURATION__PROTOCOL=bioscan-5m
    BOLDKIT_LOG_LEVEL=DEBUG

    Returns
    -------
    Dict[str, Any]
        Configuration overrides, suitable for PipelineConfig.update()

    Examples
    --------
    >>> import os
    >>> os.environ['BOLDKIT_SPLIT__TEST_CAP'] = '30'
    >>> config = get_default_config().update(**load_config_from_env())
    """
    prefix = "BOLDKIT_"
    overrides = {}

    for key, value in os.environ.items():
        if key.startswith(prefix):
            config_key = key[len(prefix):].lower()
            overrides[config_key] = _parse_env_value(value)

    if overrides:
        logger.debug(f"Loaded {len(overrides)} configuration overrides from environment")

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    if value.lower() in ['true', 'yes']:
        return True
    if value.lower() in ['false', 'no']:
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def validate_config(config: PipelineConfig) -> List[str]:
    """
    Validate configuration and return list of warnings.

    Parameters
    ----------
    config : PipelineConfig
        Configuration to validate

    Returns
    -------
    List[str]
        List of warning messages (empty if no issues)
    """
    warnings = []
    split = config.split

    if split.unseen_hash_threshold in (0, 256):
        kind = "held out" if split.unseen_hash_threshold == 0 else "unseen"
        warnings.append(
            f"unseen_hash_threshold={split.unseen_hash_threshold}: every non-seen "
            f"class will be {kind}."
        )

    if split.test_fraction_numerator > split.test_fraction_denominator:
        warnings.append(
            "Test fraction is above 1; every seen class will be routed to test."
        )

    if config.curation.audit_path and not config.curation.enabled:
        warnings.append(
            "An audit path is set but curation protocol is 'none'; no audit will be written."
        )

    if config.curation.report_path and not config.curation.enabled:
        warnings.append(
            "A report path is set but curation protocol is 'none'; no report will be written."
        )

    return warnings
