"""
Configuration for the protocol integration workflow.

The YAML file lists the samples in the order that fixes their export
ordinal, followed by optional sections for each pipeline step:

    samples:
      - sample_id: IF
        input_path: data/IF/filtered_feature_bc_matrix
        url: https://...
      - sample_id: BF
        input_path: data/BF/filtered_feature_bc_matrix
    barcode_suffix_strip_length: 2
    embedding_dims: 2
    preprocessing: {n_top_genes: 2000, n_pcs: 30}
    integration: {method: harmonypy}
    clustering: {n_neighbors: 15, resolution: 0.5}
    output: {dir: results/}
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

from .errors import ConfigError

SAMPLE_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_.]*$")
INTEGRATION_METHODS = ("harmonypy", "rpy2")


def load_config(config_path: str) -> dict:
    """Load configuration from YAML file."""
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _int_at_least(value, name: str, minimum: int = 1) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigError(f"{name} must be an integer >= {minimum}, got {value!r}")
    return value


@dataclass(frozen=True)
class SampleSpec:
    """One configured sample: its label, matrix location and optional source URL."""

    sample_id: str
    input_path: Path
    url: Optional[str] = None

    @classmethod
    def from_dict(cls, entry: dict) -> "SampleSpec":
        if not isinstance(entry, dict):
            raise ConfigError(f"Sample entries must be mappings, got {entry!r}")
        sample_id = entry.get("sample_id")
        if not isinstance(sample_id, str) or not SAMPLE_ID_PATTERN.match(sample_id):
            raise ConfigError(
                f"Invalid sample_id {sample_id!r}: must start with a letter and "
                "contain only letters, digits, '_' or '.'"
            )
        if "input_path" not in entry:
            raise ConfigError(f"Sample '{sample_id}' has no input_path")
        return cls(
            sample_id=sample_id,
            input_path=Path(entry["input_path"]),
            url=entry.get("url"),
        )


@dataclass
class PreprocessingConfig:
    min_genes: int = 0
    min_cells: int = 0
    target_sum: float = 1e4
    n_top_genes: int = 2000
    n_pcs: int = 30
    max_scale_value: float = 10


@dataclass
class IntegrationConfig:
    method: str = "harmonypy"
    theta: Optional[float] = None
    max_iter: int = 10


@dataclass
class ClusteringConfig:
    n_neighbors: int = 15
    resolution: float = 0.5
    cluster_key: str = "clusters"


@dataclass
class OutputConfig:
    dir: Path = Path("results")
    embedding_file: str = "umap_projection.csv"
    cluster_file: str = "clusters.csv"
    coord_prefix: str = "UMAP"
    save_h5ad: bool = True
    save_figures: bool = True

    @property
    def embedding_path(self) -> Path:
        return self.dir / self.embedding_file

    @property
    def cluster_path(self) -> Path:
        return self.dir / self.cluster_file


@dataclass
class DownloadConfig:
    cache_dir: Path = Path("data/downloads")
    retries: int = 3


@dataclass
class PipelineConfig:
    """
    Validated pipeline configuration.

    The order of ``samples`` is significant: the 1-based position of a sample
    is the numeric suffix its barcodes receive on export.
    """

    samples: List[SampleSpec]
    barcode_suffix_strip_length: int = 2
    embedding_dims: int = 2
    batch_key: str = "sample"
    download: DownloadConfig = field(default_factory=DownloadConfig)
    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    @property
    def sample_ids(self) -> List[str]:
        return [s.sample_id for s in self.samples]

    @classmethod
    def from_dict(cls, config: dict) -> "PipelineConfig":
        """
        Build a validated configuration from a parsed YAML mapping.

        Raises
        ------
        ConfigError
            If samples are missing or duplicated, or a numeric option is not
            in range (strip length >= 0, others >= 1), or a section holds unknown keys.
        """
        entries = config.get("samples") or []
        if not entries:
            raise ConfigError("Configuration must list at least one sample")
        samples = [SampleSpec.from_dict(e) for e in entries]

        seen = set()
        for spec in samples:
            if spec.sample_id in seen:
                raise ConfigError(f"Duplicate sample_id '{spec.sample_id}'")
            seen.add(spec.sample_id)

        strip = _int_at_least(
            config.get("barcode_suffix_strip_length", 2), "barcode_suffix_strip_length", minimum=0
        )
        dims = _int_at_least(config.get("embedding_dims", 2), "embedding_dims")

        def section(name, section_cls):
            values = dict(config.get(name) or {})
            try:
                return section_cls(**values)
            except TypeError as e:
                raise ConfigError(f"Invalid '{name}' section: {e}") from e

        download = section("download", DownloadConfig)
        download.cache_dir = Path(download.cache_dir)
        output = section("output", OutputConfig)
        output.dir = Path(output.dir)
        integration = section("integration", IntegrationConfig)
        if integration.method not in INTEGRATION_METHODS:
            raise ConfigError(
                f"integration.method must be one of {INTEGRATION_METHODS}, "
                f"got {integration.method!r}"
            )
        preprocessing = section("preprocessing", PreprocessingConfig)
        _int_at_least(preprocessing.n_pcs, "preprocessing.n_pcs")
        _int_at_least(preprocessing.n_top_genes, "preprocessing.n_top_genes")
        clustering = section("clustering", ClusteringConfig)
        _int_at_least(clustering.n_neighbors, "clustering.n_neighbors")

        return cls(
            samples=samples,
            barcode_suffix_strip_length=strip,
            embedding_dims=dims,
            batch_key=config.get("batch_key", "sample"),
            download=download,
            preprocessing=preprocessing,
            integration=integration,
            clustering=clustering,
            output=output,
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> "PipelineConfig":
        return cls.from_dict(load_config(config_path))
