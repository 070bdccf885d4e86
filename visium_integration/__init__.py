"""
Visium protocol integration utilities

Load spatial count matrices from several imaging protocols, remove the
protocol batch effect with Harmony, cluster, and export Loupe Browser CSVs
keyed by reconciled barcodes.
"""

from .errors import (
    PipelineError,
    ConfigError,
    MissingInputError,
    SchemaError,
    DownloadError,
    ReconciliationError,
    UnknownSampleError,
    MalformedBarcodeError,
    DuplicateBarcodeError,
)

from .config import (
    PipelineConfig,
    SampleSpec,
    load_config,
)

from .loading import (
    load_sample,
    load_samples,
    merge_samples,
)

from .integration import (
    run_harmony,
    correct_and_cluster,
    embedding_records,
)

from .reconcile import (
    reconcile_barcode,
    reconcile_records,
)

from .export import (
    validate_export_tables,
    write_export_tables,
)

from .pipeline import (
    run_pipeline,
    export_from_h5ad,
)

__all__ = [
    # Errors
    "PipelineError",
    "ConfigError",
    "MissingInputError",
    "SchemaError",
    "DownloadError",
    "ReconciliationError",
    "UnknownSampleError",
    "MalformedBarcodeError",
    "DuplicateBarcodeError",
    # Configuration
    "PipelineConfig",
    "SampleSpec",
    "load_config",
    # Loading
    "load_sample",
    "load_samples",
    "merge_samples",
    # Integration
    "run_harmony",
    "correct_and_cluster",
    "embedding_records",
    # Reconciliation and export
    "reconcile_barcode",
    "reconcile_records",
    "validate_export_tables",
    "write_export_tables",
    # Workflow
    "run_pipeline",
    "export_from_h5ad",
]
