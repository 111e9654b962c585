"""Workflow layer for drivesorter.

Contains the business logic of sorting documents:
- Filenames: sanitizing, date enrichment, tax finalization
- Subfolders: mapping LLM proposals to canonical categories
- Deduplication: content-hash duplicate detection
- Paths: get-or-create of the {year}/{subfolder} hierarchy
- Sidecars: per-document metadata and the registry journal
- Pipeline: per-document orchestration (SortingPipeline)
"""

from .filenames import (
    sanitize_base,
    enrich_with_date,
    finalize_for_tax_category,
    build_final_filename,
    extract_metadata_from_text,
)
from .subfolders import normalize_subfolder, DEFAULT_STRATEGIES
from .deduplication import DedupEngine, BlobHashIndex, content_hash
from .paths import PathResolver, FolderLocks
from .sidecar import SidecarWriter
from .pipeline import SortingPipeline, PipelineCancelled


__all__ = [
    # Filenames
    'sanitize_base',
    'enrich_with_date',
    'finalize_for_tax_category',
    'build_final_filename',
    'extract_metadata_from_text',

    # Subfolders
    'normalize_subfolder',
    'DEFAULT_STRATEGIES',

    # Deduplication
    'DedupEngine',
    'BlobHashIndex',
    'content_hash',

    # Paths and sidecars
    'PathResolver',
    'FolderLocks',
    'SidecarWriter',

    # Pipeline
    'SortingPipeline',
    'PipelineCancelled',
]
