"""Source loading: tabular files into the Work Catalog."""

from batchledger.sources.loader import SourceLoader, read_source_bytes

__all__ = ["SourceLoader", "read_source_bytes"]
