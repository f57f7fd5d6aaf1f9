"""
DevLab indexer package.

Block ingestion, contract event decoding and live chain metrics for the
DevLab dashboard.
"""

from .config import IndexerConfig
from .decoder import EventDecoder
from .indexer import DevLabIndexer
from .pipeline import IngestionPipeline, StartupError
from .registry import ContractRegistry

__all__ = [
    "ContractRegistry",
    "DevLabIndexer",
    "EventDecoder",
    "IndexerConfig",
    "IngestionPipeline",
    "StartupError",
]
__version__ = "0.1.0"
