"""Indexing engine - reorg detection, backward scanning and retention."""

from token_transfer_indexer.indexer.reorg import ReorgCheckResult, ReorgDetector
from token_transfer_indexer.indexer.retention import RetentionManager
from token_transfer_indexer.indexer.scanner import BackwardScanner, ScanResult, next_window
from token_transfer_indexer.indexer.service import (
    CycleResult,
    IndexerService,
    IndexerState,
    IndexerStats,
)

__all__ = [
    "BackwardScanner",
    "CycleResult",
    "IndexerService",
    "IndexerState",
    "IndexerStats",
    "ReorgCheckResult",
    "ReorgDetector",
    "RetentionManager",
    "ScanResult",
    "next_window",
]
