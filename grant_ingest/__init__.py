"""
Grant opportunity ingestion pipeline.

Fetches funding opportunities from upstream sources, detects duplicates
before any expensive processing, writes critical-field changes straight to
storage and records every stage so interrupted runs can resume.
"""

from .circuit_breaker import CircuitBreakerManager
from .config import PipelineSettings, configure_logging
from .coordinator import ChunkJob, PipelineCoordinator, PipelineResult, split_into_chunks
from .detector import DetectionResult, detect_duplicates
from .errors import PipelineError, classify_error

__all__ = [
    'ChunkJob',
    'CircuitBreakerManager',
    'DetectionResult',
    'PipelineCoordinator',
    'PipelineError',
    'PipelineResult',
    'PipelineSettings',
    'classify_error',
    'configure_logging',
    'detect_duplicates',
    'split_into_chunks',
]
