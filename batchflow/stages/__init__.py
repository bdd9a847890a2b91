"""
Stage processors: the contract every pipeline stage implements, plus
retry and remote-polling adapters.
"""

from .base import StageProcessor, StageRequest, StageResult, CallableStage
from .retrying import RetryingStage
from .polling import PollingStage
from .remote import RemoteExtractionStage, ExtractionResult

__all__ = [
    'StageProcessor',
    'StageRequest',
    'StageResult',
    'CallableStage',
    'RetryingStage',
    'PollingStage',
    'RemoteExtractionStage',
    'ExtractionResult',
]
