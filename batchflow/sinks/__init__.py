"""
Collaborator sinks: result persistence and input cleanup.
"""

from .result_writer import ResultSink, InMemoryResultSink, JsonFileResultSink
from .cleanup import InputCleanup, NoopCleanup, TempFileCleanup

__all__ = [
    'ResultSink',
    'InMemoryResultSink',
    'JsonFileResultSink',
    'InputCleanup',
    'NoopCleanup',
    'TempFileCleanup',
]
