"""
batchflow - batch job orchestration for multi-stage document pipelines.
"""

__version__ = "1.0.0"
