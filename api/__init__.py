"""
HTTP adapter for the batch service.
"""
