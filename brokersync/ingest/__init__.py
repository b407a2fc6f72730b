"""
Ingest module.

Contains raw record normalization and duplicate detection.
"""
