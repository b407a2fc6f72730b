"""
Broker operations sync and consolidation engine.
"""
__version__ = "0.1.0"
