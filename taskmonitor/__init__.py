"""
Task monitor: reconciles raw task records from the processing backend into
render-ready progress snapshots and keeps them fresh through a polling query
cache.
"""

__version__ = "0.1.0"
