"""
Client for the task backend HTTP API.
"""

from .client import TaskApiClient

__all__ = ["TaskApiClient"]
