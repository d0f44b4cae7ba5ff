"""
Clients for external services
"""

from .api import DataStoreClient

__all__ = ['DataStoreClient']
