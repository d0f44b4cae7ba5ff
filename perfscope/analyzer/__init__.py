"""
Performance analytics core

- clients/ - hosted data store client
- constants/ - named threshold tables
- utils/ - route normalization and numeric helpers
- models.py - Pydantic models of every derived artifact
- orchestrator.py - report workflow coordinator (import it from perfscope.analyzer.orchestrator,
  it depends on perfscope.services which in turn import this package)
- config.py - Configuration management
"""

from .clients import DataStoreClient
from .config import AnalyzerConfig, load_config

__all__ = [
    'DataStoreClient',
    'AnalyzerConfig',
    'load_config',
]

__version__ = '1.0.0'
