# libs/py_common/__init__.py
# Shared building blocks for the ledger services: settings, structured logging,
# the Celery app factory and feature flags.

from .config import Settings, settings

__version__ = "0.2.0"

__all__ = ["Settings", "settings", "__version__"]
