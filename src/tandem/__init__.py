from __future__ import annotations

from tandem.context.registry import create_default_registry
from tandem.db import new_engine

registry = create_default_registry()

__version__ = '0.1.0'
__all__ = (
    'new_engine',
    'registry'
)
