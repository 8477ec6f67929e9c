from .base import BaseSourceAdapter, RawIngestBody, SourceAdapter
from .registry import AdapterRegistry, build_default_registry

__all__ = [
    "AdapterRegistry",
    "BaseSourceAdapter",
    "RawIngestBody",
    "SourceAdapter",
    "build_default_registry",
]
