"""Explicit source → adapter map, assembled once at startup."""

from __future__ import annotations

import logging
from typing import Any

from ..errors import UnregisteredSourceError
from ..models import NormalizedEvent
from .base import SourceAdapter
from .crm import CrmAdapter
from .ecommerce import EcommerceAdapter
from .erp import ErpAdapter
from .manual import ManualAdapter
from .oms import OmsAdapter
from .tms import TmsAdapter
from .wfm import WfmAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    def __init__(self) -> None:
        self._adapters: dict[str, SourceAdapter] = {}

    def register(self, adapter: SourceAdapter) -> None:
        if adapter.source in self._adapters:
            raise ValueError(f"Duplicate adapter for source={adapter.source!r}")
        self._adapters[adapter.source] = adapter
        logger.debug("Registered adapter for source=%s", adapter.source)

    def get_adapter(self, source: str) -> SourceAdapter:
        adapter = self._adapters.get(source)
        if adapter is None:
            raise UnregisteredSourceError(source)
        return adapter

    def adapt(self, source: str, raw: dict[str, Any]) -> NormalizedEvent:
        return self.get_adapter(source).adapt(raw)

    def sources(self) -> list[str]:
        return sorted(self._adapters)


def build_default_registry() -> AdapterRegistry:
    registry = AdapterRegistry()
    for adapter in (
        ErpAdapter(),
        OmsAdapter(),
        TmsAdapter(),
        CrmAdapter(),
        EcommerceAdapter(),
        WfmAdapter(),
        ManualAdapter(),
    ):
        registry.register(adapter)
    return registry
