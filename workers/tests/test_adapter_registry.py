import pytest

from plo_workers.adapters import AdapterRegistry, build_default_registry
from plo_workers.adapters.manual import ManualAdapter
from plo_workers.errors import UnregisteredSourceError


def test_default_registry_covers_every_source():
    assert build_default_registry().sources() == [
        "crm",
        "ecommerce",
        "erp",
        "manual",
        "oms",
        "tms_lastmile",
        "wfm",
    ]


def test_unknown_source_raises_unregistered():
    with pytest.raises(UnregisteredSourceError) as exc_info:
        build_default_registry().get_adapter("carrier_pigeon")
    assert exc_info.value.kind == "unregistered_source"
    assert exc_info.value.source == "carrier_pigeon"


def test_duplicate_registration_rejected():
    registry = AdapterRegistry()
    registry.register(ManualAdapter())
    with pytest.raises(ValueError, match="Duplicate adapter"):
        registry.register(ManualAdapter())


def test_adapt_dispatches_to_the_source_adapter():
    event = build_default_registry().adapt(
        "tms_lastmile",
        {
            "source_ref": "TMS-1",
            "event_type": "lastmile.in_transit",
            "project_ref": "PRJ-1",
            "occurred_at": "2026-03-02T10:00:00Z",
            "payload": {"lastmile_id": "LM-1"},
        },
    )
    assert event.source == "tms_lastmile"
