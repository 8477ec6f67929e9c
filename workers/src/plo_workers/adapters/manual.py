"""Manual adapter used by operators; any event_type, free payload."""

from .base import BaseSourceAdapter


class ManualAdapter(BaseSourceAdapter):
    source = "manual"
    label = "manual"
    allowed_event_types = None
