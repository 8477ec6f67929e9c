"""Source adapter interface and the shared ingestion envelope."""

from __future__ import annotations

from abc import ABC
from datetime import datetime
from typing import Annotated, Any, ClassVar, Protocol

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import AdapterError
from ..models import NormalizedEvent, parse_datetime


def _check_iso_datetime(value: str) -> str:
    parsed = None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        pass
    if parsed is None or parsed.tzinfo is None:
        raise ValueError("must be an ISO-8601 datetime with timezone")
    return value


def _check_time_of_day(value: str) -> str:
    parts = value.split(":")
    if len(parts) != 2 or not all(len(p) == 2 and p.isdigit() for p in parts):
        raise ValueError("expected HH:MM")
    return value


IsoDatetime = Annotated[str, AfterValidator(_check_iso_datetime)]
TimeOfDay = Annotated[str, AfterValidator(_check_time_of_day)]


class PayloadSchema(BaseModel):
    """Per-event_type payload contract. Unknown fields are tolerated."""

    model_config = ConfigDict(extra="allow")


class TimeSlot(PayloadSchema):
    start: TimeOfDay
    end: TimeOfDay


class Address(PayloadSchema):
    street: str
    city: str
    zip: str
    country: str
    floor: str | None = None
    access_code: str | None = None


class RawIngestBody(BaseModel):
    source_ref: str
    event_type: str
    project_ref: str
    occurred_at: IsoDatetime
    order_ref: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("source_ref", "event_type", "project_ref")
    @classmethod
    def non_empty(cls, value: str, info: Any) -> str:
        if not value.strip():
            raise ValueError(f"{info.field_name} must not be empty")
        return value


def validation_details(exc: ValidationError, prefix: str = "") -> list[dict[str, Any]]:
    details = []
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()))
        field = f"{prefix}{loc}" if loc else prefix.rstrip(".") or None
        details.append({"field": field, "message": error.get("msg", "invalid")})
    return details


class SourceAdapter(Protocol):
    source: str

    def adapt(self, raw: dict[str, Any]) -> NormalizedEvent:
        ...


class BaseSourceAdapter(ABC):
    """Validates envelope, vocabulary and payload, then normalizes.

    Subclasses declare ``source``, ``allowed_event_types`` (``None`` accepts
    anything) and ``payload_schemas``. Adapters hold no state, so the same raw
    input always yields the same NormalizedEvent or the same AdapterError.
    """

    source: ClassVar[str]
    label: ClassVar[str]
    allowed_event_types: ClassVar[frozenset[str] | None] = None
    payload_schemas: ClassVar[dict[str, type[PayloadSchema]]] = {}

    def adapt(self, raw: dict[str, Any]) -> NormalizedEvent:
        if not isinstance(raw, dict):
            raise AdapterError(f"{self.label} payload must be a JSON object")

        try:
            body = RawIngestBody.model_validate(raw)
        except ValidationError as exc:
            raise AdapterError(f"Invalid {self.label} payload", validation_details(exc)) from exc

        if self.allowed_event_types is not None and body.event_type not in self.allowed_event_types:
            raise AdapterError(
                f"event_type {body.event_type!r} is not allowed for source {self.source}",
                [{"field": "event_type", "message": "not in source vocabulary"}],
            )

        schema = self.payload_schemas.get(body.event_type)
        if schema is not None:
            try:
                schema.model_validate(body.payload)
            except ValidationError as exc:
                raise AdapterError(
                    f"Invalid payload for {body.event_type}",
                    validation_details(exc, prefix="payload."),
                ) from exc

        return NormalizedEvent(
            source=self.source,
            source_ref=body.source_ref,
            event_type=body.event_type,
            project_ref=body.project_ref,
            order_ref=body.order_ref,
            occurred_at=parse_datetime(body.occurred_at),
            payload=body.payload,
        )
