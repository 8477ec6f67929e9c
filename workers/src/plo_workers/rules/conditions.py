"""Declarative predicate algebra for anomaly rules.

Conditions are plain data (stored as JSON on the rule row) and are parsed
into a discriminated union on ``op``. Every node evaluates against an
``EvaluationContext`` and answers ``True`` when the anomaly condition holds.

Field paths are dotted (``order.promised_delivery_date``,
``event.payload.severity``). Inside a ``count`` node, paths starting with
``item.`` address the collection element being tested. Numeric bounds are
inclusive on both ends.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from ..models import parse_datetime

CompareOperator = Literal["eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in"]
Measure = Literal["value", "hours_since", "hours_until"]


class FactResolver(Protocol):
    now: datetime

    def resolve(self, path: str) -> Any:
        ...

    def with_item(self, item: Any) -> "FactResolver":
        ...


def is_missing(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _coerce_pair(left: Any, right: Any) -> tuple[Any, Any]:
    if isinstance(left, datetime) or isinstance(right, datetime):
        return parse_datetime(left), parse_datetime(right)
    if isinstance(left, str) and isinstance(right, str):
        left_dt, right_dt = parse_datetime(left), parse_datetime(right)
        if left_dt is not None and right_dt is not None:
            return left_dt, right_dt
    numeric = (int, float)
    if isinstance(left, numeric) and not isinstance(left, bool) and isinstance(right, str):
        try:
            return left, float(right)
        except ValueError:
            return left, right
    if isinstance(right, numeric) and not isinstance(right, bool) and isinstance(left, str):
        try:
            return float(left), right
        except ValueError:
            return left, right
    return left, right


def _in_bounds(value: float, lower: float | None, upper: float | None) -> bool:
    if lower is not None and value < lower:
        return False
    if upper is not None and value > upper:
        return False
    return True


class _Node(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    def evaluate(self, ctx: FactResolver) -> bool:
        raise NotImplementedError


class Always(_Node):
    op: Literal["always"] = "always"

    def evaluate(self, ctx: FactResolver) -> bool:
        return True


class Compare(_Node):
    op: Literal["compare"] = "compare"
    field: str
    operator: CompareOperator = "eq"
    value: Any = None
    value_from: str | None = None

    def evaluate(self, ctx: FactResolver) -> bool:
        left = ctx.resolve(self.field)
        right = ctx.resolve(self.value_from) if self.value_from else self.value

        if self.operator in ("in", "not_in"):
            if isinstance(right, (list, tuple, set, frozenset)):
                contained = left in right
            else:
                contained = False
            return contained if self.operator == "in" else not contained

        left, right = _coerce_pair(left, right)
        if self.operator == "eq":
            return left == right
        if self.operator == "ne":
            return left != right
        if left is None or right is None:
            return False
        try:
            if self.operator == "gt":
                return left > right
            if self.operator == "gte":
                return left >= right
            if self.operator == "lt":
                return left < right
            return left <= right
        except TypeError:
            return False


class Threshold(_Node):
    """Numeric band test on a value or on the hours elapsed/remaining to a timestamp."""

    op: Literal["threshold"] = "threshold"
    field: str
    measure: Measure = "value"
    min: float | None = None
    max: float | None = None

    @model_validator(mode="after")
    def needs_a_bound(self) -> "Threshold":
        if self.min is None and self.max is None:
            raise ValueError("threshold requires min and/or max")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("threshold min must not exceed max")
        return self

    def measure_value(self, ctx: FactResolver) -> float | None:
        raw = ctx.resolve(self.field)
        if self.measure == "value":
            if isinstance(raw, bool) or raw is None:
                return None
            try:
                return float(raw)
            except (TypeError, ValueError):
                return None

        moment = parse_datetime(raw)
        if moment is None:
            return None
        delta = (ctx.now - moment) if self.measure == "hours_since" else (moment - ctx.now)
        return delta.total_seconds() / 3600

    def evaluate(self, ctx: FactResolver) -> bool:
        value = self.measure_value(ctx)
        if value is None:
            return False
        return _in_bounds(value, self.min, self.max)


class Exists(_Node):
    op: Literal["exists"] = "exists"
    field: str

    def evaluate(self, ctx: FactResolver) -> bool:
        return not is_missing(ctx.resolve(self.field))


class Missing(_Node):
    op: Literal["missing"] = "missing"
    field: str

    def evaluate(self, ctx: FactResolver) -> bool:
        return is_missing(ctx.resolve(self.field))


class AllOf(_Node):
    op: Literal["all"] = "all"
    conditions: list[Condition] = Field(min_length=1)

    def evaluate(self, ctx: FactResolver) -> bool:
        return all(condition.evaluate(ctx) for condition in self.conditions)


class AnyOf(_Node):
    op: Literal["any"] = "any"
    conditions: list[Condition] = Field(min_length=1)

    def evaluate(self, ctx: FactResolver) -> bool:
        return any(condition.evaluate(ctx) for condition in self.conditions)


class Not(_Node):
    op: Literal["not"] = "not"
    condition: Condition

    def evaluate(self, ctx: FactResolver) -> bool:
        return not self.condition.evaluate(ctx)


class Count(_Node):
    """Count collection items matching ``where``; passes when inside [min, max]."""

    op: Literal["count"] = "count"
    collection: str
    where: Condition | None = None
    min: int | None = None
    max: int | None = None

    def matching(self, ctx: FactResolver) -> int:
        items = ctx.resolve(self.collection)
        if not isinstance(items, list):
            return 0
        if self.where is None:
            return len(items)
        return sum(1 for item in items if self.where.evaluate(ctx.with_item(item)))

    def evaluate(self, ctx: FactResolver) -> bool:
        lower = self.min if self.min is not None or self.max is not None else 1
        return _in_bounds(self.matching(ctx), lower, self.max)


Condition = Annotated[
    Union[Always, Compare, Threshold, Exists, Missing, AllOf, AnyOf, Not, Count],
    Field(discriminator="op"),
]

for _model in (AllOf, AnyOf, Not, Count):
    _model.model_rebuild()

_condition_adapter: TypeAdapter[Any] = TypeAdapter(Condition)


def parse_condition(raw: dict[str, Any] | _Node) -> _Node:
    if isinstance(raw, _Node):
        return raw
    return _condition_adapter.validate_python(raw)


# Shorthand constructors used by the default rule catalogue and tests.

def always() -> Always:
    return Always()


def eq(field: str, value: Any) -> Compare:
    return Compare(field=field, operator="eq", value=value)


def ne(field: str, value: Any) -> Compare:
    return Compare(field=field, operator="ne", value=value)


def one_of(field: str, values: list[Any]) -> Compare:
    return Compare(field=field, operator="in", value=list(values))


def none_of(field: str, values: list[Any]) -> Compare:
    return Compare(field=field, operator="not_in", value=list(values))


def after(field: str, other_field: str) -> Compare:
    return Compare(field=field, operator="gt", value_from=other_field)


def hours_until(field: str, *, min: float | None = None, max: float | None = None) -> Threshold:
    return Threshold(field=field, measure="hours_until", min=min, max=max)


def hours_since(field: str, *, min: float | None = None, max: float | None = None) -> Threshold:
    return Threshold(field=field, measure="hours_since", min=min, max=max)


def exists(field: str) -> Exists:
    return Exists(field=field)


def missing(field: str) -> Missing:
    return Missing(field=field)


def all_of(*conditions: _Node) -> AllOf:
    return AllOf(conditions=list(conditions))


def any_of(*conditions: _Node) -> AnyOf:
    return AnyOf(conditions=list(conditions))


def not_(condition: _Node) -> Not:
    return Not(condition=condition)


def count(collection: str, where: _Node | None = None, *, min: int | None = None, max: int | None = None) -> Count:
    return Count(collection=collection, where=where, min=min, max=max)


def member_of(field: str, collection_field: str) -> Compare:
    return Compare(field=field, operator="in", value_from=collection_field)
