"""Persistence boundary for the pipeline.

Services talk to a ``Store``; ``PgStore`` implements it over a psycopg
connection pool. Operations that must hold under concurrent workers are
expressed as single statements (``ON CONFLICT`` inserts, conditional
updates) rather than read-then-write sequences.
"""

from __future__ import annotations

import contextvars
import json
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from importlib import resources
from typing import Any, Protocol, TypeVar

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Json
from psycopg_pool import AsyncConnectionPool
from pydantic import BaseModel

from .models import (
    ActivityEntry,
    Consolidation,
    DeadLetter,
    Event,
    Installation,
    LastMileDelivery,
    Notification,
    Order,
    OrderLine,
    Project,
    Shipment,
    Step,
)
from .rules.models import AnomalyRule

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class Store(Protocol):
    def transaction(self) -> AbstractAsyncContextManager[None]: ...

    # projects
    async def insert_project(self, project: Project) -> Project: ...
    async def add_external_ref(self, project_id: str, source: str, ref: str) -> None: ...
    async def resolve_project(self, project_ref: str, source: str) -> Project | None: ...
    async def get_project(self, project_id: str) -> Project | None: ...
    async def list_active_projects(self) -> list[Project]: ...
    async def update_project(self, project_id: str, **fields: Any) -> None: ...

    # orders
    async def find_order(self, project_id: str, order_ref: str) -> Order | None: ...
    async def get_order(self, order_id: str) -> Order | None: ...
    async def list_orders(self, project_id: str) -> list[Order]: ...
    async def save_order(self, order: Order) -> Order: ...
    async def update_order(self, order_id: str, **fields: Any) -> None: ...
    async def list_order_lines(self, order_id: str) -> list[OrderLine]: ...
    async def insert_order_lines(self, lines: list[OrderLine]) -> None: ...
    async def set_line_stock_status(self, order_id: str, stock_status: str, sku: str | None = None) -> int: ...

    # logistics aggregates
    async def get_shipment(self, oms_ref: str) -> Shipment | None: ...
    async def save_shipment(self, shipment: Shipment) -> Shipment: ...
    async def list_shipments(self, project_id: str, order_id: str | None = None) -> list[Shipment]: ...
    async def get_consolidation(self, project_id: str, for_update: bool = False) -> Consolidation | None: ...
    async def save_consolidation(self, consolidation: Consolidation) -> Consolidation: ...
    async def add_arrived_order(self, consolidation_id: str, order_id: str) -> Consolidation: ...
    async def get_last_mile(self, project_id: str) -> LastMileDelivery | None: ...
    async def save_last_mile(self, last_mile: LastMileDelivery) -> LastMileDelivery: ...
    async def get_installation(self, project_id: str) -> Installation | None: ...
    async def save_installation(self, installation: Installation) -> Installation: ...

    # events
    async def insert_event(self, event: Event) -> bool: ...
    async def get_event(self, event_id: str) -> Event | None: ...
    async def find_event(self, source: str, source_ref: str) -> Event | None: ...
    async def update_event(self, event_id: str, **fields: Any) -> None: ...
    async def list_unprocessed_event_ids(self, created_before: datetime) -> list[str]: ...
    async def list_recent_events(self, project_id: str, limit: int = 20) -> list[Event]: ...

    # steps
    async def get_step(self, scope: str, owning_id: str, step_type: str) -> Step | None: ...
    async def get_step_by_id(self, step_id: str) -> Step | None: ...
    async def save_step(self, step: Step) -> Step: ...
    async def list_steps(self, owning_ids: list[str]) -> list[Step]: ...

    # rules and notifications
    async def list_rules(self, frequency: str | None = None) -> list[AnomalyRule]: ...
    async def save_rule(self, rule: AnomalyRule) -> None: ...
    async def insert_notification(self, notification: Notification) -> bool: ...
    async def update_notification(self, notification_id: str, **fields: Any) -> None: ...
    async def list_escalation_candidates(self, cutoff: datetime) -> list[Notification]: ...
    async def mark_escalated(self, notification_id: str, at: datetime) -> bool: ...

    # audit
    async def log_activity(self, entry: ActivityEntry) -> None: ...
    async def record_dead_letter(self, dead_letter: DeadLetter) -> None: ...
    async def list_dead_letters(self, limit: int = 50) -> list[DeadLetter]: ...


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _adapt(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return Json(value.model_dump(mode="json"))
    if isinstance(value, (dict, list)):
        return Json(value, dumps=_dumps)
    return value


def load_schema_sql() -> str:
    return resources.files("plo_workers").joinpath("schema.sql").read_text(encoding="utf-8")


class PgStore:
    def __init__(self, pool: AsyncConnectionPool) -> None:
        self.pool = pool
        self._conn: contextvars.ContextVar[psycopg.AsyncConnection[Any] | None] = (
            contextvars.ContextVar("plo_store_conn", default=None)
        )

    @classmethod
    async def connect(cls, database_url: str, *, min_size: int = 1, max_size: int = 10) -> "PgStore":
        pool = AsyncConnectionPool(database_url, min_size=min_size, max_size=max_size, open=False)
        await pool.open()
        return cls(pool)

    async def close(self) -> None:
        await self.pool.close()

    async def ensure_schema(self) -> None:
        async with self._connection() as conn:
            await conn.execute(load_schema_sql())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Bind one connection and transaction to every call in this task."""
        if self._conn.get() is not None:
            yield
            return
        async with self.pool.connection() as conn:
            async with conn.transaction():
                token = self._conn.set(conn)
                try:
                    yield
                finally:
                    self._conn.reset(token)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[psycopg.AsyncConnection[Any]]:
        bound = self._conn.get()
        if bound is not None:
            yield bound
            return
        async with self.pool.connection() as conn:
            yield conn

    async def _fetchall(self, query: Any, params: Any = None) -> list[dict[str, Any]]:
        async with self._connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params)
                return await cur.fetchall()

    async def _fetchone(self, query: Any, params: Any = None) -> dict[str, Any] | None:
        async with self._connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params)
                return await cur.fetchone()

    async def _execute(self, query: Any, params: Any = None) -> int:
        async with self._connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return cur.rowcount

    async def _one(self, model: type[M], query: Any, params: Any = None) -> M | None:
        row = await self._fetchone(query, params)
        return model.model_validate(row) if row else None

    async def _many(self, model: type[M], query: Any, params: Any = None) -> list[M]:
        return [model.model_validate(row) for row in await self._fetchall(query, params)]

    async def _upsert(
        self,
        table: str,
        record: M,
        conflict: tuple[str, ...] = ("id",),
        merge: dict[str, str] | None = None,
    ) -> M:
        """INSERT ... ON CONFLICT DO UPDATE, returning the stored row.

        ``merge`` overrides the update expression for selected columns
        (default ``EXCLUDED.<col>``).
        """
        data = record.model_dump()
        columns = list(data)
        merge = merge or {}
        updates = [
            sql.SQL("{} = {}").format(
                sql.Identifier(col),
                sql.SQL(merge[col]) if col in merge else sql.SQL("EXCLUDED.{}").format(sql.Identifier(col)),
            )
            for col in columns
            if col != "id" and col not in conflict
        ]
        query = sql.SQL(
            "INSERT INTO {table} ({cols}) VALUES ({vals}) "
            "ON CONFLICT ({conflict}) DO UPDATE SET {updates} RETURNING *"
        ).format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
            vals=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            conflict=sql.SQL(", ").join(map(sql.Identifier, conflict)),
            updates=sql.SQL(", ").join(updates),
        )
        row = await self._fetchone(query, [_adapt(data[col]) for col in columns])
        return type(record).model_validate(row)

    async def _insert_if_absent(self, table: str, record: BaseModel, conflict: tuple[str, ...]) -> bool:
        data = record.model_dump()
        columns = list(data)
        query = sql.SQL(
            "INSERT INTO {table} ({cols}) VALUES ({vals}) ON CONFLICT ({conflict}) DO NOTHING"
        ).format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(map(sql.Identifier, columns)),
            vals=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            conflict=sql.SQL(", ").join(map(sql.Identifier, conflict)),
        )
        return await self._execute(query, [_adapt(data[col]) for col in columns]) == 1

    async def _update(self, table: str, record_id: str, fields: dict[str, Any]) -> int:
        if not fields:
            return 0
        query = sql.SQL("UPDATE {table} SET {assignments} WHERE id = %s").format(
            table=sql.Identifier(table),
            assignments=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(col)) for col in fields
            ),
        )
        return await self._execute(query, [*(_adapt(v) for v in fields.values()), record_id])

    # --- projects -------------------------------------------------------

    async def insert_project(self, project: Project) -> Project:
        return await self._upsert("projects", project)

    async def add_external_ref(self, project_id: str, source: str, ref: str) -> None:
        await self._execute(
            """
            INSERT INTO project_external_refs (project_id, source, ref)
            VALUES (%s, %s, %s)
            ON CONFLICT (source, ref) DO NOTHING
            """,
            (project_id, source, ref),
        )

    async def resolve_project(self, project_ref: str, source: str) -> Project | None:
        # Exact (source, ref) first, then the ref under any source, then a direct id.
        return await self._one(
            Project,
            """
            SELECT p.* FROM projects p
            LEFT JOIN project_external_refs r ON r.project_id = p.id AND r.ref = %(ref)s
            WHERE r.ref IS NOT NULL OR p.id = %(ref)s
            ORDER BY (r.source = %(source)s) DESC NULLS LAST, (r.ref IS NOT NULL) DESC
            LIMIT 1
            """,
            {"ref": project_ref, "source": source},
        )

    async def get_project(self, project_id: str) -> Project | None:
        return await self._one(Project, "SELECT * FROM projects WHERE id = %s", (project_id,))

    async def list_active_projects(self) -> list[Project]:
        return await self._many(
            Project,
            "SELECT * FROM projects WHERE status NOT IN ('closed', 'cancelled') ORDER BY created_at",
        )

    async def update_project(self, project_id: str, **fields: Any) -> None:
        await self._update("projects", project_id, fields)

    # --- orders ---------------------------------------------------------

    async def find_order(self, project_id: str, order_ref: str) -> Order | None:
        return await self._one(
            Order,
            """
            SELECT * FROM orders
            WHERE project_id = %(project_id)s
              AND (erp_order_ref = %(ref)s OR ecommerce_order_ref = %(ref)s OR id = %(ref)s)
            LIMIT 1
            """,
            {"project_id": project_id, "ref": order_ref},
        )

    async def get_order(self, order_id: str) -> Order | None:
        return await self._one(Order, "SELECT * FROM orders WHERE id = %s", (order_id,))

    async def list_orders(self, project_id: str) -> list[Order]:
        return await self._many(
            Order, "SELECT * FROM orders WHERE project_id = %s ORDER BY created_at", (project_id,)
        )

    async def save_order(self, order: Order) -> Order:
        return await self._upsert("orders", order)

    async def update_order(self, order_id: str, **fields: Any) -> None:
        await self._update("orders", order_id, fields)

    async def list_order_lines(self, order_id: str) -> list[OrderLine]:
        return await self._many(OrderLine, "SELECT * FROM order_lines WHERE order_id = %s", (order_id,))

    async def insert_order_lines(self, lines: list[OrderLine]) -> None:
        for line in lines:
            await self._insert_if_absent("order_lines", line, ("id",))

    async def set_line_stock_status(self, order_id: str, stock_status: str, sku: str | None = None) -> int:
        if sku is None:
            return await self._execute(
                "UPDATE order_lines SET stock_status = %s WHERE order_id = %s",
                (stock_status, order_id),
            )
        return await self._execute(
            "UPDATE order_lines SET stock_status = %s WHERE order_id = %s AND sku = %s",
            (stock_status, order_id, sku),
        )

    # --- shipments / consolidation / last mile / installation -----------

    async def get_shipment(self, oms_ref: str) -> Shipment | None:
        return await self._one(Shipment, "SELECT * FROM shipments WHERE oms_ref = %s", (oms_ref,))

    async def save_shipment(self, shipment: Shipment) -> Shipment:
        return await self._upsert("shipments", shipment, conflict=("oms_ref",))

    async def list_shipments(self, project_id: str, order_id: str | None = None) -> list[Shipment]:
        if order_id is None:
            return await self._many(
                Shipment, "SELECT * FROM shipments WHERE project_id = %s ORDER BY leg_number", (project_id,)
            )
        return await self._many(
            Shipment,
            "SELECT * FROM shipments WHERE project_id = %s AND order_id = %s ORDER BY leg_number",
            (project_id, order_id),
        )

    async def get_consolidation(self, project_id: str, for_update: bool = False) -> Consolidation | None:
        query = "SELECT * FROM consolidations WHERE project_id = %s"
        if for_update:
            query += " FOR UPDATE"
        return await self._one(Consolidation, query, (project_id,))

    async def save_consolidation(self, consolidation: Consolidation) -> Consolidation:
        return await self._upsert("consolidations", consolidation, conflict=("project_id",))

    async def add_arrived_order(self, consolidation_id: str, order_id: str) -> Consolidation:
        row = await self._fetchone(
            """
            UPDATE consolidations
            SET orders_arrived = CASE
                    WHEN orders_arrived ? %(order_id)s THEN orders_arrived
                    ELSE orders_arrived || to_jsonb(%(order_id)s::text)
                END,
                updated_at = NOW()
            WHERE id = %(id)s
            RETURNING *
            """,
            {"id": consolidation_id, "order_id": order_id},
        )
        if row is None:
            raise LookupError(f"consolidation {consolidation_id} not found")
        return Consolidation.model_validate(row)

    async def get_last_mile(self, project_id: str) -> LastMileDelivery | None:
        return await self._one(
            LastMileDelivery,
            "SELECT * FROM last_mile_deliveries WHERE project_id = %s ORDER BY updated_at DESC LIMIT 1",
            (project_id,),
        )

    async def save_last_mile(self, last_mile: LastMileDelivery) -> LastMileDelivery:
        return await self._upsert("last_mile_deliveries", last_mile, conflict=("tms_delivery_ref",))

    async def get_installation(self, project_id: str) -> Installation | None:
        return await self._one(Installation, "SELECT * FROM installations WHERE project_id = %s", (project_id,))

    async def save_installation(self, installation: Installation) -> Installation:
        return await self._upsert("installations", installation, conflict=("project_id",))

    # --- events ---------------------------------------------------------

    async def insert_event(self, event: Event) -> bool:
        return await self._insert_if_absent("events", event, ("source", "source_ref"))

    async def get_event(self, event_id: str) -> Event | None:
        return await self._one(Event, "SELECT * FROM events WHERE id = %s", (event_id,))

    async def find_event(self, source: str, source_ref: str) -> Event | None:
        return await self._one(
            Event, "SELECT * FROM events WHERE source = %s AND source_ref = %s", (source, source_ref)
        )

    async def update_event(self, event_id: str, **fields: Any) -> None:
        await self._update("events", event_id, fields)

    async def list_unprocessed_event_ids(self, created_before: datetime) -> list[str]:
        rows = await self._fetchall(
            """
            SELECT id FROM events
            WHERE processed_at IS NULL AND created_at < %s
            ORDER BY created_at
            LIMIT 500
            """,
            (created_before,),
        )
        return [row["id"] for row in rows]

    async def list_recent_events(self, project_id: str, limit: int = 20) -> list[Event]:
        return await self._many(
            Event,
            "SELECT * FROM events WHERE project_id = %s ORDER BY occurred_at DESC LIMIT %s",
            (project_id, limit),
        )

    # --- steps ----------------------------------------------------------

    async def get_step(self, scope: str, owning_id: str, step_type: str) -> Step | None:
        return await self._one(
            Step,
            "SELECT * FROM steps WHERE scope = %s AND owning_id = %s AND step_type = %s",
            (scope, owning_id, step_type),
        )

    async def get_step_by_id(self, step_id: str) -> Step | None:
        return await self._one(Step, "SELECT * FROM steps WHERE id = %s", (step_id,))

    async def save_step(self, step: Step) -> Step:
        # completed_at never moves once set, even under concurrent upserts.
        return await self._upsert(
            "steps",
            step,
            conflict=("scope", "owning_id", "step_type"),
            merge={
                "completed_at": "COALESCE(steps.completed_at, EXCLUDED.completed_at)",
                "events": (
                    "steps.events || (SELECT COALESCE(jsonb_agg(e), '[]'::jsonb) "
                    "FROM jsonb_array_elements(EXCLUDED.events) e WHERE NOT steps.events @> jsonb_build_array(e))"
                ),
            },
        )

    async def list_steps(self, owning_ids: list[str]) -> list[Step]:
        if not owning_ids:
            return []
        return await self._many(Step, "SELECT * FROM steps WHERE owning_id = ANY(%s)", (owning_ids,))

    # --- rules / notifications -------------------------------------------

    async def list_rules(self, frequency: str | None = None) -> list[AnomalyRule]:
        if frequency is None:
            return await self._many(AnomalyRule, "SELECT * FROM anomaly_rules ORDER BY id")
        return await self._many(
            AnomalyRule, "SELECT * FROM anomaly_rules WHERE frequency = %s ORDER BY id", (frequency,)
        )

    async def save_rule(self, rule: AnomalyRule) -> None:
        await self._upsert("anomaly_rules", rule)

    async def insert_notification(self, notification: Notification) -> bool:
        return await self._insert_if_absent("notifications", notification, ("dedup_key",))

    async def update_notification(self, notification_id: str, **fields: Any) -> None:
        await self._update("notifications", notification_id, fields)

    async def list_escalation_candidates(self, cutoff: datetime) -> list[Notification]:
        return await self._many(
            Notification,
            """
            SELECT n.* FROM notifications n
            LEFT JOIN events e ON e.id = n.event_id
            WHERE n.severity = 'critical'
              AND n.escalate
              AND n.escalated_at IS NULL
              AND COALESCE(n.sent_at, n.created_at) < %s
              AND (n.event_id IS NULL OR e.acknowledged_by IS NULL)
            ORDER BY n.created_at
            """,
            (cutoff,),
        )

    async def mark_escalated(self, notification_id: str, at: datetime) -> bool:
        updated = await self._execute(
            "UPDATE notifications SET escalated_at = %s WHERE id = %s AND escalated_at IS NULL",
            (at, notification_id),
        )
        return updated == 1

    # --- audit ----------------------------------------------------------

    async def log_activity(self, entry: ActivityEntry) -> None:
        await self._insert_if_absent("activity_logs", entry, ("id",))

    async def record_dead_letter(self, dead_letter: DeadLetter) -> None:
        await self._insert_if_absent("dead_letters", dead_letter, ("id",))

    async def list_dead_letters(self, limit: int = 50) -> list[DeadLetter]:
        return await self._many(
            DeadLetter, "SELECT * FROM dead_letters ORDER BY created_at DESC LIMIT %s", (limit,)
        )
