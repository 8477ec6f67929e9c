"""After-sales / CRM ticket creation for rules that ask for one."""

from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Protocol

import httpx

from ..config import Config
from ..errors import TransportFailure

logger = logging.getLogger(__name__)


class TicketingClient(Protocol):
    async def create_ticket(
        self,
        notification_id: str,
        project_id: str,
        rule_id: str,
        subject: str,
        details: dict[str, Any] | None = None,
    ) -> str: ...


class SimulatedTicketing:
    """Issues local ``CRM-<millis>-<hex>`` references without a CRM."""

    async def create_ticket(
        self,
        notification_id: str,
        project_id: str,
        rule_id: str,
        subject: str,
        details: dict[str, Any] | None = None,
    ) -> str:
        ref = f"CRM-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"
        logger.info(
            "Simulated CRM ticket %s for notification %s, project %s (%s)", ref, notification_id, project_id, rule_id
        )
        return ref


class HttpTicketing:
    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout
        self.transport = transport

    async def create_ticket(
        self,
        notification_id: str,
        project_id: str,
        rule_id: str,
        subject: str,
        details: dict[str, Any] | None = None,
    ) -> str:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        body = {
            "notification_id": notification_id,
            "project_id": project_id,
            "rule_id": rule_id,
            "subject": subject,
            "details": details or {},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.url, json=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportFailure(f"CRM ticket creation failed: {exc}") from exc
        ref = response.json().get("ticket_ref")
        if not ref:
            raise TransportFailure("CRM ticket response carried no ticket_ref")
        return str(ref)


def build_ticketing(config: Config) -> TicketingClient:
    if config.crm_ticket_url:
        return HttpTicketing(config.crm_ticket_url, config.crm_ticket_token)
    return SimulatedTicketing()
