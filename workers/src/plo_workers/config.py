import os
from dataclasses import dataclass, field

ALERT_ROLES = ("coordinateur", "acheteur", "entrepot", "manager", "ops")


def _alert_emails_from_env() -> dict[str, str]:
    emails: dict[str, str] = {}
    for role in ALERT_ROLES:
        value = os.environ.get(f"ALERT_EMAIL_{role.upper()}", "").strip()
        if value:
            emails[role] = value
    return emails


@dataclass(frozen=True)
class Config:
    database_url: str
    concurrency: int = 4
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    queue_maxsize: int = 1000
    poll_interval_seconds: float = 5.0
    escalation_hours: float = 4.0
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "plo-alerts@example.fr"
    alert_emails: dict[str, str] = field(default_factory=dict)
    crm_ticket_url: str = ""
    crm_ticket_token: str = ""
    health_port: int = 8081
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            concurrency=max(1, int(os.environ.get("PLO_WORKER_CONCURRENCY", "4"))),
            max_attempts=max(1, int(os.environ.get("PLO_MAX_ATTEMPTS", "3"))),
            backoff_base_seconds=float(os.environ.get("PLO_BACKOFF_BASE_SECONDS", "1.0")),
            queue_maxsize=int(os.environ.get("PLO_QUEUE_MAXSIZE", "1000")),
            poll_interval_seconds=float(os.environ.get("PLO_POLL_INTERVAL", "5.0")),
            escalation_hours=float(os.environ.get("PLO_ESCALATION_HOURS", "4")),
            smtp_host=os.environ.get("SMTP_HOST", ""),
            smtp_port=int(os.environ.get("SMTP_PORT", "587")),
            smtp_user=os.environ.get("SMTP_USER", ""),
            smtp_password=os.environ.get("SMTP_PASSWORD", ""),
            smtp_from=os.environ.get("SMTP_FROM", "plo-alerts@example.fr"),
            alert_emails=_alert_emails_from_env(),
            crm_ticket_url=os.environ.get("CRM_TICKET_URL", ""),
            crm_ticket_token=os.environ.get("CRM_TICKET_TOKEN", ""),
            health_port=int(os.environ.get("PLO_HEALTH_PORT", "8081")),
            log_format=os.environ.get("PLO_LOG_FORMAT", "json"),
        )

    def emails_for_roles(self, roles: list[str]) -> list[str]:
        """Resolve role names to addresses. Literal addresses pass through."""
        resolved: list[str] = []
        for role in roles:
            address = role if "@" in role else self.alert_emails.get(role)
            if address and address not in resolved:
                resolved.append(address)
        return resolved
