"""Alert e-mail rendering with Jinja2 templates shipped in the package."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from jinja2 import Environment, PackageLoader, TemplateNotFound, select_autoescape

DEFAULT_TEMPLATE = "anomaly_alert"

SEVERITY_LABELS = {"critical": "CRITICAL", "warning": "WARNING", "ok": "INFO"}


@lru_cache(maxsize=1)
def template_environment() -> Environment:
    return Environment(
        loader=PackageLoader("plo_workers", "templates"),
        autoescape=select_autoescape(["html"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def render_pair(name: str, context: dict[str, Any]) -> tuple[str, str]:
    """Render ``<name>.html`` and ``<name>.txt``, falling back to the default alert."""
    env = template_environment()
    try:
        html = env.get_template(f"{name}.html")
        text = env.get_template(f"{name}.txt")
    except TemplateNotFound:
        html = env.get_template(f"{DEFAULT_TEMPLATE}.html")
        text = env.get_template(f"{DEFAULT_TEMPLATE}.txt")
    return html.render(**context), text.render(**context)


def alert_subject(rule_name: str, severity: str, customer_ref: str | None) -> str:
    label = SEVERITY_LABELS.get(severity, severity.upper())
    suffix = f" ({customer_ref})" if customer_ref else ""
    return f"[PLO] {label} {rule_name}{suffix}"
