from __future__ import annotations

import pytest

from plo_workers.config import Config


def test_config_from_env_requires_database_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)

    with pytest.raises(RuntimeError, match="DATABASE_URL must be set"):
        Config.from_env()


def test_config_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://plo@db/plo")
    for name in ("PLO_WORKER_CONCURRENCY", "PLO_MAX_ATTEMPTS", "PLO_ESCALATION_HOURS", "SMTP_HOST"):
        monkeypatch.delenv(name, raising=False)

    cfg = Config.from_env()
    assert cfg.database_url == "postgresql://plo@db/plo"
    assert cfg.concurrency == 4
    assert cfg.max_attempts == 3
    assert cfg.escalation_hours == 4.0
    assert cfg.smtp_host == ""
    assert cfg.log_format == "json"


def test_config_from_env_clamps_concurrency_and_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://plo@db/plo")
    monkeypatch.setenv("PLO_WORKER_CONCURRENCY", "0")
    monkeypatch.setenv("PLO_MAX_ATTEMPTS", "-2")

    cfg = Config.from_env()
    assert cfg.concurrency == 1
    assert cfg.max_attempts == 1


def test_config_reads_alert_role_addresses(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://plo@db/plo")
    monkeypatch.setenv("ALERT_EMAIL_COORDINATEUR", "coord@example.fr")
    monkeypatch.setenv("ALERT_EMAIL_OPS", " ops@example.fr ")
    monkeypatch.delenv("ALERT_EMAIL_MANAGER", raising=False)

    cfg = Config.from_env()
    assert cfg.alert_emails["coordinateur"] == "coord@example.fr"
    assert cfg.alert_emails["ops"] == "ops@example.fr"
    assert "manager" not in cfg.alert_emails


def test_emails_for_roles_resolves_dedupes_and_passes_literals() -> None:
    cfg = Config(
        database_url="postgresql://x",
        alert_emails={"coordinateur": "coord@example.fr", "manager": "coord@example.fr"},
    )
    assert cfg.emails_for_roles(["coordinateur", "manager", "ops", "boss@example.fr"]) == [
        "coord@example.fr",
        "boss@example.fr",
    ]
