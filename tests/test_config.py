from __future__ import annotations

import pytest
from pydantic import ValidationError

from helpdesk_sla.config import SlaStatus, Settings


def test_defaults() -> None:
    settings = Settings(_env_file=None)

    assert settings.sla_at_risk_ratio == 0.75
    assert settings.sla_paused_statuses == ["Pending"]
    assert settings.sla_partition_count == 1


def test_settings_read_environment(monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("SLA_PAUSED_STATUSES", '["Pending", "On Hold"]')
    monkeypatch.setenv("SLA_SWEEP_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("ENVIRONMENT", "staging")

    settings = Settings(_env_file=None)

    assert settings.sla_paused_statuses == ["Pending", "On Hold"]
    assert settings.sla_sweep_interval_seconds == 0
    assert settings.environment == "staging"


def test_unknown_environment_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, environment="qa")


def test_partition_index_must_be_below_count() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, sla_partition_index=3, sla_partition_count=3)

    settings = Settings(_env_file=None, sla_partition_index=2, sla_partition_count=3)
    assert settings.sla_partition_index == 2


@pytest.mark.parametrize("ratio", [0, 1.2])
def test_at_risk_ratio_bounds(ratio) -> None:  # noqa: ANN001
    with pytest.raises(ValidationError):
        Settings(_env_file=None, sla_at_risk_ratio=ratio)


def test_status_order() -> None:
    assert SlaStatus.BREACHED.is_above(SlaStatus.ESCALATED)
    assert not SlaStatus.AT_RISK.is_above(SlaStatus.AT_RISK)
    assert sorted(SlaStatus, key=lambda s: s.rank) == list(SlaStatus)
