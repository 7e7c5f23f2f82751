import conf
from utils import env


def test_scheduler_defaults(monkeypatch):
    for spec in (conf.SWEEP_AUCTIONS_INTERVAL_SECONDS, conf.SCHEDULER_ENABLED, conf.SETTLEMENT_GRACE_SECONDS):
        monkeypatch.delenv(spec.id, raising=False)

    scheduler_conf = conf.get_scheduler_conf()
    assert scheduler_conf.enabled is True
    assert scheduler_conf.auctions_interval_seconds == 5
    assert scheduler_conf.negotiations_interval_seconds == 60
    assert scheduler_conf.ending_soon_interval_seconds == 1800
    assert scheduler_conf.settlement_grace_seconds == 60


def test_env_overrides_are_parsed(monkeypatch):
    monkeypatch.setenv("SCHEDULER_ENABLED", "False")
    monkeypatch.setenv("SWEEP_AUCTIONS_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("COLLABORATOR_TIMEOUT_SECONDS", "2.5")

    assert conf.get_scheduler_conf().enabled is False
    assert conf.get_scheduler_conf().auctions_interval_seconds == 1
    assert conf.get_collaborators_conf().timeout_seconds == 2.5


def test_validate_reports_bad_values(monkeypatch):
    monkeypatch.setenv("HTTP_PORT", "not-a-number")
    assert conf.validate() is False

    monkeypatch.setenv("HTTP_PORT", "8080")
    assert conf.validate() is True


def test_optional_secret_is_none_when_unset(monkeypatch):
    monkeypatch.delenv("ADMIN_API_KEY", raising=False)
    assert env.parse(conf.ADMIN_API_KEY) is None
    assert conf.get_admin_api_key() is None
