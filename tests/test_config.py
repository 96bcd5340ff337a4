"""
Tests for environment-driven configuration
"""

from funds_core import config as config_module
from funds_core.config import BankConfig, get_config, reload_config
from funds_core.system import BankingSystem
from funds_core.storage import SQLiteStorage


class TestBankConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BANK_DATABASE_URL", raising=False)
        cfg = BankConfig(_env_file=None)
        assert cfg.database_url == "sqlite:///funds_core.db"
        assert cfg.account_number_max_attempts == 10
        assert cfg.checking_opening_balance == "100.00"
        assert cfg.savings_opening_balance == "500.00"
        assert cfg.auth_enabled

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("BANK_OUTBOX_ASYNC", "false")
        monkeypatch.setenv("BANK_DEPOSIT_ID_START", "5000")
        monkeypatch.setenv("bank_jwt_secret", "from-env")

        cfg = BankConfig(_env_file=None)

        assert cfg.outbox_async is False
        assert cfg.deposit_id_start == 5000
        assert cfg.jwt_secret == "from-env"

    def test_reload_replaces_global(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("BANK_API_PORT", "9999")
        try:
            assert reload_config().api_port == 9999
            assert get_config().api_port == 9999
        finally:
            monkeypatch.setattr(config_module, "config", original)

    def test_system_built_from_config(self):
        cfg = BankConfig(_env_file=None, database_url="sqlite://", outbox_async=False,
                         deposit_id_start=7000, savings_opening_balance="50.00")
        system = BankingSystem(config=cfg)
        try:
            assert isinstance(system.storage, SQLiteStorage)
            assert system.deposit_manager.id_start == 7000
            assert system.health()["store"] == "up"
        finally:
            system.shutdown()
