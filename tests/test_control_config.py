"""
Tests for configuration loading and validation.
"""

from decimal import Decimal

import pytest
import yaml

from transfer_control.control_config import (
    DEFAULT_AGENTS,
    LoggingConfig,
    configure_logging,
    load_config,
    parse_time_of_day,
)
from transfer_control.errors import ConfigurationError


def write_config(tmp_path, data) -> str:
    path = tmp_path / "control_config.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


class TestDefaults:

    def test_missing_file_yields_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "absent.yaml"), environ={})

        assert config.supervisor.agents == DEFAULT_AGENTS
        assert config.supervisor.poll_interval_seconds == 30
        assert config.supervisor.daily_restart_hour_minute == (6, 0)
        assert config.schedule.interval_seconds == 60
        assert [s.label for s in config.schedule.seed_transfers] == [
            "INITIAL_TRANSFER", "FOLLOWUP_TRANSFER", "CONTINUOUS_TRANSFER",
        ]
        assert config.schedule.seed_transfers[0].amount == Decimal("5.25")
        assert config.ledger.fee_drops == 12
        assert config.destination.network_label == "xrp_ledger_testnet"
        assert "altnet" in config.ledger.rpc_url
        assert config.venue_credentials == {}


class TestYamlLoading:

    def test_sections_are_read(self, tmp_path):
        path = write_config(tmp_path, {
            "destination": {"address": "rDest", "tag": 42, "currency": "xrp"},
            "funding": {"provider": "Reserve", "reserve_balance": "100.5"},
            "conversion": {"rates": {"eth/xrp": 5000}},
            "schedule": {
                "interval_seconds": 15,
                "amount_range": [2, 4],
                "seed_transfers": [{"offset_seconds": 5, "amount": 1.1, "label": "ONLY"}],
            },
            "supervisor": {"agents": ["grid"], "daily_restart_time": "23:45"},
        })

        config = load_config(path, environ={})

        assert config.destination.address == "rDest"
        assert config.destination.tag == 42
        assert config.destination.currency == "XRP"
        assert config.funding.provider == "reserve"
        assert config.funding.reserve_balance == Decimal("100.5")
        assert config.conversion.rates == {"ETH/XRP": Decimal("5000")}
        assert config.schedule.amount_range == (2.0, 4.0)
        assert [s.label for s in config.schedule.seed_transfers] == ["ONLY"]
        assert config.supervisor.agents == ["grid"]
        assert config.supervisor.daily_restart_hour_minute == (23, 45)

    def test_unparseable_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("destination: [unclosed")
        with pytest.raises(ConfigurationError):
            load_config(str(path), environ={})

    def test_malformed_section(self, tmp_path):
        path = write_config(tmp_path, {"destination": {"tag": "not-a-number"}})
        with pytest.raises(ConfigurationError):
            load_config(path, environ={})


class TestEnvironment:

    def test_overrides(self, tmp_path):
        environ = {
            "CONTROL_AGENTS": "grid, web3",
            "CONTROL_POLL_INTERVAL": "5",
            "CONTROL_TRANSFER_INTERVAL": "120",
            "CONTROL_DAILY_RESTART_TIME": "03:15",
            "CONTROL_DB_PATH": str(tmp_path / "h.db"),
            "CONTROL_LOG_LEVEL": "debug",
        }
        config = load_config(None, environ=environ)

        assert config.supervisor.agents == ["grid", "web3"]
        assert config.supervisor.poll_interval_seconds == 5
        assert config.schedule.interval_seconds == 120
        assert config.supervisor.daily_restart_hour_minute == (3, 15)
        assert config.storage.db_path == str(tmp_path / "h.db")
        assert config.logging.level == "DEBUG"

    def test_venue_credentials(self, tmp_path):
        path = write_config(tmp_path, {"venues": ["binance", "okx", "kraken"]})
        environ = {
            "BINANCE_API_KEY": "bk",
            "BINANCE_SECRET_KEY": "bs",
            "OKX_API_KEY": "ok",
            "OKX_API_SECRET": "os",
            "OKX_PASSWORD": "op",
            "KRAKEN_API_KEY": "only-a-key",
        }

        config = load_config(path, environ=environ)

        assert config.venue_credentials == {
            "binance": {"apiKey": "bk", "secret": "bs"},
            "okx": {"apiKey": "ok", "secret": "os", "password": "op"},
        }


class TestValidation:

    @pytest.mark.parametrize("data", [
        {"supervisor": {"poll_interval_seconds": 0}},
        {"supervisor": {"agents": []}},
        {"supervisor": {"daily_restart_time": "25:00"}},
        {"schedule": {"amount_range": [3, 1]}},
        {"schedule": {"max_concurrent_transfers": 0}},
        {"schedule": {"seed_transfers": [{"amount": 0, "label": "ZERO"}]}},
        {"funding": {"provider": "bank"}},
        {"destination": {"tag": -1}},
        {"destination": {"tag": 2 ** 32}},
    ])
    def test_invalid_values(self, tmp_path, data):
        with pytest.raises(ConfigurationError):
            load_config(write_config(tmp_path, data), environ={})

    def test_parse_time_of_day(self):
        assert parse_time_of_day("06:00") == (6, 0)
        assert parse_time_of_day(" 7:05 ") == (7, 5)
        with pytest.raises(ConfigurationError):
            parse_time_of_day("six")


class TestLogging:

    def test_file_sink_created(self, tmp_path):
        log_file = tmp_path / "logs" / "control.log"
        configure_logging(LoggingConfig(level="INFO", file=str(log_file)))
        assert log_file.parent.exists()
        configure_logging(LoggingConfig(level="INFO"))
