from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from chatrelay.config import RelayConfig, load_config


def test_defaults_without_file_or_env():
    cfg = load_config(env={})
    assert cfg.port == 4000
    assert cfg.jwt_secret == "dev_secret"
    assert cfg.store_path == Path("data/chat.json")
    assert cfg.retention == timedelta(hours=24)
    assert cfg.sweep_interval == timedelta(minutes=10)
    assert cfg.max_connections_per_identity is None
    assert cfg.report_invalid_payloads is False


def test_yaml_file_then_env_overrides(tmp_path):
    path = tmp_path / "server.yaml"
    path.write_text(
        "port: 5000\n"
        "jwt_secret: from-file\n"
        "retention_seconds: 3600\n"
        "max_connections_per_identity: 3\n"
        "log_level: debug\n"
    )
    cfg = load_config(path, env={"JWT_SECRET": "from-env", "CHAT_STORE_PATH": "/var/chat.json"})
    assert cfg.port == 5000
    assert cfg.jwt_secret == "from-env"
    assert cfg.store_path == Path("/var/chat.json")
    assert cfg.retention == timedelta(hours=1)
    assert cfg.max_connections_per_identity == 3
    assert cfg.log_level == "DEBUG"


def test_env_port_is_coerced():
    assert load_config(env={"CHAT_PORT": "4100"}).port == 4100


def test_empty_yaml_file_uses_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(path, env={}) == RelayConfig()


@pytest.mark.parametrize(
    "data",
    [
        {"port": 70000},
        {"retention_seconds": 0},
        {"jwt_algorithms": ["RS256"]},
        {"jwt_algorithms": []},
        {"unknown_option": True},
        {"jwt_secret": ""},
    ],
)
def test_invalid_values_rejected(data):
    with pytest.raises(ValidationError):
        RelayConfig.model_validate(data)


def test_non_mapping_yaml_rejected(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ValueError):
        load_config(path, env={})
