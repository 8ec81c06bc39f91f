from pathlib import Path

import pytest

from oh_my_telegram.config import (
    BotConfig,
    BotConfigError,
    ConfigError,
    find_nearest_config_path,
    load_config,
)


def test_defaults_and_env_overrides(tmp_path: Path) -> None:
    env = {
        "TELEGRAM_BOT_TOKEN": "token",
        "ALLOWED_USERS": "1, 2",
        "DEFAULT_AGENT": "oracle",
        "SESSION_PREFIX": "chat",
        "OPENCODE_URL": "http://remote:5000/",
        "WORKING_DIRECTORY": "/srv/app",
    }
    config = BotConfig.from_raw({}, root=tmp_path, env=env)

    assert config.bot_token == "token"
    assert config.allowed_users == ["1", "2"]
    assert config.opencode.default_agent == "oracle"
    assert config.opencode.session_prefix == "chat"
    assert config.opencode.base_url == "http://remote:5000"
    assert config.opencode.web_url == "http://remote:5000"
    assert config.opencode.working_directory == "/srv/app"
    assert config.polling.timeout_seconds == 30
    assert config.long_poll_request_timeout == 35
    assert config.idle_ttl_seconds == 3600
    assert config.delete_delay_seconds == 0.1
    assert config.log.path == tmp_path / ".oh-my-telegram" / "bot.log"
    config.validate()


def test_yaml_values_merge_over_defaults(tmp_path: Path) -> None:
    raw = {
        "telegram": {"allowed_users": ["*"], "polling": {"timeout_seconds": 10}},
        "opencode": {"web_url": "https://ui.example/", "agents": ["a", "b"], "default_agent": "b"},
        "progress": {"enabled": False},
    }
    config = BotConfig.from_raw(raw, root=tmp_path, env={"TELEGRAM_BOT_TOKEN": "t"})

    assert config.allowed_users == ["*"]
    assert config.polling.timeout_seconds == 10
    assert config.polling.backoff_seconds == 1.0
    assert config.opencode.web_url == "https://ui.example"
    assert config.opencode.agents == ["a", "b"]
    assert config.opencode.working_directory == str(tmp_path)
    assert not config.progress_enabled


def test_validate_lists_every_issue(tmp_path: Path) -> None:
    raw = {
        "telegram": {"polling": {"timeout_seconds": 0}},
        "opencode": {"default_agent": "ghost"},
    }
    config = BotConfig.from_raw(raw, root=tmp_path, env={})

    with pytest.raises(BotConfigError) as excinfo:
        config.validate()
    message = str(excinfo.value)
    assert "missing bot token" in message
    assert "timeout_seconds" in message
    assert "ghost" in message


def test_load_config_reads_yaml_and_dotenv(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "stale")
    monkeypatch.delenv("SESSION_PREFIX", raising=False)
    (tmp_path / "oh-my-telegram.yml").write_text(
        "opencode:\n  session_prefix: team\n", encoding="utf-8"
    )
    (tmp_path / ".env").write_text("TELEGRAM_BOT_TOKEN=from-dotenv\n", encoding="utf-8")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)

    assert find_nearest_config_path(nested) == (tmp_path / "oh-my-telegram.yml").resolve()
    config = load_config(nested)

    assert config.root == tmp_path.resolve()
    assert config.bot_token == "from-dotenv"
    assert config.opencode.session_prefix == "team"


def test_load_config_rejects_bad_files(tmp_path: Path) -> None:
    bad_yaml = tmp_path / "bad.yml"
    bad_yaml.write_text("telegram: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(tmp_path, config_path=bad_yaml)

    wrong_shape = tmp_path / "shape.yml"
    wrong_shape.write_text("telegram: 5\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(tmp_path, config_path=wrong_shape)

    with pytest.raises(ConfigError):
        load_config(tmp_path, config_path=tmp_path / "missing.yml")
