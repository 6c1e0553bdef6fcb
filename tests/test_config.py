from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from agentdispatch_mcp.utils.config import Config, get_config


class TestConfig:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in (
            "AGENTDISPATCH_DATA_ROOT",
            "AGENTDISPATCH_STORAGE",
            "AGENTDISPATCH_MAX_CONCURRENT",
            "AGENTDISPATCH_COMPLETION_STATUS",
            "AGENTDISPATCH_AGENT_MODE",
            "AGENTDISPATCH_AGENT_COMMAND",
        ):
            monkeypatch.delenv(name, raising=False)

        config = Config()
        assert config.data_root == Path("data")
        assert config.storage_backend == "json"
        assert config.max_concurrent == 2
        assert config.completion_status == "review"
        assert config.agent_mode == "external"
        assert config.agent_command is None

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGENTDISPATCH_DATA_ROOT", "/srv/dispatch")
        monkeypatch.setenv("AGENTDISPATCH_STORAGE", "sqlite")
        monkeypatch.setenv("AGENTDISPATCH_MAX_CONCURRENT", "6")
        monkeypatch.setenv("AGENTDISPATCH_POLL_INTERVAL", "0.5")
        monkeypatch.setenv("AGENTDISPATCH_AGENT_COMMAND", "claude -p {task_file}")

        config = get_config()
        assert config.data_root == Path("/srv/dispatch")
        assert config.storage_backend == "sqlite"
        assert config.max_concurrent == 6
        assert config.poll_interval == 0.5
        assert config.agent_command == "claude -p {task_file}"

    def test_config_is_frozen(self) -> None:
        config = Config()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.max_concurrent = 10  # type: ignore[misc]
