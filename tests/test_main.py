"""Tests for application configuration and wiring."""

import os

import pytest

from autopilot.main import Application, load_config


class TestLoadConfig:
    """Test config file and environment overrides."""

    def test_defaults_without_file(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "missing.yaml"))
        monkeypatch.delenv("DATA_DIR", raising=False)
        monkeypatch.delenv("SERVER_PORT", raising=False)
        monkeypatch.delenv("BROWSER_HEADLESS", raising=False)

        config = load_config()

        assert config.server.port == 8080
        assert config.browser.headless is True

    def test_file_and_env_overrides(self, monkeypatch, tmp_path):
        config_path = tmp_path / "autopilot.yaml"
        config_path.write_text("server:\n  port: 9000\nbrowser:\n  headless: true\n")
        monkeypatch.setenv("CONFIG_PATH", str(config_path))
        monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
        monkeypatch.setenv("BROWSER_HEADLESS", "false")
        monkeypatch.delenv("SERVER_PORT", raising=False)

        config = load_config()

        assert config.server.port == 9000
        assert config.browser.headless is False
        assert config.data_directory == os.path.join(str(tmp_path), "data")


class TestApplication:
    """Test the application container without starting a browser."""

    @pytest.mark.asyncio
    async def test_request_shutdown_unblocks_run(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "missing.yaml"))
        app = Application(load_config())

        app.request_shutdown()
        await app.run()
        await app.stop()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
