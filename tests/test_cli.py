"""Tests for the conductor CLI and app factory."""

import asyncio
import sys
from pathlib import Path

import jwt
import pytest
import yaml
from fastapi.testclient import TestClient

from conductor.__main__ import main
from conductor.config import ConductorConfig, load_config
from conductor.registry import Registry
from conductor.server import create_app


def run_cli(monkeypatch, *args):
    monkeypatch.setattr(sys, "argv", ["conductor", *args])
    main()


@pytest.fixture
def config_path(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.delenv("CONDUCTOR_DATA_DIR", raising=False)
    monkeypatch.delenv("CONDUCTOR_JWT_SECRET", raising=False)
    path = tmp_path / "conductor.yaml"
    run_cli(monkeypatch, "--config", str(path), "init", "--username", "sd-buildbot")
    raw = yaml.safe_load(path.read_text())
    raw["database"]["path"] = str(tmp_path / "data" / "conductor.db")
    path.write_text(yaml.dump(raw))
    return path


class TestInit:
    def test_writes_loadable_config(self, config_path: Path):
        config = load_config(config_path)
        assert config.webhooks.username == "sd-buildbot"
        assert config.webhooks.default_restrict_pr == "none"

    def test_refuses_to_overwrite(self, config_path: Path, monkeypatch):
        with pytest.raises(SystemExit):
            run_cli(monkeypatch, "--config", str(config_path), "init")


class TestCommands:
    def test_user_add(self, config_path: Path, monkeypatch):
        run_cli(monkeypatch, "--config", str(config_path), "user", "add", "alice", "--token", "t1")

        async def lookup():
            config = load_config(config_path)
            registry = Registry(config.database.path)
            await registry.initialize()
            try:
                return await registry.get_user("alice", "github:github.com")
            finally:
                await registry.close()

        user = asyncio.run(lookup())
        assert user.token == "t1"

    def test_token(self, config_path: Path, monkeypatch, capsys):
        monkeypatch.setenv("CONDUCTOR_JWT_SECRET", "s3cret")

        run_cli(monkeypatch, "--config", str(config_path), "token", "77", "--scope", "build")

        token = capsys.readouterr().out.strip()
        claims = jwt.decode(token, "s3cret", algorithms=["HS256"])
        assert claims["username"] == "77"
        assert claims["scope"] == ["build"]

    def test_token_requires_secret(self, config_path: Path, monkeypatch):
        with pytest.raises(SystemExit):
            run_cli(monkeypatch, "--config", str(config_path), "token", "alice")

    def test_no_command(self, monkeypatch):
        with pytest.raises(SystemExit):
            run_cli(monkeypatch)


class TestApp:
    def test_health_and_routes(self, tmp_path: Path):
        config = ConductorConfig(
            webhooks={"username": "sd-buildbot"},
            database={"path": str(tmp_path / "db" / "conductor.db")},
        )
        app = create_app(config=config)

        with TestClient(app) as client:
            health = client.get("/health")
            unauthenticated = client.put("/builds/1", json={"status": "SUCCESS"})

        assert health.json() == {"status": "ok", "scm": "github:github.com"}
        assert unauthenticated.status_code == 401
        assert (tmp_path / "db" / "conductor.db").exists()
