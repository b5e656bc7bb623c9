"""Tests for the typer CLI."""

from __future__ import annotations

from typer.testing import CliRunner

from inspectra.cli import app
from inspectra.notifications.webhooks import sign_payload

runner = CliRunner()


class TestSignWebhook:
    def test_prints_signature(self, tmp_path):
        payload = tmp_path / "payload.json"
        payload.write_bytes(b'{"event":"trigger"}')

        result = runner.invoke(app, ["sign-webhook", str(payload), "--secret", "hook"])

        assert result.exit_code == 0
        assert result.stdout.strip() == sign_payload(b'{"event":"trigger"}', "hook")

    def test_requires_secret(self, tmp_path, monkeypatch):
        monkeypatch.delenv("WEBHOOK_SECRET", raising=False)
        payload = tmp_path / "payload.json"
        payload.write_bytes(b"{}")

        result = runner.invoke(app, ["sign-webhook", str(payload)])

        assert result.exit_code == 1


class TestInit:
    def test_creates_tables(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")

        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Database initialized" in result.stdout
        assert (tmp_path / "cli.db").exists()

    def test_missing_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        result = runner.invoke(app, ["init"])

        assert result.exit_code == 1
