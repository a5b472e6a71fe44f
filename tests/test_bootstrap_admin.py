"""Tests for the admin bootstrap script."""

import importlib.util

import pytest

from conftest import ROOT, STRONG_PASSWORD


def _load_script():
    module_spec = importlib.util.spec_from_file_location(
        "bootstrap_admin", ROOT / "scripts" / "bootstrap_admin.py"
    )
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


@pytest.fixture
def script(monkeypatch):
    monkeypatch.setenv("PASSWORD_HASH_TIME_COST", "1")
    monkeypatch.setenv("PASSWORD_HASH_MEMORY_COST", "8")
    monkeypatch.setenv("PASSWORD_HASH_PARALLELISM", "1")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    return _load_script()


class TestBootstrapAdmin:
    """Tests for bootstrap_admin and its CLI."""

    @pytest.mark.asyncio
    async def test_creates_admin(self, script):
        result = await script.bootstrap_admin("Admin@Example.com", STRONG_PASSWORD)

        assert result["status"] == "created"
        assert result["email"] == "admin@example.com"
        assert result["user_id"]

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, script):
        result = await script.bootstrap_admin("admin@example.com", STRONG_PASSWORD, dry_run=True)

        assert result == {"user_id": None, "email": "admin@example.com", "status": "dry_run"}

    def test_cli_reports_created(self, script, capsys):
        assert script.main(["--email", "admin@example.com", "--password", STRONG_PASSWORD]) == 0

        out = capsys.readouterr().out
        assert "Admin account created and verified." in out
        assert "admin@example.com" in out

    def test_cli_rejects_weak_password(self, script, capsys):
        with pytest.raises(SystemExit) as excinfo:
            script.main(["--email", "admin@example.com", "--password", "weak"])

        assert excinfo.value.code == 2
        assert "password does not meet policy" in capsys.readouterr().err

    def test_cli_requires_email(self, script, monkeypatch):
        monkeypatch.delenv("ADMIN_EMAIL", raising=False)

        with pytest.raises(SystemExit):
            script.main(["--password", STRONG_PASSWORD])
