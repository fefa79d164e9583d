import pytest

from scripts import bootstrap_admin


@pytest.fixture(autouse=True)
def memory_env(monkeypatch, tmp_path):
    monkeypatch.setenv("TEST_MODE", "true")
    monkeypatch.setenv("USE_MEMORY_CACHE", "true")
    monkeypatch.setenv("USE_MEMORY_STORE", "true")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "true")
    monkeypatch.setenv("ARGON2_TIME_COST", "1")
    monkeypatch.setenv("ARGON2_MEMORY_COST", "1024")
    monkeypatch.setenv("ARGON2_PARALLELISM", "1")
    monkeypatch.setenv("MEMORY_STATE_PATH", str(tmp_path / "users.json"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)


def test_password_problems():
    assert bootstrap_admin.password_problems("Strong-Passw0rd") is None
    assert "uppercase" in bootstrap_admin.password_problems("weak-passw0rd")


def test_requires_email_and_password(capsys):
    assert bootstrap_admin.main([]) == 1
    assert "ADMIN_EMAIL" in capsys.readouterr().out
    assert bootstrap_admin.main(["--email", "root@example.com"]) == 1


def test_rejects_weak_password(capsys):
    assert bootstrap_admin.main(["--email", "root@example.com", "--password", "weak"]) == 1
    assert "at least 8" in capsys.readouterr().out


def test_creates_then_reports_existing_admin(capsys):
    args = ["--email", "root@example.com", "--password", "Strong-Passw0rd"]
    assert bootstrap_admin.main(args) == 0
    assert "Admin user created successfully" in capsys.readouterr().out

    # The state file keeps the admin between runs
    assert bootstrap_admin.main(args) == 0
    assert "already an admin" in capsys.readouterr().out


def test_dry_run_makes_no_changes(capsys, tmp_path):
    args = ["--email", "dry@example.com", "--password", "Strong-Passw0rd", "--dry-run"]
    assert bootstrap_admin.main(args) == 0
    assert "[DRY RUN] Would create admin user" in capsys.readouterr().out
    assert not (tmp_path / "users.json").exists()
