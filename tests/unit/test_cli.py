"""Tests for the command-line interface."""

import pytest

from stack_guard import __version__, cli


@pytest.fixture
def config_file(project):
    path = project / "stack-guard.yaml"
    path.write_text("observability:\n  exporters: []\nsnapshot:\n  include_system_info: false\n")
    return path


class TestCli:
    def test_version(self, capsys):
        assert cli.main(["--version"]) == 0
        assert __version__ in capsys.readouterr().out

    def test_no_command(self, capsys):
        assert cli.main([]) == 1

    def test_backup_and_verify(self, config_file, project, capsys):
        assert cli.main(["--config", str(config_file), "backup", "config", "--name", "cli"]) == 0
        archive = project / "backups" / "cli.tar.gz"
        assert archive.exists()

        assert cli.main(["--config", str(config_file), "restore", str(archive), "--verify-only"]) == 0
        assert "valid" in capsys.readouterr().out

    def test_error_exit_code(self, config_file, project, capsys):
        code = cli.main(["--config", str(config_file), "restore", str(project / "missing.tar.gz")])
        assert code == 1
        assert "Error" in capsys.readouterr().err

    def test_missing_config(self, tmp_path, capsys):
        assert cli.main(["--config", str(tmp_path / "nope.yaml"), "backups"]) == 1

    def test_status_uses_guard(self, running_guard, monkeypatch, capsys):
        monkeypatch.setattr(cli, "_make_guard", lambda path: running_guard)
        assert cli.main(["status"]) == 0
        out = capsys.readouterr().out
        assert "State: RUNNING" in out
        assert "backend" in out

    def test_failed_update_exit_code(self, running_guard, monkeypatch, capsys):
        monkeypatch.setattr(cli, "_make_guard", lambda path: running_guard)
        assert cli.main(["update", "--version", "2.0.0", "--no-backup"]) == 1
        assert "OperationFailedError" in capsys.readouterr().err

    def test_restart_single_service(self, running_guard, backend, monkeypatch):
        monkeypatch.setattr(cli, "_make_guard", lambda path: running_guard)
        assert cli.main(["restart", "--service", "engine"]) == 0
        assert backend.calls[-1] == ("restart", ("engine",))
