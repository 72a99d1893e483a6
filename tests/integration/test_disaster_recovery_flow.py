"""End-to-end disaster recovery from a wiped project directory."""

import shutil

from stack_guard.core.states import BackupType, EnvironmentState, ServiceState


class TestDisasterRecoveryFlow:
    def test_rebuild_from_full_backup(self, running_guard, project, backend):
        running_guard.backup("full")

        for name in ("static", "ssl", "data"):
            shutil.rmtree(project / name)
        (project / ".env").unlink()
        backend.down()

        report = running_guard.disaster_recovery()
        assert report.success
        assert report.environment_state == EnvironmentState.CORRUPTED
        assert (project / "ssl" / "server.crt").exists()
        assert (project / "static" / "docker-compose.yml").exists()
        assert (project / "data" / "db.sql").read_text() == "INSERT 1;\n"
        assert running_guard.controller.state == ServiceState.RUNNING
        assert report.report_path.parent == running_guard.config.reports_dir

    def test_recover_through_incremental_chain(self, running_guard, project):
        running_guard.backup("full")
        (project / "data" / "db.sql").write_text("INSERT 2;\n")
        incremental = running_guard.backup("incremental")
        assert running_guard.engine.read_metadata(incremental).type == BackupType.INCREMENTAL

        (project / "data" / "db.sql").unlink()
        (project / ".env").unlink()
        report = running_guard.disaster_recovery(mode="manual", source=incremental)
        assert report.success
        assert (project / "data" / "db.sql").read_text() == "INSERT 2;\n"
        assert (project / ".env").exists()
