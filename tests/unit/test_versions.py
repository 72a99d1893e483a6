"""Tests for env-file version tags."""

from stack_guard.lifecycle.versions import VersionStore, read_env, write_env_values


class TestEnvFile:
    def test_read_env_handles_quotes_export_and_comments(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text('# comment\nexport A=1\nB="two words"\nC=\'x\'\n\nnot a pair\n')
        assert read_env(env) == {"A": "1", "B": "two words", "C": "x"}

    def test_missing_file_is_empty(self, tmp_path):
        assert read_env(tmp_path / "missing.env") == {}

    def test_write_preserves_other_lines(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("# header\nA=1\nB=2\n")
        write_env_values(env, {"B": "3", "C": "4", "A": None})
        assert env.read_text() == "# header\nB=3\nC=4\n"
        assert not (tmp_path / ".env.tmp").exists()


class TestVersionStore:
    def test_variable_name(self, tmp_path):
        store = VersionStore(tmp_path / ".env", ["my-svc"])
        assert store.variable("my-svc") == "STACK_MY_SVC_TAG"

    def test_custom_template(self, tmp_path):
        store = VersionStore(tmp_path / ".env", ["api"], template="{service}_version")
        assert store.variable("api") == "api_version"

    def test_set_and_read(self, project):
        store = VersionStore(project / ".env", ["backend", "nginx"])
        store.set_versions({"backend": "2.1.0"})
        assert store.current_versions() == {"backend": "2.1.0", "nginx": "1.0.0"}
        assert "DOMAIN=localhost" in (project / ".env").read_text()

    def test_none_removes_tag(self, project):
        store = VersionStore(project / ".env", ["backend"])
        store.set_versions({"backend": None})
        assert store.current_versions() == {"backend": None}
