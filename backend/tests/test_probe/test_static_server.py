"""Tests for the static server's path resolution."""

from apex.probe.static_server import resolve_request_path


class TestResolveRequestPath:
    def test_root_serves_index(self, tmp_path):
        assert resolve_request_path(tmp_path, "/") == (tmp_path / "index.html").resolve()

    def test_query_string_ignored(self, tmp_path):
        (tmp_path / "app.js").write_text("")
        assert resolve_request_path(tmp_path, "/app.js?v=3") == (tmp_path / "app.js").resolve()

    def test_directory_serves_its_index(self, tmp_path):
        (tmp_path / "about").mkdir()
        assert resolve_request_path(tmp_path, "/about/") == (tmp_path / "about" / "index.html").resolve()

    def test_traversal_blocked(self, tmp_path):
        assert resolve_request_path(tmp_path, "/../secret.txt") is None
        assert resolve_request_path(tmp_path, "/%2e%2e/secret.txt") is None
