"""Tests for the sync engine."""

import io
import os
import re
import tempfile
import zipfile
from pathlib import Path
from unittest.mock import Mock

import pytest

from pyvault.exceptions import (
    MalformedFilterError,
    NotInCheckoutError,
    PathNotFoundError,
    RemoteProtocolError,
    SyncInProgressError,
)
from pyvault.sync import (
    SyncDirection,
    SyncLockRegistry,
    SyncPhase,
    SyncTimestampCache,
    SyncVerdict,
    VaultSyncEngine,
    parse_filter_string,
)

FILTER_XML = """<?xml version="1.0" encoding="UTF-8"?>
<workspaceFilter version="1.0">
    <filter root="/apps/myproj">
        <include pattern="/apps/myproj(/.*)?"/>
    </filter>
    <filter root="/content/site"/>
</workspaceFilter>
"""


class FakePackageManager:
    """In-memory stand-in for the package manager of a server.

    Installing a package replaces the repository content its filters
    include; building a package collects that content.
    """

    server_url = "http://localhost:4502"

    def __init__(self):
        self.repository: dict[str, bytes] = {}
        self.packages: dict[str, bytes] = {}
        self.uploaded: list[bytes] = []
        self.workspaces: list[Path] = []
        self.calls: list[tuple[str, str]] = []
        self.fail_on = None

    def _record(self, command, name):
        self.calls.append((command, name))
        if self.fail_on == command:
            raise RemoteProtocolError(
                f"{command} failed", url=self.server_url, status_code=500
            )

    @staticmethod
    def _entry(properties, key):
        return re.search(rf'key="{key}">([^<]*)<', properties).group(1)

    @staticmethod
    def _included(filters, path):
        return any(f.get_sync_status(path) is SyncVerdict.INCLUDED for f in filters)

    def _open(self, full_name):
        with zipfile.ZipFile(io.BytesIO(self.packages[full_name])) as zf:
            filter_xml = zf.read("META-INF/vault/filter.xml").decode()
            files = {
                "/" + name[len("jcr_root/") :]: zf.read(name)
                for name in zf.namelist()
                if name.startswith("jcr_root/") and not name.endswith("/")
            }
        return filter_xml, files

    def upload_package(self, package_path):
        package_path = Path(package_path)
        self.workspaces.append(package_path.parent)
        data = package_path.read_bytes()
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            properties = zf.read("META-INF/vault/properties.xml").decode()
        full_name = "{}/{}-{}.zip".format(
            self._entry(properties, "group"),
            self._entry(properties, "name"),
            self._entry(properties, "version"),
        )
        self._record("upload", full_name)
        self.uploaded.append(data)
        self.packages[full_name] = data
        return {"success": True, "msg": "Package uploaded"}

    def install_package(self, full_name):
        self._record("install", full_name)
        filter_xml, files = self._open(full_name)
        filters = parse_filter_string(filter_xml)
        for path in [p for p in self.repository if self._included(filters, p)]:
            del self.repository[path]
        for path, data in files.items():
            if self._included(filters, path):
                self.repository[path] = data
        return {"success": True, "msg": "Package installed"}

    def build_package(self, full_name):
        self._record("build", full_name)
        filter_xml, _ = self._open(full_name)
        filters = parse_filter_string(filter_xml)
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr("META-INF/vault/filter.xml", filter_xml)
            for path, data in sorted(self.repository.items()):
                if self._included(filters, path):
                    zf.writestr("jcr_root" + path, data)
        self.packages[full_name] = buffer.getvalue()
        return {"success": True, "msg": "Package built"}

    def download_package(self, full_name, output_path):
        self.workspaces.append(Path(output_path).parent)
        self._record("download", full_name)
        Path(output_path).write_bytes(self.packages[full_name])
        return output_path

    def delete_package(self, full_name):
        self._record("delete", full_name)
        self.packages.pop(full_name, None)
        return {"success": True, "msg": "Package deleted"}

    def commands(self):
        return [command for command, _ in self.calls]


@pytest.fixture
def checkout():
    """Create a checkout with a filter, an ignore file and some content."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir).resolve() / "pkg"
        vault = root / "META-INF" / "vault"
        vault.mkdir(parents=True)
        (vault / "filter.xml").write_text(FILTER_XML, encoding="utf-8")
        (root / ".vltignore").write_text("*.log\n")

        jcr_root = root / "jcr_root"
        for remote_path, content in (
            ("apps/myproj/.content.xml", "<jcr:root/>"),
            ("apps/myproj/a.html", "<p>a</p>"),
            ("apps/myproj/sub/b.html", "<p>b</p>"),
            ("apps/myproj/debug.log", "log"),
            ("etc/other.txt", "other"),
        ):
            path = jcr_root / remote_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        yield jcr_root


@pytest.fixture
def server():
    return FakePackageManager()


@pytest.fixture
def reporter():
    return Mock()


@pytest.fixture
def engine(server, reporter):
    """Create an engine with its own lock registry."""
    return VaultSyncEngine(server, reporter=reporter, locks=SyncLockRegistry())


def verdicts(results):
    return {r.path: r.verdict for r in results}


def phases(reporter):
    return [c.args[0] for c in reporter.report_progress.call_args_list]


class TestPush:
    """Tests for pushing content."""

    def test_push_results(self, engine, checkout):
        """Test the verdicts reported for a pushed folder."""
        results = engine.push(checkout / "apps" / "myproj")

        assert verdicts(results) == {
            "/apps/myproj/.content.xml": SyncVerdict.INCLUDED,
            "/apps/myproj/a.html": SyncVerdict.INCLUDED,
            "/apps/myproj/sub/b.html": SyncVerdict.INCLUDED,
            "/apps/myproj/debug.log": SyncVerdict.EXCLUDED_BY_IGNORE_FILE,
        }

    def test_push_installs_content(self, engine, server, checkout):
        """Test that included content reaches the repository."""
        engine.push(checkout / "apps" / "myproj")

        assert server.repository == {
            "/apps/myproj/.content.xml": b"<jcr:root/>",
            "/apps/myproj/a.html": b"<p>a</p>",
            "/apps/myproj/sub/b.html": b"<p>b</p>",
        }

    def test_push_package_lifecycle(self, engine, server, checkout):
        """Test upload, install and delete of one package."""
        engine.push(checkout / "apps" / "myproj")

        assert server.commands() == ["upload", "install", "delete"]
        names = {name for _, name in server.calls}
        assert len(names) == 1
        assert re.fullmatch(r"tmp/repo/repo_apps_myproj-\d+\.zip", names.pop())
        assert server.packages == {}

    def test_push_phases(self, engine, reporter, checkout):
        """Test the reported state transitions of a push."""
        results = engine.push(checkout / "apps" / "myproj")

        assert phases(reporter) == [
            SyncPhase.PARSING_FILTERS,
            SyncPhase.STAGING,
            SyncPhase.ARCHIVING,
            SyncPhase.UPLOADING,
            SyncPhase.INSTALLING,
            SyncPhase.CLEANING_UP,
            SyncPhase.DONE,
        ]
        reporter.report_result.assert_called_once_with(results)

    def test_push_removes_workspace(self, engine, server, checkout):
        """Test that the temporary workspace is gone after a push."""
        engine.push(checkout / "apps" / "myproj")

        assert server.workspaces
        assert not any(ws.exists() for ws in server.workspaces)

    def test_push_is_idempotent(self, engine, checkout):
        """Pushing twice without local changes gives the same verdicts."""
        first = engine.push(checkout / "apps" / "myproj")
        second = engine.push(checkout / "apps" / "myproj")

        assert verdicts(first) == verdicts(second)

    def test_push_sub_folder_narrows_filter(self, engine, server, checkout):
        """Test that pushing below a filter root only replaces that folder."""
        server.repository["/apps/myproj/keep.html"] = b"remote only"

        engine.push(checkout / "apps" / "myproj" / "sub")

        with zipfile.ZipFile(io.BytesIO(server.uploaded[-1])) as zf:
            filters = parse_filter_string(zf.read("META-INF/vault/filter.xml").decode())
        assert [f.root for f in filters] == ["/apps/myproj/sub"]
        assert server.repository == {
            "/apps/myproj/keep.html": b"remote only",
            "/apps/myproj/sub/b.html": b"<p>b</p>",
        }

    def test_push_single_file(self, engine, server, checkout):
        results = engine.push(checkout / "apps" / "myproj" / "a.html")

        assert verdicts(results) == {"/apps/myproj/a.html": SyncVerdict.INCLUDED}
        assert server.repository == {"/apps/myproj/a.html": b"<p>a</p>"}


class TestPull:
    """Tests for pulling content."""

    def test_round_trip_changes_nothing(self, engine, checkout):
        """Pulling what was just pushed rewrites and deletes nothing."""
        folder = checkout / "apps" / "myproj"
        engine.push(folder)
        files = [p for p in folder.rglob("*") if p.is_file()]
        for path in files:
            os.utime(path, (1_000_000, 1_000_000))

        results = engine.pull(folder)

        assert all(r.verdict is SyncVerdict.INCLUDED for r in results)
        assert len(results) == 3
        for path in files:
            assert path.exists()
            assert path.stat().st_mtime == 1_000_000

    def test_pull_lifecycle(self, engine, server, checkout):
        """Test upload, build, download and delete of one package."""
        engine.push(checkout / "apps" / "myproj")
        server.calls.clear()

        engine.pull(checkout / "apps" / "myproj")

        assert server.commands() == ["upload", "build", "download", "delete"]
        assert server.packages == {}
        assert not any(ws.exists() for ws in server.workspaces)

    def test_pull_phases(self, engine, reporter, checkout):
        engine.pull(checkout / "apps" / "myproj")

        assert phases(reporter) == [
            SyncPhase.PARSING_FILTERS,
            SyncPhase.STAGING,
            SyncPhase.ARCHIVING,
            SyncPhase.UPLOADING,
            SyncPhase.BUILDING,
            SyncPhase.DOWNLOADING,
            SyncPhase.EXTRACTING,
            SyncPhase.RECONCILING,
            SyncPhase.CLEANING_UP,
            SyncPhase.DONE,
        ]

    def test_pull_package_carries_only_filter(self, engine, server, checkout):
        """The uploaded pull package has no content and relevant filters only."""
        engine.pull(checkout / "apps" / "myproj")

        with zipfile.ZipFile(io.BytesIO(server.uploaded[-1])) as zf:
            names = zf.namelist()
            filters = parse_filter_string(zf.read("META-INF/vault/filter.xml").decode())
        assert not any(n.startswith("jcr_root/") and not n.endswith("/") for n in names)
        assert [f.root for f in filters] == ["/apps/myproj"]

    def test_pull_writes_remote_changes(self, engine, server, checkout):
        """Test that changed and new remote files are written locally."""
        folder = checkout / "apps" / "myproj"
        engine.push(folder)
        server.repository["/apps/myproj/a.html"] = b"<p>changed</p>"
        server.repository["/apps/myproj/new.html"] = b"<p>new</p>"

        results = engine.pull(folder)

        assert (folder / "a.html").read_text() == "<p>changed</p>"
        assert (folder / "new.html").read_text() == "<p>new</p>"
        assert verdicts(results)["/apps/myproj/new.html"] is SyncVerdict.INCLUDED

    def test_pull_detects_deletion(self, engine, server, checkout):
        """Files deleted on the server are deleted locally."""
        folder = checkout / "apps" / "myproj"
        engine.push(folder)
        del server.repository["/apps/myproj/sub/b.html"]

        results = engine.pull(folder)

        assert (
            verdicts(results)["/apps/myproj/sub/b.html"]
            is SyncVerdict.DELETED_FROM_REMOTE
        )
        assert not (folder / "sub" / "b.html").exists()
        # Ignored local files are left alone
        assert (folder / "debug.log").exists()

    def test_pull_uses_engine_cache(self, server, checkout):
        """Test that the injected cache is filled by a pull."""
        cache = SyncTimestampCache()
        engine = VaultSyncEngine(server, cache=cache, locks=SyncLockRegistry())
        folder = checkout / "apps" / "myproj"
        engine.push(folder)

        engine.pull(folder)

        assert cache.get("/apps/myproj/a.html") is not None


class TestFailures:
    """Tests for failing sync operations."""

    def test_install_failure(self, engine, server, reporter, checkout):
        """A failing install is raised after cleanup and package removal."""
        server.fail_on = "install"

        with pytest.raises(RemoteProtocolError, match="install failed"):
            engine.push(checkout / "apps" / "myproj")

        assert server.commands() == ["upload", "install", "delete"]
        assert not any(ws.exists() for ws in server.workspaces)
        assert phases(reporter)[-2:] == [SyncPhase.FAILED, SyncPhase.CLEANING_UP]
        reporter.report_result.assert_not_called()
        assert server.repository == {}

    def test_download_failure(self, engine, server, reporter, checkout):
        """Test that both workspaces are removed when a download fails."""
        server.fail_on = "download"

        with pytest.raises(RemoteProtocolError):
            engine.pull(checkout / "apps" / "myproj")

        assert server.commands() == ["upload", "build", "download", "delete"]
        assert len(server.workspaces) == 2
        assert not any(ws.exists() for ws in server.workspaces)
        assert SyncPhase.FAILED in phases(reporter)
        # Local content is untouched
        assert (checkout / "apps" / "myproj" / "a.html").exists()

    def test_delete_failure_after_error_is_not_raised(self, engine, server, checkout):
        """The original error wins over a failing package removal."""
        server.fail_on = "build"
        original_delete = server.delete_package

        def failing_delete(full_name):
            original_delete(full_name)
            raise RemoteProtocolError("delete failed", status_code=500)

        server.delete_package = failing_delete

        with pytest.raises(RemoteProtocolError, match="build failed"):
            engine.pull(checkout / "apps" / "myproj")

    def test_malformed_filter(self, engine, server, checkout):
        """A bad filter file fails before any remote call."""
        filter_file = checkout.parent / "META-INF" / "vault" / "filter.xml"
        filter_file.write_text("<workspaceFilter><filter>")

        with pytest.raises(MalformedFilterError):
            engine.push(checkout / "apps" / "myproj")
        assert server.calls == []

    def test_missing_filter(self, engine, server, checkout):
        (checkout.parent / "META-INF" / "vault" / "filter.xml").unlink()

        with pytest.raises(MalformedFilterError, match="does not exist"):
            engine.pull(checkout / "apps" / "myproj")
        assert server.calls == []

    def test_not_in_checkout(self, engine, checkout):
        outside = checkout.parent / "META-INF"
        with pytest.raises(NotInCheckoutError):
            engine.push(outside)

    def test_missing_path(self, engine, checkout):
        with pytest.raises(PathNotFoundError):
            engine.push(checkout / "apps" / "missing")


class TestExclusivity:
    """Tests for the one-sync-per-target rule."""

    def test_concurrent_sync_rejected(self, server, checkout):
        """A second sync of the same checkout and server is rejected."""
        locks = SyncLockRegistry()
        engine = VaultSyncEngine(server, locks=locks)

        with locks.hold(checkout, server.server_url):
            with pytest.raises(SyncInProgressError):
                engine.push(checkout / "apps" / "myproj")
        assert server.calls == []

    def test_other_server_allowed(self, server, checkout):
        locks = SyncLockRegistry()
        engine = VaultSyncEngine(server, locks=locks)

        with locks.hold(checkout, "http://other:4502"):
            engine.push(checkout / "apps" / "myproj")

    def test_lock_released_after_failure(self, server, checkout):
        locks = SyncLockRegistry()
        engine = VaultSyncEngine(server, locks=locks)
        server.fail_on = "upload"

        with pytest.raises(RemoteProtocolError):
            engine.push(checkout / "apps" / "myproj")

        assert not locks.is_locked(checkout, server.server_url)


class TestStatus:
    """Tests for computing verdicts without syncing."""

    def test_status_does_not_contact_server(self, engine, server, checkout):
        results = engine.status(checkout)

        assert verdicts(results)["/etc/other.txt"] is SyncVerdict.IGNORED
        assert verdicts(results)["/apps/myproj/a.html"] is SyncVerdict.INCLUDED
        assert server.calls == []

    def test_relative_path_with_parent_segments(
        self, engine, server, checkout, monkeypatch
    ):
        """Test that ``..`` in a relative sync path is collapsed."""
        monkeypatch.chdir(checkout / "etc")

        results = engine.status(Path("../apps/myproj"))

        assert verdicts(results) == {
            "/apps/myproj/.content.xml": SyncVerdict.INCLUDED,
            "/apps/myproj/a.html": SyncVerdict.INCLUDED,
            "/apps/myproj/sub/b.html": SyncVerdict.INCLUDED,
            "/apps/myproj/debug.log": SyncVerdict.EXCLUDED_BY_IGNORE_FILE,
        }

    def test_push_relative_path_with_parent_segments(
        self, engine, server, checkout, monkeypatch
    ):
        monkeypatch.chdir(checkout / "etc")

        engine.push(Path("../apps/myproj/sub"))

        assert server.repository == {"/apps/myproj/sub/b.html": b"<p>b</p>"}

    def test_sync_direction_values(self):
        assert SyncDirection("push") is SyncDirection.PUSH
        assert SyncPhase.PARSING_FILTERS.description == "Parsing filters"
