"""Tests for directory scanning and the sync status builder."""

import re
import tempfile
from pathlib import Path

import pytest

from pyvault.exceptions import PathNotFoundError
from pyvault.sync.filters import Filter, FilterRule, RuleKind
from pyvault.sync.ignore import IgnoreRuleSet
from pyvault.sync.scanner import (
    SyncStatusBuilder,
    build_sync_status_list,
    list_descendants,
)
from pyvault.sync.verdict import SyncVerdict

NO_IGNORES = IgnoreRuleSet.compile("")


def include(pattern):
    return FilterRule(RuleKind.INCLUDE, re.compile(pattern))


def exclude(pattern):
    return FilterRule(RuleKind.EXCLUDE, re.compile(pattern))


@pytest.fixture
def jcr_root():
    """Create an empty jcr_root folder."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir) / "pkg" / "jcr_root"
        root.mkdir(parents=True)
        yield root


def write(root: Path, remote_path: str, content: str = "x") -> Path:
    path = root / remote_path.lstrip("/")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class TestListDescendants:
    """Tests for list_descendants."""

    def test_lists_files_recursively(self, jcr_root):
        """Test that only files are returned, sorted."""
        write(jcr_root, "/apps/b.txt")
        write(jcr_root, "/apps/a/c.txt")
        (jcr_root / "apps" / "empty").mkdir()

        files = list_descendants(jcr_root / "apps")

        assert [f.relative_to(jcr_root).as_posix() for f in files] == [
            "apps/a/c.txt",
            "apps/b.txt",
        ]

    def test_file_returns_itself(self, jcr_root):
        path = write(jcr_root, "/apps/a.txt")
        assert list_descendants(path) == [path]

    def test_missing_path(self, jcr_root):
        """Test that a missing path raises PathNotFoundError."""
        with pytest.raises(PathNotFoundError):
            list_descendants(jcr_root / "missing")


class TestSyncStatusBuilder:
    """Tests for SyncStatusBuilder."""

    def test_included_tree(self, jcr_root):
        """Every file matched by an include rule is included."""
        write(jcr_root, "/apps/myproj/a.html")
        write(jcr_root, "/apps/myproj/sub/b.html")
        f = Filter("/apps/myproj", [include("/apps/myproj(/.*)?")])

        status = build_sync_status_list([f], NO_IGNORES, jcr_root / "apps" / "myproj")

        assert set(status) == {"/apps/myproj/a.html", "/apps/myproj/sub/b.html"}
        for entry in status.values():
            assert entry.verdict is SyncVerdict.INCLUDED
            assert entry.filter is f

    def test_ignore_file_overrides_include(self, jcr_root):
        """Included files matching an ignore pattern are excluded by it."""
        write(jcr_root, "/apps/myproj/a.html")
        write(jcr_root, "/apps/myproj/debug.log")
        write(jcr_root, "/apps/myproj/sub/deep/trace.log")
        f = Filter("/apps/myproj")

        status = build_sync_status_list(
            [f], IgnoreRuleSet.compile("**/*.log"), jcr_root / "apps" / "myproj"
        )

        assert status["/apps/myproj/a.html"].verdict is SyncVerdict.INCLUDED
        for path in ("/apps/myproj/debug.log", "/apps/myproj/sub/deep/trace.log"):
            assert status[path].verdict is SyncVerdict.EXCLUDED_BY_IGNORE_FILE
            assert status[path].filter is None

    def test_ignore_rules_not_applied_to_excluded(self, jcr_root):
        """Test that filter exclusion is kept for ignored files."""
        write(jcr_root, "/apps/myproj/a.log")
        f = Filter("/apps/myproj", [exclude(r"\.log$")])

        status = build_sync_status_list(
            [f], IgnoreRuleSet.compile("*.log"), jcr_root / "apps"
        )

        assert status["/apps/myproj/a.log"].verdict is SyncVerdict.EXCLUDED

    def test_ignore_rules_are_relative_to_synced_folder(self, jcr_root):
        """Anchored ignore patterns are relative to the synced folder."""
        write(jcr_root, "/apps/myproj/target/a.class")
        f = Filter("/apps/myproj")
        rules = IgnoreRuleSet.compile("/target")

        from_project = build_sync_status_list([f], rules, jcr_root / "apps" / "myproj")
        from_apps = build_sync_status_list([f], rules, jcr_root / "apps")

        path = "/apps/myproj/target/a.class"
        assert from_project[path].verdict is SyncVerdict.EXCLUDED_BY_IGNORE_FILE
        assert from_apps[path].verdict is SyncVerdict.INCLUDED

    def test_uncovered_paths_are_ignored(self, jcr_root):
        write(jcr_root, "/etc/config.txt")
        status = build_sync_status_list(
            [Filter("/apps/myproj")], NO_IGNORES, jcr_root
        )
        assert status["/etc/config.txt"].verdict is SyncVerdict.IGNORED
        assert status["/etc/config.txt"].filter is None

    def test_first_include_sticks(self, jcr_root):
        """An include by an earlier filter cannot be overridden later."""
        write(jcr_root, "/apps/myproj/a.html")
        including = Filter("/apps/myproj")
        excluding = Filter("/apps", [exclude(".*")])

        status = build_sync_status_list(
            [including, excluding], NO_IGNORES, jcr_root / "apps"
        )

        entry = status["/apps/myproj/a.html"]
        assert entry.verdict is SyncVerdict.INCLUDED
        assert entry.filter is including

    def test_later_include_beats_earlier_exclude(self, jcr_root):
        """Test that a later including filter wins over an excluding one."""
        write(jcr_root, "/apps/myproj/a.html")
        excluding = Filter("/apps", [exclude(".*")])
        including = Filter("/apps/myproj")

        status = build_sync_status_list(
            [excluding, including], NO_IGNORES, jcr_root / "apps"
        )

        entry = status["/apps/myproj/a.html"]
        assert entry.verdict is SyncVerdict.INCLUDED
        assert entry.filter is including

    def test_last_non_ignored_verdict_wins(self, jcr_root):
        """Without an include, the last filter covering the path decides."""
        write(jcr_root, "/apps/myproj/a.html")
        first = Filter("/apps", [exclude(".*")])
        second = Filter("/apps/myproj", [exclude(r"\.html$")])
        unrelated = Filter("/content")

        status = build_sync_status_list(
            [first, second, unrelated], NO_IGNORES, jcr_root / "apps"
        )

        entry = status["/apps/myproj/a.html"]
        assert entry.verdict is SyncVerdict.EXCLUDED
        assert entry.filter is second

    def test_content_xml_follows_its_folder(self, jcr_root):
        """A .content.xml is evaluated as the folder it describes."""
        write(jcr_root, "/apps/myproj/comp/.content.xml")
        write(jcr_root, "/apps/myproj/comp/a.html")
        f = Filter("/apps/myproj", [include("/apps/myproj/comp$")])

        status = build_sync_status_list([f], NO_IGNORES, jcr_root / "apps")

        assert status["/apps/myproj/comp/.content.xml"].verdict is SyncVerdict.INCLUDED
        assert status["/apps/myproj/comp/a.html"].verdict is SyncVerdict.EXCLUDED

    def test_content_xml_included_when_only_marker_matches(self, jcr_root):
        """A rule matching the marker but not its folder still includes it."""
        write(jcr_root, "/apps/myproj/comp/.content.xml")
        write(jcr_root, "/apps/myproj/comp/a.html")
        f = Filter("/apps/myproj", [include(r".*\.xml$")])

        status = build_sync_status_list([f], NO_IGNORES, jcr_root / "apps")

        marker = status["/apps/myproj/comp/.content.xml"]
        assert marker.verdict is SyncVerdict.INCLUDED
        assert marker.filter is f
        assert status["/apps/myproj/comp/a.html"].verdict is SyncVerdict.EXCLUDED

    def test_content_xml_of_excluded_folder_is_included(self, jcr_root):
        write(jcr_root, "/apps/myproj/comp/.content.xml")
        f = Filter("/apps/myproj", [exclude("/apps/myproj/comp.*")])

        status = build_sync_status_list([f], NO_IGNORES, jcr_root / "apps")

        assert status["/apps/myproj/comp/.content.xml"].verdict is SyncVerdict.INCLUDED

    def test_content_xml_of_filter_root_is_included(self, jcr_root):
        """Test that the root folder's .content.xml is always included."""
        write(jcr_root, "/apps/myproj/.content.xml")
        f = Filter("/apps/myproj", [include("/apps/myproj/only$")])

        status = build_sync_status_list([f], NO_IGNORES, jcr_root / "apps")

        assert status["/apps/myproj/.content.xml"].verdict is SyncVerdict.INCLUDED

    def test_single_file(self, jcr_root):
        """Test building the status of a single file."""
        path = write(jcr_root, "/apps/myproj/a.tmp")
        f = Filter("/apps/myproj")

        status = build_sync_status_list([f], IgnoreRuleSet.compile("*.tmp"), path)

        assert status == {
            "/apps/myproj/a.tmp": status["/apps/myproj/a.tmp"],
        }
        assert status["/apps/myproj/a.tmp"].verdict is SyncVerdict.EXCLUDED_BY_IGNORE_FILE

    def test_missing_root(self, jcr_root):
        builder = SyncStatusBuilder([Filter("/apps")], NO_IGNORES)
        with pytest.raises(PathNotFoundError):
            builder.build(jcr_root / "apps" / "missing")

    def test_custom_lister(self, jcr_root):
        """Test that the directory enumeration can be replaced."""
        visible = write(jcr_root, "/apps/myproj/a.html")
        write(jcr_root, "/apps/myproj/hidden.html")

        builder = SyncStatusBuilder(
            [Filter("/apps/myproj")], NO_IGNORES, lister=lambda path: [visible]
        )
        status = builder.build(jcr_root / "apps")

        assert list(status) == ["/apps/myproj/a.html"]

    def test_idempotent(self, jcr_root):
        """Building twice without changes gives identical verdicts."""
        write(jcr_root, "/apps/myproj/a.html")
        write(jcr_root, "/apps/myproj/b.tmp")
        builder = SyncStatusBuilder(
            [Filter("/apps/myproj")], IgnoreRuleSet.compile("*.tmp")
        )

        first = builder.build(jcr_root / "apps")
        second = builder.build(jcr_root / "apps")

        assert {p: e.verdict for p, e in first.items()} == {
            p: e.verdict for p, e in second.items()
        }
