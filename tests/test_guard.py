"""
Tests for agentmem.guard — workspace path containment.
"""

import os

import pytest

from agentmem.guard import PathViolation, WorkspaceGuard, resolve


@pytest.fixture
def root(tmp_path):
    ws = tmp_path / "workspace"
    (ws / "src").mkdir(parents=True)
    return ws


class TestResolve:
    def test_relative_inside(self, root):
        assert resolve("notes.md", root) == root.resolve() / "notes.md"

    def test_nested_nonexistent_tail(self, root):
        assert resolve("docs/new/file.md", root) == root.resolve() / "docs" / "new" / "file.md"

    def test_root_itself(self, root):
        assert resolve(".", root) == root.resolve()

    def test_absolute_inside(self, root):
        target = root / "src"
        assert resolve(str(target), root) == target.resolve()

    def test_dotdot_inside_is_folded(self, root):
        assert resolve("src/../notes.md", root) == root.resolve() / "notes.md"

    def test_traversal_rejected(self, root):
        with pytest.raises(PathViolation) as exc:
            resolve("../../etc/passwd", root)
        assert exc.value.candidate == "../../etc/passwd"

    def test_absolute_outside_rejected(self, root):
        with pytest.raises(PathViolation):
            resolve("/etc/passwd", root)

    def test_sibling_prefix_rejected(self, root, tmp_path):
        sibling = tmp_path / "workspace-evil"
        sibling.mkdir()
        with pytest.raises(PathViolation):
            resolve(str(sibling / "x"), root)

    def test_empty_rejected(self, root):
        with pytest.raises(PathViolation):
            resolve("", root)
        with pytest.raises(PathViolation):
            resolve("   ", root)

    def test_nul_rejected(self, root):
        with pytest.raises(PathViolation):
            resolve("a\x00b", root)

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
    def test_symlink_escape_rejected(self, root, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (root / "link").symlink_to(outside, target_is_directory=True)
        with pytest.raises(PathViolation):
            resolve("link/secret.txt", root)

    def test_violation_is_value_error(self, root):
        with pytest.raises(ValueError):
            resolve("../x", root)

    def test_violation_logged(self, root, caplog):
        with caplog.at_level("WARNING", logger="agentmem.guard"):
            with pytest.raises(PathViolation):
                resolve("../x", root)
        assert any("Path violation" in r.getMessage() for r in caplog.records)


class TestWorkspaceGuard:
    def test_root_is_canonical(self, root):
        guard = WorkspaceGuard(str(root / "src" / ".."))
        assert guard.root == root.resolve()

    def test_check_cwd(self, root):
        guard = WorkspaceGuard(root)
        assert guard.check_cwd(str(root / "src")) == (root / "src").resolve()
        with pytest.raises(PathViolation):
            guard.check_cwd(str(root.parent))

    def test_relative(self, root):
        guard = WorkspaceGuard(root)
        assert guard.relative(guard.resolve("src/a.py")) == os.path.join("src", "a.py")
        assert guard.relative(guard.root) == "."
