"""Tests for git change detection."""

import pytest

from repochat import (
    MODE_COMMITTED,
    MODE_WORKING_TREE,
    ChangeDetectionError,
    ChangeDetector,
    GitRepository,
)


class TestChangeDetectorWithFakeVCS:
    """Test drift detection logic independent of git."""

    def test_no_drift(self, fake_vcs):
        detector = ChangeDetector(fake_vcs)

        change = detector.detect({"repo_path": "/repo", "last_known_commit_hash": "rev1"})

        assert change["is_dirty"] is False
        assert change["paths"] == []
        assert change["current_revision"] == "rev1"

    def test_committed_drift_lists_diff(self, fake_vcs):
        fake_vcs.revision = "rev2"
        fake_vcs.committed_changes["rev1"] = ["a.js", "src/b.ts"]
        detector = ChangeDetector(fake_vcs)

        change = detector.detect({"repo_path": "/repo", "last_known_commit_hash": "rev1"})

        assert change["is_dirty"] is True
        assert change["previous_revision"] == "rev1"
        assert change["paths"] == ["a.js", "src/b.ts"]

    def test_committed_mode_ignores_working_tree(self, fake_vcs):
        fake_vcs.working_changes = ["b.js"]
        detector = ChangeDetector(fake_vcs)

        change = detector.detect({"repo_path": "/repo", "last_known_commit_hash": "rev1"}, MODE_COMMITTED)

        assert change["paths"] == []

    def test_working_tree_mode_unions_and_deduplicates(self, fake_vcs):
        fake_vcs.revision = "rev2"
        fake_vcs.committed_changes["rev1"] = ["a.js", "b.js"]
        fake_vcs.working_changes = ["b.js", "c.js"]
        detector = ChangeDetector(fake_vcs)

        change = detector.detect({"repo_path": "/repo", "last_known_commit_hash": "rev1"}, MODE_WORKING_TREE)

        assert change["paths"] == ["a.js", "b.js", "c.js"]

    def test_unknown_mode_rejected(self, fake_vcs):
        with pytest.raises(ValueError):
            ChangeDetector(fake_vcs).detect({"repo_path": "/repo", "last_known_commit_hash": "rev1"}, "staged")

    def test_vcs_failure_propagates(self, fake_vcs):
        fake_vcs.error = ChangeDetectionError("not a git repository")

        with pytest.raises(ChangeDetectionError):
            ChangeDetector(fake_vcs).detect({"repo_path": "/repo", "last_known_commit_hash": "rev1"})


class TestGitRepository:
    """Test the git CLI wrapper against a real repository."""

    def test_is_repository(self, git_repo, temp_dir):
        assert GitRepository.is_repository(str(git_repo.path))
        assert not GitRepository.is_repository(str(temp_dir))
        assert not GitRepository.is_repository("")

    def test_current_revision_matches_head(self, git_repo):
        head = git_repo.git("rev-parse", "HEAD").strip()

        assert GitRepository(git_repo.path).current_revision() == head

    def test_changed_paths_since(self, git_repo):
        vcs = GitRepository(git_repo.path)
        first = vcs.current_revision()
        git_repo.write("a.js", "function alpha() {\n  return 'A';\n}\n")
        git_repo.write("lib/c.js", "const c = 3;\n")
        git_repo.commit("second")

        assert sorted(vcs.changed_paths_since(first)) == ["a.js", "lib/c.js"]

    def test_changed_paths_include_deletions(self, git_repo):
        vcs = GitRepository(git_repo.path)
        first = vcs.current_revision()
        (git_repo.path / "b.js").unlink()
        git_repo.commit("remove b")

        assert vcs.changed_paths_since(first) == ["b.js"]

    def test_empty_commit_has_no_changed_paths(self, git_repo):
        vcs = GitRepository(git_repo.path)
        first = vcs.current_revision()
        second = git_repo.commit("empty")

        assert second != first
        assert vcs.changed_paths_since(first) == []

    def test_working_tree_changes(self, git_repo):
        git_repo.write("b.js", "function beta() {\n  return 'B';\n}\n")
        git_repo.write("new/untracked.js", "let u;\n")

        paths = GitRepository(git_repo.path).working_tree_changed_paths()

        assert sorted(paths) == ["b.js", "new/untracked.js"]

    def test_committed_rename_lists_both_paths(self, git_repo):
        vcs = GitRepository(git_repo.path)
        first = vcs.current_revision()
        git_repo.git("mv", "a.js", "renamed.js")
        git_repo.commit("rename")

        assert sorted(vcs.changed_paths_since(first)) == ["a.js", "renamed.js"]

    def test_staged_rename_lists_both_paths(self, git_repo):
        git_repo.git("mv", "a.js", "moved.js")

        paths = GitRepository(git_repo.path).working_tree_changed_paths()

        assert sorted(paths) == ["a.js", "moved.js"]

    def test_clean_working_tree(self, git_repo):
        assert GitRepository(git_repo.path).working_tree_changed_paths() == []

    def test_unknown_revision_raises(self, git_repo):
        with pytest.raises(ChangeDetectionError):
            GitRepository(git_repo.path).changed_paths_since("0" * 40)

    def test_not_a_repository_raises(self, temp_dir):
        plain = temp_dir / "plain"
        plain.mkdir()

        with pytest.raises(ChangeDetectionError):
            GitRepository(plain).current_revision()
