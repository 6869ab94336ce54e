"""
Read-only snapshot of the project's git references.

Branches (local and remote-tracking), tags and every reachable commit are
read once per run through the git CLI. The repository is never modified.
"""

import os
import subprocess
from typing import List, Optional, Set

from cleaner_utils.config_manager import config_manager
from cleaner_utils.logging_utils import get_logger
from stages_cleaner.exceptions import GitRepositoryError
from stages_cleaner.models import GitRefSnapshot

logger = get_logger(__name__)


def parse_ref_names(output: str):
    """Split ``git for-each-ref`` output into (branches, tags)."""
    branches: Set[str] = set()
    tags: Set[str] = set()
    for line in output.splitlines():
        refname = line.strip()
        if refname.startswith("refs/heads/"):
            branches.add(refname[len("refs/heads/"):])
        elif refname.startswith("refs/remotes/"):
            # refs/remotes/<remote>/<branch>
            parts = refname[len("refs/remotes/"):].split("/", 1)
            if len(parts) == 2 and parts[1] != "HEAD":
                branches.add(parts[1])
        elif refname.startswith("refs/tags/"):
            tags.add(refname[len("refs/tags/"):])
    return branches, tags


class GitReferenceResolver:
    """Snapshot branches, tags and reachable commits of a project repository."""

    def __init__(self, project_dir: str, timeout: Optional[int] = None):
        self.project_dir = project_dir
        self.timeout = timeout if timeout is not None else config_manager.get_git_timeout()

    def _git(self, args: List[str]) -> str:
        cmd = ["git", "-C", self.project_dir] + args
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=self.timeout)
            return result.stdout
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise GitRepositoryError(self.project_dir, RuntimeError(stderr or str(e))) from e
        except (subprocess.TimeoutExpired, FileNotFoundError) as e:
            raise GitRepositoryError(self.project_dir, e) from e

    def has_repository(self) -> bool:
        # ".git" is a file in worktrees and submodules
        return os.path.exists(os.path.join(self.project_dir, ".git"))

    def snapshot(self) -> GitRefSnapshot:
        """Take the snapshot.

        Returns:
            GitRefSnapshot (empty when there is no repository)

        Raises:
            GitRepositoryError: The repository exists but cannot be read
        """
        if not self.has_repository():
            logger.warning(
                f"⚠️  No git repository at {self.project_dir}: every git-based tag will be treated as orphaned"
            )
            return GitRefSnapshot.empty()

        refs_output = self._git(["for-each-ref", "--format=%(refname)", "refs/heads", "refs/remotes", "refs/tags"])
        branches, tags = parse_ref_names(refs_output)
        commits = {line.strip().lower() for line in self._git(["rev-list", "--all"]).splitlines() if line.strip()}

        logger.info(f"Git snapshot: {len(branches)} branches, {len(tags)} tags, {len(commits)} commits")
        return GitRefSnapshot(branches=frozenset(branches), tags=frozenset(tags), commits=frozenset(commits))
