"""
Pytest configuration file.

Sets up the Python path so test files can import from the python/ directory,
and provides in-memory images repo / stages storage fakes.
"""
import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)

# The module-level config manager must not validate a developer's config.yaml
os.environ.setdefault("SKIP_CONFIG_VALIDATION", "true")

from stages_cleaner.models import GitRefSnapshot, ImageTag, LiveImageSet, Stage, TagScheme  # noqa: E402
from stages_cleaner.storage import ImagesRepo, StagesStorage  # noqa: E402

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
IMAGES_REPO = "registry.example.com/myproject"


def make_tag(
    tag,
    days_old=0,
    digest=None,
    scheme=TagScheme.GIT_BRANCH,
    git_ref=None,
    image_name="app",
    now=NOW,
):
    """Build an ImageTag the way the registry listing would."""
    repository = f"{IMAGES_REPO}/{image_name}" if image_name else IMAGES_REPO
    return ImageTag(
        image_name=image_name,
        tag=tag,
        final_stage_digest=digest,
        created_at=now - timedelta(days=days_old),
        repository=repository,
        scheme=scheme,
        git_ref=git_ref if git_ref is not None else (tag if scheme is not TagScheme.CUSTOM else None),
    )


def make_stage(digest, parent=None, days_old=0):
    return Stage(digest=digest, parent_digest=parent, location=f"image-stage-{digest}", created_at=NOW - timedelta(days=days_old))


class FakeImagesRepo(ImagesRepo):
    """Images repo backed by a dict of image name -> tags."""

    def __init__(self, tags=None, fail_delete=(), list_error=None):
        self.tags = {}
        for tag in tags or []:
            self.tags.setdefault(tag.image_name, []).append(tag)
        self.fail_delete = set(fail_delete)
        self.list_error = list_error
        self.deleted = []
        self.list_calls = []
        self._lock = threading.Lock()

    def list_tags(self, image_name):
        self.list_calls.append(image_name)
        if self.list_error is not None:
            raise self.list_error
        return list(self.tags.get(image_name, []))

    def delete_tag(self, tag):
        if tag.reference in self.fail_delete:
            raise RuntimeError(f"DELETE {tag.reference}: 500 internal server error")
        with self._lock:
            self.deleted.append(tag.reference)
            self.tags[tag.image_name] = [t for t in self.tags[tag.image_name] if t.reference != tag.reference]

    def remaining(self, image_name="app"):
        return sorted(t.tag for t in self.tags.get(image_name, []))


class FakeStagesStorage(StagesStorage):
    """Stages storage backed by a list."""

    def __init__(self, stages=None, fail_delete=(), list_error=None):
        self.stages = list(stages or [])
        self.fail_delete = set(fail_delete)
        self.list_error = list_error
        self.deleted = []
        self._lock = threading.Lock()

    @property
    def address(self):
        return "fake://stages"

    def list_stages(self):
        if self.list_error is not None:
            raise self.list_error
        return list(self.stages)

    def delete_stage(self, stage):
        if stage.digest in self.fail_delete:
            raise RuntimeError(f"cannot delete {stage.digest}: permission denied")
        with self._lock:
            self.deleted.append(stage.digest)
            self.stages = [s for s in self.stages if s.digest != stage.digest]

    def remaining(self):
        return sorted(s.digest for s in self.stages)


class FakeGitResolver:
    def __init__(self, snapshot=None, error=None):
        self._snapshot = snapshot if snapshot is not None else GitRefSnapshot.empty()
        self.error = error
        self.calls = 0

    def snapshot(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self._snapshot


class FakeWorkloadScanner:
    def __init__(self, references=(), error=None):
        self.references = references
        self.error = error
        self.calls = []

    def scan(self, without_kube=False):
        self.calls.append(without_kube)
        if self.error is not None:
            raise self.error
        if without_kube:
            return LiveImageSet.disabled()
        return LiveImageSet.from_references(self.references)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def snapshot():
    """main and feature/login exist, plus v1.0 and two commits."""
    return GitRefSnapshot(
        branches=frozenset({"main", "feature/login"}),
        tags=frozenset({"v1.0"}),
        commits=frozenset({"a1b2c3d4e5f60718293a4b5c6d7e8f9012345678", "0f1e2d3c4b5a69788796a5b4c3d2e1f001234567"}),
    )
