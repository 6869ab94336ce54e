"""
Records shared by the cleanup phases.

Snapshot and option records are frozen: they are built once at the start
of a run and every decision in that run reads the same values.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from cleaner_utils.tag_matching import normalize_image_reference, ref_matches

# Labels written by the build on published images and cached stages
TAG_STRATEGY_LABEL = "werf-tag-strategy"
GIT_REF_LABEL = "werf-git-ref"
STAGE_DIGEST_LABEL = "werf-stage-digest"
PARENT_STAGE_DIGEST_LABEL = "werf-parent-stage-digest"

MIN_COMMIT_ABBREV = 7


class TagScheme(Enum):
    """How a published tag relates to git."""

    GIT_BRANCH = "git-branch"
    GIT_TAG = "git-tag"
    GIT_COMMIT = "git-commit"
    CUSTOM = "custom"

    @property
    def is_git_based(self) -> bool:
        return self is not TagScheme.CUSTOM

    @classmethod
    def parse(cls, value: str) -> "TagScheme":
        normalized = str(value).strip().lower().replace("_", "-")
        aliases = {"gitbranch": "git-branch", "gittag": "git-tag", "gitcommit": "git-commit"}
        normalized = aliases.get(normalized, normalized)
        for scheme in cls:
            if scheme.value == normalized:
                return scheme
        raise ValueError(f"Unknown tag scheme '{value}' (expected one of: {', '.join(s.value for s in cls)})")


@dataclass(frozen=True)
class Stage:
    """A cached, content-addressed build stage."""

    digest: str
    parent_digest: Optional[str]
    location: str
    created_at: datetime


@dataclass(frozen=True)
class ImageTag:
    """A published tag in the images repo."""

    image_name: str
    tag: str
    final_stage_digest: Optional[str]
    created_at: datetime
    repository: str = ""
    scheme: TagScheme = TagScheme.CUSTOM
    git_ref: Optional[str] = None
    manifest_digest: Optional[str] = None

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}" if self.repository else self.tag

    @property
    def ref(self) -> str:
        """The git reference (or, for custom tags, the tag) this tag was built from."""
        return self.git_ref or self.tag


@dataclass(frozen=True)
class GitRefSnapshot:
    """Branches, tags and reachable commits of the project repository at run start."""

    branches: FrozenSet[str] = frozenset()
    tags: FrozenSet[str] = frozenset()
    commits: FrozenSet[str] = frozenset()

    @classmethod
    def empty(cls) -> "GitRefSnapshot":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not (self.branches or self.tags or self.commits)

    def has_branch(self, ref: str) -> bool:
        return ref in self.branches or any(ref_matches(ref, branch) for branch in self.branches)

    def has_tag(self, ref: str) -> bool:
        return ref in self.tags or any(ref_matches(ref, tag) for tag in self.tags)

    def has_commit(self, ref: str) -> bool:
        ref = ref.lower()
        if ref in self.commits:
            return True
        if len(ref) < MIN_COMMIT_ABBREV:
            return False
        matches = [commit for commit in self.commits if commit.startswith(ref)]
        return len(matches) == 1

    def has_ref(self, scheme: TagScheme, ref: str) -> bool:
        if scheme is TagScheme.GIT_BRANCH:
            return self.has_branch(ref)
        if scheme is TagScheme.GIT_TAG:
            return self.has_tag(ref)
        if scheme is TagScheme.GIT_COMMIT:
            return self.has_commit(ref)
        return True


@dataclass(frozen=True)
class CleanupPolicy:
    """Retention rule for tags of one scheme whose reference matches ``pattern``."""

    scheme: TagScheme
    pattern: str = "*"
    keep_last: int = 0
    expire_after: Optional[timedelta] = None

    def __post_init__(self):
        if self.keep_last < 0:
            raise ValueError(f"keep_last must be >= 0, got {self.keep_last}")
        if self.expire_after is not None and self.expire_after <= timedelta(0):
            raise ValueError(f"expire_after must be positive, got {self.expire_after}")

    def describe(self) -> str:
        expiry = f", expire after {self.expire_after}" if self.expire_after else ""
        return f"{self.scheme.value}:{self.pattern} (keep last {self.keep_last}{expiry})"


@dataclass(frozen=True)
class LiveImageSet:
    """Image references running in the cluster at run start."""

    references: FrozenSet[str] = frozenset()
    failed_namespaces: Tuple[str, ...] = ()
    scanned_contexts: Tuple[str, ...] = ()
    enabled: bool = True

    @classmethod
    def disabled(cls) -> "LiveImageSet":
        return cls(enabled=False)

    @classmethod
    def from_references(cls, references, **kwargs) -> "LiveImageSet":
        return cls(references=frozenset(normalize_image_reference(r) for r in references), **kwargs)

    def contains(self, reference: str) -> bool:
        return normalize_image_reference(reference) in self.references

    def protects(self, tag: ImageTag) -> bool:
        if self.contains(tag.reference):
            return True
        if tag.manifest_digest and tag.repository:
            return self.contains(f"{tag.repository}@{tag.manifest_digest}")
        return False


@dataclass(frozen=True)
class CleanupRunOptions:
    """Everything one cleanup run needs; immutable for the duration of the run."""

    project_name: str
    images_repo: str
    stages_storage: str
    image_names: Tuple[str, ...]
    policies: Tuple[CleanupPolicy, ...]
    dry_run: bool = False
    without_kube: bool = False

    @property
    def lock_key(self) -> str:
        return f"project.{self.project_name}"


class DecisionReason(Enum):
    KEEP_LAST = "keep-last"
    NOT_EXPIRED = "not-expired"
    EXPIRED = "expired"
    ORPHAN = "orphan"
    NO_MATCHING_POLICY = "no-matching-policy"
    CLUSTER_PROTECTED = "cluster-protected"


@dataclass(frozen=True)
class TagDecision:
    tag: ImageTag
    keep: bool
    reason: DecisionReason
    policy: Optional[str] = None


@dataclass(frozen=True)
class ItemError:
    """A single failed deletion."""

    phase: str
    item: str
    error: str


@dataclass
class ImagesPhaseResult:
    deleted: List[ImageTag] = field(default_factory=list)
    kept: List[ImageTag] = field(default_factory=list)
    protected: List[ImageTag] = field(default_factory=list)
    failed: List[ImageTag] = field(default_factory=list)
    decisions: List[TagDecision] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)
    attempted: int = 0

    @property
    def surviving_tags(self) -> List[ImageTag]:
        """Tags still in the registry once this phase is applied."""
        return self.kept + self.protected + self.failed

    def summary(self) -> Dict[str, Any]:
        return {
            "deleted": len(self.deleted),
            "kept": len(self.kept),
            "protected": len(self.protected),
            "failed": len(self.failed),
        }


@dataclass
class StagesPhaseResult:
    deleted: List[Stage] = field(default_factory=list)
    kept: List[Stage] = field(default_factory=list)
    failed: List[Stage] = field(default_factory=list)
    errors: List[ItemError] = field(default_factory=list)
    attempted: int = 0

    def summary(self) -> Dict[str, Any]:
        return {"deleted": len(self.deleted), "kept": len(self.kept), "failed": len(self.failed)}


class CleanupState(Enum):
    IDLE = "idle"
    ACQUIRING_LOCK = "acquiring_lock"
    IMAGES_PHASE = "images_phase"
    STAGES_PHASE = "stages_phase"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CleanupReport:
    project_name: str
    dry_run: bool
    state: CleanupState = CleanupState.IDLE
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    images: Optional[ImagesPhaseResult] = None
    stages: Optional[StagesPhaseResult] = None
    warnings: List[str] = field(default_factory=list)
    fatal_error: Optional[str] = None
    lock_released: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state is CleanupState.DONE

    @property
    def errors(self) -> List[ItemError]:
        errors: List[ItemError] = []
        if self.images:
            errors.extend(self.images.errors)
        if self.stages:
            errors.extend(self.stages.errors)
        return errors

    def to_dict(self) -> Dict[str, Any]:
        images = self.images or ImagesPhaseResult()
        stages = self.stages or StagesPhaseResult()
        return {
            "project": self.project_name,
            "dry_run": self.dry_run,
            "state": self.state.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "fatal_error": self.fatal_error,
            "warnings": list(self.warnings),
            "images": {
                "summary": images.summary(),
                "decisions": [
                    {
                        "image": d.tag.image_name,
                        "tag": d.tag.tag,
                        "reference": d.tag.reference,
                        "keep": d.keep,
                        "reason": d.reason.value,
                        "policy": d.policy,
                    }
                    for d in images.decisions
                ],
                "deleted": [t.reference for t in images.deleted],
            },
            "stages": {
                "summary": stages.summary(),
                "deleted": [s.digest for s in stages.deleted],
            },
            "errors": [{"phase": e.phase, "item": e.item, "error": e.error} for e in self.errors],
        }
