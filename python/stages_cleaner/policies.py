"""
Retention policies for published image tags.

``decide``/``evaluate_tags`` are pure: every input, including the current
time, is passed in, so the same inputs always give the same decisions in
dry-run and real runs.

Policies come from one of three places, first match wins:
- ``--images-cleanup-policies`` pointing at a YAML file
- ``--images-cleanup-policies`` compact string, e.g.
  ``git-branch:*;git-tag:v*:keep=10:expire=30d;custom:*:keep=5``
- ``cleanup.policies`` in config.yaml (built-in defaults otherwise)
"""

import os
import re
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import yaml

from cleaner_utils.error_utils import create_config_error
from cleaner_utils.tag_matching import matches_pattern
from stages_cleaner.models import (
    CleanupPolicy,
    DecisionReason,
    GitRefSnapshot,
    ImageTag,
    TagDecision,
    TagScheme,
)

POLICY_OPTION = "images-cleanup-policies"

_DURATION_UNITS = {"w": 7 * 24 * 3600, "d": 24 * 3600, "h": 3600, "m": 60, "s": 1}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)([wdhms])")
_KEEP_KEYS = ("keep", "keep_last", "keeplast", "last", "limit")
_EXPIRE_KEYS = ("expire", "expire_after", "expireafter", "in")


def parse_duration(value: Any) -> Optional[timedelta]:
    """Parse ``30d``, ``12h``, ``1w2d``, ``90m`` or a number of seconds.

    Returns None for empty values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=value)

    text = str(value).strip().lower()
    if text.isdigit():
        return timedelta(seconds=int(text))

    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"Invalid duration '{value}' (expected e.g. 30d, 12h, 90m, 2w, 45s)")
    return timedelta(seconds=seconds)


def _first_key(mapping: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in mapping:
            return mapping[key]
    return None


def policy_from_mapping(data: Dict[str, Any]) -> CleanupPolicy:
    """Build a policy from a ``{scheme, pattern, keep_last, expire_after}`` mapping."""
    if not isinstance(data, dict) or "scheme" not in data:
        raise ValueError(f"Policy must be a mapping with a 'scheme' key, got: {data!r}")
    normalized = {str(k).lower().replace("-", "_"): v for k, v in data.items()}
    keep = _first_key(normalized, _KEEP_KEYS)
    return CleanupPolicy(
        scheme=TagScheme.parse(normalized["scheme"]),
        pattern=str(normalized.get("pattern") or "*"),
        keep_last=int(keep) if keep is not None else 0,
        expire_after=parse_duration(_first_key(normalized, _EXPIRE_KEYS)),
    )


def parse_policy_string(text: str) -> List[CleanupPolicy]:
    """Parse ``scheme:pattern[:keep=N][:expire=DUR]`` entries separated by ``;``."""
    policies = []
    for entry in text.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        data: Dict[str, Any] = {"scheme": parts[0]}
        rest = parts[1:]
        if rest and "=" not in rest[0]:
            data["pattern"] = rest.pop(0)
        for option in rest:
            key, sep, value = option.partition("=")
            if not sep:
                raise ValueError(f"Invalid policy option '{option}' in '{entry}' (expected key=value)")
            data[key.strip()] = value.strip()
        policies.append(policy_from_mapping(data))
    return policies


def policies_from_data(data: Any) -> List[CleanupPolicy]:
    """Policies from parsed YAML: a list of mappings or ``{policies: [...]}``."""
    if isinstance(data, dict) and "policies" in data:
        data = data["policies"]
    if not isinstance(data, list):
        raise ValueError(f"Policies must be a list of mappings, got: {type(data).__name__}")
    return [policy_from_mapping(item) for item in data]


def load_policies(spec: Optional[str], config_policies: Optional[Iterable[Dict[str, Any]]] = None) -> Tuple[CleanupPolicy, ...]:
    """Resolve the policies for a run.

    Raises:
        ActionableError: The policy file or string is invalid
    """
    try:
        if spec:
            if os.path.isfile(spec):
                with open(spec, "r") as f:
                    return tuple(policies_from_data(yaml.safe_load(f) or []))
            return tuple(parse_policy_string(spec))
        return tuple(policies_from_data(list(config_policies or [])))
    except (ValueError, yaml.YAMLError, OSError) as e:
        raise create_config_error(POLICY_OPTION if spec else "cleanup.policies", spec, str(e)) from e


def policy_applies(policy: CleanupPolicy, tag: ImageTag) -> bool:
    return policy.scheme is tag.scheme and matches_pattern(tag.ref, policy.pattern)


GroupKey = Tuple[str, TagScheme, Optional[str]]


def _group_key(tag: ImageTag) -> GroupKey:
    # Custom tags of an image share one group; git tags group per reference
    return tag.image_name, tag.scheme, None if tag.scheme is TagScheme.CUSTOM else tag.ref


def _rank_key(tag: ImageTag) -> Tuple[float, str, str]:
    # Newest first; ties go to the smaller stage digest, then the tag name
    return -tag.created_at.timestamp(), tag.final_stage_digest or "", tag.tag


class TagRanking:
    """Position of each candidate within its keep-last group, per policy.

    Groups are built and sorted once per policy, on first use.
    """

    def __init__(self, candidates: Iterable[ImageTag]):
        self.candidates = list(candidates)
        self._groups: Dict[CleanupPolicy, Dict[GroupKey, List[ImageTag]]] = {}
        self._ranks: Dict[CleanupPolicy, Dict[ImageTag, int]] = {}

    def _build(self, policy: CleanupPolicy) -> None:
        groups: Dict[GroupKey, List[ImageTag]] = defaultdict(list)
        for candidate in self.candidates:
            if policy_applies(policy, candidate):
                groups[_group_key(candidate)].append(candidate)
        ranks: Dict[ImageTag, int] = {}
        for group in groups.values():
            group.sort(key=_rank_key)
            for position, member in enumerate(group):
                ranks.setdefault(member, position)
        self._groups[policy] = dict(groups)
        self._ranks[policy] = ranks

    def rank(self, tag: ImageTag, policy: CleanupPolicy) -> int:
        if policy not in self._ranks:
            self._build(policy)
        ranks = self._ranks[policy]
        if tag in ranks:
            return ranks[tag]
        # Not a candidate: it goes after every member that sorts before or level with it
        key = _rank_key(tag)
        return sum(1 for member in self._groups[policy].get(_group_key(tag), ()) if _rank_key(member) <= key)


def _vote(
    tag: ImageTag,
    policy: CleanupPolicy,
    snapshot: GitRefSnapshot,
    now: datetime,
    ranking: TagRanking,
) -> Tuple[bool, DecisionReason]:
    if tag.scheme.is_git_based and not snapshot.has_ref(tag.scheme, tag.ref):
        return False, DecisionReason.ORPHAN

    if ranking.rank(tag, policy) < policy.keep_last:
        return True, DecisionReason.KEEP_LAST
    if policy.expire_after is None or now - tag.created_at < policy.expire_after:
        return True, DecisionReason.NOT_EXPIRED
    return False, DecisionReason.EXPIRED


def explain(
    tag: ImageTag,
    snapshot: GitRefSnapshot,
    policies: Sequence[CleanupPolicy],
    now: datetime,
    candidates: Optional[Iterable[ImageTag]] = None,
) -> TagDecision:
    """Decide a tag and say why. Any keeping policy wins."""
    return _explain(tag, snapshot, policies, now, TagRanking(candidates if candidates is not None else [tag]))


def _explain(
    tag: ImageTag,
    snapshot: GitRefSnapshot,
    policies: Sequence[CleanupPolicy],
    now: datetime,
    ranking: TagRanking,
) -> TagDecision:
    first_delete: Optional[Tuple[DecisionReason, str]] = None

    for policy in policies:
        if not policy_applies(policy, tag):
            continue
        keep, reason = _vote(tag, policy, snapshot, now, ranking)
        if keep:
            return TagDecision(tag=tag, keep=True, reason=reason, policy=policy.describe())
        if first_delete is None:
            first_delete = (reason, policy.describe())

    if first_delete is None:
        return TagDecision(tag=tag, keep=False, reason=DecisionReason.NO_MATCHING_POLICY)
    return TagDecision(tag=tag, keep=False, reason=first_delete[0], policy=first_delete[1])


def decide(
    tag: ImageTag,
    snapshot: GitRefSnapshot,
    policies: Sequence[CleanupPolicy],
    now: datetime,
    candidates: Optional[Iterable[ImageTag]] = None,
) -> bool:
    """True if ``tag`` should be kept. ``candidates`` are the tags it is ranked against."""
    return explain(tag, snapshot, policies, now, candidates).keep


def evaluate_tags(
    tags: Sequence[ImageTag],
    snapshot: GitRefSnapshot,
    policies: Sequence[CleanupPolicy],
    now: datetime,
) -> Dict[str, TagDecision]:
    """Decide every tag of a listing, ranked against each other."""
    ranking = TagRanking(tags)
    return {tag.reference: _explain(tag, snapshot, policies, now, ranking) for tag in tags}
