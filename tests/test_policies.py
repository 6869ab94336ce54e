"""Unit tests for stages_cleaner/policies.py"""

from datetime import timedelta

import pytest
import yaml

from cleaner_utils.error_utils import ActionableError, ErrorCategory
from conftest import NOW, make_tag
from stages_cleaner import policies
from stages_cleaner.models import CleanupPolicy, DecisionReason, GitRefSnapshot, TagScheme
from stages_cleaner.policies import (
    decide,
    evaluate_tags,
    explain,
    load_policies,
    parse_duration,
    parse_policy_string,
    policy_from_mapping,
)


def branch_policy(keep_last=0, expire_after=None, pattern="*"):
    return CleanupPolicy(scheme=TagScheme.GIT_BRANCH, pattern=pattern, keep_last=keep_last, expire_after=expire_after)


def kept_tags(decisions):
    return sorted(d.tag.tag for d in decisions.values() if d.keep)


class TestKeepLastRanking:
    """Tests for keep_last ranking among tags of one reference"""

    def test_keeps_exactly_n_most_recent(self, snapshot):
        """With no expiry only the N newest tags of a live ref survive"""
        tags = [
            make_tag(f"main-{i}", days_old=i * 40, digest=f"d{i}", git_ref="main") for i in range(5)
        ]
        decisions = evaluate_tags(tags, snapshot, [branch_policy(keep_last=2, expire_after=timedelta(days=1))], NOW)

        assert kept_tags(decisions) == ["main-0", "main-1"]
        assert decisions[tags[0].reference].reason is DecisionReason.KEEP_LAST
        assert decisions[tags[4].reference].reason is DecisionReason.EXPIRED

    def test_ties_broken_by_smaller_digest(self, snapshot):
        """Tags created at the same instant rank by stage digest"""
        tags = [
            make_tag("main-b", days_old=3, digest="bbb", git_ref="main"),
            make_tag("main-a", days_old=3, digest="aaa", git_ref="main"),
            make_tag("main-c", days_old=3, digest="ccc", git_ref="main"),
        ]
        decisions = evaluate_tags(tags, snapshot, [branch_policy(keep_last=1, expire_after=timedelta(days=1))], NOW)

        assert kept_tags(decisions) == ["main-a"]

    def test_age_example(self, snapshot):
        """keep_last=2, expire 30d, tags aged 0/5/10/40 days: only the 40-day tag goes"""
        tags = [make_tag(f"t{age}", days_old=age, digest=f"d{age}", git_ref="main") for age in (0, 5, 10, 40)]
        decisions = evaluate_tags(tags, snapshot, [branch_policy(keep_last=2, expire_after=timedelta(days=30))], NOW)

        assert kept_tags(decisions) == ["t0", "t10", "t5"]
        assert decisions[tags[0].reference].reason is DecisionReason.KEEP_LAST
        assert decisions[tags[1].reference].reason is DecisionReason.KEEP_LAST
        assert decisions[tags[2].reference].reason is DecisionReason.NOT_EXPIRED
        assert decisions[tags[3].reference].reason is DecisionReason.EXPIRED

    def test_unset_expiry_keeps_everything_on_live_ref(self, snapshot):
        tags = [make_tag(f"t{age}", days_old=age, git_ref="main") for age in (0, 100, 1000)]
        decisions = evaluate_tags(tags, snapshot, [branch_policy(keep_last=0)], NOW)

        assert kept_tags(decisions) == ["t0", "t100", "t1000"]

    def test_ranks_within_reference_only(self, snapshot):
        """Tags of another branch do not push a tag out of its own top N"""
        main = make_tag("main", days_old=20, git_ref="main")
        login = make_tag("feature-login", days_old=0, git_ref="feature/login")
        decisions = evaluate_tags([main, login], snapshot, [branch_policy(keep_last=1, expire_after=timedelta(days=1))], NOW)

        assert kept_tags(decisions) == ["feature-login", "main"]

    def test_ranks_within_image_only(self, snapshot):
        app = make_tag("main", days_old=20, git_ref="main", image_name="app")
        worker = make_tag("main", days_old=0, git_ref="main", image_name="worker")
        decisions = evaluate_tags([app, worker], snapshot, [branch_policy(keep_last=1, expire_after=timedelta(days=1))], NOW)

        assert all(d.keep for d in decisions.values())

    def test_listing_agrees_with_per_tag_decisions(self, snapshot):
        tags = [make_tag(f"main-{i}", days_old=i * 3, digest=f"m{i}", git_ref="main") for i in range(12)]
        tags += [make_tag(f"login-{i}", days_old=i * 5, digest=f"l{i}", git_ref="feature/login") for i in range(6)]
        tags += [make_tag(f"worker-{i}", days_old=i, digest=f"w{i}", git_ref="main", image_name="worker") for i in range(4)]
        tags += [make_tag(f"build-{i}", days_old=i * 10, scheme=TagScheme.CUSTOM) for i in range(5)]
        rules = [
            branch_policy(keep_last=3, expire_after=timedelta(days=7)),
            branch_policy(keep_last=5, expire_after=timedelta(days=1), pattern="feature/*"),
            CleanupPolicy(scheme=TagScheme.CUSTOM, keep_last=2, expire_after=timedelta(days=15)),
        ]

        decisions = evaluate_tags(tags, snapshot, rules, NOW)

        for tag in tags:
            assert decisions[tag.reference].keep is decide(tag, snapshot, rules, NOW, candidates=tags), tag.tag
        assert kept_tags({k: d for k, d in decisions.items() if d.tag.git_ref == "main" and d.tag.image_name == "app"}) == [
            "main-0",
            "main-1",
            "main-2",
        ]

    def test_each_group_sorted_once(self, snapshot, mocker):
        rank_key = mocker.patch("stages_cleaner.policies._rank_key", side_effect=policies._rank_key)
        tags = [make_tag(f"main-{i}", days_old=i, digest=f"d{i}", git_ref="main") for i in range(50)]

        evaluate_tags(tags, snapshot, [branch_policy(keep_last=10, expire_after=timedelta(days=30))], NOW)

        assert rank_key.call_count == len(tags)

    def test_tag_outside_candidates_ranked_against_them(self, snapshot):
        candidates = [make_tag(f"main-{i}", days_old=i + 1, digest=f"d{i}", git_ref="main") for i in range(2)]
        policy = [branch_policy(keep_last=2, expire_after=timedelta(days=1))]

        newest = make_tag("main-new", days_old=0, digest="dn", git_ref="main")
        oldest = make_tag("main-old", days_old=10, digest="do", git_ref="main")

        assert decide(newest, snapshot, policy, NOW, candidates=candidates) is True
        assert explain(oldest, snapshot, policy, NOW, candidates=candidates).reason is DecisionReason.EXPIRED


class TestOrphansAndUnmatched:
    """Tests for orphaned references and tags no policy covers"""

    def test_orphan_branch_is_deleted(self, snapshot):
        """A tag whose branch is gone is deleted without scoring"""
        tag = make_tag("old-feature", days_old=0, git_ref="old-feature")
        decision = explain(tag, snapshot, [branch_policy(keep_last=10)], NOW)

        assert decision.keep is False
        assert decision.reason is DecisionReason.ORPHAN

    def test_orphan_git_tag_and_commit(self, snapshot):
        policies = [
            CleanupPolicy(scheme=TagScheme.GIT_TAG, keep_last=10),
            CleanupPolicy(scheme=TagScheme.GIT_COMMIT, keep_last=10),
        ]
        removed_tag = make_tag("v0.9", scheme=TagScheme.GIT_TAG)
        unreachable = make_tag("deadbeefcafe", scheme=TagScheme.GIT_COMMIT)

        assert decide(removed_tag, snapshot, policies, NOW) is False
        assert decide(unreachable, snapshot, policies, NOW) is False

    def test_empty_snapshot_orphans_every_git_tag(self):
        tag = make_tag("main", git_ref="main")
        assert explain(tag, GitRefSnapshot.empty(), [branch_policy()], NOW).reason is DecisionReason.ORPHAN

    def test_no_matching_policy_is_deleted(self, snapshot):
        """Silence is not consent"""
        tag = make_tag("v1.0", scheme=TagScheme.GIT_TAG)
        decision = explain(tag, snapshot, [branch_policy()], NOW)

        assert decision.keep is False
        assert decision.reason is DecisionReason.NO_MATCHING_POLICY

    def test_pattern_must_match(self, snapshot):
        tag = make_tag("main", git_ref="main")
        assert decide(tag, snapshot, [branch_policy(pattern="release-*")], NOW) is False
        assert decide(tag, snapshot, [branch_policy(pattern="ma*")], NOW) is True

    def test_slugified_branch_is_not_orphan(self, snapshot):
        """A tag recording the docker-safe slug still finds its branch"""
        tag = make_tag("feature-login", git_ref="feature-login")
        assert decide(tag, snapshot, [branch_policy()], NOW) is True

    def test_abbreviated_commit_is_found(self, snapshot):
        tag = make_tag("a1b2c3d", scheme=TagScheme.GIT_COMMIT)
        assert decide(tag, snapshot, [CleanupPolicy(scheme=TagScheme.GIT_COMMIT)], NOW) is True


class TestPolicyCombination:
    """Tests for OR-ing several matching policies"""

    def test_any_keeping_policy_wins(self, snapshot):
        tag = make_tag("main", days_old=60, git_ref="main")
        strict = branch_policy(keep_last=0, expire_after=timedelta(days=1))
        lenient = branch_policy(keep_last=0, expire_after=timedelta(days=90), pattern="main")

        assert decide(tag, snapshot, [strict], NOW) is False
        assert decide(tag, snapshot, [strict, lenient], NOW) is True
        assert decide(tag, snapshot, [lenient, strict], NOW) is True

    def test_delete_reason_comes_from_first_matching_policy(self, snapshot):
        tag = make_tag("main", days_old=60, git_ref="main")
        decision = explain(tag, snapshot, [branch_policy(expire_after=timedelta(days=1))], NOW)
        assert decision.reason is DecisionReason.EXPIRED
        assert decision.policy.startswith("git-branch:*")


class TestCustomTags:
    """Tests for custom-scheme tags"""

    def test_custom_tags_never_orphan(self):
        tag = make_tag("stable", scheme=TagScheme.CUSTOM)
        policy = CleanupPolicy(scheme=TagScheme.CUSTOM)
        assert decide(tag, GitRefSnapshot.empty(), [policy], NOW) is True

    def test_custom_tags_ranked_together(self):
        tags = [make_tag(f"build-{age}", days_old=age, scheme=TagScheme.CUSTOM) for age in (1, 2, 3, 50)]
        policy = CleanupPolicy(scheme=TagScheme.CUSTOM, pattern="build-*", keep_last=2, expire_after=timedelta(days=30))
        decisions = evaluate_tags(tags, GitRefSnapshot.empty(), [policy], NOW)

        assert kept_tags(decisions) == ["build-1", "build-2", "build-3"]

    def test_custom_pattern_matches_tag_string(self):
        policy = CleanupPolicy(scheme=TagScheme.CUSTOM, pattern="release-*")
        assert decide(make_tag("release-1", scheme=TagScheme.CUSTOM), GitRefSnapshot.empty(), [policy], NOW) is True
        assert decide(make_tag("nightly", scheme=TagScheme.CUSTOM), GitRefSnapshot.empty(), [policy], NOW) is False


class TestParseDuration:
    """Tests for duration parsing"""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30d", timedelta(days=30)),
            ("12h", timedelta(hours=12)),
            ("90m", timedelta(minutes=90)),
            ("2w", timedelta(weeks=2)),
            ("45s", timedelta(seconds=45)),
            ("1d12h", timedelta(days=1, hours=12)),
            ("3600", timedelta(hours=1)),
            (60, timedelta(minutes=1)),
        ],
    )
    def test_valid_durations(self, value, expected):
        assert parse_duration(value) == expected

    def test_empty_is_none(self):
        assert parse_duration(None) is None
        assert parse_duration("") is None

    @pytest.mark.parametrize("value", ["30x", "d30", "thirty days", "30d junk"])
    def test_invalid_durations(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestPolicyParsing:
    """Tests for policy specs from the command line, YAML files and config"""

    def test_compact_string(self):
        policies = parse_policy_string("git-branch:*;git-tag:v*:keep=10:expire=30d; custom:*:keep=5")

        assert policies == [
            CleanupPolicy(scheme=TagScheme.GIT_BRANCH, pattern="*"),
            CleanupPolicy(scheme=TagScheme.GIT_TAG, pattern="v*", keep_last=10, expire_after=timedelta(days=30)),
            CleanupPolicy(scheme=TagScheme.CUSTOM, pattern="*", keep_last=5),
        ]

    def test_pattern_defaults_to_everything(self):
        assert parse_policy_string("git-commit:keep=50") == [CleanupPolicy(scheme=TagScheme.GIT_COMMIT, keep_last=50)]

    def test_mapping_aliases(self):
        policy = policy_from_mapping({"scheme": "gitTag", "keep-last": 3, "expire-after": "1w"})
        assert policy == CleanupPolicy(scheme=TagScheme.GIT_TAG, keep_last=3, expire_after=timedelta(weeks=1))

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "policies.yaml"
        path.write_text(
            yaml.dump({"policies": [{"scheme": "git-branch", "pattern": "release/*", "keep_last": 2, "expire_after": "7d"}]})
        )

        policies = load_policies(str(path))

        assert policies == (
            CleanupPolicy(scheme=TagScheme.GIT_BRANCH, pattern="release/*", keep_last=2, expire_after=timedelta(days=7)),
        )

    def test_config_policies_used_without_spec(self):
        from cleaner_utils.config_manager import DEFAULT_CLEANUP_POLICIES

        policies = load_policies(None, DEFAULT_CLEANUP_POLICIES)

        assert [p.scheme for p in policies] == [
            TagScheme.GIT_BRANCH,
            TagScheme.GIT_TAG,
            TagScheme.GIT_COMMIT,
            TagScheme.CUSTOM,
        ]
        assert policies[1].keep_last == 10
        assert policies[1].expire_after == timedelta(days=30)

    @pytest.mark.parametrize("spec", ["svn-branch:*", "git-tag:*:keep", "git-tag:*:keep=-1", "git-tag:*:expire=soon"])
    def test_invalid_spec_is_configuration_error(self, spec):
        with pytest.raises(ActionableError) as exc_info:
            load_policies(spec)
        assert exc_info.value.category is ErrorCategory.CONFIGURATION
