"""Unit tests for cleaner_utils/tag_matching.py"""

import pytest

from cleaner_utils.tag_matching import matches_pattern, normalize_image_reference, ref_matches, slugify_ref


class TestSlugifyRef:
    @pytest.mark.parametrize(
        "ref,slug",
        [
            ("main", "main"),
            ("feature/login", "feature-login"),
            ("release/1.2", "release-1.2"),
            ("users/jo@host", "users-jo-host"),
            ("-leading", "leading"),
        ],
    )
    def test_slugs(self, ref, slug):
        assert slugify_ref(ref) == slug

    def test_truncated_to_docker_tag_length(self):
        assert len(slugify_ref("a" * 300)) == 128


class TestRefMatches:
    def test_exact(self):
        assert ref_matches("feature/login", "feature/login")

    def test_slug(self):
        assert ref_matches("feature-login", "feature/login")

    def test_different_ref(self):
        assert not ref_matches("feature-logout", "feature/login")


class TestMatchesPattern:
    def test_glob(self):
        assert matches_pattern("release/1.2", "release/*")
        assert matches_pattern("v1.0", "v?.?")
        assert not matches_pattern("hotfix", "release/*")

    def test_case_sensitive(self):
        assert not matches_pattern("Main", "main")


class TestNormalizeImageReference:
    @pytest.mark.parametrize(
        "reference,normalized",
        [
            ("docker.io/library/nginx", "nginx:latest"),
            ("nginx:1.25", "nginx:1.25"),
            ("index.docker.io/org/app:v1", "org/app:v1"),
            ("registry.example.com:5000/app", "registry.example.com:5000/app:latest"),
            ("registry.example.com/app@sha256:abc", "registry.example.com/app@sha256:abc"),
            ("registry.example.com/app:main@sha256:abc", "registry.example.com/app@sha256:abc"),
            ("registry.example.com:5000/app:v1@sha256:abc", "registry.example.com:5000/app@sha256:abc"),
            ("docker.io/library/nginx:1.25@sha256:abc", "nginx@sha256:abc"),
        ],
    )
    def test_normalizes(self, reference, normalized):
        assert normalize_image_reference(reference) == normalized
