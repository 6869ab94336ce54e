#!/usr/bin/env python3
"""
Tag matching utilities for Docker image tags and references.

Provides functions for relating registry tags to the git references they
were built from, and for comparing fully-qualified image references
reported by different sources (registry listing vs. running pods).
"""

import fnmatch
import re

DOCKER_TAG_MAX_LENGTH = 128
_DOCKER_TAG_INVALID = re.compile(r"[^A-Za-z0-9_.-]+")
_DEFAULT_REGISTRY_PREFIXES = ("docker.io/", "index.docker.io/", "registry-1.docker.io/")


def slugify_ref(ref: str) -> str:
    """Turn a git reference into the docker tag it is published under.

    Branch names such as ``feature/login`` cannot be used as docker tags
    verbatim, so builds publish them as ``feature-login``.

    Args:
        ref: Git branch or tag name

    Returns:
        Docker-tag-safe form of the reference
    """
    slug = _DOCKER_TAG_INVALID.sub("-", ref).lstrip(".-")
    return slug[:DOCKER_TAG_MAX_LENGTH]


def ref_matches(tag_ref: str, git_ref: str) -> bool:
    """Check if a reference recorded on a tag names the given git ref.

    Handles both exact matches and the slugified docker-tag form.
    """
    if tag_ref == git_ref:
        return True
    return tag_ref == slugify_ref(git_ref)


def matches_pattern(value: str, pattern: str) -> bool:
    """Case-sensitive glob match (``*``, ``?``, ``[...]``)."""
    return fnmatch.fnmatchcase(value, pattern)


def normalize_image_reference(reference: str) -> str:
    """Normalize an image reference so registry and cluster views compare equal.

    - Drops the implicit Docker Hub registry host and ``library/`` prefix
    - Adds the implicit ``latest`` tag to untagged, undigested references
    - Reduces digest-pinned ``repo:tag@digest`` to ``repo@digest``

    Args:
        reference: Image reference (e.g. "docker.io/library/nginx", "repo/app:v1")

    Returns:
        Normalized reference string
    """
    ref = reference.strip()
    for prefix in _DEFAULT_REGISTRY_PREFIXES:
        if ref.startswith(prefix):
            ref = ref[len(prefix):]
            break
    if ref.startswith("library/"):
        ref = ref[len("library/"):]

    if "@" in ref:
        name, digest = ref.split("@", 1)
        return f"{strip_tag(name)}@{digest}"
    last_segment = ref.rsplit("/", 1)[-1]
    if ":" not in last_segment:
        ref = f"{ref}:latest"
    return ref


def strip_tag(reference: str) -> str:
    """Drop the ``:tag`` suffix from a reference, leaving a registry port alone."""
    head, _, last_segment = reference.rpartition("/")
    if ":" not in last_segment:
        return reference
    name = last_segment.rsplit(":", 1)[0]
    return f"{head}/{name}" if head else name
