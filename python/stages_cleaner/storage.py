"""
Images repo and stages storage backends.

Both registry-backed stores go through skopeo. ``:local`` stages storage
goes through the docker CLI. Records are built from the labels the build
writes on every published image and cached stage.
"""

import concurrent.futures
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from cleaner_utils.docker_client import DockerClient
from cleaner_utils.logging_utils import get_logger
from cleaner_utils.skopeo_client import ImageNotFoundError, SkopeoClient
from stages_cleaner.models import (
    GIT_REF_LABEL,
    PARENT_STAGE_DIGEST_LABEL,
    STAGE_DIGEST_LABEL,
    TAG_STRATEGY_LABEL,
    ImageTag,
    Stage,
    TagScheme,
)

logger = get_logger(__name__)

LOCAL_STAGES_STORAGE = ":local"
LOCAL_STAGES_REPO = "werf-stages-storage"
STAGE_TAG_PREFIX = "image-stage-"

T = TypeVar("T")

_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse registry/docker creation times (RFC 3339, up to nanoseconds) into aware UTC datetimes."""
    if not value:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    text = value.strip().replace("Z", "+00:00")
    # fromisoformat accepts at most microseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _scheme_from_label(value: Optional[str]) -> TagScheme:
    if not value:
        return TagScheme.CUSTOM
    try:
        return TagScheme.parse(value)
    except ValueError:
        logger.debug(f"Unknown tag strategy label '{value}', treating tag as custom")
        return TagScheme.CUSTOM


def _inspect_all(items: List[str], inspect: Callable[[str], T], max_workers: int) -> List[T]:
    """Inspect items in parallel, skipping ones that vanished meanwhile."""
    results: List[T] = []
    if not items:
        return results
    workers = max(1, min(max_workers, len(items)))
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_item = {executor.submit(inspect, item): item for item in items}
        for future in concurrent.futures.as_completed(future_to_item):
            try:
                results.append(future.result())
            except ImageNotFoundError:
                logger.debug(f"{future_to_item[future]} disappeared while listing, skipping")
    return results


class ImagesRepo(ABC):
    @abstractmethod
    def list_tags(self, image_name: str) -> List[ImageTag]:
        ...

    @abstractmethod
    def delete_tag(self, tag: ImageTag) -> None:
        ...


class StagesStorage(ABC):
    @property
    @abstractmethod
    def address(self) -> str:
        ...

    @abstractmethod
    def list_stages(self) -> List[Stage]:
        ...

    @abstractmethod
    def delete_stage(self, stage: Stage) -> None:
        ...


class RegistryImagesRepo(ImagesRepo):
    """Published images in a registry: ``<images_repo>/<name>``, the nameless image at ``<images_repo>``."""

    def __init__(self, images_repo: str, skopeo_client: SkopeoClient, max_workers: int = 4):
        self.images_repo = images_repo.rstrip("/")
        self.skopeo_client = skopeo_client
        self.max_workers = max_workers

    def repository_for(self, image_name: str) -> str:
        return f"{self.images_repo}/{image_name}" if image_name else self.images_repo

    def image_tag_from_inspect(self, image_name: str, tag: str, data: Dict[str, Any]) -> ImageTag:
        labels = data.get("Labels") or {}
        return ImageTag(
            image_name=image_name,
            tag=tag,
            final_stage_digest=labels.get(STAGE_DIGEST_LABEL) or None,
            created_at=parse_timestamp(data.get("Created")),
            repository=self.repository_for(image_name),
            scheme=_scheme_from_label(labels.get(TAG_STRATEGY_LABEL)),
            git_ref=labels.get(GIT_REF_LABEL) or None,
            manifest_digest=data.get("Digest") or None,
        )

    def list_tags(self, image_name: str) -> List[ImageTag]:
        repository = self.repository_for(image_name)
        tags = [t for t in self.skopeo_client.list_tags(repository) if not t.startswith(STAGE_TAG_PREFIX)]
        logger.info(f"Found {len(tags)} tags in {repository}")

        def inspect(tag: str) -> ImageTag:
            return self.image_tag_from_inspect(image_name, tag, self.skopeo_client.inspect_image(repository, tag))

        return sorted(_inspect_all(tags, inspect, self.max_workers), key=lambda t: t.tag)

    def delete_tag(self, tag: ImageTag) -> None:
        self.skopeo_client.delete_image(tag.repository or self.repository_for(tag.image_name), tag.tag)


class RegistryStagesStorage(StagesStorage):
    """Stages stored as ``<repo>:image-stage-<digest>`` tags."""

    def __init__(self, repository: str, skopeo_client: SkopeoClient, max_workers: int = 4):
        self.repository = repository.rstrip("/")
        self.skopeo_client = skopeo_client
        self.max_workers = max_workers

    @property
    def address(self) -> str:
        return self.repository

    def stage_from_inspect(self, tag: str, data: Dict[str, Any]) -> Stage:
        labels = data.get("Labels") or {}
        return Stage(
            digest=labels.get(STAGE_DIGEST_LABEL) or tag[len(STAGE_TAG_PREFIX):],
            parent_digest=labels.get(PARENT_STAGE_DIGEST_LABEL) or None,
            location=tag,
            created_at=parse_timestamp(data.get("Created")),
        )

    def list_stages(self) -> List[Stage]:
        tags = [t for t in self.skopeo_client.list_tags(self.repository) if t.startswith(STAGE_TAG_PREFIX)]
        logger.info(f"Found {len(tags)} stages in {self.repository}")

        def inspect(tag: str) -> Stage:
            return self.stage_from_inspect(tag, self.skopeo_client.inspect_image(self.repository, tag))

        return sorted(_inspect_all(tags, inspect, self.max_workers), key=lambda s: s.location)

    def delete_stage(self, stage: Stage) -> None:
        self.skopeo_client.delete_image(self.repository, stage.location)


class LocalStagesStorage(StagesStorage):
    """Stages held by the local docker daemon as ``werf-stages-storage/<project>`` images."""

    def __init__(self, docker_client: DockerClient, project_name: str):
        self.docker_client = docker_client
        self.project_name = project_name

    @property
    def address(self) -> str:
        return LOCAL_STAGES_STORAGE

    @staticmethod
    def stage_from_inspect(data: Dict[str, Any]) -> Stage:
        labels = (data.get("Config") or {}).get("Labels") or {}
        return Stage(
            digest=labels.get(STAGE_DIGEST_LABEL) or data["Id"],
            parent_digest=labels.get(PARENT_STAGE_DIGEST_LABEL) or None,
            location=data["Id"],
            created_at=parse_timestamp(data.get("Created")),
        )

    def list_stages(self) -> List[Stage]:
        image_ids = self.docker_client.list_image_ids(
            STAGE_DIGEST_LABEL, reference=f"{LOCAL_STAGES_REPO}/{self.project_name}"
        )
        stages = [self.stage_from_inspect(data) for data in self.docker_client.inspect_images(image_ids)]
        logger.info(f"Found {len(stages)} stages in local storage")
        return sorted(stages, key=lambda s: s.location)

    def delete_stage(self, stage: Stage) -> None:
        self.docker_client.remove_image(stage.location)


def create_stages_storage(
    address: str,
    project_name: str,
    skopeo_client: SkopeoClient,
    docker_client: Optional[DockerClient],
    max_workers: int = 4,
) -> StagesStorage:
    """``:local`` selects the docker daemon; anything else is a registry repo."""
    if address == LOCAL_STAGES_STORAGE:
        if docker_client is None:
            raise ValueError("A docker client is required for :local stages storage")
        return LocalStagesStorage(docker_client, project_name)
    return RegistryStagesStorage(address, skopeo_client, max_workers=max_workers)
