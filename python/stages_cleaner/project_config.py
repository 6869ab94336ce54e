"""
Project name and image names from ``werf.yaml``.

The file is a multi-document YAML stream: one meta document with
``project:`` and one document per image with ``image:`` (``~`` for the
nameless image). Artifact documents are never published and are skipped.
"""

import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

import yaml

from cleaner_utils.logging_utils import get_logger
from stages_cleaner.exceptions import ProjectConfigError

logger = get_logger(__name__)

CONFIG_FILENAMES = ("werf.yaml", "werf.yml")


@dataclass(frozen=True)
class ProjectConfig:
    path: str
    project_name: str
    image_names: Tuple[str, ...]


def find_config(project_dir: str) -> Optional[str]:
    for filename in CONFIG_FILENAMES:
        path = os.path.join(project_dir, filename)
        if os.path.isfile(path):
            return path
    return None


def load_project_config(project_dir: str) -> ProjectConfig:
    """Read the project configuration once.

    Raises:
        ProjectConfigError: No config file, unreadable YAML, or no project name
    """
    path = find_config(project_dir)
    if path is None:
        raise ProjectConfigError(os.path.join(project_dir, CONFIG_FILENAMES[0]), "file not found")

    try:
        with open(path, "r") as f:
            documents = [doc for doc in yaml.safe_load_all(f) if doc is not None]
    except (OSError, yaml.YAMLError) as e:
        raise ProjectConfigError(path, str(e)) from e

    project_name: Optional[str] = None
    image_names: List[str] = []
    for doc in documents:
        if not isinstance(doc, dict):
            raise ProjectConfigError(path, f"expected a mapping per document, got {type(doc).__name__}")
        if "project" in doc:
            if project_name is not None:
                raise ProjectConfigError(path, "more than one meta document with 'project'")
            project_name = str(doc["project"] or "").strip()
        elif "image" in doc:
            name = doc["image"]
            image_names.append("" if name is None else str(name))
        elif "artifact" not in doc:
            logger.debug(f"Skipping unknown document in {path}: {sorted(doc)}")

    if not project_name:
        raise ProjectConfigError(path, "meta document with a non-empty 'project' is required")
    if len(set(image_names)) != len(image_names):
        raise ProjectConfigError(path, "image names must be unique")

    logger.info(f"Project {project_name}: {len(image_names)} images")
    return ProjectConfig(path=path, project_name=project_name, image_names=tuple(image_names))
