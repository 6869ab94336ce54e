"""
Images phase: apply retention policies to the images repo.

Every tag of every project image is decided against the git snapshot,
then anything running in the cluster is vetoed from deletion. The rest is
deleted unless this is a dry run.
"""

from datetime import datetime
from typing import List, Optional

from cleaner_utils.config_manager import config_manager
from cleaner_utils.deletion_base import BaseDeletionPhase
from stages_cleaner.exceptions import CleanupFatalError, PhaseFailedError, RegistryUnavailableError
from stages_cleaner.models import (
    CleanupRunOptions,
    DecisionReason,
    GitRefSnapshot,
    ImagesPhaseResult,
    ImageTag,
    ItemError,
    LiveImageSet,
    TagDecision,
)
from stages_cleaner.policies import evaluate_tags
from stages_cleaner.storage import ImagesRepo


class ImageRegistryCleaner(BaseDeletionPhase[ImageTag]):
    """Delete published tags that no policy keeps and nothing runs."""

    phase_name = "images"

    def __init__(self, images_repo: ImagesRepo, max_workers: Optional[int] = None):
        super().__init__(max_workers or config_manager.get_max_workers())
        self.images_repo = images_repo

    def delete_item(self, item: ImageTag) -> None:
        self.images_repo.delete_tag(item)

    def describe_item(self, item: ImageTag) -> str:
        return item.reference

    def _list_tags(self, image_name: str) -> List[ImageTag]:
        try:
            tags = self.images_repo.list_tags(image_name)
        except CleanupFatalError:
            raise
        except Exception as e:
            raise RegistryUnavailableError.from_error(image_name or "(nameless image)", e) from e
        # A listing may repeat a tag while the registry settles
        unique = {}
        for tag in tags:
            unique.setdefault(tag.reference, tag)
        return list(unique.values())

    def clean(
        self,
        options: CleanupRunOptions,
        snapshot: GitRefSnapshot,
        live_set: LiveImageSet,
        now: datetime,
    ) -> ImagesPhaseResult:
        """Run the images phase.

        Raises:
            RegistryUnavailableError: An image's tags could not be listed
            PhaseFailedError: Deletions were attempted and every one failed
        """
        result = ImagesPhaseResult()
        to_delete: List[ImageTag] = []

        for image_name in options.image_names:
            tags = self._list_tags(image_name)
            decisions = evaluate_tags(tags, snapshot, options.policies, now)

            for tag in tags:
                decision = decisions[tag.reference]
                if decision.keep:
                    result.kept.append(tag)
                elif live_set.protects(tag):
                    self.logger.info(f"  Keeping {tag.reference}: running in the cluster ({decision.reason.value})")
                    decision = TagDecision(tag=tag, keep=True, reason=DecisionReason.CLUSTER_PROTECTED, policy=decision.policy)
                    result.protected.append(tag)
                else:
                    to_delete.append(tag)
                result.decisions.append(decision)

            self.logger.info(
                f"Image {image_name or '~'}: {len(tags)} tags, "
                f"{sum(1 for t in tags if decisions[t.reference].keep)} kept by policy"
            )

        if options.dry_run:
            for tag in to_delete:
                self.logger.info(f"  Would delete: {tag.reference}")
            result.deleted = to_delete
        else:
            deleted, failed = self.delete_items(to_delete)
            result.attempted = len(to_delete)
            result.deleted = sorted(deleted, key=lambda t: t.reference)
            for tag, error in sorted(failed, key=lambda f: f[0].reference):
                result.failed.append(tag)
                result.errors.append(ItemError(phase=self.phase_name, item=tag.reference, error=error))

        self.log_summary(
            {
                "total": len(result.decisions),
                "deleted": len(result.deleted),
                "kept": len(result.kept),
                "protected": len(result.protected),
                "failed": len(result.failed),
            },
            dry_run=options.dry_run,
        )

        if result.attempted and not result.deleted:
            raise PhaseFailedError(
                self.phase_name, result.attempted, result=result, first_error=result.errors[0].error
            )
        return result
