"""
Stages phase: delete cached stages no surviving tag depends on.

The reachable set is the ancestor closure of every surviving tag's final
stage. Everything else goes, children before parents, so an interrupted
run never leaves a stage whose parent is already gone.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set

from cleaner_utils.config_manager import config_manager
from cleaner_utils.deletion_base import BaseDeletionPhase
from stages_cleaner.exceptions import PhaseFailedError
from stages_cleaner.models import ImageTag, ItemError, Stage, StagesPhaseResult
from stages_cleaner.stage_graph import StageGraph
from stages_cleaner.storage import StagesStorage


class StageGarbageCollector(BaseDeletionPhase[Stage]):
    """Delete stages outside the ancestor closure of the surviving tags."""

    phase_name = "stages"

    def __init__(self, stages_storage: StagesStorage, max_workers: Optional[int] = None):
        super().__init__(max_workers or config_manager.get_max_workers())
        self.stages_storage = stages_storage
        self.warnings: List[str] = []

    def delete_item(self, item: Stage) -> None:
        self.stages_storage.delete_stage(item)

    def describe_item(self, item: Stage) -> str:
        return f"{item.digest} ({item.location})"

    def reachable(self, graph: StageGraph, surviving_tags: Iterable[ImageTag]) -> Set[str]:
        reachable: Set[str] = set()
        for tag in surviving_tags:
            if not tag.final_stage_digest:
                self._warn(f"Surviving tag {tag.reference} has no stage digest label; it protects no stages")
                continue
            if tag.final_stage_digest not in graph:
                self._warn(f"Final stage {tag.final_stage_digest} of surviving tag {tag.reference} is missing from stages storage")
                continue
            reachable |= graph.ancestors(tag.final_stage_digest)
        return reachable

    def _warn(self, message: str) -> None:
        self.logger.warning(f"⚠️  {message}")
        self.warnings.append(message)

    def collect(self, graph: StageGraph, surviving_tags: Iterable[ImageTag], dry_run: bool = False) -> StagesPhaseResult:
        """Run the stages phase.

        Raises:
            PhaseFailedError: Deletions were attempted and every one failed
        """
        self.warnings = []
        result = StagesPhaseResult()
        reachable = self.reachable(graph, surviving_tags)

        garbage: List[Stage] = []
        for stage in graph.stages:
            if stage.digest in reachable:
                result.kept.append(stage)
            else:
                garbage.append(stage)

        self.logger.info(f"{len(graph)} stages in storage, {len(reachable)} reachable from surviving tags")

        if dry_run:
            for stage in garbage:
                self.logger.info(f"  Would delete: {self.describe_item(stage)}")
            result.deleted = garbage
        else:
            # Deepest first: a stage is never removed before its descendants
            by_depth: Dict[int, List[Stage]] = defaultdict(list)
            for stage in garbage:
                by_depth[graph.depth(stage.digest)].append(stage)

            result.attempted = len(garbage)
            for depth in sorted(by_depth, reverse=True):
                deleted, failed = self.delete_items(by_depth[depth])
                result.deleted.extend(sorted(deleted, key=lambda s: s.digest))
                for stage, error in sorted(failed, key=lambda f: f[0].digest):
                    result.failed.append(stage)
                    result.errors.append(ItemError(phase=self.phase_name, item=stage.digest, error=error))

        self.log_summary(
            {
                "total": len(graph),
                "deleted": len(result.deleted),
                "kept": len(result.kept),
                "failed": len(result.failed),
            },
            dry_run=dry_run,
        )

        if result.attempted and not result.deleted:
            raise PhaseFailedError(
                self.phase_name, result.attempted, result=result, first_error=result.errors[0].error
            )
        return result
