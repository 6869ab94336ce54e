"""
Runs one cleanup: project lock, images phase, stages phase, report.

The project lock is held for the whole run and released on every exit
path, including interrupts. Git and cluster snapshots are taken once the
lock is held and do not change for the rest of the run.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

from cleaner_utils.config_manager import config_manager
from cleaner_utils.lock_manager import LockHandle, LockManager
from cleaner_utils.logging_utils import get_logger, log_banner
from stages_cleaner.exceptions import FATAL_ERRORS, PhaseFailedError
from stages_cleaner.git_refs import GitReferenceResolver
from stages_cleaner.image_cleaner import ImageRegistryCleaner
from stages_cleaner.live_workloads import LiveWorkloadScanner
from stages_cleaner.models import (
    CleanupReport,
    CleanupRunOptions,
    CleanupState,
    ImagesPhaseResult,
    StagesPhaseResult,
)
from stages_cleaner.stage_collector import StageGarbageCollector
from stages_cleaner.stage_graph import StageGraph
from stages_cleaner.storage import ImagesRepo, StagesStorage

logger = get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CleanupCoordinator:
    def __init__(
        self,
        images_repo: ImagesRepo,
        stages_storage: StagesStorage,
        git_resolver: GitReferenceResolver,
        workload_scanner: LiveWorkloadScanner,
        lock_manager: LockManager,
        max_workers: Optional[int] = None,
        lock_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.images_repo = images_repo
        self.stages_storage = stages_storage
        self.git_resolver = git_resolver
        self.workload_scanner = workload_scanner
        self.lock_manager = lock_manager
        self.max_workers = max_workers or config_manager.get_max_workers()
        self.lock_timeout = config_manager.get_lock_timeout() if lock_timeout is None else lock_timeout
        self.clock = clock
        self.handle: Optional[LockHandle] = None

    def _images_phase(self, options: CleanupRunOptions, report: CleanupReport) -> ImagesPhaseResult:
        report.state = CleanupState.IMAGES_PHASE
        log_banner(logger, f"Images cleanup{' (dry run)' if options.dry_run else ''}")

        snapshot = self.git_resolver.snapshot()
        if snapshot.is_empty:
            report.warnings.append("No git references found; every git-based tag is treated as orphan")
        live_set = self.workload_scanner.scan(options.without_kube)
        if not live_set.enabled:
            report.warnings.append("Cluster protection disabled (--without-kube)")
        for namespace in live_set.failed_namespaces:
            report.warnings.append(f"Namespace {namespace} could not be scanned; its images are not protected")

        cleaner = ImageRegistryCleaner(self.images_repo, max_workers=self.max_workers)
        return cleaner.clean(options, snapshot, live_set, self.clock())

    def _stages_phase(self, options: CleanupRunOptions, images: ImagesPhaseResult, report: CleanupReport) -> StagesPhaseResult:
        report.state = CleanupState.STAGES_PHASE
        log_banner(logger, f"Stages cleanup{' (dry run)' if options.dry_run else ''}")

        graph = StageGraph.from_storage(self.stages_storage)
        collector = StageGarbageCollector(self.stages_storage, max_workers=self.max_workers)
        try:
            return collector.collect(graph, images.surviving_tags, dry_run=options.dry_run)
        finally:
            report.warnings.extend(collector.warnings)

    def run(self, options: CleanupRunOptions) -> CleanupReport:
        """Run both phases under the project lock.

        Fatal errors end the run early: the report comes back in the
        ``failed`` state with whatever was done so far. Interrupts propagate
        after the lock is released.
        """
        report = CleanupReport(project_name=options.project_name, dry_run=options.dry_run, started_at=self.clock())
        self.handle = None
        try:
            report.state = CleanupState.ACQUIRING_LOCK
            logger.info(f"Acquiring lock {options.lock_key}")
            self.handle = self.lock_manager.acquire(options.lock_key, timeout=self.lock_timeout)

            report.images = self._images_phase(options, report)
            report.stages = self._stages_phase(options, report.images, report)
            report.state = CleanupState.DONE
        except FATAL_ERRORS as e:
            if isinstance(e, PhaseFailedError):
                if isinstance(e.result, ImagesPhaseResult):
                    report.images = e.result
                elif isinstance(e.result, StagesPhaseResult):
                    report.stages = e.result
            logger.error(f"Cleanup aborted during {report.state.value}: {e.message}")
            report.state = CleanupState.FAILED
            report.fatal_error = str(e)
        except BaseException:
            report.state = CleanupState.FAILED
            raise
        finally:
            if self.handle is not None:
                self.lock_manager.release(self.handle)
                report.lock_released = self.handle.released
            report.finished_at = self.clock()

        return report
