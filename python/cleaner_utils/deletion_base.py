"""
Base class for the deletion phases to standardize behavior.

This module provides the functionality shared by every phase that removes
items from a remote store:
- Parallel deletion through a bounded worker pool
- Treating already-deleted items as deleted
- Per-item failure collection (a failed item never aborts the batch)
- Logging consistency
"""

import concurrent.futures
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Sequence, Tuple, TypeVar

from cleaner_utils.logging_utils import get_logger
from cleaner_utils.skopeo_client import ImageNotFoundError

T = TypeVar("T")

# Caps parallelism no matter what config asks for
MAX_DELETION_WORKERS = 32


class BaseDeletionPhase(ABC, Generic[T]):
    """Base class for deletion phases with common functionality"""

    phase_name = "deletion"

    def __init__(self, max_workers: int = 4):
        """Initialize base deletion phase

        Args:
            max_workers: Upper bound on concurrent deletions
        """
        self.max_workers = max(1, min(int(max_workers), MAX_DELETION_WORKERS))
        self.logger = get_logger(self.__class__.__name__)

    @abstractmethod
    def delete_item(self, item: T) -> None:
        """Delete one item. Raise on failure."""

    @abstractmethod
    def describe_item(self, item: T) -> str:
        """Human-readable identifier for logs and error records."""

    def _delete_single(self, item: T) -> Tuple[str, T, str]:
        name = self.describe_item(item)
        try:
            self.logger.info(f"  Deleting: {name}")
            self.delete_item(item)
            self.logger.info(f"    ✓ Deleted {name}")
            return ("success", item, "")
        except ImageNotFoundError:
            self.logger.info(f"    ✓ {name} already gone")
            return ("already_deleted", item, "")
        except Exception as e:
            self.logger.error(f"    ✗ Error deleting {name}: {e}")
            return ("failed", item, str(e))

    def delete_items(self, items: Sequence[T]) -> Tuple[List[T], List[Tuple[T, str]]]:
        """Delete items in parallel.

        Returns:
            Tuple of (deleted items, [(failed item, error message)])
        """
        deleted: List[T] = []
        failed: List[Tuple[T, str]] = []
        if not items:
            return deleted, failed

        workers = min(self.max_workers, len(items))
        if workers > 1:
            self.logger.info(f"Deleting {len(items)} {self.phase_name} items using {workers} parallel workers...")
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
                future_to_item = {executor.submit(self._delete_single, item): item for item in items}
                for future in concurrent.futures.as_completed(future_to_item):
                    status, item, error = future.result()
                    if status == "failed":
                        failed.append((item, error))
                    else:
                        deleted.append(item)
        else:
            for item in items:
                status, item, error = self._delete_single(item)
                if status == "failed":
                    failed.append((item, error))
                else:
                    deleted.append(item)

        return deleted, failed

    def log_summary(self, summary: Dict[str, Any], dry_run: bool = False) -> None:
        """Log a standardized deletion summary

        Args:
            summary: Dictionary with summary information
            dry_run: Whether this was a dry run
        """
        mode = "DRY RUN: " if dry_run else ""
        self.logger.info(f"📊 {mode}{self.phase_name.capitalize()} Summary:")

        if "total" in summary:
            self.logger.info(f"   Total items: {summary['total']}")
        if "deleted" in summary:
            self.logger.info(f"   {'Would delete' if dry_run else 'Successfully deleted'}: {summary['deleted']}")
        if "kept" in summary:
            self.logger.info(f"   Kept: {summary['kept']}")
        if "protected" in summary:
            self.logger.info(f"   Protected (running in cluster): {summary['protected']}")
        if "failed" in summary:
            self.logger.info(f"   Failed deletions: {summary['failed']}")
