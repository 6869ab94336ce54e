"""
Parent/child graph of the cached stages.

Each stage names at most one parent. A parent missing from storage ends
the chain. A cycle means the storage is corrupt, and building the graph
fails rather than guessing what is safe to delete.
"""

from typing import Dict, Iterable, List, Optional, Set

from cleaner_utils.logging_utils import get_logger
from stages_cleaner.exceptions import CleanupFatalError, StageGraphCycleError, StorageUnavailableError
from stages_cleaner.models import Stage
from stages_cleaner.storage import StagesStorage

logger = get_logger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


class StageGraph:
    def __init__(self, stages: Iterable[Stage]):
        self._stages: Dict[str, Stage] = {}
        for stage in stages:
            if stage.digest in self._stages:
                logger.warning(f"⚠️  Duplicate stage {stage.digest} at {stage.location}, keeping {self._stages[stage.digest].location}")
                continue
            self._stages[stage.digest] = stage

        self._children: Dict[str, List[str]] = {digest: [] for digest in self._stages}
        self.missing_parents: Set[str] = set()
        for stage in self._stages.values():
            parent = stage.parent_digest
            if not parent:
                continue
            if parent in self._stages:
                self._children[parent].append(stage.digest)
            else:
                self.missing_parents.add(parent)
        for children in self._children.values():
            children.sort()

        if self.missing_parents:
            logger.warning(f"⚠️  {len(self.missing_parents)} parent stages are missing from storage; their chains end early")

        self._check_cycles()
        self._depth: Dict[str, int] = {}

    @classmethod
    def from_storage(cls, storage: StagesStorage) -> "StageGraph":
        """Build the graph from everything in ``storage``.

        Raises:
            StorageUnavailableError: Listing failed
            StageGraphCycleError: Parent links form a cycle
        """
        try:
            stages = storage.list_stages()
        except CleanupFatalError:
            raise
        except Exception as e:
            raise StorageUnavailableError.from_error(storage.address, e) from e
        return cls(stages)

    def _parent(self, digest: str) -> Optional[str]:
        parent = self._stages[digest].parent_digest
        return parent if parent in self._stages else None

    def _check_cycles(self) -> None:
        color = {digest: _WHITE for digest in self._stages}
        for start in sorted(self._stages):
            if color[start] != _WHITE:
                continue
            path: List[str] = []
            node: Optional[str] = start
            while node is not None and color[node] == _WHITE:
                color[node] = _GREY
                path.append(node)
                node = self._parent(node)
            if node is not None and color[node] == _GREY:
                raise StageGraphCycleError(path[path.index(node):] + [node])
            for visited in path:
                color[visited] = _BLACK

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, digest: object) -> bool:
        return digest in self._stages

    @property
    def stages(self) -> List[Stage]:
        return [self._stages[d] for d in sorted(self._stages)]

    def get(self, digest: str) -> Optional[Stage]:
        return self._stages.get(digest)

    def children(self, digest: str) -> List[str]:
        return list(self._children.get(digest, []))

    def ancestors(self, digest: str) -> Set[str]:
        """``digest`` and every stage on its parent chain that is in storage."""
        closure: Set[str] = set()
        node: Optional[str] = digest if digest in self._stages else None
        while node is not None and node not in closure:
            closure.add(node)
            node = self._parent(node)
        return closure

    def depth(self, digest: str) -> int:
        """Distance from the root of the stored chain (root is 0)."""
        if digest not in self._stages:
            raise KeyError(digest)
        if digest in self._depth:
            return self._depth[digest]
        chain = []
        node: Optional[str] = digest
        while node is not None and node not in self._depth:
            chain.append(node)
            node = self._parent(node)
        base = self._depth[node] + 1 if node is not None else 0
        for offset, item in enumerate(reversed(chain)):
            self._depth[item] = base + offset
        return self._depth[digest]
