"""Runtime node pool backing a compute target."""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Tuple

from mlstudio.exceptions import ComputeProvisioningError

logger = logging.getLogger(__name__)


class ComputeCluster:
    """
    Bounded pool of nodes that scales between ``min_nodes`` and ``max_nodes``.

    A node is allocated when a job needs one and none is idle. A node that has
    been idle for ``idle_seconds_before_scaledown`` is released, but the pool
    never shrinks below ``min_nodes``.
    """

    def __init__(
        self,
        name: str,
        min_nodes: int,
        max_nodes: int,
        idle_seconds_before_scaledown: int,
        clock: Callable[[], float] = time.monotonic
    ):
        if min_nodes > max_nodes:
            raise ComputeProvisioningError(
                f"min_nodes ({min_nodes}) exceeds max_nodes ({max_nodes}) for '{name}'"
            )
        self.name = name
        self.min_nodes = min_nodes
        self.max_nodes = max_nodes
        self.idle_seconds_before_scaledown = idle_seconds_before_scaledown
        self._clock = clock
        self._cond = threading.Condition()
        self._busy = 0
        # Idle-since timestamps, oldest first
        self._idle_since: List[float] = [clock()] * min_nodes

    @property
    def current_node_count(self) -> int:
        with self._cond:
            self._scale_down_locked()
            return self._busy + len(self._idle_since)

    def _scale_down_locked(self) -> None:
        now = self._clock()
        released = 0
        while (
            self._idle_since
            and self._busy + len(self._idle_since) > self.min_nodes
            and now - self._idle_since[0] >= self.idle_seconds_before_scaledown
        ):
            self._idle_since.pop(0)
            released += 1
        if released:
            logger.info(f"Compute '{self.name}' scaled down by {released} idle node(s)")

    def acquire_node(self, timeout: Optional[float] = None) -> bool:
        """
        Block until a node is available and mark it busy.

        Args:
            timeout: Seconds to wait; None waits forever

        Returns:
            True if a node was acquired, False on timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            while self._busy >= self.max_nodes:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)

            self._scale_down_locked()
            if self._idle_since:
                # most recently idle node is the warmest
                self._idle_since.pop()
            else:
                logger.info(
                    f"Compute '{self.name}' scaling up to {self._busy + 1} node(s)"
                )
            self._busy += 1
            return True

    def release_node(self) -> None:
        with self._cond:
            if self._busy == 0:
                raise RuntimeError(f"No busy node to release on compute '{self.name}'")
            self._busy -= 1
            self._idle_since.append(self._clock())
            self._cond.notify()

    @contextmanager
    def node(self, timeout: Optional[float] = None):
        """Hold a node for the duration of the block."""
        if not self.acquire_node(timeout):
            raise ComputeProvisioningError(
                f"Timed out waiting for a node on compute '{self.name}'",
                details={"timeout": timeout}
            )
        try:
            yield
        finally:
            self.release_node()

    def get_status(self) -> Dict[str, int]:
        with self._cond:
            self._scale_down_locked()
            return {
                "current_node_count": self._busy + len(self._idle_since),
                "busy_node_count": self._busy,
                "idle_node_count": len(self._idle_since),
                "min_nodes": self.min_nodes,
                "max_nodes": self.max_nodes,
            }


_clusters: Dict[Tuple[str, str], ComputeCluster] = {}
_clusters_lock = threading.Lock()


def get_cluster(workspace_path: str, name: str, min_nodes: int, max_nodes: int,
                idle_seconds_before_scaledown: int) -> ComputeCluster:
    """Return the process-wide cluster for a workspace's compute target."""
    key = (workspace_path, name)
    with _clusters_lock:
        cluster = _clusters.get(key)
        if cluster is None or (cluster.min_nodes, cluster.max_nodes) != (min_nodes, max_nodes):
            cluster = ComputeCluster(name, min_nodes, max_nodes, idle_seconds_before_scaledown)
            _clusters[key] = cluster
        return cluster


def drop_cluster(workspace_path: str, name: str) -> None:
    with _clusters_lock:
        _clusters.pop((workspace_path, name), None)
