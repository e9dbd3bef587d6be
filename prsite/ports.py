"""Port allocation for site instances.

Ports are handed out in contiguous blocks from an inclusive
[min_port, max_port] range. Allocation always picks the lowest free run
that is long enough, so identical state and requests give identical
results.
"""

import logging
import threading
from typing import Iterable, List

from prsite.errors import PortReleaseError, ResourceExhausted

LOG = logging.getLogger("prsite.ports")


class PortAllocator:
    """Thread-safe allocator of contiguous port blocks."""

    def __init__(self, min_port: int, max_port: int, max_consecutive: int | None = None) -> None:
        if min_port > max_port:
            raise ValueError(f"min_port {min_port} is greater than max_port {max_port}")
        if max_consecutive is not None and max_consecutive < 1:
            raise ValueError("max_consecutive must be at least 1")
        self.min_port = min_port
        self.max_port = max_port
        self.max_consecutive = max_consecutive
        self._held: set[int] = set()
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return self.max_port - self.min_port + 1

    @property
    def free_count(self) -> int:
        with self._lock:
            return self.size - len(self._held)

    def is_held(self, port: int) -> bool:
        with self._lock:
            return port in self._held

    def allocate(self, block_size: int = 1) -> List[int]:
        """Reserve and return the lowest free run of block_size contiguous
        ports.

        Raises ResourceExhausted when no run is long enough, even if enough
        ports are free in total.
        """
        if block_size < 1:
            raise ValueError("block_size must be at least 1")
        if self.max_consecutive is not None and block_size > self.max_consecutive:
            raise ValueError(f"block_size {block_size} exceeds max_consecutive {self.max_consecutive}")
        with self._lock:
            run_start = self.min_port
            for port in range(self.min_port, self.max_port + 1):
                if port in self._held:
                    run_start = port + 1
                    continue
                if port - run_start + 1 == block_size:
                    block = list(range(run_start, port + 1))
                    self._held.update(block)
                    LOG.debug("Allocated ports %s", block)
                    return block
        raise ResourceExhausted(
            f"No block of {block_size} consecutive ports free in {self.min_port}-{self.max_port}"
        )

    def release(self, ports: Iterable[int]) -> None:
        """Return ports to the free pool.

        All ports must be currently held; otherwise nothing is released
        and PortReleaseError is raised.
        """
        block = list(ports)
        with self._lock:
            not_held = [p for p in block if p not in self._held]
            if not_held or len(set(block)) != len(block):
                raise PortReleaseError(f"Ports not held (or repeated): {not_held or block}")
            self._held.difference_update(block)
        LOG.debug("Released ports %s", block)
