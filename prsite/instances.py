"""Instance registry and per-pull-request lifecycle.

One InstanceRecord per PR number. Lifecycle operations for the same PR
are serialised by a per-PR re-entrant lock; the registry lock makes
allocate+insert and release+delete atomic with respect to each other.

A close records the time it was accepted. Open and synchronize events
accepted no later than that are stale and are skipped, even when they
were already handed to a worker before the close ran.

    absent -> provisioning -> running <-> updating
                    |            |
                  failed  ---> removed (deleted from the registry)
"""

import logging
import threading
import weakref
from pathlib import Path
from typing import Callable, Dict, List

from prsite.builder import SiteBuilder
from prsite.comments import CommentComposer
from prsite.errors import ExternalAPIError, InstanceNotFound, ResourceExhausted
from prsite.models import InstanceRecord, InstanceState, PRInstanceData
from prsite.ports import PortAllocator
from prsite.scheduler import DelayedScheduler

LOG = logging.getLogger("prsite.instances")

OPEN_ACTIONS = ("opened", "reopened")
SYNC_ACTIONS = ("synchronize",)
CLOSE_ACTIONS = ("closed",)
PR_ACTIONS = OPEN_ACTIONS + SYNC_ACTIONS + CLOSE_ACTIONS

_DOWNLOADABLE = (InstanceState.PROVISIONING, InstanceState.RUNNING, InstanceState.FAILED)
_EDITABLE = (InstanceState.PROVISIONING, InstanceState.RUNNING, InstanceState.FAILED)


class PRLock:
    """Re-entrant lock for one PR.

    Held weakly by the manager, so it goes away once no thread uses it.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def acquire(self, blocking: bool = True, timeout: float = -1) -> bool:
        return self._lock.acquire(blocking, timeout)

    def release(self) -> None:
        self._lock.release()

    def __enter__(self) -> "PRLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self._lock.release()


class InstanceManager:
    """Owns all site instances and drives their state transitions."""

    def __init__(
        self,
        ports: PortAllocator,
        builder: SiteBuilder,
        composer: CommentComposer,
        scheduler: DelayedScheduler | None = None,
        block_size: int = 1,
        instances_dir: Path | None = None,
    ) -> None:
        self._ports = ports
        self._builder = builder
        self._composer = composer
        self._scheduler = scheduler
        self._block_size = block_size
        self.instances_dir = Path(instances_dir) if instances_dir is not None else None
        self._instances: Dict[int, InstanceRecord] = {}
        self._registry_lock = threading.Lock()
        self._pr_locks: "weakref.WeakValueDictionary[int, PRLock]" = weakref.WeakValueDictionary()
        # PR number -> accepted_at of the latest close
        self._closed_at: Dict[int, float] = {}

    def prep_site_directory(self) -> None:
        """Ensure the instance root directory exists."""
        if self.instances_dir is not None:
            self.instances_dir.mkdir(parents=True, exist_ok=True)

    def lock_for(self, pr_id: int) -> PRLock:
        with self._registry_lock:
            lock = self._pr_locks.get(pr_id)
            if lock is None:
                lock = PRLock()
                self._pr_locks[pr_id] = lock
            return lock

    def lock_count(self) -> int:
        """Per-PR locks currently alive."""
        with self._registry_lock:
            return len(self._pr_locks)

    def check_for_instance(self, pr_id: int) -> bool:
        return pr_id in self._instances

    def get_instance(self, pr_id: int) -> InstanceRecord:
        try:
            return self._instances[pr_id]
        except KeyError:
            raise InstanceNotFound(pr_id) from None

    def list_instances(self) -> List[InstanceRecord]:
        with self._registry_lock:
            return sorted(self._instances.values(), key=lambda r: r.pr_id)

    def spawn(self, data: PRInstanceData) -> InstanceRecord:
        """Register a new instance in PROVISIONING with a fresh port block.

        Raises ResourceExhausted when no block is free.
        """
        with self.lock_for(data.pr_id), self._registry_lock:
            if data.pr_id in self._instances:
                raise ValueError(f"PR #{data.pr_id} already has an instance")
            ports = self._ports.allocate(self._block_size)
            record = InstanceRecord.from_data(data, ports)
            self._instances[data.pr_id] = record
        LOG.info("PR #%s: spawned instance on ports %s", data.pr_id, ports)
        return record

    def download(self, pr_id: int) -> InstanceRecord:
        """Provision the site; PROVISIONING/RUNNING/FAILED -> RUNNING."""
        with self.lock_for(pr_id):
            record = self.get_instance(pr_id)
            if record.state not in _DOWNLOADABLE:
                raise ValueError(f"PR #{pr_id}: cannot download in state {record.state.value}")
            if not self._run_build(record, self._builder.provision):
                return record
            record.state = InstanceState.RUNNING
            record.touch()
            LOG.info("PR #%s: running on port %s", pr_id, record.assigned_port)
            self._composer.notify(record.target, "new_default", self._composer.context_for(record))
            return record

    def edit(self, pr_id: int) -> InstanceRecord:
        """Rebuild in place on the same ports; RUNNING -> UPDATING -> RUNNING."""
        with self.lock_for(pr_id):
            record = self.get_instance(pr_id)
            if record.state not in _EDITABLE:
                raise ValueError(f"PR #{pr_id}: cannot edit in state {record.state.value}")
            record.state = InstanceState.UPDATING
            if not self._run_build(record, self._builder.rebuild):
                return record
            record.state = InstanceState.RUNNING
            record.touch()
            LOG.info("PR #%s: updated on port %s", pr_id, record.assigned_port)
            self._composer.notify(record.target, "edit", self._composer.context_for(record))
            return record

    def remove(self, pr_id: int, accepted_before: float | None = None) -> InstanceRecord:
        """Tear down the site, free its ports and delete the record.

        Pending scheduled work for the PR accepted up to accepted_before is
        cancelled.
        """
        with self.lock_for(pr_id):
            record = self.get_instance(pr_id)
            try:
                self._builder.teardown(record)
            except ExternalAPIError as e:
                LOG.warning("PR #%s: teardown failed, releasing ports anyway: %s", pr_id, e)
            finally:
                with self._registry_lock:
                    self._ports.release(record.assigned_ports)
                    del self._instances[pr_id]
                record.state = InstanceState.REMOVED
                LOG.info("PR #%s: removed, ports %s released", pr_id, record.assigned_ports)
                self._cancel_pending(pr_id, accepted_before)
            return record

    def _cancel_pending(self, pr_id: int, accepted_before: float | None) -> None:
        if self._scheduler is not None:
            self._scheduler.cancel_pending(pr_id, accepted_before=accepted_before)

    def _run_build(self, record: InstanceRecord, step: Callable[[InstanceRecord], None]) -> bool:
        """Run a builder step; on any error the record ends up FAILED.

        Unexpected errors are re-raised after the build_failed comment.
        """
        try:
            step(record)
        except ExternalAPIError as e:
            self._mark_failed(record)
            LOG.warning("PR #%s: build failed: %s", record.pr_id, e)
            return False
        except Exception:
            self._mark_failed(record)
            LOG.error("PR #%s: build crashed", record.pr_id)
            raise
        return True

    def _mark_failed(self, record: InstanceRecord) -> None:
        record.state = InstanceState.FAILED
        self._composer.notify(record.target, "build_failed", self._composer.context_for(record))

    def _spawn_or_notify(self, data: PRInstanceData) -> InstanceRecord | None:
        try:
            return self.spawn(data)
        except ResourceExhausted as e:
            LOG.warning("PR #%s: no resources: %s", data.pr_id, e)
            context = self._composer.context_for(
                pr_id=data.pr_id,
                branch=data.branch,
                source_repo_full_name=data.source_repo_full_name,
                pr_repo_account=data.pr_repo_account,
                pr_repo_name=data.pr_repo_name,
                pr_author=data.pr_author,
            )
            self._composer.notify(data.target, "new_no_resources", context)
            return None

    def handle_action(self, action: str, data: PRInstanceData, accepted_at: float | None = None) -> None:
        """Apply a pull_request action to the PR's instance.

        opened/reopened: spawn if absent, then download.
        synchronize: spawn if absent, then edit.
        closed: remove if present; otherwise nothing to tear down.
        Other actions are ignored, as are events accepted no later than
        the PR's last close.
        """
        if action not in PR_ACTIONS:
            LOG.debug("PR #%s: ignoring action %s", data.pr_id, action)
            return
        with self.lock_for(data.pr_id):
            if accepted_at is not None and action in CLOSE_ACTIONS:
                self._closed_at[data.pr_id] = max(accepted_at, self._closed_at.get(data.pr_id, accepted_at))
            elif self.is_stale(data.pr_id, accepted_at):
                LOG.info("PR #%s: skipping %s accepted before the PR was closed", data.pr_id, action)
                return
            exists = self.check_for_instance(data.pr_id)
            if action in CLOSE_ACTIONS:
                if exists:
                    self.remove(data.pr_id, accepted_before=accepted_at)
                else:
                    LOG.debug("PR #%s: closed without an instance", data.pr_id)
                    self._cancel_pending(data.pr_id, accepted_at)
                return
            if not exists and self._spawn_or_notify(data) is None:
                return
            if action in OPEN_ACTIONS:
                self.download(data.pr_id)
            else:
                self.edit(data.pr_id)

    def is_stale(self, pr_id: int, accepted_at: float | None) -> bool:
        """True when an event accepted at accepted_at predates the PR's last
        close."""
        closed_at = self._closed_at.get(pr_id)
        return accepted_at is not None and closed_at is not None and accepted_at <= closed_at

    def rebuild(self, data: PRInstanceData) -> InstanceRecord | None:
        """Manual rebuild: edit an existing instance, or spawn and download a
        new one."""
        with self.lock_for(data.pr_id):
            if self.check_for_instance(data.pr_id):
                return self.edit(data.pr_id)
            if self._spawn_or_notify(data) is None:
                return None
            return self.download(data.pr_id)
