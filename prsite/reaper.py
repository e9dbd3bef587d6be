"""Idle reaper: every interval, remove instances idle longer than open_hours."""

import logging
import threading
import time
from datetime import UTC, datetime, timedelta
from typing import List

from prsite.comments import CommentComposer
from prsite.instances import InstanceManager
from prsite.models import InstanceRecord, InstanceState

LOG = logging.getLogger("prsite.reaper")

_REAPABLE = (InstanceState.RUNNING, InstanceState.FAILED)


def find_idle_instances(
    instances: InstanceManager,
    open_hours: float,
    now: datetime | None = None,
) -> List[InstanceRecord]:
    """Running or failed instances whose last activity is older than
    open_hours."""
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(hours=open_hours)
    return [r for r in instances.list_instances() if r.state in _REAPABLE and r.updated_at < cutoff]


def reap_once(
    instances: InstanceManager,
    composer: CommentComposer,
    open_hours: float,
    now: datetime | None = None,
) -> List[int]:
    """Remove idle instances and tell their PRs; return the removed PR
    numbers."""
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(hours=open_hours)
    removed = []
    for record in find_idle_instances(instances, open_hours, now=now):
        with instances.lock_for(record.pr_id):
            # Re-check under the lock: a push may have refreshed it meanwhile
            if not instances.check_for_instance(record.pr_id):
                continue
            current = instances.get_instance(record.pr_id)
            if current.state not in _REAPABLE or current.updated_at >= cutoff:
                continue
            instances.remove(record.pr_id)
        LOG.info("PR #%s: idle for more than %s hours, removed", record.pr_id, open_hours)
        composer.notify(record.target, "instance_expired", composer.context_for(record))
        removed.append(record.pr_id)
    return removed


def run_reaper_loop(
    instances: InstanceManager,
    composer: CommentComposer,
    open_hours: float,
    interval_seconds: int = 300,
) -> None:
    """Loop: every interval_seconds, remove instances idle longer than
    open_hours."""
    while True:
        try:
            reap_once(instances, composer, open_hours)
        except Exception as e:
            LOG.exception("Reaper tick error: %s", e)
        time.sleep(interval_seconds)


def start_reaper_thread(
    instances: InstanceManager,
    composer: CommentComposer,
    open_hours: float,
    interval_seconds: int = 300,
) -> threading.Thread | None:
    """Start the reaper in a daemon thread; open_hours == 0 disables it."""
    if open_hours <= 0:
        LOG.info("Idle reaper disabled (open_hours=0)")
        return None
    thread = threading.Thread(
        target=run_reaper_loop,
        args=(instances, composer, open_hours),
        kwargs={"interval_seconds": interval_seconds},
        name="prsite-reaper",
        daemon=True,
    )
    thread.start()
    return thread
