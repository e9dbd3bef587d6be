"""Tests for the instance registry and lifecycle state machine."""

import threading
from unittest.mock import MagicMock

import pytest
from helpers import FakeClock, make_pr_data, posted_bodies

from prsite.errors import BuildError, InstanceNotFound, ResourceExhausted
from prsite.instances import InstanceManager
from prsite.models import InstanceState
from prsite.ports import PortAllocator
from prsite.scheduler import DelayedScheduler


def test_get_instance_absent_raises(manager: InstanceManager) -> None:
    """Absent PR is not found."""
    assert manager.check_for_instance(1) is False
    with pytest.raises(InstanceNotFound):
        manager.get_instance(1)


def test_spawn_registers_provisioning_record(manager: InstanceManager, ports: PortAllocator) -> None:
    """spawn assigns a port block and stores the record."""
    record = manager.spawn(make_pr_data(pr_id=3))
    assert record.state == InstanceState.PROVISIONING
    assert record.assigned_ports == [9000]
    assert manager.get_instance(3) is record
    assert ports.is_held(9000)


def test_spawn_twice_for_same_pr_fails(manager: InstanceManager) -> None:
    """At most one record per PR."""
    manager.spawn(make_pr_data(pr_id=3))
    with pytest.raises(ValueError):
        manager.spawn(make_pr_data(pr_id=3))


def test_spawn_exhausted_propagates(manager: InstanceManager) -> None:
    """When no ports are free, spawn raises and registers nothing."""
    for pr_id in range(1, 5):
        manager.spawn(make_pr_data(pr_id=pr_id))
    with pytest.raises(ResourceExhausted):
        manager.spawn(make_pr_data(pr_id=5))
    assert manager.check_for_instance(5) is False


def test_opened_spawns_and_downloads(manager: InstanceManager, builder: MagicMock, adapter: MagicMock) -> None:
    """opened without instance: spawn, provision, RUNNING, creation comment."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    record = manager.get_instance(7)
    assert record.state == InstanceState.RUNNING
    builder.provision.assert_called_once_with(record)
    bodies = posted_bodies(adapter)
    assert len(bodies) == 1
    assert "http://preview.example.com:9000" in bodies[0]


def test_opened_with_instance_redownloads(manager: InstanceManager, builder: MagicMock) -> None:
    """opened/reopened with an instance rebuilds on the same ports."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    ports_before = manager.get_instance(7).assigned_ports
    manager.handle_action("reopened", make_pr_data(pr_id=7))
    assert builder.provision.call_count == 2
    assert manager.get_instance(7).assigned_ports == ports_before
    assert len(manager.list_instances()) == 1


def test_many_opened_events_one_record_per_pr(manager: InstanceManager) -> None:
    """Repeated opened events keep one record per PR with disjoint ports."""
    for pr_id in (1, 2, 1, 3, 2, 1):
        manager.handle_action("opened", make_pr_data(pr_id=pr_id))
    records = manager.list_instances()
    assert [r.pr_id for r in records] == [1, 2, 3]
    ports = [p for r in records for p in r.assigned_ports]
    assert len(ports) == len(set(ports))


def test_synchronize_existing_edits(manager: InstanceManager, builder: MagicMock, adapter: MagicMock) -> None:
    """synchronize rebuilds in place and posts the edit comment."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    manager.handle_action("synchronize", make_pr_data(pr_id=7))
    record = manager.get_instance(7)
    assert record.state == InstanceState.RUNNING
    builder.rebuild.assert_called_once_with(record)
    assert posted_bodies(adapter)[-1].startswith("New commits on `feature/login`")


def test_synchronize_without_instance_matches_opened_then_synchronize(
    builder: MagicMock, composer, scheduler: DelayedScheduler
) -> None:
    """Out-of-order synchronize ends in the same state as opened followed by
    synchronize."""
    fresh = InstanceManager(PortAllocator(9000, 9003), builder, composer, scheduler=scheduler)
    fresh.handle_action("synchronize", make_pr_data(pr_id=7))

    ordered = InstanceManager(PortAllocator(9000, 9003), MagicMock(), composer, scheduler=scheduler)
    ordered.handle_action("opened", make_pr_data(pr_id=7))
    ordered.handle_action("synchronize", make_pr_data(pr_id=7))

    a = fresh.get_instance(7)
    b = ordered.get_instance(7)
    assert (a.state, a.assigned_ports, a.branch) == (b.state, b.assigned_ports, b.branch)
    assert a.state == InstanceState.RUNNING


def test_closed_removes_and_releases_ports(
    manager: InstanceManager, ports: PortAllocator, builder: MagicMock
) -> None:
    """closed tears down, frees the ports and deletes the record."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    record = manager.get_instance(7)
    manager.handle_action("closed", make_pr_data(pr_id=7))
    assert manager.check_for_instance(7) is False
    assert record.state == InstanceState.REMOVED
    builder.teardown.assert_called_once_with(record)
    assert ports.free_count == 4


def test_closed_without_instance_is_noop(manager: InstanceManager, ports: PortAllocator, builder: MagicMock) -> None:
    """closed for an unknown PR changes nothing and does not fail."""
    manager.handle_action("closed", make_pr_data(pr_id=99))
    assert manager.check_for_instance(99) is False
    assert ports.free_count == 4
    builder.teardown.assert_not_called()


def test_unknown_action_ignored(manager: InstanceManager, builder: MagicMock) -> None:
    """Actions outside the lifecycle table have no effect."""
    manager.handle_action("labeled", make_pr_data(pr_id=7))
    assert manager.check_for_instance(7) is False
    builder.provision.assert_not_called()


def test_no_resources_posts_comment(
    builder: MagicMock, composer, adapter: MagicMock, scheduler: DelayedScheduler
) -> None:
    """When the pool is exhausted the author is told instead of silence."""
    mgr = InstanceManager(PortAllocator(9000, 9000), builder, composer, scheduler=scheduler)
    mgr.handle_action("opened", make_pr_data(pr_id=1))
    adapter.create_comment.reset_mock()
    mgr.handle_action("opened", make_pr_data(pr_id=2, pr_author="bob"))
    assert mgr.check_for_instance(2) is False
    bodies = posted_bodies(adapter)
    assert len(bodies) == 1
    assert bodies[0].startswith("Sorry @bob, all preview slots are in use")
    assert adapter.create_comment.call_args.args[1] == 2


def test_build_failure_marks_failed_and_comments(
    manager: InstanceManager, builder: MagicMock, adapter: MagicMock
) -> None:
    """A failing build leaves the record FAILED, ports held, comment
    posted."""
    builder.provision.side_effect = BuildError("download failed")
    manager.handle_action("opened", make_pr_data(pr_id=7))
    record = manager.get_instance(7)
    assert record.state == InstanceState.FAILED
    assert "could not be built" in posted_bodies(adapter)[-1]

    builder.rebuild.side_effect = None
    manager.handle_action("synchronize", make_pr_data(pr_id=7))
    assert record.state == InstanceState.RUNNING


def test_teardown_failure_still_releases(
    manager: InstanceManager, builder: MagicMock, ports: PortAllocator
) -> None:
    """Ports and record are freed even if teardown fails."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    builder.teardown.side_effect = BuildError("rm failed")
    manager.remove(7)
    assert manager.check_for_instance(7) is False
    assert ports.free_count == 4


def test_remove_cancels_pending_earlier_work(
    manager: InstanceManager, scheduler: DelayedScheduler, clock: FakeClock
) -> None:
    """Work queued for the PR before the close is cancelled; later events
    survive."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    stale = MagicMock()
    scheduler.schedule(15, stale, key=7)
    close_accepted = clock()
    clock.advance(1)
    later = MagicMock()
    scheduler.schedule(15, later, key=7)
    manager.handle_action("closed", make_pr_data(pr_id=7), accepted_at=close_accepted)
    clock.advance(30)
    scheduler.run_pending()
    stale.assert_not_called()
    later.assert_called_once()


def test_lifecycle_operations_serialised_per_pr(
    manager: InstanceManager, builder: MagicMock
) -> None:
    """Concurrent events for one PR never interleave inside the builder."""
    active = []
    overlaps = []
    guard = threading.Lock()

    def slow_step(record) -> None:
        with guard:
            if active:
                overlaps.append(record.pr_id)
            active.append(record.pr_id)
        threading.Event().wait(0.01)
        with guard:
            active.remove(record.pr_id)

    builder.provision.side_effect = slow_step
    builder.rebuild.side_effect = slow_step
    actions = ["opened", "synchronize", "synchronize", "reopened", "synchronize"]
    threads = [
        threading.Thread(target=manager.handle_action, args=(action, make_pr_data(pr_id=7))) for action in actions
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlaps == []
    assert len(manager.list_instances()) == 1
    assert manager.get_instance(7).state == InstanceState.RUNNING


def test_rebuild_spawns_when_absent(manager: InstanceManager, builder: MagicMock) -> None:
    """Manual rebuild of a PR without instance spawns and provisions."""
    record = manager.rebuild(make_pr_data(pr_id=8))
    assert record is not None and record.state == InstanceState.RUNNING
    builder.provision.assert_called_once()


def test_prep_site_directory_creates_root(tmp_path, ports, builder, composer) -> None:
    """The instance root directory is created on startup."""
    root = tmp_path / "site_instances"
    InstanceManager(ports, builder, composer, instances_dir=root).prep_site_directory()
    assert root.is_dir()


def test_unexpected_build_error_marks_failed_and_recovers(
    manager: InstanceManager, builder: MagicMock, adapter: MagicMock
) -> None:
    """A crash in the builder leaves FAILED, not UPDATING, and the next push rebuilds."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    builder.rebuild.side_effect = OSError(28, "No space left on device")
    with pytest.raises(OSError):
        manager.handle_action("synchronize", make_pr_data(pr_id=7))
    assert manager.get_instance(7).state == InstanceState.FAILED
    assert posted_bodies(adapter)[-1].startswith("The preview for `feature/login` could not be built")

    builder.rebuild.side_effect = None
    manager.handle_action("synchronize", make_pr_data(pr_id=7))
    assert manager.get_instance(7).state == InstanceState.RUNNING


def test_teardown_os_error_still_releases(
    manager: InstanceManager, builder: MagicMock, ports: PortAllocator
) -> None:
    """A filesystem error during teardown still frees the record and ports."""
    manager.handle_action("opened", make_pr_data(pr_id=7))
    builder.teardown.side_effect = PermissionError(13, "Permission denied")
    with pytest.raises(PermissionError):
        manager.handle_action("closed", make_pr_data(pr_id=7))
    assert manager.check_for_instance(7) is False
    assert ports.free_count == 4


def test_open_accepted_before_close_is_skipped(manager: InstanceManager, builder: MagicMock) -> None:
    """An open that reaches the lock after a later close does nothing."""
    manager.handle_action("closed", make_pr_data(pr_id=7), accepted_at=100.1)
    manager.handle_action("opened", make_pr_data(pr_id=7), accepted_at=100.0)
    assert manager.check_for_instance(7) is False
    builder.provision.assert_not_called()


def test_reopen_after_close_is_handled(manager: InstanceManager) -> None:
    """Events accepted after the close still run."""
    manager.handle_action("opened", make_pr_data(pr_id=7), accepted_at=100.0)
    manager.handle_action("closed", make_pr_data(pr_id=7), accepted_at=101.0)
    manager.handle_action("reopened", make_pr_data(pr_id=7), accepted_at=102.0)
    assert manager.get_instance(7).state == InstanceState.RUNNING


def test_stale_open_in_same_batch_as_close(
    manager: InstanceManager, scheduler: DelayedScheduler, clock: FakeClock
) -> None:
    """opened and closed due together: the close runs first, the open is dropped."""
    opened_at = clock()
    scheduler.schedule(15, manager.handle_action, "opened", make_pr_data(pr_id=7), opened_at, key=7)
    closed_at = opened_at + 0.1
    scheduler.schedule(
        14, manager.handle_action, "closed", make_pr_data(pr_id=7), closed_at, key=7, accepted_at=closed_at
    )
    clock.advance(20)
    scheduler.run_pending()
    assert manager.check_for_instance(7) is False


def test_per_pr_locks_are_dropped_when_unused(manager: InstanceManager) -> None:
    """Locks for PRs nobody is working on do not accumulate."""
    for pr_id in range(1, 4):
        manager.handle_action("opened", make_pr_data(pr_id=pr_id))
        manager.handle_action("closed", make_pr_data(pr_id=pr_id))
    assert manager.lock_count() == 0
    with manager.lock_for(9):
        assert manager.lock_count() == 1
