import logging
import threading
from datetime import timedelta

import pytest

from conftest import LAB_RANGE, WORKSTATION_RANGE
from port_allocator import PortAllocator, PortRange
from session_errors import (
    NotContainerized,
    PortExhausted,
    PullFailed,
    ResourceNotFound,
    RuntimeTimeout,
    RuntimeUnavailable,
    SessionNotRunning,
    StartFailed,
)
from session_manager import SessionLifecycleManager
from session_registry import (
    KIND_LAB,
    KIND_WORKSTATION,
    STATUS_RUNNING,
    STATUS_STOPPED,
    Session,
    SessionKey,
)


# ==================== START ====================

def test_start_returns_connection_details(manager, fake_driver, registry):
    result = manager.start('U1', 'R1')

    assert result['status'] == STATUS_RUNNING
    assert result['containerName'] == 'edusec_lab_R1_U1'
    assert result['hostPort'] in LAB_RANGE
    assert str(result['hostPort']) in result['accessUrl']
    assert result['accessUrl'] == f"http://localhost:{result['hostPort']}"
    assert result['internalPort'] == 80
    assert result['image'] == 'img:tag'

    container = fake_driver.containers['edusec_lab_R1_U1']
    assert container.host_port == result['hostPort']
    assert container.internal_port == 80
    assert container.labels['edusec.owner'] == 'U1'
    assert container.labels['edusec.kind'] == KIND_LAB
    assert registry.get(SessionKey.create('U1', 'R1')).status == STATUS_RUNNING


def test_second_start_is_idempotent(manager, fake_driver):
    first = manager.start('U1', 'R1')
    second = manager.start('U1', 'R1')

    assert second['hostPort'] == first['hostPort']
    assert second['containerName'] == first['containerName']
    assert fake_driver.count('run_detached') == 1


def test_start_uses_declared_internal_port_or_default(manager, fake_driver):
    assert manager.start('U1', 'R3')['internalPort'] == 3000
    assert manager.start('U1', 'R4')['internalPort'] == 80


def test_start_pulls_missing_image(manager, fake_driver):
    fake_driver.images.discard('img:tag')
    manager.start('U1', 'R1')
    assert ('pull_image', 'img:tag') in fake_driver.calls


def test_start_does_not_pull_present_image(manager, fake_driver):
    manager.start('U1', 'R1')
    assert fake_driver.count('pull_image') == 0


def test_start_removes_stale_container_before_run(manager, fake_driver):
    fake_driver.add_container('edusec_lab_R1_U1', image='img:tag', running=False)

    manager.start('U1', 'R1')

    ops = fake_driver.ops()
    assert ops.index('remove') < ops.index('run_detached')
    assert fake_driver.containers['edusec_lab_R1_U1'].running


def test_start_not_containerized(manager, fake_driver, registry):
    with pytest.raises(NotContainerized) as exc_info:
        manager.start('U1', 'R2')
    assert exc_info.value.error_code == 'NOT_CONTAINERIZED'
    assert fake_driver.calls == []
    assert len(registry) == 0


def test_start_unknown_resource(manager, fake_driver):
    with pytest.raises(ResourceNotFound):
        manager.start('U1', 'missing')
    assert fake_driver.calls == []


def test_start_runtime_unavailable(manager, fake_driver, registry):
    fake_driver.available = False
    with pytest.raises(RuntimeUnavailable) as exc_info:
        manager.start('U1', 'R1')
    assert 'docker' in exc_info.value.user_message.lower()
    assert fake_driver.count('run_detached') == 0
    assert len(registry) == 0


def test_start_pull_failure_is_not_recorded(manager, fake_driver, registry):
    fake_driver.images.discard('img:tag')
    fake_driver.unpullable.add('img:tag')

    with pytest.raises(PullFailed) as exc_info:
        manager.start('U1', 'R1')

    assert 'pull access denied' in exc_info.value.details
    assert fake_driver.count('run_detached') == 0
    assert len(registry) == 0


def test_start_run_failure_releases_session(manager, fake_driver, registry, caplog):
    fake_driver.failures['run_detached'] = StartFailed("docker run failed", details="invalid reference format")

    with caplog.at_level(logging.ERROR, logger='SessionManager'):
        with pytest.raises(StartFailed):
            manager.start('U1', 'R1')

    assert len(registry) == 0
    assert 'invalid reference format' in caplog.text

    # Retry works once the runtime behaves
    del fake_driver.failures['run_detached']
    assert manager.start('U1', 'R1')['status'] == STATUS_RUNNING


def test_start_container_exiting_immediately(manager, fake_driver, registry):
    fake_driver.exit_on_start = True

    with pytest.raises(StartFailed) as exc_info:
        manager.start('U1', 'R1')

    assert 'failed to start' in str(exc_info.value)
    assert 'ExitCode=1' in str(exc_info.value)
    assert 'cannot bind port' in exc_info.value.details
    assert 'edusec_lab_R1_U1' not in fake_driver.containers
    assert len(registry) == 0


def test_start_waits_startup_grace(fake_driver, catalog, registry, allocator, clock):
    sleeps = []
    manager = SessionLifecycleManager(
        fake_driver, catalog, registry, allocator,
        startup_grace_seconds=2, clock=clock, sleep=sleeps.append
    )
    manager.start('U1', 'R1')
    assert sleeps == [2]


def test_start_port_exhausted(fake_driver, catalog, registry, clock):
    allocator = PortAllocator(lab_range=PortRange(20000, 1))
    manager = SessionLifecycleManager(fake_driver, catalog, registry, allocator,
                                      startup_grace_seconds=0, clock=clock)
    manager.start('U1', 'R1')

    with pytest.raises(PortExhausted):
        manager.start('U2', 'R1')

    assert fake_driver.count('run_detached') == 1
    assert len(registry) == 1


def test_start_reprovisions_when_container_vanished(manager, fake_driver):
    first = manager.start('U1', 'R1')
    fake_driver.containers.clear()

    second = manager.start('U1', 'R1')

    assert second['status'] == STATUS_RUNNING
    assert second['containerName'] == first['containerName']
    assert fake_driver.count('run_detached') == 2


def test_concurrent_starts_same_key_share_one_container(manager, fake_driver):
    fake_driver.run_delay = 0.05
    barrier = threading.Barrier(8)
    results = []

    def worker():
        barrier.wait()
        results.append(manager.start('U1', 'R1'))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 8
    assert len({r['hostPort'] for r in results}) == 1
    assert len({r['containerName'] for r in results}) == 1
    assert fake_driver.count('run_detached') == 1


def test_concurrent_starts_different_keys_get_distinct_ports(manager, fake_driver, registry):
    fake_driver.run_delay = 0.01
    barrier = threading.Barrier(20)

    def worker(i):
        barrier.wait()
        manager.start(f"U{i}", 'R1')

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    ports = [s.host_port for s in registry.snapshot()]
    assert len(ports) == 20
    assert len(set(ports)) == 20


# ==================== STOP ====================

def test_stop_removes_container_and_session(manager, fake_driver, registry):
    manager.start('U1', 'R1')

    assert manager.stop('U1', 'R1') == {'success': True}
    assert 'edusec_lab_R1_U1' not in fake_driver.containers
    assert len(registry) == 0


def test_stop_untracked_session_is_success(manager, fake_driver):
    assert manager.stop('U1', 'R1') == {'success': True}
    assert fake_driver.calls == [('remove', 'edusec_lab_R1_U1')]


def test_stop_swallows_runtime_errors(manager, fake_driver, registry, caplog):
    manager.start('U1', 'R1')
    fake_driver.failures['remove'] = RuntimeUnavailable("Cannot connect to Docker")

    with caplog.at_level(logging.WARNING, logger='SessionManager'):
        assert manager.stop('U1', 'R1') == {'success': True}

    assert len(registry) == 0
    assert 'Error removing container edusec_lab_R1_U1' in caplog.text


# ==================== STATUS ====================

def test_status_untracked_is_stopped(manager, fake_driver):
    assert manager.status('U1', 'R1') == {'status': STATUS_STOPPED}
    assert fake_driver.count('run_detached') == 0
    assert fake_driver.calls == []


def test_status_running_touches_activity(manager, clock, registry):
    manager.start('U1', 'R1')
    clock.advance(minutes=5)

    result = manager.status('U1', 'R1')

    assert result['status'] == STATUS_RUNNING
    assert result['hostPort'] in LAB_RANGE
    assert registry.get(SessionKey.create('U1', 'R1')).last_activity_at == clock.now


def test_status_prunes_vanished_container(manager, fake_driver, registry, caplog):
    manager.start('U1', 'R1')
    fake_driver.containers.clear()

    with caplog.at_level(logging.WARNING, logger='SessionManager'):
        assert manager.status('U1', 'R1') == {'status': STATUS_STOPPED}

    assert len(registry) == 0
    assert 'vanished' in caplog.text


@pytest.mark.parametrize('error', [
    RuntimeTimeout("docker inspect timed out after 5s"),
    RuntimeUnavailable("Cannot connect to Docker"),
])
def test_status_keeps_session_when_runtime_does_not_answer(manager, fake_driver, registry, caplog, error):
    result = manager.start('U1', 'R1')
    fake_driver.failures['inspect_running'] = error

    with caplog.at_level(logging.WARNING, logger='SessionManager'):
        assert manager.status('U1', 'R1') == {'status': STATUS_STOPPED}

    assert registry.get(SessionKey.create('U1', 'R1')).host_port == result['hostPort']
    assert 'Could not inspect edusec_lab_R1_U1' in caplog.text

    del fake_driver.failures['inspect_running']
    assert manager.status('U1', 'R1')['status'] == STATUS_RUNNING


def test_status_prunes_exited_container(manager, fake_driver, registry):
    result = manager.start('U1', 'R1')
    fake_driver.containers[result['containerName']].running = False

    status = manager.status('U1', 'R1')

    assert status['status'] == STATUS_STOPPED
    assert status['containerName'] == result['containerName']
    assert len(registry) == 0


def test_key_locks_are_released_after_use(manager, registry):
    for i in range(500):
        manager.status(f"U{i}", f"lab-{i}")
        manager.stop(f"U{i}", f"lab-{i}")

    manager.start('U1', 'R1')
    manager.status('U1', 'R1')

    assert len(registry) == 1
    assert len(manager._key_locks) == 0


def test_key_lock_is_shared_while_waited_on(manager):
    key = SessionKey.create('U1', 'R1')
    entered = threading.Event()
    release = threading.Event()
    order = []

    def holder():
        with manager.key_lock(key):
            entered.set()
            release.wait(2)
            order.append('holder')

    def waiter():
        with manager.key_lock(key):
            order.append('waiter')

    first = threading.Thread(target=holder)
    first.start()
    entered.wait(2)
    second = threading.Thread(target=waiter)
    second.start()

    release.set()
    first.join()
    second.join()

    assert order == ['holder', 'waiter']
    assert len(manager._key_locks) == 0


# ==================== RECONCILE ====================

def test_status_recovers_running_workstation(manager, fake_driver, registry):
    fake_driver.add_container('edusec_workstation_kali_U1', host_port=30042)

    result = manager.workstation_status('U1')

    assert result['status'] == STATUS_RUNNING
    assert result['hostPort'] == 30042
    assert registry.get(SessionKey.create('U1', 'kali', KIND_WORKSTATION)).host_port == 30042
    assert fake_driver.count('run_detached') == 0


def test_reconcile_allocates_port_when_none_published(manager, fake_driver):
    fake_driver.add_container('edusec_workstation_kali_U1', host_port=None)

    result = manager.reconcile('U1')

    assert result['status'] == STATUS_RUNNING
    assert result['hostPort'] in WORKSTATION_RANGE


def test_reconcile_does_not_adopt_a_tracked_port(manager, fake_driver, registry):
    other = SessionKey.create('U2', 'kali', KIND_WORKSTATION)
    registry.upsert(Session(other, 'edusec_workstation_kali_U2', 'alpine:3.19', 22, host_port=30042))
    fake_driver.add_container('edusec_workstation_kali_U1', host_port=30042)

    result = manager.workstation_status('U1')

    assert result['status'] == STATUS_RUNNING
    assert result['hostPort'] != 30042
    assert result['hostPort'] in WORKSTATION_RANGE
    ports = [s.host_port for s in registry.snapshot()]
    assert len(ports) == len(set(ports)) == 2


def test_reconcile_removes_stopped_leftover(manager, fake_driver, registry):
    fake_driver.add_container('edusec_workstation_kali_U1', host_port=30001, running=False)

    assert manager.workstation_status('U1') == {'status': STATUS_STOPPED}
    assert 'edusec_workstation_kali_U1' not in fake_driver.containers
    assert len(registry) == 0


def test_reconcile_errors_are_swallowed(manager, fake_driver, caplog):
    fake_driver.failures['inspect_running'] = RuntimeUnavailable("Cannot connect to Docker")

    with caplog.at_level(logging.WARNING, logger='SessionManager'):
        assert manager.workstation_status('U1') == {'status': STATUS_STOPPED}

    assert 'Reconcile of edusec_workstation_kali_U1 failed' in caplog.text


def test_reconcile_returns_tracked_session(manager, fake_driver):
    started = manager.start_workstation('U1')
    assert manager.reconcile('U1')['hostPort'] == started['hostPort']


def test_lab_status_does_not_reconcile(manager, fake_driver):
    fake_driver.add_container('edusec_lab_R1_U1', host_port=20001)
    assert manager.status('U1', 'R1') == {'status': STATUS_STOPPED}
    assert fake_driver.calls == []


# ==================== WORKSTATION ====================

def test_workstation_one_per_owner(manager, fake_driver):
    first = manager.start('U1', 'R1', kind=KIND_WORKSTATION)
    second = manager.start('U1', 'R3', kind=KIND_WORKSTATION)

    assert first['containerName'] == 'edusec_workstation_kali_U1'
    assert second['hostPort'] == first['hostPort']
    assert first['hostPort'] in WORKSTATION_RANGE
    assert fake_driver.count('run_detached') == 1

    container = fake_driver.containers['edusec_workstation_kali_U1']
    assert container.init is True
    assert container.command == ['sh', '-c', 'while true; do sleep 3600; done']
    assert container.internal_port == 22


def test_workstation_and_lab_are_separate_sessions(manager, registry):
    manager.start('U1', 'R1')
    manager.start_workstation('U1')
    assert len(registry) == 2

    manager.stop_workstation('U1')
    assert manager.status('U1', 'R1')['status'] == STATUS_RUNNING


# ==================== EXTRAS ====================

def test_stop_if_idle(manager, clock, registry):
    manager.start('U1', 'R1')
    key = SessionKey.create('U1', 'R1')

    clock.advance(minutes=10)
    assert manager.stop_if_idle(key, timedelta(minutes=30)) is False
    clock.advance(minutes=21)
    assert manager.stop_if_idle(key, timedelta(minutes=30)) is True
    assert len(registry) == 0
    assert manager.stop_if_idle(key, timedelta(minutes=30)) is False


def test_logs_require_running_session(manager):
    with pytest.raises(SessionNotRunning):
        manager.logs('U1', 'R1')

    manager.start('U1', 'R1')
    assert manager.logs('U1', 'R1') == "container booted\n"


def test_list_sessions(manager):
    manager.start('U1', 'R1')
    manager.start('U2', 'R3')
    sessions = manager.list_sessions()
    assert sorted(s['ownerId'] for s in sessions) == ['U1', 'U2']
    assert all(s['accessUrl'] for s in sessions)


def test_runtime_health(manager, fake_driver):
    assert manager.runtime_health()['healthy'] is True
    fake_driver.available = False
    health = manager.runtime_health()
    assert health['healthy'] is False
    assert 'Docker' in health['message']
