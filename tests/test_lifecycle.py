"""Tests for the teardown coordinator."""

import asyncio
import signal

import pytest

from localproxy.errors import CleanupPartialFailure
from localproxy.lifecycle import CleanupReport, LifecycleCoordinator
from localproxy.ports import PortAllocator
from localproxy.proxy.models import CleanupOptions

from .conftest import FakeListener, make_config


@pytest.fixture
def allocator():
    return PortAllocator(config=make_config())


@pytest.fixture
def coordinator(allocator, fake_dns, fake_hosts, fake_certs, fake_processes, fake_resolver, exit_recorder):
    return LifecycleCoordinator(
        allocator=allocator,
        dns_responder=fake_dns,
        hosts=fake_hosts,
        certs=fake_certs,
        processes=fake_processes,
        resolver=fake_resolver,
        exit_func=exit_recorder
    )


async def _drain():
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.mark.lifecycle
class TestCleanup:

    @pytest.mark.asyncio
    async def test_concurrent_cleanups_share_one_teardown(self, coordinator, fake_hosts, fake_certs):
        options = CleanupOptions(domains=['app.test'], hosts=True, certs=True, embedded=True)
        first, second = await asyncio.gather(coordinator.cleanup(options), coordinator.cleanup(options))
        assert first is second
        assert fake_hosts.removed == [['app.test']]
        assert fake_certs.cleaned == ['app.test']
        assert not coordinator.cleanup_in_progress

    @pytest.mark.asyncio
    async def test_trigger_returns_same_task_while_in_flight(self, coordinator):
        options = CleanupOptions(embedded=True)
        task = coordinator.trigger_cleanup(options)
        assert coordinator.trigger_cleanup(options) is task
        await task

    @pytest.mark.asyncio
    async def test_sequential_cleanups_run_again(self, coordinator, fake_dns):
        options = CleanupOptions(embedded=True)
        await coordinator.cleanup(options)
        await coordinator.cleanup(options)
        assert fake_dns.stopped == 2

    @pytest.mark.asyncio
    async def test_closes_listeners_and_releases_ports(self, coordinator, allocator):
        one, two = FakeListener('one'), FakeListener('two')
        allocator.claim(41001)
        allocator.claim(41002)
        coordinator.register(one, 41001)
        coordinator.register(two, 41002)

        report = await coordinator.cleanup(CleanupOptions(embedded=True))

        assert report.ok
        assert (one.closed, two.closed) == (1, 1)
        assert coordinator.active_listeners == []
        assert allocator.reserved_ports == frozenset()

    @pytest.mark.asyncio
    async def test_step_failure_does_not_abort_siblings(self, coordinator, allocator, fake_dns, fake_resolver):
        broken, fine = FakeListener('broken', fail=True), FakeListener('fine')
        allocator.claim(41003)
        coordinator.register(broken, 41003)
        coordinator.register(fine)

        report = await coordinator.cleanup(CleanupOptions(embedded=True))

        assert not report.ok
        assert [name for name, _ in report.failures] == ['broken']
        assert fine.closed == 1
        assert fake_dns.stopped == 1
        assert fake_resolver.removed == 1
        # The port is released even though close failed
        assert not allocator.is_reserved(41003)
        with pytest.raises(CleanupPartialFailure, match="broken"):
            report.raise_for_failures()

    @pytest.mark.asyncio
    async def test_false_result_counts_as_failure(self, coordinator, fake_hosts):
        async def refuse(domains):
            return False
        fake_hosts.remove_hosts = refuse

        report = await coordinator.cleanup(CleanupOptions(domains=['app.test'], hosts=True, embedded=True))
        assert [name for name, _ in report.failures] == ['hosts']

    @pytest.mark.asyncio
    async def test_hosts_cleanup_skips_loopback_domains(self, coordinator, fake_hosts):
        options = CleanupOptions(domains=['localhost', 'app.localhost', 'app.test'], hosts=True, embedded=True)
        await coordinator.cleanup(options)
        assert fake_hosts.removed == [['app.test']]

        fake_hosts.removed.clear()
        await coordinator.cleanup(CleanupOptions(domains=['localhost'], hosts=True, embedded=True))
        assert fake_hosts.removed == []

    @pytest.mark.asyncio
    async def test_hosts_and_certs_untouched_unless_requested(self, coordinator, fake_hosts, fake_certs):
        await coordinator.cleanup(CleanupOptions(domains=['app.test'], embedded=True))
        assert fake_hosts.removed == []
        assert fake_certs.cleaned == []

    @pytest.mark.asyncio
    async def test_processes_stopped_first(self, coordinator, fake_processes):
        await fake_processes.start('web', 'npm run dev')
        order = []
        original_stop_all = fake_processes.stop_all

        async def stop_all():
            order.append('processes')
            return await original_stop_all()

        class OrderedListener(FakeListener):
            async def close(self):
                order.append('listener')

        fake_processes.stop_all = stop_all
        coordinator.register(OrderedListener('l'))
        await coordinator.cleanup(CleanupOptions(embedded=True))
        assert order == ['processes', 'listener']
        assert fake_processes.stopped == ['web']

    @pytest.mark.asyncio
    async def test_exit_after_non_embedded_teardown(self, coordinator, exit_recorder):
        report = await coordinator.cleanup(CleanupOptions())
        assert isinstance(report, CleanupReport)
        await _drain()
        assert exit_recorder.codes == [0]

    @pytest.mark.asyncio
    async def test_no_exit_when_embedded(self, coordinator, exit_recorder):
        await coordinator.cleanup(CleanupOptions(embedded=True))
        await _drain()
        assert exit_recorder.codes == []

    @pytest.mark.asyncio
    async def test_default_options_accumulate_domains(self, coordinator, fake_hosts, fake_certs):
        coordinator.add_domains(['one.test'], hosts=True, embedded=True)
        coordinator.add_domains(['two.test', 'one.test'], certs=True)
        assert coordinator.default_options == CleanupOptions(
            domains=['one.test', 'two.test'], hosts=True, certs=True, embedded=True
        )
        await coordinator.cleanup()
        assert fake_hosts.removed == [['one.test', 'two.test']]
        assert fake_certs.cleaned == ['one.test', 'two.test']


@pytest.mark.lifecycle
class TestSignals:

    @pytest.mark.asyncio
    async def test_first_signal_starts_teardown_second_forces_exit(self, coordinator, exit_recorder):
        coordinator.default_options = CleanupOptions(embedded=True)

        class SlowListener(FakeListener):
            async def close(self):
                await asyncio.sleep(0.2)

        coordinator.register(SlowListener())
        coordinator._handle_signal(signal.SIGINT)
        assert coordinator.cleanup_in_progress
        coordinator._handle_signal(signal.SIGTERM)
        assert exit_recorder.codes == [1]

        await coordinator._cleanup_task
        assert not coordinator.cleanup_in_progress

    @pytest.mark.asyncio
    async def test_loop_fault_triggers_teardown(self, coordinator):
        coordinator.default_options = CleanupOptions(embedded=True)
        loop = asyncio.get_running_loop()
        coordinator._handle_loop_exception(loop, {'message': 'boom', 'exception': RuntimeError('boom')})
        assert coordinator.cleanup_in_progress
        await coordinator._cleanup_task

    @pytest.mark.asyncio
    async def test_socket_errors_do_not_trigger_teardown(self, coordinator):
        loop = asyncio.get_running_loop()
        coordinator._handle_loop_exception(loop, {'message': 'reset', 'exception': ConnectionResetError()})
        assert not coordinator.cleanup_in_progress

    @pytest.mark.asyncio
    async def test_install_and_remove_handlers(self, coordinator):
        loop = asyncio.get_running_loop()
        previous = loop.get_exception_handler()
        coordinator.install_signal_handlers()
        try:
            assert loop.get_exception_handler() == coordinator._handle_loop_exception
        finally:
            coordinator.remove_signal_handlers()
        assert loop.get_exception_handler() is previous
