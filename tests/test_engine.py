"""
Tests for the discovery engine.

Runs full scan sessions against fake network sources: detector, ARP table,
probe and resolver.
"""

import asyncio

import pytest

from cartographer_agent._types import Device, DeviceType, NetworkInfo, ScanStage
from cartographer_agent.cancellation import CancelToken
from cartographer_agent.discovery.arp_discovery import ARPDiscovery
from cartographer_agent.discovery.engine import DiscoveryEngine, merge_devices
from cartographer_agent.exceptions import NetworkUnavailable, PermissionDenied, ScanCancelled
from cartographer_agent.progress import ProgressBroadcaster

from conftest import TEST_NETWORK, FakeARP, FakeResolver, arp_devices, make_probe


def make_engine(config, arp=None, probe=None, network=TEST_NETWORK, resolver=None, detector=None):
    async def detect():
        return network

    return DiscoveryEngine(
        config,
        ProgressBroadcaster("scan"),
        network_detector=detector or detect,
        arp=arp or FakeARP(),
        probe=probe or make_probe({}),
        resolver=resolver or FakeResolver(),
    )


class TestMergeDevices:
    """Test IP-keyed merging of discovery results."""

    def test_probe_latency_replaces_passive(self):
        """A measured latency wins over an ARP-only record."""
        arp = [Device(ip="192.168.1.5", mac="00:11:32:00:00:01", response_time_ms=0.0)]
        ping = [Device(ip="192.168.1.5", response_time_ms=3.2)]
        merged = merge_devices(arp, ping)
        assert len(merged) == 1
        assert merged[0].mac == "00:11:32:00:00:01"
        assert merged[0].response_time_ms == 3.2

    def test_unique_ips(self):
        """Merged list has one entry per IP."""
        group = arp_devices(5)
        merged = merge_devices(group, group, [Device(ip="192.168.1.200", response_time_ms=1.0)])
        assert len(merged) == 6
        assert len({d.ip for d in merged}) == 6

    def test_missing_fields_filled(self):
        """Hostname from a later group fills an empty field."""
        merged = merge_devices(
            [Device(ip="192.168.1.5", response_time_ms=2.0)],
            [Device(ip="192.168.1.5", hostname="nas.local")],
        )
        assert merged[0].hostname == "nas.local"
        assert merged[0].response_time_ms == 2.0


class TestScanSession:
    """Test complete scan sessions."""

    @pytest.mark.asyncio
    async def test_arp_plus_ping_sweep(self, config):
        """20 ARP entries plus 3 probe responders yields 23 devices."""
        responders = {"192.168.1.100": 4.0, "192.168.1.101": 5.5, "192.168.1.102": 12.0}
        engine = make_engine(config, arp=FakeARP(arp_devices(20)), probe=make_probe(responders))
        sub = engine.broadcaster.subscribe(maxsize=2000)

        result = await engine.run_scan(session_id="s1")

        assert result.devices_found == 23
        assert len({d.ip for d in result.devices}) == 23
        by_ip = {d.ip: d for d in result.devices}
        for device in arp_devices(20):
            assert by_ip[device.ip].response_time_ms == 0.0
        for ip, latency in responders.items():
            assert by_ip[ip].response_time_ms == latency
        assert result.arp_count == 20
        assert result.probed_count == 3

        events = sub.drain()
        assert events[-1].stage == ScanStage.COMPLETE
        assert events[-1].percent == 100
        assert events[-1].devices_found == 23

    @pytest.mark.asyncio
    async def test_sweep_skips_arp_addresses(self, config):
        """Addresses already in the ARP table are not probed."""
        probed = []

        async def probe(ip):
            probed.append(ip)
            return None

        known = arp_devices(20)
        engine = make_engine(config, arp=FakeARP(known), probe=probe)
        await engine.run_scan()

        assert not set(probed) & {d.ip for d in known}
        assert len(probed) == 254 - 20
        assert "192.168.1.0" not in probed
        assert "192.168.1.255" not in probed

    @pytest.mark.asyncio
    async def test_arp_permission_denied_continues(self, config):
        """An unreadable ARP table means zero ARP entries, not a failed scan."""
        engine = make_engine(
            config,
            arp=FakeARP(error=PermissionDenied("denied")),
            probe=make_probe({"192.168.1.7": 1.5}),
        )
        sub = engine.broadcaster.subscribe(maxsize=2000)

        result = await engine.run_scan()

        assert result.arp_count == 0
        assert [d.ip for d in result.devices] == ["192.168.1.7"]
        stages = [e.stage for e in sub.drain()]
        assert ScanStage.FAILED not in stages
        assert stages[-1] == ScanStage.COMPLETE

    @pytest.mark.asyncio
    async def test_hung_arp_command_continues(self, config):
        """A timed-out arp command degrades the ARP step instead of failing the scan."""
        async def hung_runner(*cmd, timeout=5.0):
            raise asyncio.TimeoutError()

        engine = make_engine(
            config,
            arp=ARPDiscovery(proc_path=None, runner=hung_runner),
            probe=make_probe({"192.168.1.7": 1.5}),
        )

        result = await engine.run_scan()

        assert result.arp_count == 0
        assert [d.ip for d in result.devices] == ["192.168.1.7"]

    @pytest.mark.asyncio
    async def test_stage_order_and_monotonic_progress(self, config):
        """Stages appear in order; percent and device count never go down."""
        engine = make_engine(
            config,
            arp=FakeARP(arp_devices(4)),
            probe=make_probe({"192.168.1.150": 2.0}),
            resolver=FakeResolver({"192.168.1.10": "router.lan"}),
        )
        sub = engine.broadcaster.subscribe(maxsize=2000)
        await engine.run_scan()
        events = sub.drain()

        order = [
            ScanStage.STARTING,
            ScanStage.DETECTING_NETWORK,
            ScanStage.READING_ARP,
            ScanStage.PING_SWEEP,
            ScanStage.RESOLVING_HOSTNAMES,
            ScanStage.COMPLETE,
        ]
        seen = []
        for event in events:
            if not seen or seen[-1] != event.stage:
                seen.append(event.stage)
        assert seen == order

        assert events[0].percent == 0
        percents = [e.percent for e in events]
        counts = [e.devices_found for e in events]
        assert percents == sorted(percents)
        assert counts == sorted(counts)

        for event in events:
            if event.stage == ScanStage.READING_ARP:
                assert 10 <= event.percent <= 15
            elif event.stage == ScanStage.PING_SWEEP:
                assert 20 <= event.percent <= 50
            elif event.stage == ScanStage.RESOLVING_HOSTNAMES:
                assert 55 <= event.percent <= 95

    @pytest.mark.asyncio
    async def test_devices_classified_and_sorted(self, config):
        """Devices come back sorted by address and enriched from their MAC."""
        devices = [
            Device(ip="192.168.1.40", mac="00:17:F2:00:00:01", response_time_ms=0.0),
            Device(ip="192.168.1.3", mac="00:11:32:AA:BB:CC", response_time_ms=0.0),
        ]
        engine = make_engine(config, arp=FakeARP(devices))
        result = await engine.run_scan()

        assert [d.ip for d in result.devices] == ["192.168.1.3", "192.168.1.40"]
        assert result.devices[0].device_type == DeviceType.NAS
        assert result.devices[1].device_type == DeviceType.APPLE
        assert result.devices[1].vendor == "Apple, Inc."

    @pytest.mark.asyncio
    async def test_local_host_included(self, config):
        """The scanning host is part of the result when inside the subnet."""
        network = NetworkInfo(interface="eth0", subnet="192.168.1.0/24",
                              gateway_ip="192.168.1.1", local_ip="192.168.1.50")
        engine = make_engine(config, network=network)
        result = await engine.run_scan()

        local = [d for d in result.devices if d.ip == "192.168.1.50"]
        assert len(local) == 1
        assert local[0].response_time_ms == 0.0

    @pytest.mark.asyncio
    async def test_network_unavailable_fails_session(self, config):
        """No usable network is fatal and produces a failed event."""
        async def no_network():
            raise NetworkUnavailable("No active IPv4 interface found")

        engine = make_engine(config, detector=no_network)
        sub = engine.broadcaster.subscribe(maxsize=100)

        with pytest.raises(NetworkUnavailable):
            await engine.run_scan()

        last = sub.drain()[-1]
        assert last.stage == ScanStage.FAILED
        assert "No active IPv4 interface" in last.error


class TestScanCancellation:
    """Test cooperative cancellation of scans."""

    @pytest.mark.asyncio
    async def test_cancel_during_sweep_is_prompt(self, config):
        """A cancelled sweep stops within two probe timeouts."""
        async def slow_probe(ip):
            await asyncio.sleep(10)
            return None

        engine = make_engine(config, probe=slow_probe)
        sub = engine.broadcaster.subscribe(maxsize=2000)
        token = CancelToken()

        task = asyncio.create_task(engine.run_scan(token))
        await asyncio.sleep(0.05)

        loop = asyncio.get_running_loop()
        start = loop.time()
        token.cancel("user")
        with pytest.raises(ScanCancelled):
            await task
        elapsed = loop.time() - start

        assert elapsed < 2 * config.probe_timeout
        last = sub.drain()[-1]
        assert last.stage == ScanStage.FAILED
        assert last.error == "cancelled"
        assert engine.sweep.pool.peak_in_flight <= config.probe_workers

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, config):
        """An already-cancelled token fails the session immediately."""
        engine = make_engine(config)
        token = CancelToken()
        token.cancel()
        with pytest.raises(ScanCancelled):
            await engine.run_scan(token)
