"""
Performance Tests for nmcollector

These tests verify the concurrency and resource characteristics of
multi-host collection.
"""

import gc
import threading
import time

import psutil
import pytest

from nmcollector.collector import Collector
from nmcollector.ipmi import IPMICommander, get_platform_capabilities
from nmcollector.ipmi.model import Request

COMMAND_LATENCY = 0.05

SENSOR_REQUEST = Request(bytes([0x04, 0x2D, 0x20]))


class SlowCommander(IPMICommander):
    """Commander whose every command takes a fixed time"""

    def __init__(self, latency=COMMAND_LATENCY, **kwargs):
        super().__init__(**kwargs)
        self.latency = latency
        self.active = 0
        self.peak = 0
        self._count_lock = threading.Lock()

    def exec_raw(self, request, host, timeout):
        with self._count_lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.latency)
            return bytes([0x00, 0x57, 0x01, 0x00] + [0x10] * 12)
        finally:
            with self._count_lock:
                self.active -= 1


def test_hosts_run_concurrently():
    """Test wall time tracks the slowest host, not the sum of hosts"""
    commander = SlowCommander(max_workers=16)
    batches = {f"bmc{i}": [SENSOR_REQUEST] * 4 for i in range(16)}

    start = time.monotonic()
    results = commander.batch_exec_hosts(batches)
    elapsed = time.monotonic() - start

    serial_time = 16 * 4 * COMMAND_LATENCY
    assert elapsed < serial_time / 4
    assert all(r.is_valid for responses in results.values() for r in responses)
    assert commander.peak > 1


def test_worker_limit():
    """Test no more than max_workers hosts are processed at once"""
    commander = SlowCommander(max_workers=3)
    commander.batch_exec_hosts({f"bmc{i}": [SENSOR_REQUEST] * 2 for i in range(10)})
    assert commander.peak <= 3


def test_collection_latency():
    """Test full-catalog collection over many hosts"""
    hosts = [f"bmc{i}" for i in range(32)]
    commander = SlowCommander(latency=0.005, max_workers=32)
    collector = Collector(commander, get_platform_capabilities("generic", hosts))
    metrics = collector.discover()

    start = time.monotonic()
    collected = collector.collect(metrics)
    elapsed = time.monotonic() - start

    commands_per_host = len(collector.catalog[hosts[0]])
    assert len(collected) == len(metrics)
    assert elapsed < len(hosts) * commands_per_host * 0.005 / 2


@pytest.mark.parametrize("rounds", [5])
def test_threads_released(rounds):
    """Test worker threads do not accumulate across collections"""
    process = psutil.Process()
    commander = SlowCommander(latency=0.001, max_workers=8)
    batches = {f"bmc{i}": [SENSOR_REQUEST] for i in range(8)}

    commander.batch_exec_hosts(batches)
    time.sleep(0.1)
    baseline = process.num_threads()

    for _ in range(rounds):
        commander.batch_exec_hosts(batches)
    time.sleep(0.2)
    gc.collect()

    assert process.num_threads() <= baseline + 1


def test_memory_stable():
    """Test repeated collection does not grow memory unboundedly"""
    process = psutil.Process()
    hosts = [f"bmc{i}" for i in range(8)]
    collector = Collector(SlowCommander(latency=0, max_workers=8),
                          get_platform_capabilities("generic", hosts))
    metrics = collector.discover()

    collector.collect(metrics)
    gc.collect()
    baseline = process.memory_info().rss

    for _ in range(20):
        collector.collect(metrics)
    gc.collect()

    # Allow 20MB of allocator noise
    assert process.memory_info().rss - baseline < 20 * 1024 * 1024


def test_slow_host_does_not_delay_others():
    """Test wall time is the slower host's latency, not the sum"""
    class DelayedCommander(SlowCommander):
        def exec_raw(self, request, host, timeout):
            time.sleep(0.3 if host == "slow" else 0.1)
            return bytes([0x00])

    commander = DelayedCommander()
    start = time.monotonic()
    results = commander.batch_exec_hosts({"slow": [SENSOR_REQUEST], "fast": [SENSOR_REQUEST]})
    elapsed = time.monotonic() - start

    assert elapsed < 0.3 + 0.1
    assert results["fast"][0].is_valid
    assert results["slow"][0].is_valid
