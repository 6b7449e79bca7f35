"""
Integration Tests for nmcollector

These tests verify that configuration, catalog, execution and decoding
work together, with ipmitool replaced by canned output.
"""

import subprocess

import pytest
import yaml
from unittest.mock import Mock, patch

from nmcollector.collector import Collector, CollectorConfig, build
from nmcollector.ipmi import SENTINEL, IpmitoolInBandCommander
from nmcollector.ipmi.catalog import GENERIC_VENDOR

MOCK_NM_STATISTICS = " 57 01 00 c8 00 64 00 2c 01 96 00 00 00 00 00 10 00 00 00 50\n"
MOCK_IANA_ONLY = " 57 01 00\n"
MOCK_SENSOR_READING = " 1b c0 00\n"
MOCK_CUPS_REJECTED = (
    "Unable to send RAW command (channel=0x6 netfn=0x2e lun=0x0 cmd=0x65 rsp=0xd5): "
    "Command not supported in present state\n"
)
MOCK_SESSION_ERROR = "Error: Unable to establish IPMI v2 / RMCP+ session\n"


def fake_ipmitool(down_hosts=()):
    """Build a subprocess.run stand-in answering like ipmitool"""
    calls = []

    def run(cmd, **kwargs):
        calls.append((cmd, kwargs))
        if "-H" in cmd and cmd[cmd.index("-H") + 1] in down_hosts:
            raise subprocess.CalledProcessError(1, cmd, stderr=MOCK_SESSION_ERROR)
        raw = cmd[cmd.index("raw") + 1:]
        netfn, command = raw[0], raw[1]
        if netfn == "0x2e" and command == "0xc8":
            return Mock(stdout=MOCK_NM_STATISTICS, returncode=0)
        if netfn == "0x2e" and command == "0x65":
            raise subprocess.CalledProcessError(1, cmd, stderr=MOCK_CUPS_REJECTED)
        if netfn == "0x04":
            return Mock(stdout=MOCK_SENSOR_READING, returncode=0)
        return Mock(stdout=MOCK_IANA_ONLY, returncode=0)

    run.calls = calls
    return run


@pytest.fixture
def inband_config(tmp_path):
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.dump({"ipmi": {"mode": "legacy_inband", "sensors": {"inlet": "0x20"}}}, f)
    return str(path)


@pytest.fixture
def oob_config(tmp_path):
    hosts = tmp_path / "hosts"
    hosts.write_text("bmc1\nbmc2\n")
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.dump({"ipmi": {"mode": "oob", "hosts": str(hosts), "user": "ADMIN",
                            "password": "secret", "retry_delay": 0}}, f)
    return str(path)


def test_inband_collection(inband_config):
    """Test a local collection from configuration file to values"""
    run = fake_ipmitool()
    with patch("socket.gethostname", return_value="node1"):
        collector = build(CollectorConfig.load(inband_config))

    metrics = collector.discover()
    expected = sum(len(d.format.get_metrics()) for d in collector.catalog["node1"])
    assert len(metrics) == expected

    with patch("subprocess.run", side_effect=run):
        collected = collector.collect(metrics)

    assert len(collected) == len(metrics)
    values = {m.path: m.value for m in collected}
    assert values["intel/node_manager/node1/power/system"] == 200
    assert values["intel/node_manager/node1/power/cpu/min"] == 100
    assert values["intel/node_manager/node1/airflow/avg"] == 150
    assert values["intel/node_manager/node1/sensor/inlet"] == 0x1B
    # Rejected by the Management Engine
    assert values["intel/node_manager/node1/cups/cpu_cstate"] == SENTINEL
    # Reply too short to hold any temperature
    assert values["intel/node_manager/node1/temperature/cpu/cpu0"] == SENTINEL

    # One ipmitool invocation per catalog entry
    assert len(run.calls) == len(collector.catalog["node1"])
    nm_cmd = run.calls[0][0]
    assert nm_cmd[:5] == ["ipmitool", "-b", "0x06", "-t", "0x2c"]
    sensor_cmd = run.calls[-1][0]
    assert sensor_cmd == ["ipmitool", "raw", "0x04", "0x2d", "0x20"]


def test_oob_collection(oob_config):
    """Test remote hosts are isolated from each other's failures"""
    run = fake_ipmitool(down_hosts={"bmc2"})
    collector = build(CollectorConfig.load(oob_config))
    assert collector.hosts == ["bmc1", "bmc2"]

    requested = [
        "intel/node_manager/bmc1/power/system",
        "intel/node_manager/bmc2/power/system",
        "intel/node_manager/bmc1/power/memory/max",
        "intel/node_manager/bmc2/thermal/inlet",
    ]
    with patch("subprocess.run", side_effect=run):
        collected = collector.collect(requested)

    assert [m.value for m in collected] == [200, SENTINEL, 300, SENTINEL]
    assert [m.source for m in collected] == ["bmc1", "bmc2", "bmc1", "bmc2"]
    assert len({m.timestamp for m in collected}) == 1

    # bmc2 is abandoned after its first failure
    bmc2_calls = [c for c, _ in run.calls if "bmc2" in c]
    assert len(bmc2_calls) == 1

    # Password travels in the environment, never on the command line
    for cmd, kwargs in run.calls:
        assert "secret" not in cmd
        assert "-E" in cmd
        assert kwargs["env"]["IPMI_PASSWORD"] == "secret"


def test_reconfigure_between_collections(inband_config, tmp_path):
    run = fake_ipmitool()
    with patch("socket.gethostname", return_value="node1"):
        collector = build(CollectorConfig.load(inband_config))
        collector.reconfigure(CollectorConfig.from_dict({"mode": "legacy_inband"}))

    paths = [m.path for m in collector.discover()]
    assert "intel/node_manager/node1/sensor/inlet" not in paths

    with patch("subprocess.run", side_effect=run):
        collected = collector.collect(["intel/node_manager/node1/sensor/inlet",
                                       "intel/node_manager/node1/power/system"])
    assert [m.value for m in collected] == [SENTINEL, 200]


def test_two_descriptor_catalog():
    """Test every declared metric of every command is returned for its host"""
    descriptors = tuple(d for d in GENERIC_VENDOR if d.metrics_root in ("power/system", "cups"))
    collector = Collector(IpmitoolInBandCommander(), {"node1": descriptors})

    with patch("subprocess.run", side_effect=fake_ipmitool()):
        collected = collector.collect(collector.discover())

    assert len(collected) == sum(len(d.format.get_metrics()) for d in descriptors)
    assert all(m.source == "node1" for m in collected)
    roots = [m.namespace[3] for m in collected]
    assert roots.count("power") == 4
    assert roots.count("cups") == 3
