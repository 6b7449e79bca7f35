"""
Tests for the OpenIPMI driver commander
"""

import ctypes

import pytest
from unittest.mock import patch

from nmcollector.ipmi.commander import CommunicationError, IPMICommandError
from nmcollector.ipmi.model import Request, Validity
from nmcollector.ipmi.openipmi import (
    IPMI_BMC_CHANNEL,
    IPMI_IPMB_ADDR_TYPE,
    IPMI_SYSTEM_INTERFACE_ADDR_TYPE,
    IPMICTL_RECEIVE_MSG_TRUNC,
    IPMICTL_SEND_COMMAND,
    IpmiIpmbAddr,
    IpmiSystemInterfaceAddr,
    OpenIPMICommander,
)

FAKE_FD = 7

NM_REQUEST = Request(bytes([0x2E, 0xC8, 0x57, 0x01, 0x00, 0x01, 0x00, 0x00]), 0x06, 0x2C)
SENSOR_REQUEST = Request(bytes([0x04, 0x2D, 0x20]))


class FakeDriver:
    """Stand-in for the kernel driver behind fcntl.ioctl"""

    def __init__(self, reply=bytes([0x00, 0x57, 0x01, 0x00]), stale_replies=0):
        self.reply = reply
        self.stale_replies = stale_replies
        self.sent = []
        self.receives = 0
        self.msgid = None

    def ioctl(self, fd, request, arg):
        assert fd == FAKE_FD
        if request == IPMICTL_SEND_COMMAND:
            self.msgid = arg.msgid
            addr_type = ctypes.cast(arg.addr, ctypes.POINTER(ctypes.c_int)).contents.value
            if addr_type == IPMI_IPMB_ADDR_TYPE:
                addr = ctypes.cast(arg.addr, ctypes.POINTER(IpmiIpmbAddr)).contents
                target = (addr.channel, addr.slave_addr)
            else:
                addr = ctypes.cast(arg.addr, ctypes.POINTER(IpmiSystemInterfaceAddr)).contents
                target = (addr.channel, None)
            self.sent.append({
                "addr_type": addr_type,
                "target": target,
                "netfn": arg.msg.netfn,
                "cmd": arg.msg.cmd,
                "data": bytes(arg.msg.data[i] for i in range(arg.msg.data_len)),
            })
        elif request == IPMICTL_RECEIVE_MSG_TRUNC:
            self.receives += 1
            arg.recv_type = 1
            if self.stale_replies:
                self.stale_replies -= 1
                arg.msgid = self.msgid + 1000
            else:
                arg.msgid = self.msgid
            for i, b in enumerate(self.reply):
                arg.msg.data[i] = b
            arg.msg.data_len = len(self.reply)
        else:
            raise AssertionError(f"unexpected ioctl {request:#x}")
        return 0


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def commander():
    return OpenIPMICommander(device="/dev/ipmi-test")


@pytest.fixture
def device(driver):
    """Patch the device node, ioctl and select"""
    with patch("os.open", return_value=FAKE_FD) as mock_open, \
            patch("os.close") as mock_close, \
            patch("fcntl.ioctl", side_effect=driver.ioctl), \
            patch("select.select", return_value=([FAKE_FD], [], [])):
        yield mock_open, mock_close


class TestOpenIPMICommander:
    def test_bridged_request(self, commander, driver, device):
        """Test bridged requests use an IPMB address"""
        data = commander.exec_raw(NM_REQUEST, "", 1.0)
        assert data == bytes([0x00, 0x57, 0x01, 0x00])
        sent = driver.sent[0]
        assert sent["addr_type"] == IPMI_IPMB_ADDR_TYPE
        assert sent["target"] == (0x06, 0x2C)
        assert sent["netfn"] == 0x2E
        assert sent["cmd"] == 0xC8
        assert sent["data"] == bytes([0x57, 0x01, 0x00, 0x01, 0x00, 0x00])

    def test_local_request(self, commander, driver, device):
        """Test unbridged requests go to the system interface"""
        commander.exec_raw(SENSOR_REQUEST, "", 1.0)
        sent = driver.sent[0]
        assert sent["addr_type"] == IPMI_SYSTEM_INTERFACE_ADDR_TYPE
        assert sent["target"] == (IPMI_BMC_CHANNEL, None)
        assert sent["data"] == bytes([0x20])

    def test_device_opened_once(self, commander, device):
        mock_open, mock_close = device
        commander.exec_raw(SENSOR_REQUEST, "", 1.0)
        commander.exec_raw(SENSOR_REQUEST, "", 1.0)
        assert mock_open.call_count == 1
        commander.close()
        mock_close.assert_called_once_with(FAKE_FD)

    def test_message_ids_increase(self, commander, driver, device):
        commander.exec_raw(SENSOR_REQUEST, "", 1.0)
        first = driver.msgid
        commander.exec_raw(SENSOR_REQUEST, "", 1.0)
        assert driver.msgid > first

    def test_stale_reply_discarded(self, commander, device):
        """Test replies to other message ids are skipped"""
        driver = FakeDriver(reply=bytes([0x00, 0x42]), stale_replies=2)
        with patch("fcntl.ioctl", side_effect=driver.ioctl):
            assert commander.exec_raw(SENSOR_REQUEST, "", 1.0) == bytes([0x00, 0x42])
        assert driver.receives == 3

    def test_completion_code_passed_through(self, commander, device):
        driver = FakeDriver(reply=bytes([0xC1]))
        with patch("fcntl.ioctl", side_effect=driver.ioctl):
            assert commander.exec_raw(NM_REQUEST, "", 1.0) == bytes([0xC1])

    def test_no_reply(self, commander, driver, device):
        with patch("select.select", return_value=([], [], [])):
            with pytest.raises(IPMICommandError, match="No reply"):
                commander.exec_raw(SENSOR_REQUEST, "", 0.05)

    def test_send_failure(self, commander, device):
        with patch("fcntl.ioctl", side_effect=OSError(22, "Invalid argument")):
            with pytest.raises(IPMICommandError, match="Failed to send"):
                commander.exec_raw(SENSOR_REQUEST, "", 1.0)

    def test_open_failure(self, commander):
        with patch("os.open", side_effect=OSError(2, "No such file or directory")):
            with pytest.raises(CommunicationError):
                commander.exec_raw(SENSOR_REQUEST, "", 1.0)

    def test_batch_without_device(self, commander):
        """Test a missing device fails the whole batch"""
        with patch("os.open", side_effect=OSError(2, "No such file or directory")) as mock_open:
            responses = commander.batch_exec([SENSOR_REQUEST, NM_REQUEST, SENSOR_REQUEST])
        assert [r.validity for r in responses] == [Validity.FAILED] * 3
        assert [r.index for r in responses] == [0, 1, 2]
        assert mock_open.call_count == 1

    def test_batch(self, commander, device):
        responses = commander.batch_exec([SENSOR_REQUEST, NM_REQUEST])
        assert all(r.is_valid for r in responses)
        assert responses[1].data == bytes([0x00, 0x57, 0x01, 0x00])
