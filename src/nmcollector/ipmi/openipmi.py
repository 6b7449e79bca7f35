"""
OpenIPMI Driver Module

This module talks to the local management controller through the Linux
OpenIPMI character device (/dev/ipmi0) instead of spawning ipmitool.
Requests are submitted with the IPMICTL_SEND_COMMAND ioctl and replies
collected with IPMICTL_RECEIVE_MSG_TRUNC.

Note:
    Requires the ipmi_devintf and ipmi_si kernel modules and read/write
    access to the device node.
"""

import ctypes
import fcntl
import itertools
import logging
import os
import select
import threading
import time
from typing import Optional

from .commander import CommunicationError, IPMICommander, IPMICommandError
from .model import Request

logger = logging.getLogger(__name__)

IPMI_IOC_MAGIC = ord("i")
IPMI_SYSTEM_INTERFACE_ADDR_TYPE = 0x0C
IPMI_IPMB_ADDR_TYPE = 0x01
IPMI_BMC_CHANNEL = 0x0F
IPMI_RESPONSE_RECV_TYPE = 1
IPMI_MAX_MSG_LENGTH = 272

_IOC_WRITE = 1
_IOC_READ = 2


class IpmiSystemInterfaceAddr(ctypes.Structure):
    _fields_ = [
        ("addr_type", ctypes.c_int),
        ("channel", ctypes.c_short),
        ("lun", ctypes.c_ubyte),
    ]


class IpmiIpmbAddr(ctypes.Structure):
    _fields_ = [
        ("addr_type", ctypes.c_int),
        ("channel", ctypes.c_short),
        ("slave_addr", ctypes.c_ubyte),
        ("lun", ctypes.c_ubyte),
    ]


class IpmiMsg(ctypes.Structure):
    _fields_ = [
        ("netfn", ctypes.c_ubyte),
        ("cmd", ctypes.c_ubyte),
        ("data_len", ctypes.c_ushort),
        ("data", ctypes.POINTER(ctypes.c_ubyte)),
    ]


class IpmiReq(ctypes.Structure):
    _fields_ = [
        ("addr", ctypes.c_void_p),
        ("addr_len", ctypes.c_uint),
        ("msgid", ctypes.c_long),
        ("msg", IpmiMsg),
    ]


class IpmiRecv(ctypes.Structure):
    _fields_ = [
        ("recv_type", ctypes.c_int),
        ("addr", ctypes.c_void_p),
        ("addr_len", ctypes.c_uint),
        ("msgid", ctypes.c_long),
        ("msg", IpmiMsg),
    ]


def _ioc(direction: int, nr: int, size: int) -> int:
    return (direction << 30) | (size << 16) | (IPMI_IOC_MAGIC << 8) | nr


IPMICTL_RECEIVE_MSG_TRUNC = _ioc(_IOC_READ | _IOC_WRITE, 11, ctypes.sizeof(IpmiRecv))
IPMICTL_SEND_COMMAND = _ioc(_IOC_READ, 13, ctypes.sizeof(IpmiReq))


class OpenIPMICommander(IPMICommander):
    """Executes commands through the local OpenIPMI driver.

    The device is opened once and shared by every caller; a lock
    serializes use of it so that replies are read by the caller that
    sent the matching request.
    """

    def __init__(self, device: str = "/dev/ipmi0", **kwargs):
        """Initialize OpenIPMI commander

        Args:
            device: OpenIPMI device node
        """
        super().__init__(**kwargs)
        self.device = device
        self._fd: Optional[int] = None
        self._lock = threading.Lock()
        self._msgids = itertools.count(1)

    def _open(self) -> int:
        if self._fd is None:
            try:
                self._fd = os.open(self.device, os.O_RDWR)
            except OSError as e:
                raise CommunicationError(f"Could not open {self.device}: {e}")
            logger.info(f"Opened IPMI device {self.device}")
        return self._fd

    def close(self) -> None:
        """Close the device if it is open"""
        with self._lock:
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None

    def _address(self, request: Request):
        channel, slave = self.bridge_target(request)
        if slave:
            return IpmiIpmbAddr(IPMI_IPMB_ADDR_TYPE, channel, slave, 0)
        return IpmiSystemInterfaceAddr(IPMI_SYSTEM_INTERFACE_ADDR_TYPE, IPMI_BMC_CHANNEL, 0)

    def exec_raw(self, request: Request, host: str, timeout: float) -> bytes:
        """Send a request through the driver and wait for its reply

        Args:
            request: Request to send
            host: Ignored, the local controller is always used
            timeout: Timeout in seconds

        Returns:
            Response bytes, completion code first

        Raises:
            CommunicationError: If the device cannot be opened
            IPMICommandError: If sending or receiving fails
        """
        deadline = time.monotonic() + timeout
        if not self._lock.acquire(timeout=timeout):
            raise IPMICommandError("Timed out waiting for the IPMI device")
        try:
            fd = self._open()
            msgid = next(self._msgids)
            self._send(fd, request, msgid)
            return self._receive(fd, msgid, deadline)
        finally:
            self._lock.release()

    def _send(self, fd: int, request: Request, msgid: int) -> None:
        addr = self._address(request)
        payload = (ctypes.c_ubyte * max(len(request.payload), 1))(*request.payload)
        req = IpmiReq()
        req.addr = ctypes.addressof(addr)
        req.addr_len = ctypes.sizeof(addr)
        req.msgid = msgid
        req.msg.netfn = request.netfn
        req.msg.cmd = request.cmd
        req.msg.data_len = len(request.payload)
        req.msg.data = ctypes.cast(payload, ctypes.POINTER(ctypes.c_ubyte))
        try:
            fcntl.ioctl(fd, IPMICTL_SEND_COMMAND, req)
        except OSError as e:
            raise IPMICommandError(f"Failed to send {request.netfn:#04x}/{request.cmd:#04x}: {e}")

    def _receive(self, fd: int, msgid: int, deadline: float) -> bytes:
        buf = (ctypes.c_ubyte * IPMI_MAX_MSG_LENGTH)()
        addr = (ctypes.c_ubyte * ctypes.sizeof(IpmiIpmbAddr))()

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise IPMICommandError(f"No reply to message {msgid}")
            readable, _, _ = select.select([fd], [], [], remaining)
            if not readable:
                continue

            recv = IpmiRecv()
            recv.addr = ctypes.addressof(addr)
            recv.addr_len = ctypes.sizeof(addr)
            recv.msg.data = ctypes.cast(buf, ctypes.POINTER(ctypes.c_ubyte))
            recv.msg.data_len = IPMI_MAX_MSG_LENGTH
            try:
                fcntl.ioctl(fd, IPMICTL_RECEIVE_MSG_TRUNC, recv)
            except OSError as e:
                raise IPMICommandError(f"Failed to receive reply: {e}")

            if recv.recv_type != IPMI_RESPONSE_RECV_TYPE or recv.msgid != msgid:
                logger.debug(f"Discarding message {recv.msgid} (type {recv.recv_type})")
                continue
            return bytes(buf[:recv.msg.data_len])
