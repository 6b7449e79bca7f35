"""
IPMI Response Formats

This module validates raw IPMI responses and decodes them into named
16-bit metric values. Each decoder is tied to one Intel Node Manager /
IPMI command and owns the byte offsets of that command's response.

Response layout shared by every OEM command decoded here:
- Byte 0: completion code (0x00 on success)
- Bytes 1-3: Intel manufacturer ID (57 01 00)
- Bytes 4+: command specific data

A decoder always returns every metric it declares. Values of responses
that fail validation, and fields beyond the end of a short payload, are
reported as SENTINEL (0xFFFF).

Example Usage:
    >>> resp = Response(bytes([0, 0x57, 0x01, 0x00, 0x34, 0x12, 0x01, 0x00, 0xff, 0x00]),
    ...                 Validity.SUCCEEDED)
    >>> FORMAT_CUPS.parse(resp)
    {'cpu_cstate': 4660, 'memory_bandwidth': 1, 'io_bandwidth': 255}
"""

import logging
from typing import Dict, Mapping, Sequence, Tuple

from .commander import CommunicationError, DeviceError, EmptyResponseError
from .model import SENTINEL, Response

logger = logging.getLogger(__name__)

# Intel Node Manager statistics / CUPS offsets (16-bit little endian)
CUPS_OFFSETS = {
    "cpu_cstate": 4,        # CPU CUPS dynamic load factor
    "memory_bandwidth": 6,  # Memory CUPS dynamic load factor
    "io_bandwidth": 8,      # IO CUPS dynamic load factor
}

NODE_MANAGER_OFFSETS = {
    "": 4,      # Current value
    "min": 6,
    "max": 8,
    "avg": 10,
}

# Send Raw PECI: margin offset is a single byte, Tjmax is 16-bit
PECI_MARGIN_OFFSET = 6
PECI_TJMAX_OFFSET = 7

PMBUS_OFFSETS = {
    "VR0": 4,
    "VR1": 6,
    "VR2": 8,
    "VR3": 10,
    "VR4": 12,
    "VR5": 14,
}

# Get CPU and Memory Temperature: one byte per socket, then one per DIMM
TEMP_SOCKET_OFFSET = 4
TEMP_SOCKETS = 4
TEMP_DIMM_OFFSET = TEMP_SOCKET_OFFSET + TEMP_SOCKETS
TEMP_DIMMS = 64

# Get Sensor Reading: reading byte follows the completion code
SENSOR_READING_OFFSET = 1


def read_u8(data: bytes, offset: int) -> int:
    """Read one byte, or SENTINEL if the payload is too short"""
    if offset >= len(data):
        return SENTINEL
    return data[offset]


def read_u16(data: bytes, offset: int) -> int:
    """Read a little-endian 16-bit value, or SENTINEL if the payload is too short"""
    if offset + 1 >= len(data):
        return SENTINEL
    return data[offset] + data[offset + 1] * 256


class GenericValidator:
    """Basic response validation shared by all formats.

    A response is usable only when the transport got a reply, the reply
    is non-empty and its completion code is zero.
    """

    def validate(self, response: Response) -> None:
        """Validate a response before decoding.

        Args:
            response: Response returned by the execution layer

        Raises:
            CommunicationError: If no reply was obtained
            EmptyResponseError: If the reply carries no bytes
            DeviceError: If the completion code is nonzero
        """
        if not response.is_valid:
            raise CommunicationError("Response is not valid")
        if len(response.data) == 0:
            raise EmptyResponseError("Zero length response")
        if response.data[0] != 0:
            raise DeviceError(response.data[0])

    def is_usable(self, response: Response) -> bool:
        try:
            self.validate(response)
        except (CommunicationError, EmptyResponseError, DeviceError) as e:
            logger.debug(f"Response {response.index} from {response.source or 'local'} rejected: {e}")
            return False
        return True


class Format(GenericValidator):
    """Base class for response decoders."""

    def get_metrics(self) -> Sequence[str]:
        """Names of the metrics produced by this format, in order.

        The empty name is reserved for a command's primary value; it
        is published directly under the command's metrics root.
        """
        raise NotImplementedError

    def parse(self, response: Response) -> Dict[str, int]:
        """Decode a response into metric name -> value"""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class OffsetFormat(Format):
    """Format made of fixed 16-bit little-endian fields"""

    OFFSETS: Mapping[str, int] = {}

    def get_metrics(self) -> Sequence[str]:
        return tuple(self.OFFSETS)

    def parse(self, response: Response) -> Dict[str, int]:
        if not self.is_usable(response):
            return {name: SENTINEL for name in self.OFFSETS}
        return {name: read_u16(response.data, offset) for name, offset in self.OFFSETS.items()}


class CUPSFormat(OffsetFormat):
    """Get CUPS Data (65h): CPU, memory and IO utilization load factors"""
    OFFSETS = CUPS_OFFSETS


class NodeManagerFormat(OffsetFormat):
    """Get Node Manager Statistics (C8h): current, min, max and average"""
    OFFSETS = NODE_MANAGER_OFFSETS


class PMBusFormat(OffsetFormat):
    """Send Raw PMBus Command (D9h): voltage regulator readings VR0-VR5"""
    OFFSETS = PMBUS_OFFSETS


class TempFormat(Format):
    """Get CPU and Memory Temperature (4Bh).

    Reports the temperature of up to 4 CPU sockets and 64 DIMMs. The
    number of DIMM bytes depends on the platform, so DIMMs past the end
    of the payload are reported as SENTINEL.
    """

    CPU_METRICS: Tuple[str, ...] = tuple(f"cpu/cpu{i}" for i in range(TEMP_SOCKETS))
    DIMM_METRICS: Tuple[str, ...] = tuple(f"memory/dimm{i}" for i in range(TEMP_DIMMS))

    def get_metrics(self) -> Sequence[str]:
        return self.CPU_METRICS + self.DIMM_METRICS

    def parse(self, response: Response) -> Dict[str, int]:
        m = {name: SENTINEL for name in self.get_metrics()}
        if not self.is_usable(response):
            return m
        data = response.data
        for i, name in enumerate(self.CPU_METRICS):
            m[name] = read_u8(data, TEMP_SOCKET_OFFSET + i)
        dimm_count = min(max(len(data) - TEMP_DIMM_OFFSET, 0), TEMP_DIMMS)
        for i in range(dimm_count):
            m[self.DIMM_METRICS[i]] = data[TEMP_DIMM_OFFSET + i]
        return m


class PECIFormat(Format):
    """Send Raw PECI (40h) reading the package temperature target.

    The primary value is Tjmax; ``margin_offset`` is the current
    reduction applied to it.
    """

    def get_metrics(self) -> Sequence[str]:
        return ("", "margin_offset")

    def parse(self, response: Response) -> Dict[str, int]:
        if not self.is_usable(response):
            return {"": SENTINEL, "margin_offset": SENTINEL}
        return {
            "": read_u16(response.data, PECI_TJMAX_OFFSET),
            "margin_offset": read_u8(response.data, PECI_MARGIN_OFFSET),
        }


class SensorReadingFormat(Format):
    """Get Sensor Reading (2Dh): raw single byte reading"""

    def get_metrics(self) -> Sequence[str]:
        return ("",)

    def parse(self, response: Response) -> Dict[str, int]:
        if not self.is_usable(response):
            return {"": SENTINEL}
        return {"": read_u8(response.data, SENSOR_READING_OFFSET)}


# Shared, stateless instances used by the catalogs
FORMAT_CUPS = CUPSFormat()
FORMAT_NODE_MANAGER = NodeManagerFormat()
FORMAT_TEMP = TempFormat()
FORMAT_PECI = PECIFormat()
FORMAT_PMBUS = PMBusFormat()
FORMAT_SENSOR_READING = SensorReadingFormat()

ALL_FORMATS = (
    FORMAT_CUPS,
    FORMAT_NODE_MANAGER,
    FORMAT_TEMP,
    FORMAT_PECI,
    FORMAT_PMBUS,
    FORMAT_SENSOR_READING,
)
