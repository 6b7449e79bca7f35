"""
Platform Capability Catalogs

This module lists, per vendor, the raw IPMI commands a platform supports
together with the namespace root and format of the metrics each command
yields. Catalogs are immutable tuples built once and shared read-only.

Intel Node Manager OEM commands are served by the Management Engine,
which sits behind the BMC at slave address 0x2C on channel 0x06.
"""

import logging
from typing import Dict, Mapping, Optional, Sequence, Tuple

from .formats import (
    FORMAT_CUPS,
    FORMAT_NODE_MANAGER,
    FORMAT_PECI,
    FORMAT_PMBUS,
    FORMAT_SENSOR_READING,
    FORMAT_TEMP,
)
from .model import Request, RequestDescriptor

logger = logging.getLogger(__name__)

ME_CHANNEL = 0x06
ME_SLAVE = 0x2C

NETFN_INTEL_OEM = 0x2E
NETFN_SENSOR = 0x04
INTEL_IANA = (0x57, 0x01, 0x00)

CMD_GET_NM_STATISTICS = 0xC8
CMD_GET_CUPS_DATA = 0x65
CMD_GET_CPU_MEMORY_TEMPERATURE = 0x4B
CMD_SEND_RAW_PECI = 0x40
CMD_SEND_RAW_PMBUS = 0xD9
CMD_GET_SENSOR_READING = 0x2D

# Get NM Statistics modes
NM_MODE_POWER = 0x01
NM_MODE_INLET_TEMPERATURE = 0x02
NM_MODE_AIRFLOW = 0x04
NM_MODE_OUTLET_TEMPERATURE = 0x05

# Get NM Statistics domains
NM_DOMAIN_PLATFORM = 0x00
NM_DOMAIN_CPU = 0x01
NM_DOMAIN_MEMORY = 0x02

CUPS_DYNAMIC_LOAD_FACTORS = 0x02

PECI_CLIENT_BASE = 0x30
PECI_RD_PKG_CONFIG = 0xA1
PECI_TEMPERATURE_TARGET = 0x10


class UnknownVendorError(KeyError):
    """Raised when no catalog exists for a vendor"""
    pass


def intel_request(cmd: int, *data: int) -> Request:
    """Build an Intel OEM request addressed to the Management Engine"""
    return Request(bytes((NETFN_INTEL_OEM, cmd) + INTEL_IANA + data), ME_CHANNEL, ME_SLAVE)


def nm_statistics(mode: int, domain: int, policy: int = 0x00) -> Request:
    return intel_request(CMD_GET_NM_STATISTICS, mode, domain, policy)


def peci_temperature_target(socket: int) -> Request:
    # write length 5, read length 5, RdPkgConfig(host 0, index 16, parameter 0)
    return intel_request(CMD_SEND_RAW_PECI, PECI_CLIENT_BASE + socket, 0x05, 0x05,
                         PECI_RD_PKG_CONFIG, 0x00, PECI_TEMPERATURE_TARGET, 0x00, 0x00)


def sensor_reading(sensor_number: int) -> Request:
    """Get Sensor Reading is answered by the BMC itself, no bridging"""
    return Request(bytes((NETFN_SENSOR, CMD_GET_SENSOR_READING, sensor_number)), slave=0x00)


GENERIC_VENDOR: Tuple[RequestDescriptor, ...] = (
    RequestDescriptor(nm_statistics(NM_MODE_POWER, NM_DOMAIN_PLATFORM), "power/system", FORMAT_NODE_MANAGER),
    RequestDescriptor(nm_statistics(NM_MODE_POWER, NM_DOMAIN_CPU), "power/cpu", FORMAT_NODE_MANAGER),
    RequestDescriptor(nm_statistics(NM_MODE_POWER, NM_DOMAIN_MEMORY), "power/memory", FORMAT_NODE_MANAGER),
    RequestDescriptor(nm_statistics(NM_MODE_INLET_TEMPERATURE, NM_DOMAIN_PLATFORM), "thermal/inlet",
                      FORMAT_NODE_MANAGER),
    RequestDescriptor(nm_statistics(NM_MODE_OUTLET_TEMPERATURE, NM_DOMAIN_PLATFORM), "thermal/outlet",
                      FORMAT_NODE_MANAGER),
    RequestDescriptor(nm_statistics(NM_MODE_AIRFLOW, NM_DOMAIN_PLATFORM), "airflow", FORMAT_NODE_MANAGER),
    RequestDescriptor(intel_request(CMD_GET_CUPS_DATA, CUPS_DYNAMIC_LOAD_FACTORS), "cups", FORMAT_CUPS),
    # CPU sockets 0-3 and all 64 DIMM slots
    RequestDescriptor(intel_request(CMD_GET_CPU_MEMORY_TEMPERATURE, 0x0F,
                                    0xFF, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF),
                      "temperature", FORMAT_TEMP),
    RequestDescriptor(peci_temperature_target(0), "margin/cpu0", FORMAT_PECI),
    RequestDescriptor(peci_temperature_target(1), "margin/cpu1", FORMAT_PECI),
    # READ_TEMPERATURE_1 words from the CPU0 voltage regulator rails
    RequestDescriptor(intel_request(CMD_SEND_RAW_PMBUS, 0x06, 0xB0, 0x00, 0x00, 0x01, 0x0C, 0x8D),
                      "vr/cpu0", FORMAT_PMBUS),
)

VENDORS: Dict[str, Tuple[RequestDescriptor, ...]] = {
    "generic": GENERIC_VENDOR,
}


def sensor_descriptors(sensors: Mapping[str, int]) -> Tuple[RequestDescriptor, ...]:
    """Build Get Sensor Reading descriptors for named sensor numbers

    Args:
        sensors: Sensor name -> sensor number (e.g. {"inlet": 0x20})

    Returns:
        One descriptor per sensor, rooted at ``sensor/<name>``
    """
    return tuple(
        RequestDescriptor(sensor_reading(number), f"sensor/{name}", FORMAT_SENSOR_READING)
        for name, number in sensors.items()
    )


def get_platform_capabilities(vendor: str, hosts: Sequence[str],
                              sensors: Optional[Mapping[str, int]] = None
                              ) -> Dict[str, Tuple[RequestDescriptor, ...]]:
    """Build the capability catalog for a set of hosts.

    Args:
        vendor: Vendor catalog name (e.g. "generic")
        hosts: Hosts sharing that vendor's platform
        sensors: Optional extra sensors read with Get Sensor Reading

    Returns:
        Mapping of host -> descriptors

    Raises:
        UnknownVendorError: If no catalog exists for ``vendor``
    """
    if vendor not in VENDORS:
        raise UnknownVendorError(f"Unknown vendor '{vendor}'. Available: {', '.join(sorted(VENDORS))}")

    descriptors = VENDORS[vendor] + sensor_descriptors(sensors or {})
    logger.debug(f"Vendor {vendor}: {len(descriptors)} command(s) per host")
    return {host: descriptors for host in hosts}
