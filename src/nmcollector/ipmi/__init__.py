"""
IPMI Communication Package for nmcollector

This package provides the request/response model, response decoding and
command execution used to read Intel Node Manager telemetry from server
management controllers.

Key Components:
- Request / Response / RequestDescriptor: data exchanged with a controller
- Format decoders: turn raw responses into named 16-bit metric values
- IPMICommander variants: execute batches of raw commands locally
  (ipmitool or the OpenIPMI driver) or against remote hosts (lanplus)

Example Usage:
    >>> from nmcollector.ipmi import IpmitoolOutOfBandCommander, get_platform_capabilities
    >>>
    >>> catalog = get_platform_capabilities("generic", ["bmc1", "bmc2"])
    >>> commander = IpmitoolOutOfBandCommander(user="ADMIN", password="secret")
    >>> batches = {host: [d.request for d in descs] for host, descs in catalog.items()}
    >>> responses = commander.batch_exec_hosts(batches)
    >>> for desc, resp in zip(catalog["bmc1"], responses["bmc1"]):
    ...     print(desc.metrics_root, desc.format.parse(resp))

Note:
    ipmitool must be installed for the ipmitool based commanders.
"""

from .model import SENTINEL, Request, RequestDescriptor, Response, Validity
from .commander import (
    CommunicationError,
    DeviceError,
    EmptyResponseError,
    IPMICommandError,
    IPMICommander,
    IPMIError,
    IpmitoolInBandCommander,
    IpmitoolOutOfBandCommander,
)
from .formats import (
    ALL_FORMATS,
    FORMAT_CUPS,
    FORMAT_NODE_MANAGER,
    FORMAT_PECI,
    FORMAT_PMBUS,
    FORMAT_SENSOR_READING,
    FORMAT_TEMP,
    Format,
    GenericValidator,
)
from .catalog import UnknownVendorError, get_platform_capabilities
from .openipmi import OpenIPMICommander

__all__ = [
    'SENTINEL',
    'Request',
    'RequestDescriptor',
    'Response',
    'Validity',
    'IPMIError',
    'CommunicationError',
    'DeviceError',
    'EmptyResponseError',
    'IPMICommandError',
    'IPMICommander',
    'IpmitoolInBandCommander',
    'IpmitoolOutOfBandCommander',
    'OpenIPMICommander',
    'Format',
    'GenericValidator',
    'ALL_FORMATS',
    'FORMAT_CUPS',
    'FORMAT_NODE_MANAGER',
    'FORMAT_PECI',
    'FORMAT_PMBUS',
    'FORMAT_SENSOR_READING',
    'FORMAT_TEMP',
    'UnknownVendorError',
    'get_platform_capabilities',
]
