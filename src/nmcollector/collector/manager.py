"""
Collector Manager Module

This module ties the capability catalog and the execution layer
together. It enumerates the metrics a configuration can produce and
collects current values for any subset of them, issuing each raw IPMI
command at most once per collection no matter how many requested
metrics derive from it.

Metric namespaces have the form:
    intel/node_manager/<host>/<metrics root>[/<sub metric>]
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..ipmi import (
    SENTINEL,
    IPMICommander,
    IPMIError,
    IpmitoolInBandCommander,
    IpmitoolOutOfBandCommander,
    OpenIPMICommander,
    RequestDescriptor,
    Response,
    UnknownVendorError,
    get_platform_capabilities,
)
from ..ipmi.model import extend_path
from .config import MODE_INBAND, MODE_OOB, MODE_OPENIPMI, CollectorConfig, ConfigurationError

logger = logging.getLogger(__name__)

NAMESPACE_PREFIX: Tuple[str, ...] = ("intel", "node_manager")

Catalog = Mapping[str, Sequence[RequestDescriptor]]


def make_name(metric: str) -> Tuple[str, ...]:
    """Build a namespace from a host-relative path ("host/power/system")"""
    return NAMESPACE_PREFIX + tuple(metric.split("/"))


def parse_name(namespace: Sequence[str]) -> str:
    """Strip the namespace prefix, returning "host/root/sub"

    Raises:
        ValueError: If the namespace does not start with the prefix
    """
    if tuple(namespace[:len(NAMESPACE_PREFIX)]) != NAMESPACE_PREFIX:
        raise ValueError(f"Wrong namespace prefix in namespace {'/'.join(namespace)}")
    return "/".join(namespace[len(NAMESPACE_PREFIX):])


@dataclass(frozen=True)
class Metric:
    """A metric namespace, with its value once collected.

    ``value`` is SENTINEL (0xFFFF) when the reading could not be
    obtained; it is never a real measurement.
    """
    namespace: Tuple[str, ...]
    source: str = ""
    value: Optional[int] = None
    timestamp: Optional[float] = None

    @property
    def path(self) -> str:
        return "/".join(self.namespace)

    @property
    def is_available(self) -> bool:
        return self.value is not None and self.value != SENTINEL


MetricRef = Union[Metric, str, Sequence[str]]


def create_commander(config: CollectorConfig) -> IPMICommander:
    """Create the execution layer selected by the configuration"""
    common = dict(
        channel=config.channel,
        slave=config.slave,
        timeout=config.timeout,
        batch_timeout=config.batch_timeout,
        max_workers=config.max_workers,
    )
    if config.mode == MODE_INBAND:
        return IpmitoolInBandCommander(tool=config.tool, retries=config.retries,
                                       retry_delay=config.retry_delay, **common)
    if config.mode == MODE_OOB:
        return IpmitoolOutOfBandCommander(user=config.user, password=config.password,
                                          interface=config.interface, tool=config.tool,
                                          retries=config.retries, retry_delay=config.retry_delay,
                                          **common)
    if config.mode == MODE_OPENIPMI:
        return OpenIPMICommander(device=config.device, **common)
    raise ConfigurationError(f"Unsupported mode {config.mode!r}")


def create_catalog(config: CollectorConfig) -> Dict[str, Tuple[RequestDescriptor, ...]]:
    """Resolve the hosts for a configuration and build their catalog"""
    if config.mode == MODE_OOB:
        hosts = config.load_hosts()
    else:
        hosts = [socket.gethostname()]
    try:
        return get_platform_capabilities(config.vendor, hosts, config.sensors)
    except UnknownVendorError as e:
        raise ConfigurationError(e.args[0])


def build(config: CollectorConfig) -> "Collector":
    """Create a collector for a validated configuration

    Raises:
        ConfigurationError: If no execution layer or catalog can be built
    """
    collector = Collector(create_commander(config), create_catalog(config))
    logger.info(f"Collector built in {config.mode} mode for {len(collector.hosts)} host(s)")
    return collector


class Collector:
    """Discovers and collects Node Manager metrics.

    The catalog is a read-only snapshot. Collections run concurrently
    against the snapshot taken when they start; :meth:`reconfigure`
    waits until none is in flight before swapping it.
    """

    def __init__(self, commander: IPMICommander, catalog: Catalog):
        """Initialize collector

        Args:
            commander: Execution layer used to send requests
            catalog: Host -> request descriptors
        """
        self._state = threading.Condition()
        self._active = 0
        self._reconfiguring = False
        self._install(commander, catalog)

    def _install(self, commander: IPMICommander, catalog: Catalog) -> None:
        self.commander = commander
        self.catalog: Dict[str, Tuple[RequestDescriptor, ...]] = {
            host: tuple(descriptors) for host, descriptors in catalog.items()
        }
        # host -> metric path -> descriptor producing it
        self._index: Dict[str, Dict[str, RequestDescriptor]] = {}
        for host, descriptors in self.catalog.items():
            paths: Dict[str, RequestDescriptor] = {}
            for descriptor in descriptors:
                for path in descriptor.metric_paths():
                    if path in paths:
                        logger.warning(f"{host}: {path} produced by more than one command")
                        continue
                    paths[path] = descriptor
            self._index[host] = paths

    @property
    def hosts(self) -> List[str]:
        return list(self.catalog)

    def reconfigure(self, config: CollectorConfig) -> None:
        """Rebuild commander and catalog from a new configuration.

        Waits for collections in progress to finish, holds off new ones
        during the swap, then closes the replaced commander.

        Raises:
            ConfigurationError: If the configuration is invalid; the
                current setup is kept in that case
        """
        commander = create_commander(config)
        try:
            catalog = create_catalog(config)
        except ConfigurationError:
            commander.close()
            raise

        with self._state:
            self._state.wait_for(lambda: not self._reconfiguring)
            self._reconfiguring = True
            try:
                self._state.wait_for(lambda: self._active == 0)
                old = self.commander
                self._install(commander, catalog)
            finally:
                self._reconfiguring = False
                self._state.notify_all()

        old.close()
        logger.info(f"Collector reconfigured in {config.mode} mode for {len(catalog)} host(s)")

    def close(self) -> None:
        """Release the commander's resources"""
        with self._state:
            commander = self.commander
        commander.close()

    def _begin(self) -> Tuple[IPMICommander, Dict[str, Dict[str, RequestDescriptor]]]:
        """Register a collection and snapshot the setup it runs against"""
        with self._state:
            self._state.wait_for(lambda: not self._reconfiguring)
            self._active += 1
            return self.commander, self._index

    def _end(self) -> None:
        with self._state:
            self._active -= 1
            self._state.notify_all()

    def discover(self) -> List[Metric]:
        """List every metric the catalog can produce"""
        with self._state:
            metrics = [
                Metric(make_name(extend_path(host, path)), source=host)
                for host, paths in self._index.items()
                for path in paths
            ]
        logger.info(f"Discovered {len(metrics)} metric(s)")
        return metrics

    @staticmethod
    def _resolve(metric: MetricRef) -> Tuple[Tuple[str, ...], Optional[str], str]:
        """Split a metric reference into (namespace, host, host-relative path)"""
        if isinstance(metric, Metric):
            namespace = metric.namespace
        elif isinstance(metric, str):
            namespace = tuple(metric.split("/"))
        else:
            namespace = tuple(metric)

        try:
            name = parse_name(namespace)
        except ValueError as e:
            logger.warning(str(e))
            return namespace, None, ""
        host, _, path = name.partition("/")
        return namespace, host, path

    @staticmethod
    def decode(descriptor: RequestDescriptor, response: Response) -> Dict[str, int]:
        """Validate a response and decode it with the descriptor's format"""
        try:
            descriptor.format.validate(response)
        except IPMIError as e:
            logger.warning(f"{response.source or 'local'}: {descriptor.metrics_root} unavailable: {e}")
            response = response.mark_failed()
        return descriptor.format.parse(response)

    def collect(self, metrics: Sequence[MetricRef]) -> List[Metric]:
        """Collect current values for the requested metrics.

        Each underlying command is sent once per host even when several
        requested metrics derive from it. Unknown or unavailable metrics
        are reported with the SENTINEL value.

        Args:
            metrics: Metrics to collect (Metric, "intel/node_manager/..."
                path, or namespace tuple)

        Returns:
            Collected metrics in request order, sharing one timestamp
        """
        requested = [self._resolve(m) for m in metrics]
        commander, index = self._begin()
        try:
            batches: Dict[str, List[RequestDescriptor]] = {}
            for namespace, host, path in requested:
                descriptor = index.get(host, {}).get(path) if host else None
                if descriptor is None:
                    logger.warning(f"Unknown metric {'/'.join(namespace)}")
                    continue
                batch = batches.setdefault(host, [])
                if descriptor not in batch:
                    batch.append(descriptor)

            responses = commander.batch_exec_hosts(
                {host: [d.request for d in descriptors] for host, descriptors in batches.items()}
            )
        finally:
            self._end()

        values: Dict[str, Dict[str, int]] = {}
        for host, descriptors in batches.items():
            host_values = values.setdefault(host, {})
            host_responses = responses.get(host, [])
            for position, descriptor in enumerate(descriptors):
                response = self._match(host, position, host_responses)
                for name, value in self.decode(descriptor, response).items():
                    host_values[extend_path(descriptor.metrics_root, name)] = value

        timestamp = time.time()
        collected = [
            Metric(namespace, host or "", values.get(host, {}).get(path, SENTINEL), timestamp)
            for namespace, host, path in requested
        ]

        logger.info(f"Collected {len(collected)} metric(s) from {len(batches)} host(s)")
        return collected

    @staticmethod
    def _match(host: str, index: int, responses: Sequence[Response]) -> Response:
        """Return the response answering request ``index`` of a host's batch"""
        if index >= len(responses):
            logger.error(f"{host}: missing response {index}")
            return Response.failed(host, index)
        response = responses[index]
        if response.index != index or response.source != host:
            logger.error(f"{host}: response {index} is attributed to "
                         f"{response.source}#{response.index}, discarding")
            return Response.failed(host, index)
        return response
