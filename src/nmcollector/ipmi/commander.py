"""
IPMI Command Execution Module

This module provides the execution layer that sends raw IPMI requests to
management controllers and returns their responses. Commanders execute a
batch of requests against one target and fan batches out across many
targets concurrently.

Response correlation relies on position only: the i-th response of a
batch always answers the i-th request, whatever happened on the wire.
"""

import logging
import math
import os
import re
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager, nullcontext
from typing import Dict, List, Mapping, Optional, Sequence

from .model import Request, Response, Validity

logger = logging.getLogger(__name__)


class IPMIError(Exception):
    """Base exception for IPMI-related errors"""
    pass


class CommunicationError(IPMIError):
    """Raised when the controller cannot be reached or gave no reply"""
    pass


class IPMICommandError(IPMIError):
    """Raised when a single command fails without a usable reply"""
    pass


class EmptyResponseError(IPMIError):
    """Raised when a reply carries no bytes"""
    pass


class DeviceError(IPMIError):
    """Raised when the controller answers with a nonzero completion code"""

    def __init__(self, code: int):
        self.code = code
        super().__init__(f"Unexpected completion code: {code:#04x}")


class IPMICommander:
    """Base execution layer.

    Subclasses implement :meth:`exec_raw`; batching, deadlines and the
    multi-host fan-out are shared.
    """

    def __init__(self, channel: int = 0x00, slave: int = 0x00, timeout: float = 10.0,
                 batch_timeout: float = 30.0, max_workers: int = 16):
        """Initialize commander

        Args:
            channel: Default bridging channel
            slave: Default bridging target address (0 disables bridging)
            timeout: Timeout for a single command in seconds
            batch_timeout: Deadline for one host's whole batch in seconds
            max_workers: Maximum number of hosts processed concurrently
        """
        self.channel = channel
        self.slave = slave
        self.timeout = timeout
        self.batch_timeout = batch_timeout
        self.max_workers = max_workers

    def exec_raw(self, request: Request, host: str, timeout: float) -> bytes:
        """Send one request and return the reply, completion code first.

        Raises:
            CommunicationError: If the target cannot be reached at all
            IPMIError: If this request failed
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release any resource held open between commands"""
        pass

    def bridge_target(self, request: Request):
        """Resolve (channel, slave) for a request, falling back to defaults"""
        channel = self.channel if request.channel is None else request.channel
        slave = self.slave if request.slave is None else request.slave
        return channel, slave

    def batch_exec(self, requests: Sequence[Request], host: str = "") -> List[Response]:
        """Execute requests in order against a single target.

        The returned list always has one response per request, in the
        same order. Failed requests yield FAILED responses; once the
        target is found unreachable or the batch deadline passes, the
        remaining requests are not sent and are reported as FAILED.

        Args:
            requests: Requests to send
            host: Target host (ignored by in-band commanders)

        Returns:
            List of responses matching ``requests`` by position
        """
        deadline = time.monotonic() + self.batch_timeout
        responses: List[Response] = []
        aborted: Optional[str] = None

        for index, request in enumerate(requests):
            remaining = deadline - time.monotonic()
            if aborted is None and remaining <= 0:
                aborted = f"batch timeout after {self.batch_timeout}s"
                logger.warning(f"{host or 'local'}: {aborted}, "
                               f"{len(requests) - index} request(s) not sent")
            if aborted is not None:
                responses.append(Response.failed(host, index))
                continue

            try:
                data = self.exec_raw(request, host, min(self.timeout, remaining))
                responses.append(Response(data, Validity.SUCCEEDED, host, index))
                logger.debug(f"{host or 'local'}: request {index} -> {data.hex(' ')}")
            except CommunicationError as e:
                aborted = str(e)
                logger.error(f"{host or 'local'}: unreachable, aborting batch: {e}")
                responses.append(Response.failed(host, index))
            except IPMIError as e:
                logger.warning(f"{host or 'local'}: request {index} failed: {e}")
                responses.append(Response.failed(host, index))

        return responses

    def batch_exec_hosts(self, batches: Mapping[str, Sequence[Request]]) -> Dict[str, List[Response]]:
        """Execute one batch per host, running hosts concurrently.

        A host that fails or overruns its deadline gets FAILED responses
        for all of its requests; other hosts are unaffected. Results are
        keyed by host, never by completion order.

        Args:
            batches: Requests to send, keyed by host

        Returns:
            Responses keyed by host
        """
        if not batches:
            return {}

        workers = max(1, min(self.max_workers, len(batches)))
        # Hosts queued behind busy workers start late; wait for every wave
        waves = math.ceil(len(batches) / workers)
        wait_limit = waves * (self.batch_timeout + self.timeout)

        results: Dict[str, List[Response]] = {}
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ipmi-batch")
        futures = {
            executor.submit(self.batch_exec, list(requests), host): host
            for host, requests in batches.items()
        }
        try:
            for future in as_completed(futures, timeout=wait_limit):
                host = futures[future]
                try:
                    results[host] = future.result()
                except Exception as e:
                    logger.error(f"{host}: batch aborted: {e}")
                    results[host] = self._failed_batch(host, batches[host])
        except FutureTimeoutError:
            logger.error(f"Batch execution exceeded {wait_limit:.1f}s")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        for host, requests in batches.items():
            if host not in results:
                logger.warning(f"{host}: no result within deadline")
                results[host] = self._failed_batch(host, requests)

        logger.info(f"Executed batches for {len(batches)} host(s)")
        return results

    @staticmethod
    def _failed_batch(host: str, requests: Sequence[Request]) -> List[Response]:
        return [Response.failed(host, index) for index in range(len(requests))]


class IpmitoolCommander(IPMICommander):
    """Executes raw commands through the ipmitool command line tool"""

    # Completion code reported by ipmitool when a raw command is rejected
    COMPLETION_CODE_RE = re.compile(r"rsp=0x([0-9a-fA-F]{1,2})")

    # stderr fragments meaning the controller itself is unreachable
    CONNECTION_ERRORS = (
        "Error in open session",
        "Unable to establish",
        "Could not open device",
        "Address lookup for",
        "Activate Session error",
    )

    def __init__(self, tool: str = "ipmitool", retries: int = 3, retry_delay: float = 1.0, **kwargs):
        """Initialize ipmitool commander

        Args:
            tool: ipmitool executable
            retries: Number of attempts when the device is busy
            retry_delay: Delay between attempts in seconds
        """
        super().__init__(**kwargs)
        self.tool = tool
        self.retries = retries
        self.retry_delay = retry_delay

    def _base_command(self, host: str) -> List[str]:
        return [self.tool]

    def _environment(self) -> Optional[Dict[str, str]]:
        return None

    def _channel(self, timeout: float):
        """Context guarding the communication channel for one command"""
        return nullcontext()

    def _bridge_args(self, request: Request) -> List[str]:
        channel, slave = self.bridge_target(request)
        if not slave:
            return []
        return ["-b", f"0x{channel:02x}", "-t", f"0x{slave:02x}"]

    def build_command(self, request: Request, host: str) -> List[str]:
        """Build the full ipmitool argument list for a request"""
        return self._base_command(host) + self._bridge_args(request) + request.to_args()

    @staticmethod
    def parse_output(output: str) -> bytes:
        """Parse ipmitool raw output (e.g. " 57 01 00 34 12") into response bytes.

        ipmitool prints only the data bytes of a successful reply, so the
        zero completion code is restored in front.

        Raises:
            IPMICommandError: If the output is not a list of hex bytes
        """
        try:
            return bytes([0x00] + [int(tok, 16) for tok in output.split()])
        except ValueError:
            raise IPMICommandError(f"Malformed raw response: {output.strip()!r}")

    def exec_raw(self, request: Request, host: str, timeout: float) -> bytes:
        """Execute a raw command and return its reply

        Retries while the device is busy, all within ``timeout``.

        Args:
            request: Request to send
            host: Target host
            timeout: Timeout for the command, retries included, in seconds

        Returns:
            Response bytes, completion code first

        Raises:
            CommunicationError: If the controller cannot be reached
            IPMICommandError: If command execution fails
        """
        full_cmd = self.build_command(request, host)
        target = host or "local"
        logger.debug(f"{target}: {' '.join(request.to_args())}")
        deadline = time.monotonic() + timeout

        for attempt in range(self.retries):
            if attempt > 0:
                remaining = deadline - time.monotonic()
                if remaining <= self.retry_delay:
                    raise IPMICommandError(
                        f"Command failed after {attempt} attempts: device busy, timed out after {timeout:.1f}s")
                time.sleep(self.retry_delay)
                logger.debug(f"Retrying IPMI command (attempt {attempt + 1}/{self.retries})")

            attempt_timeout = max(deadline - time.monotonic(), 0.001)
            try:
                with self._channel(attempt_timeout):
                    result = subprocess.run(
                        full_cmd,
                        capture_output=True,
                        text=True,
                        check=True,
                        timeout=max(deadline - time.monotonic(), 0.001),
                        env=self._environment()
                    )
                return self.parse_output(result.stdout)
            except subprocess.CalledProcessError as e:
                stderr = e.stderr or ""
                match = self.COMPLETION_CODE_RE.search(stderr)
                if match:
                    # The controller answered; hand its completion code to validation
                    return bytes([int(match.group(1), 16)])
                if "Device or resource busy" in stderr:
                    logger.debug(f"IPMI device busy, retrying... ({attempt + 1}/{self.retries})")
                    continue
                if any(fragment in stderr for fragment in self.CONNECTION_ERRORS):
                    raise CommunicationError(f"Failed to connect to {target}: {stderr.strip()}")
                raise IPMICommandError(f"Command failed: {stderr.strip()}")
            except subprocess.TimeoutExpired:
                raise IPMICommandError(f"Command timed out after {timeout:.1f}s")
            except FileNotFoundError:
                raise CommunicationError(f"{self.tool} not found")

        raise IPMICommandError(f"Command failed after {self.retries} attempts: device busy")


class IpmitoolInBandCommander(IpmitoolCommander):
    """Executes commands against the local controller.

    All callers share one local channel, so commands are serialized
    with a lock owned by this commander.
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.Lock()

    @contextmanager
    def _channel(self, timeout: float):
        if not self._lock.acquire(timeout=timeout):
            raise IPMICommandError("Timed out waiting for the local IPMI channel")
        try:
            yield
        finally:
            self._lock.release()


class IpmitoolOutOfBandCommander(IpmitoolCommander):
    """Executes commands against remote controllers over the network.

    Sessions to different hosts are independent, so no lock is shared
    between them. The password is handed to ipmitool through the
    IPMI_PASSWORD environment variable so it never shows in process
    listings.
    """

    def __init__(self, user: str = "", password: str = "", interface: str = "lanplus", **kwargs):
        """Initialize out-of-band commander

        Args:
            user: IPMI username
            password: IPMI password
            interface: IPMI interface type
        """
        super().__init__(**kwargs)
        self.user = user
        self.password = password
        self.interface = interface

    def _base_command(self, host: str) -> List[str]:
        if not host:
            raise CommunicationError("No host given for out-of-band command")
        cmd = [self.tool, "-I", self.interface, "-H", host]
        if self.user:
            cmd += ["-U", self.user]
        if self.password:
            cmd.append("-E")
        return cmd

    def _environment(self) -> Optional[Dict[str, str]]:
        if not self.password:
            return None
        env = os.environ.copy()
        env["IPMI_PASSWORD"] = self.password
        return env
