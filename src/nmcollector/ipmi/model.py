"""
IPMI Request/Response Data Model

This module defines the values exchanged with a management controller:
the raw request sent, the response received, and the catalog entry that
binds a request to the decoder and metric namespace it feeds.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Optional, Tuple

if TYPE_CHECKING:
    from .formats import Format

# Reserved value meaning "reading unavailable"
SENTINEL = 0xFFFF


class Validity(Enum):
    """Communication state of a response"""
    PENDING = 0    # Not yet executed
    SUCCEEDED = 1  # Transport obtained a reply
    FAILED = 2     # No reply, or rejected by validation


@dataclass(frozen=True)
class Request:
    """A raw IPMI command.

    The first byte of ``data`` is the network function, the second the
    command code, and the remainder the command data. ``channel`` and
    ``slave`` override the commander's default bridging target when set.

    Examples:
        >>> req = Request(bytes([0x04, 0x2D, 0x01]))
        >>> hex(req.netfn), hex(req.cmd), req.payload
        ('0x4', '0x2d', b'\\x01')
    """
    data: bytes
    channel: Optional[int] = None
    slave: Optional[int] = None

    def __post_init__(self):
        if len(self.data) < 2:
            raise ValueError("Request requires at least netfn and command bytes")
        object.__setattr__(self, "data", bytes(self.data))

    @property
    def netfn(self) -> int:
        return self.data[0]

    @property
    def cmd(self) -> int:
        return self.data[1]

    @property
    def payload(self) -> bytes:
        return self.data[2:]

    def to_args(self) -> list:
        """Format as ipmitool ``raw`` arguments (e.g. ["raw", "0x2e", "0xc8"])"""
        return ["raw"] + [f"0x{b:02x}" for b in self.data]


@dataclass(frozen=True)
class Response:
    """Reply to a single request.

    Attributes:
        data: Response bytes, completion code first
        validity: Communication state
        source: Host the request was sent to
        index: Position of the originating request in its batch
    """
    data: bytes = b""
    validity: Validity = Validity.PENDING
    source: str = ""
    index: int = -1

    @property
    def is_valid(self) -> bool:
        return self.validity is Validity.SUCCEEDED

    def mark_failed(self) -> "Response":
        """Return a copy of this response flagged as failed"""
        return replace(self, validity=Validity.FAILED)

    @classmethod
    def failed(cls, source: str, index: int) -> "Response":
        return cls(b"", Validity.FAILED, source, index)


@dataclass(frozen=True)
class RequestDescriptor:
    """Catalog entry binding a request to its decoder.

    ``metrics_root`` is the namespace segment(s) the decoder's metric
    names are appended to, e.g. ``power/system`` yields
    ``power/system``, ``power/system/min``, ...
    """
    request: Request
    metrics_root: str
    format: "Format" = field(compare=False)

    def metric_paths(self) -> Tuple[str, ...]:
        """All metric paths this descriptor produces, relative to its host"""
        return tuple(extend_path(self.metrics_root, name) for name in self.format.get_metrics())


def extend_path(path: str, ext: str) -> str:
    """Append a sub-metric to a path; the empty name maps to the path itself"""
    if not ext:
        return path
    if not path:
        return ext
    return f"{path}/{ext}"
