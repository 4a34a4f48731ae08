"""Resource settings of the cgroup v2 unified hierarchy and the values they write."""

from __future__ import annotations

import enum
import os
import re
from dataclasses import dataclass, field
from typing import Union

from cgroupkit.utils import InvalidFormatError as _BaseInvalidFormatError

CGROUP_FREEZE = "cgroup.freeze"

_MAX_INT64 = (1 << 63) - 1
_MIN_INT64 = -(1 << 63)
_MAX_UINT64 = (1 << 64) - 1


class InvalidFormatError(_BaseInvalidFormatError):
    """A value or cgroup file did not have the expected format."""


class InvalidGroupPathError(ValueError):
    """A cgroup group path is not valid."""

    def __init__(self, message: str = "cgroups: invalid group path"):
        super().__init__(message)


def _parse_int64(text: str) -> int:
    if not re.fullmatch(r"[+-]?[0-9]+", text):
        return 0
    return max(_MIN_INT64, min(_MAX_INT64, int(text)))


def _parse_uint64(text: str) -> int:
    if not re.fullmatch(r"[0-9]+", text):
        return 0
    return min(_MAX_UINT64, int(text))


class CPUMax(str):
    """The contents of cpu.max: a quota (or 'max') and a period."""

    def quota_and_period(self) -> tuple[int, int]:
        """Return the quota and period; a 'max' quota is the largest int64."""
        values = self.split(" ")
        if len(values) < 2:
            raise InvalidFormatError(f"invalid cpu.max value: {str(self)!r}")
        quota = _MAX_INT64 if values[0] == "max" else _parse_int64(values[0])
        return quota, _parse_uint64(values[1])


def new_cpu_max(quota: int | None, period: int) -> CPUMax:
    """Build a cpu.max value; a missing quota means 'max'."""
    limit = "max" if quota is None else str(quota)
    return CPUMax(f"{limit} {period}")


ValueData = Union[int, str, bytes, None]


@dataclass(frozen=True)
class Value:
    """A single setting: the file it goes to and the data written there."""

    filename: str
    value: ValueData

    def render(self) -> bytes:
        """Return the bytes written for this value."""
        data = self.value
        if isinstance(data, bool):
            raise InvalidFormatError()
        if isinstance(data, int):
            return str(data).encode()
        if isinstance(data, bytes):
            return data
        if isinstance(data, str):
            return data.encode()
        raise InvalidFormatError()

    def write(self, path: str) -> None:
        """Write the value into its file below the given cgroup directory."""
        data = self.render()
        target = os.path.join(path, self.filename)
        while True:
            try:
                with open(target, "wb") as handle:
                    handle.write(data)
                return
            except InterruptedError:
                continue


@dataclass
class CPU:
    weight: int | None = None
    max: CPUMax | str = ""
    cpus: str = ""
    mems: str = ""

    def values(self) -> list[Value]:
        out = []
        if self.weight is not None:
            out.append(Value("cpu.weight", self.weight))
        if self.max:
            out.append(Value("cpu.max", CPUMax(self.max)))
        if self.cpus:
            out.append(Value("cpuset.cpus", self.cpus))
        if self.mems:
            out.append(Value("cpuset.mems", self.mems))
        return out


@dataclass
class Memory:
    swap: int | None = None
    min: int | None = None
    max: int | None = None
    low: int | None = None
    high: int | None = None

    def values(self) -> list[Value]:
        settings = [
            ("memory.swap.max", self.swap),
            ("memory.min", self.min),
            ("memory.max", self.max),
            ("memory.low", self.low),
            ("memory.high", self.high),
        ]
        return [Value(name, limit) for name, limit in settings if limit is not None]


@dataclass
class Pids:
    max: int = 0

    def values(self) -> list[Value]:
        if self.max == 0:
            return []
        limit = str(self.max) if self.max > 0 else "max"
        return [Value("pids.max", limit)]


class IOType(str, enum.Enum):
    READ_BPS = "rbps"
    WRITE_BPS = "wbps"
    READ_IOPS = "riops"
    WRITE_IOPS = "wiops"

    def __str__(self) -> str:
        return self.value


@dataclass
class BFQ:
    weight: int = 0


@dataclass
class Entry:
    type: IOType
    major: int
    minor: int
    rate: int

    def __str__(self) -> str:
        return f"{self.major}:{self.minor} {IOType(self.type).value}={self.rate}"


@dataclass
class IO:
    bfq: BFQ = field(default_factory=BFQ)
    max: list[Entry] = field(default_factory=list)

    def values(self) -> list[Value]:
        out = []
        if self.bfq.weight != 0:
            out.append(Value("io.bfq.weight", self.bfq.weight))
        out.extend(Value("io.max", str(entry)) for entry in self.max)
        return out


@dataclass
class RDMAEntry:
    device: str
    hca_handles: int
    hca_objects: int

    def __str__(self) -> str:
        return f"{self.device} hca_handle={self.hca_handles} hca_object={self.hca_objects}"


@dataclass
class RDMA:
    limit: list[RDMAEntry] = field(default_factory=list)

    def values(self) -> list[Value]:
        return [Value("rdma.max", str(entry)) for entry in self.limit]


@dataclass
class HugeTlbEntry:
    huge_page_size: str
    limit: int


class HugeTlb(list):
    """A list of huge page limits, one per page size."""

    def values(self) -> list[Value]:
        return [Value(f"hugetlb.{entry.huge_page_size}.max", entry.limit) for entry in self]


class State(str, enum.Enum):
    """The freezer state of a cgroup."""

    UNKNOWN = ""
    THAWED = "thawed"
    FROZEN = "frozen"
    DELETED = "deleted"

    def values(self) -> list[Value]:
        setting = {State.FROZEN: "1", State.THAWED: "0"}.get(self)
        return [Value(CGROUP_FREEZE, setting)]


def fetch_state(path: str) -> State:
    """Read the current freezer state of the cgroup at path."""
    with open(os.path.join(path, CGROUP_FREEZE), encoding="utf-8") as handle:
        current = handle.read().strip()
    return {"1": State.FROZEN, "0": State.THAWED}.get(current, State.UNKNOWN)