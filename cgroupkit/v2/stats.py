"""Reading statistics of a cgroup v2 group into metric records."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from cgroupkit.utils import parse_uint as _parse_uint
from cgroupkit.v2.resources import InvalidFormatError

logger = logging.getLogger(__name__)

MAX_UINT64 = (1 << 64) - 1
MAX_UINT32 = (1 << 32) - 1

SINGLE_VALUE_FILES = ("pids.current", "pids.max")

_DIGITS = re.compile(r"[0-9]+")


@dataclass
class PidsStat:
    current: int = 0
    limit: int = 0


@dataclass
class CPUStat:
    usage_usec: int = 0
    user_usec: int = 0
    system_usec: int = 0
    nr_periods: int = 0
    nr_throttled: int = 0
    throttled_usec: int = 0


@dataclass
class MemoryStat:
    anon: int = 0
    file: int = 0
    kernel_stack: int = 0
    slab: int = 0
    sock: int = 0
    shmem: int = 0
    file_mapped: int = 0
    file_dirty: int = 0
    file_writeback: int = 0
    anon_thp: int = 0
    inactive_anon: int = 0
    active_anon: int = 0
    inactive_file: int = 0
    active_file: int = 0
    unevictable: int = 0
    slab_reclaimable: int = 0
    slab_unreclaimable: int = 0
    pgfault: int = 0
    pgmajfault: int = 0
    workingset_refault: int = 0
    workingset_activate: int = 0
    workingset_nodereclaim: int = 0
    pgrefill: int = 0
    pgscan: int = 0
    pgsteal: int = 0
    pgactivate: int = 0
    pgdeactivate: int = 0
    pglazyfree: int = 0
    pglazyfreed: int = 0
    thp_fault_alloc: int = 0
    thp_collapse_alloc: int = 0
    usage: int = 0
    usage_limit: int = 0
    swap_usage: int = 0
    swap_limit: int = 0


@dataclass
class MemoryEvents:
    low: int = 0
    high: int = 0
    max: int = 0
    oom: int = 0
    oom_kill: int = 0


@dataclass
class IOEntry:
    major: int = 0
    minor: int = 0
    rbytes: int = 0
    wbytes: int = 0
    rios: int = 0
    wios: int = 0


@dataclass
class IOStat:
    usage: list[IOEntry] = field(default_factory=list)


@dataclass
class RdmaEntry:
    device: str = ""
    hca_handles: int = 0
    hca_objects: int = 0


@dataclass
class RdmaStat:
    current: list[RdmaEntry] = field(default_factory=list)
    limit: list[RdmaEntry] = field(default_factory=list)


@dataclass
class HugeTlbStat:
    current: int = 0
    max: int = 0
    pagesize: str = ""


@dataclass
class Metrics:
    pids: PidsStat = field(default_factory=PidsStat)
    cpu: CPUStat = field(default_factory=CPUStat)
    memory: MemoryStat = field(default_factory=MemoryStat)
    memory_events: MemoryEvents | None = None
    io: IOStat = field(default_factory=IOStat)
    rdma: RdmaStat = field(default_factory=RdmaStat)
    hugetlb: list[HugeTlbStat] = field(default_factory=list)


def parse_uint(s: str, bit_size: int = 64) -> int:
    """Parse an unsigned decimal integer; negative values are clamped to 0."""
    return _parse_uint(s, bit_size)


def _strict_uint(text: str, limit: int = MAX_UINT64) -> int:
    if not _DIGITS.fullmatch(text):
        raise ValueError(f"parsing {text!r}: invalid syntax")
    value = int(text)
    if value > limit:
        raise ValueError(f"parsing {text!r}: value out of range")
    return value


def _lines(handle: Iterable[str]) -> Iterator[str]:
    for line in handle:
        line = line.rstrip("\n")
        if line.endswith("\r"):
            line = line[:-1]
        yield line


def parse_kv(raw: str) -> tuple[str, int | str]:
    """Parse a 'key value' line; a value that is not a number is kept as text."""
    parts = raw.split()
    if len(parts) != 2:
        raise InvalidFormatError()
    try:
        return parts[0], parse_uint(parts[1])
    except ValueError:
        return parts[0], parts[1]


def read_kv_stats_file(path: str, file: str) -> dict[str, int | str]:
    """Read a flat 'key value' statistics file of the group at path."""
    full = os.path.join(path, file)
    out: dict[str, int | str] = {}
    with open(full, encoding="utf-8") as handle:
        for text in _lines(handle):
            try:
                name, value = parse_kv(text)
            except InvalidFormatError as exc:
                raise InvalidFormatError(
                    f"error while parsing {full} (line={text!r}): {exc}"
                ) from exc
            out[name] = value
    return out


def read_single_file(path: str, file: str) -> int | str:
    """Read a single-value file; the value is a number when it parses as one."""
    with open(os.path.join(path, file), encoding="utf-8") as handle:
        text = handle.read().strip()
    try:
        return parse_uint(text)
    except ValueError:
        return text


def get_stat_file_content_uint64(path: str) -> int:
    """Read a single-value stat file as an unsigned integer; 'max' is the largest."""
    try:
        with open(path, encoding="utf-8") as handle:
            contents = handle.read()
    except OSError:
        return 0
    trimmed = contents.strip()
    if trimmed == "max":
        return MAX_UINT64
    try:
        return parse_uint(trimmed)
    except ValueError:
        logger.error("unable to parse %r as a uint from Cgroup file %r", contents, path)
        return 0


def read_io_stats(path: str) -> list[IOEntry]:
    """Read per-device usage from io.stat of the group at path."""
    usage: list[IOEntry] = []
    try:
        with open(os.path.join(path, "io.stat"), encoding="utf-8") as handle:
            data = handle.read()
    except OSError:
        return usage
    for line in data.split("\n"):
        parts = line.split(" ")
        if len(parts) < 2:
            continue
        majmin = parts[0].split(":")
        if len(majmin) != 2:
            continue
        try:
            major = _strict_uint(majmin[0])
            minor = _strict_uint(majmin[1])
        except ValueError:
            return usage
        entry = IOEntry(major=major, minor=minor)
        for item in parts[1:]:
            pair = item.split("=")
            if len(pair) != 2:
                continue
            try:
                value = _strict_uint(pair[1])
            except ValueError:
                continue
            if pair[0] in ("rbytes", "wbytes", "rios", "wios"):
                setattr(entry, pair[0], value)
        usage.append(entry)
    return usage


def _parse_rdma_kv(raw: str, entry: RdmaEntry) -> None:
    parts = raw.split("=")
    if len(parts) != 2:
        return
    if parts[1] == "max":
        value = MAX_UINT32
    else:
        try:
            value = parse_uint(parts[1], 32)
        except ValueError:
            return
    if parts[0] == "hca_handle":
        entry.hca_handles = value
    elif parts[0] == "hca_object":
        entry.hca_objects = value


def to_rdma_entries(lines: Iterable[str]) -> list[RdmaEntry]:
    """Parse 'device hca_handle=N hca_object=N' lines into RDMA entries."""
    entries = []
    for line in lines:
        parts = line.split()
        if len(parts) != 3:
            continue
        entry = RdmaEntry(device=parts[0])
        _parse_rdma_kv(parts[1], entry)
        _parse_rdma_kv(parts[2], entry)
        entries.append(entry)
    return entries


def rdma_stats(path: str) -> list[RdmaEntry]:
    """Read RDMA entries from an rdma.current or rdma.max file."""
    try:
        with open(path, encoding="utf-8") as handle:
            data = handle.read()
    except OSError:
        return []
    return to_rdma_entries(data.split("\n"))


def read_hugetlb_stats(path: str) -> list[HugeTlbStat]:
    """Read huge page usage and limits of the group at path, one entry per page size."""
    try:
        names = sorted(os.listdir(path))
    except OSError:
        return []
    by_size: dict[str, HugeTlbStat] = {}
    for name in names:
        if "hugetlb" not in name or not (name.endswith("max") or name.endswith("current")):
            continue
        pieces = name.split(".")
        if len(pieces) < 3:
            continue
        page_size = pieces[1]
        stat = by_size.get(page_size, HugeTlbStat())
        stat.pagesize = page_size
        try:
            with open(os.path.join(path, name), encoding="utf-8") as handle:
                text = handle.read().strip()
        except OSError:
            continue
        if text == "max":
            value = MAX_UINT64
        else:
            try:
                value = _strict_uint(text)
            except ValueError:
                continue
        if pieces[2] == "max":
            stat.max = value
        elif pieces[2] == "current":
            stat.current = value
        by_size[page_size] = stat
    return list(by_size.values())


def parse_cgroup_procs_file(path: str) -> list[int]:
    """Read the process ids listed in a cgroup.procs file."""
    pids = []
    with open(path, encoding="utf-8") as handle:
        for text in _lines(handle):
            if text:
                pids.append(_strict_uint(text))
    return pids


def _uint(key: str, out: dict[str, int | str]) -> int:
    value = out.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


def _pid_value(key: str, out: dict[str, int | str]) -> int:
    value = out.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if value == "max":
        return MAX_UINT64
    return 0


_MEMORY_KEYS = (
    "anon", "file", "kernel_stack", "slab", "sock", "shmem", "file_mapped",
    "file_dirty", "file_writeback", "anon_thp", "inactive_anon", "active_anon",
    "inactive_file", "active_file", "unevictable", "slab_reclaimable",
    "slab_unreclaimable", "pgfault", "pgmajfault", "workingset_refault",
    "workingset_activate", "workingset_nodereclaim", "pgrefill", "pgscan",
    "pgsteal", "pgactivate", "pgdeactivate", "pglazyfree", "pglazyfreed",
    "thp_fault_alloc", "thp_collapse_alloc",
)

_CPU_KEYS = (
    "usage_usec", "user_usec", "system_usec", "nr_periods", "nr_throttled", "throttled_usec",
)


def collect_metrics(path: str, controllers: Iterable[str]) -> Metrics:
    """Gather the metrics of the group at path for its enabled controllers."""
    out: dict[str, int | str] = {}
    for controller in controllers:
        if controller in ("cpu", "memory"):
            try:
                out.update(read_kv_stats_file(path, f"{controller}.stat"))
            except FileNotFoundError:
                continue
    for name in SINGLE_VALUE_FILES:
        try:
            out[name] = read_single_file(path, name)
        except FileNotFoundError:
            continue
    try:
        memory_events = read_kv_stats_file(path, "memory.events")
    except FileNotFoundError:
        memory_events = {}

    memory = MemoryStat(
        **{key: _uint(key, out) for key in _MEMORY_KEYS},
        usage=get_stat_file_content_uint64(os.path.join(path, "memory.current")),
        usage_limit=get_stat_file_content_uint64(os.path.join(path, "memory.max")),
        swap_usage=get_stat_file_content_uint64(os.path.join(path, "memory.swap.current")),
        swap_limit=get_stat_file_content_uint64(os.path.join(path, "memory.swap.max")),
    )
    events = None
    if memory_events:
        events = MemoryEvents(
            low=_uint("low", memory_events),
            high=_uint("high", memory_events),
            max=_uint("max", memory_events),
            oom=_uint("oom", memory_events),
            oom_kill=_uint("oom_kill", memory_events),
        )
    return Metrics(
        pids=PidsStat(
            current=_pid_value("pids.current", out),
            limit=_pid_value("pids.max", out),
        ),
        cpu=CPUStat(**{key: _uint(key, out) for key in _CPU_KEYS}),
        memory=memory,
        memory_events=events,
        io=IOStat(usage=read_io_stats(path)),
        rdma=RdmaStat(
            current=rdma_stats(os.path.join(path, "rdma.current")),
            limit=rdma_stats(os.path.join(path, "rdma.max")),
        ),
        hugetlb=read_hugetlb_stats(path),
    )