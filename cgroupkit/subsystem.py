"""Cgroup v1 subsystem names, hierarchies and mount point discovery."""

from __future__ import annotations

import enum
import os
import posixpath
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from cgroupkit.utils import (
    HUGEPAGES_DIR,
    PROC_MOUNTINFO,
    MountPointNotExistError,
    running_in_user_ns,
)

DEFAULT_SLICE = "system.slice"


class Name(str, enum.Enum):
    """A cgroup subsystem name."""

    DEVICES = "devices"
    HUGETLB = "hugetlb"
    FREEZER = "freezer"
    PIDS = "pids"
    NET_CLS = "net_cls"
    NET_PRIO = "net_prio"
    PERF_EVENT = "perf_event"
    CPUSET = "cpuset"
    CPU = "cpu"
    CPUACCT = "cpuacct"
    MEMORY = "memory"
    BLKIO = "blkio"
    RDMA = "rdma"
    SYSTEMD = "systemd"

    def __str__(self) -> str:
        return self.value


@runtime_checkable
class Subsystem(Protocol):
    """Anything that names a cgroup subsystem."""

    @property
    def name(self) -> Name: ...


Hierarchy = Callable[[], list[Subsystem]]
Path = Callable[[Name], str]


def subsystems() -> list[Name]:
    """Return the default cgroup subsystems available on most Linux systems."""
    names = [
        Name.FREEZER,
        Name.PIDS,
        Name.NET_CLS,
        Name.NET_PRIO,
        Name.PERF_EVENT,
        Name.CPUSET,
        Name.CPU,
        Name.CPUACCT,
        Name.MEMORY,
        Name.BLKIO,
        Name.RDMA,
    ]
    if not running_in_user_ns():
        names.append(Name.DEVICES)
    if os.path.exists(HUGEPAGES_DIR):
        names.append(Name.HUGETLB)
    return names


def single_subsystem(base_hierarchy: Hierarchy, subsystem: Name | str) -> Hierarchy:
    """Return a hierarchy holding only the named subsystem of the base hierarchy."""

    def hierarchy() -> list[Subsystem]:
        for candidate in base_hierarchy():
            if candidate.name == subsystem:
                return [candidate]
        raise LookupError(f"unable to find subsystem {subsystem}")

    return hierarchy


def _dir(path: str) -> str:
    head = posixpath.dirname(path)
    return posixpath.normpath(head) if head else "."


def v1_mount_point(mountinfo: str = PROC_MOUNTINFO) -> str:
    """Return the directory under which the v1 cgroup hierarchies are mounted."""
    with open(mountinfo, encoding="utf-8") as handle:
        for line in handle:
            text = line.rstrip("\n")
            if text.endswith("\r"):
                text = text[:-1]
            fields = text.split(" ")
            if len(fields) < 10:
                raise ValueError(f'mountinfo: bad entry "{text}"')
            if fields[-3] == "cgroup":
                return _dir(fields[4])
    raise MountPointNotExistError()


def _join(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    return posixpath.normpath(joined) if joined else ""


def slice_path(slice: str, name: str) -> Path:
    """Return a path function placing every subsystem under slice/name."""
    slice = slice or DEFAULT_SLICE

    def path(subsystem: Name) -> str:
        return _join(slice, name)

    return path


def split_name(path: str) -> tuple[str, str]:
    """Split a systemd cgroup path into its slice and unit name."""
    head, sep, unit = path.rpartition("/")
    slice = head + sep
    if slice.endswith("/"):
        slice = slice[:-1]
    return slice, unit