"""Group path parsing, validation and systemd slice path resolution for cgroup v2."""

from __future__ import annotations

import posixpath
from collections.abc import Iterable

from cgroupkit.v2.resources import InvalidGroupPathError

DEFAULT_CGROUP2_PATH = "/sys/fs/cgroup"
PROC_SELF_CGROUP = "/proc/self/cgroup"
PROC_PID_CGROUP = "/proc/{pid}/cgroup"


def _clean(path: str) -> str:
    if not path:
        return "."
    result = posixpath.normpath(path)
    if result.startswith("//"):
        result = "/" + result.lstrip("/")
    return result


def _join(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    return _clean(joined) if joined else ""


def parse_cgroup_from_reader(reader: Iterable[str]) -> str:
    """Return the unified ('0::') group path from /proc/<pid>/cgroup lines."""
    for line in reader:
        text = line.rstrip("\n")
        if text.endswith("\r"):
            text = text[:-1]
        parts = text.split(":", 2)
        if len(parts) < 3:
            raise ValueError(f'invalid cgroup entry: "{text}"')
        if parts[0] == "0" and parts[1] == "":
            return parts[2]
    raise LookupError("cgroup path not found")


def parse_cgroup_file(path: str) -> str:
    """Return the unified group path recorded in a /proc/<pid>/cgroup file."""
    with open(path, encoding="utf-8") as handle:
        return parse_cgroup_from_reader(handle)


def nested_group_path(suffix: str) -> str:
    """Return a group path nested below the calling process's own cgroup."""
    return _join(parse_cgroup_file(PROC_SELF_CGROUP), suffix)


def pid_group_path(pid: int) -> str:
    """Return the group path of an existing process."""
    return parse_cgroup_file(PROC_PID_CGROUP.format(pid=pid))


def verify_group_path(group: str) -> None:
    """Raise InvalidGroupPathError unless group is a clean absolute path outside the mount."""
    if not group.startswith("/"):
        raise InvalidGroupPathError()
    if _clean(group) != group:
        raise InvalidGroupPathError()
    if group.startswith("/sys/fs/cgroup"):
        raise InvalidGroupPathError()


def dashes_to_path(name: str) -> str:
    """Expand a dashed slice name into the nested path systemd creates for it."""
    if name.endswith(".slice") and "-" in name:
        path = ""
        parts = name.split("-")
        for count in range(1, len(parts) + 1):
            segment = "-".join(parts[:count])
            if not segment.endswith(".slice"):
                segment += ".slice"
            path = _join(path, segment)
        return path
    return _join(name)


def get_systemd_full_path(slice: str, group: str) -> str:
    """Return the full filesystem path of a group created under a systemd slice."""
    return _join(DEFAULT_CGROUP2_PATH, dashes_to_path(slice), dashes_to_path(group))


def systemd_unit_from_path(path: str) -> str:
    """Return the systemd unit name, the last element of the path."""
    return path.rpartition("/")[2]