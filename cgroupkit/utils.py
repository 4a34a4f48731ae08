"""Host-level helpers for cgroup hierarchies: mode detection, file parsing and paths."""

from __future__ import annotations

import enum
import functools
import os
import posixpath
import re
import shutil
import time
from collections.abc import Iterable

UNIFIED_MOUNTPOINT = "/sys/fs/cgroup"
PROC_MOUNTS = "/proc/self/mounts"
PROC_MOUNTINFO = "/proc/self/mountinfo"
PROC_UID_MAP = "/proc/self/uid_map"
HUGEPAGES_DIR = "/sys/kernel/mm/hugepages"

_FULL_UID_RANGE = 4294967295
_SIZE_UNITS = ["B", "KB", "MB", "GB", "TB", "PB"]
_RAM_UNITS = {"k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4, "p": 1024**5}
_RAM_PATTERN = re.compile(r"(\d+(\.\d+)*) ?([kKmMgGtTpP])?[iI]?[bB]?")


class InvalidFormatError(ValueError):
    """A cgroup file did not have the expected format."""

    def __init__(self, message: str = "cgroups: parsing file with invalid format failed"):
        super().__init__(message)


class MountPointNotExistError(LookupError):
    """No cgroup mount point was found."""

    def __init__(self, message: str = "cgroups: cgroup mountpoint does not exist"):
        super().__init__(message)


class NoCgroupMountDestinationError(LookupError):
    """No mount destination was found for a cgroup subsystem."""

    def __init__(self, message: str = "cgroups: cannot find cgroup mount destination"):
        super().__init__(message)


class CGMode(enum.IntEnum):
    """The cgroups mode of the host system."""

    UNAVAILABLE = 0
    LEGACY = 1
    HYBRID = 2
    UNIFIED = 3


def _unescape_mount_path(field: str) -> str:
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), field)


def _read_mount_table(mounts: str) -> list[tuple[str, str]]:
    table = []
    with open(mounts, encoding="utf-8", errors="replace") as handle:
        for line in handle:
            fields = line.split()
            if len(fields) >= 3:
                table.append((_unescape_mount_path(fields[1]), fields[2]))
    return table


def _filesystem_type(path: str, table: list[tuple[str, str]]) -> str | None:
    path = posixpath.normpath(path)
    best: tuple[int, int] | None = None
    fstype = None
    for index, (mountpoint, kind) in enumerate(table):
        mountpoint = posixpath.normpath(mountpoint)
        prefix = mountpoint.rstrip("/") + "/"
        if path == mountpoint or path.startswith(prefix):
            rank = (len(mountpoint), index)
            if best is None or rank > best:
                best, fstype = rank, kind
    return fstype


def _detect_mode(root: str, mounts: str) -> CGMode:
    if not os.path.exists(root):
        return CGMode.UNAVAILABLE
    try:
        table = _read_mount_table(mounts)
    except OSError:
        return CGMode.UNAVAILABLE
    if _filesystem_type(root, table) == "cgroup2":
        return CGMode.UNIFIED
    unified = os.path.join(root, "unified")
    if not os.path.exists(unified):
        return CGMode.LEGACY
    if _filesystem_type(unified, table) == "cgroup2":
        return CGMode.HYBRID
    return CGMode.LEGACY


@functools.lru_cache(maxsize=None)
def mode() -> CGMode:
    """Return the cgroups mode running on the host (computed once)."""
    return _detect_mode(UNIFIED_MOUNTPOINT, PROC_MOUNTS)


def _in_user_ns(line: str) -> bool:
    values = [0, 0, 0]
    for position, token in enumerate(line.split()[:3]):
        try:
            values[position] = int(token)
        except ValueError:
            break
    return values != [0, 0, _FULL_UID_RANGE]


@functools.lru_cache(maxsize=None)
def running_in_user_ns() -> bool:
    """Return True when the current process runs inside a user namespace."""
    try:
        with open(PROC_UID_MAP, encoding="utf-8") as handle:
            line = handle.readline()
    except OSError:
        return False
    if line == "":
        return False
    return _in_user_ns(line.rstrip("\n"))


def parse_uint(s: str, bit_size: int = 64) -> int:
    """Parse an unsigned decimal integer; negative values are clamped to 0."""
    limit = (1 << (bit_size or 64)) - 1
    if re.fullmatch(r"[0-9]+", s):
        value = int(s)
        if value > limit:
            raise ValueError(f"parsing {s!r}: value out of range")
        return value
    if re.fullmatch(r"[+-]?[0-9]+", s) and int(s) < 0:
        return 0
    raise ValueError(f"parsing {s!r}: invalid syntax")


def parse_kv(raw: str) -> tuple[str, int]:
    """Parse a 'key value' line into its key and unsigned value."""
    parts = raw.split()
    if len(parts) != 2:
        raise InvalidFormatError()
    return parts[0], parse_uint(parts[1])


def _scan_lines(reader: Iterable[str]) -> Iterable[str]:
    for line in reader:
        line = line.rstrip("\n")
        if line.endswith("\r"):
            line = line[:-1]
        yield line


def parse_cgroup_from_reader_unified(reader: Iterable[str]) -> tuple[dict[str, str], str]:
    """Parse /proc/<pid>/cgroup lines into legacy subsystem paths and the unified path."""
    cgroups: dict[str, str] = {}
    unified = ""
    for text in _scan_lines(reader):
        parts = text.split(":", 2)
        if len(parts) < 3:
            raise ValueError(f'invalid cgroup entry: "{text}"')
        for subsystem in parts[1].split(","):
            if subsystem == "":
                unified = parts[2]
            else:
                cgroups[subsystem] = parts[2]
    return cgroups, unified


def parse_cgroup_file_unified(path: str) -> tuple[dict[str, str], str]:
    """Parse a cgroup file, returning legacy subsystem paths and the unified path."""
    with open(path, encoding="utf-8") as handle:
        return parse_cgroup_from_reader_unified(handle)


def parse_cgroup_file(path: str) -> dict[str, str]:
    """Parse a cgroup file into a mapping of subsystem to cgroup path."""
    cgroups, _ = parse_cgroup_file_unified(path)
    return cgroups


def read_uint(path: str) -> int:
    """Read a file holding a single unsigned integer."""
    with open(path, encoding="utf-8") as handle:
        return parse_uint(handle.read().strip())


def _remove_all(path: str) -> None:
    if not os.path.lexists(path):
        return
    if os.path.isdir(path) and not os.path.islink(path):
        try:
            os.rmdir(path)
        except OSError:
            shutil.rmtree(path)
    else:
        os.remove(path)


def remove(path: str) -> None:
    """Remove a cgroup path, retrying with exponential back-off."""
    delay = 0.01
    last_error: OSError | None = None
    for attempt in range(5):
        if attempt:
            time.sleep(delay)
            delay *= 2
        try:
            _remove_all(path)
            return
        except OSError as exc:
            last_error = exc
    raise OSError(f'cgroups: unable to remove path "{path}"') from last_error


def _clean(path: str) -> str:
    if not path:
        return "."
    result = posixpath.normpath(path)
    if result.startswith("//"):
        result = "/" + result.lstrip("/")
    return result


def clean_path(path: str) -> str:
    """Clean a path, resolving a relative one against '/' so it cannot escape upwards."""
    if path == "":
        return ""
    path = _clean(path)
    if not posixpath.isabs(path):
        path = posixpath.relpath(_clean("/" + path), "/")
    return path


def ram_in_bytes(size: str) -> int:
    """Parse a human-readable size with binary (1024) multipliers into bytes."""
    match = _RAM_PATTERN.fullmatch(size)
    if match is None:
        raise ValueError(f"invalid size: '{size}'")
    try:
        value = float(match.group(1))
    except ValueError as exc:
        raise ValueError(f"invalid size: '{size}'") from exc
    unit = match.group(3)
    if unit:
        value *= _RAM_UNITS[unit.lower()]
    return int(value)


def _format_number(value: float) -> str:
    text = repr(value)
    return text[:-2] if text.endswith(".0") else text


def _custom_size(size: float, base: float, units: list[str]) -> str:
    index = 0
    while size >= base and index < len(units) - 1:
        size /= base
        index += 1
    return f"{_format_number(size)}{units[index]}"


def hugepage_sizes(directory: str = HUGEPAGES_DIR) -> list[str]:
    """List the huge page sizes offered by the kernel, e.g. ['1GB', '2MB']."""
    sizes = []
    for entry in sorted(os.listdir(directory)):
        parts = entry.split("-")
        if len(parts) < 2:
            raise ValueError(f"unexpected hugepages entry: {entry!r}")
        page_size = ram_in_bytes(parts[1])
        sizes.append(_custom_size(float(page_size), 1024.0, _SIZE_UNITS))
    return sizes


def get_clock_ticks() -> int:
    """Return the kernel clock ticks per second (constant on Linux)."""
    return 100


def get_cgroup_destination(subsystem: str, mountinfo: str = PROC_MOUNTINFO) -> str:
    """Return the mount root of the cgroup hierarchy holding the given subsystem."""
    with open(mountinfo, encoding="utf-8") as handle:
        for text in _scan_lines(handle):
            fields = text.split(" ")
            if len(fields) < 10:
                continue
            if fields[-3] != "cgroup":
                continue
            if subsystem in fields[-1].split(","):
                return fields[3]
    raise NoCgroupMountDestinationError()