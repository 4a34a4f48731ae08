"""Creating, configuring and inspecting groups in the cgroup v2 unified hierarchy."""

from __future__ import annotations

import enum
import os
import posixpath
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from cgroupkit.utils import remove as _remove_path
from cgroupkit.v2.devicefilter import DeviceRule, can_skip_ebpf_error, device_filter
from cgroupkit.v2.paths import get_systemd_full_path, verify_group_path
from cgroupkit.v2.resources import (
    BFQ,
    CPU,
    IO,
    RDMA,
    Entry,
    HugeTlb,
    HugeTlbEntry,
    IOType,
    Memory,
    Pids,
    RDMAEntry,
    State,
    Value,
    fetch_state,
    new_cpu_max,
)
from cgroupkit.v2.stats import Metrics, collect_metrics, parse_cgroup_procs_file, read_kv_stats_file

SUBTREE_CONTROL = "cgroup.subtree_control"
CONTROLLERS_FILE = "cgroup.controllers"
CGROUP_PROCS = "cgroup.procs"
DEFAULT_SLICE = "system.slice"
DEFAULT_DIR_PERM = 0o755

_MASK64 = (1 << 64) - 1
_MASK16 = (1 << 16) - 1


def _join(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    if not joined:
        return ""
    result = posixpath.normpath(joined)
    if result.startswith("//"):
        result = "/" + result.lstrip("/")
    return result


@dataclass
class Resources:
    """Resource settings for a group; devices are controlled only when non-empty."""

    cpu: CPU | None = None
    memory: Memory | None = None
    pids: Pids | None = None
    io: IO | None = None
    rdma: RDMA | None = None
    hugetlb: HugeTlb | None = None
    devices: list[DeviceRule] = field(default_factory=list)

    def values(self) -> list[Value]:
        """Return the file names and values to write into the group."""
        out: list[Value] = []
        for setting in (self.cpu, self.memory, self.pids, self.io, self.rdma, self.hugetlb):
            if setting is not None:
                out.extend(setting.values())
        return out

    def enabled_controllers(self) -> list[str]:
        """Return the controllers needed by the settings that are present."""
        controllers = []
        if self.cpu is not None:
            controllers.extend(["cpu", "cpuset"])
        if self.memory is not None:
            controllers.append("memory")
        if self.pids is not None:
            controllers.append("pids")
        if self.io is not None:
            controllers.append("io")
        if self.rdma is not None:
            controllers.append("rdma")
        if self.hugetlb is not None:
            controllers.append("hugetlb")
        return controllers


class ControllerToggle(enum.IntEnum):
    ENABLE = 1
    DISABLE = 2


@dataclass
class Event:
    """Counters read from memory.events."""

    low: int = 0
    high: int = 0
    max: int = 0
    oom: int = 0
    oom_kill: int = 0


def parse_memory_events(out: Mapping[str, int | str]) -> Event:
    """Build an Event from parsed memory.events values; non-numeric values are an error."""
    event = Event()
    for key in ("high", "low", "max", "oom", "oom_kill"):
        if key not in out:
            continue
        value = out[key]
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"cannot convert {key} to uint64: {value}")
        setattr(event, key, value)
    return event


def _set_devices(path: str, devices: Sequence[DeviceRule]) -> None:
    if not devices:
        return
    device_filter(devices)
    if not os.path.isdir(path):
        raise OSError(f"cannot get dir FD for {path}")
    if not can_skip_ebpf_error(devices):
        raise OSError(
            "failed to call BPF_PROG_ATTACH (BPF_CGROUP_DEVICE, BPF_F_ALLOW_MULTI): "
            "loading device filter programs is not supported"
        )


def set_resources(path: str, resources: Resources | None) -> None:
    """Write all resource values and device rules into the group at path."""
    if resources is None:
        return
    for value in resources.values():
        value.write(path)
    _set_devices(path, resources.devices)


def _shares_to_weight(shares: int) -> int:
    return ((((shares - 2) & _MASK64) * 9999) & _MASK64) // 262142 + 1


def _blkio_to_bfq_weight(weight: int) -> int:
    scaled = ((((weight - 10) & _MASK16) * 9999) & _MASK16) // 990
    return (1 + scaled) & _MASK16


_THROTTLE_KEYS = (
    (IOType.READ_BPS, "throttleReadBpsDevice"),
    (IOType.WRITE_BPS, "throttleWriteBpsDevice"),
    (IOType.READ_IOPS, "throttleReadIOPSDevice"),
    (IOType.WRITE_IOPS, "throttleWriteIOPSDevice"),
)


def to_resources(spec: Mapping[str, Any]) -> Resources:
    """Convert OCI linux resources (in their JSON form) into v2 Resources."""
    resources = Resources()
    cpu = spec.get("cpu")
    if cpu is not None:
        resources.cpu = CPU(cpus=cpu.get("cpus", "") or "", mems=cpu.get("mems", "") or "")
        if cpu.get("shares") is not None:
            resources.cpu.weight = _shares_to_weight(cpu["shares"])
        if cpu.get("period") is not None:
            resources.cpu.max = new_cpu_max(cpu.get("quota"), cpu["period"])
    memory = spec.get("memory")
    if memory is not None:
        resources.memory = Memory(
            swap=memory.get("swap"),
            max=memory.get("limit"),
            low=memory.get("reservation"),
        )
    hugepages = spec.get("hugepageLimits")
    if hugepages is not None:
        resources.hugetlb = HugeTlb(
            HugeTlbEntry(huge_page_size=item["pageSize"], limit=item["limit"]) for item in hugepages
        )
    pids = spec.get("pids")
    if pids is not None:
        resources.pids = Pids(max=pids.get("limit", 0))
    block_io = spec.get("blockIO")
    if block_io is not None:
        io = IO(bfq=BFQ())
        if block_io.get("weight") is not None:
            io.bfq.weight = _blkio_to_bfq_weight(block_io["weight"])
        for io_type, key in _THROTTLE_KEYS:
            for device in block_io.get(key) or []:
                io.max.append(
                    Entry(type=io_type, major=device["major"], minor=device["minor"], rate=device["rate"])
                )
        resources.io = io
    rdma = spec.get("rdma")
    if rdma is not None:
        resources.rdma = RDMA()
        for device, value in rdma.items():
            handles = value.get("hcaHandles")
            objects = value.get("hcaObjects")
            if device and handles is not None and objects is not None:
                resources.rdma.limit.append(
                    RDMAEntry(device=device, hca_handles=handles, hca_objects=objects)
                )
    return resources


def _read_fields(path: str) -> list[str]:
    with open(path, encoding="utf-8") as handle:
        return handle.read().split()


def _discard_dir(path: str) -> None:
    try:
        os.rmdir(path)
    except OSError:
        pass


@dataclass
class Manager:
    """A group in the unified hierarchy, identified by its full path."""

    path: str
    unified_mountpoint: str = ""

    def root_controllers(self) -> list[str]:
        """Return the controllers available at the root of the hierarchy."""
        return _read_fields(os.path.join(self.unified_mountpoint, CONTROLLERS_FILE))

    def controllers(self) -> list[str]:
        """Return the controllers available in this group."""
        return _read_fields(os.path.join(self.path, CONTROLLERS_FILE))

    def update(self, resources: Resources | None) -> None:
        """Apply new resource settings to the group."""
        set_resources(self.path, resources)

    def toggle_controllers(self, controllers: Iterable[str], toggle: ControllerToggle) -> None:
        """Enable or disable controllers in every ancestor below the mount point.

        Only the error from the last ancestor is raised: failures on higher
        ancestors are harmless when the controller is already enabled there.
        """
        controllers = list(controllers)
        split = self.path.split("/")
        last_error: OSError | None = None
        for count in range(len(split)):
            ancestor = "/".join(split[:count])
            if not ancestor.startswith(self.unified_mountpoint) or ancestor == self.path:
                continue
            file_path = os.path.join(ancestor, SUBTREE_CONTROL)
            try:
                self._write_subtree_control(file_path, controllers, toggle)
            except OSError as exc:
                last_error = OSError(
                    f"failed to write subtree controllers {controllers} to {file_path!r}: {exc}"
                )
                last_error.__cause__ = exc
            else:
                last_error = None
        if last_error is not None:
            raise last_error

    @staticmethod
    def _write_subtree_control(file_path: str, controllers: list[str], toggle: ControllerToggle) -> None:
        prefix = {ControllerToggle.ENABLE: "+", ControllerToggle.DISABLE: "-"}.get(toggle, "")
        data = " ".join(prefix + name for name in controllers).encode()
        fd = os.open(file_path, os.O_WRONLY)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)

    def new_child(self, name: str, resources: Resources | None) -> Manager:
        """Create a child group below this one and apply its resources."""
        if name.startswith("/"):
            raise ValueError("name must be relative")
        path = _join(self.path, name)
        os.makedirs(path, mode=DEFAULT_DIR_PERM, exist_ok=True)
        child = Manager(path=path, unified_mountpoint=self.unified_mountpoint)
        try:
            if resources is not None:
                child.toggle_controllers(resources.enabled_controllers(), ControllerToggle.ENABLE)
            set_resources(path, resources)
        except Exception:
            _discard_dir(path)
            raise
        return child

    def add_proc(self, pid: int) -> None:
        """Move a process into the group."""
        Value(CGROUP_PROCS, pid).write(self.path)

    def delete(self) -> None:
        """Remove the group directory."""
        _remove_path(self.path)

    def _walk_procs(self, directory: str, recursive: bool) -> Iterator[int]:
        for name in sorted(os.listdir(directory)):
            full = os.path.join(directory, name)
            if os.path.isdir(full) and not os.path.islink(full):
                if recursive:
                    yield from self._walk_procs(full, recursive)
            elif name == CGROUP_PROCS:
                yield from parse_cgroup_procs_file(full)

    def procs(self, recursive: bool) -> list[int]:
        """Return the process ids in the group, and in its descendants when recursive."""
        return list(self._walk_procs(self.path, recursive))

    def stat(self) -> Metrics:
        """Return the current metrics of the group."""
        return collect_metrics(self.path, self.controllers())

    def _set_state(self, state: State) -> None:
        values = state.values()
        while True:
            for value in values:
                value.write(self.path)
            if fetch_state(self.path) == state:
                return
            time.sleep(0.001)

    def freeze(self) -> None:
        """Freeze the group and wait until it is frozen."""
        self._set_state(State.FROZEN)

    def thaw(self) -> None:
        """Thaw the group and wait until it is thawed."""
        self._set_state(State.THAWED)

    def is_empty(self) -> bool:
        """Return True unless cgroup.events reports the group as populated."""
        try:
            events = read_kv_stats_file(self.path, "cgroup.events")
        except (OSError, ValueError):
            return True
        populated = events.get("populated")
        if not isinstance(populated, int) or isinstance(populated, bool):
            return True
        return populated == 0


def new_manager(mountpoint: str, group: str, resources: Resources | None) -> Manager:
    """Create the group below the mount point, enable its controllers and apply resources."""
    if resources is None:
        raise ValueError("resources reference is nil")
    verify_group_path(group)
    path = _join(mountpoint, group)
    os.makedirs(path, mode=DEFAULT_DIR_PERM, exist_ok=True)
    manager = Manager(path=path, unified_mountpoint=mountpoint)
    try:
        manager.toggle_controllers(resources.enabled_controllers(), ControllerToggle.ENABLE)
        set_resources(path, resources)
    except Exception:
        _discard_dir(path)
        raise
    return manager


def load_manager(mountpoint: str, group: str) -> Manager:
    """Return a manager for an existing group without touching the filesystem."""
    verify_group_path(group)
    return Manager(path=_join(mountpoint, group), unified_mountpoint=mountpoint)


def load_systemd(slice: str, group: str) -> Manager:
    """Return a manager for a group created under a systemd slice."""
    return Manager(path=get_systemd_full_path(slice or DEFAULT_SLICE, group))