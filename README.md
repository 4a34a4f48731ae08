# cgroupkit

A library for working with Linux control groups from Python. It has no
dependencies outside the standard library.

## What it covers

- `cgroupkit.utils`: host-level helpers.
  - `mode()` returns a `CGMode` (`UNAVAILABLE`, `LEGACY`, `HYBRID`,
    `UNIFIED`) by looking at the filesystem types mounted at
    `/sys/fs/cgroup` and `/sys/fs/cgroup/unified`. The result is cached.
  - `running_in_user_ns()` reads `/proc/self/uid_map` (cached).
  - `parse_cgroup_file(path)`, `parse_cgroup_file_unified(path)` and
    `parse_cgroup_from_reader_unified(lines)` parse `/proc/<pid>/cgroup`
    into subsystem paths and the unified path.
  - `get_cgroup_destination(subsystem, mountinfo=...)`, `parse_uint`,
    `parse_kv`, `read_uint`, `remove` (retries with back-off),
    `clean_path`, `ram_in_bytes`, `hugepage_sizes(directory=...)` and
    `get_clock_ticks()`.
  - Errors: `InvalidFormatError`, `MountPointNotExistError`,
    `NoCgroupMountDestinationError`.
- `cgroupkit.subsystem`: v1 subsystem names and hierarchy helpers —
  the `Name` enum, the `Subsystem` protocol, `subsystems()`,
  `single_subsystem(hierarchy, name)`, `v1_mount_point(mountinfo=...)`,
  `slice_path(slice, name)` and `split_name(path)`.
- `cgroupkit.v2.resources`: v2 resource settings — `CPU`, `CPUMax`
  (`new_cpu_max`, `quota_and_period`), `Memory`, `Pids`, `IO` with
  `BFQ`/`Entry`/`IOType`, `RDMA` with `RDMAEntry`, `HugeTlb` with
  `HugeTlbEntry`, and the freezer `State` with `fetch_state(path)`. Each
  setting's `values()` returns `Value` objects holding a file name and the
  data to write (`Value.render()`, `Value.write(path)`).
- `cgroupkit.v2.devicefilter`: `device_filter(rules)` builds the eBPF
  device-filter instruction list for a list of `DeviceRule`s and returns it
  with its license string; `is_rwm` and `can_skip_ebpf_error` help decide
  whether a failure to install it matters.
- `cgroupkit.v2.paths`: `verify_group_path`, `parse_cgroup_file`,
  `parse_cgroup_from_reader`, `nested_group_path`, `pid_group_path`,
  `dashes_to_path`, `get_systemd_full_path` and `systemd_unit_from_path`.
- `cgroupkit.v2.stats`: readers for v2 statistics files and
  `collect_metrics(path, controllers)`, which returns a `Metrics` record
  (pids, CPU, memory, memory events, IO, RDMA, hugetlb).
- `cgroupkit.v2.manager`: `Resources`, `to_resources(spec)` (takes OCI
  linux resources in their JSON form), `new_manager`, `load_manager`,
  `load_systemd`, and `Manager` with `controllers`, `root_controllers`,
  `update`, `toggle_controllers`, `new_child`, `add_proc`, `procs`,
  `stat`, `freeze`, `thaw`, `is_empty` and `delete`.

## Installation

```
pip install cgroupkit
```

Running the tests needs the `test` extra:

```
pip install "cgroupkit[test]"
pytest
```

## Examples

Describe a set of limits and see what would be written:

```python
from cgroupkit.v2.manager import Resources
from cgroupkit.v2.resources import CPU, Memory, Pids, new_cpu_max

resources = Resources(
    cpu=CPU(weight=100, max=new_cpu_max(10000, 8000)),
    memory=Memory(max=629145600),
    pids=Pids(max=1000),
)
for value in resources.values():
    print(value.filename, value.render())
print(resources.enabled_controllers())
# ['cpu', 'cpuset', 'memory', 'pids']
```

Convert OCI resources:

```python
from cgroupkit.v2.manager import to_resources

resources = to_resources({"cpu": {"quota": 8000, "period": 10000}})
print(resources.cpu.max)
# 8000 10000
```

Create a group under the unified mountpoint and read its statistics
(needs a cgroup v2 host and sufficient privileges):

```python
from cgroupkit.v2.manager import new_manager

manager = new_manager("/sys/fs/cgroup", "/example-group", resources)
manager.add_proc(12345)
metrics = manager.stat()
print(metrics.memory.usage_limit)
manager.delete()
```

Work out where systemd places a slice:

```python
from cgroupkit.v2.paths import get_systemd_full_path

get_systemd_full_path("user.slice", "my-group.slice")
# '/sys/fs/cgroup/user.slice/my.slice/my-group.slice'
```

Build a device filter that allows everything except block device 8:0:

```python
from cgroupkit.v2.devicefilter import DeviceRule, device_filter

program, license_name = device_filter([
    DeviceRule(type="a", major=-1, minor=-1, access="rwm", allow=True),
    DeviceRule(type="b", major=8, minor=0, access="rwm", allow=False),
])
print(program)
```

## Errors

Errors are raised as exceptions: malformed files raise
`InvalidFormatError`, bad group paths raise `InvalidGroupPathError`
(`cgroupkit.v2.resources`), and file-system failures surface as the usual
`OSError` subclasses.

## What it does not do

- It does not talk to systemd over D-Bus. `load_systemd` only computes the
  path of a group placed under a slice; creating or stopping transient
  units is left to the caller.
- It does not load eBPF programs into the kernel. `device_filter` builds
  the program, but applying `Resources.devices` raises `OSError` unless
  every rule denies all access (the case where a failure can be ignored).
- It does not watch `memory.events` for changes. `Manager.is_empty` and
  `parse_memory_events` are available for polling.
- It has no v1 controller implementations: `cgroupkit.subsystem` offers
  names, mount-point discovery and hierarchy helpers only.
- It has no command-line program.