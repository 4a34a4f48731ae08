import os
from dataclasses import dataclass

import pytest

from cgroupkit.subsystem import (
    DEFAULT_SLICE,
    Name,
    Subsystem,
    single_subsystem,
    slice_path,
    split_name,
    subsystems,
    v1_mount_point,
)
from cgroupkit.utils import HUGEPAGES_DIR, MountPointNotExistError, running_in_user_ns


@dataclass
class FakeSubsystem:
    name: Name


def test_subsystems_fixed_prefix_order():
    names = subsystems()
    assert names[:11] == [
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


def test_subsystems_optional_entries_follow_host():
    names = subsystems()
    assert (Name.DEVICES in names) == (not running_in_user_ns())
    assert (Name.HUGETLB in names) == os.path.exists(HUGEPAGES_DIR)
    assert len(names) == len(set(names))


def test_name_values_and_str():
    assert Name.NET_CLS == "net_cls"
    assert str(Name.PERF_EVENT) == "perf_event"
    assert Name("systemd") is Name.SYSTEMD


def test_single_subsystem_returns_protocol_member():
    fake = FakeSubsystem(Name.CPU)
    result = single_subsystem(lambda: [fake], Name.CPU)()
    assert result == [fake]
    assert isinstance(result[0], Subsystem)


def test_single_subsystem_finds_match():
    cpu = FakeSubsystem(Name.CPU)
    memory = FakeSubsystem(Name.MEMORY)
    hierarchy = single_subsystem(lambda: [cpu, memory], Name.MEMORY)
    result = hierarchy()
    assert result == [memory]
    assert result[0] is memory


def test_single_subsystem_is_lazy():
    calls = []

    def base():
        calls.append(1)
        return [FakeSubsystem(Name.PIDS)]

    hierarchy = single_subsystem(base, Name.PIDS)
    assert calls == []
    assert hierarchy()[0].name == Name.PIDS
    assert calls == [1]


def test_single_subsystem_missing_raises():
    hierarchy = single_subsystem(lambda: [FakeSubsystem(Name.CPU)], Name.BLKIO)
    with pytest.raises(LookupError, match="unable to find subsystem blkio"):
        hierarchy()


def test_single_subsystem_propagates_base_error():
    def base():
        raise OSError("boom")

    with pytest.raises(OSError, match="boom"):
        single_subsystem(base, Name.CPU)()


MOUNTINFO_OK = (
    "22 1 8:1 / / rw,relatime shared:1 - ext4 /dev/sda1 rw\n"
    "30 25 0:26 / /sys/fs/cgroup/cpu,cpuacct rw,nosuid,nodev shared:11 - cgroup cgroup rw,cpu,cpuacct\n"
)


def test_v1_mount_point(tmp_path):
    path = tmp_path / "mountinfo"
    path.write_text(MOUNTINFO_OK)
    assert v1_mount_point(str(path)) == "/sys/fs/cgroup"


def test_v1_mount_point_bad_entry(tmp_path):
    path = tmp_path / "mountinfo"
    path.write_text("too short line\n")
    with pytest.raises(ValueError, match="mountinfo: bad entry"):
        v1_mount_point(str(path))


def test_v1_mount_point_missing(tmp_path):
    path = tmp_path / "mountinfo"
    path.write_text("22 1 8:1 / / rw,relatime shared:1 - ext4 /dev/sda1 rw\n")
    with pytest.raises(MountPointNotExistError):
        v1_mount_point(str(path))


def test_slice_path_default_slice():
    path = slice_path("", "my-unit.scope")
    assert path(Name.CPU) == DEFAULT_SLICE + "/my-unit.scope"
    assert path(Name.MEMORY) == path(Name.CPU)


def test_slice_path_custom_slice():
    assert slice_path("user.slice", "unit.scope")(Name.PIDS) == "user.slice/unit.scope"


def test_split_name_round_trip():
    slice, unit = split_name("system.slice/my-unit.scope")
    assert (slice, unit) == ("system.slice", "my-unit.scope")
    assert slice_path(slice, unit)(Name.CPU) == "system.slice/my-unit.scope"


def test_split_name_without_slice():
    assert split_name("unit.scope") == ("", "unit.scope")
    assert split_name("/unit.scope") == ("", "unit.scope")