import os

import pytest

from cgroupkit.v2.devicefilter import DeviceRule
from cgroupkit.v2.manager import (
    ControllerToggle,
    Event,
    Manager,
    Resources,
    load_manager,
    load_systemd,
    new_manager,
    parse_memory_events,
    set_resources,
    to_resources,
)
from cgroupkit.v2.resources import (
    CPU,
    IO,
    Entry,
    HugeTlb,
    HugeTlbEntry,
    InvalidGroupPathError,
    IOType,
    Memory,
    Pids,
    new_cpu_max,
)


def _read(path):
    with open(path, encoding="utf-8") as handle:
        return handle.read().strip()


def _write(path, text):
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(text)


@pytest.fixture
def mount(tmp_path):
    _write(tmp_path / "cgroup.subtree_control", "")
    _write(tmp_path / "cgroup.controllers", "cpu memory pids io hugetlb")
    return str(tmp_path)


def test_to_resources_cpu():
    spec = {"cpu": {"quota": 8000, "period": 10000, "shares": 5000}}
    resources = to_resources(spec)
    assert resources.cpu.weight == 191
    assert resources.cpu.max == "8000 10000"

    resources2 = to_resources({"cpu": {"period": 10000}})
    assert resources2.cpu.max == "max 10000"
    assert resources2.cpu.weight is None


def test_to_resources_memory_pids_hugetlb():
    spec = {
        "memory": {"limit": 1000, "reservation": 500, "swap": 2000},
        "pids": {"limit": 42},
        "hugepageLimits": [{"pageSize": "2MB", "limit": 1073741824}],
    }
    resources = to_resources(spec)
    assert resources.memory == Memory(swap=2000, max=1000, low=500)
    assert resources.pids.max == 42
    assert list(resources.hugetlb) == [HugeTlbEntry("2MB", 1073741824)]
    assert resources.cpu is None


def test_to_resources_block_io_and_rdma():
    spec = {
        "blockIO": {
            "weight": 11,
            "throttleReadBpsDevice": [{"major": 8, "minor": 0, "rate": 100}],
            "throttleWriteIOPSDevice": [{"major": 8, "minor": 1, "rate": 5}],
        },
        "rdma": {
            "mlx": {"hcaHandles": 3, "hcaObjects": 4},
            "partial": {"hcaHandles": 1},
            "": {"hcaHandles": 1, "hcaObjects": 1},
        },
    }
    resources = to_resources(spec)
    assert resources.io.bfq.weight == 11
    assert [str(e) for e in resources.io.max] == ["8:0 rbps=100", "8:1 wiops=5"]
    assert [str(e) for e in resources.rdma.limit] == ["mlx hca_handle=3 hca_object=4"]


def test_to_resources_minimum_blkio_weight():
    assert to_resources({"blockIO": {"weight": 10}}).io.bfq.weight == 1


def test_resources_values_order_and_controllers():
    res = Resources(
        cpu=CPU(weight=100),
        memory=Memory(max=10),
        pids=Pids(max=5),
    )
    assert [v.filename for v in res.values()] == ["cpu.weight", "memory.max", "pids.max"]
    assert res.enabled_controllers() == ["cpu", "cpuset", "memory", "pids"]
    assert Resources().enabled_controllers() == []
    assert Resources().values() == []


def test_pids_limit_written(mount):
    manager = new_manager(mount, "/pids-test-cg", Resources(pids=Pids(max=1000)))
    assert _read(os.path.join(manager.path, "pids.max")) == "1000"
    assert _read(os.path.join(mount, "cgroup.subtree_control")) == "+pids"


def test_cpu_values_written(mount):
    cpu = CPU(weight=100, max=new_cpu_max(10000, 8000), cpus="0", mems="0")
    manager = new_manager(mount, "/cpu-test-cg", Resources(cpu=cpu))
    assert _read(os.path.join(manager.path, "cpu.weight")) == "100"
    assert _read(os.path.join(manager.path, "cpu.max")) == "10000 8000"
    assert _read(os.path.join(manager.path, "cpuset.cpus")) == "0"
    assert _read(os.path.join(manager.path, "cpuset.mems")) == "0"


def test_io_max_written(mount):
    io = IO(max=[Entry(type=IOType.READ_IOPS, major=8, minor=0, rate=120)])
    manager = new_manager(mount, "/io-test-cg", Resources(io=io))
    assert _read(os.path.join(manager.path, "io.max")) == "8:0 riops=120"


def test_memory_stats_after_create(mount):
    res = Resources(memory=Memory(max=629145600, swap=314572800, high=524288000))
    manager = new_manager(mount, "/memory-test-cg", res)
    _write(os.path.join(manager.path, "cgroup.controllers"), "memory")
    metrics = manager.stat()
    assert metrics.memory.swap_limit == 314572800
    assert metrics.memory.usage_limit == 629145600
    assert _read(os.path.join(manager.path, "memory.swap.max")) == "314572800"
    assert _read(os.path.join(manager.path, "memory.max")) == "629145600"


def test_hugetlb_stats_after_create(mount):
    res = Resources(hugetlb=HugeTlb([HugeTlbEntry("2MB", 1073741824)]))
    manager = new_manager(mount, "/hugetlb-test-cg", res)
    _write(os.path.join(manager.path, "cgroup.controllers"), "hugetlb")
    metrics = manager.stat()
    entries = [e for e in metrics.hugetlb if e.pagesize == "2MB"]
    assert [e.max for e in entries] == [1073741824]


def test_new_manager_rejects_missing_resources(mount):
    with pytest.raises(ValueError, match="resources reference is nil"):
        new_manager(mount, "/x", None)


def test_new_manager_rejects_bad_group(mount):
    with pytest.raises(InvalidGroupPathError):
        new_manager(mount, "relative", Resources())


def test_new_manager_cleans_up_on_failure(tmp_path):
    with pytest.raises(OSError):
        new_manager(str(tmp_path), "/broken", Resources(pids=Pids(max=1)))
    assert not (tmp_path / "broken").exists()


def test_toggle_controllers_writes_ancestors_only(mount):
    manager = Manager(path=os.path.join(mount, "a", "b"), unified_mountpoint=mount)
    os.makedirs(manager.path)
    _write(os.path.join(mount, "a", "cgroup.subtree_control"), "")
    manager.toggle_controllers(["cpu", "memory"], ControllerToggle.ENABLE)
    assert _read(os.path.join(mount, "cgroup.subtree_control")) == "+cpu +memory"
    assert _read(os.path.join(mount, "a", "cgroup.subtree_control")) == "+cpu +memory"
    assert not os.path.exists(os.path.join(manager.path, "cgroup.subtree_control"))


def test_toggle_controllers_disable(mount):
    manager = Manager(path=os.path.join(mount, "g"), unified_mountpoint=mount)
    manager.toggle_controllers(["pids"], ControllerToggle.DISABLE)
    assert _read(os.path.join(mount, "cgroup.subtree_control")) == "-pids"


def test_toggle_controllers_only_last_error_counts(tmp_path):
    os.makedirs(tmp_path / "a" / "b")
    _write(tmp_path / "a" / "cgroup.subtree_control", "")
    manager = Manager(path=str(tmp_path / "a" / "b"), unified_mountpoint=str(tmp_path))
    manager.toggle_controllers(["io"], ControllerToggle.ENABLE)
    assert _read(tmp_path / "a" / "cgroup.subtree_control") == "+io"


def test_toggle_controllers_raises_on_last_failure(tmp_path):
    os.makedirs(tmp_path / "a")
    manager = Manager(path=str(tmp_path / "a"), unified_mountpoint=str(tmp_path))
    with pytest.raises(OSError, match="failed to write subtree controllers"):
        manager.toggle_controllers(["io"], ControllerToggle.ENABLE)


def test_new_child_and_relative_name(mount):
    parent = new_manager(mount, "/parent", Resources())
    _write(os.path.join(parent.path, "cgroup.subtree_control"), "")
    child = parent.new_child("kid", Resources(pids=Pids(max=-1)))
    assert child.path == os.path.join(parent.path, "kid")
    assert _read(os.path.join(child.path, "pids.max")) == "max"
    assert _read(os.path.join(parent.path, "cgroup.subtree_control")) == "+pids"
    with pytest.raises(ValueError, match="name must be relative"):
        parent.new_child("/abs", None)


def test_controllers_and_root_controllers(mount):
    manager = new_manager(mount, "/ctl", Resources())
    _write(os.path.join(manager.path, "cgroup.controllers"), "cpu io\n")
    assert manager.controllers() == ["cpu", "io"]
    assert manager.root_controllers() == ["cpu", "memory", "pids", "io", "hugetlb"]


def test_add_proc_and_procs(tmp_path):
    manager = Manager(path=str(tmp_path), unified_mountpoint=str(tmp_path))
    manager.add_proc(1234)
    assert _read(tmp_path / "cgroup.procs") == "1234"
    os.makedirs(tmp_path / "a")
    _write(tmp_path / "a" / "cgroup.procs", "7\n8\n")
    assert manager.procs(False) == [1234]
    assert manager.procs(True) == [7, 8, 1234]


def test_update_and_delete(tmp_path):
    path = tmp_path / "grp"
    os.makedirs(path)
    manager = Manager(path=str(path))
    manager.update(Resources(memory=Memory(low=77)))
    assert _read(path / "memory.low") == "77"
    os.remove(path / "memory.low")
    manager.delete()
    assert not path.exists()


def test_freeze_and_thaw(tmp_path):
    manager = Manager(path=str(tmp_path))
    manager.freeze()
    assert _read(tmp_path / "cgroup.freeze") == "1"
    manager.thaw()
    assert _read(tmp_path / "cgroup.freeze") == "0"


def test_is_empty(tmp_path):
    manager = Manager(path=str(tmp_path))
    assert manager.is_empty() is True
    _write(tmp_path / "cgroup.events", "populated 1\nfrozen 0\n")
    assert manager.is_empty() is False
    _write(tmp_path / "cgroup.events", "populated 0\nfrozen 0\n")
    assert manager.is_empty() is True


def test_parse_memory_events():
    out = {"low": 1, "high": 2, "max": 3, "oom": 4, "oom_kill": 5}
    assert parse_memory_events(out) == Event(low=1, high=2, max=3, oom=4, oom_kill=5)
    assert parse_memory_events({}) == Event()
    with pytest.raises(ValueError, match="cannot convert high"):
        parse_memory_events({"high": "lots"})


def test_set_resources_with_devices(tmp_path):
    deny_all = [DeviceRule(type="a", access="rwm", allow=False)]
    set_resources(str(tmp_path), Resources(devices=deny_all))
    assert list(tmp_path.iterdir()) == []
    allow = [DeviceRule(type="c", major=1, minor=3, access="rwm", allow=True)]
    with pytest.raises(OSError):
        set_resources(str(tmp_path), Resources(devices=allow))
    with pytest.raises(ValueError):
        set_resources(str(tmp_path), Resources(devices=[DeviceRule(type="x", access="r")]))


def test_load_manager_and_load_systemd():
    manager = load_manager("/sys/fs/cgroup", "/foo/bar")
    assert manager.path == "/sys/fs/cgroup/foo/bar"
    assert manager.unified_mountpoint == "/sys/fs/cgroup"
    with pytest.raises(InvalidGroupPathError):
        load_manager("/sys/fs/cgroup", "/foo/../bar")
    assert load_systemd("", "my-group.slice").path == "/sys/fs/cgroup/system.slice/my.slice/my-group.slice"
    assert load_systemd("user.slice", "x.scope").path == "/sys/fs/cgroup/user.slice/x.scope"