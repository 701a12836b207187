import pytest
from pydantic import ValidationError

from arch_provision.models import RedundancyMode, StoragePlan
from arch_provision.planner import plan_storage, read_memory_total, swap_size_gib
from arch_provision.utils.exceptions import PlanningError

MEMINFO = """MemTotal:       16384256 kB
MemFree:         9123456 kB
MemAvailable:   12000000 kB
"""


@pytest.fixture
def devices(make_device):
    return [make_device(f"sd{letter}") for letter in "abcde"]


# ----------------------------------------------------------------------
# --- Redundancy ---
# ----------------------------------------------------------------------

@pytest.mark.parametrize("count, mode, options", [
    (1, RedundancyMode.NONE, []),
    (2, RedundancyMode.MIRROR, ["--type", "raid1", "--mirrors", "1"]),
    (3, RedundancyMode.RAID5, ["--type", "raid5", "--stripes", "2"]),
    (5, RedundancyMode.RAID5, ["--type", "raid5", "--stripes", "4"]),
])
def test_redundancy_follows_device_count(devices, count, mode, options):
    plan = plan_storage(devices[:count], memory=(8, "gB"))

    assert plan.redundancy is mode
    assert plan.volume_options() == options


def test_plan_keeps_device_order(devices):
    plan = plan_storage(list(reversed(devices[:3])), memory=(8, "gB"))
    assert [d.kname for d in plan.devices] == ["sdc", "sdb", "sda"]


def test_plan_requires_devices():
    with pytest.raises(PlanningError):
        plan_storage([], memory=(8, "gB"))


def test_plan_model_rejects_empty_device_list():
    with pytest.raises(ValidationError):
        StoragePlan(devices=[], swap_gib=2, pool_allocation="50%FREE")


# ----------------------------------------------------------------------
# --- Pool allocation ---
# ----------------------------------------------------------------------

def test_pool_allocation_default(devices):
    assert plan_storage(devices[:1], memory=(8, "gB")).pool_allocation == "50%FREE"


def test_pool_allocation_is_passed_verbatim(devices):
    assert plan_storage(devices[:1], "40%VG", memory=(8, "gB")).pool_allocation == "40%VG"


# ----------------------------------------------------------------------
# --- Swap sizing ---
# ----------------------------------------------------------------------

@pytest.mark.parametrize("count, unit, expected", [
    (16777216, "kB", 17),
    (8, "gB", 9),
    (4096, "mB", 5),
    (16384256, "kB", 17),
    (1, "kB", 2),
])
def test_swap_size_gib(count, unit, expected):
    assert swap_size_gib(count, unit) == expected


def test_swap_size_unknown_unit():
    with pytest.raises(PlanningError, match="Unknown memory unit"):
        swap_size_gib(8, "tB")


def test_plan_reads_memory_when_not_given(devices, tmp_path, monkeypatch):
    meminfo = tmp_path / "meminfo"
    meminfo.write_text(MEMINFO)
    monkeypatch.setattr("arch_provision.planner.read_memory_total", lambda: read_memory_total(meminfo))

    assert plan_storage(devices[:2]).swap_gib == 17


def test_read_memory_total(tmp_path):
    meminfo = tmp_path / "meminfo"
    meminfo.write_text(MEMINFO)
    assert read_memory_total(meminfo) == (16384256, "kB")


def test_read_memory_total_errors(tmp_path):
    with pytest.raises(PlanningError):
        read_memory_total(tmp_path / "missing")

    meminfo = tmp_path / "meminfo"
    meminfo.write_text("MemFree: 12 kB\n")
    with pytest.raises(PlanningError):
        read_memory_total(meminfo)
