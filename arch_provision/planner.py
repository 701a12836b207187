"""Storage planning: redundancy, swap and thin pool sizing."""
import math
from pathlib import Path
from typing import Optional, Sequence, Tuple

from arch_provision.models import BlockDevice, StoragePlan
from arch_provision.utils.exceptions import PlanningError

DEFAULT_POOL_ALLOCATION = "50%FREE"

# Divisors turning a /proc/meminfo figure into GiB
_UNIT_TO_GIB = {
    "kb": 1024 ** 2,
    "mb": 1024,
    "gb": 1,
}


def read_memory_total(meminfo: Path = Path("/proc/meminfo")) -> Tuple[int, str]:
    """Returns the MemTotal figure and its unit, e.g. ``(16384256, "kB")``."""
    try:
        content = meminfo.read_text(encoding="utf-8")
    except OSError as e:
        raise PlanningError(f"Cannot read {meminfo}: {e}")

    for line in content.splitlines():
        if line.startswith("MemTotal:"):
            parts = line.split()
            if len(parts) != 3 or not parts[1].isdigit():
                break
            return int(parts[1]), parts[2]
    raise PlanningError(f"No usable MemTotal line in {meminfo}")


def swap_size_gib(count: int, unit: str) -> int:
    """
    Swap is installed memory rounded up to whole GiB, plus one.

    >>> swap_size_gib(16777216, "kB")
    17
    >>> swap_size_gib(8, "gB")
    9
    """
    divisor = _UNIT_TO_GIB.get(unit.lower())
    if divisor is None:
        raise PlanningError(f"Unknown memory unit {unit!r}")
    return math.ceil(count / divisor) + 1


def plan_storage(devices: Sequence[BlockDevice],
                 pool_allocation: Optional[str] = None,
                 memory: Optional[Tuple[int, str]] = None) -> StoragePlan:
    """
    Builds the storage plan for the classified devices.

    Args:
        devices: Classified disks, in classification order.
        pool_allocation: lvcreate extents expression for the thin pool data
            volume, passed on verbatim. Defaults to 50%FREE.
        memory: (count, unit) as found in /proc/meminfo; read from the live
            system when omitted.
    """
    if not devices:
        raise PlanningError("Cannot plan storage without at least one device.")

    count, unit = memory if memory is not None else read_memory_total()
    return StoragePlan(
        devices=list(devices),
        swap_gib=swap_size_gib(count, unit),
        pool_allocation=pool_allocation or DEFAULT_POOL_ALLOCATION,
    )
