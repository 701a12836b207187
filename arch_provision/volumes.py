# arch_provision/volumes.py
from typing import List, Sequence

from arch_provision.executors.disk import DiskManager
from arch_provision.models import DeviceLayout, EncryptionBinding, StoragePlan, VolumeTopology

VOLUME_GROUP = "system"
EFI_MIRROR_DEVICE = "/dev/md/efi"
EFI_LABEL = "EFI"

SWAP_VOLUME = "swap"
POOL_VOLUME = "tpool"
METADATA_VOLUME = "tmeta"
ROOT_VOLUME = "root"

METADATA_SIZE = "1G"
# Deliberately larger than the pool backing it; grow the pool later instead of the volume
ROOT_VIRTUAL_SIZE = "100G"


def physical_devices(layouts: Sequence[DeviceLayout], bindings: Sequence[EncryptionBinding]) -> List[str]:
    """Mapped devices when encrypted, raw system partitions otherwise."""
    if bindings:
        return [binding.mapped_path for binding in bindings]
    return [layout.system_partition for layout in layouts]


def prepare_efi_device(disk_manager: DiskManager, layouts: Sequence[DeviceLayout]) -> str:
    """Mirrors the EFI partitions when there are several, then formats the result as FAT32."""
    efi_partitions = [layout.efi_partition for layout in layouts]
    if len(efi_partitions) > 1:
        disk_manager.create_raid_mirror(EFI_MIRROR_DEVICE, efi_partitions)
        efi_device = EFI_MIRROR_DEVICE
    else:
        efi_device = efi_partitions[0]

    disk_manager.format_fat(efi_device, EFI_LABEL)
    return efi_device


def build_volumes(disk_manager: DiskManager,
                  plan: StoragePlan,
                  layouts: Sequence[DeviceLayout],
                  bindings: Sequence[EncryptionBinding]) -> VolumeTopology:
    """
    Builds the LVM layout: one volume group, thick swap, a thin pool and a thin root.

    Redundancy flags from the plan go on swap, pool metadata and pool data.
    The root volume gets none, it inherits redundancy from the pool.
    """
    disk_manager.logger.section("Building logical volumes")

    devices = physical_devices(layouts, bindings)
    for device in devices:
        disk_manager.create_physical_volume(device)

    efi_device = prepare_efi_device(disk_manager, layouts)

    disk_manager.create_volume_group(VOLUME_GROUP, devices)

    options = plan.volume_options()
    swap_size = f"{plan.swap_gib}G"
    disk_manager.logger.info(f"Redundancy: {plan.redundancy.value} across {len(devices)} device(s)")

    # Thick swap so hibernation has contiguous backing
    disk_manager.create_logical_volume(VOLUME_GROUP, SWAP_VOLUME, size=swap_size, options=options)

    # Metadata and data first, then bind them into the pool
    disk_manager.create_logical_volume(VOLUME_GROUP, METADATA_VOLUME, size=METADATA_SIZE, options=options)
    disk_manager.create_logical_volume(VOLUME_GROUP, POOL_VOLUME, extents=plan.pool_allocation, options=options)
    disk_manager.convert_thin_pool(VOLUME_GROUP, POOL_VOLUME, METADATA_VOLUME)

    disk_manager.create_thin_volume(VOLUME_GROUP, POOL_VOLUME, ROOT_VOLUME, ROOT_VIRTUAL_SIZE)

    return VolumeTopology(
        volume_group=VOLUME_GROUP,
        physical_volumes=devices,
        efi_device=efi_device,
        swap_volume=f"/dev/{VOLUME_GROUP}/{SWAP_VOLUME}",
        pool_volume=f"/dev/{VOLUME_GROUP}/{POOL_VOLUME}",
        root_volume=f"/dev/{VOLUME_GROUP}/{ROOT_VOLUME}",
        swap_size=swap_size,
        metadata_size=METADATA_SIZE,
        pool_allocation=plan.pool_allocation,
        root_virtual_size=ROOT_VIRTUAL_SIZE,
    )
