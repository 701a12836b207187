from typing import List

from arch_provision.executors.disk import DiskManager
from arch_provision.models import DeviceLayout, PipelineContext, StoragePlan
from arch_provision.encryption import prepare_encryption
from arch_provision.volumes import build_volumes
from arch_provision.filesystem import compose_filesystems

PARTLABEL_DIR = "/dev/disk/by-partlabel"


def partition_devices(disk_manager: DiskManager, plan: StoragePlan) -> List[DeviceLayout]:
    """
    Writes the EFI + system partition table on every planned disk.

    Returns one layout per disk, numbered from 1 in plan order. The pipeline
    waits for udev once all tables are written, before any partition node
    is used.
    """
    disk_manager.logger.section("Partitioning disks")

    layouts: List[DeviceLayout] = []
    for index, device in enumerate(plan.devices, start=1):
        disk_manager.partition_disk(device.path, index)
        layouts.append(DeviceLayout(
            index=index,
            device=device,
            efi_partition=f"{PARTLABEL_DIR}/EFI{index}",
            system_partition=f"{PARTLABEL_DIR}/system{index}",
        ))

    disk_manager.settle()
    return layouts


def prepare_disk(disk_manager: DiskManager, context: PipelineContext) -> None:
    """
    Runs every destructive storage stage for a planned context:
    partitioning, encryption, LVM, filesystems and mounts.

    Any ShellCommandError aborts the run as is. Nothing is rolled back, the
    operator is expected to run `clean` before trying again.

    Args:
        disk_manager: Privileged storage operations.
        context: Pipeline context with `plan` already set; the remaining
            storage fields are filled in here.
    """
    if context.plan is None:
        raise ValueError("prepare_disk requires a storage plan.")

    context.layouts = partition_devices(disk_manager, context.plan)
    context.bindings = prepare_encryption(
        disk_manager,
        context.layouts,
        enable=context.encryption,
        key_file=context.key_file,
        crypttab_fragment=context.crypttab_fragment,
        passphrase_file=context.passphrase_file,
    )
    context.topology = build_volumes(disk_manager, context.plan, context.layouts, context.bindings)
    compose_filesystems(
        disk_manager,
        context.topology,
        context.plan,
        mount_root=context.mount_root,
        key_file=context.key_file if context.encryption else None,
        crypttab_fragment=context.crypttab_fragment if context.encryption else None,
    )
