# arch_provision/clean.py
from pathlib import Path
from typing import List

from arch_provision.executors.disk import DiskManager
from arch_provision.utils.exceptions import ShellCommandError
from arch_provision.volumes import EFI_MIRROR_DEVICE, ROOT_VOLUME, SWAP_VOLUME, VOLUME_GROUP

# shred stops with one of these once an overcommitted thin volume exhausts its pool
POOL_EXHAUSTED_MARKERS = ("No space left on device", "Input/output error")


def wipe_thin_volume(disk_manager: DiskManager, device: str) -> None:
    """
    Overwrites a thin volume whose virtual size exceeds its pool.

    Running out of pool space means every backed block has been overwritten,
    so that failure counts as a completed wipe.
    """
    try:
        disk_manager.wipe_device(device)
    except ShellCommandError as e:
        if not any(marker in (e.stderr or "") for marker in POOL_EXHAUSTED_MARKERS):
            raise
        disk_manager.logger.info(f"Thin pool exhausted while wiping {device}; all backed blocks overwritten.")


def clean(disk_manager: DiskManager, mount_root: Path = Path("/mnt"), volume_group: str = VOLUME_GROUP) -> List[str]:
    """
    Irreversibly destroys a provisioned layout so `setup` can run again.

    Root and swap volumes are overwritten before the volume group is removed,
    then every physical volume that backed it is overwritten as well.

    Returns:
        The physical volumes that were wiped.
    """
    disk_manager.logger.section("Destroying provisioned storage")

    disk_manager.unmount(str(mount_root), recursive=True, check=False)
    disk_manager.swap_off_all()

    wipe_thin_volume(disk_manager, f"/dev/{volume_group}/{ROOT_VOLUME}")
    disk_manager.wipe_device(f"/dev/{volume_group}/{SWAP_VOLUME}")

    physical_volumes = disk_manager.list_physical_volumes(volume_group)
    disk_manager.remove_volume_group(volume_group)

    for device in physical_volumes:
        disk_manager.wipe_device(device)
        if device.startswith("/dev/mapper/"):
            disk_manager.luks_close(device.rsplit("/", 1)[-1], check=False)

    disk_manager.stop_raid(EFI_MIRROR_DEVICE, check=False)
    return physical_volumes
