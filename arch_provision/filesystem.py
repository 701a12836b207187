# arch_provision/filesystem.py
import os
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import BaseModel

from arch_provision.executors.disk import DiskManager
from arch_provision.models import SUBVOLUME_TREE, BlockDevice, StoragePlan, Subvolume, VolumeTopology

ROOT_LABEL = "arch_root"

BASE_MOUNT_OPTIONS = ("noatime", "compress=lzo", "defaults")
BASE_FORMAT_OPTIONS = ("-O", "quota,free-space-tree,block-group-tree")

# FAT holds boot artifacts only: no setuid, no device nodes, no world write
EFI_MOUNT_OPTIONS = ",".join((
    "defaults", "nosuid", "nodev", "relatime",
    "fmask=0022", "dmask=0022", "codepage=437", "shortname=mixed", "errors=remount-ro",
))


class FilesystemOptions(BaseModel):
    mount_options: List[str]
    format_options: List[str]

    @property
    def mount_string(self) -> str:
        return ",".join(self.mount_options)

    def subvolume_mount_string(self, subvolume: Subvolume) -> str:
        return f"{self.mount_string},subvol={subvolume.name}"


def derive_filesystem_options(devices: Sequence[BlockDevice]) -> FilesystemOptions:
    """
    Mount and mkfs options for a BTRFS volume spread over `devices`.

    `discard` needs every device to zero discarded blocks, otherwise mkfs gets
    --nodiscard instead. `ssd` needs every device to be non-rotational. The
    two are decided independently.
    """
    mount_options = list(BASE_MOUNT_OPTIONS)
    format_options = list(BASE_FORMAT_OPTIONS)

    if devices and all(device.disc_zero for device in devices):
        mount_options.append("discard")
    else:
        format_options.append("--nodiscard")

    if devices and all(not device.rota for device in devices):
        mount_options.append("ssd")

    return FilesystemOptions(mount_options=mount_options, format_options=format_options)


def mount_order(subvolumes: Sequence[Subvolume]) -> List[Subvolume]:
    """Orders mounts so every mount point's parent is mounted before it."""
    def depth(subvolume: Subvolume) -> int:
        return len([part for part in subvolume.mountpoint.split("/") if part])

    return sorted(subvolumes, key=depth)


def target_path(mount_root: Path, mountpoint: str) -> Path:
    return mount_root / mountpoint.lstrip("/")


def create_subvolumes(disk_manager: DiskManager,
                      root_volume: str,
                      mount_root: Path,
                      options: FilesystemOptions,
                      subvolumes: Sequence[Subvolume] = SUBVOLUME_TREE) -> None:
    """Subvolumes are created from the volume's top level, which is unmounted again afterwards."""
    disk_manager.mount(root_volume, str(mount_root), options.mount_string)
    for subvolume in subvolumes:
        disk_manager.create_subvolume(str(mount_root / subvolume.name))
    disk_manager.unmount(str(mount_root))


def mount_subvolumes(disk_manager: DiskManager,
                     root_volume: str,
                     mount_root: Path,
                     options: FilesystemOptions,
                     subvolumes: Sequence[Subvolume] = SUBVOLUME_TREE) -> None:
    for subvolume in mount_order(subvolumes):
        target = target_path(mount_root, subvolume.mountpoint)
        if target != mount_root:
            disk_manager.make_directory(str(target))
        disk_manager.mount(root_volume, str(target), options.subvolume_mount_string(subvolume))


def install_artifacts(disk_manager: DiskManager,
                      mount_root: Path,
                      key_file: Optional[Path],
                      crypttab_fragment: Optional[Path]) -> None:
    """Copies the key and the crypttab fragment into the target's /etc."""
    etc = mount_root / "etc"
    disk_manager.make_directory(str(etc))

    if key_file is not None and key_file.is_file():
        destination = etc / "luks.key"
        shutil.copyfile(key_file, destination)
        os.chmod(destination, 0o400)
    if crypttab_fragment is not None and crypttab_fragment.is_file():
        shutil.copyfile(crypttab_fragment, etc / "crypttab.initramfs")


def write_fstab(disk_manager: DiskManager, mount_root: Path) -> None:
    entries = disk_manager.generate_fstab(str(mount_root))
    fstab = mount_root / "etc" / "fstab"
    disk_manager.make_directory(str(fstab.parent))
    with fstab.open("a", encoding="utf-8") as handle:
        handle.write(entries)


def compose_filesystems(disk_manager: DiskManager,
                        topology: VolumeTopology,
                        plan: StoragePlan,
                        mount_root: Path = Path("/mnt"),
                        key_file: Optional[Path] = None,
                        crypttab_fragment: Optional[Path] = None) -> FilesystemOptions:
    """
    Formats swap and root, builds the subvolume tree and mounts the target at `mount_root`.

    The EFI system partition is mounted last, at <mount_root>/boot.
    """
    disk_manager.logger.section("Composing filesystems")

    options = derive_filesystem_options(plan.devices)
    disk_manager.logger.info(f"Mount options: {options.mount_string}")

    disk_manager.format_swap(topology.swap_volume)
    disk_manager.format_btrfs(topology.root_volume, ROOT_LABEL, options.format_options)

    create_subvolumes(disk_manager, topology.root_volume, mount_root, options)
    mount_subvolumes(disk_manager, topology.root_volume, mount_root, options)

    disk_manager.swap_on(topology.swap_volume)

    boot = target_path(mount_root, "/boot")
    disk_manager.make_directory(str(boot))
    disk_manager.mount(topology.efi_device, str(boot), EFI_MOUNT_OPTIONS)

    install_artifacts(disk_manager, mount_root, key_file, crypttab_fragment)
    write_fstab(disk_manager, mount_root)
    return options
