# arch_provision/executors/disk.py
import time
from typing import List, Optional, Sequence, Tuple

from arch_provision.utils.executor import Executor

EFI_PARTITION_SIZE = "1024MiB"
SETTLE_DELAY_SECONDS = 3.0

# Wipes and formats can run for a long time on large disks
LONG_TIMEOUT = 6 * 60 * 60.0


class DiskManager:
    """
    Privileged storage operations used by the provisioning stages.

    Each method is one external tool invocation delegated to the Executor,
    so the planning and decision code above it can be tested against a mock
    of this class without touching real devices.
    """

    def __init__(self, executor: Executor):
        self.executor = executor

    @property
    def logger(self):
        return self.executor.logger

    # --- PARTITION TABLES ---

    def partition_disk(self, device: str, index: int, efi_size: str = EFI_PARTITION_SIZE) -> Tuple[int, str, str]:
        """
        Writes a fresh GPT with an EFI partition and a system partition filling the rest.

        Partition names carry the disk's index (EFI1/system1, EFI2/system2, ...)
        so later stages can address them through /dev/disk/by-partlabel.
        """
        command = [
            "sgdisk", "--clear",
            f"--new=1:0:+{efi_size}", "--typecode=1:ef00", f"--change-name=1:EFI{index}",
            "--new=2:0:0", "--typecode=2:8300", f"--change-name=2:system{index}",
            device,
        ]
        return self.executor.run(
            description=f"Writing partition table on {device} (EFI{index}, system{index})",
            command=command,
        )

    def settle(self, delay: float = SETTLE_DELAY_SECONDS) -> None:
        """Waits for the kernel and udev to publish the new partition device nodes."""
        self.executor.run(description="Re-reading partition tables", command=["partprobe"], check=False)
        self.executor.run(description="Waiting for udev to settle", command=["udevadm", "settle"])
        time.sleep(delay)

    # --- ENCRYPTION ---

    def luks_format(self, partition: str, key_file: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Formatting {partition} as LUKS2 with the generated key",
            command=["cryptsetup", "luksFormat", "--batch-mode", "--type", "luks2", "--key-file", key_file, partition],
        )

    def luks_add_key(self, partition: str, key_file: str, new_key_file: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Enrolling passphrase on {partition}",
            command=["cryptsetup", "luksAddKey", "--batch-mode", "--key-file", key_file, partition, new_key_file],
        )

    def luks_open(self, partition: str, key_file: str, name: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Opening {partition} as /dev/mapper/{name}",
            command=["cryptsetup", "open", "--key-file", key_file, partition, name],
        )

    def luks_close(self, name: str, check: bool = True) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Closing /dev/mapper/{name}",
            command=["cryptsetup", "close", name],
            check=check,
        )

    def read_uuid(self, device: str) -> str:
        _, stdout, _ = self.executor.run(
            description=f"Reading filesystem UUID of {device}",
            command=["blkid", "-s", "UUID", "-o", "value", device],
        )
        return stdout.strip()

    # --- LVM AND RAID ---

    def create_physical_volume(self, device: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Creating LVM physical volume on {device}",
            command=["pvcreate", "--yes", device],
        )

    def create_raid_mirror(self, md_device: str, members: Sequence[str]) -> Tuple[int, str, str]:
        """
        Mirrors the EFI partitions with metadata 1.0, which sits at the end of
        each member so firmware still sees a plain FAT filesystem.
        """
        command = [
            "mdadm", "--create", md_device, "--run",
            "--level", "1", "--raid-devices", str(len(members)), "--metadata", "1.0",
        ] + list(members)
        return self.executor.run(
            description=f"Mirroring {len(members)} EFI partitions into {md_device}",
            command=command,
        )

    def stop_raid(self, md_device: str, check: bool = True) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Stopping RAID array {md_device}",
            command=["mdadm", "--stop", md_device],
            check=check,
        )

    def create_volume_group(self, name: str, devices: Sequence[str]) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Creating volume group {name} over {len(devices)} device(s)",
            command=["vgcreate", name] + list(devices),
        )

    def create_logical_volume(self,
                              volume_group: str,
                              name: str,
                              size: Optional[str] = None,
                              extents: Optional[str] = None,
                              options: Sequence[str] = ()) -> Tuple[int, str, str]:
        """
        Creates a thick logical volume sized either by `size` (e.g. '17G') or by
        an `extents` expression (e.g. '50%FREE'). The extents expression is
        passed through unvalidated; lvcreate rejects malformed ones.
        """
        if (size is None) == (extents is None):
            raise ValueError("Exactly one of size or extents must be given.")
        sizing = ["--size", size] if size is not None else ["--extents", extents]
        return self.executor.run(
            description=f"Creating logical volume {volume_group}/{name}",
            command=["lvcreate", "--yes"] + sizing + list(options) + ["--name", name, volume_group],
        )

    def convert_thin_pool(self, volume_group: str, pool: str, metadata: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Converting {volume_group}/{pool} into a thin pool",
            command=["lvconvert", "--yes", "--type", "thin-pool",
                     "--poolmetadata", f"{volume_group}/{metadata}", f"{volume_group}/{pool}"],
        )

    def create_thin_volume(self, volume_group: str, pool: str, name: str, virtual_size: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Creating thin volume {volume_group}/{name} ({virtual_size} virtual)",
            command=["lvcreate", "--yes", "--thin", "--virtualsize", virtual_size,
                     "--name", name, f"{volume_group}/{pool}"],
        )

    def list_physical_volumes(self, volume_group: str) -> List[str]:
        _, stdout, _ = self.executor.run(
            description=f"Listing physical volumes of {volume_group}",
            command=["pvs", "--noheadings", "-o", "pv_name", "--select", f"vg_name={volume_group}"],
            check=False,
        )
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    def remove_volume_group(self, volume_group: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Removing volume group {volume_group}",
            command=["vgremove", "--force", "--yes", volume_group],
        )

    # --- FILESYSTEMS ---

    def format_fat(self, device: str, label: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Creating FAT32 filesystem on {device}",
            command=["mkfs.fat", "-F", "32", "-n", label, device],
        )

    def format_swap(self, device: str, label: str = "swap") -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Creating swap on {device}",
            command=["mkswap", "-L", label, device],
        )

    def format_btrfs(self, device: str, label: str, options: Sequence[str] = ()) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Creating BTRFS filesystem on {device}",
            command=["mkfs.btrfs", "--force", "-L", label] + list(options) + [device],
            timeout=LONG_TIMEOUT,
        )

    def create_subvolume(self, path: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Creating BTRFS subvolume {path}",
            command=["btrfs", "subvolume", "create", path],
        )

    def wipe_device(self, device: str) -> Tuple[int, str, str]:
        """Overwrites the whole device with one pass of random data."""
        return self.executor.run(
            description=f"Overwriting {device} with random data",
            command=["shred", "--iterations=1", "--force", device],
            timeout=LONG_TIMEOUT,
        )

    # --- MOUNTS ---

    def make_directory(self, path: str) -> Tuple[int, str, str]:
        return self.executor.run(
            description=f"Creating directory {path}",
            command=["mkdir", "-p", path],
        )

    def mount(self, device: str, target: str, options: Optional[str] = None) -> Tuple[int, str, str]:
        command = ["mount"]
        if options:
            command += ["-o", options]
        command += [device, target]
        return self.executor.run(
            description=f"Mounting {device} at {target}",
            command=command,
        )

    def unmount(self, target: str, recursive: bool = False, check: bool = True) -> Tuple[int, str, str]:
        command = ["umount", "-R", target] if recursive else ["umount", target]
        return self.executor.run(
            description=f"Unmounting {target}",
            command=command,
            check=check,
        )

    def is_mounted(self, target: str) -> bool:
        exit_code, _, _ = self.executor.run(
            description=f"Checking whether {target} is a mount point",
            command=["mountpoint", "-q", target],
            check=False,
        )
        return exit_code == 0

    def swap_on(self, device: str) -> Tuple[int, str, str]:
        return self.executor.run(description=f"Activating swap on {device}", command=["swapon", device])

    def swap_off_all(self) -> Tuple[int, str, str]:
        return self.executor.run(description="Deactivating all swap", command=["swapoff", "-a"], check=False)

    def generate_fstab(self, root: str) -> str:
        _, stdout, _ = self.executor.run(
            description=f"Generating filesystem table for {root}",
            command=["genfstab", "-U", root],
        )
        return stdout
