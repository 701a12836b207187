# arch_provision/encryption.py
import os
import secrets
from pathlib import Path
from typing import List, Optional, Sequence

from arch_provision.executors.disk import DiskManager
from arch_provision.models import DeviceLayout, EncryptionBinding
from arch_provision.utils.exceptions import ProvisionError

KEY_SIZE_BYTES = 2048

# Where the key lives once the target has booted; recorded in the crypttab fragment
TARGET_KEY_PATH = "/etc/luks.key"


def generate_key_file(path: Path, size: int = KEY_SIZE_BYTES) -> Path:
    """Writes fresh random key material, readable by root only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(secrets.token_bytes(size))
    return path


def prepare_encryption(disk_manager: DiskManager,
                       layouts: Sequence[DeviceLayout],
                       enable: bool,
                       key_file: Path,
                       crypttab_fragment: Path,
                       passphrase_file: Optional[Path] = None) -> List[EncryptionBinding]:
    """
    Encrypts every system partition and opens it as /dev/mapper/system<n>.

    The generated key file is the only mandatory secret. When a passphrase
    file exists it is enrolled as a second key slot on each device, both
    unlock the same volume.

    Returns:
        One binding per layout, or an empty list when encryption is disabled
        (later stages then use the raw system partitions).

    Raises:
        ShellCommandError: if any device fails to format or open; the run
            must not continue with a partial binding set.
    """
    if not enable:
        disk_manager.logger.info("Encryption disabled: system partitions are used directly.")
        return []

    disk_manager.logger.section("Encrypting system partitions")

    generate_key_file(key_file)
    with_passphrase = passphrase_file is not None and passphrase_file.is_file()
    if passphrase_file is not None and not with_passphrase:
        disk_manager.logger.warning(f"Passphrase file {passphrase_file} not found; only the generated key will unlock the disks.")

    crypttab_fragment.parent.mkdir(parents=True, exist_ok=True)
    crypttab_fragment.write_text("", encoding="utf-8")

    bindings: List[EncryptionBinding] = []
    for layout in layouts:
        partition = layout.system_partition
        disk_manager.luks_format(partition, str(key_file))
        if with_passphrase:
            disk_manager.luks_add_key(partition, str(key_file), str(passphrase_file))
        disk_manager.luks_open(partition, str(key_file), layout.mapped_name)

        uuid = disk_manager.read_uuid(partition)
        if not uuid:
            raise ProvisionError(f"blkid reported no UUID for freshly formatted {partition}")

        binding = EncryptionBinding(
            partition=partition,
            mapped_name=layout.mapped_name,
            has_key=True,
            passphrase_enrolled=with_passphrase,
            uuid=uuid,
        )
        with crypttab_fragment.open("a", encoding="utf-8") as handle:
            handle.write(binding.crypttab_entry(TARGET_KEY_PATH) + "\n")
        bindings.append(binding)

    return bindings
