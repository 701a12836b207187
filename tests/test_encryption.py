import stat
from unittest.mock import call

import pytest

from arch_provision.disk import partition_devices
from arch_provision.encryption import KEY_SIZE_BYTES, generate_key_file, prepare_encryption
from arch_provision.planner import plan_storage
from arch_provision.utils.exceptions import ProvisionError, ShellCommandError


@pytest.fixture
def layouts(disk_manager, make_device):
    plan = plan_storage([make_device("sda"), make_device("nvme0n1")], memory=(8, "gB"))
    return partition_devices(disk_manager, plan)


def test_partition_devices_numbers_from_one(disk_manager, layouts):
    assert [layout.system_partition for layout in layouts] == [
        "/dev/disk/by-partlabel/system1",
        "/dev/disk/by-partlabel/system2",
    ]
    assert [layout.mapped_name for layout in layouts] == ["system1", "system2"]
    disk_manager.partition_disk.assert_has_calls([call("/dev/sda", 1), call("/dev/nvme0n1", 2)])
    disk_manager.settle.assert_called_once()


def test_generate_key_file(tmp_path):
    key = generate_key_file(tmp_path / "state" / "luks.key")

    assert key.stat().st_size == KEY_SIZE_BYTES
    assert stat.S_IMODE(key.stat().st_mode) == 0o600


def test_encryption_disabled_does_nothing(disk_manager, layouts, tmp_path):
    bindings = prepare_encryption(disk_manager, layouts, False, tmp_path / "luks.key", tmp_path / "crypttab")

    assert bindings == []
    disk_manager.luks_format.assert_not_called()
    assert not (tmp_path / "luks.key").exists()


def test_encryption_binds_every_partition(disk_manager, layouts, tmp_path):
    key_file = tmp_path / "luks.key"
    fragment = tmp_path / "crypttab.initramfs"

    bindings = prepare_encryption(disk_manager, layouts, True, key_file, fragment)

    assert [b.mapped_path for b in bindings] == ["/dev/mapper/system1", "/dev/mapper/system2"]
    assert all(b.has_key and not b.passphrase_enrolled for b in bindings)
    disk_manager.luks_add_key.assert_not_called()
    disk_manager.luks_open.assert_any_call("/dev/disk/by-partlabel/system2", str(key_file), "system2")
    assert fragment.read_text().splitlines() == [
        "system1  UUID=uuid-system1  /etc/luks.key",
        "system2  UUID=uuid-system2  /etc/luks.key",
    ]


def test_encryption_enrolls_passphrase(disk_manager, layouts, tmp_path):
    passphrase = tmp_path / "passphrase"
    passphrase.write_text("correct horse")

    bindings = prepare_encryption(disk_manager, layouts, True, tmp_path / "luks.key",
                                  tmp_path / "crypttab", passphrase_file=passphrase)

    assert all(b.passphrase_enrolled for b in bindings)
    assert disk_manager.luks_add_key.call_count == 2


def test_missing_passphrase_file_warns(disk_manager, layouts, tmp_path):
    prepare_encryption(disk_manager, layouts, True, tmp_path / "luks.key",
                       tmp_path / "crypttab", passphrase_file=tmp_path / "nope")

    disk_manager.logger.warning.assert_called_once()
    disk_manager.luks_add_key.assert_not_called()


def test_format_failure_aborts(disk_manager, layouts, tmp_path):
    disk_manager.luks_format.side_effect = [None, ShellCommandError(command="cryptsetup luksFormat", exit_code=1)]

    with pytest.raises(ShellCommandError):
        prepare_encryption(disk_manager, layouts, True, tmp_path / "luks.key", tmp_path / "crypttab")

    assert disk_manager.luks_open.call_count == 1


def test_missing_uuid_is_fatal(disk_manager, layouts, tmp_path):
    disk_manager.read_uuid.side_effect = None
    disk_manager.read_uuid.return_value = ""

    with pytest.raises(ProvisionError, match="UUID"):
        prepare_encryption(disk_manager, layouts, True, tmp_path / "luks.key", tmp_path / "crypttab")
