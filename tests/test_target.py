import stat
from unittest.mock import MagicMock, patch

import pytest

from arch_provision.bootstrap import (
    PASSWORD_FILE,
    TRUST_PACKAGES,
    bootstrap_packages,
    detect_cpu_vendor,
    hand_off,
    select_packages,
)
from arch_provision.config.models import ProvisionConfig
from arch_provision.models import TrustState
from arch_provision.target import configure_target, create_user, write_identity
from arch_provision.utils.exceptions import ShellCommandError
from arch_provision.utils.executor import Executor

MKINITCPIO_CONF = "MODULES=()\nBINARIES=()\nFILES=()\nHOOKS=(base udev)\n"


@pytest.fixture
def mock_executor(mock_rich_logger):
    executor = MagicMock(spec=Executor)
    executor.logger = mock_rich_logger
    executor.run.return_value = (0, "", "")
    return executor


@pytest.fixture
def root(tmp_path):
    etc = tmp_path / "etc"
    (etc / "mkinitcpio.d").mkdir(parents=True)
    (etc / "mkinitcpio.conf").write_text(MKINITCPIO_CONF)
    (etc / "locale.gen").write_text("#en_GB.UTF-8 UTF-8\n#en_US.UTF-8 UTF-8\n")
    (etc / "sudoers").write_text("root ALL=(ALL:ALL) ALL\n# %wheel ALL=(ALL:ALL) ALL\n")
    return tmp_path


def commands(executor):
    return [c.kwargs["command"] for c in executor.run.call_args_list]


# ----------------------------------------------------------------------
# --- Target configuration ---
# ----------------------------------------------------------------------

def test_write_identity(mock_executor, root):
    config = ProvisionConfig(hostname="forge", timezone="Europe/Amsterdam")

    write_identity(mock_executor, config, root)

    assert (root / "etc" / "hostname").read_text() == "forge\n"
    assert (root / "etc" / "locale.gen").read_text() == "#en_GB.UTF-8 UTF-8\nen_US.UTF-8 UTF-8\n"
    assert (root / "etc" / "locale.conf").read_text() == "LANG=en_US.UTF-8\n"
    assert str((root / "etc" / "localtime").readlink()) == "/usr/share/zoneinfo/Europe/Amsterdam"
    assert ["locale-gen"] in commands(mock_executor)


def test_create_user_feeds_password_on_stdin(mock_executor, root):
    config = ProvisionConfig(username="alice", fullname="Alice Doe", user_password="s3cret")

    create_user(mock_executor, config, root)

    assert "%wheel ALL=(ALL:ALL) ALL" in (root / "etc" / "sudoers").read_text().splitlines()
    useradd, chpasswd = mock_executor.run.call_args_list
    assert useradd.kwargs["command"][-1] == "alice"
    assert "s3cret" not in " ".join(chpasswd.kwargs["command"])
    assert chpasswd.kwargs["input_text"] == "alice:s3cret\n"


def test_create_user_skipped_without_username(mock_executor, root):
    create_user(mock_executor, ProvisionConfig(), root)

    mock_executor.run.assert_not_called()
    mock_executor.logger.warning.assert_called_once()


def test_configure_target_without_encryption(mock_executor, root):
    state = configure_target(mock_executor, ProvisionConfig(username="alice"), root)

    assert state is TrustState.NO_ENCRYPTION
    ran = commands(mock_executor)
    assert ["mkinitcpio", "-P"] in ran
    assert ["bootctl", "install"] in ran
    assert ["dmesg"] not in ran
    assert ran[-1] == ["systemctl", "enable", "sshd"]


def test_configure_target_embeds_key_without_tpm(mock_executor, root):
    (root / "etc" / "luks.key").write_bytes(b"k")
    (root / "etc" / "crypttab.initramfs").write_text("system1  UUID=abcd  /etc/luks.key\n")

    state = configure_target(mock_executor, ProvisionConfig(encryption=True), root)

    assert state is TrustState.EMBEDDED_KEY
    assert "FILES=(/etc/luks.key)" in (root / "etc" / "mkinitcpio.conf").read_text()


# ----------------------------------------------------------------------
# --- Bootstrap and hand-off ---
# ----------------------------------------------------------------------

def test_detect_cpu_vendor(tmp_path):
    cpuinfo = tmp_path / "cpuinfo"
    cpuinfo.write_text("processor\t: 0\nvendor_id\t: AuthenticAMD\n")
    assert detect_cpu_vendor(cpuinfo) == "amd"
    assert detect_cpu_vendor(tmp_path / "missing") == ""


@patch("arch_provision.bootstrap.detect_cpu_vendor", return_value="intel")
def test_select_packages(_vendor, mock_executor):
    mock_executor.run.return_value = (0, "00:14.3 Network controller: Broadcom Inc. BCM4360\n", "")

    packages = select_packages(mock_executor, encryption=True)

    assert "intel-ucode" in packages
    assert "broadcom-wl-dkms" in packages
    assert set(TRUST_PACKAGES) <= set(packages)
    assert "sbctl" not in select_packages(mock_executor, encryption=False)


@patch("arch_provision.bootstrap.detect_cpu_vendor", return_value="")
def test_bootstrap_packages_writes_files_after_pacstrap(_vendor, mock_executor, tmp_path):
    bootstrap_packages(mock_executor, tmp_path, encryption=False)

    pacstrap = commands(mock_executor)[-1]
    assert pacstrap[:3] == ["pacstrap", "-K", str(tmp_path)]
    assert "ParallelDownloads = 10" in (tmp_path / "etc" / "pacman.conf").read_text()
    assert (tmp_path / "etc" / "pacman.d" / "hooks" / "998-systemd-boot.hook").is_file()


def test_hand_off_stages_outside_chroot_tmpfs(mock_executor, tmp_path):
    staged = {}

    def run(**kwargs):
        # arch-chroot hides <root>/tmp behind a tmpfs; everything needed must live elsewhere
        staged["package"] = (tmp_path / "root" / "arch_provision" / "__main__.py").is_file()
        password_file = tmp_path / PASSWORD_FILE.lstrip("/")
        staged["password"] = password_file.read_text()
        staged["mode"] = stat.S_IMODE(password_file.stat().st_mode)
        return (0, "", "")

    mock_executor.run.side_effect = run

    hand_off(mock_executor, tmp_path, ["-E", "-H", "forge"], user_password="s3cret")

    assert staged == {"package": True, "password": "s3cret", "mode": 0o600}
    assert not PASSWORD_FILE.startswith("/tmp/")
    assert not (tmp_path / "tmp").exists()

    run_kwargs = mock_executor.run.call_args.kwargs
    assert run_kwargs["chroot"] is True
    assert run_kwargs["command"][:6] == ["env", "PYTHONPATH=/root", "python", "-m", "arch_provision", "target"]
    assert run_kwargs["command"][-2:] == ["--password-file", PASSWORD_FILE]
    assert "s3cret" not in run_kwargs["command"]


def test_hand_off_removes_staged_files_after_failure(mock_executor, tmp_path):
    mock_executor.run.side_effect = ShellCommandError(command="arch-chroot /mnt env python -m arch_provision", exit_code=1)

    with pytest.raises(ShellCommandError):
        hand_off(mock_executor, tmp_path, [], user_password="s3cret")

    assert not (tmp_path / "root" / "arch_provision").exists()
    assert not (tmp_path / PASSWORD_FILE.lstrip("/")).exists()
