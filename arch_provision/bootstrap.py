# arch_provision/bootstrap.py
"""Package bootstrap into the mounted target and the hand-off into it."""
import os
import shutil
from pathlib import Path
from typing import List, Optional

from arch_provision.utils.executor import Executor

# arch-chroot mounts a fresh tmpfs over <root>/tmp, so hand-off files live under /root
STAGING_DIR = "/root"
PASSWORD_FILE = f"{STAGING_DIR}/arch_provision.password"

BASE_PACKAGES = (
    "base", "linux-lts", "linux-firmware", "btrfs-progs", "lvm2", "mdadm",
    "efibootmgr", "inotify-tools", "exfatprogs", "ethtool",
    "cpupower", "acpi", "acpid", "sudo", "htop", "btop",
    "networkmanager", "iwd", "openssh",
    "git", "vim", "zsh", "zsh-completions", "tmux",
    "man", "man-pages", "man-db", "texinfo",
    # runtime for the `target` re-invocation
    "python", "python-rich", "python-typer", "python-pydantic", "python-tomlkit",
)
TRUST_PACKAGES = ("tpm2-tss", "tpm2-tools", "sbctl", "sbsigntools")

# lspci match -> driver package
PCI_DRIVER_PACKAGES = (
    ("broadcom", "broadcom-wl-dkms"),
    ("nvidia", "nvidia-dkms"),
    ("realtek", "r8168-lts"),
)

PACMAN_OPTIONS = """
# Misc options
UseSyslog
Color
ILoveCandy
CheckSpace
VerbosePkgLists
ParallelDownloads = 10
"""

SYSTEMD_BOOT_HOOK = """[Trigger]
Type = Package
Operation = Install
Operation = Upgrade
Target = systemd

[Action]
Description = Updating systemd-boot
When = PostTransaction
Exec = /usr/bin/bootctl update
"""

PACSTRAP_TIMEOUT = 2 * 60 * 60.0


def write_target_files(root: Path) -> None:
    """Pacman defaults and the systemd-boot update hook."""
    hooks = root / "etc" / "pacman.d" / "hooks"
    hooks.mkdir(parents=True, exist_ok=True)
    with (root / "etc" / "pacman.conf").open("a", encoding="utf-8") as handle:
        handle.write(PACMAN_OPTIONS)
    (hooks / "998-systemd-boot.hook").write_text(SYSTEMD_BOOT_HOOK, encoding="utf-8")


def detect_cpu_vendor(cpuinfo: Path = Path("/proc/cpuinfo")) -> str:
    """Returns 'amd', 'intel' or '' for the microcode package prefix."""
    try:
        content = cpuinfo.read_text(encoding="utf-8")
    except OSError:
        return ""
    for line in content.splitlines():
        if line.startswith("vendor_id"):
            vendor = line.split(":", 1)[-1].strip()
            return {"AuthenticAMD": "amd", "GenuineIntel": "intel"}.get(vendor, "")
    return ""


def detect_driver_packages(executor: Executor) -> List[str]:
    _, stdout, _ = executor.run(description="Listing PCI devices", command=["lspci"], check=False)
    listing = stdout.lower()
    return [package for needle, package in PCI_DRIVER_PACKAGES if needle in listing]


def select_packages(executor: Executor, encryption: bool) -> List[str]:
    packages = list(BASE_PACKAGES)
    vendor = detect_cpu_vendor()
    if vendor:
        packages.append(f"{vendor}-ucode")
    packages += detect_driver_packages(executor)
    if encryption:
        packages += TRUST_PACKAGES
    return packages


def bootstrap_packages(executor: Executor, root: Path, encryption: bool) -> None:
    executor.logger.section("Bootstrapping packages")
    executor.run(
        description="Selecting the fastest HTTPS mirrors",
        command=["reflector", "--save", "/etc/pacman.d/mirrorlist", "--protocol", "https",
                 "--sort", "rate", "--latest", "5"],
        timeout=PACSTRAP_TIMEOUT,
    )
    executor.run(
        description=f"Installing packages into {root}",
        command=["pacstrap", "-K", str(root)] + select_packages(executor, encryption) + ["--noconfirm"],
        timeout=PACSTRAP_TIMEOUT,
        capture_output=False,
    )
    write_target_files(root)


def hand_off(executor: Executor, root: Path, passdown: List[str], user_password: Optional[str] = None) -> None:
    """
    Copies this package into the target and re-runs it there as `target`.

    The user password travels in a root-only file that the target command
    deletes after reading, so it never appears on a command line.
    """
    executor.logger.section("Switching to target configuration")
    package_dir = Path(__file__).resolve().parent
    staging = root / STAGING_DIR.lstrip("/")
    staging.mkdir(mode=0o700, parents=True, exist_ok=True)
    destination = staging / package_dir.name
    password_file = root / PASSWORD_FILE.lstrip("/")
    if destination.exists():
        shutil.rmtree(destination)
    shutil.copytree(package_dir, destination, ignore=shutil.ignore_patterns("__pycache__"))

    passdown = list(passdown)
    if user_password:
        fd = os.open(password_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(user_password)
        passdown += ["--password-file", PASSWORD_FILE]

    try:
        executor.run(
            description="Configuring the installed system",
            command=["env", f"PYTHONPATH={STAGING_DIR}", "python", "-m", package_dir.name, "target"] + passdown,
            chroot=True,
            timeout=PACSTRAP_TIMEOUT,
            capture_output=False,
        )
    finally:
        shutil.rmtree(destination, ignore_errors=True)
        if password_file.exists():
            password_file.unlink()
