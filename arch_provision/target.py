# arch_provision/target.py
"""Configuration steps that run inside the installed root (the `target` command)."""
import re
from pathlib import Path

from arch_provision.config.models import ProvisionConfig
from arch_provision.models import TrustState
from arch_provision.trust import (
    InitramfsConfig,
    TargetPaths,
    build_boot_image,
    enroll_trust,
    probe_hardware_facts,
)
from arch_provision.utils.executor import Executor

SERVICES = ("systemd-networkd", "systemd-resolved", "sshd")
USER_GROUPS = "wheel,users"


def write_identity(executor: Executor, config: ProvisionConfig, root: Path) -> None:
    """Hostname, console keymap, timezone and locale."""
    etc = root / "etc"
    etc.mkdir(parents=True, exist_ok=True)
    (etc / "hostname").write_text(config.hostname + "\n", encoding="utf-8")
    (etc / "vconsole.conf").write_text("KEYMAP=us\n", encoding="utf-8")

    localtime = etc / "localtime"
    if localtime.is_symlink() or localtime.exists():
        localtime.unlink()
    localtime.symlink_to(f"/usr/share/zoneinfo/{config.timezone}")
    executor.run(description="Syncing the hardware clock", command=["hwclock", "--systohc"])

    locale_gen = etc / "locale.gen"
    if locale_gen.is_file():
        text = locale_gen.read_text(encoding="utf-8")
        text = re.sub(rf"^#*({re.escape(config.locale)} .*)$", r"\1", text, flags=re.MULTILINE)
        locale_gen.write_text(text, encoding="utf-8")
    (etc / "locale.conf").write_text(f"LANG={config.locale}\n", encoding="utf-8")
    executor.run(description="Generating locales", command=["locale-gen"])


def install_bootloader(executor: Executor, root: Path) -> None:
    executor.run(description="Installing systemd-boot", command=["bootctl", "install"])
    loader_conf = root / "boot" / "loader" / "loader.conf"
    if loader_conf.is_file():
        text = loader_conf.read_text(encoding="utf-8")
        loader_conf.write_text(re.sub(r"^#(timeout|console-mode)", r"\1", text, flags=re.MULTILINE), encoding="utf-8")


def create_user(executor: Executor, config: ProvisionConfig, root: Path) -> None:
    sudoers = root / "etc" / "sudoers"
    if sudoers.is_file():
        text = sudoers.read_text(encoding="utf-8")
        sudoers.write_text(re.sub(r"^[# ]+(%(wheel|sudo))", r"\1", text, flags=re.MULTILINE), encoding="utf-8")

    if not config.username:
        executor.logger.warning("No username given; skipping user creation.")
        return

    executor.run(
        description=f"Creating user {config.username}",
        command=["useradd", "--btrfs-subvolume-home", "-c", config.fullname,
                 "-U", "-G", USER_GROUPS, "-m", config.username],
    )
    if config.user_password:
        executor.run(
            description=f"Setting password for {config.username}",
            command=["chpasswd"],
            input_text=f"{config.username}:{config.user_password.get_secret_value()}\n",
        )
    else:
        executor.logger.warning(f"No password given for {config.username}; the account stays locked.")


def enable_services(executor: Executor) -> None:
    for service in SERVICES:
        executor.run(description=f"Enabling {service}", command=["systemctl", "enable", service])


def configure_target(executor: Executor, config: ProvisionConfig, root: Path = Path("/")) -> TrustState:
    """
    Configures the installed system from inside it.

    Hardware facts are probed once here and drive the trust state machine;
    the boot image is rebuilt afterwards whichever state was taken.
    """
    executor.logger.section("Configuring target system")
    write_identity(executor, config, root)

    paths = TargetPaths(root=root)
    initramfs = InitramfsConfig()
    facts = probe_hardware_facts(executor, config.encryption)
    state = enroll_trust(executor, facts, paths, initramfs)
    build_boot_image(executor, state, paths, initramfs)

    install_bootloader(executor, root)
    create_user(executor, config, root)
    enable_services(executor)
    return state
