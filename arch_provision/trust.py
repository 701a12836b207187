# arch_provision/trust.py
"""
Trust enrollment for the installed system.

Decides, from hardware facts gathered once, whether the LUKS key gets sealed
to the TPM behind SecureBoot, or embedded in the initramfs as a fallback.
"""
import re
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from arch_provision.models import TrustState
from arch_provision.utils.executor import Executor

TPM_DRIVER_PATTERN = re.compile(r"tpm_[a-z0-9]+")
TPM2_PCRS = "1+2+3+4+7+15"

KEY_FILE = "/etc/luks.key"
TPM2_CRYPTTAB_OPTIONS = "none\ttpm2-device=auto"
ROOT_CMDLINE = "root=/dev/system/root rootflags=subvol=@root"
COMMON_CMDLINE = "rw quiet splash add_efi_memmap"

BOOT_IMAGE_TIMEOUT = 30 * 60.0


# --- 1. Hardware Facts ---

class SecureBootStatus(BaseModel):
    """The fields we rely on from `sbctl status --json`."""
    model_config = ConfigDict(extra="ignore")

    installed: bool = False
    setup_mode: bool = False
    secure_boot: bool = False


class HardwareFacts(BaseModel):
    model_config = ConfigDict(frozen=True)

    encryption_requested: bool
    tpm_driver: Optional[str] = None
    setup_mode: bool = False
    secure_boot: bool = False

    @property
    def tpm_present(self) -> bool:
        return bool(self.tpm_driver)

    @property
    def secure_boot_ready(self) -> bool:
        return self.setup_mode and self.secure_boot


def select_trust_state(facts: HardwareFacts) -> TrustState:
    if not facts.encryption_requested:
        return TrustState.NO_ENCRYPTION
    if facts.tpm_present and facts.secure_boot_ready:
        return TrustState.SEALED_TO_HARDWARE
    return TrustState.EMBEDDED_KEY


def detect_tpm_driver(executor: Executor) -> Optional[str]:
    exit_code, stdout, _ = executor.run(
        description="Looking for a TPM driver in kernel messages",
        command=["dmesg"],
        check=False,
    )
    if exit_code != 0:
        return None
    match = TPM_DRIVER_PATTERN.search(stdout)
    return match.group(0) if match else None


def read_secure_boot_status(executor: Executor) -> SecureBootStatus:
    exit_code, stdout, _ = executor.run(
        description="Querying SecureBoot status",
        command=["sbctl", "status", "--json"],
        check=False,
    )
    if exit_code != 0:
        executor.logger.info("sbctl status unavailable; treating SecureBoot as not in setup mode.")
        return SecureBootStatus()
    try:
        return SecureBootStatus.model_validate_json(stdout)
    except ValidationError as e:
        executor.logger.warning(f"Unreadable sbctl status output, treating SecureBoot as not in setup mode: {e}")
        return SecureBootStatus()


def probe_hardware_facts(executor: Executor, encryption_requested: bool) -> HardwareFacts:
    """Collects the facts once; no hardware is probed when encryption is off."""
    if not encryption_requested:
        return HardwareFacts(encryption_requested=False)

    status = read_secure_boot_status(executor)
    facts = HardwareFacts(
        encryption_requested=True,
        tpm_driver=detect_tpm_driver(executor),
        setup_mode=status.setup_mode,
        secure_boot=status.secure_boot,
    )
    executor.logger.info(f"TPM driver: {facts.tpm_driver or 'none'}, "
                         f"SecureBoot setup mode: {facts.setup_mode}, SecureBoot capable: {facts.secure_boot}")
    return facts


# --- 2. Boot Image Configuration ---

class InitramfsConfig(BaseModel):
    """Arrays substituted into mkinitcpio.conf."""
    modules: List[str] = Field(default_factory=lambda: ["usbhid", "xhci_hcd", "vfat", "btrfs"])
    hooks: List[str] = Field(default_factory=lambda: [
        "base", "systemd", "autodetect", "modconf", "kms", "keyboard", "sd-vconsole",
        "block", "sd-encrypt", "lvm2", "filesystems", "btrfs", "fsck",
    ])
    binaries: List[str] = Field(default_factory=lambda: ["/usr/bin/btrfsck", "/usr/bin/btrfs"])
    files: List[str] = Field(default_factory=list)

    def apply(self, conf_text: str) -> str:
        """Replaces the MODULES/HOOKS/BINARIES/FILES arrays in place."""
        for key, values in (("MODULES", self.modules), ("HOOKS", self.hooks),
                            ("BINARIES", self.binaries), ("FILES", self.files)):
            replacement = f"{key}=({' '.join(values)})"
            conf_text = re.sub(rf"^{key}=\(.*\)$", lambda _m: replacement, conf_text, flags=re.MULTILINE)
        return conf_text


class TargetPaths(BaseModel):
    """Boot configuration files, relative to the root the target runs in."""
    root: Path = Path("/")

    def _path(self, relative: str) -> Path:
        return self.root / relative

    @property
    def key_file(self) -> Path:
        return self._path(KEY_FILE.lstrip("/"))

    @property
    def crypttab(self) -> Path:
        return self._path("etc/crypttab.initramfs")

    @property
    def kernel_cmdline(self) -> Path:
        return self._path("etc/kernel/cmdline")

    @property
    def mkinitcpio_conf(self) -> Path:
        return self._path("etc/mkinitcpio.conf")

    @property
    def presets_dir(self) -> Path:
        return self._path("etc/mkinitcpio.d")


def append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line + "\n")


def keyfile_uuids(crypttab_text: str, key_file: str = KEY_FILE) -> List[str]:
    """UUIDs of the crypttab entries unlocked by `key_file`."""
    uuids: List[str] = []
    for line in crypttab_text.splitlines():
        if key_file not in line:
            continue
        match = re.search(r"UUID=([a-fA-F0-9\-]+)", line)
        if match:
            uuids.append(match.group(1))
    return uuids


def password_slot_count(executor: Executor, uuid: str) -> int:
    """Number of password key slots on a LUKS volume; the generated key file occupies one."""
    exit_code, stdout, _ = executor.run(
        description=f"Listing key slots of {uuid}",
        command=["systemd-cryptenroll", f"/dev/disk/by-uuid/{uuid}"],
        check=False,
    )
    if exit_code != 0:
        return 0
    return sum(1 for line in stdout.splitlines() if line.split()[1:2] == ["password"])


def warn_without_fallback(executor: Executor, uuids: List[str]) -> None:
    """
    The TPM policy includes PCR 7 and 4, which change once SecureBoot keys are
    enrolled and the boot chain is re-signed, so the first boot needs a
    passphrase slot besides the generated key.
    """
    missing = [uuid for uuid in uuids if password_slot_count(executor, uuid) < 2]
    if missing:
        executor.logger.warning(
            f"No passphrase enrolled on {', '.join(missing)}: the TPM seal will not match after SecureBoot "
            f"enrollment and the key file is no longer in the initramfs, so the next boot cannot unlock these "
            f"volumes. Add one with `cryptsetup luksAddKey --key-file {KEY_FILE}` before rebooting."
        )


# --- 3. State Transitions ---

def seal_to_hardware(executor: Executor, facts: HardwareFacts, paths: TargetPaths, initramfs: InitramfsConfig) -> None:
    """
    Replaces the key file with TPM2 tokens and enrolls local SecureBoot keys.

    TPM2 enrollment only happens when the embedded key file exists, since it
    is the credential that unlocks the existing key slot.
    """
    if facts.tpm_driver and facts.tpm_driver not in initramfs.modules:
        initramfs.modules.append(facts.tpm_driver)

    if paths.key_file.is_file() and paths.crypttab.is_file():
        crypttab_text = paths.crypttab.read_text(encoding="utf-8")
        uuids = keyfile_uuids(crypttab_text)
        for uuid in uuids:
            executor.run(
                description=f"Sealing LUKS volume {uuid} to the TPM",
                command=[
                    "systemd-cryptenroll", f"/dev/disk/by-uuid/{uuid}",
                    "--wipe-slot=empty",
                    f"--unlock-key-file={paths.key_file}",
                    "--tpm2-device=auto",
                    f"--tpm2-pcrs={TPM2_PCRS}",
                ],
            )
        paths.crypttab.write_text(crypttab_text.replace(KEY_FILE, TPM2_CRYPTTAB_OPTIONS), encoding="utf-8")
        warn_without_fallback(executor, uuids)
    else:
        executor.logger.warning(f"{paths.key_file} missing; skipping TPM2 enrollment.")

    initramfs.files = [entry for entry in initramfs.files if entry != KEY_FILE]
    append_line(paths.kernel_cmdline, ROOT_CMDLINE)

    executor.run(description="Creating SecureBoot signing keys", command=["sbctl", "create-keys"])
    executor.run(description="Enrolling SecureBoot keys with Microsoft certificates",
                 command=["sbctl", "enroll-keys", "--microsoft"])


def embed_key(executor: Executor, initramfs: InitramfsConfig) -> None:
    executor.logger.warning(
        "No usable TPM or SecureBoot is not in setup mode: the disk key is embedded in the initramfs "
        "and can be read by anyone with access to the boot partition."
    )
    if KEY_FILE not in initramfs.files:
        initramfs.files.append(KEY_FILE)


def enroll_trust(executor: Executor,
                 facts: HardwareFacts,
                 paths: TargetPaths,
                 initramfs: InitramfsConfig) -> TrustState:
    """Runs the branch selected by the facts and returns the state taken."""
    state = select_trust_state(facts)
    executor.logger.section(f"Trust enrollment: {state.value}")

    if state is TrustState.SEALED_TO_HARDWARE:
        seal_to_hardware(executor, facts, paths, initramfs)
    elif state is TrustState.EMBEDDED_KEY:
        embed_key(executor, initramfs)
    return state


def build_boot_image(executor: Executor,
                     state: TrustState,
                     paths: TargetPaths,
                     initramfs: InitramfsConfig) -> None:
    """Writes the boot image configuration, rebuilds it, and signs the boot chain when sealed."""
    append_line(paths.kernel_cmdline, COMMON_CMDLINE)

    conf = paths.mkinitcpio_conf
    conf.write_text(initramfs.apply(conf.read_text(encoding="utf-8")), encoding="utf-8")

    for preset in sorted(paths.presets_dir.glob("*.preset")):
        text = preset.read_text(encoding="utf-8")
        text = text.replace("/efi/EFI", "/boot/EFI")
        text = re.sub(r"^#((default|fallback)_uki)", r"\1", text, flags=re.MULTILINE)
        preset.write_text(text, encoding="utf-8")

    executor.run(description="Building unified kernel images", command=["mkinitcpio", "-P"], timeout=BOOT_IMAGE_TIMEOUT)

    if state is TrustState.SEALED_TO_HARDWARE:
        executor.run(description="Signing boot chain binaries", command=["sbctl", "sign-all"])
