# arch_provision/classifier.py
"""
Device classification: decide which disks are safe to wipe.

Only whole, fixed disks with a serial number and a model string survive,
and anything under the mounted installation medium is excluded first.
"""
import re
import shlex
from typing import Dict, Iterable, List, Set

from pydantic import ValidationError

from arch_provision.models import BlockDevice
from arch_provision.utils.executor import Executor
from arch_provision.utils.exceptions import DeviceRecordError, NoEligibleDeviceError

LSBLK_COLUMNS = "NAME,TYPE,HOTPLUG,SIZE,DISC-ZERO,ROTA,SERIAL,MODEL,KNAME,PKNAME,FSTYPE,PATH"

# SCSI/SATA/USB disks, then NVMe namespaces
LSBLK_TRANSPORT_FLAGS = ("--scsi", "--nvme")

INSTALL_MEDIA_QUERIES = (
    ["findmnt", "-nr", "-t", "iso9660", "-o", "SOURCE"],
    ["findmnt", "-n", "-o", "SOURCE", "/run/archiso/bootmnt"],
)

_HEX_ESCAPE = re.compile(r"\\x([0-9a-fA-F]{2})")
_RECORD_ORDER = ("NAME", "TYPE", "HOTPLUG", "SIZE", "DISC_ZERO", "ROTA",
                 "SERIAL", "MODEL", "KNAME", "PKNAME", "FSTYPE", "PATH")


# --- 1. Record parsing ---

def _parse_pairs(line: str) -> Dict[str, str]:
    """Splits one `lsblk -P` line into its KEY=value pairs."""
    try:
        tokens = shlex.split(line)
    except ValueError as e:
        raise DeviceRecordError(f"Unbalanced quoting in device record: {line!r} ({e})")

    pairs: Dict[str, str] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep or not key:
            raise DeviceRecordError(f"Malformed field {token!r} in device record: {line!r}")
        if key in pairs:
            raise DeviceRecordError(f"Duplicate field {key!r} in device record: {line!r}")
        # lsblk escapes unsafe characters as \xHH
        pairs[key] = _HEX_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), value)
    return pairs


def parse_device_record(line: str) -> BlockDevice:
    """
    Builds a BlockDevice from one key=value record.

    Raises:
        DeviceRecordError: for syntax errors, unknown or missing fields, or bad values.
    """
    pairs = _parse_pairs(line)
    try:
        return BlockDevice.model_validate(pairs)
    except ValidationError as e:
        raise DeviceRecordError(f"Invalid device record {line!r}: {e}")


def parse_device_records(text: str) -> List[BlockDevice]:
    return [parse_device_record(line) for line in text.splitlines() if line.strip()]


def render_device_record(device: BlockDevice) -> str:
    """Renders a device in the same KEY="value" form lsblk -P -y produces."""
    data = device.model_dump(by_alias=True)
    fields = []
    for key in _RECORD_ORDER:
        value = data[key]
        if isinstance(value, bool):
            value = "1" if value else "0"
        value = str(value).replace("\\", "\\x5c").replace('"', "\\x22")
        fields.append(f'{key}="{value}"')
    return " ".join(fields)


# --- 2. Installation medium exclusion ---

def find_install_media_sources(executor: Executor) -> List[str]:
    """Source devices of the mounted live medium (usually one, sometimes none)."""
    sources: List[str] = []
    for query in INSTALL_MEDIA_QUERIES:
        exit_code, stdout, _ = executor.run(
            description="Locating the installation medium",
            command=query,
            check=False,
        )
        if exit_code != 0:
            continue
        for line in stdout.splitlines():
            source = line.strip()
            if source.startswith("/dev/") and source not in sources:
                sources.append(source)
    return sources


def find_excluded_knames(executor: Executor) -> Set[str]:
    """
    Walks from each installation medium source up to its root disk(s).

    `lsblk --inverse` lists the source followed by every device it depends
    on; all of those kernel names are excluded.
    """
    excluded: Set[str] = set()
    for source in find_install_media_sources(executor):
        _, stdout, _ = executor.run(
            description=f"Resolving parent devices of {source}",
            command=["lsblk", "--inverse", "--pairs", "--shell", "-o", "NAME,KNAME,PKNAME", source],
        )
        parents: Dict[str, str] = {}
        for line in stdout.splitlines():
            if not line.strip():
                continue
            pairs = _parse_pairs(line)
            kname = pairs.get("KNAME", "")
            if not kname:
                raise DeviceRecordError(f"Missing KNAME in dependency record: {line!r}")
            parents.setdefault(kname, pairs.get("PKNAME", ""))

        roots = sorted(kname for kname, parent in parents.items() if not parent)
        executor.logger.info(f"Installation medium {source} resides on: {', '.join(roots) or 'unknown'}")
        excluded.update(parents)
    return excluded


# --- 3. Classification ---

def is_candidate(device: BlockDevice, excluded: Set[str]) -> bool:
    if device.kname in excluded:
        return False
    if device.type != "disk" or device.hotplug:
        return False
    # Loop and virtual devices report no serial/model; their identity cannot be trusted
    return bool(device.serial.strip()) and bool(device.model.strip())


def classify_devices(devices: Iterable[BlockDevice], excluded: Set[str]) -> List[BlockDevice]:
    """Filters candidates and drops repeated kernel names, keeping first-seen order."""
    seen: Set[str] = set()
    selected: List[BlockDevice] = []
    for device in devices:
        if device.kname in seen or not is_candidate(device, excluded):
            continue
        seen.add(device.kname)
        selected.append(device)
    return selected


def list_block_devices(executor: Executor) -> List[BlockDevice]:
    devices: List[BlockDevice] = []
    for transport in LSBLK_TRANSPORT_FLAGS:
        _, stdout, _ = executor.run(
            description=f"Listing block devices ({transport.lstrip('-')})",
            command=["lsblk", transport, "--pairs", "--shell", "--bytes", "-o", LSBLK_COLUMNS],
        )
        devices.extend(parse_device_records(stdout))
    return devices


def enumerate_devices(executor: Executor) -> List[BlockDevice]:
    """
    Returns the ordered set of disks eligible for provisioning.

    Raises:
        NoEligibleDeviceError: when nothing survives classification.
    """
    executor.logger.section("Classifying block devices")
    excluded = find_excluded_knames(executor)
    candidates = classify_devices(list_block_devices(executor), excluded)

    if not candidates:
        raise NoEligibleDeviceError("No eligible disk found: every device is removable, unidentified, or holds the installation medium.")

    for device in candidates:
        executor.logger.info(f"Selected {device.path}: {device.model} ({device.serial}), {device.size} bytes, "
                             f"{'rotational' if device.rota else 'solid state'}")
    return candidates
