# arch_provision/models.py

from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

# --- 1. Block Devices ---

class BlockDevice(BaseModel):
    """
    One lsblk row, taken once at classification time.

    Field aliases are the lsblk column names as printed with `-P -y`, so a
    record validates straight from its key=value pairs. Identity is the
    kernel name.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str = Field(alias="NAME", min_length=1)
    type: str = Field(alias="TYPE", min_length=1)
    hotplug: bool = Field(alias="HOTPLUG")
    size: int = Field(alias="SIZE", ge=0)
    disc_zero: bool = Field(alias="DISC_ZERO")
    rota: bool = Field(alias="ROTA")
    serial: str = Field(alias="SERIAL")
    model: str = Field(alias="MODEL")
    kname: str = Field(alias="KNAME", min_length=1)
    pkname: str = Field(alias="PKNAME")
    fstype: str = Field(alias="FSTYPE")
    path: str = Field(alias="PATH", min_length=1)


# --- 2. Storage Plan ---

class RedundancyMode(str, Enum):
    NONE = "none"
    MIRROR = "mirror"
    RAID5 = "raid5"

    @classmethod
    def for_device_count(cls, count: int) -> 'RedundancyMode':
        if count <= 1:
            return cls.NONE
        if count == 2:
            return cls.MIRROR
        return cls.RAID5


class StoragePlan(BaseModel):
    """Selected disks plus the sizing decisions made for them."""
    model_config = ConfigDict(frozen=True)

    devices: List[BlockDevice] = Field(min_length=1)
    swap_gib: int = Field(ge=1)
    pool_allocation: str

    @computed_field
    @property
    def redundancy(self) -> RedundancyMode:
        """Derived from the device count only."""
        return RedundancyMode.for_device_count(len(self.devices))

    def volume_options(self) -> List[str]:
        """lvcreate flags giving swap, pool metadata and pool data the plan's redundancy."""
        count = len(self.devices)
        if self.redundancy is RedundancyMode.MIRROR:
            return ["--type", "raid1", "--mirrors", str(count - 1)]
        if self.redundancy is RedundancyMode.RAID5:
            return ["--type", "raid5", "--stripes", str(count - 1)]
        return []

    @property
    def all_discard_zero(self) -> bool:
        return all(device.disc_zero for device in self.devices)

    @property
    def all_solid_state(self) -> bool:
        return all(not device.rota for device in self.devices)


# --- 3. Partitions and Encryption ---

class DeviceLayout(BaseModel):
    """The two partitions written to one selected disk."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=1)
    device: BlockDevice
    efi_partition: str
    system_partition: str

    @property
    def mapped_name(self) -> str:
        return f"system{self.index}"


class EncryptionBinding(BaseModel):
    """LUKS metadata for one system partition."""
    model_config = ConfigDict(frozen=True)

    partition: str
    mapped_name: str
    has_key: bool = True
    passphrase_enrolled: bool = False
    uuid: str = Field(min_length=1)

    @property
    def mapped_path(self) -> str:
        return f"/dev/mapper/{self.mapped_name}"

    def crypttab_entry(self, key_path: str) -> str:
        return f"{self.mapped_name}  UUID={self.uuid}  {key_path}"


# --- 4. Volumes and Subvolumes ---

class VolumeTopology(BaseModel):
    """The LVM structure as built, plus the EFI device prepared alongside it."""
    model_config = ConfigDict(frozen=True)

    volume_group: str
    physical_volumes: List[str]
    efi_device: str
    swap_volume: str
    pool_volume: str
    root_volume: str
    swap_size: str
    metadata_size: str
    pool_allocation: str
    root_virtual_size: str


class Subvolume(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    mountpoint: str


SUBVOLUME_TREE = (
    Subvolume(name="@root", mountpoint="/"),
    Subvolume(name="@home", mountpoint="/home"),
    Subvolume(name="@var", mountpoint="/var"),
    Subvolume(name="@log", mountpoint="/var/log"),
    Subvolume(name="@cache", mountpoint="/var/cache"),
    Subvolume(name="@snap", mountpoint="/.snapshot"),
)


# --- 5. Trust ---

class TrustState(str, Enum):
    NO_ENCRYPTION = "NoEncryption"
    EMBEDDED_KEY = "EncryptedInsecureEmbeddedKey"
    SEALED_TO_HARDWARE = "EncryptedSealedToHardware"


# --- 6. Pipeline Context ---

class PipelineContext(BaseModel):
    """
    Everything one `setup` run hands from stage to stage.

    Each field is written by exactly one stage and read by the stages after it.
    """
    state_dir: Path
    encryption: bool = False
    passphrase_file: Optional[Path] = None
    pool_allocation: str = "50%FREE"
    mount_root: Path = Path("/mnt")

    devices: List[BlockDevice] = Field(default_factory=list)
    plan: Optional[StoragePlan] = None
    layouts: List[DeviceLayout] = Field(default_factory=list)
    bindings: List[EncryptionBinding] = Field(default_factory=list)
    topology: Optional[VolumeTopology] = None

    @property
    def key_file(self) -> Path:
        return self.state_dir / "luks.key"

    @property
    def crypttab_fragment(self) -> Path:
        return self.state_dir / "crypttab.initramfs"
