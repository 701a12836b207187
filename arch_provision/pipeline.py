# arch_provision/pipeline.py
import os
import tempfile
from pathlib import Path
from typing import Optional

from arch_provision.bootstrap import bootstrap_packages, hand_off
from arch_provision.classifier import enumerate_devices
from arch_provision.config.models import ProvisionConfig
from arch_provision.disk import prepare_disk
from arch_provision.executors.disk import DiskManager
from arch_provision.models import PipelineContext
from arch_provision.planner import plan_storage
from arch_provision.utils.exceptions import TargetNotMountedError
from arch_provision.utils.executor import Executor


def resolve_passphrase_file(config: ProvisionConfig, state_dir: Path) -> Optional[Path]:
    """
    `-K` takes either a path to an existing file or the passphrase itself;
    a literal passphrase is written to a root-only file in the state directory.
    """
    if config.passphrase is None:
        return None
    value = config.passphrase.get_secret_value()
    if not value:
        return None
    candidate = Path(value)
    if candidate.is_file():
        return candidate

    path = state_dir / "passphrase"
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(value)
    return path


def provision_storage(disk_manager: DiskManager, config: ProvisionConfig) -> PipelineContext:
    """Classifier, planner, encryption, volumes and filesystems, ending with the target mounted."""
    state_dir = Path(tempfile.mkdtemp(prefix="arch_provision."))
    context = PipelineContext(
        state_dir=state_dir,
        encryption=config.encryption,
        pool_allocation=config.pool_allocation,
        mount_root=Path(config.mount_root),
    )
    context.passphrase_file = resolve_passphrase_file(config, state_dir)

    context.devices = enumerate_devices(disk_manager.executor)
    context.plan = plan_storage(context.devices, context.pool_allocation)
    disk_manager.logger.info(f"Plan: {len(context.plan.devices)} device(s), {context.plan.redundancy.value} redundancy, "
                             f"{context.plan.swap_gib}G swap, thin pool {context.plan.pool_allocation}")

    prepare_disk(disk_manager, context)
    return context


def run_setup(executor: Executor, config: ProvisionConfig) -> Optional[PipelineContext]:
    """
    The whole live-environment flow: storage (unless reusing a mounted
    target), package bootstrap, then `target` inside the new root.

    Raises:
        TargetNotMountedError: mount_existing is set but nothing is mounted at mount_root.
    """
    disk_manager = DiskManager(executor)
    mount_root = Path(config.mount_root)
    context: Optional[PipelineContext] = None

    if config.mount_existing:
        if not disk_manager.is_mounted(str(mount_root)):
            raise TargetNotMountedError(f"{mount_root} is not a mount point; mount the target before using -M.")
        executor.logger.info(f"Reusing the target already mounted at {mount_root}.")
    else:
        executor.run(description="Enabling network time sync", command=["timedatectl", "set-ntp", "true"], check=False)
        context = provision_storage(disk_manager, config)

    bootstrap_packages(executor, mount_root, config.encryption)
    hand_off(
        executor,
        mount_root,
        config.passdown_arguments(),
        config.user_password.get_secret_value() if config.user_password else None,
    )
    return context
