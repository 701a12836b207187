import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Ensure repository root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from arch_provision.executors.disk import DiskManager
from arch_provision.models import BlockDevice
from arch_provision.utils.executor import Executor
from arch_provision.utils.logger import RichAppLogger


@pytest.fixture
def mock_rich_logger():
    """A fully mocked RichAppLogger whose execution_step is a no-op context manager."""
    mock_logger = MagicMock(spec=RichAppLogger)
    mock_logger.console = MagicMock()

    mock_context_manager = MagicMock()
    mock_context_manager.__enter__.return_value = None
    mock_context_manager.__exit__.return_value = None
    mock_logger.execution_step.return_value = mock_context_manager

    return mock_logger


@pytest.fixture
def executor(mock_rich_logger):
    return Executor(logger_instance=mock_rich_logger, default_timeout=5.0)


def make_directory(path):
    Path(path).mkdir(parents=True, exist_ok=True)
    return 0, "", ""


@pytest.fixture
def disk_manager(mock_rich_logger):
    """Stands in for every privileged storage operation."""
    manager = MagicMock(spec=DiskManager)
    manager.logger = mock_rich_logger
    manager.read_uuid.side_effect = lambda partition: f"uuid-{partition.rsplit('/', 1)[-1]}"
    manager.generate_fstab.return_value = "# fstab\n"
    manager.make_directory.side_effect = make_directory
    return manager


@pytest.fixture
def make_device():
    """Factory for BlockDevice snapshots of an eligible SATA/NVMe disk."""
    def factory(kname: str = "sda", **overrides) -> BlockDevice:
        fields = dict(
            name=kname,
            type="disk",
            hotplug=False,
            size=512 * 1024 ** 3,
            disc_zero=True,
            rota=False,
            serial=f"SN-{kname}",
            model="Samsung SSD 870",
            kname=kname,
            pkname="",
            fstype="",
            path=f"/dev/{kname}",
        )
        fields.update(overrides)
        return BlockDevice(**fields)

    return factory
