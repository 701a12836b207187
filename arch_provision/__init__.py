# arch_provision/__init__.py

from .utils.exceptions import ShellCommandError
from .utils.exceptions import CommandNotFoundError
from .utils.exceptions import CommandTimeoutError
from .utils.exceptions import ProvisionError
from .utils.exceptions import NoEligibleDeviceError
from .utils.exceptions import TargetNotMountedError

__all__ = [
    "ShellCommandError",
    "CommandNotFoundError",
    "CommandTimeoutError",
    "ProvisionError",
    "NoEligibleDeviceError",
    "TargetNotMountedError",
]

__version__ = "0.1.0"
