# arch_provision/utils/exceptions.py

# --- 1. Command Execution Exceptions ---

class ShellCommandError(Exception):
    """Base exception for errors during shell command execution."""

    def __init__(self, command: str, exit_code: int = -1, stdout: str = "", stderr: str = "", message: str = "Command execution failed."):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.message = message
        super().__init__(f"{message} (Command: '{command}', Exit Code: {exit_code})")


class CommandNotFoundError(ShellCommandError):
    """Raised when the executable specified in the command cannot be found."""

    def __init__(self, command: str, stdout: str = "", stderr: str = ""):
        super().__init__(command, exit_code=127, stdout=stdout, stderr=stderr, message="Command not found.")


class CommandTimeoutError(ShellCommandError):
    """Raised when the command exceeds the execution timeout."""

    def __init__(self, command: str, timeout: float, stdout: str = "", stderr: str = ""):
        self.timeout = timeout
        super().__init__(command, exit_code=124, stdout=stdout, stderr=stderr, message=f"Command timed out after {timeout} seconds.")


class InvalidCommandError(ShellCommandError):
    """Raised when the command string/list is invalid, empty, or improperly formatted."""

    def __init__(self, command: str, message: str = "Invalid command format"):
        super().__init__(command, exit_code=-2, message=message)


class PermissionDeniedError(ShellCommandError):
    """Raised when command execution fails due to permissions."""

    def __init__(self, command: str, stdout: str = "", stderr: str = ""):
        super().__init__(command, exit_code=126, stdout=stdout, stderr=stderr, message="Permission denied.")


# --- 2. Provisioning Exceptions ---

class ProvisionError(Exception):
    """Base class for provisioning failures that end the run with a specific exit code."""

    exit_code: int = 1


class DeviceRecordError(ProvisionError):
    """Raised when a block device record cannot be parsed or fails validation."""


class NoEligibleDeviceError(ProvisionError):
    """Raised when classification leaves no disk that is safe to provision."""

    exit_code = 3


class TargetNotMountedError(ProvisionError):
    """Raised when an existing target is requested but nothing is mounted at the mount root."""

    exit_code = 4


class PlanningError(ProvisionError):
    """Raised when the storage plan cannot be computed from its inputs."""
