# arch_provision/utils/executor.py

import subprocess
import shlex
from typing import Tuple, Optional, Union, List

from arch_provision.utils.logger import RichAppLogger
from arch_provision.utils.exceptions import (
    ShellCommandError,
    CommandNotFoundError,
    CommandTimeoutError,
    InvalidCommandError,
    PermissionDeniedError,
)

__all__ = [
    "Executor",
    "ShellCommandError",
    "CommandNotFoundError",
    "CommandTimeoutError",
    "InvalidCommandError",
    "PermissionDeniedError",
]


class Executor:
    """
    Runs external commands for every provisioning stage.

    The logger is injected so that each command shows up as one execution
    step on the console and in the log file. Commands can be redirected into
    the target root through arch-chroot.
    """

    def __init__(self,
                 logger_instance: RichAppLogger,
                 default_timeout: Optional[float] = 120.0,
                 chroot_path: str = "/mnt"):
        self.logger = logger_instance

        if default_timeout is not None and default_timeout <= 0:
            self.logger.error("Default timeout must be a positive number or None.")
            raise ValueError("Default timeout must be a positive number or None.")
        if not isinstance(chroot_path, str) or not chroot_path:
            self.logger.error("Chroot path must be a non-empty string.")
            raise ValueError("Chroot path must be a non-empty string.")

        self._default_timeout = default_timeout
        self._chroot_path = chroot_path
        self.logger.debug(f"Executor initialized with default_timeout: {self._default_timeout}, chroot_path: {self._chroot_path}")

    @property
    def chroot_path(self) -> str:
        return self._chroot_path

    def _prepare_command(self, command: Union[str, list], chroot: bool) -> List[str]:
        """
        Splits string commands with shlex and prepends arch-chroot when requested.
        """
        if not command:
            self.logger.error("Attempted to prepare an empty command.")
            raise InvalidCommandError(str(command), "Command cannot be empty.")

        if isinstance(command, str):
            try:
                parsed_command = shlex.split(command)
            except ValueError as e:
                self.logger.error(f"Failed to parse command string '{command}': {e}")
                raise InvalidCommandError(command, f"Failed to parse command string: {e}")
        elif isinstance(command, list):
            if not all(isinstance(arg, str) for arg in command):
                raise InvalidCommandError(str(command), "All elements in command list must be strings.")
            parsed_command = command
        else:
            self.logger.error(f"Invalid command type: {type(command)}. Expected str or list.")
            raise InvalidCommandError(str(command), "Command must be a string or a list of strings.")

        if chroot:
            return ["arch-chroot", self._chroot_path] + parsed_command
        return parsed_command

    def execute_command(self,
                        command: Union[str, list],
                        capture_output: bool = True,
                        timeout: Optional[float] = None,
                        check: bool = True,
                        shell: bool = False,
                        cwd: Optional[str] = None,
                        input_text: Optional[str] = None
                        ) -> Tuple[int, str, str]:
        """
        Executes a command with subprocess.run and maps failures onto ShellCommandError subclasses.

        Args:
            command: Command list, or a string that is shlex-split unless shell=True.
            capture_output: Capture stdout/stderr instead of passing them through.
            timeout: Seconds before the command is killed; defaults to the executor timeout.
            check: Raise on a non-zero exit code.
            shell: Run through the shell.
            cwd: Working directory for the command.
            input_text: Text written to the command's stdin (passwords, key material paths).

        Returns:
            Tuple[int, str, str]: (exit_code, stdout, stderr).
        """
        actual_timeout = timeout if timeout is not None else self._default_timeout
        cmd_string_for_log = shlex.join(command) if isinstance(command, list) else command

        self.logger.debug(f"Attempting low-level execution: '{cmd_string_for_log}' "
                          f"timeout={actual_timeout}s, capture_output={capture_output}, check={check}, shell={shell}")

        try:
            if shell:
                command_to_execute = shlex.join(command) if isinstance(command, list) else command
            elif isinstance(command, str):
                command_to_execute = self._prepare_command(command, chroot=False)
            else:
                command_to_execute = command

            process = subprocess.run(
                command_to_execute,
                capture_output=capture_output,
                text=True,
                timeout=actual_timeout,
                check=False,
                shell=shell,
                cwd=cwd,
                input=input_text
            )

            stdout = process.stdout if capture_output and process.stdout else ""
            stderr = process.stderr if capture_output and process.stderr else ""
            exit_code = process.returncode

            if check and exit_code != 0:
                self.logger.error(f"Command: '{cmd_string_for_log}', Exit Code: {exit_code}, Stderr: {stderr.strip()}")

                if "command not found" in stderr.lower() or exit_code == 127:
                    raise CommandNotFoundError(command=cmd_string_for_log, stdout=stdout, stderr=stderr)
                elif "permission denied" in stderr.lower() or exit_code == 126:
                    raise PermissionDeniedError(command=cmd_string_for_log, stdout=stdout, stderr=stderr)
                else:
                    raise ShellCommandError(
                        command=cmd_string_for_log,
                        exit_code=exit_code,
                        stdout=stdout,
                        stderr=stderr,
                        message=f"Command failed with exit code {exit_code}"
                    )

            self.logger.debug(f"Low-level execution of '{cmd_string_for_log}' completed with exit code {exit_code}")
            return exit_code, stdout, stderr

        except FileNotFoundError:
            self.logger.error(f"Command '{cmd_string_for_log}' not found. Ensure it's in the system's PATH.")
            raise CommandNotFoundError(command=cmd_string_for_log, stdout="", stderr="Command not found. Check PATH.")
        except subprocess.TimeoutExpired as e:
            self.logger.warning(f"Command '{cmd_string_for_log}' timed out after {actual_timeout} seconds.")
            stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
            stderr = e.stderr.decode() if isinstance(e.stderr, bytes) else (e.stderr or "")
            raise CommandTimeoutError(command=cmd_string_for_log, timeout=actual_timeout, stdout=stdout, stderr=stderr)
        except (TypeError, ValueError) as e:
            self.logger.error(f"Argument error during low-level command execution '{cmd_string_for_log}': {e}")
            raise InvalidCommandError(cmd_string_for_log, f"Argument error in command execution: {e}")

    def run(self,
            description: str,
            command: Union[str, list],
            chroot: bool = False,
            capture_output: bool = True,
            timeout: Optional[float] = None,
            check: bool = True,
            shell: bool = False,
            cwd: Optional[str] = None,
            input_text: Optional[str] = None
            ) -> Tuple[int, str, str]:
        """
        Executes a command as one logged execution step.

        Failures propagate as ShellCommandError after execution_step has
        marked the step as CRITICAL. There is no retry.
        """
        original_command_str = shlex.join(command) if isinstance(command, list) else command
        prepared_command_list = self._prepare_command(command, chroot=chroot)

        with self.logger.execution_step(description):
            cmd_to_pass = prepared_command_list if not shell else original_command_str

            exit_code, stdout, stderr = self.execute_command(
                command=cmd_to_pass,
                capture_output=capture_output,
                timeout=timeout,
                check=check,
                shell=shell,
                cwd=cwd,
                input_text=input_text
            )

            self.logger.debug(f"Command '{description}' completed. Output details:")
            if stdout:
                self.logger.debug(f"  Stdout:\n{stdout.strip()}")
            if stderr:
                self.logger.debug(f"  Stderr:\n{stderr.strip()}")

            return exit_code, stdout, stderr
