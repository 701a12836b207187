# arch_provision/utils/logger.py
import logging
import os
import sys
from contextlib import contextmanager

from rich.console import Console
from rich.text import Text
from rich.logging import RichHandler
from rich.theme import Theme

from arch_provision.utils.exceptions import ShellCommandError

# --- 1. Custom Log Levels and Subclassed Logger ---
# Levels must be registered before the logger class is installed
SECTION_LEVEL_NUM = 25
EXECUTE_LEVEL_NUM = 26
logging.addLevelName(SECTION_LEVEL_NUM, 'SECTION')
logging.addLevelName(EXECUTE_LEVEL_NUM, 'EXECUTE')


class AppLogger(logging.Logger):
    """
    Logger with SECTION (pipeline stage headers) and EXECUTE (command lifecycle) levels.
    """

    def section(self, msg, *args, **kwargs):
        """Logs a message at the SECTION level."""
        if self.isEnabledFor(SECTION_LEVEL_NUM):
            self._log(SECTION_LEVEL_NUM, msg, args, **kwargs)

    def execute(self, msg, *args, **kwargs):
        """Logs a message at the EXECUTE level."""
        if self.isEnabledFor(EXECUTE_LEVEL_NUM):
            self._log(EXECUTE_LEVEL_NUM, msg, args, **kwargs)


logging.setLoggerClass(AppLogger)


# --- 2. File Formatter ---
class FileFormatter(logging.Formatter):
    """
    Fixed-width formatter for the provisioning log file, so a run can be audited line by line.
    """

    def format(self, record):
        record.levelname_fixed = f"{record.levelname:<9}"
        record.name_fixed = f"{record.name:<15}"
        record.filename_fixed = f"{record.filename:<16}"
        record.lineno_fixed = f"{record.lineno:<5}"

        fmt = '%(asctime)s - %(levelname_fixed)s - %(name_fixed)s - %(filename_fixed)s:%(lineno_fixed)s - %(message)s'
        self._style._fmt = fmt

        return super().format(record)


# --- 3. RichAppLogger Wrapper ---
class RichAppLogger:
    """
    Wraps the AppLogger and owns the Rich console used for stage headers and command spinners.
    """

    def __init__(self, console: Console, logger: AppLogger):
        self.console = console
        self.logger: AppLogger = logger
        self.console.push_theme(Theme({"section": "bold yellow"}))

    def section(self, message: str, *args, **kwargs):
        """Prints a stage header to the console and records it in the log file."""
        self.console.print(Text(f"SECTION: {message}", style="section"))
        self.logger.section(f"SECTION: {message}", *args, **kwargs)

    @contextmanager
    def execution_step(self, message: str):
        """
        Shows a spinner while the wrapped block runs, then leaves a permanent
        COMPLETED / CRITICAL / FAILED line behind it.

        ShellCommandError is reported as CRITICAL without a console traceback,
        the command and its stderr are already in the log. Anything else is
        FAILED and gets a rich traceback.
        """
        with self.console.status(f"[bold green]...[/] [RUNNING] {message}", spinner="dots") as status:
            self.logger.execute(f"[RUNNING] {message}")

            try:
                yield status

                self.console.print(f"[green]✔ [COMPLETED][/green] {message}")
                self.logger.execute(f"[COMPLETED] {message}")

            except Exception as e:
                is_critical = isinstance(e, ShellCommandError)
                status_tag = "[CRITICAL]" if is_critical else "[FAILED]"

                self.console.print(f"[bold red]✘ {status_tag}[/bold red] {message}")
                self.logger.execute(f"{status_tag} {message}")
                self.logger.exception(f"Exception during execution step: {message}")

                if not is_critical:
                    self.console.print("\n[bold red]Traceback (most recent call last):[/bold red]")
                    self.console.print_exception(show_locals=False)

                raise

    # --- Standard Logging Wrappers ---

    def info(self, message, *args, **kwargs):
        self.logger.info(message, *args, **kwargs)

    def warning(self, message, *args, **kwargs):
        self.logger.warning(message, *args, **kwargs)

    def error(self, message, *args, **kwargs):
        self.logger.error(message, *args, **kwargs)

    def debug(self, message, *args, **kwargs):
        self.logger.debug(message, *args, **kwargs)

    def critical(self, message, *args, **kwargs):
        self.logger.critical(message, *args, **kwargs)

    def exception(self, message, *args, **kwargs):
        """Logs an ERROR to file with traceback and prints a rich traceback to the console."""
        self.logger.exception(message, *args, **kwargs)
        self.console.print(f"[bold red]FATAL ERROR: {message}[/bold red]")
        self.console.print_exception(show_locals=False)


# --- 4. Console Filter ---

class ExecuteFilter(logging.Filter):
    """
    Keeps EXECUTE records off the console; execution_step already prints them there.
    """
    def filter(self, record):
        return record.levelno != EXECUTE_LEVEL_NUM


# --- 5. Initialization Routine ---
def initialize_app_logger(
    app_name: str,
    log_directory: str = "logs",
    log_file_name: str = "arch_provision.log",
    file_log_level: int = logging.DEBUG,
    console_log_level: int = logging.INFO,
) -> RichAppLogger:
    """
    Configures the AppLogger with a file handler and a Rich console handler.

    Calling it again for the same app_name replaces the previous handlers, so
    the `target` re-invocation inside the chroot can log to its own file.
    """
    logger: AppLogger = logging.getLogger(app_name)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    os.makedirs(log_directory, exist_ok=True)
    log_file_path = os.path.join(log_directory, log_file_name)

    file_handler = logging.FileHandler(log_file_path, encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(FileFormatter())
    logger.addHandler(file_handler)

    console = Console(file=sys.stderr, soft_wrap=True)

    stream_handler = RichHandler(
        console=console,
        show_time=False,
        show_level=True,
        show_path=False,
        keywords=[],
        level=console_log_level
    )
    stream_handler.addFilter(ExecuteFilter())
    logger.addHandler(stream_handler)

    return RichAppLogger(console, logger)
