# arch_provision/cli.py
import logging
from pathlib import Path
from typing import Callable, Optional

import typer
from rich.table import Table

from arch_provision import core
from arch_provision.classifier import enumerate_devices, render_device_record
from arch_provision.clean import clean as clean_storage
from arch_provision.config.models import ProvisionConfig
from arch_provision.executors.disk import DiskManager
from arch_provision.pipeline import run_setup
from arch_provision.target import configure_target
from arch_provision.utils.exceptions import ProvisionError, ShellCommandError
from arch_provision.utils.executor import Executor
from arch_provision.utils.logger import RichAppLogger, initialize_app_logger

APP_NAME = "arch_provision"

app = typer.Typer(
    help="Provision encrypted, replicated Arch Linux storage from the live environment.",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", exists=True, dir_okay=False,
                                          help="TOML file with default options."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output on the console."),
):
    ctx.obj = {"config_path": config, "verbose": verbose}


# --- Helpers ---

def _load_config(ctx: typer.Context, **overrides) -> ProvisionConfig:
    config_path = ctx.obj.get("config_path") if ctx.obj else None
    try:
        base = ProvisionConfig.load_config_from_file(config_path) if config_path else ProvisionConfig()
        return base.with_overrides(**overrides)
    except ValueError as e:
        typer.secho(f"Invalid configuration: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)


def _init_logger(ctx: typer.Context, config: ProvisionConfig) -> RichAppLogger:
    verbose = bool(ctx.obj and ctx.obj.get("verbose"))
    core.app_logger = initialize_app_logger(
        app_name=APP_NAME,
        log_directory=config.log_directory,
        console_log_level=logging.DEBUG if verbose else logging.INFO,
    )
    return core.app_logger


def _run_guarded(logger: RichAppLogger, action: Callable[[], object]):
    """Single place where fatal errors end the run with their exit code."""
    try:
        return action()
    except ProvisionError as e:
        logger.critical(f"Provisioning stopped: {e}")
        logger.critical("Run `clean` before trying again.")
        raise typer.Exit(code=e.exit_code)
    except ShellCommandError as e:
        logger.critical(f"FATAL ERROR at command: '{e.command}'")
        logger.critical("Nothing was rolled back. Review the log and run `clean` before trying again.")
        raise typer.Exit(code=1)


# --- Commands ---

@app.command()
def setup(
    ctx: typer.Context,
    encrypt: bool = typer.Option(False, "-E", "--encrypt", help="Encrypt the system partitions."),
    passphrase: Optional[str] = typer.Option(None, "-K", "--passphrase", help="Passphrase, or path to a passphrase file."),
    hostname: Optional[str] = typer.Option(None, "-H", "--hostname"),
    fullname: Optional[str] = typer.Option(None, "-N", "--fullname"),
    username: Optional[str] = typer.Option(None, "-U", "--username"),
    pool: Optional[str] = typer.Option(None, "-P", "--pool", help="lvcreate extents expression, e.g. 90%FREE or 40%VG."),
    locale: Optional[str] = typer.Option(None, "-L", "--locale"),
    timezone: Optional[str] = typer.Option(None, "-R", "--timezone"),
    mount_existing: bool = typer.Option(False, "-M", "--mounted", help="Skip disk provisioning; use the target already mounted."),
    user_password: Optional[str] = typer.Option(None, "--user-password", help="Password for the created user."),
):
    """Provision storage, bootstrap packages and configure the new system."""
    config = _load_config(
        ctx,
        encryption=encrypt or None,
        passphrase=passphrase,
        hostname=hostname,
        fullname=fullname,
        username=username,
        pool_allocation=pool,
        locale=locale,
        timezone=timezone,
        mount_existing=mount_existing or None,
        user_password=user_password,
    )
    logger = _init_logger(ctx, config)
    logger.info(config.display_summary())

    executor = Executor(logger_instance=logger, chroot_path=config.mount_root)
    _run_guarded(logger, lambda: run_setup(executor, config))
    logger.info(f"Setup complete. Review the target at {config.mount_root}, then reboot.")


@app.command()
def target(
    ctx: typer.Context,
    encrypt: bool = typer.Option(False, "-E", "--encrypt"),
    hostname: Optional[str] = typer.Option(None, "-H", "--hostname"),
    fullname: Optional[str] = typer.Option(None, "-N", "--fullname"),
    username: Optional[str] = typer.Option(None, "-U", "--username"),
    password: Optional[str] = typer.Option(None, "-P", "--password", help="Password for the created user."),
    password_file: Optional[Path] = typer.Option(None, "--password-file", dir_okay=False),
    locale: Optional[str] = typer.Option(None, "-L", "--locale"),
    timezone: Optional[str] = typer.Option(None, "-R", "--timezone"),
):
    """Configure the installed system. Runs inside the provisioned root."""
    if password is None and password_file is not None and password_file.is_file():
        password = password_file.read_text(encoding="utf-8").strip()
        password_file.unlink()

    config = _load_config(
        ctx,
        encryption=encrypt or None,
        hostname=hostname,
        fullname=fullname,
        username=username,
        user_password=password,
        locale=locale,
        timezone=timezone,
    )
    logger = _init_logger(ctx, config)
    executor = Executor(logger_instance=logger)
    state = _run_guarded(logger, lambda: configure_target(executor, config))
    logger.info(f"Target configured; trust state: {state.value}")


@app.command()
def disk(
    ctx: typer.Context,
    records: bool = typer.Option(False, "--records", help="Print key=value device records instead of a table."),
):
    """List the disks that `setup` would wipe."""
    config = _load_config(ctx)
    logger = _init_logger(ctx, config)
    executor = Executor(logger_instance=logger)
    devices = _run_guarded(logger, lambda: enumerate_devices(executor))

    if records:
        for device in devices:
            typer.echo(render_device_record(device))
        return

    table = Table(title="Eligible disks")
    for column in ("Path", "Model", "Serial", "Size (bytes)", "Rotational", "Discard zeroes"):
        table.add_column(column)
    for device in devices:
        table.add_row(device.path, device.model, device.serial, str(device.size),
                      "yes" if device.rota else "no", "yes" if device.disc_zero else "no")
    logger.console.print(table)


@app.command()
def clean(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Irreversibly wipe the provisioned volumes and remove the volume group."""
    config = _load_config(ctx)
    if not yes:
        typer.confirm("This overwrites every provisioned volume with random data. Continue?", abort=True)

    logger = _init_logger(ctx, config)
    disk_manager = DiskManager(Executor(logger_instance=logger))
    wiped = _run_guarded(logger, lambda: clean_storage(disk_manager, Path(config.mount_root)))
    logger.info(f"Wiped {len(wiped)} physical volume(s).")
