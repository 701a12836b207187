# arch_provision/config/models.py

import tomlkit
import typer
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from typing import List, Optional, Any
from pathlib import Path


class ProvisionConfig(BaseModel):
    """Operator choices for one provisioning run, from config.toml and/or the command line."""

    model_config = ConfigDict(extra="forbid")

    # Storage
    encryption: bool = False
    passphrase: Optional[SecretStr] = Field(None, description="Literal passphrase or path to a passphrase file.")
    pool_allocation: str = Field("50%FREE", description="lvcreate --extents expression for the thin pool data volume.")
    mount_existing: bool = False
    mount_root: str = "/mnt"

    # Target system
    hostname: str = "archlinux"
    fullname: str = ""
    username: Optional[str] = None
    user_password: Optional[SecretStr] = None
    locale: str = "en_US.UTF-8"
    timezone: str = "America/Los_Angeles"

    # Logging
    log_directory: str = "logs"

    @classmethod
    def load_config_from_file(cls, path: Path) -> 'ProvisionConfig':
        """Loads and validates a TOML file against the schema."""
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"Error reading configuration file: {e}")

        try:
            data = tomlkit.parse(content)
        except Exception as e:
            raise ValueError(f"Invalid TOML format in file: {e}")

        return cls.model_validate(data.unwrap())

    def with_overrides(self, **overrides: Any) -> 'ProvisionConfig':
        """Returns a copy where every override that is not None replaces the loaded value."""
        update = {key: value for key, value in overrides.items() if value is not None}
        return self.model_validate({**self.model_dump(), **update})

    def passdown_arguments(self) -> List[str]:
        """
        Options forwarded to the `target` command when it is re-invoked inside
        the new root. The user password is not among them; it is handed over
        through a file.
        """
        args: List[str] = []
        if self.encryption:
            args.append("-E")
        args += ["-H", self.hostname, "-L", self.locale, "-R", self.timezone]
        if self.fullname:
            args += ["-N", self.fullname]
        if self.username:
            args += ["-U", self.username]
        return args

    def _safe_str(self, s: Optional[SecretStr]) -> str:
        """Truncates a secret for display."""
        if not s:
            return "N/A"
        secret_value = s.get_secret_value()
        if secret_value:
            return secret_value[:2] + "..."
        return "N/A"

    def display_summary(self) -> str:
        """Generates the operator summary shown before anything destructive happens."""
        s = typer.style("\nPROVISIONING SUMMARY", fg=typer.colors.BLUE, bold=True) + "\n"
        s += "----------------------------------------\n"
        s += f"  Hostname:           {self.hostname}\n"
        s += f"  User:               {self.username or 'N/A'} ({self.fullname or 'no full name'})\n"
        s += f"  Locale / Timezone:  {self.locale} / {self.timezone}\n"
        s += f"  Mount root:         {self.mount_root}\n"

        s += typer.style("\nSTORAGE", fg=typer.colors.BLUE, bold=True) + "\n"
        s += "----------------------------------------\n"
        if self.mount_existing:
            s += f"  Disks:              {typer.style('KEEPING existing target', fg=typer.colors.YELLOW)}\n"
        else:
            s += f"  Disks:              {typer.style('WIPING every eligible disk', fg=typer.colors.RED)}\n"
        encryption = typer.style("LUKS2", fg=typer.colors.YELLOW) if self.encryption else "disabled"
        s += f"  Encryption:         {encryption}\n"
        s += f"  Passphrase:         {self._safe_str(self.passphrase)}\n"
        s += f"  Thin pool size:     {self.pool_allocation}\n"
        return s
