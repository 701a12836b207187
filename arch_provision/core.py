# core.py
from typing import Optional
from arch_provision.utils.logger import RichAppLogger

# Process-wide logger wrapper, set by the CLI callback before any command runs
app_logger: Optional[RichAppLogger] = None
