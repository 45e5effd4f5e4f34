"""Session settings and logging setup."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_QUICK_COMMANDS: Dict[str, str] = {
    "gammaray": "source /env.sh && /usr/bin/gammaray -p $(pidof nickel) --inject-only",
    "usb-dialog": "echo usb plug add > /tmp/nickel-hardware-status",
    "reboot": "reboot",
}


@dataclass
class SessionConfig:
    # Files
    push_dir:        str   = "/mnt/onboard/.kobo"   # device-side upload folder
    initial_path:    str   = "/"
    preview_bytes:   int   = 4096
    chunk_size:      int   = 64 * 1024

    # Processes
    split_streams:    bool  = True    # stdout/stderr apart when the transport can
    stop_timeout:     float = 5.0     # seconds to wait for a stopped reader to drain
    log_tail_command: List[str] = field(default_factory=lambda: ["logread", "-f"])
    quick_commands:   Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_QUICK_COMMANDS))
    quick_no_output:  List[str] = field(default_factory=lambda: ["usb-dialog", "reboot"])  # fire and forget

    @classmethod
    def load(cls, path: Union[str, Path]) -> "SessionConfig":
        """Read settings from a JSON file; unknown keys are ignored."""
        config_file = Path(path)
        if not config_file.exists():
            return cls()
        try:
            with config_file.open() as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning(f"Ignoring unreadable config {config_file}: {exc}")
            return cls()
        if not isinstance(data, dict):
            logger.warning(f"Ignoring config {config_file}: expected a JSON object")
            return cls()
        valid = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**valid)


def setup_logging(level: int = logging.INFO, log_file: Optional[Union[str, Path]] = None) -> None:
    """Setup logging configuration for devlink.

    Args:
        level: Logging level (default: INFO)
        log_file: Optional file that receives a copy of the log
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
