"""Platform directories for mcplink.

Only configuration and log files touch the disk; credentials never do.
"""

import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir

APP_NAME = "mcplink"


class GlobalPath:
    """Resolved application directories."""

    @classmethod
    def data(cls) -> str:
        """Application data directory."""
        return os.environ.get("MCPLINK_DATA_DIR") or user_data_dir(APP_NAME)

    @classmethod
    def log(cls) -> str:
        """Log file directory."""
        return str(Path(cls.data()) / "log")

    @classmethod
    def config(cls) -> str:
        """Configuration directory."""
        return os.environ.get("MCPLINK_CONFIG_DIR") or user_config_dir(APP_NAME)

    @classmethod
    def config_file(cls) -> str:
        """Default configuration file path."""
        return str(Path(cls.config()) / "mcplink.json")
