"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, fields
from typing import Optional
import json

from dotenv import load_dotenv

WRITE_MODES = ('sequential', 'callback')
FRAMINGS = ('raw', 'text')


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_optional(value: str, cast=int):
    value = value.strip()
    if not value or value.lower() == 'none':
        return None
    return cast(value)


@dataclass
class Config:
    """
    Throughput harness configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (TCPBENCH_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = 'localhost'
    port: int = 12345

    # Transfer
    expected_total_bytes: int = 82178160
    unit_size: int = 64 * 1024  # 64KB
    write_mode: str = 'sequential'
    framing: str = 'raw'
    eof_heuristic: bool = False

    # Timeouts (seconds)
    write_timeout: float = 35.0
    connect_timeout: float = 30.0
    close_timeout: float = 5.0
    read_timeout: Optional[float] = 60.0

    # Receiver
    concurrency_limit: int = 10
    read_size: int = 128 * 1024  # 128KB
    socket_buffer_size: Optional[int] = None
    progress_interval: int = 100

    # Logging
    log_level: str = 'INFO'

    def validate(self) -> 'Config':
        """Raise ValueError for settings the harness cannot run with."""
        if self.unit_size <= 0:
            raise ValueError(f"unit_size must be positive, got {self.unit_size}")
        if self.read_size <= 0:
            raise ValueError(f"read_size must be positive, got {self.read_size}")
        if self.concurrency_limit <= 0:
            raise ValueError(f"concurrency_limit must be positive, got {self.concurrency_limit}")
        if self.expected_total_bytes < 0:
            raise ValueError("expected_total_bytes must be >= 0")
        if self.write_timeout <= 0:
            raise ValueError("write_timeout must be positive")
        if self.write_mode not in WRITE_MODES:
            raise ValueError(f"write_mode must be one of {WRITE_MODES}, got {self.write_mode!r}")
        if self.framing not in FRAMINGS:
            raise ValueError(f"framing must be one of {FRAMINGS}, got {self.framing!r}")
        return self

    @classmethod
    def from_env(cls, base: Optional['Config'] = None) -> 'Config':
        """
        Load configuration from environment variables.

        Only variables that are set override `base` (or the defaults).
        """
        load_dotenv()

        config = cls(**(base.to_dict() if base else {}))

        # Network
        config.host = os.getenv('TCPBENCH_HOST', config.host)
        config.port = int(os.getenv('TCPBENCH_PORT', config.port))

        # Transfer
        config.expected_total_bytes = int(
            os.getenv('TCPBENCH_EXPECTED_TOTAL_BYTES', config.expected_total_bytes)
        )
        config.unit_size = int(os.getenv('TCPBENCH_UNIT_SIZE', config.unit_size))
        config.write_mode = os.getenv('TCPBENCH_WRITE_MODE', config.write_mode)
        config.framing = os.getenv('TCPBENCH_FRAMING', config.framing)
        if 'TCPBENCH_EOF_HEURISTIC' in os.environ:
            config.eof_heuristic = _env_bool(os.environ['TCPBENCH_EOF_HEURISTIC'])

        # Timeouts
        config.write_timeout = float(os.getenv('TCPBENCH_WRITE_TIMEOUT', config.write_timeout))
        config.connect_timeout = float(os.getenv('TCPBENCH_CONNECT_TIMEOUT', config.connect_timeout))
        config.close_timeout = float(os.getenv('TCPBENCH_CLOSE_TIMEOUT', config.close_timeout))
        if 'TCPBENCH_READ_TIMEOUT' in os.environ:
            config.read_timeout = _env_optional(os.environ['TCPBENCH_READ_TIMEOUT'], float)

        # Receiver
        config.concurrency_limit = int(
            os.getenv('TCPBENCH_CONCURRENCY_LIMIT', config.concurrency_limit)
        )
        config.read_size = int(os.getenv('TCPBENCH_READ_SIZE', config.read_size))
        if 'TCPBENCH_SOCKET_BUFFER_SIZE' in os.environ:
            config.socket_buffer_size = _env_optional(os.environ['TCPBENCH_SOCKET_BUFFER_SIZE'])

        # Logging
        config.log_level = os.getenv('TCPBENCH_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys in {path}: {', '.join(sorted(unknown))}")

        return cls(**data)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    config = Config.from_env(base=config)

    return config.validate()


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "localhost",
  "port": 12345,
  "expected_total_bytes": 82178160,
  "unit_size": 65536,
  "write_mode": "sequential",
  "framing": "raw",
  "eof_heuristic": false,
  "write_timeout": 35.0,
  "connect_timeout": 30.0,
  "close_timeout": 5.0,
  "read_timeout": 60.0,
  "concurrency_limit": 10,
  "read_size": 131072,
  "socket_buffer_size": 131072,
  "log_level": "INFO"
}
"""
