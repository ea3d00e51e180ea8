"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
import json

from dotenv import load_dotenv


# Google's public STUN server, used whenever the relay cannot supply ICE servers
DEFAULT_STUN_URL = 'stun:stun.l.google.com:19302'


@dataclass
class Config:
    """
    Client Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (FILECOFFEE_*)
    2. Config file (config.json)
    3. Default values
    """
    # Relay
    signaling_url: str = 'ws://localhost:3030/ws'
    api_base_url: str = 'http://localhost:3030'
    public_url: str = 'http://localhost:8080'

    # Transfer
    chunk_size: int = 256 * 1024  # 256KB
    max_buffered_amount: int = 64 * 1024 * 1024  # 64MB high-water mark
    buffered_amount_low_threshold: int = 0
    progress_step: int = 1  # receiver acks every N percent

    # Storage
    download_dir: Path = field(default_factory=lambda: Path('./downloads'))

    # ICE
    fallback_stun_url: str = DEFAULT_STUN_URL

    # Timeouts (seconds)
    ice_fetch_timeout: float = 5.0
    connect_timeout: float = 10.0

    # Local control API
    api_host: str = '127.0.0.1'
    api_port: int = 8080

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Relay
        config.signaling_url = os.getenv('FILECOFFEE_SIGNALING_URL', config.signaling_url)
        config.api_base_url = os.getenv('FILECOFFEE_API_URL', config.api_base_url)
        config.public_url = os.getenv('FILECOFFEE_PUBLIC_URL', config.public_url)

        # Transfer
        config.chunk_size = int(os.getenv('FILECOFFEE_CHUNK_SIZE', config.chunk_size))
        config.max_buffered_amount = int(
            os.getenv('FILECOFFEE_MAX_BUFFERED', config.max_buffered_amount)
        )
        config.buffered_amount_low_threshold = int(
            os.getenv('FILECOFFEE_BUFFERED_LOW', config.buffered_amount_low_threshold)
        )
        config.progress_step = int(os.getenv('FILECOFFEE_PROGRESS_STEP', config.progress_step))

        # Storage
        download_dir = os.getenv('FILECOFFEE_DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # ICE
        config.fallback_stun_url = os.getenv('FILECOFFEE_STUN_URL', config.fallback_stun_url)

        # Timeouts
        config.ice_fetch_timeout = float(
            os.getenv('FILECOFFEE_ICE_TIMEOUT', config.ice_fetch_timeout)
        )
        config.connect_timeout = float(
            os.getenv('FILECOFFEE_CONNECT_TIMEOUT', config.connect_timeout)
        )

        # API
        config.api_host = os.getenv('FILECOFFEE_API_HOST', config.api_host)
        config.api_port = int(os.getenv('FILECOFFEE_API_PORT', config.api_port))

        # Logging
        config.log_level = os.getenv('FILECOFFEE_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Relay
        config.signaling_url = data.get('signaling_url', config.signaling_url)
        config.api_base_url = data.get('api_base_url', config.api_base_url)
        config.public_url = data.get('public_url', config.public_url)

        # Transfer
        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.max_buffered_amount = data.get('max_buffered_amount', config.max_buffered_amount)
        config.buffered_amount_low_threshold = data.get(
            'buffered_amount_low_threshold', config.buffered_amount_low_threshold
        )
        config.progress_step = data.get('progress_step', config.progress_step)

        # Storage
        if 'download_dir' in data:
            config.download_dir = Path(data['download_dir'])

        # ICE
        config.fallback_stun_url = data.get('fallback_stun_url', config.fallback_stun_url)

        # Timeouts
        config.ice_fetch_timeout = data.get('ice_fetch_timeout', config.ice_fetch_timeout)
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)

        # API
        config.api_host = data.get('api_host', config.api_host)
        config.api_port = data.get('api_port', config.api_port)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'signaling_url': self.signaling_url,
            'api_base_url': self.api_base_url,
            'public_url': self.public_url,
            'chunk_size': self.chunk_size,
            'max_buffered_amount': self.max_buffered_amount,
            'buffered_amount_low_threshold': self.buffered_amount_low_threshold,
            'progress_step': self.progress_step,
            'download_dir': str(self.download_dir),
            'fallback_stun_url': self.fallback_stun_url,
            'ice_fetch_timeout': self.ice_fetch_timeout,
            'connect_timeout': self.connect_timeout,
            'api_host': self.api_host,
            'api_port': self.api_port,
            'log_level': self.log_level,
        }

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
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in config.to_dict():
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "signaling_url": "wss://filecoffee.example.com/ws",
  "api_base_url": "https://filecoffee.example.com",
  "public_url": "https://filecoffee.example.com",
  "chunk_size": 262144,
  "max_buffered_amount": 67108864,
  "download_dir": "./downloads",
  "log_level": "INFO"
}
"""


if __name__ == "__main__":
    # Print example config
    print("Example configuration file (config.json):")
    print(EXAMPLE_CONFIG)
