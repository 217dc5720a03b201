"""
Settings Manager for IoT Machine Control System
Handles configuration loading, validation, and environment variable management
"""

import os
import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, field
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()

CONFIG_DIR = Path(__file__).parent
DEFAULT_CONFIG_FILE = CONFIG_DIR / "config.yaml"

logger = logging.getLogger(__name__)


@dataclass
class MqttConfig:
    """MQTT broker connection settings"""
    url: str = "mqtt://localhost:1883"
    client_id: str = "machine-control-core"
    keepalive: int = 60
    qos: int = 1
    connect_timeout: int = 30
    reconnect_min_delay: int = 1
    reconnect_max_delay: int = 30
    topics: Dict[str, str] = field(default_factory=dict)

    @property
    def host(self) -> str:
        """Broker host parsed from the URL"""
        return urlparse(self.url).hostname or "localhost"

    @property
    def port(self) -> int:
        """Broker port parsed from the URL"""
        return urlparse(self.url).port or 1883

    @property
    def username(self) -> Optional[str]:
        return urlparse(self.url).username

    @property
    def password(self) -> Optional[str]:
        return urlparse(self.url).password


@dataclass
class DatabaseConfig:
    """History database settings"""
    url: str = "sqlite:///./data/machine_history.db"
    echo: bool = False

    @property
    def is_sqlite(self) -> bool:
        """Check if the history store is SQLite"""
        return self.url.startswith("sqlite")


@dataclass
class ControlConfig:
    """Command and safety control settings"""
    plant_id: str = "A1"
    ack_timeout_seconds: Optional[float] = None
    expiry_check_interval: float = 5.0
    over_temp_threshold: float = 85.0
    seed_defaults: bool = True
    closed_command_retention: int = 1000


class Settings:
    """
    Central configuration management class
    Singleton pattern to ensure single instance across application
    """

    _instance = None
    _initialized = False

    def __new__(cls, *args, **kwargs):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, config_file: Optional[Path] = None):
        """Initialize settings from configuration file"""
        if not self._initialized:
            env_file = os.getenv("MACHINE_CONTROL_CONFIG")
            self.config_file = Path(config_file or env_file or DEFAULT_CONFIG_FILE)
            self._config = {}
            self._load_config()
            self._override_with_env()
            self._validate_config()
            self._initialized = True

    def _load_config(self):
        """Load configuration from YAML file"""
        try:
            with open(self.config_file, 'r') as f:
                self._config = yaml.safe_load(f) or {}
            logger.debug(f"Configuration loaded from {self.config_file}")
        except FileNotFoundError:
            logger.warning(f"Configuration file not found: {self.config_file}, using defaults")
            self._config = self._get_default_config()

    def _get_default_config(self) -> Dict[str, Any]:
        """Return default configuration if config file not found"""
        return {
            'plant': {'id': 'A1'},
            'mqtt': {
                'url': 'mqtt://localhost:1883',
                'client_id': 'machine-control-core',
                'keepalive': 60,
                'qos': 1,
                'reconnect': {'min_delay': 1, 'max_delay': 30}
            },
            'database': {'url': 'sqlite:///./data/machine_history.db', 'echo': False},
            'registry': {'seed_defaults': True},
            'commands': {'ack_timeout_seconds': None, 'expiry_check_interval': 5, 'closed_retention': 1000},
            'alerts': {'over_temp_threshold': 85},
            'logging': {'level': 'INFO'}
        }

    def _override_with_env(self):
        """Override configuration with environment variables"""
        if 'MQTT_URL' in os.environ:
            self.set('mqtt.url', os.getenv('MQTT_URL'))

        if 'DATABASE_URL' in os.environ:
            self.set('database.url', os.getenv('DATABASE_URL'))

        if 'PLANT_ID' in os.environ:
            self.set('plant.id', os.getenv('PLANT_ID'))

        if 'LOG_LEVEL' in os.environ:
            self.set('logging.level', os.getenv('LOG_LEVEL').upper())

        if 'ACK_TIMEOUT_SECONDS' in os.environ:
            raw = os.getenv('ACK_TIMEOUT_SECONDS', '').strip()
            self.set('commands.ack_timeout_seconds', float(raw) if raw else None)

    def _validate_config(self):
        """Validate configuration values"""
        port = self.get_mqtt_config().port
        if port < 1 or port > 65535:
            raise ValueError("MQTT port must be between 1 and 65535")

        timeout = self.get('commands.ack_timeout_seconds')
        if timeout is not None and timeout <= 0:
            raise ValueError("Command ack timeout must be positive")

        if self.get('commands.expiry_check_interval', 5) <= 0:
            raise ValueError("Expiry check interval must be positive")

        if self.get('commands.closed_retention', 1000) < 0:
            raise ValueError("Closed command retention cannot be negative")

        level = self.get('logging.level', 'INFO')
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f"Unsupported log level: {level}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation
        Example: settings.get('mqtt.reconnect.max_delay')
        """
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value if value is not None else default

    def set(self, key: str, value: Any):
        """
        Set configuration value using dot notation
        Example: settings.set('mqtt.qos', 0)
        """
        keys = key.split('.')
        config = self._config

        for k in keys[:-1]:
            if not isinstance(config.get(k), dict):
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    def get_mqtt_config(self) -> MqttConfig:
        """Get MQTT configuration object"""
        mqtt_config = self.get('mqtt', {})
        reconnect = mqtt_config.get('reconnect') or {}
        return MqttConfig(
            url=mqtt_config.get('url', 'mqtt://localhost:1883'),
            client_id=mqtt_config.get('client_id', 'machine-control-core'),
            keepalive=mqtt_config.get('keepalive', 60),
            qos=mqtt_config.get('qos', 1),
            connect_timeout=mqtt_config.get('connect_timeout', 30),
            reconnect_min_delay=reconnect.get('min_delay', 1),
            reconnect_max_delay=reconnect.get('max_delay', 30),
            topics=mqtt_config.get('topics') or {}
        )

    def get_database_config(self) -> DatabaseConfig:
        """Get history database configuration object"""
        db_config = self.get('database', {})
        return DatabaseConfig(
            url=db_config.get('url', 'sqlite:///./data/machine_history.db'),
            echo=db_config.get('echo', False)
        )

    def get_control_config(self) -> ControlConfig:
        """Get command/safety configuration object"""
        return ControlConfig(
            plant_id=str(self.get('plant.id', 'A1')),
            ack_timeout_seconds=self.get('commands.ack_timeout_seconds'),
            expiry_check_interval=float(self.get('commands.expiry_check_interval', 5)),
            over_temp_threshold=float(self.get('alerts.over_temp_threshold', 85)),
            seed_defaults=bool(self.get('registry.seed_defaults', True)),
            closed_command_retention=int(self.get('commands.closed_retention', 1000))
        )

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging section as a dictionary"""
        return copy.deepcopy(self.get('logging', {}))

    def reload(self, config_file: Optional[Path] = None):
        """Reload configuration from file"""
        self._initialized = False
        self.__init__(config_file or self.config_file)
        logger.info(f"Configuration reloaded from {self.config_file}")


# Global settings instance
settings = Settings()
