from .settings import (
    Settings,
    MqttConfig,
    DatabaseConfig,
    ControlConfig,
    settings,
)

__all__ = [
    "Settings",
    "MqttConfig",
    "DatabaseConfig",
    "ControlConfig",
    "settings",
]
