from .settings import DEFAULT_CONFIG_PATH, CelerySettings, Settings, settings, settings_var

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "CelerySettings",
    "Settings",
    "settings",
    "settings_var",
]
