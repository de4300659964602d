"""b2d package."""

__version__ = "1.4.0"

__all__ = [
    "cli",
    "config",
    "constants",
    "disk",
    "driver",
    "dummy",
    "exceptions",
    "models",
    "network",
    "provision",
    "remote",
    "state",
    "utils",
    "vbm",
    "virtualbox",
]
