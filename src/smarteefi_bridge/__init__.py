"""Core package for the Smarteefi bridge - switch and fan state sync with the Smarteefi cloud."""

__all__ = [
    "accessories",
    "cloud",
    "codec",
    "config",
    "coordinator",
    "devices",
    "discovery",
    "events",
    "poller",
    "store",
]
__version__ = "0.1.0"
