"""kodemachine package."""

__all__ = [
    "arbitration",
    "cli",
    "clone",
    "config",
    "constants",
    "control",
    "document",
    "exceptions",
    "lock",
    "models",
    "orchestrator",
    "utils",
]
