"""
Exception types raised by the pruning engine
"""

from typing import Optional


class PruningError(Exception):
    """Base class for pruning failures"""

    def __init__(self, message: str, layer: Optional[str] = None, check: Optional[str] = None):
        self.layer = layer
        self.check = check
        details = []
        if layer is not None:
            details.append(f"layer={layer}")
        if check is not None:
            details.append(f"check={check}")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)


class ConfigurationError(PruningError, ValueError):
    """Malformed or inconsistent configuration, snapshot or tensor shape"""


class PruningInvariantError(PruningError, RuntimeError):
    """An internal invariant was violated before a schedule formula could run"""
