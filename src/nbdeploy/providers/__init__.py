"""Provider interfaces for nbdeploy."""
from __future__ import annotations

from .compose import ComposeError, ComposeProvider, ProvisionerStatus, ServiceHealth

__all__ = [
    "ComposeError",
    "ComposeProvider",
    "ProvisionerStatus",
    "ServiceHealth",
]
