"""Remote backend provisioning."""

from .bootstrap import BackendBootstrapResult, BootstrapSettings, bootstrap_backend

__all__ = [
    "BackendBootstrapResult",
    "BootstrapSettings",
    "bootstrap_backend",
]
