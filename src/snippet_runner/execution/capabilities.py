from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any

from ..errors import InfrastructureError

_resource: Any
try:
    import resource as _resource_module  # POSIX only
    _resource = _resource_module
except ImportError:  # pragma: no cover - platform specific
    _resource = None


@dataclass(frozen=True, slots=True)
class IsolationCapabilities:
    """Capability flags the host platform offers to isolates.

    Example:
        ```python
        caps = IsolationCapabilities(True, True, True, True)
        ```
    """

    supports_memory_limit: bool
    supports_cpu_limit: bool
    supports_file_size_limit: bool
    supports_timeout: bool


def detect_isolation_capabilities() -> IsolationCapabilities:
    """Return capability flags for the current platform.

    Example:
        ```python
        caps = detect_isolation_capabilities()
        ```
    """
    if _resource is None:
        return IsolationCapabilities(False, False, False, bool(sys.executable))
    return IsolationCapabilities(
        supports_memory_limit=hasattr(_resource, "RLIMIT_AS"),
        supports_cpu_limit=hasattr(_resource, "RLIMIT_CPU"),
        supports_file_size_limit=hasattr(_resource, "RLIMIT_FSIZE"),
        supports_timeout=bool(sys.executable),
    )


def preflight_validate_isolation() -> None:
    """Fail before spawning anything if limits cannot be enforced.

    Example:
        ```python
        preflight_validate_isolation()
        ```
    """
    caps = detect_isolation_capabilities()
    if not caps.supports_timeout:
        raise InfrastructureError("No Python interpreter available to host isolates")
    if not caps.supports_memory_limit:
        raise InfrastructureError("Memory ceilings are not enforceable on this platform")
