"""Provider interfaces for httpdctl."""
from __future__ import annotations

from .initd import InitScriptError, InitScriptProvider
from .packages import PackageError, PackageProvider
from .processes import ProcessProbe, ProcessProbeError
from .selinux import SelinuxError, SelinuxProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "InitScriptError",
    "InitScriptProvider",
    "PackageError",
    "PackageProvider",
    "ProcessProbe",
    "ProcessProbeError",
    "SelinuxError",
    "SelinuxProvider",
    "SystemdError",
    "SystemdProvider",
]
