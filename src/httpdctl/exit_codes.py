"""Process exit statuses returned by ``httpdctl`` commands."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit status of a command, keyed by the failing layer."""

    OK = 0
    # Bad desired state, bad arguments, or a rejected site start/stop.
    VALIDATION = 2
    # Missing system account or lock timeout.
    ENVIRONMENT = 3
    # A host tool (systemctl, rpm, yum, semanage, tar) failed.
    PROVIDER = 4
