"""SELinux port labels, booleans and file context restoration."""
from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

_PORT_LINE = re.compile(r"^(?P<type>\S+)\s+(?P<proto>tcp|udp|sctp|dccp)\s+(?P<ports>\d.*)$")
_RESTORECON_BATCH = 100


class SelinuxError(RuntimeError):
    """Raised when an SELinux tool fails or reports something unexpected."""


@dataclass(slots=True)
class SelinuxProvider:
    """Wrap ``semanage``, ``getsebool``, ``setsebool`` and ``restorecon``."""

    semanage_bin: str = "semanage"
    getsebool_bin: str = "getsebool"
    setsebool_bin: str = "setsebool"
    restorecon_bin: str = "restorecon"

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------
    def configure_ports(
        self,
        ports: Iterable[int],
        label: str,
        *,
        protocol: str = "tcp",
        dry_run: bool = False,
    ) -> bool:
        """Make *ports* exactly the locally added ports carrying *label*.

        Ports the base policy already labels are not added again. Returns
        ``True`` when any local assignment changed.
        """
        wanted = set(ports)
        policy = self._port_listing(local_only=False)
        local = self._port_listing(local_only=True)
        local_for_label = local.get((label, protocol), set())
        default_for_label = policy.get((label, protocol), set()) - local_for_label
        desired_local = wanted - default_for_label
        other_local = {
            port
            for (other, proto), assigned in local.items()
            if proto == protocol and other != label
            for port in assigned
        }

        changed = False
        for port in sorted(local_for_label - desired_local):
            LOGGER.info("Removing SELinux port %s/%s from %s", port, protocol, label)
            self._semanage(["port", "-d", "-t", label, "-p", protocol, str(port)], dry_run=dry_run)
            changed = True
        for port in sorted(desired_local - local_for_label):
            action = "-m" if port in other_local else "-a"
            LOGGER.info("Adding SELinux port %s/%s to %s", port, protocol, label)
            self._semanage(["port", action, "-t", label, "-p", protocol, str(port)], dry_run=dry_run)
            changed = True
        return changed

    def _port_listing(self, *, local_only: bool) -> dict[tuple[str, str], set[int]]:
        args = ["port", "-l"]
        if local_only:
            args.append("-C")
        result = self._semanage(args, dry_run=False)
        return parse_port_listing(result.stdout or "")

    # ------------------------------------------------------------------
    # Booleans
    # ------------------------------------------------------------------
    def get_boolean(self, name: str) -> bool:
        """Return the current value of SELinux boolean *name*."""
        result = self._run_command(
            [self.getsebool_bin, name],
            check=True,
            error_prefix=f"{self.getsebool_bin} {name}",
            dry_run=False,
        )
        output = (result.stdout or "").strip()
        if output == f"{name} --> on":
            return True
        if output == f"{name} --> off":
            return False
        raise SelinuxError(f"Unexpected output from {self.getsebool_bin} {name}: {output!r}")

    def set_boolean(self, name: str, value: bool, *, dry_run: bool = False) -> None:
        """Persistently set SELinux boolean *name*."""
        state = "on" if value else "off"
        LOGGER.info("Setting SELinux boolean %s: %s", name, state)
        self._run_command(
            [self.setsebool_bin, "-P", name, state],
            check=True,
            error_prefix=f"{self.setsebool_bin} -P {name} {state}",
            dry_run=dry_run,
        )

    def ensure_boolean(self, name: str, value: bool, *, dry_run: bool = False) -> bool:
        """Set *name* to *value* when it differs; returns ``True`` when changed."""
        if self.get_boolean(name) is value:
            return False
        self.set_boolean(name, value, dry_run=dry_run)
        return True

    # ------------------------------------------------------------------
    # File contexts
    # ------------------------------------------------------------------
    def restorecon(self, paths: Sequence[str], *, dry_run: bool = False) -> None:
        """Refresh the security label of every path in *paths*."""
        ordered = sorted(set(paths))
        for start in range(0, len(ordered), _RESTORECON_BATCH):
            batch = ordered[start : start + _RESTORECON_BATCH]
            self._run_command(
                [self.restorecon_bin, "-R", *batch],
                check=True,
                error_prefix=self.restorecon_bin,
                dry_run=dry_run,
            )

    # ------------------------------------------------------------------
    def _semanage(self, args: Sequence[str], *, dry_run: bool) -> subprocess.CompletedProcess[str]:
        joined = " ".join(args)
        return self._run_command(
            [self.semanage_bin, *args],
            check=True,
            error_prefix=f"{self.semanage_bin} {joined}",
            dry_run=dry_run,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SelinuxError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise SelinuxError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


def parse_port_listing(text: str) -> dict[tuple[str, str], set[int]]:
    """Parse ``semanage port -l`` output into ``{(type, proto): ports}``.

    Ranges such as ``5000-5010`` are expanded.
    """
    listing: dict[tuple[str, str], set[int]] = {}
    for line in text.splitlines():
        match = _PORT_LINE.match(line.strip())
        if match is None:
            continue
        ports = listing.setdefault((match["type"], match["proto"]), set())
        for item in match["ports"].split(","):
            item = item.strip()
            if not item:
                continue
            low, _, high = item.partition("-")
            try:
                first = int(low)
                last = int(high) if high else first
            except ValueError as exc:
                raise SelinuxError(f"Unexpected port entry in semanage output: {item!r}") from exc
            ports.update(range(first, last + 1))
    return listing


__all__ = ["SelinuxError", "SelinuxProvider", "parse_port_listing"]
