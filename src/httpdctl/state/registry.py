"""Helpers for interacting with the httpdctl state registry.

The registry directory (``/var/lib/httpdctl/registry`` by default) stores YAML
artifacts such as ``desired.yml`` and ``predisable.yml``. Writes are atomic
(temporary file plus ``os.replace``) so a crash never leaves a partial file.
"""
from __future__ import annotations

import base64
import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path

import yaml

PREDISABLE_FILE = "predisable.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)


@dataclass(frozen=True)
class PredisableStash:
    """Byte-exact copies of manual virtual host files taken at disable time.

    Entries are keyed by the bind file name. A stash is written only once per
    disable cycle and consumed when the host is re-enabled. With *dry_run*
    the stash is read but never written or consumed.
    """

    registry: StateRegistry
    dry_run: bool = False

    def _entries(self) -> dict[str, str]:
        raw = self.registry.read(PREDISABLE_FILE, default={"stash": {}})
        if not isinstance(raw, Mapping):
            raise StateRegistryError(f"{PREDISABLE_FILE} must contain a mapping.")
        entries = raw.get("stash") or {}
        if not isinstance(entries, Mapping):
            raise StateRegistryError(f"{PREDISABLE_FILE}: 'stash' must be a mapping.")
        return {str(key): str(value) for key, value in entries.items()}

    def _save(self, entries: Mapping[str, str]) -> None:
        self.registry.write(PREDISABLE_FILE, {"stash": dict(sorted(entries.items()))})

    def get(self, key: str) -> bytes | None:
        """Return the stashed bytes for *key*."""
        encoded = self._entries().get(key)
        if encoded is None:
            return None
        return base64.b64decode(encoded)

    def contains(self, key: str) -> bool:
        return key in self._entries()

    def put(self, key: str, content: bytes) -> bool:
        """Stash *content* unless a stash already exists; returns ``True`` when written."""
        entries = self._entries()
        if key in entries:
            return False
        if self.dry_run:
            return True
        entries[key] = base64.b64encode(content).decode("ascii")
        self._save(entries)
        return True

    def discard(self, key: str) -> bool:
        """Drop the stash for *key*; returns ``True`` when one existed."""
        entries = self._entries()
        if entries.pop(key, None) is None:
            return False
        if not self.dry_run:
            self._save(entries)
        return True

    def keys(self) -> list[str]:
        return sorted(self._entries())


__all__ = ["PREDISABLE_FILE", "PredisableStash", "StateRegistry", "StateRegistryError"]
