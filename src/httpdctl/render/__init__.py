"""Artifact builders.

Renderers are pure: they return bytes plus the side requests (directories,
symlinks, packages) that the server reconciler applies through
:mod:`httpdctl.fsapply`.
"""
from __future__ import annotations

from collections.abc import Collection, Mapping
from dataclasses import dataclass, field

from ..capacity import CapacityPlan
from ..inference import InstanceFeatures
from ..model import DesiredState
from ..strategies import OsStrategy
from ..templates import TemplateEngine


class RenderError(RuntimeError):
    """Raised when the desired state cannot be rendered."""


@dataclass(frozen=True, slots=True)
class DirectoryRequest:
    """A directory the artifact depends on."""

    path: str
    mode: int
    owner: str
    group: str


@dataclass(frozen=True, slots=True)
class SymlinkRequest:
    """A symlink the artifact depends on.

    An existing link is only replaced when its current target starts with one
    of ``replace_prefixes``; an empty tuple means always replace.
    """

    path: str
    target: str
    owner: str = "root"
    group: str = "root"
    replace_prefixes: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RenderedFile:
    """Bytes of one artifact and what installing it requires."""

    content: bytes
    packages: frozenset[str] = frozenset()
    directories: tuple[DirectoryRequest, ...] = ()

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")


@dataclass(frozen=True, slots=True)
class InstanceArtifacts:
    """Everything rendered for one instance."""

    conf_name: str
    conf: bytes
    features: InstanceFeatures
    plan: CapacityPlan
    packages: frozenset[str] = frozenset()
    workers: bytes | None = None
    workers_name: str | None = None
    enabled_ajp_ports: frozenset[int] = frozenset()
    directories: tuple[DirectoryRequest, ...] = ()
    symlinks: tuple[SymlinkRequest, ...] = ()
    keep_conf_names: frozenset[str] = frozenset()
    php_session_dir: str | None = None


@dataclass(frozen=True, slots=True)
class RenderContext:
    """Inputs shared by every renderer during one pass."""

    state: DesiredState
    strategy: OsStrategy
    templates: TemplateEngine
    installed: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls,
        state: DesiredState,
        strategy: OsStrategy,
        installed: Collection[str] = (),
        templates: TemplateEngine | None = None,
    ) -> RenderContext:
        if templates is None:
            templates = TemplateEngine.with_overrides(None)
        return cls(state=state, strategy=strategy, templates=templates, installed=frozenset(installed))

    def render(self, template_name: str, context: Mapping[str, object]) -> bytes:
        """Render one of the configuration templates."""
        return self.templates.render_to_bytes(template_name, context)

    @property
    def dollar(self) -> str | None:
        """Return the ``Define`` that expands to a literal dollar sign."""
        return self.strategy.dollar_variable

    def is_installed(self, package: str | None) -> bool:
        """Return ``True`` when *package* is present on the host."""
        return package is not None and package in self.installed


__all__ = [
    "DirectoryRequest",
    "InstanceArtifacts",
    "RenderContext",
    "RenderError",
    "RenderedFile",
    "SymlinkRequest",
]
