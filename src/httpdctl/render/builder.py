"""Dispatch artifact rendering to the builder of the host's OS generation."""
from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from types import ModuleType

from ..model import DesiredState, Instance, Site, VirtualHost
from ..strategies import OsStrategy, RendererFamily
from ..templates import TemplateEngine
from . import InstanceArtifacts, RenderContext, RenderedFile, legacy, modern


@dataclass(frozen=True, slots=True)
class ArtifactBuilder:
    """Render every configuration artifact for one desired-state snapshot.

    The builder performs no I/O; installed packages are passed in so that
    "load when installed" module lines stay deterministic.
    """

    context: RenderContext

    @classmethod
    def for_state(
        cls,
        state: DesiredState,
        strategy: OsStrategy,
        installed: Collection[str] = (),
        templates: TemplateEngine | None = None,
    ) -> ArtifactBuilder:
        return cls(RenderContext.build(state, strategy, installed, templates))

    @property
    def strategy(self) -> OsStrategy:
        return self.context.strategy

    @property
    def _family(self) -> ModuleType:
        if self.strategy.family is RendererFamily.LEGACY:
            return legacy
        return modern

    def instance(self, instance: Instance) -> InstanceArtifacts:
        """Render the main configuration (and worker map) of *instance*."""
        return self._family.build_instance(self.context, instance)

    def shared(self, site: Site) -> RenderedFile:
        """Render the include shared by every virtual host of *site*."""
        return self._family.build_shared(self.context, site)

    def bind(self, site: Site, vhost: VirtualHost, *, disabled: bool = False) -> RenderedFile:
        """Render the virtual host file for one bind of *site*."""
        return self._family.build_bind(self.context, site, vhost, disabled=disabled)


__all__ = ["ArtifactBuilder"]
