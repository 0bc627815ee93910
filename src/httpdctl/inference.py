"""Module inference over the sites bound to one instance.

Every optional module resolves to ``override ?? inferred`` where the inferred
value is an "any site needs it" predicate. The predicates only look at the
immutable desired state, so evaluating them twice always agrees.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from .model import DesiredState, Instance, Protocol, Site, VirtualHost
from .strategies import OsStrategy


@dataclass(frozen=True, slots=True)
class InstanceFeatures:
    """Resolved module switches for one instance."""

    modules: Mapping[str, bool] = field(default_factory=dict)
    has_cgi: bool = False
    has_mod_php: bool = False

    def enabled(self, name: str) -> bool:
        """Return whether module *name* is loaded."""
        return self.modules.get(name, False)

    @property
    def has_ssl(self) -> bool:
        return self.enabled("ssl")

    @property
    def has_jk(self) -> bool:
        return self.enabled("jk")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "modules": dict(sorted(self.modules.items())),
            "has_cgi": self.has_cgi,
            "has_mod_php": self.has_mod_php,
        }


@dataclass(frozen=True, slots=True)
class _Scope:
    """The sites and virtual hosts one instance serves."""

    instance: Instance
    sites: tuple[Site, ...]
    vhosts: tuple[VirtualHost, ...]

    def any_site(self, predicate: Callable[[Site], bool]) -> bool:
        return any(predicate(site) for site in self.sites)

    def any_vhost(self, predicate: Callable[[VirtualHost], bool]) -> bool:
        return any(predicate(vhost) for vhost in self.vhosts)


def infer_features(state: DesiredState, strategy: OsStrategy, instance: Instance) -> InstanceFeatures:
    """Resolve every module switch for *instance*."""
    pairs = state.vhosts_for(instance)
    scope = _Scope(
        instance=instance,
        sites=tuple(state.sites_for(instance)),
        vhosts=tuple(vhost for _site, vhost in pairs),
    )
    resolved: dict[str, bool] = {}

    def resolve(name: str, inferred: bool, *, supported: bool = True) -> bool:
        # Overrides cannot load a module the OS does not ship.
        value = supported and instance.module(name).resolve(inferred)
        resolved[name] = value
        return value

    resolve("access_compat", False)
    resolve("actions", _needs_actions(scope))
    autoindex = resolve("autoindex", scope.any_site(lambda site: site.enable_indexes))
    resolve(
        "alias",
        autoindex or scope.any_site(lambda site: any(not app.is_root for app in site.webapps)),
    )
    user_file = scope.any_site(
        lambda site: any(location.auth_user_file for location in site.locations)
    )
    auth_name = scope.any_site(lambda site: any(location.auth_name for location in site.locations))
    resolve("auth_basic", user_file)
    resolve("authn_core", user_file or auth_name)
    resolve("authn_file", user_file)
    resolve("authz_core", True)
    resolve(
        "authz_groupfile",
        scope.any_site(lambda site: any(location.auth_group_file for location in site.locations)),
    )
    resolve("authz_host", False)
    resolve("authz_user", scope.any_site(lambda site: any(location.require for location in site.locations)))
    deflate = resolve("deflate", True)
    brotli = resolve("brotli", True, supported=strategy.supports_brotli)
    resolve("dir", True)
    resolve("filter", deflate or brotli)
    resolve("headers", scope.any_vhost(lambda vhost: bool(vhost.headers)))
    resolve(
        "include",
        scope.any_site(
            lambda site: site.enable_ssi or any(app.enable_ssi for app in site.webapps)
        ),
    )
    resolve("log_config", True)
    resolve("mime_magic", True)
    resolve("mime", True)
    resolve("negotiation", False)
    resolve("reqtimeout", True)
    resolve(
        "rewrite",
        scope.any_site(lambda site: site.block_trace_track or bool(site.permanent_rewrites))
        or scope.any_vhost(lambda vhost: vhost.redirect_to_primary or bool(vhost.rewrite_rules)),
    )
    ssl = resolve("ssl", scope.any_vhost(lambda vhost: vhost.bind.protocol is Protocol.HTTPS))
    resolve("setenvif", ssl)
    resolve("socache_shmcb", ssl)
    resolve(
        "status",
        scope.any_site(lambda site: any(location.is_server_status for location in site.locations)),
    )
    resolve("http2", True, supported=strategy.supports_http2)
    proxy_http = resolve("proxy_http", False)
    proxy_http2 = resolve("proxy_http2", False, supported=strategy.supports_http2)
    resolve("proxy", proxy_http or proxy_http2)
    resolve("jk", scope.any_site(lambda site: bool(site.jk_settings)))
    resolve("wsgi", False)

    return InstanceFeatures(
        modules=resolved,
        has_cgi=scope.any_site(
            lambda site: site.enable_cgi or any(app.enable_cgi for app in site.webapps)
        ),
        has_mod_php=instance.enabled and instance.has_mod_php,
    )


def _needs_actions(scope: _Scope) -> bool:
    # An enabled mod_php instance covers every PHP site it serves.
    if scope.instance.enabled and scope.instance.has_mod_php:
        return False
    return scope.any_site(lambda site: site.enable_php)


__all__ = ["InstanceFeatures", "infer_features"]
