"""Desired-state data model.

Everything here is immutable; a convergence pass works on one consistent
snapshot loaded by :mod:`httpdctl.state`.
"""
from __future__ import annotations

import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from packaging.version import InvalidVersion, Version


class ModuleFlag(str, Enum):
    """Per-instance module override."""

    FORCE_ON = "force_on"
    FORCE_OFF = "force_off"
    INFER = "infer"

    def resolve(self, inferred: bool) -> bool:
        """Return the override if set, otherwise *inferred*."""
        if self is ModuleFlag.FORCE_ON:
            return True
        if self is ModuleFlag.FORCE_OFF:
            return False
        return inferred


class Protocol(str, Enum):
    """Application protocol of a bind."""

    HTTP = "http"
    HTTPS = "https"


# Modules that accept an override on an instance.
MODULE_NAMES: tuple[str, ...] = (
    "access_compat",
    "actions",
    "alias",
    "auth_basic",
    "authn_core",
    "authn_file",
    "authz_core",
    "authz_groupfile",
    "authz_host",
    "authz_user",
    "autoindex",
    "brotli",
    "deflate",
    "dir",
    "filter",
    "headers",
    "http2",
    "include",
    "jk",
    "log_config",
    "mime",
    "mime_magic",
    "negotiation",
    "proxy",
    "proxy_http",
    "proxy_http2",
    "reqtimeout",
    "rewrite",
    "setenvif",
    "socache_shmcb",
    "ssl",
    "status",
    "wsgi",
)


@dataclass(frozen=True, slots=True)
class Account:
    """Numeric identity of a system account."""

    uid: int
    gid: int


@dataclass(frozen=True, slots=True)
class Bind:
    """An IP:port:protocol endpoint owned by one instance."""

    id: int
    ip: str
    port: int
    protocol: Protocol

    @property
    def is_specific_address(self) -> bool:
        """Return ``True`` unless the address is loopback or a wildcard."""
        address = ipaddress.ip_address(self.ip)
        return not (address.is_loopback or address.is_unspecified)

    @property
    def default_port(self) -> int:
        """Return the well-known port for the bind's protocol."""
        return 443 if self.protocol is Protocol.HTTPS else 80


@dataclass(frozen=True, slots=True)
class Worker:
    """An AJP connector worker exposed to an instance."""

    code: str
    port: int
    enabled: bool = True
    protocol: str = "ajp13"


@dataclass(frozen=True, slots=True)
class Instance:
    """One running Apache process group."""

    name: str | None
    max_concurrency: int
    timeout: int
    user: str
    group: str
    php_version: str | None = None
    enabled: bool = True
    use_suexec: bool = True
    modules: Mapping[str, ModuleFlag] = field(default_factory=dict)
    workers: tuple[Worker, ...] = ()
    binds: tuple[Bind, ...] = ()

    def module(self, name: str) -> ModuleFlag:
        """Return the override for module *name*."""
        return self.modules.get(name, ModuleFlag.INFER)

    @property
    def label(self) -> str:
        """Return a human readable identifier."""
        return self.name if self.name is not None else "(default)"

    @property
    def has_mod_php(self) -> bool:
        """Return ``True`` when PHP is embedded in this instance."""
        return self.php_version is not None

    @property
    def php_major(self) -> int | None:
        """Return the embedded PHP major version, if any."""
        if self.php_version is None:
            return None
        return php_release(self.php_version)[0]

    @property
    def effective_user(self) -> str:
        """Return the account Apache runs as; disabled instances fall back to apache."""
        return self.user if self.enabled else "apache"

    @property
    def effective_group(self) -> str:
        """Return the group Apache runs as; disabled instances fall back to apache."""
        return self.group if self.enabled else "apache"


@dataclass(frozen=True, slots=True)
class WebApp:
    """A mount of a document root into a site's URL space."""

    path: str
    doc_base: str
    allow_override: str = "None"
    options: str = "None"
    enable_ssi: bool = False
    enable_cgi: bool = False
    cgi_options: str = "None"

    @property
    def is_root(self) -> bool:
        """Return ``True`` for the webapp mounted at the site root."""
        return self.path == ""


@dataclass(frozen=True, slots=True)
class Location:
    """An authenticated or handler-bound ``<Location>`` block."""

    path: str
    regex: bool = False
    auth_name: str = ""
    auth_user_file: str = ""
    auth_group_file: str = ""
    require: str = ""
    handler: str | None = None

    @property
    def is_server_status(self) -> bool:
        """Return ``True`` when the location serves ``mod_status`` output."""
        return self.handler == "server-status"


@dataclass(frozen=True, slots=True)
class JkSetting:
    """A ``JkMount``/``JkUnMount`` line."""

    mount: bool
    path: str
    code: str

    def sort_key(self) -> tuple[int, str, str]:
        """Mounts first, then by path, then by worker code."""
        return (0 if self.mount else 1, self.path, self.code)


@dataclass(frozen=True, slots=True)
class PermanentRewrite:
    """A site-wide permanent redirect."""

    pattern: str
    substitution: str
    no_escape: bool = True


@dataclass(frozen=True, slots=True)
class Container:
    """Stop/start contract of an external application container."""

    control_script: str
    startable: bool = True
    pid_file: str | None = None


@dataclass(frozen=True, slots=True)
class Certificate:
    """TLS material referenced by a virtual host."""

    key: str
    cert: str
    chain: str | None = None


@dataclass(frozen=True, slots=True)
class RewriteRule:
    """A ``RewriteRule`` emitted into a virtual host."""

    pattern: str
    substitution: str
    flags: str | None = None
    comment: str | None = None

    def flag_set(self) -> set[str]:
        """Return the individual flags with any ``=value`` suffix removed."""
        if not self.flags:
            return set()
        result: set[str] = set()
        for raw in self.flags.split(","):
            name = raw.strip().split("=", 1)[0].strip()
            if name:
                result.add(name)
        return result

    def has_flag(self, *names: str) -> bool:
        """Return ``True`` when any of *names* is set (case-insensitive)."""
        flags = {flag.lower() for flag in self.flag_set()}
        return any(name.lower() in flags for name in names)


@dataclass(frozen=True, slots=True)
class Header:
    """A ``Header`` directive emitted into a virtual host."""

    type: str
    name: str
    value: str | None = None
    always: bool = False
    comment: str | None = None


@dataclass(frozen=True, slots=True)
class VirtualHost:
    """The pairing of a site to a bind."""

    bind: Bind
    primary_hostname: str
    access_log: str
    error_log: str
    name: str | None = None
    aliases: tuple[str, ...] = ()
    certificate: Certificate | None = None
    redirect_to_primary: bool = False
    include_site_config: str | None = None
    rewrite_rules: tuple[RewriteRule, ...] = ()
    headers: tuple[Header, ...] = ()
    manual: bool = False
    disabled: bool = False


@dataclass(frozen=True, slots=True)
class Site:
    """A tenant website."""

    name: str
    user: str
    group: str
    server_admin: str
    webapps: tuple[WebApp, ...]
    manual: bool = False
    disabled: bool = False
    list_first: bool = False
    php_version: str | None = None
    enable_cgi: bool = False
    enable_ssi: bool = False
    enable_htaccess: bool = False
    enable_indexes: bool = False
    enable_follow_symlinks: bool = False
    enable_anonymous_ftp: bool = False
    block_trace_track: bool = True
    block_scm: bool = True
    block_core_dumps: bool = True
    block_editor_backups: bool = True
    locations: tuple[Location, ...] = ()
    jk_settings: tuple[JkSetting, ...] = ()
    permanent_rewrites: tuple[PermanentRewrite, ...] = ()
    container: Container | None = None
    virtual_hosts: tuple[VirtualHost, ...] = ()

    @property
    def enable_php(self) -> bool:
        """Return ``True`` when the site uses PHP in any form."""
        return self.php_version is not None

    @property
    def effective_user(self) -> str:
        """Return the account files are owned by; disabled sites use apache."""
        return "apache" if self.disabled else self.user

    @property
    def effective_group(self) -> str:
        """Return the group files are owned by; disabled sites use apache."""
        return "apache" if self.disabled else self.group

    def root_webapp(self) -> WebApp | None:
        """Return the webapp mounted at the empty path."""
        for webapp in self.webapps:
            if webapp.is_root:
                return webapp
        return None

    def sorted_webapps(self) -> list[WebApp]:
        """Return webapps ordered by mount path."""
        return sorted(self.webapps, key=lambda webapp: webapp.path)

    def sorted_jk_settings(self) -> list[JkSetting]:
        """Return the distinct jk settings in rendering order."""
        return sorted(set(self.jk_settings), key=JkSetting.sort_key)


@dataclass(frozen=True, slots=True)
class Host:
    """The machine being converged."""

    hostname: str
    os_version: str
    cpu_count: int
    addresses: tuple[str, ...] = ()
    http_ports: tuple[int, ...] = ()
    accounts: Mapping[str, Account] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class DesiredState:
    """A consistent snapshot of everything the host should run."""

    host: Host
    instances: tuple[Instance, ...]
    sites: tuple[Site, ...]

    def instance(self, name: str | None) -> Instance | None:
        """Return the instance named *name* (``None`` is the default instance)."""
        for instance in self.instances:
            if instance.name == name:
                return instance
        return None

    def site(self, name: str) -> Site | None:
        """Return the site named *name*."""
        for site in self.sites:
            if site.name == name:
                return site
        return None

    def instance_for_bind(self, bind: Bind) -> Instance:
        """Return the instance owning *bind*."""
        for instance in self.instances:
            if any(candidate.id == bind.id for candidate in instance.binds):
                return instance
        raise KeyError(f"No instance owns bind #{bind.id}")

    def vhosts_for(self, instance: Instance) -> list[tuple[Site, VirtualHost]]:
        """Return every (site, virtual host) pair bound to *instance*."""
        bind_ids = {bind.id for bind in instance.binds}
        pairs: list[tuple[Site, VirtualHost]] = []
        for site in self.sites:
            for vhost in site.virtual_hosts:
                if vhost.bind.id in bind_ids:
                    pairs.append((site, vhost))
        return pairs

    def sites_for(self, instance: Instance) -> list[Site]:
        """Return the distinct sites with at least one bind on *instance*."""
        seen: dict[str, Site] = {}
        for site, _vhost in self.vhosts_for(instance):
            seen.setdefault(site.name, site)
        return list(seen.values())

    def instances_for(self, site: Site) -> list[Instance]:
        """Return the distinct instances *site* is bound to."""
        result: list[Instance] = []
        for vhost in site.virtual_hosts:
            instance = self.instance_for_bind(vhost.bind)
            if instance not in result:
                result.append(instance)
        return result


def php_release(version: str) -> tuple[int, ...]:
    """Return the numeric release tuple of a PHP version string."""
    try:
        return Version(version).release
    except InvalidVersion as exc:
        raise ValueError(f"Invalid PHP version: {version}") from exc


def php_minor_version(version: str) -> str:
    """Return ``major.minor`` for a PHP version string, e.g. ``8.1``."""
    release = php_release(version)
    if len(release) < 2:
        raise ValueError(f"PHP version lacks a minor component: {version}")
    return f"{release[0]}.{release[1]}"


__all__ = [
    "Account",
    "Bind",
    "Certificate",
    "Container",
    "DesiredState",
    "Header",
    "Host",
    "Instance",
    "JkSetting",
    "Location",
    "MODULE_NAMES",
    "ModuleFlag",
    "PermanentRewrite",
    "Protocol",
    "RewriteRule",
    "Site",
    "VirtualHost",
    "WebApp",
    "Worker",
    "php_minor_version",
    "php_release",
]
