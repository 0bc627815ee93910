"""Parse and validate the desired-state document.

The document is plain YAML (see ``httpdctl state validate``); this module
turns it into the immutable :mod:`httpdctl.model` snapshot, applying the
defaults and normalisation every pass relies on.
"""
from __future__ import annotations

import ipaddress
import os
import re
from collections.abc import Mapping
from pathlib import Path

import yaml

from ..model import (
    MODULE_NAMES,
    Account,
    Bind,
    Certificate,
    Container,
    DesiredState,
    Header,
    Host,
    Instance,
    JkSetting,
    Location,
    ModuleFlag,
    PermanentRewrite,
    Protocol,
    RewriteRule,
    Site,
    VirtualHost,
    WebApp,
    Worker,
    php_release,
)
from ..strategies import OsStrategy, OsVersion, RendererFamily, strategy_for

# systemd instance names and site directory names share this alphabet.
_INSTANCE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_SITE_NAME = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")
_WORKER_CODE = re.compile(r"^[A-Za-z0-9_]+$")

# Entries under the sites root that never belong to a tenant.
RESERVED_SITE_NAMES = frozenset(
    {
        "disabled",
        "cgi-bin",
        "html",
        "mrtg",
        "cache",
        "fastcgi",
        "error",
        "icons",
        "lost+found",
        "aquota.group",
        "aquota.user",
    }
)

_FLAG_ALIASES: dict[object, ModuleFlag] = {
    True: ModuleFlag.FORCE_ON,
    False: ModuleFlag.FORCE_OFF,
    None: ModuleFlag.INFER,
}


class StateError(RuntimeError):
    """Raised when the desired state cannot be loaded or is invalid."""


def load_desired_state(path: str | os.PathLike[str], *, os_version: str | None = None) -> DesiredState:
    """Read and validate the desired-state document at *path*.

    *os_version* overrides the host's declared version (``None`` or ``auto``
    keeps it).
    """
    file_path = Path(path).expanduser()
    try:
        text = file_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise StateError(f"Desired state file not found: {file_path}") from exc
    except OSError as exc:
        raise StateError(f"Failed to read desired state {file_path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise StateError(f"Failed to parse desired state {file_path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise StateError(f"Desired state {file_path} must contain a mapping at the top level.")
    return parse_desired_state(data, os_version=os_version)


def parse_desired_state(data: Mapping[str, object], *, os_version: str | None = None) -> DesiredState:
    """Build a validated :class:`DesiredState` from a decoded document."""
    unknown = set(data) - {"host", "instances", "sites"}
    if unknown:
        raise StateError(f"Unknown desired state keys: {', '.join(sorted(map(str, unknown)))}.")

    host = _parse_host(_mapping(data.get("host"), "host"), os_version)
    strategy = strategy_for(host.os_version)

    instances: list[Instance] = []
    bind_index: dict[int, Bind] = {}
    names: set[str | None] = set()
    for position, raw in enumerate(_list(data.get("instances"), "instances")):
        instance = _parse_instance(_mapping(raw, f"instances[{position}]"), strategy)
        if instance.name in names:
            raise StateError(f"Duplicate instance name: {instance.label}")
        names.add(instance.name)
        for bind in instance.binds:
            if bind.id in bind_index:
                raise StateError(f"Duplicate bind id: {bind.id}")
            bind_index[bind.id] = bind
        instances.append(instance)

    sites: list[Site] = []
    site_names: set[str] = set()
    for position, raw in enumerate(_list(data.get("sites"), "sites")):
        site = _parse_site(_mapping(raw, f"sites[{position}]"), strategy, bind_index)
        if site.name in site_names:
            raise StateError(f"Duplicate site name: {site.name}")
        site_names.add(site.name)
        sites.append(site)

    return DesiredState(host=host, instances=tuple(instances), sites=tuple(sites))


# ----------------------------------------------------------------------
# Host and instances
# ----------------------------------------------------------------------
def _parse_host(raw: Mapping[str, object], os_version: str | None) -> Host:
    version = os_version if os_version not in (None, "auto") else raw.get("os_version")
    try:
        resolved = OsVersion(str(version))
    except ValueError as exc:
        raise StateError(f"Unsupported os_version: {version}") from exc

    cpu_count = raw.get("cpu_count")
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    accounts: dict[str, Account] = {}
    for name, value in _mapping(raw.get("accounts"), "host.accounts").items():
        entry = _mapping(value, f"host.accounts.{name}")
        accounts[str(name)] = Account(
            uid=_int(entry.get("uid"), f"host.accounts.{name}.uid"),
            gid=_int(entry.get("gid"), f"host.accounts.{name}.gid"),
        )
    return Host(
        hostname=_str(raw.get("hostname"), "host.hostname"),
        os_version=resolved.value,
        cpu_count=_positive_int(cpu_count, "host.cpu_count"),
        addresses=tuple(
            _ip(value, "host.addresses") for value in _list(raw.get("addresses"), "host.addresses")
        ),
        http_ports=tuple(
            _port(value, "host.http_ports") for value in _list(raw.get("http_ports"), "host.http_ports")
        ),
        accounts=accounts,
    )


def _parse_instance(raw: Mapping[str, object], strategy: OsStrategy) -> Instance:
    name_value = raw.get("name")
    name = None if name_value is None else str(name_value)
    label = name if name is not None else "(default)"
    if name is not None:
        if not _INSTANCE_NAME.match(name):
            raise StateError(f"Invalid instance name: {name}")
        if strategy.family is RendererFamily.LEGACY and not name.isdigit():
            raise StateError(f"Instance names must be numeric on {strategy.version.value}: {name}")

    modules: dict[str, ModuleFlag] = {}
    for module, value in _mapping(raw.get("modules"), f"instance {label}: modules").items():
        if module not in MODULE_NAMES:
            raise StateError(f"Instance {label}: unknown module override '{module}'")
        modules[str(module)] = _flag(value, f"instance {label}: modules.{module}")

    workers: list[Worker] = []
    for position, value in enumerate(_list(raw.get("workers"), f"instance {label}: workers")):
        entry = _mapping(value, f"instance {label}: workers[{position}]")
        code = _str(entry.get("code"), f"instance {label}: workers[{position}].code")
        if not _WORKER_CODE.match(code):
            raise StateError(f"Instance {label}: invalid worker code '{code}'")
        workers.append(
            Worker(
                code=code,
                port=_port(entry.get("port"), f"instance {label}: workers[{position}].port"),
                enabled=_bool(entry.get("enabled"), True),
                protocol=str(entry.get("protocol", "ajp13")),
            )
        )

    binds: list[Bind] = []
    for position, value in enumerate(_list(raw.get("binds"), f"instance {label}: binds")):
        entry = _mapping(value, f"instance {label}: binds[{position}]")
        where = f"instance {label}: binds[{position}]"
        protocol_value = str(entry.get("protocol", "http")).lower()
        try:
            protocol = Protocol(protocol_value)
        except ValueError as exc:
            raise StateError(f"{where}: unsupported protocol '{protocol_value}'") from exc
        binds.append(
            Bind(
                id=_int(entry.get("id"), f"{where}.id"),
                ip=_ip(entry.get("ip"), f"{where}.ip"),
                port=_port(entry.get("port"), f"{where}.port"),
                protocol=protocol,
            )
        )

    php_version = _optional_str(raw.get("php_version"))
    if php_version is not None:
        _php(php_version, f"instance {label}: php_version")

    return Instance(
        name=name,
        max_concurrency=_positive_int(raw.get("max_concurrency"), f"instance {label}: max_concurrency"),
        timeout=_positive_int(raw.get("timeout", 60), f"instance {label}: timeout"),
        user=str(raw.get("user", "apache")),
        group=str(raw.get("group", "apache")),
        php_version=php_version,
        enabled=_bool(raw.get("enabled"), True),
        use_suexec=_bool(raw.get("use_suexec"), True),
        modules=modules,
        workers=tuple(workers),
        binds=tuple(binds),
    )


# ----------------------------------------------------------------------
# Sites
# ----------------------------------------------------------------------
def _parse_site(raw: Mapping[str, object], strategy: OsStrategy, binds: Mapping[int, Bind]) -> Site:
    name = _str(raw.get("name"), "site name")
    if not _SITE_NAME.match(name) or name in RESERVED_SITE_NAMES:
        raise StateError(f"Invalid site name: {name}")
    where = f"site {name}"
    disabled = _bool(raw.get("disabled"), False)
    enable_cgi = _bool(raw.get("enable_cgi"), False) and not disabled
    enable_ssi = _bool(raw.get("enable_ssi"), False)
    enable_htaccess = _bool(raw.get("enable_htaccess"), False)
    enable_indexes = _bool(raw.get("enable_indexes"), False)
    follow_symlinks = _bool(raw.get("enable_follow_symlinks"), False)

    php_version = _optional_str(raw.get("php_version"))
    if php_version is not None:
        _php(php_version, f"{where}: php_version")

    if raw.get("webapps") is None:
        webapps: tuple[WebApp, ...] = (
            WebApp(
                path="",
                doc_base=f"{strategy.site_dir(name)}/htdocs",
                allow_override="All" if enable_htaccess else "None",
                options=default_options(
                    ssi=enable_ssi, indexes=enable_indexes, follow_symlinks=follow_symlinks
                ),
                enable_ssi=enable_ssi,
                enable_cgi=enable_cgi,
                cgi_options="ExecCGI",
            ),
        )
    else:
        webapps = tuple(
            _parse_webapp(_mapping(value, f"{where}: webapps[{position}]"), enable_cgi, f"{where}: webapps[{position}]")
            for position, value in enumerate(_list(raw.get("webapps"), f"{where}: webapps"))
        )
        roots = [webapp for webapp in webapps if webapp.is_root]
        if len(roots) != 1:
            raise StateError("No DocumentRoot found" if not roots else f"{where}: multiple root webapps")

    locations = tuple(
        Location(
            path=_str(entry.get("path"), f"{where}: locations[{position}].path"),
            regex=_bool(entry.get("regex"), False),
            auth_name=str(entry.get("auth_name") or ""),
            auth_user_file=str(entry.get("auth_user_file") or ""),
            auth_group_file=str(entry.get("auth_group_file") or ""),
            require=str(entry.get("require") or ""),
            handler=_optional_str(entry.get("handler")),
        )
        for position, entry in _mappings(raw.get("locations"), f"{where}: locations")
    )
    jk_settings = tuple(
        JkSetting(
            mount=_bool(entry.get("mount"), True),
            path=_str(entry.get("path"), f"{where}: jk_settings[{position}].path"),
            code=_str(entry.get("code"), f"{where}: jk_settings[{position}].code"),
        )
        for position, entry in _mappings(raw.get("jk_settings"), f"{where}: jk_settings")
    )
    permanent_rewrites = tuple(
        PermanentRewrite(
            pattern=_str(entry.get("pattern"), f"{where}: permanent_rewrites[{position}].pattern"),
            substitution=_str(
                entry.get("substitution"), f"{where}: permanent_rewrites[{position}].substitution"
            ),
            no_escape=_bool(entry.get("no_escape"), True),
        )
        for position, entry in _mappings(raw.get("permanent_rewrites"), f"{where}: permanent_rewrites")
    )

    container: Container | None = None
    if raw.get("container") is not None:
        entry = _mapping(raw.get("container"), f"{where}: container")
        container = Container(
            control_script=_str(entry.get("control_script"), f"{where}: container.control_script"),
            startable=_bool(entry.get("startable"), True),
            pid_file=_optional_str(entry.get("pid_file")),
        )

    vhosts = tuple(
        _parse_vhost(entry, strategy, binds, name, f"{where}: virtual_hosts[{position}]")
        for position, entry in _mappings(raw.get("virtual_hosts"), f"{where}: virtual_hosts")
    )

    return Site(
        name=name,
        user=str(raw.get("user", name)),
        group=str(raw.get("group", name)),
        server_admin=str(raw.get("server_admin") or f"webmaster@{name}"),
        webapps=webapps,
        manual=_bool(raw.get("manual"), False),
        disabled=disabled,
        list_first=_bool(raw.get("list_first"), False),
        php_version=php_version,
        enable_cgi=enable_cgi,
        enable_ssi=enable_ssi,
        enable_htaccess=enable_htaccess,
        enable_indexes=enable_indexes,
        enable_follow_symlinks=follow_symlinks,
        enable_anonymous_ftp=_bool(raw.get("enable_anonymous_ftp"), False) and not disabled,
        block_trace_track=_bool(raw.get("block_trace_track"), True),
        block_scm=_bool(raw.get("block_scm"), True),
        block_core_dumps=_bool(raw.get("block_core_dumps"), True),
        block_editor_backups=_bool(raw.get("block_editor_backups"), True),
        locations=locations,
        jk_settings=jk_settings,
        permanent_rewrites=permanent_rewrites,
        container=container,
        virtual_hosts=vhosts,
    )


def default_options(*, ssi: bool, indexes: bool, follow_symlinks: bool) -> str:
    """Return the ``Options`` value of a generated root webapp."""
    options = ["FollowSymLinks" if follow_symlinks else "SymLinksIfOwnerMatch"]
    if ssi:
        options.append("IncludesNOEXEC")
    if indexes:
        options.append("Indexes")
    return " ".join(options)


def _parse_webapp(raw: Mapping[str, object], site_cgi: bool, where: str) -> WebApp:
    path = str(raw.get("path") or "")
    if path and (not path.startswith("/") or path.endswith("/")):
        raise StateError(f"{where}: webapp path must start and not end with '/': {path}")
    return WebApp(
        path=path,
        doc_base=_str(raw.get("doc_base"), f"{where}.doc_base"),
        allow_override=str(raw.get("allow_override") or "None"),
        options=str(raw.get("options") or "None"),
        enable_ssi=_bool(raw.get("enable_ssi"), False),
        # Webapp CGI never outlives the site's CGI switch.
        enable_cgi=_bool(raw.get("enable_cgi"), False) and site_cgi,
        cgi_options=str(raw.get("cgi_options") or "ExecCGI"),
    )


def _parse_vhost(
    raw: Mapping[str, object],
    strategy: OsStrategy,
    binds: Mapping[int, Bind],
    site_name: str,
    where: str,
) -> VirtualHost:
    bind_id = _int(raw.get("bind"), f"{where}.bind")
    bind = binds.get(bind_id)
    if bind is None:
        raise StateError(f"{where}: bind #{bind_id} does not exist")
    log_dir = f"{strategy.site_logs_dir}/{site_name}/{bind.protocol.value}"

    certificate: Certificate | None = None
    if raw.get("certificate") is not None:
        entry = _mapping(raw.get("certificate"), f"{where}.certificate")
        certificate = Certificate(
            key=_str(entry.get("key"), f"{where}.certificate.key"),
            cert=_str(entry.get("cert"), f"{where}.certificate.cert"),
            chain=_optional_str(entry.get("chain")),
        )

    include = raw.get("include_site_config")
    if isinstance(include, bool):
        include = "true" if include else "false"

    return VirtualHost(
        bind=bind,
        primary_hostname=_str(raw.get("primary_hostname"), f"{where}.primary_hostname"),
        access_log=str(raw.get("access_log") or f"{log_dir}/access_log"),
        error_log=str(raw.get("error_log") or f"{log_dir}/error_log"),
        name=_optional_str(raw.get("name")),
        aliases=tuple(str(alias) for alias in _list(raw.get("aliases"), f"{where}.aliases")),
        certificate=certificate,
        redirect_to_primary=_bool(raw.get("redirect_to_primary"), False),
        include_site_config=_optional_str(include),
        rewrite_rules=tuple(
            RewriteRule(
                pattern=_str(entry.get("pattern"), f"{where}.rewrite_rules[{position}].pattern"),
                substitution=_str(
                    entry.get("substitution"), f"{where}.rewrite_rules[{position}].substitution"
                ),
                flags=_optional_str(entry.get("flags")),
                comment=_optional_str(entry.get("comment")),
            )
            for position, entry in _mappings(raw.get("rewrite_rules"), f"{where}.rewrite_rules")
        ),
        headers=tuple(
            Header(
                type=_str(entry.get("type"), f"{where}.headers[{position}].type"),
                name=_str(entry.get("name"), f"{where}.headers[{position}].name"),
                value=_optional_str(entry.get("value")),
                always=_bool(entry.get("always"), False),
                comment=_optional_str(entry.get("comment")),
            )
            for position, entry in _mappings(raw.get("headers"), f"{where}.headers")
        ),
        manual=_bool(raw.get("manual"), False),
        disabled=_bool(raw.get("disabled"), False),
    )


# ----------------------------------------------------------------------
# Coercion helpers
# ----------------------------------------------------------------------
def _mapping(value: object, label: str) -> Mapping[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise StateError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return value


def _list(value: object, label: str) -> list[object]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise StateError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    return value


def _mappings(value: object, label: str) -> list[tuple[int, Mapping[str, object]]]:
    return [
        (position, _mapping(item, f"{label}[{position}]"))
        for position, item in enumerate(_list(value, label))
    ]


def _str(value: object, label: str) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise StateError(f"Missing required value: {label}")
    if isinstance(value, (Mapping, list)):
        raise StateError(f"Expected {label} to be a string. Got {type(value).__name__}.")
    return str(value)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _bool(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise StateError(f"Expected a boolean. Got {value!r}.")


def _int(value: object, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise StateError(f"Expected {label} to be an integer. Got {value!r}.")
    return value


def _positive_int(value: object, label: str) -> int:
    number = _int(value, label)
    if number < 1:
        raise StateError(f"{label} must be at least 1. Got {number}.")
    return number


def _port(value: object, label: str) -> int:
    number = _int(value, label)
    if not 1 <= number <= 65535:
        raise StateError(f"{label} is not a valid port: {number}")
    return number


def _ip(value: object, label: str) -> str:
    try:
        return str(ipaddress.ip_address(str(value)))
    except ValueError as exc:
        raise StateError(f"{label}: invalid IP address {value!r}") from exc


def _php(value: str, label: str) -> None:
    try:
        release = php_release(value)
    except ValueError as exc:
        raise StateError(f"{label}: {exc}") from exc
    if len(release) < 2:
        raise StateError(f"{label}: PHP version lacks a minor component: {value}")


def _flag(value: object, label: str) -> ModuleFlag:
    if isinstance(value, bool) or value is None:
        return _FLAG_ALIASES[value]
    try:
        return ModuleFlag(str(value).lower())
    except ValueError as exc:
        raise StateError(f"{label}: expected force_on, force_off or infer. Got {value!r}.") from exc


__all__ = [
    "RESERVED_SITE_NAMES",
    "StateError",
    "default_options",
    "load_desired_state",
    "parse_desired_state",
]
