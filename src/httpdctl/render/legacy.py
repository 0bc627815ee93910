"""Artifact builder for CentOS 5 (``conf/hosts`` layout, SysV init)."""
from __future__ import annotations

from ..capacity import plan_capacity
from ..escape import escape
from ..inference import infer_features
from ..model import Instance, Protocol, Site, VirtualHost, php_minor_version, php_release
from ..strategies import CONF_DIR, DISABLED_SITE_NAME, SERVER_ROOT
from . import InstanceArtifacts, RenderContext, RenderedFile, RenderError
from .common import (
    bracketed,
    effective_include_config,
    header_entries,
    mod_php_module,
    primary_url,
    redirects_all,
    require_certificate,
    require_terms,
    rewrite_entries,
    server_aliases,
    site_cgi_enabled,
    site_include_lines,
)
from .workers import build_workers
from .writer import ConfWriter

SHARED_TEMPLATE = "httpd/legacy/site.conf.j2"
BIND_TEMPLATE = "httpd/legacy/bind.conf.j2"

MOD_SSL_PACKAGE = "mod_ssl"

# Database client environments mod_php was linked against, by PHP minor version.
PHP_ENVIRONMENTS: dict[str, tuple[str, ...]] = {
    "4.4": ("/opt/mysql-5.0-i686/setenv.sh", "/opt/postgresql-7.3-i686/setenv.sh"),
    "5.2": ("/opt/mysql-5.0-i686/setenv.sh", "/opt/postgresql-8.3-i686/setenv.sh"),
    "5.3": ("/opt/mysql-5.1-i686/setenv.sh", "/opt/postgresql-8.3-i686/setenv.sh"),
    "5.4": ("/opt/mysql-5.6-i686/setenv.sh", "/opt/postgresql-9.2-i686/setenv.sh"),
    "5.5": ("/opt/mysql-5.6-i686/setenv.sh", "/opt/postgresql-9.2-i686/setenv.sh"),
    "5.6": ("/opt/mysql-5.7-i686/setenv.sh", "/opt/postgresql-9.4-i686/setenv.sh"),
}

REJECTED_LOCATIONS: dict[str, tuple[str, ...]] = {
    "Protect CVS files": (
        r".*/\.#.*",
        r".*/CVS(/.*|$)",
        r".*/CVSROOT(/.*|$)",
        r".*/\.cvsignore(/.*|$)",
    ),
    "Protect Subversion files": (r".*/\.svn(/.*|$)", r".*/\.svnignore(/.*|$)"),
    "Protect Git files": (r".*/\.git(/.*|$)", r".*/\.gitignore(/.*|$)"),
    "Protect core dumps": (r".*/core\.[0-9]{1,5}(/.*|$)",),
    "Protect emacs / kwrite auto-backups": (r".*/[^/]+~(/.*|$)", r".*/#[^/]+#(/.*|$)"),
    "Protect vi / vim auto-backups": (r".*/\.[^/]+\.swp(/.*|$)",),
}


def rejected_locations(site: Site) -> dict[str, tuple[str, ...]]:
    """Return the regular-expression locations denied for *site*, by heading."""
    headings: list[str] = []
    if site.block_scm:
        headings += ["Protect CVS files", "Protect Subversion files", "Protect Git files"]
    if site.block_core_dumps:
        headings.append("Protect core dumps")
    if site.block_editor_backups:
        headings += ["Protect emacs / kwrite auto-backups", "Protect vi / vim auto-backups"]
    return {heading: REJECTED_LOCATIONS[heading] for heading in headings}


def php_environment(php_version: str) -> tuple[str, ...]:
    """Return the ``setenv.sh`` scripts sourced before starting mod_php *php_version*."""
    minor = php_minor_version(php_version)
    try:
        return PHP_ENVIRONMENTS[minor]
    except KeyError as exc:
        raise RenderError(f"Unexpected version for mod_php: {php_version}") from exc


# ----------------------------------------------------------------------
# Instance configuration
# ----------------------------------------------------------------------
def build_instance(ctx: RenderContext, instance: Instance) -> InstanceArtifacts:
    """Render ``httpd{N}.conf`` for *instance*."""
    state, strategy, dollar = ctx.state, ctx.strategy, ctx.dollar
    number = strategy.instance_number(instance)
    features = infer_features(state, strategy, instance)
    plan = plan_capacity(
        instance.max_concurrency,
        state.host.cpu_count,
        default_prefork=strategy.default_prefork,
        mod_php=instance.has_mod_php,
    )
    if features.enabled("wsgi"):
        raise RenderError(f"mod_wsgi support is not implemented on {strategy.version.value}")
    on = features.enabled
    packages: set[str] = set()
    keep: set[str] = {strategy.main_conf_name(instance)}
    if instance.php_version is not None:
        keep.add(strategy.php_dir_name(instance))
    log_dir = strategy.instance_log_dir(instance)

    out = ConfWriter()
    out.line("ServerRoot ", escape(dollar, SERVER_ROOT))
    out.line("Include conf/modules_conf/core")
    out.line(f"PidFile {strategy.pid_file(instance)}")
    out.line(f"Timeout {instance.timeout}")
    out.line(f"CoreDumpDirectory {log_dir}")
    out.line(f"LockFile {log_dir}/accept.lock")
    out.line()
    out.line("Include conf/modules_conf/prefork")
    out.line("Include conf/modules_conf/worker")
    out.line()
    out.line("<IfModule prefork.c>")
    out.line("    ListenBacklog 511")
    out.line(f"    ServerLimit {plan.prefork_server_limit}")
    out.line(f"    MaxClients {plan.prefork_max_request_workers}")
    out.line("</IfModule>")
    out.line()

    def load(enabled: bool, module: str, filename: str | None = None) -> None:
        if not enabled:
            out.write("#")
        out.line(f"LoadModule {module}_module {filename or f'modules/mod_{module}.so'}")

    load(True, "auth_basic")
    load(False, "auth_digest")
    load(True, "authn_file")
    for module in ("authn_alias", "authn_anon", "authn_dbm", "authn_default"):
        load(False, module)
    load(True, "authz_host")
    load(True, "authz_user")
    load(False, "authz_owner")
    load(True, "authz_groupfile")
    for module in ("authz_dbm", "authz_default", "ldap", "authnz_ldap"):
        load(False, module)
    load(on("include"), "include")
    load(True, "log_config")
    load(False, "logio")
    load(True, "env")
    load(False, "ext_filter")
    for module in ("mime_magic", "expires", "deflate", "headers"):
        load(True, module)
    load(False, "usertrack")
    load(True, "setenvif")
    load(True, "mime")
    load(False, "dav")
    load(True, "status")
    load(on("autoindex"), "autoindex")
    for module in ("info", "dav_fs", "vhost_alias"):
        load(False, module)
    for module in ("negotiation", "dir", "imagemap", "actions"):
        load(True, module)
    load(False, "speling")
    load(False, "userdir")
    for module in ("alias", "rewrite", "proxy"):
        load(True, module)
    load(False, "proxy_balancer")
    load(False, "proxy_ftp")
    load(True, "proxy_http")
    load(False, "proxy_connect")
    load(False, "cache")
    load(instance.use_suexec, "suexec")
    for module in ("disk_cache", "file_cache", "mem_cache"):
        load(False, module)
    load(features.has_cgi, "cgi")
    load(False, "cern_meta")
    load(False, "asis")
    jk = features.has_jk
    if jk:
        load(True, "jk", strategy.jk_module_file)
    ssl = features.has_ssl
    if ssl:
        packages.add(MOD_SSL_PACKAGE)
    if ssl or ctx.is_installed(MOD_SSL_PACKAGE):
        load(ssl, "ssl")
    if instance.enabled and instance.php_version is not None:
        major = php_release(instance.php_version)[0]
        minor = php_minor_version(instance.php_version)
        module, library = mod_php_module(major)
        out.line()
        out.line("# Enable mod_php")
        out.line(
            "LoadModule ",
            escape(dollar, module),
            " ",
            escape(dollar, f"/opt/php-{minor}-i686/lib/apache/{library}"),
        )
        out.line("<FilesMatch \\.php$>")
        out.line("    SetHandler application/x-httpd-php")
        out.line("</FilesMatch>")
    out.line()
    for name in (
        "mod_ident",
        "mod_log_config",
        "mod_mime_magic",
        "mod_setenvif",
        "mod_proxy",
        "mod_mime",
        "mod_dav",
        "mod_status",
    ):
        out.line(f"Include conf/modules_conf/{name}")
    if not on("autoindex"):
        out.write("#")
    out.line("Include conf/modules_conf/mod_autoindex")
    for name in ("mod_negotiation", "mod_dir", "mod_userdir"):
        out.line(f"Include conf/modules_conf/{name}")
    if not ssl:
        out.write("#")
    out.line("Include conf/modules_conf/mod_ssl")
    if jk:
        out.line("Include conf/modules_conf/mod_jk")
    out.line()
    out.line("ServerAdmin ", escape(dollar, f"root@{state.host.hostname}"))
    out.line()
    out.line("<IfModule mod_ssl.c>")
    out.line(f"    SSLSessionCache shmcb:/var/cache/httpd/mod_ssl/ssl_scache{number}(512000)")
    out.line("</IfModule>")
    out.line()
    out.line("User ", escape(dollar, instance.effective_user))
    out.line("Group ", escape(dollar, instance.effective_group))
    out.line()
    out.line("ServerName ", escape(dollar, state.host.hostname))
    out.line()
    out.line(f"ErrorLog {log_dir}/error_log")
    out.line(f"CustomLog {log_dir}/access_log combined")
    out.line()
    out.line("<IfModule mod_dav_fs.c>")
    out.line(f"    DAVLockDB /var/lib/dav{number}/lockdb")
    out.line("</IfModule>")
    out.line()
    if jk:
        out.line("<IfModule mod_jk.c>")
        out.line(f"    JkWorkersFile {CONF_DIR}/{strategy.workers_name(instance)}")
        out.line(f"    JkLogFile {log_dir}/mod_jk.log")
        out.line(f"    JkShmFile {log_dir}/jk-runtime-status")
        out.line("</IfModule>")
        out.line()
    for bind in instance.binds:
        address = escape(dollar, f"{bracketed(bind.ip)}:{bind.port}")
        out.line("Listen ", address)
        out.line("NameVirtualHost ", address)
    pairs = state.vhosts_for(instance)
    for list_first in (True, False):
        out.line()
        for site, vhost in pairs:
            if site.list_first is list_first:
                out.line("Include ", escape(dollar, f"conf/hosts/{strategy.bind_file_name(site, vhost)}"))

    workers: bytes | None = None
    workers_name: str | None = None
    ajp_ports: frozenset[int] = frozenset()
    if any(site.jk_settings for site, _vhost in pairs):
        workers, ajp_ports = build_workers(instance)
        workers_name = strategy.workers_name(instance)
        keep.add(workers_name)

    return InstanceArtifacts(
        conf_name=strategy.main_conf_name(instance),
        conf=out.to_bytes(),
        features=features,
        plan=plan,
        packages=frozenset(packages),
        workers=workers,
        workers_name=workers_name,
        enabled_ajp_ports=ajp_ports,
        keep_conf_names=frozenset(keep),
    )


# ----------------------------------------------------------------------
# Per-site shared include
# ----------------------------------------------------------------------
def build_shared(ctx: RenderContext, site: Site) -> RenderedFile:
    """Render ``conf/hosts/<site>``."""
    dollar = ctx.dollar
    enable_cgi = site_cgi_enabled(site)

    locations: list[dict[str, object]] = []
    for location in site.locations:
        if location.handler is not None:
            raise RenderError(f"SetHandler not implemented on {ctx.strategy.version.value}")
        locations.append(
            {
                "tag": "LocationMatch" if location.regex else "Location",
                "path": escape(dollar, location.path),
                "auth_name": escape(dollar, location.auth_name) if location.auth_name else None,
                "auth_user_file": escape(dollar, location.auth_user_file) if location.auth_user_file else None,
                "auth_group_file": escape(dollar, location.auth_group_file) if location.auth_group_file else None,
                "require": (
                    [escape(dollar, term) for term in require_terms(location.require)]
                    if location.require
                    else None
                ),
            }
        )

    webapps: list[dict[str, object]] = []
    found_root = False
    for webapp in site.sorted_webapps():
        if webapp.enable_cgi and not enable_cgi:
            raise RenderError("Unable to enable webapp CGI when site has CGI disabled")
        found_root = found_root or webapp.is_root
        webapps.append(
            {
                "root": webapp.is_root,
                "path": webapp.path,
                "alias": None if webapp.is_root else escape(dollar, webapp.path),
                "doc_base": escape(dollar, webapp.doc_base),
                "allow_override": webapp.allow_override,
                "options": webapp.options,
                "cgi_directory": (
                    escape(dollar, f"{webapp.doc_base}/cgi-bin") if webapp.enable_cgi else None
                ),
                "cgi_options": webapp.cgi_options,
            }
        )
    if not found_root:
        raise RenderError("No DocumentRoot found")

    context = {
        "server_admin": escape(dollar, site.server_admin),
        "cgi_php": site.enable_php and enable_cgi,
        "suexec_user": escape(dollar, site.effective_user),
        "suexec_group": escape(dollar, site.effective_group),
        "block_trace_track": site.block_trace_track,
        "rejected_locations": [
            (heading, [escape(dollar, pattern) for pattern in patterns])
            for heading, patterns in rejected_locations(site).items()
        ],
        "permanent_rewrites": [
            {
                "pattern": escape(dollar, rewrite.pattern),
                "substitution": escape(dollar, rewrite.substitution),
                "flags": "[L,NE,R=permanent]" if rewrite.no_escape else "[L,R=permanent]",
            }
            for rewrite in site.permanent_rewrites
        ],
        "locations": locations,
        "webapps": webapps,
        "jk_mounts": [
            {
                "directive": "JkMount" if setting.mount else "JkUnMount",
                "path": escape(dollar, setting.path),
                "code": escape(dollar, setting.code),
            }
            for setting in site.sorted_jk_settings()
        ],
    }
    return RenderedFile(content=ctx.render(SHARED_TEMPLATE, context))


# ----------------------------------------------------------------------
# Per-bind virtual host
# ----------------------------------------------------------------------
def _ssl_env_files(site: Site) -> str | None:
    enable_cgi = site_cgi_enabled(site)
    if enable_cgi and site.enable_ssi:
        return "\\.(cgi|shtml)$"
    if enable_cgi:
        return "\\.cgi$"
    if site.enable_ssi:
        return "\\.shtml$"
    return None


def build_bind(ctx: RenderContext, site: Site, vhost: VirtualHost, *, disabled: bool) -> RenderedFile:
    """Render ``conf/hosts/<site>_<ip>_<port>[_<name>]``."""
    dollar = ctx.dollar
    bind = vhost.bind
    certificate = require_certificate(vhost)
    primary = vhost.primary_hostname

    ssl = None
    if bind.protocol is Protocol.HTTPS and certificate is not None:
        ssl = {
            "cert": escape(dollar, certificate.cert),
            "key": escape(dollar, certificate.key),
            "chain": None if certificate.chain is None else escape(dollar, certificate.chain),
        }
    redirect = None
    if vhost.redirect_to_primary:
        redirect = {
            "primary": escape(dollar, f"!={primary}"),
            "ip": escape(dollar, f"!={bind.ip}"),
            "target": escape(dollar, primary_url(vhost) + "%{REQUEST_URI}"),
        }
    target = DISABLED_SITE_NAME if disabled else ctx.strategy.shared_file_name(site.name)
    include = escape(dollar, f"conf/hosts/{target}")

    context = {
        "address": escape(dollar, f"{bracketed(bind.ip)}:{bind.port}"),
        "primary_hostname": escape(dollar, primary),
        "aliases": [escape(dollar, alias) for alias in server_aliases(vhost)],
        "access_log": escape(dollar, vhost.access_log),
        "error_log": escape(dollar, vhost.error_log),
        "certificate": ssl,
        "ssl_env_files": _ssl_env_files(site),
        "redirect": redirect,
        "rewrite_rules": rewrite_entries(dollar, vhost),
        "headers": header_entries(dollar, vhost),
        "include_lines": site_include_lines(include, effective_include_config(vhost, redirects_all(vhost))),
    }
    return RenderedFile(content=ctx.render(BIND_TEMPLATE, context))


__all__ = [
    "PHP_ENVIRONMENTS",
    "REJECTED_LOCATIONS",
    "build_bind",
    "build_instance",
    "build_shared",
    "php_environment",
    "rejected_locations",
]
