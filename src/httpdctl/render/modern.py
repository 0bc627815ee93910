"""Artifact builder for the systemd generation (CentOS 7 and Rocky 9).

The layout follows the distribution's own ``conf.modules.d`` files so that an
operator comparing the rendered configuration with a stock install can match
every ``LoadModule`` line to its origin.
"""
from __future__ import annotations

from ..capacity import MpmType, plan_capacity
from ..escape import escape, escape_prefix_replaced
from ..inference import InstanceFeatures, infer_features
from ..model import Instance, Protocol, Site, VirtualHost, php_minor_version, php_release
from ..strategies import CONF_DIR, SERVER_ROOT, OsVersion
from . import (
    DirectoryRequest,
    InstanceArtifacts,
    RenderContext,
    RenderedFile,
    RenderError,
    SymlinkRequest,
)
from .common import (
    bracketed,
    effective_include_config,
    header_entries,
    mod_php_module,
    redirects_all,
    require_certificate,
    require_terms,
    rewrite_entries,
    server_aliases,
    site_cgi_enabled,
    site_include_lines,
    ssl_path,
)
from .workers import build_workers
from .writer import ConfWriter

SHARED_TEMPLATE = "httpd/site.inc.j2"
BIND_TEMPLATE = "httpd/bind.conf.j2"

HTTPD_TOOLS_PACKAGE = "httpd-tools"
MOD_SSL_PACKAGE = "mod_ssl"
MOD_WSGI_PACKAGE = "mod_wsgi"
MOD_HTTP2_PACKAGE = "mod_http2"
VAR_LIB_PHP = "/var/lib/php"
PHP_INI_TARGET_PREFIXES = ("../../../../opt/php-", "../../../opt/php-")


def _load(out: ConfWriter, enabled: bool, module: str, filename: str | None = None) -> None:
    if not enabled:
        out.write("# ")
    out.line(f"LoadModule {module}_module {filename or f'modules/mod_{module}.so'}")


def _commented(out: ConfWriter, *modules: str) -> None:
    for module in modules:
        _load(out, False, module)


def _cgi_line(out: ConfWriter, has_cgi: bool, text: str) -> None:
    if not has_cgi:
        out.write("# ")
    out.line(text)


# ----------------------------------------------------------------------
# Instance configuration
# ----------------------------------------------------------------------
def build_instance(ctx: RenderContext, instance: Instance) -> InstanceArtifacts:
    """Render ``httpd[@name].conf`` (or ``name.conf``) for *instance*."""
    state, strategy, dollar = ctx.state, ctx.strategy, ctx.dollar
    rocky9 = strategy.version is OsVersion.ROCKY9
    features = infer_features(state, strategy, instance)
    plan = plan_capacity(
        instance.max_concurrency,
        state.host.cpu_count,
        default_prefork=strategy.default_prefork,
        mod_php=instance.has_mod_php,
    )
    suffix = "" if instance.name is None else f"@{instance.name}"
    log_dir = strategy.instance_log_dir(instance)
    packages: set[str] = set()
    directories: list[DirectoryRequest] = []
    symlinks: list[SymlinkRequest] = []
    keep: set[str] = {strategy.main_conf_name(instance)}
    on = features.enabled

    out = ConfWriter()
    out.line("#").line("# core").line("#")
    out.line("ServerRoot ", escape(dollar, SERVER_ROOT))
    out.line("Include aoserv.conf.d/core.conf")
    out.line("ErrorLog ", escape(dollar, f"{log_dir}/error_log"))
    out.line("ServerAdmin ", escape(dollar, f"root@{state.host.hostname}"))
    out.line("ServerName ", escape(dollar, state.host.hostname))
    out.line(f"TimeOut {instance.timeout}")
    out.line()
    out.line("#").line("# Load mpm").line("#").line("# From conf.modules.d/00-mpm.conf").line("#")
    for mpm in MpmType:
        _load(out, plan.type is mpm, f"mpm_{mpm.value}")
    out.line()
    out.line("#").line("# Configure mpm").line("#")
    out.line("Include aoserv.conf.d/mpm_*.conf")
    out.line("#").line("# From aoserv.conf.d/mpm_common.conf").line("#")
    out.line("CoreDumpDirectory ", escape(dollar, log_dir))
    out.line("# ListenBacklog 511")
    if rocky9:
        out.line(f"ListenCoresBucketsRatio {plan.listen_cores_buckets_ratio}")
    out.line("PidFile ", escape(dollar, strategy.pid_file(instance)))
    out.line("#").line("# From aoserv.conf.d/mpm_prefork.conf").line("#")
    out.line("<IfModule mpm_prefork_module>")
    out.line(f"    MaxSpareServers {plan.prefork_max_spare_servers}")
    out.line(f"    MinSpareServers {plan.prefork_min_spare_servers}")
    out.line(f"    MaxRequestWorkers {plan.prefork_max_request_workers}")
    out.line(f"    ServerLimit {plan.prefork_server_limit}")
    out.line("</IfModule>")
    out.line("#").line("# From aoserv.conf.d/mpm_worker.conf").line("# From aoserv.conf.d/mpm_event.conf").line("#")
    out.line("<IfModule !mpm_prefork_module>")
    out.line(f"    MaxRequestWorkers {plan.worker_max_request_workers}")
    out.line(f"    MaxSpareThreads {plan.worker_max_spare_threads}")
    out.line(f"    MinSpareThreads {plan.worker_min_spare_threads}")
    out.line(f"    ServerLimit {plan.worker_server_limit}")
    out.line(f"    ThreadLimit {plan.worker_thread_limit}")
    out.line(f"    ThreadsPerChild {plan.worker_threads_per_child}")
    out.line("</IfModule>")
    out.line()

    _write_base_modules(out, ctx, instance, features)

    if strategy.supports_brotli:
        out.line("#").line("# From conf.modules.d/00-brotli.conf").line("#")
        _load(out, on("brotli"), "brotli")
    out.line("#").line("# From conf.modules.d/00-dav.conf").line("#")
    _commented(out, "dav", "dav_fs", "dav_lock")
    out.line("#").line("# From conf.modules.d/00-lua.conf").line("#")
    _commented(out, "lua")
    if rocky9:
        out.line("#").line("# From conf.modules.d/00-optional.conf").line("#")
        _commented(
            out,
            "asis",
            "authnz_fcgi",
            "buffer",
            "heartbeat",
            "heartmonitor",
            "usertrack",
            "dialup",
            "charset_lite",
            "log_debug",
            "log_forensic",
            "ratelimit",
            "reflector",
            "sed",
            "speling",
        )
    out.line("#").line("# From conf.modules.d/00-proxy.conf").line("#")
    _load(out, on("proxy"), "proxy")
    _commented(
        out,
        "lbmethod_bybusyness",
        "lbmethod_byrequests",
        "lbmethod_bytraffic",
        "lbmethod_heartbeat",
        "proxy_ajp",
        "proxy_balancer",
        "proxy_connect",
        "proxy_express",
        "proxy_fcgi",
        "proxy_fdpass",
        "proxy_ftp",
    )
    _load(out, on("proxy_http"), "proxy_http")
    if rocky9:
        _commented(out, "proxy_hcheck")
    _commented(out, "proxy_scgi")
    if rocky9:
        _commented(out, "proxy_uwsgi")
    _commented(out, "proxy_wstunnel")

    ssl = features.has_ssl
    if ssl:
        packages.add(MOD_SSL_PACKAGE)
    ssl_installed = ssl or ctx.is_installed(MOD_SSL_PACKAGE)
    if ssl_installed:
        out.line("#").line("# From conf.modules.d/00-ssl.conf").line("#")
        _load(out, ssl, "ssl")
    out.line("#").line("# From conf.modules.d/00-systemd.conf").line("#")
    out.line("LoadModule systemd_module modules/mod_systemd.so")
    out.line("#").line("# From conf.modules.d/01-cgi.conf").line("#")
    has_cgi = features.has_cgi
    threaded = ("<IfModule !mpm_prefork_module>",) if rocky9 else (
        "<IfModule mpm_worker_module>",
        "<IfModule mpm_event_module>",
    )
    for opening in threaded:
        _cgi_line(out, has_cgi, opening)
        _cgi_line(out, has_cgi, "    LoadModule cgid_module modules/mod_cgid.so")
        _cgi_line(out, has_cgi, "</IfModule>")
    _cgi_line(out, has_cgi, "<IfModule mpm_prefork_module>")
    _cgi_line(out, has_cgi, "    LoadModule cgi_module modules/mod_cgi.so")
    _cgi_line(out, has_cgi, "</IfModule>")
    if strategy.supports_http2:
        out.line("#").line("# From conf.modules.d/10-h2.conf").line("#")
        _load(out, on("http2"), "http2")
        out.line("#").line("# From conf.modules.d/10-proxy_h2.conf").line("#")
        _load(out, on("proxy_http2"), "proxy_http2")
        if on("http2") or on("proxy_http2"):
            packages.add(MOD_HTTP2_PACKAGE)

    wsgi = on("wsgi")
    if strategy.supports_wsgi:
        if wsgi:
            packages.add(MOD_WSGI_PACKAGE)
        wsgi_installed = wsgi or ctx.is_installed(MOD_WSGI_PACKAGE)
    elif wsgi:
        raise RenderError(f"mod_wsgi is not supported on {strategy.version.value}")
    else:
        wsgi_installed = False
    if wsgi_installed:
        out.line("#").line("# From conf.modules.d/10-wsgi.conf").line("#")
        _load(out, wsgi, "wsgi")

    jk = features.has_jk
    if strategy.jk_package is None:
        jk_installed = True
    else:
        if jk:
            packages.add(strategy.jk_package)
        jk_installed = jk or ctx.is_installed(strategy.jk_package)
    if jk_installed:
        out.line("#").line("# From conf.d/mod_jk.conf.sample").line("#")
        _load(out, jk, "jk", strategy.jk_module_file)

    out.line()
    out.line("#").line("# Configure Modules").line("#")
    out.line("Include aoserv.conf.d/mod_*.conf")
    if rocky9:
        out.line("#").line("# From aoserv.conf.d/mod_cache.conf").line("#")
        out.line("<IfModule cache_module>")
        out.line("    CacheLockPath ", escape(dollar, f"/tmp/mod_cache-lock{suffix}"))
        out.line("</IfModule>")
    out.line("#").line("# From aoserv.conf.d/mod_dav_fs.conf").line("#")
    out.line("<IfModule dav_fs_module>")
    out.line("    DavLockDB ", escape(dollar, f"/var/lib/dav{suffix}/lockdb"))
    out.line("</IfModule>")
    if jk or jk_installed:
        out.line("#").line("# From aoserv.conf.d/mod_jk.conf").line("#")
        out.line("<IfModule jk_module>")
        out.line("    JkWorkersFile ", escape(dollar, f"conf/{strategy.workers_name(instance)}"))
        out.line("    JkShmFile ", escape(dollar, f"{log_dir}/jk-runtime-status"))
        out.line("    JkLogFile ", escape(dollar, f"{log_dir}/mod_jk.log"))
        out.line("</IfModule>")
    out.line("#").line("# From aoserv.conf.d/mod_log_config.conf").line("#")
    out.line("<IfModule log_config_module>")
    out.line("    CustomLog ", escape(dollar, f"{log_dir}/access_log"), " combined")
    out.line("</IfModule>")
    if ssl or ssl_installed:
        out.line("#").line("# From aoserv.conf.d/mod_ssl.conf").line("#")
        out.line("<IfModule ssl_module>")
        out.line(
            "    SSLSessionCache ",
            escape(dollar, f"shmcb:/run/{strategy.run_name(instance)}/sslcache(512000)"),
        )
        out.line("</IfModule>")
    out.line("#").line("# From aoserv.conf.d/mod_unixd.conf").line("#")
    out.line("<IfModule unixd_module>")
    out.line("    User ", escape(dollar, instance.effective_user))
    out.line("    Group ", escape(dollar, instance.effective_group))
    out.line("</IfModule>")

    php_session_dir: str | None = None
    if instance.php_version is not None:
        minor = php_minor_version(instance.php_version)
        major = php_release(instance.php_version)[0]
        php_dir_name = strategy.php_dir_name(instance)
        keep.add(php_dir_name)
        php_ini_dir = f"{CONF_DIR}/{php_dir_name}"
        directories.append(DirectoryRequest(php_ini_dir, 0o750, "root", instance.group))
        if major == 5:
            target = f"../../../../opt/php-{minor}/lib/php.ini"
        else:
            target = f"../../../opt/php-{minor}/php.ini"
            directories.append(DirectoryRequest(f"{php_ini_dir}/conf.d", 0o750, "root", instance.group))
        symlinks.append(
            SymlinkRequest(
                f"{php_ini_dir}/php.ini",
                target,
                replace_prefixes=PHP_INI_TARGET_PREFIXES,
            )
        )
        php_session_dir = strategy.php_session_dir(instance)
        directories.append(DirectoryRequest(VAR_LIB_PHP, 0o755, "root", "root"))
        directories.append(DirectoryRequest(php_session_dir, 0o700, instance.user, instance.group))
        if instance.enabled:
            module, library = mod_php_module(major)
            out.line()
            out.line("#").line("# Enable mod_php").line("#")
            out.line(
                "LoadModule ",
                escape(dollar, module),
                " ",
                escape(dollar, f"/opt/php-{minor}/lib/apache/{library}"),
            )
            out.line("<IfModule ", escape(dollar, module), ">")
            out.line("    PHPIniDir ", escape(dollar, php_ini_dir))
            out.line("    php_value session.save_path ", escape(dollar, php_session_dir))
            out.line("    <FilesMatch \\.php$>")
            out.line("        SetHandler application/x-httpd-php")
            out.line("    </FilesMatch>")
            out.line("</IfModule>")

    out.line()
    out.line("#").line("# Binds").line("#")
    for bind in instance.binds:
        out.write("Listen ", escape(dollar, f"{bracketed(bind.ip)}:{bind.port}"))
        if bind.port != bind.default_port:
            out.write(" ", bind.protocol.value)
        out.line()
    out.line()
    out.line("#").line("# Sites").line("#")
    pairs = state.vhosts_for(instance)
    for list_first in (True, False):
        for site, vhost in pairs:
            if site.list_first is list_first:
                name = strategy.bind_file_name(site, vhost)
                out.line("Include ", escape(dollar, f"sites-enabled/{name}"))

    workers, workers_name, ajp_ports = _build_workers(ctx, instance, pairs)
    if workers_name is not None:
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
        directories=tuple(directories),
        symlinks=tuple(symlinks),
        keep_conf_names=frozenset(keep),
        php_session_dir=php_session_dir,
    )


def _write_base_modules(
    out: ConfWriter,
    ctx: RenderContext,
    instance: Instance,
    features: InstanceFeatures,
) -> None:
    rocky9 = ctx.strategy.version is OsVersion.ROCKY9
    on = features.enabled
    out.line("#").line("# Load Modules").line("#").line("# From conf.modules.d/00-base.conf").line("#")
    _load(out, on("access_compat"), "access_compat")
    _load(out, on("actions"), "actions")
    _load(out, on("alias"), "alias")
    _commented(out, "allowmethods")
    _load(out, on("auth_basic"), "auth_basic")
    _commented(out, "auth_digest", "authn_anon")
    _load(out, on("authn_core"), "authn_core")
    _commented(out, "authn_dbd", "authn_dbm")
    _load(out, on("authn_file"), "authn_file")
    _commented(out, "authn_socache")
    _load(out, on("authz_core"), "authz_core")
    _commented(out, "authz_dbd", "authz_dbm")
    _load(out, on("authz_groupfile"), "authz_groupfile")
    _load(out, on("authz_host"), "authz_host")
    _commented(out, "authz_owner")
    _load(out, on("authz_user"), "authz_user")
    _load(out, on("autoindex"), "autoindex")
    _commented(out, "cache", "cache_disk")
    if rocky9:
        _commented(out, "cache_socache")
    _commented(out, "data", "dbd")
    _load(out, on("deflate"), "deflate")
    _load(out, on("dir"), "dir")
    _commented(out, "dumpio", "echo", "env", "expires", "ext_filter")
    _load(out, on("filter"), "filter")
    _load(out, on("headers"), "headers")
    _load(out, on("include"), "include")
    _commented(out, "info")
    _load(out, on("log_config"), "log_config")
    _commented(out, "logio")
    if rocky9:
        _commented(out, "macro")
    _load(out, on("mime_magic"), "mime_magic")
    _load(out, on("mime"), "mime")
    _load(out, on("negotiation"), "negotiation")
    _commented(out, "remoteip")
    _load(out, on("reqtimeout"), "reqtimeout")
    if rocky9:
        _commented(out, "request")
    _load(out, on("rewrite"), "rewrite")
    _load(out, on("setenvif"), "setenvif")
    _commented(out, "slotmem_plain", "slotmem_shm", "socache_dbm", "socache_memcache")
    if rocky9:
        _commented(out, "socache_redis")
    _load(out, on("socache_shmcb"), "socache_shmcb")
    _load(out, on("status"), "status")
    _commented(out, "substitute")
    _load(out, instance.use_suexec, "suexec")
    _commented(out, "unique_id")
    _load(out, True, "unixd")
    _commented(out, "userdir", "version", "vhost_alias")
    if rocky9:
        _commented(out, "watchdog")
    else:
        _commented(
            out,
            "buffer",
            "watchdog",
            "heartbeat",
            "heartmonitor",
            "usertrack",
            "dialup",
            "charset_lite",
            "log_debug",
            "ratelimit",
            "reflector",
            "request",
            "sed",
            "speling",
        )


def _build_workers(
    ctx: RenderContext,
    instance: Instance,
    pairs: list[tuple[Site, VirtualHost]],
) -> tuple[bytes | None, str | None, frozenset[int]]:
    if not any(site.jk_settings for site, _vhost in pairs):
        return None, None, frozenset()
    content, ports = build_workers(instance)
    return content, ctx.strategy.workers_name(instance), ports




# ----------------------------------------------------------------------
# Per-site shared include
# ----------------------------------------------------------------------
SITE_OPTIONS = ("block_trace_track", "block_scm", "block_core_dumps", "block_editor_backups")


def build_shared(ctx: RenderContext, site: Site) -> RenderedFile:
    """Render ``sites-available/<site>.inc``."""
    state, strategy, dollar = ctx.state, ctx.strategy, ctx.dollar
    site_prefix = f"{strategy.site_dir(site.name)}/"
    site_variable = f"{strategy.sites_dir}/${{site.name}}/"

    def replaced(value: str) -> str:
        return escape_prefix_replaced(dollar, value, site_prefix, site_variable)

    packages: set[str] = set()
    directories: list[DirectoryRequest] = []
    enable_cgi = site_cgi_enabled(site)
    instances = state.instances_for(site)
    majors = sorted({instance.php_major for instance in instances if instance.php_major is not None})
    php_modules: list[str] = []
    for major in majors:
        module = mod_php_module(major)[0]
        if module not in php_modules:
            php_modules.append(module)

    session_dir: str | None = None
    if php_modules:
        var_dir = f"{strategy.site_dir(site.name)}/var"
        session_dir = f"{var_dir}/php/session"
        for path in (var_dir, f"{var_dir}/php", session_dir):
            directories.append(DirectoryRequest(path, 0o770, site.user, site.group))

    locations: list[dict[str, object]] = []
    for location in site.locations:
        if location.auth_user_file:
            packages.add(HTTPD_TOOLS_PACKAGE)
        locations.append(
            {
                "server_status": location.is_server_status,
                "indent": "    " if location.is_server_status else "",
                "tag": "LocationMatch" if location.regex else "Location",
                "path": escape(dollar, location.path),
                "auth_name": escape(dollar, location.auth_name) if location.auth_name else None,
                "auth_user_file": replaced(location.auth_user_file) if location.auth_user_file else None,
                "auth_group_file": replaced(location.auth_group_file) if location.auth_group_file else None,
                "require": (
                    [escape(dollar, term) for term in require_terms(location.require)]
                    if location.require
                    else None
                ),
                "handler": None if location.handler is None else escape(dollar, location.handler),
            }
        )

    jk_settings = site.sorted_jk_settings()
    php_index = site.enable_php or any(instance.has_mod_php for instance in instances)
    webapps: list[dict[str, object]] = []
    found_root = False
    for webapp in site.sorted_webapps():
        if webapp.enable_cgi and not enable_cgi:
            raise RenderError("Unable to enable webapp CGI when site has CGI disabled")
        found_root = found_root or webapp.is_root
        cgi_directory = None
        if webapp.enable_cgi:
            cgi_base = f"{webapp.doc_base}/cgi-bin"
            cgi_directory = replaced(cgi_base) if webapp.is_root else escape(dollar, cgi_base)
        webapps.append(
            {
                "root": webapp.is_root,
                "path": webapp.path,
                "alias": None if webapp.is_root else escape(dollar, webapp.path),
                "document_root": escape(dollar, webapp.doc_base),
                "directory": replaced(webapp.doc_base),
                "allow_override": webapp.allow_override,
                "options": webapp.options,
                "index": directory_index(
                    jk=bool(jk_settings), ssi=webapp.enable_ssi, php=php_index, cgi=enable_cgi
                ),
                "cgi_directory": cgi_directory,
                "cgi_options": webapp.cgi_options,
            }
        )
    if not found_root:
        raise RenderError("No DocumentRoot found")

    context = {
        "cgi_php": site.enable_php and enable_cgi,
        "php_modules": [escape(dollar, module) for module in php_modules],
        "negated_php_modules": [escape(dollar, f"!{module}") for module in php_modules],
        "session_dir": None if session_dir is None else escape(dollar, session_dir),
        "locations": locations,
        "site_options": [name for name in SITE_OPTIONS if getattr(site, name)],
        "permanent_rewrites": [
            {
                "pattern": escape(dollar, rewrite.pattern),
                "substitution": escape(dollar, rewrite.substitution),
                "flags": "[END,NE,R=permanent]" if rewrite.no_escape else "[END,R=permanent]",
            }
            for rewrite in site.permanent_rewrites
        ],
        "webapps": webapps,
        "jk_mounts": [
            {
                "directive": "JkMount" if setting.mount else "JkUnMount",
                "path": escape(dollar, setting.path),
                "code": escape(dollar, setting.code),
            }
            for setting in jk_settings
        ],
    }
    return RenderedFile(
        content=ctx.render(SHARED_TEMPLATE, context),
        packages=frozenset(packages),
        directories=tuple(directories),
    )


def directory_index(*, jk: bool, ssi: bool, php: bool, cgi: bool) -> list[tuple[str | None, str]]:
    """Return ``(module, file)`` pairs of a ``DirectoryIndex`` block in search order.

    A ``None`` module means the entry is not wrapped in ``<IfModule>``.
    """
    entries: list[tuple[str | None, str]] = []
    if jk:
        entries.append(("jk_module", "index.jsp"))
    entries.append((None, "index.xml"))
    if ssi:
        entries.append(("include_module", "index.shtml"))
    if php:
        entries.append((None, "index.php"))
    entries.append((None, "index.html"))
    entries.append(("negotiation_module", "index.html.var"))
    entries.append((None, "index.htm"))
    entries.append(("negotiation_module", "index.htm.var"))
    if cgi:
        entries.append((None, "index.cgi"))
    entries.append((None, "default.html"))
    entries.append(("negotiation_module", "default.html.var"))
    if jk:
        entries.append(("jk_module", "default.jsp"))
    if ssi:
        entries.append(("include_module", "default.shtml"))
    if cgi:
        entries.append((None, "default.cgi"))
    entries.append((None, "Default.htm"))
    entries.append(("negotiation_module", "Default.htm.var"))
    return entries


# ----------------------------------------------------------------------
# Per-bind virtual host
# ----------------------------------------------------------------------
def build_bind(ctx: RenderContext, site: Site, vhost: VirtualHost, *, disabled: bool) -> RenderedFile:
    """Render ``sites-available/<site>_<ip>_<port>[_<name>].conf``.

    With *disabled* the virtual host includes the shared ``disabled.inc``
    instead of the site's own include.
    """
    strategy, dollar = ctx.strategy, ctx.dollar
    bind = vhost.bind
    certificate = require_certificate(vhost)
    protocol = bind.protocol.value
    primary = vhost.primary_hostname

    logs_root = strategy.site_logs_dir
    plain_prefix = f"{logs_root}/{site.name}/{protocol}/"
    plain_variable = f"{logs_root}/${{site.name}}/${{bind.protocol}}/"
    named_prefix = f"{logs_root}/{site.name}/{protocol}-{vhost.name}/"
    named_variable = f"{logs_root}/${{site.name}}/${{bind.protocol}}-${{bind.name}}/"

    def log_path(path: str) -> str:
        if vhost.name is None or path.startswith(plain_prefix):
            return escape_prefix_replaced(dollar, path, plain_prefix, plain_variable)
        return escape_prefix_replaced(dollar, path, named_prefix, named_variable)

    protocols = None
    if strategy.supports_protocols:
        protocols = "h2 http/1.1" if bind.protocol is Protocol.HTTPS else "h2c http/1.1"
    ssl = None
    if certificate is not None:
        ssl = {
            "cert": ssl_path(dollar, certificate.cert, primary),
            "key": ssl_path(dollar, certificate.key, primary),
            "chain": None if certificate.chain is None else ssl_path(dollar, certificate.chain, primary),
        }
    redirect_port_kind = None
    if vhost.redirect_to_primary:
        redirect_port_kind = "default_port" if bind.port == bind.default_port else "other_port"
    if disabled:
        include = escape(dollar, "sites-available/disabled.inc")
    else:
        include = escape(dollar, f"sites-available/{strategy.shared_file_name(site.name)}")

    context = {
        "bind_id": bind.id,
        "protocol": escape(dollar, protocol),
        "ip_address": escape(dollar, bracketed(bind.ip)),
        "port": bind.port,
        "bind_name": escape(dollar, vhost.name or ""),
        "primary_hostname": escape(dollar, primary),
        "site_name": escape(dollar, site.name),
        "site_user": escape(dollar, site.effective_user),
        "site_group": escape(dollar, site.effective_group),
        "server_admin": escape(dollar, site.server_admin),
        "protocols": protocols,
        "aliases": [escape(dollar, alias) for alias in server_aliases(vhost)],
        "access_log": log_path(vhost.access_log),
        "error_log": log_path(vhost.error_log),
        "certificate": ssl,
        "redirect_port_kind": redirect_port_kind,
        "rewrite_rules": rewrite_entries(dollar, vhost),
        "headers": header_entries(dollar, vhost),
        "include_lines": site_include_lines(include, effective_include_config(vhost, redirects_all(vhost))),
    }
    return RenderedFile(content=ctx.render(BIND_TEMPLATE, context))


__all__ = ["build_bind", "build_instance", "build_shared", "directory_index"]
