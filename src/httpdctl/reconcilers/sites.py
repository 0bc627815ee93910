"""Site directory trees.

A site directory moves through four states keyed by its ownership and flags:

* uninitialized (missing or still owned by root): every subtree is created and
  a placeholder ``htdocs/index.html`` is seeded;
* auto: generated files are re-derived and overwritten on each pass;
* manual: only missing pieces are created;
* disabled: the tree is locked down to root.

Entries under the sites root that no longer belong to a site have their
daemons stopped and are scheduled for backup-then-delete.
"""
from __future__ import annotations

import logging

from ..model import Site, php_minor_version, php_release
from ..render import legacy
from ..render.common import site_cgi_enabled, site_hostnames
from ..services import SiteController
from ..state.loader import RESERVED_SITE_NAMES
from ..strategies import RendererFamily
from . import PassContext

LOGGER = logging.getLogger(__name__)

SITE_DIR_MODE = 0o770
DISABLED_SITE_DIR_MODE = 0o700
SUBDIR_MODE = 0o775
INDEX_MODE = 0o664
CGI_DIR_MODE = 0o755
CGI_PHP_MODE = 0o755
PHP_D_MODE = 0o750
SESSION_DIR_MODE = 0o770
FTP_ENABLED_MODE = 0o775
FTP_DISABLED_MODE = 0o700

# Database client environments the CGI PHP 5 builds were linked against.
CGI_PHP_ENVIRONMENTS: dict[str, tuple[str, ...]] = {
    "5.3": ("/opt/mysql-5.1/setenv.sh", "/opt/postgresql-8.3/setenv.sh"),
    "5.4": ("/opt/mysql-5.6/profile.sh", "/opt/postgresql-9.2/setenv.sh"),
    "5.5": ("/opt/mysql-5.6/profile.sh", "/opt/postgresql-9.4/profile.sh"),
    "5.6": ("/opt/mysql-5.7/profile.sh", "/opt/postgresql-9.4/profile.sh"),
}


def apache_identity(ctx: PassContext, site: Site) -> str:
    """Return the account Apache serves *site* as.

    This is the user of the instances the site is bound to when they all
    agree, otherwise the stock ``apache`` account.
    """
    users = {instance.effective_user for instance in ctx.state.instances_for(site)}
    if len(users) == 1:
        return users.pop()
    return "apache"


def wants_cgi_php(site: Site) -> bool:
    """Return ``True`` when *site* runs PHP through the CGI wrapper."""
    return site.enable_php and site_cgi_enabled(site)


def reconcile_sites(ctx: PassContext, controller: SiteController) -> None:
    """Converge every site directory and retire unknown ones."""
    fs, strategy = ctx.fs, ctx.strategy
    fs.mkdir_if_missing(strategy.sites_dir, mode=0o755)

    built: list[str] = []
    for site in ctx.state.sites:
        if _reconcile_site(ctx, site):
            built.append(site.name)

    retired = _retire_unknown(ctx, controller)
    ctx.step("sites", detail={"sites": len(ctx.state.sites), "built": built, "retired": retired})


def _reconcile_site(ctx: PassContext, site: Site) -> bool:
    fs = ctx.fs
    site_dir = ctx.strategy.site_dir(site.name)
    uninitialized = not fs.is_dir(site_dir) or fs.owner_uid(site_dir) == 0

    if site.disabled:
        fs.ensure_directory(site_dir, mode=DISABLED_SITE_DIR_MODE)
        _reconcile_ftp(ctx, site)
        return False

    if uninitialized:
        LOGGER.info("Building site directory %s", site_dir)
    fs.ensure_directory(site_dir, mode=SITE_DIR_MODE, owner=apache_identity(ctx, site), group=site.group)

    manual = site.manual and not uninitialized
    for name in ("conf", "htdocs"):
        _directory(ctx, f"{site_dir}/{name}", SUBDIR_MODE, site.user, site.group, manual=manual)

    index = f"{site_dir}/htdocs/index.html"
    if uninitialized and not fs.exists(index):
        hostnames = site_hostnames(site)
        content = ctx.templates.render_to_bytes("index.html.j2", {"hostname": hostnames[0]})
        fs.install(index, content, mode=INDEX_MODE, owner=site.user, group=site.group)

    _reconcile_cgi_php(ctx, site, manual=manual)
    _reconcile_ftp(ctx, site)
    return uninitialized


def _directory(ctx: PassContext, path: str, mode: int, owner: str, group: str, *, manual: bool) -> bool:
    if manual:
        return ctx.fs.mkdir_if_missing(path, mode=mode, owner=owner, group=group)
    return ctx.fs.ensure_directory(path, mode=mode, owner=owner, group=group)


def _cgi_dir(ctx: PassContext, site: Site) -> str:
    root = site.root_webapp()
    doc_base = root.doc_base if root is not None else f"{ctx.strategy.site_dir(site.name)}/htdocs"
    return f"{doc_base}/cgi-bin"


def _reconcile_cgi_php(ctx: PassContext, site: Site, *, manual: bool) -> None:
    fs, strategy = ctx.fs, ctx.strategy
    cgi_dir = _cgi_dir(ctx, site)
    wrapper = f"{cgi_dir}/php"

    php_version = site.php_version
    if not wants_cgi_php(site) or php_version is None:
        for name in ("php", "php.ini"):
            if fs.remove_file(f"{cgi_dir}/{name}"):
                LOGGER.info("Removed CGI PHP file %s/%s", cgi_dir, name)
        return

    minor = php_minor_version(php_version)
    major = php_release(php_version)[0]
    package = strategy.php_package(minor)
    if package is not None:
        ctx.packages.require(package)

    _directory(ctx, cgi_dir, CGI_DIR_MODE, site.user, site.group, manual=manual)

    environment: tuple[str, ...] = ()
    ini_scan_dir: str | None = None
    session_dir: str | None = None
    if strategy.family is RendererFamily.LEGACY:
        if major == 5:
            environment = legacy.php_environment(php_version)
    elif major >= 7:
        ini_scan_dir = f"{cgi_dir}/php.d"
        _directory(ctx, ini_scan_dir, PHP_D_MODE, site.user, site.group, manual=manual)
        var_dir = f"{strategy.site_dir(site.name)}/var"
        session_dir = f"{var_dir}/php/session"
        for path in (var_dir, f"{var_dir}/php", session_dir):
            _directory(ctx, path, SESSION_DIR_MODE, site.user, site.group, manual=manual)
    else:
        environment = CGI_PHP_ENVIRONMENTS.get(minor, ())

    if manual and fs.exists(wrapper):
        return
    content = ctx.templates.render_to_bytes(
        "cgi_php.sh.j2",
        {
            "environment": list(environment),
            "ini_scan_dir": ini_scan_dir,
            "php_cgi": strategy.php_cgi_path(minor),
            "session_dir": session_dir,
        },
    )
    fs.install(wrapper, content, mode=CGI_PHP_MODE, owner=site.user, group=site.group)


def _reconcile_ftp(ctx: PassContext, site: Site) -> None:
    ftp_dir = f"{ctx.strategy.site_dir(site.name)}/ftp"
    if site.enable_anonymous_ftp and not site.disabled:
        ctx.fs.ensure_directory(ftp_dir, mode=FTP_ENABLED_MODE, owner=site.user, group=site.group)
    elif ctx.fs.is_dir(ftp_dir):
        ctx.fs.ensure_directory(ftp_dir, mode=FTP_DISABLED_MODE)


def _retire_unknown(ctx: PassContext, controller: SiteController) -> list[str]:
    fs, strategy = ctx.fs, ctx.strategy
    known = {site.name for site in ctx.state.sites}
    retired: list[str] = []
    homes: list[str] | None = None
    for name in fs.list_dir(strategy.sites_dir):
        if name in known or name in RESERVED_SITE_NAMES:
            continue
        path = strategy.site_dir(name)
        if homes is None:
            homes = ctx.fs.accounts.home_directories()
        in_use = [home for home in homes if home == path or home.startswith(f"{path}/")]
        if in_use:
            LOGGER.warning("Keeping %s: home directory %s lives under it", path, in_use[0])
            continue
        if fs.is_dir(path):
            owner = fs.owner_uid(path)
            if owner is not None and owner != 0:
                controller.stop_daemons(path, owner)
        fs.schedule_delete(path)
        retired.append(name)
    return retired


__all__ = ["CGI_PHP_ENVIRONMENTS", "apache_identity", "reconcile_sites", "wants_cgi_php"]
