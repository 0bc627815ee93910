"""Per-site and per-instance log directories."""
from __future__ import annotations

import logging
import posixpath

from ..fsapply import MissingAccountError
from ..model import Site
from ..strategies import RendererFamily
from . import PassContext

LOGGER = logging.getLogger(__name__)

STATS_ACCOUNT = "awstats"
SITE_LOG_DIR_MODE = 0o750
LOG_FILE_MODE = 0o640
INSTANCE_LOG_DIR_MODE = 0o700


def log_owner(ctx: PassContext) -> str:
    """Return the account owning site logs.

    Logs belong to the statistics account when the statistics package is
    installed, so the statistics updater can read them.
    """
    if not ctx.packages.is_installed(ctx.strategy.stats_package):
        return "root"
    if not ctx.fs.accounts.has_user(STATS_ACCOUNT):
        raise MissingAccountError(
            f"{ctx.strategy.stats_package} is installed but the {STATS_ACCOUNT} account is missing"
        )
    return STATS_ACCOUNT


def reconcile_logs(ctx: PassContext) -> None:
    """Create every referenced log file and remove log directories nobody uses."""
    fs, strategy = ctx.fs, ctx.strategy
    owner = log_owner(ctx)
    logs_root = strategy.site_logs_dir
    fs.mkdir_if_missing(logs_root, mode=0o755)

    for site in ctx.state.sites:
        _reconcile_site(ctx, site, owner)

    site_names = {site.name for site in ctx.state.sites}
    for name in fs.list_dir(logs_root):
        if name not in site_names:
            fs.schedule_delete(f"{logs_root}/{name}")

    _reconcile_instance_dirs(ctx)
    ctx.step("logs", detail={"owner": owner, "sites": len(ctx.state.sites)})


def _reconcile_site(ctx: PassContext, site: Site, owner: str) -> None:
    fs = ctx.fs
    site_log_dir = f"{ctx.strategy.site_logs_dir}/{site.name}"
    fs.ensure_directory(site_log_dir, mode=SITE_LOG_DIR_MODE, owner=owner, group=site.group)

    created: dict[str, bool] = {}
    for vhost in site.virtual_hosts:
        for path in (vhost.access_log, vhost.error_log):
            if path in created:
                continue
            parent = posixpath.dirname(path)
            if parent != site_log_dir and parent.startswith(f"{site_log_dir}/"):
                fs.ensure_directory(parent, mode=SITE_LOG_DIR_MODE, owner=owner, group=site.group)
            elif not fs.exists(parent):
                fs.mkdir_if_missing(parent, mode=SITE_LOG_DIR_MODE, owner=owner, group=site.group)
            was_missing = not fs.exists(path)
            fs.create_empty_file(path, mode=LOG_FILE_MODE, owner=owner, group=site.group)
            created[path] = was_missing

    # Apache keeps log descriptors open; a recreated file needs a reload.
    for vhost in site.virtual_hosts:
        if created.get(vhost.access_log) or created.get(vhost.error_log):
            ctx.reload_instance(ctx.state.instance_for_bind(vhost.bind))


def _reconcile_instance_dirs(ctx: PassContext) -> None:
    fs, strategy = ctx.fs, ctx.strategy
    wanted = {strategy.instance_log_dir(instance) for instance in ctx.state.instances}
    for path in sorted(wanted):
        fs.ensure_directory(path, mode=INSTANCE_LOG_DIR_MODE)

    parent = "/var/log/httpd" if strategy.family is RendererFamily.LEGACY else "/var/log"
    for name in fs.list_dir(parent):
        path = f"{parent}/{name}"
        if strategy.is_managed_log_dir(name) and path not in wanted:
            fs.schedule_delete(path)


__all__ = ["STATS_ACCOUNT", "log_owner", "reconcile_logs"]
