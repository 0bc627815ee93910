"""Per-site log statistics helpers (AWStats)."""
from __future__ import annotations

import ipaddress
import logging

from ..fsapply import MissingAccountError
from ..model import Site
from ..render.common import site_hostnames
from ..strategies import RendererFamily
from . import PassContext
from .logs import STATS_ACCOUNT

LOGGER = logging.getLogger(__name__)

CONFIG_MODE = 0o640
HOST_DIR_MODE = 0o750
SCRIPT_MODE = 0o750
CACHE_FILE_MODE = 0o640
COMMON_INCLUDE = "awstats.conf.inc"


def reconcile_stats(ctx: PassContext) -> None:
    """Write the statistics config and helper scripts of every site."""
    strategy = ctx.strategy
    if not ctx.config.stats.enabled:
        ctx.step("stats", detail={"skipped": "disabled"})
        return
    if ctx.state.sites:
        ctx.packages.require(strategy.stats_package)
    elif not ctx.packages.is_installed(strategy.stats_package):
        ctx.step("stats", detail={"skipped": "not installed"})
        return
    if not ctx.fs.accounts.has_user(STATS_ACCOUNT):
        raise MissingAccountError(f"Statistics account not found: {STATS_ACCOUNT}")

    fs = ctx.fs
    fs.mkdir_if_missing(strategy.stats_hosts_dir, mode=0o755)
    skip_hosts = _skip_hosts(ctx)
    for site in ctx.state.sites:
        _reconcile_site(ctx, site, skip_hosts)

    wanted_configs = {f"awstats.{site.name}.conf" for site in ctx.state.sites}
    for name in fs.list_dir(strategy.stats_config_dir):
        if name in wanted_configs or name == COMMON_INCLUDE or name.startswith(f"{COMMON_INCLUDE}.rpm"):
            continue
        fs.schedule_delete(f"{strategy.stats_config_dir}/{name}")

    site_names = {site.name for site in ctx.state.sites}
    for name in fs.list_dir(strategy.stats_hosts_dir):
        if name not in site_names:
            fs.schedule_delete(f"{strategy.stats_hosts_dir}/{name}")
    ctx.step("stats", detail={"sites": len(ctx.state.sites)})


def _skip_hosts(ctx: PassContext) -> list[str]:
    hosts: list[str] = []
    for address in ctx.state.host.addresses:
        if ipaddress.ip_address(address).is_unspecified or address in hosts:
            continue
        hosts.append(address)
    return hosts


def _reconcile_site(ctx: PassContext, site: Site, skip_hosts: list[str]) -> None:
    fs, strategy, templates = ctx.fs, ctx.strategy, ctx.templates
    hosts_dir = strategy.stats_hosts_dir
    site_dir = f"{hosts_dir}/{site.name}"
    legacy = strategy.family is RendererFamily.LEGACY

    hostnames = site_hostnames(site)
    site_domain = hostnames[0]
    host_aliases = [name for name in hostnames if name != site_domain] or [site_domain]
    config = templates.render_to_bytes(
        "awstats.conf.j2",
        {
            "site_name": site.name,
            "common_include": None if legacy else f"{strategy.stats_config_dir}/{COMMON_INCLUDE}",
            "bin_dir": strategy.stats_bin_dir,
            "var_dir": strategy.stats_var_dir,
            "hosts_dir": hosts_dir,
            "site_domain": site_domain,
            "host_aliases": host_aliases,
            "skip_hosts": skip_hosts,
        },
    )
    fs.install(
        f"{strategy.stats_config_dir}/awstats.{site.name}.conf",
        config,
        mode=CONFIG_MODE,
        group=STATS_ACCOUNT,
    )

    fs.ensure_directory(site_dir, mode=HOST_DIR_MODE, group=STATS_ACCOUNT)
    fs.ensure_directory(f"{site_dir}/data", mode=HOST_DIR_MODE, owner=STATS_ACCOUNT, group=STATS_ACCOUNT)
    fs.create_empty_file(
        f"{site_dir}/dnscachelastupdate.txt",
        mode=CACHE_FILE_MODE,
        owner=STATS_ACCOUNT,
        group=STATS_ACCOUNT,
    )

    access_logs: list[str] = []
    for vhost in site.virtual_hosts:
        if vhost.access_log not in access_logs:
            access_logs.append(vhost.access_log)
    scripts = {
        "logview.sh": (
            "logview.sh.j2",
            {
                "shell": strategy.shell,
                "bin_dir": strategy.stats_bin_dir,
                "access_logs": access_logs,
                "rotated_suffix": ".1.gz" if legacy else ".1",
            },
        ),
        "runascgi.sh": (
            "runascgi.sh.j2",
            {
                "shell": strategy.shell,
                "bin_dir": strategy.stats_bin_dir,
                "var_dir": strategy.stats_var_dir,
                "site_name": site.name,
                "server_admin": site.server_admin,
            },
        ),
        "update.sh": (
            "update.sh.j2",
            {
                "shell": strategy.shell,
                "hosts_dir": hosts_dir,
                "site_name": site.name,
                "bin_dir": strategy.stats_bin_dir,
            },
        ),
    }
    for filename, (template, context) in scripts.items():
        content = templates.render_to_bytes(template, context)
        fs.install(f"{site_dir}/{filename}", content, mode=SCRIPT_MODE, group=STATS_ACCOUNT)


__all__ = ["reconcile_stats"]
