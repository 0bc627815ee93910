"""Apache server configuration: instance configs, site includes and cleanup.

Every artifact is rendered before anything is written, so a render failure
leaves the configuration tree untouched.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..model import Instance, Site, VirtualHost
from ..render import InstanceArtifacts, RenderedFile
from ..render.builder import ArtifactBuilder
from ..render.modern import (
    HTTPD_TOOLS_PACKAGE,
    MOD_HTTP2_PACKAGE,
    MOD_SSL_PACKAGE,
    MOD_WSGI_PACKAGE,
    VAR_LIB_PHP,
)
from ..strategies import CONF_DIR, OsStrategy, RendererFamily
from . import PassContext

LOGGER = logging.getLogger(__name__)

HTTPD_PACKAGE = "httpd"
CONFIG_PACKAGE = "aoserv-httpd-config"
SITE_DISABLED_PACKAGE = "aoserv-httpd-site-disabled"
TMPFILES_DIR = "/etc/tmpfiles.d"
RUN_DIR = "/run"
CONF_MODE = 0o644


@dataclass(slots=True)
class _SiteFiles:
    site: Site
    shared: RenderedFile
    binds: list[tuple[VirtualHost, str, RenderedFile, RenderedFile | None]] = field(default_factory=list)


def reconcile_servers(ctx: PassContext) -> None:
    """Render and install every instance and site configuration file."""
    state, strategy = ctx.state, ctx.strategy
    ctx.packages.refresh(candidate_packages(strategy))
    builder = ArtifactBuilder.for_state(state, strategy, ctx.packages.installed, ctx.templates)

    instances = [(instance, builder.instance(instance)) for instance in state.instances]
    sites = [_render_site(ctx, builder, site) for site in state.sites]

    _reconcile_packages(ctx, instances, sites)

    keep_conf: set[str] = set()
    for instance, artifacts in instances:
        ctx.features[instance.name] = artifacts.features
        ctx.ajp_ports |= artifacts.enabled_ajp_ports
        keep_conf |= artifacts.keep_conf_names
        if _apply_instance(ctx, instance, artifacts):
            ctx.reload_instance(instance)

    wanted_hosts: set[str] = set(strategy.protected_host_files)
    wanted_enabled: set[str] = set()
    for files in sites:
        wanted_hosts.add(strategy.shared_file_name(files.site.name))
        for _vhost, name, _content, _disabled in files.binds:
            wanted_hosts.add(name)
            wanted_enabled.add(name)
        _apply_site(ctx, files)

    _cleanup(ctx, keep_conf, wanted_hosts, wanted_enabled)
    ctx.step(
        "servers",
        detail={
            "instances": [instance.label for instance, _artifacts in instances],
            "sites": len(sites),
            "installed": list(ctx.packages.installed_now),
        },
    )


def candidate_packages(strategy: OsStrategy) -> set[str]:
    """Return the packages whose presence changes what gets rendered."""
    names = {HTTPD_PACKAGE, HTTPD_TOOLS_PACKAGE, MOD_SSL_PACKAGE, MOD_HTTP2_PACKAGE, MOD_WSGI_PACKAGE}
    for name in (strategy.jk_package, strategy.stats_package):
        if name is not None:
            names.add(name)
    return names


def _render_site(ctx: PassContext, builder: ArtifactBuilder, site: Site) -> _SiteFiles:
    files = _SiteFiles(site=site, shared=builder.shared(site))
    for vhost in site.virtual_hosts:
        name = ctx.strategy.bind_file_name(site, vhost)
        disabled = site.disabled or vhost.disabled
        rendered = builder.bind(site, vhost, disabled=disabled)
        # Manual hosts need the disabled rendering to recognise a file we wrote.
        placeholder = None
        if (site.manual or vhost.manual) and not disabled:
            placeholder = builder.bind(site, vhost, disabled=True)
        files.binds.append((vhost, name, rendered, placeholder))
    return files


# ----------------------------------------------------------------------
# Packages
# ----------------------------------------------------------------------
def _reconcile_packages(
    ctx: PassContext,
    instances: list[tuple[Instance, InstanceArtifacts]],
    sites: list[_SiteFiles],
) -> None:
    state, strategy, packages = ctx.state, ctx.strategy, ctx.packages
    in_use = bool(state.instances or state.sites)
    packages.ensure(HTTPD_PACKAGE, in_use)
    if strategy.family is RendererFamily.MODERN:
        packages.ensure(CONFIG_PACKAGE, in_use)
        any_disabled = any(
            site.disabled or vhost.disabled for site in state.sites for vhost in site.virtual_hosts
        )
        packages.ensure(SITE_DISABLED_PACKAGE, any_disabled)

    default = state.instance(None)
    if strategy.after_network_online_package is not None:
        specific = default is not None and any(bind.is_specific_address for bind in default.binds)
        packages.ensure(strategy.after_network_online_package, specific)
    if strategy.alternate_instance_package is not None:
        named = any(instance.name is not None for instance in state.instances)
        packages.ensure(strategy.alternate_instance_package, named)

    required: set[str] = set()
    for _instance, artifacts in instances:
        required |= artifacts.packages
    for files in sites:
        required |= files.shared.packages
        for _vhost, _name, rendered, _placeholder in files.binds:
            required |= rendered.packages
    for name in sorted(required):
        packages.require(name)


# ----------------------------------------------------------------------
# Instances
# ----------------------------------------------------------------------
def _apply_instance(ctx: PassContext, instance: Instance, artifacts: InstanceArtifacts) -> bool:
    fs, strategy = ctx.fs, ctx.strategy
    changed = fs.install(f"{CONF_DIR}/{artifacts.conf_name}", artifacts.conf, mode=CONF_MODE)
    if artifacts.workers is not None and artifacts.workers_name is not None:
        workers_path = f"{CONF_DIR}/{artifacts.workers_name}"
        if fs.install(workers_path, artifacts.workers, mode=CONF_MODE):
            changed = True
            _restart_containers(
                ctx,
                (
                    site
                    for site in ctx.state.sites
                    if site.jk_settings and instance in ctx.state.instances_for(site)
                ),
            )
    for request in artifacts.directories:
        changed = fs.ensure_directory(
            request.path, mode=request.mode, owner=request.owner, group=request.group
        ) or changed
    for link in artifacts.symlinks:
        changed = fs.symlink(
            link.path,
            link.target,
            owner=link.owner,
            group=link.group,
            replace_prefixes=link.replace_prefixes,
        ) or changed
    legacy_name = strategy.legacy_main_conf_name(instance)
    if legacy_name is not None and fs.exists(f"{CONF_DIR}/{legacy_name}"):
        fs.schedule_delete(f"{CONF_DIR}/{legacy_name}")

    if strategy.family is RendererFamily.MODERN:
        changed = _apply_runtime_dirs(ctx, instance) or changed
    return changed


def wants_tmpfiles(instance: Instance) -> bool:
    """Return ``True`` when *instance* needs its own ``tmpfiles.d`` entry."""
    return instance.name is not None or instance.user != "apache" or instance.group != "apache"


def _apply_runtime_dirs(ctx: PassContext, instance: Instance) -> bool:
    fs, strategy = ctx.fs, ctx.strategy
    run_name = strategy.run_name(instance)
    user, group = instance.effective_user, instance.effective_group
    changed = fs.ensure_directory(f"{RUN_DIR}/{run_name}", mode=0o710, group=group)
    changed = fs.ensure_directory(
        f"{RUN_DIR}/{run_name}/htcacheclean", mode=0o700, owner=user, group=group
    ) or changed
    if wants_tmpfiles(instance):
        content = ctx.templates.render_to_bytes(
            "tmpfiles.conf.j2", {"run_name": run_name, "user": user, "group": group}
        )
        fs.install(f"{TMPFILES_DIR}/{run_name}.conf", content, mode=CONF_MODE)
    return changed


# ----------------------------------------------------------------------
# Sites
# ----------------------------------------------------------------------
def _apply_site(ctx: PassContext, files: _SiteFiles) -> None:
    fs, strategy = ctx.fs, ctx.strategy
    site = files.site
    hosts_dir = strategy.hosts_dir
    touched: set[str | None] = set()

    shared_path = f"{hosts_dir}/{strategy.shared_file_name(site.name)}"
    if not (site.manual and fs.exists(shared_path)):
        if fs.install(shared_path, files.shared.content, mode=CONF_MODE):
            touched.update(instance.name for instance in ctx.state.instances_for(site))
            _restart_containers(ctx, (site,))
    for request in files.shared.directories:
        fs.ensure_directory(request.path, mode=request.mode, owner=request.owner, group=request.group)

    for vhost, name, rendered, placeholder in files.binds:
        path = f"{hosts_dir}/{name}"
        if _apply_bind(ctx, site, vhost, name, path, rendered, placeholder):
            touched.add(ctx.state.instance_for_bind(vhost.bind).name)
        enabled_dir = strategy.enabled_dir
        if enabled_dir is not None:
            target = f"../{hosts_dir.rsplit('/', 1)[1]}/{name}"
            if fs.symlink(f"{enabled_dir}/{name}", target):
                touched.add(ctx.state.instance_for_bind(vhost.bind).name)
    ctx.reload.update(touched)


def _restart_containers(ctx: PassContext, sites: Iterable[Site]) -> None:
    """Flag the containers behind *sites* for a stop-then-start."""
    for site in sites:
        if site.container is not None and site.name not in ctx.restart_sites:
            LOGGER.info("Site %s container will restart after its configuration changed", site.name)
            ctx.restart_sites.add(site.name)


def _apply_bind(
    ctx: PassContext,
    site: Site,
    vhost: VirtualHost,
    name: str,
    path: str,
    rendered: RenderedFile,
    placeholder: RenderedFile | None,
) -> bool:
    fs, stash = ctx.fs, ctx.stash
    manual = site.manual or vhost.manual
    disabled = site.disabled or vhost.disabled
    if not manual:
        return fs.install(path, rendered.content, mode=CONF_MODE)

    current = fs.read_bytes(path)
    if disabled:
        if current is not None and current != rendered.content and stash.put(name, current):
            LOGGER.info("Stashed manual virtual host %s before disabling", name)
        return fs.install(path, rendered.content, mode=CONF_MODE)

    stashed = stash.get(name)
    if stashed is not None:
        changed = fs.install(path, stashed, mode=CONF_MODE)
        stash.discard(name)
        LOGGER.info("Restored manual virtual host %s", name)
        return changed
    if current is None or (placeholder is not None and current == placeholder.content):
        return fs.install(path, rendered.content, mode=CONF_MODE)
    return False


# ----------------------------------------------------------------------
# Cleanup
# ----------------------------------------------------------------------
def _cleanup(ctx: PassContext, keep_conf: set[str], wanted_hosts: set[str], wanted_enabled: set[str]) -> None:
    fs, strategy, state = ctx.fs, ctx.strategy, ctx.state

    for name in fs.list_dir(CONF_DIR):
        if strategy.is_managed_conf_file(name) and name not in keep_conf:
            fs.schedule_delete(f"{CONF_DIR}/{name}")

    for name in fs.list_dir(strategy.hosts_dir):
        if name not in wanted_hosts and not name.startswith("."):
            fs.schedule_delete(f"{strategy.hosts_dir}/{name}")

    enabled_dir = strategy.enabled_dir
    if enabled_dir is not None:
        for name in fs.list_dir(enabled_dir):
            if name not in wanted_enabled and name not in strategy.protected_host_files:
                fs.schedule_delete(f"{enabled_dir}/{name}")

    if strategy.family is not RendererFamily.MODERN:
        return

    sessions = {
        strategy.php_session_dir(instance).rsplit("/", 1)[1]
        for instance in state.instances
        if instance.has_mod_php
    }
    for name in fs.list_dir(VAR_LIB_PHP):
        if strategy.is_managed_php_session(name) and name not in sessions:
            fs.schedule_delete(f"{VAR_LIB_PHP}/{name}")

    tmpfiles = {
        f"{strategy.run_name(instance)}.conf" for instance in state.instances if wants_tmpfiles(instance)
    }
    for name in fs.list_dir(TMPFILES_DIR):
        if strategy.is_managed_tmpfiles(name) and name not in tmpfiles:
            fs.schedule_delete(f"{TMPFILES_DIR}/{name}")

    run_dirs = {strategy.run_name(instance) for instance in state.instances}
    for name in fs.list_dir(RUN_DIR):
        if strategy.is_managed_run_dir(name) and name not in run_dirs:
            fs.schedule_delete(f"{RUN_DIR}/{name}")


__all__ = [
    "CONFIG_PACKAGE",
    "HTTPD_PACKAGE",
    "SITE_DISABLED_PACKAGE",
    "candidate_packages",
    "reconcile_servers",
    "wants_tmpfiles",
]
