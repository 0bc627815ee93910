"""Boot-time enablement of instances and the SELinux policy they need."""
from __future__ import annotations

import logging

from ..model import Instance
from ..providers.selinux import SelinuxProvider
from ..render import legacy
from ..services import ServiceController
from . import PassContext

LOGGER = logging.getLogger(__name__)

INIT_SCRIPT_MODE = 0o700
COMMON_INIT_SCRIPT = "/opt/aoserv-daemon/init.d/httpd"
HTTP_PORT_TYPE = "http_port_t"
AJP_PORT_TYPE = "ajp_port_t"


# ----------------------------------------------------------------------
# Init scripts and units
# ----------------------------------------------------------------------
def reconcile_init(ctx: PassContext, services: ServiceController) -> None:
    """Enable every bound instance at boot and retire units of removed instances."""
    if ctx.strategy.uses_systemd:
        enabled = _reconcile_units(ctx, services)
    else:
        enabled = _reconcile_init_scripts(ctx, services)
    ctx.step("init", detail={"enabled": enabled})


def _reconcile_init_scripts(ctx: PassContext, services: ServiceController) -> list[str]:
    fs, strategy, initd = ctx.fs, ctx.strategy, services.initd
    wanted: set[str] = set()
    for instance in ctx.state.instances:
        name = strategy.unit_name(instance)
        wanted.add(name)
        content = ctx.templates.render_to_bytes(
            "initd.sh.j2",
            {
                "number": strategy.instance_number(instance),
                "environment": list(_init_environment(instance)),
                "common_script": COMMON_INIT_SCRIPT,
            },
        )
        if fs.install(str(initd.script_path(name)), content, mode=INIT_SCRIPT_MODE):
            initd.add(name, dry_run=ctx.dry_run)
            initd.on(name, dry_run=ctx.dry_run)
            ctx.reload_instance(instance)
        if not instance.binds:
            ctx.reload.discard(instance.name)

    init_dir = str(initd.init_dir)
    for name in fs.list_dir(init_dir):
        if strategy.is_managed_unit(name) and name not in wanted:
            LOGGER.info("Retiring init script %s", name)
            initd.off(name, dry_run=ctx.dry_run)
            initd.control(name, "stop", dry_run=ctx.dry_run)
            fs.schedule_delete(f"{init_dir}/{name}")
    return sorted(wanted)


def _init_environment(instance: Instance) -> tuple[str, ...]:
    if instance.php_version is None or instance.php_major != 5:
        return ()
    return legacy.php_environment(instance.php_version)


def _reconcile_units(ctx: PassContext, services: ServiceController) -> list[str]:
    strategy, systemd = ctx.strategy, services.systemd
    wanted: set[str] = set()
    for instance in ctx.state.instances:
        unit = strategy.unit_name(instance)
        if not instance.binds:
            # Apache refuses to start without a Listen directive.
            ctx.reload.discard(instance.name)
            continue
        wanted.add(unit)
        if not systemd.is_enabled(unit):
            LOGGER.info("Enabling %s", unit)
            systemd.enable(unit, dry_run=ctx.dry_run)

    for unit in systemd.enabled_units():
        if strategy.is_managed_unit(unit) and unit not in wanted:
            LOGGER.info("Stopping and disabling %s", unit)
            systemd.stop(unit, dry_run=ctx.dry_run)
            systemd.disable(unit, dry_run=ctx.dry_run)
    return sorted(wanted)


# ----------------------------------------------------------------------
# SELinux
# ----------------------------------------------------------------------
def reconcile_selinux(ctx: PassContext, selinux: SelinuxProvider) -> None:
    """Label the listening ports and set the booleans the instances rely on."""
    strategy, state = ctx.strategy, ctx.state
    if not strategy.manages_selinux:
        ctx.step("selinux", detail={"skipped": strategy.version.value})
        return
    if strategy.selinux_package is not None:
        ctx.packages.require(strategy.selinux_package)

    http_ports = {bind.port for instance in state.instances for bind in instance.binds}
    http_ports.update(state.host.http_ports)
    changed = selinux.configure_ports(sorted(http_ports), HTTP_PORT_TYPE, dry_run=ctx.dry_run)
    changed = selinux.configure_ports(sorted(ctx.ajp_ports), AJP_PORT_TYPE, dry_run=ctx.dry_run) or changed
    if changed:
        ctx.reload_all()

    any_cgi = any(features.has_cgi for features in ctx.features.values())
    any_mod_php = any(features.has_mod_php for features in ctx.features.values())
    booleans = {
        "httpd_enable_cgi": any_cgi,
        "httpd_can_network_connect_db": any_cgi or any_mod_php,
        "httpd_setrlimit": any_cgi or any_mod_php,
    }
    updated = [
        name
        for name, value in booleans.items()
        if selinux.ensure_boolean(name, value, dry_run=ctx.dry_run)
    ]
    ctx.step(
        "selinux",
        detail={"http_ports": sorted(http_ports), "ajp_ports": sorted(ctx.ajp_ports), "booleans": updated},
    )


__all__ = ["reconcile_init", "reconcile_selinux"]
