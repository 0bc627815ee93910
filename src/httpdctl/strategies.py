"""Per-OS-generation layout and capability switches.

A single :class:`OsStrategy` is selected once per convergence pass and
handed to every renderer and reconciler, so call sites never branch on the
operating system version themselves.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .model import Instance, Site, VirtualHost

SERVER_ROOT = "/etc/httpd"
CONF_DIR = "/etc/httpd/conf"
SITES_AVAILABLE_DIR = "/etc/httpd/sites-available"
SITES_ENABLED_DIR = "/etc/httpd/sites-enabled"
DISABLED_SITE_NAME = "disabled"


class OsVersion(str, Enum):
    """Supported operating system generations."""

    CENTOS5 = "centos5"
    CENTOS7 = "centos7"
    ROCKY9 = "rocky9"


class RendererFamily(str, Enum):
    """Which artifact builder family produces the configuration."""

    LEGACY = "legacy"
    MODERN = "modern"


class UnsupportedOsError(RuntimeError):
    """Raised when no strategy exists for an OS version."""


@dataclass(frozen=True, slots=True)
class OsStrategy:
    """Layout, naming and capability switches for one OS generation."""

    version: OsVersion
    family: RendererFamily
    dollar_variable: str | None
    default_prefork: bool
    supports_http2: bool
    supports_brotli: bool
    supports_protocols: bool
    supports_wsgi: bool
    manages_selinux: bool
    uses_systemd: bool
    writes_logrotate: bool
    sites_dir: str
    site_logs_dir: str
    stats_package: str
    stats_var_dir: str
    stats_bin_dir: str
    selinux_package: str | None
    jk_package: str | None
    jk_module_file: str
    alternate_instance_package: str | None
    after_network_online_package: str | None

    # ------------------------------------------------------------------
    # Instance naming
    # ------------------------------------------------------------------
    def instance_number(self, instance: Instance) -> int:
        """Return the numeric suffix of a legacy instance (``httpd{N}``)."""
        if instance.name is None:
            return 1
        try:
            return int(instance.name)
        except ValueError as exc:
            raise UnsupportedOsError(
                f"Instance names must be numeric on {self.version.value}: {instance.name}"
            ) from exc

    def main_conf_name(self, instance: Instance) -> str:
        """Return the file name of the instance configuration under ``conf/``."""
        if self.family is RendererFamily.LEGACY:
            return f"httpd{self.instance_number(instance)}.conf"
        if instance.name is None:
            return "httpd.conf"
        if self.version is OsVersion.ROCKY9:
            return f"{instance.name}.conf"
        return f"httpd@{instance.name}.conf"

    def legacy_main_conf_name(self, instance: Instance) -> str | None:
        """Return a superseded configuration file name that should be removed."""
        if self.version is not OsVersion.ROCKY9 or instance.name is None:
            return None
        return f"httpd@{instance.name}.conf"

    def workers_name(self, instance: Instance) -> str:
        """Return the connector worker map file name."""
        if self.family is RendererFamily.LEGACY:
            return f"workers{self.instance_number(instance)}.properties"
        if instance.name is None:
            return "workers.properties"
        return f"workers@{instance.name}.properties"

    def php_dir_name(self, instance: Instance) -> str:
        """Return the name of the per-instance ``php.ini`` directory."""
        if self.family is RendererFamily.LEGACY:
            return f"php{self.instance_number(instance)}"
        if instance.name is None:
            return "php"
        return f"php@{instance.name}"

    def php_session_dir(self, instance: Instance) -> str:
        """Return the mod_php session directory of *instance*."""
        if instance.name is None:
            return "/var/lib/php/session"
        return f"/var/lib/php/session@{instance.name}"

    def run_name(self, instance: Instance) -> str:
        """Return the ``/run`` directory name (also the tmpfiles.d stem)."""
        if instance.name is None:
            return "httpd"
        return f"httpd@{instance.name}"

    def unit_name(self, instance: Instance) -> str:
        """Return the init script or systemd unit controlling *instance*."""
        if not self.uses_systemd:
            return f"httpd{self.instance_number(instance)}"
        if instance.name is None:
            return "httpd.service"
        return f"httpd@{instance.name}.service"

    def instance_log_dir(self, instance: Instance) -> str:
        """Return the directory holding the instance's own logs."""
        if self.family is RendererFamily.LEGACY:
            return f"/var/log/httpd/httpd{self.instance_number(instance)}"
        if instance.name is None:
            return "/var/log/httpd"
        return f"/var/log/httpd@{instance.name}"

    def pid_file(self, instance: Instance) -> str:
        """Return the pid file written by the instance's parent process."""
        if self.family is RendererFamily.LEGACY:
            return f"/var/run/httpd{self.instance_number(instance)}.pid"
        return f"/run/{self.run_name(instance)}/httpd.pid"

    # ------------------------------------------------------------------
    # Site naming
    # ------------------------------------------------------------------
    def bind_file_name(self, site: Site, vhost: VirtualHost) -> str:
        """Return the per-bind virtual host file name."""
        stem = f"{site.name}_{vhost.bind.ip}_{vhost.bind.port}"
        if vhost.name is not None:
            stem = f"{stem}_{vhost.name}"
        if self.family is RendererFamily.LEGACY:
            return stem
        return f"{stem}.conf"

    def shared_file_name(self, site_name: str) -> str:
        """Return the per-site shared include file name."""
        if self.family is RendererFamily.LEGACY:
            return site_name
        return f"{site_name}.inc"

    @property
    def hosts_dir(self) -> str:
        """Return the directory holding the site shared and bind files."""
        if self.family is RendererFamily.LEGACY:
            return f"{CONF_DIR}/hosts"
        return SITES_AVAILABLE_DIR

    @property
    def enabled_dir(self) -> str | None:
        """Return the directory of enabled-site symlinks, when used."""
        if self.family is RendererFamily.LEGACY:
            return None
        return SITES_ENABLED_DIR

    @property
    def protected_host_files(self) -> frozenset[str]:
        """Return names in the hosts directory that are never removed."""
        if self.family is RendererFamily.LEGACY:
            return frozenset({DISABLED_SITE_NAME})
        return frozenset({f"{DISABLED_SITE_NAME}.inc", "README", "README.txt"})

    def site_dir(self, site_name: str) -> str:
        """Return the root directory of a site."""
        return f"{self.sites_dir}/{site_name}"

    # ------------------------------------------------------------------
    # Cleanup patterns
    # ------------------------------------------------------------------
    def is_managed_conf_file(self, filename: str) -> bool:
        """Return ``True`` for ``conf/`` entries this tool owns."""
        if self.family is RendererFamily.LEGACY:
            patterns = (_HTTPD_N_CONF, _PHP_N, _WORKERS_N_PROPERTIES)
            return any(pattern.match(filename) for pattern in patterns)
        if filename in {"php", "workers.properties"}:
            return True
        patterns = (_HTTPD_NAME_CONF, _PHP_NAME, _WORKERS_NAME_PROPERTIES)
        return any(pattern.match(filename) for pattern in patterns)

    def is_managed_unit(self, filename: str) -> bool:
        """Return ``True`` for init scripts or units this tool owns."""
        if self.uses_systemd:
            return filename == "httpd.service" or bool(_HTTPD_NAME_SERVICE.match(filename))
        return bool(_HTTPD_N.match(filename))

    def is_managed_log_dir(self, filename: str) -> bool:
        """Return ``True`` for per-instance log directories this tool owns."""
        if self.family is RendererFamily.LEGACY:
            return bool(_HTTPD_N.match(filename))
        return bool(_HTTPD_NAME.match(filename))

    @staticmethod
    def is_managed_run_dir(filename: str) -> bool:
        """Return ``True`` for ``/run`` entries of named instances."""
        return bool(_HTTPD_NAME.match(filename))

    @staticmethod
    def is_managed_tmpfiles(filename: str) -> bool:
        """Return ``True`` for ``/etc/tmpfiles.d`` entries this tool owns."""
        return filename == "httpd.conf" or bool(_HTTPD_NAME_CONF.match(filename))

    @staticmethod
    def is_managed_php_session(filename: str) -> bool:
        """Return ``True`` for ``/var/lib/php`` session directories this tool owns."""
        return filename == "session" or bool(_PHP_SESSION_NAME.match(filename))

    # ------------------------------------------------------------------
    # PHP
    # ------------------------------------------------------------------
    def php_install_dir(self, minor_version: str) -> str:
        """Return the ``/opt`` prefix of a PHP release."""
        if self.family is RendererFamily.LEGACY:
            if minor_version.startswith("4."):
                return "/opt/php-4-i686"
            return f"/opt/php-{minor_version}-i686"
        return f"/opt/php-{minor_version}"

    def php_cgi_path(self, minor_version: str) -> str:
        """Return the CGI interpreter of a PHP release."""
        return f"{self.php_install_dir(minor_version)}/bin/php-cgi"

    def php_package(self, minor_version: str) -> str | None:
        """Return the package providing a PHP release, when one is managed."""
        if minor_version.startswith("4."):
            return None
        suffix = minor_version.replace(".", "_")
        if self.family is RendererFamily.LEGACY:
            return f"php_{suffix}-i686"
        return f"php_{suffix}"

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    @property
    def stats_config_dir(self) -> str:
        """Return the statistics configuration directory."""
        return "/etc/awstats"

    @property
    def stats_hosts_dir(self) -> str:
        """Return the per-site statistics working directory root."""
        return f"{self.stats_var_dir}/hosts"

    @property
    def shell(self) -> str:
        """Return the interpreter used by generated helper scripts."""
        if self.family is RendererFamily.LEGACY:
            return "/bin/bash"
        return "/usr/bin/bash"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version.value,
            "family": self.family.value,
            "default_prefork": self.default_prefork,
            "supports_http2": self.supports_http2,
            "supports_brotli": self.supports_brotli,
            "manages_selinux": self.manages_selinux,
            "uses_systemd": self.uses_systemd,
            "sites_dir": self.sites_dir,
            "site_logs_dir": self.site_logs_dir,
        }


_HTTPD_N = re.compile(r"^httpd[0-9]+$")
_HTTPD_N_CONF = re.compile(r"^httpd[0-9]+\.conf$")
_HTTPD_NAME = re.compile(r"^httpd@.+$")
_HTTPD_NAME_CONF = re.compile(r"^httpd@.+\.conf$")
_HTTPD_NAME_SERVICE = re.compile(r"^httpd@.+\.service$")
_PHP_N = re.compile(r"^php[0-9]+$")
_PHP_NAME = re.compile(r"^php@.+$")
_PHP_SESSION_NAME = re.compile(r"^session@.+$")
_WORKERS_N_PROPERTIES = re.compile(r"^workers[0-9]+\.properties$")
_WORKERS_NAME_PROPERTIES = re.compile(r"^workers@.+\.properties$")


CENTOS5 = OsStrategy(
    version=OsVersion.CENTOS5,
    family=RendererFamily.LEGACY,
    dollar_variable=None,
    default_prefork=True,
    supports_http2=False,
    supports_brotli=False,
    supports_protocols=False,
    supports_wsgi=False,
    manages_selinux=False,
    uses_systemd=False,
    writes_logrotate=True,
    sites_dir="/www",
    site_logs_dir="/logs",
    stats_package="awstats_6",
    stats_var_dir="/var/opt/awstats-6",
    stats_bin_dir="/opt/awstats-6",
    selinux_package=None,
    jk_package=None,
    jk_module_file="modules/mod_jk-1.2.27.so",
    alternate_instance_package=None,
    after_network_online_package=None,
)

CENTOS7 = OsStrategy(
    version=OsVersion.CENTOS7,
    family=RendererFamily.MODERN,
    dollar_variable="$",
    default_prefork=False,
    supports_http2=False,
    supports_brotli=False,
    supports_protocols=False,
    supports_wsgi=True,
    manages_selinux=True,
    uses_systemd=True,
    writes_logrotate=False,
    sites_dir="/var/www",
    site_logs_dir="/var/log/httpd-sites",
    stats_package="awstats",
    stats_var_dir="/var/opt/awstats",
    stats_bin_dir="/opt/awstats",
    selinux_package="policycoreutils-python",
    jk_package="tomcat-connectors",
    jk_module_file="modules/mod_jk.so",
    alternate_instance_package="httpd-n",
    after_network_online_package="httpd-after-network-online",
)

ROCKY9 = OsStrategy(
    version=OsVersion.ROCKY9,
    family=RendererFamily.MODERN,
    dollar_variable="$",
    default_prefork=False,
    supports_http2=True,
    supports_brotli=True,
    supports_protocols=True,
    supports_wsgi=False,
    manages_selinux=True,
    uses_systemd=True,
    writes_logrotate=False,
    sites_dir="/var/www",
    site_logs_dir="/var/log/httpd-sites",
    stats_package="awstats",
    stats_var_dir="/var/opt/awstats",
    stats_bin_dir="/opt/awstats",
    selinux_package="policycoreutils-python-utils",
    jk_package="tomcat-connectors",
    jk_module_file="modules/mod_jk.so",
    alternate_instance_package="httpd-n",
    after_network_online_package="httpd-after-network-online",
)

_STRATEGIES = {strategy.version: strategy for strategy in (CENTOS5, CENTOS7, ROCKY9)}


def strategy_for(os_version: str | OsVersion) -> OsStrategy:
    """Return the strategy for *os_version*."""
    try:
        return _STRATEGIES[OsVersion(os_version)]
    except (KeyError, ValueError) as exc:
        raise UnsupportedOsError(f"Unsupported OperatingSystemVersion: {os_version}") from exc


__all__ = [
    "CENTOS5",
    "CENTOS7",
    "CONF_DIR",
    "DISABLED_SITE_NAME",
    "OsStrategy",
    "OsVersion",
    "ROCKY9",
    "RendererFamily",
    "SERVER_ROOT",
    "SITES_AVAILABLE_DIR",
    "SITES_ENABLED_DIR",
    "UnsupportedOsError",
    "strategy_for",
]
