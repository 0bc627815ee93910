"""Helpers shared by the legacy and modern artifact builders."""
from __future__ import annotations

import ipaddress

from ..escape import escape
from ..model import Certificate, Header, Protocol, RewriteRule, Site, VirtualHost
from . import RenderError

REDIRECT_ALL_PATTERNS = frozenset({"^", "^(.*)$"})
SUPPORTED_INCLUDE_WRAPPERS = ("IfModule ", "IfDefine ")

MOD_PHP_MODULES = {5: ("php5_module", "libphp5.so"), 7: ("php7_module", "libphp7.so")}


def bracketed(ip: str) -> str:
    """Return *ip* with IPv6 addresses wrapped in brackets."""
    address = ipaddress.ip_address(ip)
    if address.version == 6:
        return f"[{address.compressed}]"
    return str(address)


def listen_address(ip: str, port: int) -> str:
    return f"{bracketed(ip)}:{port}"


def mod_php_module(major: int) -> tuple[str, str]:
    """Return the ``(module name, shared object)`` of an embedded PHP major."""
    return MOD_PHP_MODULES.get(major, ("php_module", "libphp.so"))


def server_aliases(vhost: VirtualHost) -> list[str]:
    """Return the distinct aliases of *vhost*, in order, without the primary."""
    seen = {vhost.primary_hostname}
    aliases: list[str] = []
    for alias in vhost.aliases:
        if alias not in seen:
            seen.add(alias)
            aliases.append(alias)
    return aliases


def site_hostnames(site: Site) -> list[str]:
    """Return every name a site answers to, each exactly once.

    The first virtual host's primary hostname leads; each virtual host then
    contributes its primary, its aliases and its bind address unless that
    address is loopback or a wildcard. A site without virtual hosts answers
    to its own name.
    """
    names: list[str] = []

    def add(value: str) -> None:
        if value not in names:
            names.append(value)

    if not site.virtual_hosts:
        return [site.name]
    for vhost in site.virtual_hosts:
        add(vhost.primary_hostname)
        for alias in vhost.aliases:
            add(alias)
        if vhost.bind.is_specific_address:
            add(vhost.bind.ip)
    return names


def primary_url(vhost: VirtualHost) -> str:
    """Return ``scheme://primary[:port]`` without a trailing slash."""
    bind = vhost.bind
    url = f"{bind.protocol.value}://{vhost.primary_hostname}"
    if bind.port != bind.default_port:
        url = f"{url}:{bind.port}"
    return url


def is_redirect_all(rule: RewriteRule) -> bool:
    """Return ``True`` when *rule* leaves nothing for the site configuration to serve."""
    return (
        (
            rule.pattern in REDIRECT_ALL_PATTERNS
            and rule.has_flag("R", "redirect")
            and rule.has_flag("L", "last", "END")
        )
        or rule.has_flag("P", "proxy")
        or (
            not rule.has_flag("L", "last", "END")
            and not rule.has_flag("S", "skip")
            and not rule.has_flag("T", "type")
        )
    )


def rewrite_directive(dollar: str | None, rule: RewriteRule) -> str:
    """Return the ``RewriteRule`` line for *rule*."""
    text = f"RewriteRule {escape(dollar, rule.pattern)} {escape(dollar, rule.substitution)}"
    if rule.flags:
        text = f"{text} {escape(dollar, f'[{rule.flags}]')}"
    return text


def header_directive(dollar: str | None, header: Header) -> str:
    """Return the ``Header`` line for *header*."""
    parts = ["Header"]
    if header.always:
        parts.append("always")
    parts.append(header.type)
    parts.append(escape(dollar, header.name))
    if header.value is not None:
        parts.append(escape(dollar, header.value))
    return " ".join(parts)


def comment_line(dollar: str | None, comment: str) -> str:
    return escape(dollar, comment, allow_variables=True)


def rewrite_entries(dollar: str | None, vhost: VirtualHost) -> list[dict[str, str | None]]:
    """Return the escaped comment and directive of each rewrite rule of *vhost*."""
    return [
        {
            "comment": None if rule.comment is None else comment_line(dollar, rule.comment),
            "directive": rewrite_directive(dollar, rule),
        }
        for rule in vhost.rewrite_rules
    ]


def header_entries(dollar: str | None, vhost: VirtualHost) -> list[dict[str, str | None]]:
    """Return the escaped comment and directive of each header of *vhost*."""
    return [
        {
            "comment": None if header.comment is None else comment_line(dollar, header.comment),
            "directive": header_directive(dollar, header),
        }
        for header in vhost.headers
    ]


def redirects_all(vhost: VirtualHost) -> bool:
    """Return ``True`` when any rewrite rule of *vhost* redirects every request."""
    return any(is_redirect_all(rule) for rule in vhost.rewrite_rules)


def effective_include_config(vhost: VirtualHost, has_redirect_all: bool) -> str | None:
    """Return how the shared include is emitted for *vhost*.

    ``None`` means a plain ``Include``; ``"false"`` comments it out; any
    ``IfModule``/``IfDefine`` condition wraps it.
    """
    config = vhost.include_site_config
    if config is None and has_redirect_all:
        return "IfModule !rewrite_module"
    if config is not None and config.lower() == "true":
        return None
    return config


def site_include_lines(include: str, config: str | None) -> list[str]:
    """Return the indented lines of the (possibly conditional) ``Include`` of the shared file."""
    if config is not None and config.lower() == "false":
        return [f"    # Include {include}"]
    if config is not None and config.startswith(SUPPORTED_INCLUDE_WRAPPERS):
        closing = config.split(" ", 1)[0]
        return [f"    <{config}>", f"        Include {include}", f"    </{closing}>"]
    return [f"    Include {include}"]


def ssl_path(dollar: str | None, path: str, primary_hostname: str) -> str:
    """Escape a certificate path, expressing the primary hostname as a variable."""
    prefix = f"/etc/letsencrypt/live/{primary_hostname}/"
    if path.startswith(prefix):
        suffix = path[len(prefix) :]
        if "${" not in suffix:
            return escape(
                dollar,
                "/etc/letsencrypt/live/${bind.primary_hostname}/" + suffix,
                allow_variables=True,
            )
    if path == f"/etc/pki/tls/private/{primary_hostname}.key":
        return "/etc/pki/tls/private/${bind.primary_hostname}.key"
    if path == f"/etc/pki/tls/certs/{primary_hostname}.cert":
        return "/etc/pki/tls/certs/${bind.primary_hostname}.cert"
    if path == f"/etc/pki/tls/certs/{primary_hostname}.chain":
        return "/etc/pki/tls/certs/${bind.primary_hostname}.chain"
    return escape(dollar, path)


def require_certificate(vhost: VirtualHost) -> Certificate | None:
    """Return the certificate of an HTTPS virtual host."""
    if vhost.bind.protocol is Protocol.HTTPS and vhost.certificate is None:
        raise RenderError(f"SSLCertificate not found for VirtualHost #{vhost.bind.id}")
    return vhost.certificate


def require_terms(require: str) -> list[str]:
    """Return the space-separated terms of a ``Require`` value."""
    return [term for term in require.split(" ") if term]


def site_cgi_enabled(site: Site) -> bool:
    return site.enable_cgi and not site.disabled


__all__ = [
    "bracketed",
    "comment_line",
    "effective_include_config",
    "header_directive",
    "header_entries",
    "is_redirect_all",
    "listen_address",
    "mod_php_module",
    "primary_url",
    "redirects_all",
    "require_certificate",
    "require_terms",
    "rewrite_directive",
    "rewrite_entries",
    "server_aliases",
    "site_cgi_enabled",
    "site_hostnames",
    "site_include_lines",
    "ssl_path",
]
