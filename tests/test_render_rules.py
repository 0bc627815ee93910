"""Rewrite-rule classification and hostname ordering helpers."""
from __future__ import annotations

from typing import Any

import pytest

from httpdctl.model import DesiredState, RewriteRule
from httpdctl.render.common import effective_include_config, is_redirect_all, server_aliases, site_hostnames
from httpdctl.state import parse_desired_state


@pytest.mark.parametrize(
    ("pattern", "flags", "expected"),
    [
        ("^(.*)$", "L,R=permanent", True),
        ("^", "R,L", True),
        ("^(.*)$", "redirect,END", True),
        ("^(.*)$", "R=301", True),
        ("^/old$", "R,L", False),
        ("^/api/(.*)$", "P", True),
        ("^/api/(.*)$", "proxy,L", True),
        ("^/a$", None, True),
        ("^/a$", "NC", True),
        ("^/a$", "S=1", False),
        ("^/a$", "T=text/plain", False),
        ("^/a$", "L", False),
        ("^/a$", "last,S=2", False),
        ("^(.*)$", "r,l", True),
    ],
)
def test_is_redirect_all_boundaries(pattern: str, flags: str | None, expected: bool) -> None:
    assert is_redirect_all(RewriteRule(pattern=pattern, substitution="https://example.com$1", flags=flags)) is expected


def test_flag_values_are_ignored_when_matching() -> None:
    rule = RewriteRule(pattern="^", substitution="-", flags=" R = 302 , L ")

    assert rule.flag_set() == {"R", "L"}
    assert rule.has_flag("redirect", "r")


def _state(document: dict[str, Any]) -> DesiredState:
    return parse_desired_state(document)


@pytest.mark.parametrize(
    ("configured", "redirect_all", "expected"),
    [
        (None, False, None),
        (None, True, "IfModule !rewrite_module"),
        ("true", True, None),
        ("TRUE", False, None),
        ("false", False, "false"),
        ("IfDefine MAINTENANCE", True, "IfDefine MAINTENANCE"),
    ],
)
def test_effective_include_config(
    document: dict[str, Any],
    configured: str | None,
    redirect_all: bool,
    expected: str | None,
) -> None:
    document["sites"][0]["virtual_hosts"][0]["include_site_config"] = configured
    vhost = _state(document).sites[0].virtual_hosts[0]

    assert effective_include_config(vhost, redirect_all) == expected


def test_server_aliases_drop_primary_and_duplicates(document: dict[str, Any]) -> None:
    document["sites"][0]["virtual_hosts"][0]["aliases"] = [
        "www.shop.example.com",
        "shop.example.com",
        "www.shop.example.com",
        "shop.example.net",
    ]
    vhost = _state(document).sites[0].virtual_hosts[0]

    assert server_aliases(vhost) == ["www.shop.example.com", "shop.example.net"]


def test_site_hostnames_are_unique_and_primary_first(document: dict[str, Any]) -> None:
    """Names repeated across binds appear once; wildcard binds add no address."""
    document["instances"][0]["binds"].append({"id": 3, "ip": "0.0.0.0", "port": 8080, "protocol": "http"})
    document["sites"][0]["virtual_hosts"].append(
        {
            "bind": 3,
            "primary_hostname": "www.shop.example.com",
            "aliases": ["shop.example.com", "shop.example.net"],
        }
    )
    site = _state(document).sites[0]

    assert site_hostnames(site) == [
        "shop.example.com",
        "www.shop.example.com",
        "192.0.2.10",
        "shop.example.net",
    ]


def test_site_without_virtual_hosts_answers_to_its_name(document: dict[str, Any]) -> None:
    document["sites"][0]["virtual_hosts"] = []

    assert site_hostnames(_state(document).sites[0]) == ["shop"]
