"""Tests for desired-state parsing and validation."""
from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from conftest import write_document
from httpdctl.model import ModuleFlag, Protocol
from httpdctl.state import StateError, load_desired_state, parse_desired_state
from httpdctl.strategies import CENTOS5, ROCKY9, strategy_for


def test_base_document_parses(document: dict[str, Any]) -> None:
    state = parse_desired_state(document)

    assert state.host.os_version == "rocky9"
    assert state.host.accounts["shop"].uid == 1001
    [instance] = state.instances
    assert instance.name is None
    assert instance.user == "apache"
    assert [bind.protocol for bind in instance.binds] == [Protocol.HTTP, Protocol.HTTPS]

    site = state.site("shop")
    assert site is not None
    assert site.user == "shop"
    assert site.server_admin == "webmaster@shop"
    [root] = site.webapps
    assert root.is_root
    assert root.doc_base == "/var/www/shop/htdocs"
    assert root.options == "SymLinksIfOwnerMatch"
    [vhost] = site.virtual_hosts
    assert vhost.access_log == "/var/log/httpd-sites/shop/https/access_log"
    assert state.instance_for_bind(vhost.bind) is instance
    assert state.sites_for(instance) == [site]


def test_load_from_file(tmp_path: Path, document: dict[str, Any]) -> None:
    path = write_document(tmp_path / "desired.yml", document)

    state = load_desired_state(path, os_version="centos7")

    assert state.host.os_version == "centos7"


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(StateError, match="not found"):
        load_desired_state(tmp_path / "absent.yml")


def test_top_level_must_be_mapping(tmp_path: Path) -> None:
    path = tmp_path / "desired.yml"
    path.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(StateError, match="mapping at the top level"):
        load_desired_state(path)


def test_webapps_without_root_are_rejected(document: dict[str, Any]) -> None:
    document["sites"][0]["webapps"] = [{"path": "/app", "doc_base": "/var/www/shop/app"}]

    with pytest.raises(StateError, match="No DocumentRoot found"):
        parse_desired_state(document)


@pytest.mark.parametrize("name", ["disabled", "cgi-bin", "lost+found", "Shop", "-x"])
def test_reserved_or_invalid_site_names(document: dict[str, Any], name: str) -> None:
    document["sites"][0]["name"] = name

    with pytest.raises(StateError, match="Invalid site name"):
        parse_desired_state(document)


def test_duplicate_site_names(document: dict[str, Any]) -> None:
    document["sites"].append({"name": "shop"})

    with pytest.raises(StateError, match="Duplicate site name: shop"):
        parse_desired_state(document)


def test_duplicate_bind_ids(document: dict[str, Any]) -> None:
    document["instances"].append(
        {
            "name": "blog",
            "max_concurrency": 50,
            "binds": [{"id": 1, "ip": "192.0.2.11", "port": 80}],
        }
    )

    with pytest.raises(StateError, match="Duplicate bind id: 1"):
        parse_desired_state(document)


def test_unknown_bind_reference(document: dict[str, Any]) -> None:
    document["sites"][0]["virtual_hosts"][0]["bind"] = 9

    with pytest.raises(StateError, match="bind #9 does not exist"):
        parse_desired_state(document)


def test_legacy_hosts_require_numeric_instance_names(document: dict[str, Any]) -> None:
    document["host"]["os_version"] = "centos5"
    document["instances"][0]["name"] = "blog"

    with pytest.raises(StateError, match="must be numeric"):
        parse_desired_state(document)


def test_disabled_site_drops_cgi_and_ftp(document: dict[str, Any]) -> None:
    document["sites"][0].update(
        {"disabled": True, "enable_cgi": True, "enable_anonymous_ftp": True}
    )

    site = parse_desired_state(document).sites[0]

    assert site.enable_cgi is False
    assert site.enable_anonymous_ftp is False
    assert site.effective_user == "apache"
    assert site.webapps[0].enable_cgi is False


def test_module_overrides(document: dict[str, Any]) -> None:
    document["instances"][0]["modules"] = {"status": True, "brotli": "force_off", "ssl": None}

    instance = parse_desired_state(document).instances[0]

    assert instance.module("status") is ModuleFlag.FORCE_ON
    assert instance.module("brotli") is ModuleFlag.FORCE_OFF
    assert instance.module("ssl") is ModuleFlag.INFER
    assert instance.module("rewrite") is ModuleFlag.INFER


def test_unknown_module_override(document: dict[str, Any]) -> None:
    document["instances"][0]["modules"] = {"perl": True}

    with pytest.raises(StateError, match="unknown module override 'perl'"):
        parse_desired_state(document)


@pytest.mark.parametrize(
    ("field", "value", "message"),
    [
        ("max_concurrency", 0, "must be at least 1"),
        ("max_concurrency", "many", "to be an integer"),
        ("php_version", "eight", "Invalid PHP version"),
        ("php_version", "8", "lacks a minor component"),
    ],
)
def test_instance_field_validation(document: dict[str, Any], field: str, value: object, message: str) -> None:
    document["instances"][0][field] = value

    with pytest.raises(StateError, match=message):
        parse_desired_state(document)


def test_unsupported_os_version(document: dict[str, Any]) -> None:
    document["host"]["os_version"] = "debian12"

    with pytest.raises(StateError, match="Unsupported os_version"):
        parse_desired_state(document)


def test_strategy_naming() -> None:
    """Each OS generation names its files the way its packaging expects."""
    state = parse_desired_state(
        {
            "host": {"hostname": "h", "os_version": "rocky9", "cpu_count": 1},
            "instances": [
                {"max_concurrency": 10},
                {"name": "blog", "max_concurrency": 10},
            ],
        }
    )
    default, blog = state.instances

    assert ROCKY9.main_conf_name(default) == "httpd.conf"
    assert ROCKY9.main_conf_name(blog) == "blog.conf"
    assert ROCKY9.legacy_main_conf_name(blog) == "httpd@blog.conf"
    assert ROCKY9.unit_name(blog) == "httpd@blog.service"
    assert strategy_for("centos7").main_conf_name(blog) == "httpd@blog.conf"
    assert CENTOS5.main_conf_name(default) == "httpd1.conf"
    assert CENTOS5.unit_name(default) == "httpd1"
