"""State registry and pre-disable stash tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from httpdctl.state import PredisableStash, StateRegistry, StateRegistryError
from httpdctl.state.registry import PREDISABLE_FILE


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    result = registry.read("predisable.yml", default={"stash": {}})

    assert result == {"stash": {}}


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a registry file and reading it back succeeds."""
    registry = StateRegistry(tmp_path)
    payload = {"stash": {"shop_192.0.2.10_80.conf": "aGVsbG8="}}

    registry.write("predisable.yml", payload)

    path = tmp_path / "predisable.yml"
    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.read("predisable.yml") == payload


def test_stash_keeps_first_copy_until_discarded(tmp_path: Path) -> None:
    """A stash is written once per disable cycle and consumed on re-enable."""
    stash = PredisableStash(StateRegistry(tmp_path))
    original = b"<VirtualHost 192.0.2.10:80>\n    # hand edited\n</VirtualHost>\n"

    assert stash.put("shop_192.0.2.10_80.conf", original) is True
    assert stash.put("shop_192.0.2.10_80.conf", b"later copy") is False
    assert stash.contains("shop_192.0.2.10_80.conf")
    assert stash.get("shop_192.0.2.10_80.conf") == original
    assert stash.keys() == ["shop_192.0.2.10_80.conf"]

    assert stash.discard("shop_192.0.2.10_80.conf") is True
    assert stash.discard("shop_192.0.2.10_80.conf") is False
    assert stash.get("shop_192.0.2.10_80.conf") is None


def test_stash_survives_new_instances(tmp_path: Path) -> None:
    """Stashed bytes persist across registry objects."""
    PredisableStash(StateRegistry(tmp_path)).put("blog.conf", b"\x00binary\xff")

    assert PredisableStash(StateRegistry(tmp_path)).get("blog.conf") == b"\x00binary\xff"


def test_malformed_stash_raises(tmp_path: Path) -> None:
    """A stash file with the wrong shape raises a StateRegistryError."""
    (tmp_path / PREDISABLE_FILE).write_text("- not\n- a mapping\n", encoding="utf-8")

    with pytest.raises(StateRegistryError):
        PredisableStash(StateRegistry(tmp_path)).keys()
