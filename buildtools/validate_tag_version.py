#!/usr/bin/env python3
"""Check that a release tag agrees with the httpdctl package version.

The release workflow calls this before publishing. It requires release tags
of the form ``v<version>`` and pre-release tags of the form
``v<version>-rc``, and compares the version in the tag with the
``__version__`` assigned in ``src/httpdctl/__init__.py`` and the ``version``
field of ``pyproject.toml``.
"""
from __future__ import annotations

import argparse
import ast
import pathlib
import re
import sys

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
INIT_PATH = PROJECT_ROOT / "src" / "httpdctl" / "__init__.py"
PYPROJECT_PATH = PROJECT_ROOT / "pyproject.toml"

_PYPROJECT_VERSION = re.compile(r'^version\s*=\s*"([^"]+)"\s*$', re.MULTILINE)


class TagValidationError(RuntimeError):
    """Raised when a tag does not match the expected scheme."""


def load_package_version() -> str:
    """Read ``__version__`` from the package source without importing it."""
    source = INIT_PATH.read_text(encoding="utf-8")
    module = ast.parse(source, filename=str(INIT_PATH))

    for node in module.body:
        if not isinstance(node, ast.Assign):
            continue
        for target in node.targets:
            if getattr(target, "id", None) != "__version__":
                continue
            if isinstance(node.value, ast.Constant) and isinstance(node.value.value, str):
                return node.value.value
            raise TagValidationError("__version__ in __init__.py is not a string literal")
    raise TagValidationError("Unable to determine __version__ from __init__.py")


def load_pyproject_version() -> str:
    match = _PYPROJECT_VERSION.search(PYPROJECT_PATH.read_text(encoding="utf-8"))
    if match is None:
        raise TagValidationError("Unable to determine version from pyproject.toml")
    return match.group(1)


def expected_version_from_tag(tag: str, kind: str) -> str:
    """Return the version string carried by *tag*."""
    if kind == "release":
        if not tag.startswith("v") or tag.endswith("-rc"):
            raise TagValidationError(
                f"Release tags must be formatted as v<version>; received '{tag}'."
            )
        return tag[1:]
    if kind == "rc":
        if not (tag.startswith("v") and tag.endswith("-rc")):
            raise TagValidationError(
                f"Pre-release tags must be formatted as v<version>-rc; received '{tag}'."
            )
        return tag[1:-3]
    raise TagValidationError(f"Unknown tag kind '{kind}'.")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate tag name against package version.")
    parser.add_argument(
        "--kind",
        required=True,
        choices=["release", "rc"],
        help="Tag category to validate.",
    )
    parser.add_argument("--tag", required=True, help="Git tag name to validate.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint for the release workflow."""
    args = parse_args(argv)
    try:
        expected_version = expected_version_from_tag(args.tag, args.kind)
        package_version = load_package_version()
        project_version = load_pyproject_version()
    except TagValidationError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1

    for label, found in (("package", package_version), ("pyproject", project_version)):
        if found != expected_version:
            sys.stderr.write(
                f"Tag version '{expected_version}' does not match {label} version '{found}'.\n"
            )
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
