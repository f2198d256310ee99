"""Pytest hooks: golden YAML parametrization with record checks at collection."""

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml

from generate_golden_fields import check_golden


def pytest_configure(config: Any) -> None:
    """Register the golden_test marker."""
    config.addinivalue_line(
        "markers",
        "golden_test(pattern): run the test once per golden record matching pattern",
    )


def _iter_marker_patterns(node: Any) -> Iterator[str]:
    for m in node.iter_markers(name="golden_test"):
        yield m.args[0] if m.args else "golden/*.yaml"


def _load_record(p: Path) -> dict[str, Any]:
    """Read and check one golden record; a bad record fails collection."""
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        check_golden(data)
    except (yaml.YAMLError, ValueError) as e:
        pytest.fail(f"golden record {p.stem}: {e}", pytrace=False)
    return data


def pytest_generate_tests(metafunc: Any) -> None:
    if "golden" not in metafunc.fixturenames:
        return

    patterns = list(_iter_marker_patterns(metafunc.definition)) or ["golden/*.yaml"]
    root = Path(metafunc.config.rootpath)
    files = sorted({p for pat in patterns for p in root.glob(pat)})

    metafunc.parametrize("golden", [_load_record(p) for p in files], ids=[p.stem for p in files])
