"""File for tests."""

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml

from loader import parse_program
from processor import Machine


def pytest_configure(config: Any) -> None:
    """Configure the tests."""
    config.addinivalue_line(
        "markers",
        "golden_test(pattern): parameterize test with YAML files matching pattern",
    )


def _iter_marker_patterns(node: Any) -> Iterator[str]:
    """Yield pattern strings from golden_test markers on `node`."""
    for m in node.iter_markers(name="golden_test"):
        yield m.args[0] if m.args else "golden/*.yaml"


def _load_golden(p: Path) -> dict[str, Any]:
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        data = {"__yaml_load_error__": "golden file is not a mapping"}
    data.setdefault("__path__", str(p))
    data.setdefault("__name__", p.name)
    return data


def pytest_generate_tests(metafunc: Any) -> None:
    """Generate tests (parametrization) from YAML golden files."""
    if "golden" not in metafunc.fixturenames:
        return

    patterns = list(_iter_marker_patterns(metafunc.definition)) or ["golden/*.yaml"]
    root = Path(metafunc.config.rootpath)

    files: list[Path] = []
    for pat in patterns:
        files.extend(sorted(root.glob(pat)))

    metafunc.parametrize("golden", [_load_golden(p) for p in files], ids=[p.name for p in files])


@pytest.fixture
def make_machine() -> Iterator[Callable[..., Machine]]:
    """Build machines from program text; closes any still running at teardown."""
    created: list[Machine] = []

    def _make(program: str | list[int], **kwargs: Any) -> Machine:
        m = Machine(**kwargs)
        m.load_image(parse_program(program) if isinstance(program, str) else program)
        created.append(m)
        return m

    yield _make

    for m in created:
        if m.running:
            m.close()
            m.wait(timeout=5)
