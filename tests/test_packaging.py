import tomllib
from pathlib import Path

PYPROJECT = Path(__file__).resolve().parents[1] / "pyproject.toml"


def _names(requirements):
    return {req.split(">")[0].split("<")[0].split("=")[0].strip() for req in requirements}


def test_test_only_libraries_stay_out_of_runtime_dependencies():
    project = tomllib.loads(PYPROJECT.read_text())["project"]

    runtime = _names(project["dependencies"])
    test_extra = _names(project["optional-dependencies"]["test"])

    assert {"pytest", "anyio", "httpx"} <= test_extra
    assert runtime.isdisjoint({"pytest", "anyio", "httpx"})
