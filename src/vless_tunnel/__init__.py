"""Local VLESS tunnel supervisor built around an external xray-core engine."""

import pathlib
import sys

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


def get_version() -> str:
    """Read version from pyproject.toml."""
    current_dir = pathlib.Path(__file__).parent
    for parent in [current_dir] + list(current_dir.parents):
        pyproject_path = parent / "pyproject.toml"
        if pyproject_path.exists():
            with pyproject_path.open("rb") as f:
                pyproject_data = tomllib.load(f)
            project = pyproject_data.get("project", {})
            if project.get("name") == "vless-tunnel":
                return project["version"]

    # Installed without the source tree
    return "0.0.0"


__version__ = get_version()
