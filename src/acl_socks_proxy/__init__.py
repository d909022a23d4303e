"""SOCKS5 proxy that routes connections by domain, IP range and GeoIP rules."""

import pathlib
import tomllib


def get_version() -> str:
    """Read version from pyproject.toml."""
    # Start from the current file's directory
    current_dir = pathlib.Path(__file__).parent
    # Look for pyproject.toml in parent directories
    for parent in [current_dir, *current_dir.parents]:
        pyproject_path = parent / "pyproject.toml"
        if pyproject_path.exists():
            with pyproject_path.open("rb") as f:
                pyproject_data = tomllib.load(f)
            version = pyproject_data.get("project", {}).get("version")
            if version:
                return version

    # Fallback version if file not found
    return "0.0.0"


__version__ = get_version()
