"""
Version information for the wallet broker.
"""
import importlib.metadata
import pathlib

import tomli

DEFAULT_VERSION = "0.3.0"


def _version_from_pyproject() -> str:
    """Read the version from the source checkout's pyproject.toml."""
    path = pathlib.Path(__file__).parent.parent / "pyproject.toml"
    try:
        with path.open("rb") as f:
            return tomli.load(f)["project"]["version"]
    except (FileNotFoundError, KeyError, tomli.TOMLDecodeError):
        return DEFAULT_VERSION


try:
    __version__ = importlib.metadata.version("wallet-broker")
except importlib.metadata.PackageNotFoundError:
    __version__ = _version_from_pyproject()
