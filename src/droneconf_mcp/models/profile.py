"""Parameter profiles: named snapshots of parameter values on disk.

A profile file is a JSON document::

    {
        "format": "droneconf-profile",
        "version": 1,
        "name": "quad-5inch",
        "parameters": {"ARMING_CHECK": 1.0, "BATT_LOW_VOLT": 14.0}
    }
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

PROFILE_FORMAT = "droneconf-profile"
PROFILE_VERSION = 1
PROFILE_SUFFIX = ".json"

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


class ProfileStore(Protocol):
    """Persistence collaborator for parameter profiles."""

    def save_profile(self, name: str, parameters: dict[str, float]) -> Path: ...

    def load_profile(self, name: str) -> dict[str, float]: ...

    def list_profiles(self) -> list[str]: ...


def export_profile(name: str, parameters: dict[str, float], path: str | Path) -> Path:
    """Write a profile document to ``path``.

    Returns:
        The path written to.
    """
    path = Path(path)
    doc = {
        "format": PROFILE_FORMAT,
        "version": PROFILE_VERSION,
        "name": name,
        "parameters": {k: float(v) for k, v in sorted(parameters.items())},
    }
    path.write_text(json.dumps(doc, indent=2), encoding="utf-8")
    return path


def import_profile(path: str | Path) -> dict[str, float]:
    """Read the parameter map from a profile document.

    Raises:
        ValueError: If the file is not a profile or holds non-numeric values.
    """
    path = Path(path)
    doc = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(doc, dict) or doc.get("format") != PROFILE_FORMAT:
        raise ValueError(f"{path} is not a {PROFILE_FORMAT} file")
    if doc.get("version", 0) > PROFILE_VERSION:
        raise ValueError(
            f"Profile version {doc['version']} is newer than supported ({PROFILE_VERSION})"
        )
    raw = doc.get("parameters", {})
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: 'parameters' must be an object")
    params: dict[str, float] = {}
    for key, value in raw.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{path}: value for {key!r} is not numeric: {value!r}")
        params[key] = float(value)
    return params


class JsonProfileStore:
    """Profiles kept as one JSON file each under a directory."""

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, name: str) -> Path:
        if not _NAME_RE.match(name):
            raise ValueError(
                f"Profile name must be 1-64 chars of letters, digits, '_', '-' or '.', got {name!r}"
            )
        return self._dir / f"{name}{PROFILE_SUFFIX}"

    def save_profile(self, name: str, parameters: dict[str, float]) -> Path:
        path = self._path(name)
        self._dir.mkdir(parents=True, exist_ok=True)
        export_profile(name, parameters, path)
        logger.info("Profile '%s' saved (%d parameters)", name, len(parameters))
        return path

    def load_profile(self, name: str) -> dict[str, float]:
        """Load a profile by name.

        Raises:
            FileNotFoundError: If no such profile exists.
        """
        path = self._path(name)
        if not path.exists():
            raise FileNotFoundError(f"Profile '{name}' not found in {self._dir}")
        params = import_profile(path)
        logger.info("Profile '%s' loaded (%d parameters)", name, len(params))
        return params

    def list_profiles(self) -> list[str]:
        if not self._dir.is_dir():
            return []
        return sorted(p.stem for p in self._dir.glob(f"*{PROFILE_SUFFIX}"))
