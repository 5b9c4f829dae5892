"""Parameter table entries and download bookkeeping."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class ParameterMetadata:
    """Static limits and documentation for one parameter name."""

    min_value: float | None = None
    max_value: float | None = None
    description: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> ParameterMetadata:
        return cls(
            min_value=data.get("min"),
            max_value=data.get("max"),
            description=data.get("description"),
        )


@dataclass
class DroneParameter:
    """A single device-resident configuration value."""

    name: str
    value: float
    min_value: float | None = None
    max_value: float | None = None
    description: str | None = None
    index: int | None = None

    def in_range(self, value: float) -> bool:
        if self.min_value is not None and value < self.min_value:
            return False
        if self.max_value is not None and value > self.max_value:
            return False
        return True

    def apply_metadata(self, meta: ParameterMetadata) -> None:
        self.min_value = meta.min_value
        self.max_value = meta.max_value
        self.description = meta.description

    def to_dict(self) -> dict:
        d = {"name": self.name, "value": self.value}
        if self.min_value is not None:
            d["min"] = self.min_value
        if self.max_value is not None:
            d["max"] = self.max_value
        if self.description:
            d["description"] = self.description
        return d


@dataclass
class ParameterDownloadState:
    """Progress of one table download.

    ``received_count`` only grows until :meth:`reset`; ``expected_count`` is
    fixed by the first report and then never changes.
    """

    expected_count: int | None = None
    received_names: set[str] = field(default_factory=set)
    received_indices: set[int] = field(default_factory=set)

    @property
    def received_count(self) -> int:
        return len(self.received_names)

    @property
    def complete(self) -> bool:
        return (
            self.expected_count is not None
            and self.received_count >= self.expected_count
        )

    def missing_indices(self) -> list[int]:
        if self.expected_count is None:
            return []
        return [i for i in range(self.expected_count) if i not in self.received_indices]

    def reset(self) -> None:
        self.expected_count = None
        self.received_names.clear()
        self.received_indices.clear()

    def to_dict(self) -> dict:
        return {
            "received": self.received_count,
            "expected": self.expected_count,
        }


def load_metadata(path: str | Path) -> dict[str, ParameterMetadata]:
    """Read a metadata file: ``{"NAME": {"min": .., "max": .., "description": ..}}``.

    Raises:
        ValueError: If the document is not an object of objects.
    """
    path = Path(path)
    doc = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(doc, dict):
        raise ValueError(f"{path}: expected an object keyed by parameter name")
    metadata = {}
    for name, entry in doc.items():
        if not isinstance(entry, dict):
            raise ValueError(f"{path}: entry for {name!r} must be an object")
        metadata[name] = ParameterMetadata.from_dict(entry)
    return metadata
