from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Union

KB = 1024
MB = 1024 * KB
GB = 1024 * MB

DIMENSIONS = ("cpus", "mem", "disk", "ports")

MAX_PORT = 65535


class ConfigParseError(ValueError):
    """The resource override string is malformed."""


class DuplicateResourceError(ValueError):
    """An additive merge would produce two entries for one (name, role) key."""


@dataclass(frozen=True)
class Scalar:
    value: float

    def __post_init__(self) -> None:
        v = float(self.value)
        if not math.isfinite(v) or v < 0:
            raise ValueError(f"Scalar must be a finite non-negative number, got {self.value!r}")
        object.__setattr__(self, "value", v)

    def __str__(self) -> str:
        return str(int(self.value)) if self.value.is_integer() else repr(self.value)


@dataclass(frozen=True, order=True)
class Bytes:
    value: int

    @classmethod
    def megabytes(cls, n: int) -> Bytes:
        return cls(int(n) * MB)

    @classmethod
    def gigabytes(cls, n: int) -> Bytes:
        return cls(int(n) * GB)

    def to_megabytes(self) -> int:
        return self.value // MB

    def __sub__(self, other: Bytes) -> Bytes:
        return Bytes(self.value - other.value)

    def __str__(self) -> str:
        for unit, size in (("GB", GB), ("MB", MB), ("KB", KB)):
            if self.value >= size and self.value % size == 0:
                return f"{self.value // size}{unit}"
        return f"{self.value}B"


@dataclass(frozen=True)
class Ranges:
    """Sorted, disjoint, inclusive integer intervals.

    Overlapping and adjacent intervals are coalesced on construction, so two
    Ranges describing the same ports always compare equal.
    """

    intervals: tuple[tuple[int, int], ...] = ()

    def __post_init__(self) -> None:
        merged: list[tuple[int, int]] = []
        for begin, end in sorted((int(b), int(e)) for b, e in self.intervals):
            if begin < 0 or begin > end:
                raise ValueError(f"Invalid range {begin}-{end}")
            if merged and begin <= merged[-1][1] + 1:
                merged[-1] = (merged[-1][0], max(merged[-1][1], end))
            else:
                merged.append((begin, end))
        object.__setattr__(self, "intervals", tuple(merged))

    def __contains__(self, value: object) -> bool:
        return isinstance(value, int) and any(b <= value <= e for b, e in self.intervals)

    def __or__(self, other: Ranges) -> Ranges:
        return Ranges(self.intervals + other.intervals)

    def size(self) -> int:
        return sum(e - b + 1 for b, e in self.intervals)

    def __str__(self) -> str:
        return "[" + ", ".join(f"{b}-{e}" for b, e in self.intervals) + "]"


Quantity = Union[Scalar, Bytes, Ranges]

# Value kind each dimension carries inside a ResourceSet. Byte sizes are
# stored as whole megabytes, so mem and disk are scalars here.
_KINDS: dict[str, type] = {"cpus": Scalar, "mem": Scalar, "disk": Scalar, "ports": Ranges}


@dataclass(frozen=True)
class Resource:
    name: str
    role: str
    value: Quantity

    def __post_init__(self) -> None:
        kind = _KINDS.get(self.name)
        if kind is None:
            raise ValueError(f"Unknown resource '{self.name}' (expected one of {', '.join(DIMENSIONS)})")
        if not isinstance(self.value, kind):
            raise ValueError(f"Resource '{self.name}' takes a {kind.__name__} value, got {type(self.value).__name__}")
        if not self.role:
            raise ValueError("Resource role must not be empty")

    def __str__(self) -> str:
        return f"{self.name}({self.role}):{self.value}"


class ResourceSet:
    """Immutable mapping (name, role) -> quantity.

    ``a + b`` is the additive merge and refuses overlapping keys;
    ``a.merge(b, override=True)`` lets ``b`` win instead.
    """

    __slots__ = ("_entries",)

    def __init__(self, resources: Iterable[Resource] = ()) -> None:
        entries: dict[tuple[str, str], Resource] = {}
        for r in resources:
            key = (r.name, r.role)
            if key in entries:
                raise DuplicateResourceError(f"Duplicate resource {r.name}({r.role})")
            entries[key] = r
        self._entries = entries

    @classmethod
    def of(cls, name: str, value: Quantity, role: str) -> ResourceSet:
        return cls([Resource(name, role, value)])

    def __iter__(self) -> Iterator[Resource]:
        order = {name: i for i, name in enumerate(DIMENSIONS)}
        return iter(sorted(self._entries.values(), key=lambda r: (order[r.name], r.role)))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceSet):
            return NotImplemented
        return self._entries == other._entries

    def __hash__(self) -> int:
        return hash(frozenset(self._entries.items()))

    def __add__(self, other: ResourceSet) -> ResourceSet:
        return self.merge(other)

    def merge(self, other: ResourceSet, override: bool = False) -> ResourceSet:
        entries = dict(self._entries)
        for key, r in other._entries.items():
            if key in entries and not override:
                raise DuplicateResourceError(f"Duplicate resource {r.name}({r.role})")
            entries[key] = r
        return ResourceSet(entries.values())

    def get(self, name: str, role: str) -> Quantity | None:
        r = self._entries.get((name, role))
        return r.value if r else None

    def has(self, name: str) -> bool:
        return any(n == name for n, _ in self._entries)

    def roles(self) -> set[str]:
        return {role for _, role in self._entries}

    def _scalar(self, name: str) -> float | None:
        values = [r.value.value for r in self._entries.values() if r.name == name]
        return sum(values) if values else None

    def cpus(self) -> float | None:
        return self._scalar("cpus")

    def mem(self) -> float | None:
        """Total memory in megabytes across roles."""
        return self._scalar("mem")

    def disk(self) -> float | None:
        """Total disk in megabytes across roles."""
        return self._scalar("disk")

    def ports(self) -> Ranges | None:
        found = [r.value for r in self._entries.values() if r.name == "ports"]
        if not found:
            return None
        out = Ranges()
        for ranges in found:
            out = out | ranges
        return out

    def to_records(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for r in self:
            if isinstance(r.value, Ranges):
                out.append({"name": r.name, "role": r.role, "type": "ranges", "value": [list(i) for i in r.value.intervals]})
            else:
                out.append({"name": r.name, "role": r.role, "type": "scalar", "value": r.value.value})
        return out

    def __str__(self) -> str:
        return "; ".join(str(r) for r in self)

    def __repr__(self) -> str:
        return f"ResourceSet({str(self)!r})"


_ENTRY_RE = re.compile(r"^\s*([a-z]+)\s*(?:\(\s*([^()\s]+)\s*\))?\s*:\s*(.+?)\s*$")
_RANGE_RE = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")


def parse_value(name: str, text: str) -> Quantity:
    kind = _KINDS.get(name)
    if kind is None:
        raise ConfigParseError(f"Unknown resource '{name}' (expected one of {', '.join(DIMENSIONS)})")

    text = text.strip()
    if kind is Ranges:
        if not (text.startswith("[") and text.endswith("]")):
            raise ConfigParseError(f"Resource '{name}' expects ranges like [31000-32000], got '{text}'")
        intervals: list[tuple[int, int]] = []
        body = text[1:-1].strip()
        if body:
            for part in body.split(","):
                m = _RANGE_RE.match(part)
                if not m:
                    raise ConfigParseError(f"Bad range '{part.strip()}' for resource '{name}'")
                begin, end = int(m.group(1)), int(m.group(2))
                if end > MAX_PORT:
                    raise ConfigParseError(f"Port {end} is out of range for resource '{name}' (max {MAX_PORT})")
                intervals.append((begin, end))
        try:
            return Ranges(tuple(intervals))
        except ValueError as e:
            raise ConfigParseError(f"Bad ranges for resource '{name}': {e}") from e

    try:
        return Scalar(float(text))
    except ValueError as e:
        raise ConfigParseError(f"Bad scalar '{text}' for resource '{name}'") from e


def parse_resource(name: str, value: str, role: str) -> Resource:
    quantity = parse_value(name, value)
    try:
        return Resource(name, role, quantity)
    except ValueError as e:
        raise ConfigParseError(str(e)) from e


def parse(raw: str | None, default_role: str) -> ResourceSet:
    """Parse an override string such as ``cpus:2;mem(ads):4096;ports:[31000-32000]``.

    Entries without an explicit role get ``default_role``. An empty string
    parses to an empty ResourceSet. A blank ``default_role`` is rejected even
    then, since every resolved dimension ends up under it.
    """
    if not default_role or not default_role.strip():
        raise ConfigParseError("Default role must not be empty")
    if raw is None or not raw.strip():
        return ResourceSet()

    resources: list[Resource] = []
    for token in raw.split(";"):
        if not token.strip():
            continue
        m = _ENTRY_RE.match(token)
        if not m:
            raise ConfigParseError(f"Bad resource entry '{token.strip()}' (expected name[(role)]:value)")
        name, role, text = m.groups()
        resources.append(parse_resource(name, text, role or default_role))

    try:
        return ResourceSet(resources)
    except DuplicateResourceError as e:
        raise ConfigParseError(str(e)) from e
