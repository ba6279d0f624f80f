"""Ban/unban decisions consumed by the firewall backend.

A decision is read-only input produced by the decision feed. Only
``type`` and ``value`` drive enforcement; ``duration`` becomes the ipset
entry timeout when present.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from bouncer.core.exceptions import DecisionError, UnrecognizedAddressError


SIMULATION_PREFIX = "simulation:"

# Go time.Duration string, e.g. "3h59m58.123s" or "-1.5s"
_DURATION_PATTERN = re.compile(r"^(-?)((?:\d+(?:\.\d+)?(?:h|m|s|ms|us|µs|ns))+)$")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|ms|m|s|us|µs|ns)")
_UNIT_SECONDS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}


def parse_duration(value: str) -> int:
    """Parse a Go-style duration string into whole seconds.

    Fractions are rounded up so a live ban never gets a zero timeout.
    Negative durations yield 0.

    Raises:
        DecisionError: If the string is not a valid duration
    """
    match = _DURATION_PATTERN.match(value.strip())
    if not match:
        raise DecisionError(
            f"Invalid duration: {value!r}",
            hint="Use a duration like '4h', '90m' or '3h59m58s'",
        )
    if match.group(1) == "-":
        return 0

    total = sum(
        float(number) * _UNIT_SECONDS[unit]
        for number, unit in _DURATION_PART.findall(match.group(2))
    )
    seconds = int(total)
    if total > seconds:
        seconds += 1
    return seconds


@dataclass(frozen=True)
class Decision:
    """A single ban/unban instruction."""
    type: str
    value: str
    duration: Optional[str] = None
    origin: Optional[str] = None
    scenario: Optional[str] = None
    scope: Optional[str] = None

    @property
    def is_simulation(self) -> bool:
        """True if the measure is a dry-run that must not touch the firewall."""
        return self.type.startswith(SIMULATION_PREFIX)

    @property
    def timeout(self) -> Optional[int]:
        """Entry timeout in seconds, or None when no duration was given."""
        if not self.duration:
            return None
        return parse_duration(self.duration)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Decision":
        """Build a decision from a decision-stream JSON object.

        Raises:
            DecisionError: If type is missing or a field has the wrong type
            UnrecognizedAddressError: If value is missing or empty
        """
        if not isinstance(data, dict):
            raise DecisionError(f"Decision must be an object, got {type(data).__name__}")

        details = [json.dumps(data, default=str)]
        if not data.get("type"):
            raise DecisionError("Decision is missing required field: type", details=details)

        value = data.get("value")
        if not isinstance(value, str) or not value.strip():
            # an empty address cannot be routed to either family
            raise UnrecognizedAddressError(
                f"Decision value is missing or empty: {value!r}",
                value=value if isinstance(value, str) else None,
                details=details,
            )

        for key in ("duration", "origin", "scenario", "scope"):
            if data.get(key) is not None and not isinstance(data[key], str):
                raise DecisionError(
                    f"Decision field '{key}' must be a string, got {type(data[key]).__name__}",
                    details=details,
                )

        if data.get("duration") is not None:
            parse_duration(data["duration"])

        return cls(
            type=str(data["type"]),
            value=value.strip(),
            duration=data.get("duration"),
            origin=data.get("origin"),
            scenario=data.get("scenario"),
            scope=data.get("scope"),
        )

    def __str__(self) -> str:
        return f"{self.type} {self.value}"


@dataclass
class DecisionBatch:
    """Decisions from one stream poll: deletions first, then additions.

    Entries that could not be parsed are kept in ``invalid`` so the
    rest of the batch can still be applied.
    """
    new: list[Decision]
    deleted: list[Decision]
    invalid: list[DecisionError] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.new) + len(self.deleted)


def load_decision_stream(path: Path) -> DecisionBatch:
    """Load a decision stream payload ``{"new": [...], "deleted": [...]}``.

    Either key may be missing or null. A malformed entry does not reject
    the batch; its error is collected in ``DecisionBatch.invalid``.

    Raises:
        DecisionError: If the file is not valid JSON or has the wrong shape
    """
    try:
        data = json.loads(path.read_text())
    except OSError as e:
        raise DecisionError(f"Cannot read decision file: {path}", details=[str(e)]) from e
    except json.JSONDecodeError as e:
        raise DecisionError(f"Invalid JSON in decision file: {path}", details=[str(e)]) from e

    if not isinstance(data, dict):
        raise DecisionError(
            f"Decision file must contain an object: {path}",
            hint='Expected {"new": [...], "deleted": [...]}',
        )

    invalid: list[DecisionError] = []

    def _decisions(key: str) -> list[Decision]:
        items = data.get(key) or []
        if not isinstance(items, list):
            raise DecisionError(f"'{key}' must be a list of decisions")

        decisions = []
        for index, item in enumerate(items):
            try:
                decisions.append(Decision.from_dict(item))
            except DecisionError as e:
                e.details.insert(0, f"Entry: {key}[{index}]")
                invalid.append(e)
        return decisions

    return DecisionBatch(
        new=_decisions("new"),
        deleted=_decisions("deleted"),
        invalid=invalid,
    )
