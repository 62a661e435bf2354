"""Provider-agnostic task model: identifiers, attributes and observed state."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from stratus.constants import DEFAULT_TASK_TIMEOUT, IDENTIFIER_PREFIX, StatusCode
from stratus.core.exceptions import ValidationError

type Status = dict[StatusCode, int]

_NAME_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?$")
_LONG_PATTERN = re.compile(
    rf"^{IDENTIFIER_PREFIX}-(?P<name>[a-z0-9](?:[a-z0-9-]*[a-z0-9])?)-(?P<digest>[0-9a-f]{{8}})$"
)


def _digest(name: str) -> str:
    return hashlib.sha256(name.encode()).hexdigest()[:8]


@dataclass(frozen=True, slots=True)
class Identifier:
    """Stable naming root for every cloud object belonging to a task.

    Example:
        >>> identifier = Identifier("train")
        >>> identifier.long()
        'stratus-train-...'
        >>> Identifier.parse(identifier.long()) == identifier
        True
    """

    name: str

    def __post_init__(self) -> None:
        if not _NAME_PATTERN.match(self.name):
            raise ValidationError(
                f"invalid task name {self.name!r}: use lowercase letters, digits and hyphens"
            )

    def short(self) -> str:
        return self.name

    def long(self) -> str:
        return f"{IDENTIFIER_PREFIX}-{self.name}-{_digest(self.name)}"

    def compact(self, length: int = 24) -> str:
        """Alphanumeric-only form for backends with strict naming rules."""
        digest = hashlib.sha256(self.long().encode()).hexdigest()
        stem = re.sub(r"[^a-z0-9]", "", self.name)[: max(length - len(IDENTIFIER_PREFIX) - 8, 0)]
        return f"{IDENTIFIER_PREFIX}{stem}{digest}"[:length]

    @classmethod
    def parse(cls, value: str) -> Identifier:
        """Recover an identifier from its long form.

        Raises:
            ValidationError: If the string is not a long-form identifier or
                its digest does not match the name.
        """
        match = _LONG_PATTERN.match(value)
        if match is None or _digest(match["name"]) != match["digest"]:
            raise ValidationError(f"invalid task identifier: {value!r}")
        return cls(match["name"])

    def __str__(self) -> str:
        return self.long()


@dataclass(frozen=True, slots=True)
class Event:
    """Timestamped provider event attached to a task."""

    time: datetime
    code: str
    description: tuple[str, ...] = ()

    def render(self) -> str:
        lines = [f"{self.time:%Y-%m-%d %H:%M:%S}: {self.code}", *self.description]
        return "\n".join(lines)


@dataclass(frozen=True, slots=True)
class FirewallRule:
    """Traffic rule. None for nets or ports means "any"."""

    nets: tuple[str, ...] | None = None
    ports: tuple[int, ...] | None = None


@dataclass(frozen=True, slots=True)
class Firewall:
    ingress: FirewallRule = field(default_factory=lambda: FirewallRule(ports=(22,)))
    egress: FirewallRule = field(default_factory=FirewallRule)


@dataclass(frozen=True, slots=True)
class Size:
    """Machine size alias (or native type) and disk size in GB."""

    machine: str = "m"
    storage: int = 30


@dataclass(frozen=True, slots=True)
class Environment:
    """What runs on every worker and which directories follow it.

    Args:
        image: Image alias or provider-native image reference.
        script: Script body executed by the worker agent.
        variables: Environment variables. None values are taken from the
            caller's environment when the script is rendered.
        directory: Local input directory pushed on create.
        directory_out: Output path, relative to ``directory``, pulled on delete.
        timeout: Maximum execution time of the script.
    """

    image: str = "ubuntu"
    script: str = ""
    variables: dict[str, str | None] = field(default_factory=dict)
    directory: str = ""
    directory_out: str = ""
    timeout: timedelta = DEFAULT_TASK_TIMEOUT


@dataclass(slots=True)
class TaskAttributes:
    """User-supplied task definition plus the state observed by read()."""

    environment: Environment = field(default_factory=Environment)
    size: Size = field(default_factory=Size)
    firewall: Firewall = field(default_factory=Firewall)
    spot: float = -1
    parallelism: int = 1
    permission_set: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    addresses: list[str] = field(default_factory=list)
    status: Status = field(default_factory=dict)
    events: list[Event] = field(default_factory=list)

    @property
    def on_demand(self) -> bool:
        return self.spot < 0


def empty_status() -> Status:
    return {code: 0 for code in StatusCode}
