from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from stratus.ssh import DeterministicSSHKeyPair
    from stratus.task.model import Event, Identifier, Status


@runtime_checkable
class DataSource(Protocol):
    """Read-only external reference resolved before dependent resources."""

    async def read(self) -> None: ...


@runtime_checkable
class Resource(Protocol):
    """Mutable cloud object owned by a task.

    ``create`` must succeed when the object already exists and ``delete``
    must succeed when it is already gone. ``read`` raises NotFoundError when
    the object does not exist.
    """

    async def create(self) -> None: ...

    async def read(self) -> None: ...

    async def delete(self) -> None: ...


@runtime_checkable
class Task(Protocol):
    """Operation surface shared by every provider adapter.

    Tasks are rebuilt from the cloud on every call: construct one with
    ``stratus.task.factory.new_task`` and call ``read`` before using any
    observed attribute.
    """

    async def create(self) -> None:
        """Create every resource, push the input directory and start the workers."""
        ...

    async def read(self) -> None:
        """Refresh every data source and resource without mutating the cloud."""
        ...

    async def delete(self) -> None:
        """Pull outputs, purge storage and delete resources in reverse creation order."""
        ...

    async def push(self, source: str | None = None) -> None: ...

    async def pull(self, destination: str | None = None) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def status(self) -> Status: ...

    async def logs(self) -> list[str]: ...

    def get_addresses(self) -> list[str]: ...

    def get_events(self) -> list[Event]: ...

    def get_key_pair(self) -> DeterministicSSHKeyPair: ...

    def get_identifier(self) -> Identifier: ...
