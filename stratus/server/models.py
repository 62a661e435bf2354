"""API request/response models."""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, Field

from stratus.constants import DEFAULT_TASK_TIMEOUT, StatusCode
from stratus.task.model import (
    Environment,
    Firewall,
    FirewallRule,
    Identifier,
    Size,
    Status,
    TaskAttributes,
)


class FirewallRuleModel(BaseModel):
    nets: list[str] | None = Field(default=None, description="CIDR ranges; null means any")
    ports: list[int] | None = Field(default=None, description="TCP/UDP ports; null means any")

    def to_rule(self) -> FirewallRule:
        return FirewallRule(
            nets=tuple(self.nets) if self.nets is not None else None,
            ports=tuple(self.ports) if self.ports is not None else None,
        )


class FirewallModel(BaseModel):
    ingress: FirewallRuleModel = Field(default_factory=lambda: FirewallRuleModel(ports=[22]))
    egress: FirewallRuleModel = Field(default_factory=FirewallRuleModel)


class TaskDefinition(BaseModel):
    """Request body of ``POST /tasks``."""

    name: str = Field(..., description="Task name; the long identifier is derived from it")
    image: str = Field(default="ubuntu", description="Image alias or provider-native reference")
    script: str = Field(default="", description="Script executed on every worker")
    variables: dict[str, str | None] = Field(
        default_factory=dict, description="Environment variables; null values are dropped"
    )
    directory: str = Field(default="", description="Input directory pushed on create")
    directory_out: str = Field(default="", description="Output path pulled on delete")
    timeout: int = Field(
        default=int(DEFAULT_TASK_TIMEOUT.total_seconds()), ge=1, description="Script timeout in seconds"
    )
    machine: str = Field(default="m", description="Machine size alias or native type")
    storage: int = Field(default=30, ge=1, description="Disk size in GB")
    spot: float = Field(default=-1, description="Spot price cap; 0 = automatic, negative = on demand")
    parallelism: int = Field(default=1, ge=0, description="Number of workers")
    permission_set: str = Field(default="", description="Provider identity for the workers")
    tags: dict[str, str] = Field(default_factory=dict)
    firewall: FirewallModel = Field(default_factory=FirewallModel)

    def identifier(self) -> Identifier:
        return Identifier(self.name)

    def attributes(self) -> TaskAttributes:
        return TaskAttributes(
            environment=Environment(
                image=self.image,
                script=self.script,
                variables=dict(self.variables),
                directory=self.directory,
                directory_out=self.directory_out,
                timeout=timedelta(seconds=self.timeout),
            ),
            size=Size(machine=self.machine, storage=self.storage),
            firewall=Firewall(
                ingress=self.firewall.ingress.to_rule(),
                egress=self.firewall.egress.to_rule(),
            ),
            spot=self.spot,
            parallelism=self.parallelism,
            permission_set=self.permission_set,
            tags=dict(self.tags),
        )


class JobReference(BaseModel):
    id: str


class JobResponse(BaseModel):
    id: str
    status: str
    error: str | None = None


class TaskList(BaseModel):
    tasks: list[str]


class TaskStatus(BaseModel):
    active: int = 0
    succeeded: int = 0
    failed: int = 0

    @classmethod
    def from_status(cls, status: Status) -> TaskStatus:
        return cls(
            active=status.get(StatusCode.ACTIVE, 0),
            succeeded=status.get(StatusCode.SUCCEEDED, 0),
            failed=status.get(StatusCode.FAILED, 0),
        )


class ErrorResponse(BaseModel):
    error: str
