"""In-memory stand-ins for the CoreV1Api and BatchV1Api a KubernetesTask uses.

Jobs run as soon as they are created: each has ``parallelism`` running pods
until it is deleted.
"""

from __future__ import annotations

from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client.exceptions import ApiException

from stratus.constants import Provider
from stratus.providers.k8s.client import Client
from stratus.providers.k8s.task import KubernetesTask
from stratus.task.cloud import Cloud, Timeouts
from stratus.task.model import Identifier, TaskAttributes


class FakeCluster:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.jobs: dict[str, dict[str, Any]] = {}
        self.claims: dict[str, dict[str, Any]] = {}
        self.events: list[Any] = []
        self.succeeded = 0
        self.failed = 0

    def index(self, call: str) -> int:
        return self.calls.index(call)


class FakeBatch:
    def __init__(self, cluster: FakeCluster) -> None:
        self.cluster = cluster

    def create_namespaced_job(self, namespace, body):
        name = body["metadata"]["name"]
        if name in self.cluster.jobs:
            raise ApiException(status=409, reason="AlreadyExists")
        self.cluster.jobs[name] = body

    def read_namespaced_job(self, name, namespace):
        if name not in self.cluster.jobs:
            raise ApiException(status=404, reason="NotFound")
        job = self.cluster.jobs[name]
        return SimpleNamespace(
            metadata=SimpleNamespace(name=name, labels=job["metadata"]["labels"]),
            status=SimpleNamespace(
                active=job["spec"]["parallelism"] or None,
                succeeded=self.cluster.succeeded or None,
                failed=self.cluster.failed or None,
            ),
        )

    def patch_namespaced_job(self, name, namespace, body):
        self.cluster.jobs[name]["spec"].update(body["spec"])

    def delete_namespaced_job(self, name, namespace, propagation_policy=None):
        if self.cluster.jobs.pop(name, None) is None:
            raise ApiException(status=404, reason="NotFound")

    def list_namespaced_job(self, namespace, label_selector=None):
        return SimpleNamespace(
            items=[
                SimpleNamespace(metadata=SimpleNamespace(labels=job["metadata"]["labels"]))
                for job in self.cluster.jobs.values()
            ]
        )


class FakeCore:
    def __init__(self, cluster: FakeCluster) -> None:
        self.cluster = cluster

    def create_namespaced_persistent_volume_claim(self, namespace, body):
        name = body["metadata"]["name"]
        if name in self.cluster.claims:
            raise ApiException(status=409, reason="AlreadyExists")
        self.cluster.claims[name] = body

    def read_namespaced_persistent_volume_claim(self, name, namespace):
        if name not in self.cluster.claims:
            raise ApiException(status=404, reason="NotFound")
        return self.cluster.claims[name]

    def delete_namespaced_persistent_volume_claim(self, name, namespace):
        if self.cluster.claims.pop(name, None) is None:
            raise ApiException(status=404, reason="NotFound")

    def list_namespaced_event(self, namespace, field_selector=None):
        return SimpleNamespace(items=self.cluster.events)

    def list_namespaced_pod(self, namespace, label_selector=None):
        name = label_selector.removeprefix("job-name=")
        job = self.cluster.jobs.get(name)
        count = job["spec"]["parallelism"] if job else 0
        return SimpleNamespace(
            items=[
                SimpleNamespace(
                    metadata=SimpleNamespace(name=f"{name}-{n}"),
                    status=SimpleNamespace(phase="Running"),
                )
                for n in range(count)
            ]
        )

    def read_namespaced_pod_log(self, name, namespace):
        return f"output of {name}\n"


class Recording:
    def __init__(self, api: str, target: Any, calls: list[str]) -> None:
        self._api = api
        self._target = target
        self._calls = calls

    def __getattr__(self, name: str) -> Callable[..., Any]:
        method = getattr(self._target, name)

        def record(*args: Any, **kwargs: Any) -> Any:
            self._calls.append(f"{self._api}.{name}")
            return method(*args, **kwargs)

        return record


class FakeClient(Client):
    """Client wired to a FakeCluster instead of an API server."""

    def __init__(self, cloud: Cloud, cluster: FakeCluster) -> None:
        super().__init__(cloud, api_client=object())
        self.cluster = cluster

    @property
    def core(self) -> Recording:
        return Recording("core", FakeCore(self.cluster), self.cluster.calls)

    @property
    def batch(self) -> Recording:
        return Recording("batch", FakeBatch(self.cluster), self.cluster.calls)


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def k8s_cloud(fast_timeouts: Timeouts) -> Cloud:
    return Cloud(provider=Provider.K8S, timeouts=fast_timeouts, tags={"team": "ml core"})


@pytest.fixture
def make_task(k8s_cloud: Cloud, cluster: FakeCluster) -> Callable[..., KubernetesTask]:
    def make(name: str = "train", **attributes: Any) -> KubernetesTask:
        client = FakeClient(k8s_cloud, cluster)
        return KubernetesTask(k8s_cloud, Identifier(name), TaskAttributes(**attributes), client=client)

    return make
