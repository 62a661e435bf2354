from __future__ import annotations

import json

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from stratus.constants import Provider
from stratus.core.exceptions import UnsupportedError
from stratus.providers.aws import AWSTask
from stratus.providers.az import AzureTask
from stratus.providers.gcp import GCPTask
from stratus.providers.k8s import KubernetesTask
from stratus.task import factory
from stratus.task.cloud import (
    AWSCredentials,
    AzureCredentials,
    Cloud,
    GCPCredentials,
    KubernetesCredentials,
)
from stratus.task.model import Identifier, TaskAttributes
from stratus.task.protocol import Task

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

KUBECONFIG = """
apiVersion: v1
kind: Config
clusters: [{name: lab, cluster: {server: "https://k8s.example.com:6443"}}]
users: [{name: lab, user: {token: abc123}}]
contexts: [{name: lab, context: {cluster: lab, user: lab}}]
current-context: lab
"""


def service_account_key() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return json.dumps({
        "type": "service_account",
        "project_id": "research",
        "private_key_id": "1",
        "private_key": pem.decode(),
        "client_email": "worker@research.iam.gserviceaccount.com",
        "token_uri": "https://oauth2.googleapis.com/token",
    })


class TestNewTask:
    @pytest.mark.parametrize(
        ("cloud", "expected"),
        [
            (Cloud(Provider.AWS, credentials=AWSCredentials("AKIA", "secret")), AWSTask),
            (
                Cloud(
                    Provider.AZ,
                    credentials=AzureCredentials("client", "secret", "0000", "tenant"),
                ),
                AzureTask,
            ),
            (Cloud(Provider.K8S, credentials=KubernetesCredentials(KUBECONFIG)), KubernetesTask),
        ],
        ids=["aws", "az", "k8s"],
    )
    def test_dispatches_by_provider(self, cloud: Cloud, expected: type):
        task = factory.new_task(cloud, Identifier("train"), TaskAttributes())
        assert type(task) is expected
        assert isinstance(task, Task)
        assert task.get_identifier() == Identifier("train")

    def test_gcp(self):
        cloud = Cloud(Provider.GCP, credentials=GCPCredentials(service_account_key()))
        task = factory.new_task(cloud, Identifier("train"), TaskAttributes())
        assert isinstance(task, GCPTask)
        assert task.client.project == "research"

    def test_unsupported(self):
        with pytest.raises(UnsupportedError):
            factory.new_task(Cloud("ibm"), Identifier("train"), TaskAttributes())  # type: ignore[arg-type]


class TestListTasks:
    async def test_dispatches_by_provider(self, monkeypatch: pytest.MonkeyPatch):
        seen = []

        async def list_tasks(cloud):
            seen.append(cloud.provider)
            return [Identifier("train")]

        monkeypatch.setattr("stratus.providers.aws.list_tasks", list_tasks)
        cloud = Cloud(Provider.AWS)

        assert await factory.list_tasks(cloud) == [Identifier("train")]
        assert seen == [Provider.AWS]

    async def test_unsupported(self):
        with pytest.raises(UnsupportedError):
            await factory.list_tasks(Cloud("ibm"))  # type: ignore[arg-type]
