from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest

from stratus.constants import K8S_IDENTIFIER_LABEL, Provider, StatusCode
from stratus.core.exceptions import NotFoundError, ProviderError, UnsupportedError, ValidationError
from stratus.providers.k8s import archive
from stratus.providers.k8s.client import Client, MachineSize, parse_machine
from stratus.providers.k8s.resources import DirectorySpec
from stratus.providers.k8s.task import list_tasks
from stratus.task.cloud import AWSCredentials, Cloud, KubernetesCredentials
from stratus.task.model import Environment, Identifier, Size

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

KUBECONFIG = """
apiVersion: v1
kind: Config
clusters:
  - name: lab
    cluster:
      server: https://k8s.example.com:6443
      insecure-skip-tls-verify: true
users:
  - name: lab
    user:
      token: abc123
contexts:
  - name: lab
    context:
      cluster: lab
      user: lab
current-context: lab
"""


@pytest.fixture
def transfers(monkeypatch: pytest.MonkeyPatch) -> list[tuple]:
    """Replace pod copies with a log of what would have been copied."""
    log: list[tuple] = []

    def upload(client, pod, source, destination):
        log.append(("upload", pod, source, destination))

    def download(client, pod, source, destination, include="."):
        log.append(("download", pod, source, destination, include))
        return 1

    monkeypatch.setattr(archive, "upload", upload)
    monkeypatch.setattr(archive, "download", download)
    return log


class TestDirectorySpec:
    def test_full(self):
        assert DirectorySpec.parse("standard:10:/home/me/work") == DirectorySpec(
            "standard", 10, "/home/me/work"
        )

    def test_without_path(self):
        assert DirectorySpec.parse("nfs:50") == DirectorySpec("nfs", 50, "")

    def test_empty(self):
        assert DirectorySpec.parse("") is None

    @pytest.mark.parametrize("value", ["/home/me/work", "standard", "standard:ten:/x", ":10"])
    def test_invalid(self, value: str):
        with pytest.raises(ValidationError, match="storageClass:sizeGiB"):
            DirectorySpec.parse(value)


class TestParseMachine:
    def test_alias(self):
        assert parse_machine("m+t4") == MachineSize(4, 16000, "nvidia-tesla-t4", 1)

    def test_native_without_accelerator(self):
        assert parse_machine("2-4096") == MachineSize(2, 4096)

    def test_invalid(self):
        with pytest.raises(ValidationError):
            parse_machine("t2.micro")


class TestClient:
    def test_kubeconfig_credentials(self):
        cloud = Cloud(provider=Provider.K8S, credentials=KubernetesCredentials(config=KUBECONFIG))
        client = Client(cloud)
        assert client.api_client.configuration.host == "https://k8s.example.com:6443"
        assert client.namespace == "default"

    def test_rejects_other_credentials(self):
        cloud = Cloud(provider=Provider.K8S, credentials=AWSCredentials("a", "b"))
        with pytest.raises(ValidationError):
            Client(cloud)

    def test_labels(self, k8s_cloud):
        client = Client(k8s_cloud, api_client=object())
        assert client.labels("stratus-train-1a2b3c4d") == {
            "team": "ml-core",
            K8S_IDENTIFIER_LABEL: "stratus-train-1a2b3c4d",
        }


class TestCreate:
    async def test_job_without_directory(self, make_task, cluster):
        task = make_task(
            environment=Environment(
                script="python train.py",
                variables={"EPOCHS": "3"},
                timeout=timedelta(hours=2),
            ),
            size=Size(machine="m+v100"),
            parallelism=2,
        )
        await task.create()

        assert cluster.calls[0] == "batch.create_namespaced_job"
        assert not cluster.claims

        job = cluster.jobs[task.identifier.long()]
        spec = job["spec"]
        assert (spec["parallelism"], spec["completions"]) == (2, 2)
        assert spec["backoffLimit"] == 0
        assert spec["activeDeadlineSeconds"] == 7200

        pod = spec["template"]["spec"]
        assert pod["restartPolicy"] == "Never"
        assert pod["nodeSelector"] == {"accelerator": "nvidia-tesla-v100"}
        assert "volumes" not in pod

        [container] = pod["containers"]
        assert container["resources"]["limits"] == {
            "cpu": "8",
            "memory": "64000M",
            "nvidia.com/gpu": "1",
        }
        assert {"name": "EPOCHS", "value": "3"} in container["env"]
        assert {"name": "STRATUS_TIMEOUT", "value": "7200"} in container["env"]
        command = container["command"][2]
        assert "python train.py" in command
        assert ".stratus-ready" not in command

        assert task.attributes.status[StatusCode.ACTIVE] == 2

    async def test_directory_creates_claim_and_uploads(self, make_task, cluster, transfers):
        task = make_task(
            environment=Environment(directory="standard:10:/home/me/work"), parallelism=3
        )
        await task.create()

        name = task.identifier.long()
        assert cluster.index("core.create_namespaced_persistent_volume_claim") < cluster.index(
            "batch.create_namespaced_job"
        )
        claim = cluster.claims[name]["spec"]
        assert claim["storageClassName"] == "standard"
        assert claim["accessModes"] == ["ReadWriteMany"]
        assert claim["resources"]["requests"]["storage"] == "10Gi"

        [container] = cluster.jobs[name]["spec"]["template"]["spec"]["containers"]
        assert container["volumeMounts"] == [{"name": "data", "mountPath": "/data"}]
        assert container["workingDir"] == "/data"
        assert "/data/.stratus-ready" in container["command"][2]

        assert transfers == [("upload", f"{name}-0", "/home/me/work", "/data")]

    async def test_single_worker_claim_is_read_write_once(self, make_task, cluster):
        task = make_task(environment=Environment(directory="standard:10"))
        await task.create()
        assert cluster.claims[task.identifier.long()]["spec"]["accessModes"] == ["ReadWriteOnce"]

    async def test_create_twice_is_idempotent(self, make_task, cluster):
        await make_task().create()
        await make_task().create()
        assert len(cluster.jobs) == 1

    def test_rejects_plain_directory(self, make_task):
        with pytest.raises(ValidationError):
            make_task(environment=Environment(directory="/home/me/work"))


class TestObservation:
    async def test_status_comes_from_job(self, make_task, cluster):
        task = make_task(parallelism=2)
        await task.create()
        cluster.succeeded = 3
        cluster.failed = 1

        assert await task.status() == {
            StatusCode.ACTIVE: 2,
            StatusCode.SUCCEEDED: 3,
            StatusCode.FAILED: 1,
        }

    async def test_events(self, make_task, cluster):
        cluster.events.append(
            SimpleNamespace(
                last_timestamp=datetime(2024, 2, 1, 9, 0),
                event_time=None,
                metadata=SimpleNamespace(creation_timestamp=None),
                reason="BackoffLimitExceeded",
                message="Job has reached the specified backoff limit",
            )
        )
        task = make_task()
        await task.create()

        [event] = task.get_events()
        assert event.code == "BackoffLimitExceeded"
        assert event.description == ("Job has reached the specified backoff limit",)

    async def test_logs_per_pod(self, make_task):
        task = make_task(parallelism=2)
        await task.create()
        name = task.identifier.long()
        assert await task.logs() == [f"output of {name}-0\n", f"output of {name}-1\n"]

    def test_no_key_pair(self, make_task):
        with pytest.raises(NotFoundError):
            make_task().get_key_pair()


class TestScaling:
    async def test_start_patches_parallelism(self, make_task, cluster):
        task = make_task(parallelism=2)
        await task.create()

        task.attributes.parallelism = 4
        await task.start()

        assert cluster.jobs[task.identifier.long()]["spec"]["parallelism"] == 4

    async def test_stop_is_unsupported(self, make_task):
        with pytest.raises(UnsupportedError):
            await make_task().stop()


class TestDelete:
    async def test_without_directory(self, make_task, cluster):
        await make_task().create()
        cluster.calls.clear()

        await make_task().delete()

        assert cluster.calls[0] == "batch.delete_namespaced_job"
        assert not cluster.jobs

    async def test_retrieves_directory_before_deleting(self, make_task, cluster, transfers):
        environment = Environment(directory="standard:10:/home/me/work", directory_out="out")
        await make_task(environment=environment).create()
        transfers.clear()
        cluster.calls.clear()

        task = make_task(environment=environment)
        await task.delete()

        name = task.identifier.long()
        assert transfers == [("download", f"{name}-0", "/data", "/home/me/work", "out")]
        creates = [c for c in cluster.calls if c == "batch.create_namespaced_job"]
        assert len(creates) == 1
        assert cluster.calls.index("batch.create_namespaced_job") > cluster.calls.index(
            "batch.delete_namespaced_job"
        )
        assert cluster.calls[-1] == "core.delete_namespaced_persistent_volume_claim"
        assert not cluster.jobs
        assert not cluster.claims

    async def test_retriever_only_sleeps(self, make_task, cluster, monkeypatch):
        bodies = []
        environment = Environment(directory="standard:10:/home/me/work")

        def download(client, pod, source, destination, include="."):
            bodies.append(cluster.jobs[pod.rsplit("-", 1)[0]])
            return 1

        monkeypatch.setattr(archive, "upload", lambda *args: None)
        monkeypatch.setattr(archive, "download", download)
        await make_task(environment=environment, parallelism=3).create()
        await make_task(environment=environment, parallelism=3).delete()

        [body] = bodies
        assert body["spec"]["parallelism"] == 1
        assert body["spec"]["template"]["spec"]["containers"][0]["command"] == [
            "/bin/sh",
            "-c",
            "sleep infinity",
        ]

    async def test_missing_output_is_not_an_error(self, make_task, monkeypatch):
        def download(*args):
            raise NotFoundError("nothing matches 'out'")

        monkeypatch.setattr(archive, "upload", lambda *args: None)
        monkeypatch.setattr(archive, "download", download)
        environment = Environment(directory="standard:10:/home/me/work", directory_out="out")
        await make_task(environment=environment).create()
        await make_task(environment=environment).delete()

    async def test_delete_twice_is_idempotent(self, make_task, cluster, transfers):
        environment = Environment(directory="standard:10:/home/me/work")
        await make_task(environment=environment).create()
        await make_task(environment=environment).delete()
        await make_task(environment=environment).delete()
        assert not cluster.jobs
        assert not cluster.claims


class TestListTasks:
    async def test_lists_labelled_jobs(self, make_task, cluster, k8s_cloud):
        task = make_task("train")
        await task.create()
        cluster.jobs["other"] = {"metadata": {"labels": {K8S_IDENTIFIER_LABEL: "nope"}}}

        assert await list_tasks(k8s_cloud, client=task.client) == [Identifier("train")]


class TestArchive:
    def test_pack_and_unpack_filters(self, tmp_path: Path):
        source = tmp_path / "source"
        (source / "out").mkdir(parents=True)
        (source / "out" / "model.pt").write_bytes(b"weights")
        (source / "train.py").write_text("print(1)")
        (source / archive.READY_MARKER).touch()
        destination = tmp_path / "destination"

        count = archive.unpack(archive.pack(str(source)), str(destination), "out")

        assert count == 1
        assert (destination / "out" / "model.pt").read_bytes() == b"weights"
        assert not (destination / "train.py").exists()

    def test_unpack_skips_ready_marker(self, tmp_path: Path):
        source = tmp_path / "source"
        source.mkdir()
        (source / "a.txt").write_text("a")
        (source / archive.READY_MARKER).touch()
        destination = tmp_path / "destination"

        assert archive.unpack(archive.pack(str(source)), str(destination)) == 1
        assert not (destination / archive.READY_MARKER).exists()

    def test_unpack_nothing_matches(self, tmp_path: Path):
        source = tmp_path / "source"
        source.mkdir()
        (source / "a.txt").write_text("a")
        with pytest.raises(NotFoundError):
            archive.unpack(archive.pack(str(source)), str(tmp_path / "d"), "out")

    def test_unpack_rejects_escaping_pattern(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            archive.unpack(b"", str(tmp_path), "../x")


class FakeExecResponse:
    """Websocket exec session that delivers canned output, then closes as the command exits."""

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0) -> None:
        self.pending = (stdout, stderr)
        self.stdout = b""
        self.stderr = b""
        self.exit_code = returncode
        self.written: list[bytes] = []
        self.updates = 0
        self.open = True

    @property
    def returncode(self) -> int | None:
        return None if self.open else self.exit_code

    def is_open(self) -> bool:
        return self.open

    def update(self, timeout: float) -> None:
        self.updates += 1
        if self.pending:
            self.stdout, self.stderr = self.pending
            self.pending = None
        else:
            self.open = False

    def peek_stdout(self) -> bool:
        return bool(self.stdout)

    def read_stdout(self) -> bytes:
        data, self.stdout = self.stdout, b""
        return data

    def peek_stderr(self) -> bool:
        return bool(self.stderr)

    def read_stderr(self) -> bytes:
        data, self.stderr = self.stderr, b""
        return data

    def write_stdin(self, data: bytes) -> None:
        assert self.open
        self.written.append(data)

    def close(self) -> None:
        self.open = False


class ExecSessions(list):
    """Exec sessions opened so far, as (command, response) pairs."""

    def __init__(self) -> None:
        super().__init__()
        self.responses: list[FakeExecResponse] = []

    def __call__(self, method, pod, namespace, *, command, **kwargs) -> FakeExecResponse:
        response = self.responses.pop(0) if self.responses else FakeExecResponse()
        self.append((command, response))
        return response


class TestExec:
    @pytest.fixture
    def sessions(self, monkeypatch: pytest.MonkeyPatch) -> ExecSessions:
        sessions = ExecSessions()
        monkeypatch.setattr(archive, "stream", sessions)
        return sessions

    def test_upload_extracts_and_marks_ready_in_one_command(self, sessions, tmp_path: Path, k8s_cloud):
        (tmp_path / "a.txt").write_text("a")
        client = Client(k8s_cloud, api_client=object())

        archive.upload(client, "pod-0", str(tmp_path), "/data")

        [(command, session)] = sessions
        assert command == [
            "/bin/sh",
            "-c",
            f"tar xf - -C /data && touch /data/{archive.READY_MARKER}",
        ]
        [data] = session.written
        assert archive.unpack(data, str(tmp_path / "check")) == 1
        # returns only once the remote command has exited
        assert not session.is_open()
        assert session.updates == 2

    def test_upload_quotes_destination(self, sessions, tmp_path: Path, k8s_cloud):
        client = Client(k8s_cloud, api_client=object())

        archive.upload(client, "pod-0", str(tmp_path), "/mnt/my data")

        [(command, _)] = sessions
        assert command[2] == f"tar xf - -C '/mnt/my data' && touch '/mnt/my data/{archive.READY_MARKER}'"

    def test_failed_extraction_raises(self, sessions, tmp_path: Path, k8s_cloud):
        sessions.responses.append(FakeExecResponse(stderr=b"tar: short read", returncode=2))
        client = Client(k8s_cloud, api_client=object())

        with pytest.raises(ProviderError, match="short read"):
            archive.upload(client, "pod-0", str(tmp_path), "/data")

    def test_download_unpacks_stdout(self, sessions, tmp_path: Path, k8s_cloud):
        source = tmp_path / "source"
        source.mkdir()
        (source / "result.txt").write_text("done")
        sessions.responses.append(FakeExecResponse(stdout=archive.pack(str(source))))
        client = Client(k8s_cloud, api_client=object())

        count = archive.download(client, "pod-0", "/data", str(tmp_path / "local"))

        assert count == 1
        assert (tmp_path / "local" / "result.txt").read_text() == "done"
        [(command, _)] = sessions
        assert command == ["tar", "cf", "-", "-C", "/data", "."]

    def test_failed_command(self, sessions, k8s_cloud):
        sessions.responses.append(FakeExecResponse(stderr=b"tar: /data: No such file", returncode=2))
        client = Client(k8s_cloud, api_client=object())

        with pytest.raises(ProviderError, match="No such file"):
            archive.download(client, "pod-0", "/data", "/tmp/unused")
