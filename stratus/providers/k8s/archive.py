"""Copy directories in and out of a running pod through a tar stream.

Both directions exec ``tar`` inside the pod over the API server's
websocket, the way ``kubectl cp`` does.
"""

from __future__ import annotations

import io
import shlex
import tarfile
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from kubernetes.stream import stream

from stratus.core.exceptions import NotFoundError, ProviderError
from stratus.storage.sync import is_included, normalize_include

if TYPE_CHECKING:
    from stratus.providers.k8s.client import Client

READY_MARKER = ".stratus-ready"


def pack(source: str) -> bytes:
    """Archive the contents of ``source`` with paths relative to it."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        archive.add(source, arcname=".")
    return buffer.getvalue()


def unpack(data: bytes, destination: str, include: str = ".") -> int:
    """Extract members matching ``include`` into ``destination``.

    Returns:
        Number of files extracted.

    Raises:
        NotFoundError: Nothing in the archive matches ``include``.
    """
    include = normalize_include(include)
    with tarfile.open(fileobj=io.BytesIO(data), mode="r") as archive:
        selected = []
        for member in archive.getmembers():
            relative = str(PurePosixPath(member.name))
            if relative in (".", READY_MARKER) or not member.isfile():
                continue
            if is_included(relative, include):
                selected.append(member)
        if not selected:
            raise NotFoundError(f"nothing matches {include!r} in the pod directory")
        archive.extractall(destination, members=selected, filter="data")
    return len(selected)


def _exec(client: Client, pod: str, command: list[str], stdin: bytes | None = None) -> bytes:
    """Run ``command`` in the pod until it exits and return its stdout.

    ``stdin`` is written once up front. The command must stop reading on
    its own (``tar`` stops at the end-of-archive blocks), as the session
    has no way to close stdin separately.

    Raises:
        ProviderError: The command exited with a non-zero status.
    """
    response = stream(
        client.core.connect_get_namespaced_pod_exec,
        pod,
        client.namespace,
        command=command,
        stdin=stdin is not None,
        stdout=True,
        stderr=True,
        tty=False,
        binary=True,
        _preload_content=False,
    )
    output = bytearray()
    errors = bytearray()
    try:
        if stdin is not None:
            response.write_stdin(stdin)
        while response.is_open():
            response.update(timeout=1)
            if response.peek_stdout():
                output += response.read_stdout()
            if response.peek_stderr():
                errors += response.read_stderr()
    finally:
        response.close()

    if response.returncode != 0:
        message = bytes(errors).decode(errors="replace").strip()
        raise ProviderError(f"{' '.join(command)} failed in pod {pod}: {message}")
    return bytes(output)


def upload(client: Client, pod: str, source: str, destination: str) -> None:
    """Copy the contents of a local directory into ``destination`` in the pod.

    The ready marker is only written once extraction succeeded.
    """
    target = shlex.quote(destination)
    marker = shlex.quote(f"{destination}/{READY_MARKER}")
    script = f"tar xf - -C {target} && touch {marker}"
    _exec(client, pod, ["/bin/sh", "-c", script], stdin=pack(source))


def download(client: Client, pod: str, source: str, destination: str, include: str = ".") -> int:
    """Copy files under ``source`` in the pod into a local directory."""
    data = _exec(client, pod, ["tar", "cf", "-", "-C", source, "."])
    return unpack(data, destination, include)
