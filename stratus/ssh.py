"""SSH key material and remote command helpers.

Key pairs are derived deterministically from a secret (usually the cloud
credentials), so every call for the same secret yields the same key and
nothing needs to be stored between operations.

Example:
    >>> pair = DeterministicSSHKeyPair.from_secret(b"credentials")
    >>> pair.public_string().startswith("ssh-ed25519 ")
    True
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass

import asyncssh
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from stratus.constants import DEFAULT_SSH_USER

_JSON_RECORD = re.compile(r"\{.+\}")


@dataclass(frozen=True, slots=True)
class DeterministicSSHKeyPair:
    """Ed25519 key pair seeded from the SHA-256 of a secret."""

    seed: bytes

    @classmethod
    def from_secret(cls, secret: str | bytes) -> DeterministicSSHKeyPair:
        if isinstance(secret, str):
            secret = secret.encode()
        return cls(hashlib.sha256(secret).digest())

    def _key(self) -> Ed25519PrivateKey:
        return Ed25519PrivateKey.from_private_bytes(self.seed)

    def public_string(self) -> str:
        """Public key in authorized_keys format."""
        return (
            self._key()
            .public_key()
            .public_bytes(serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH)
            .decode()
        )

    def private_string(self) -> str:
        """Private key in OpenSSH PEM format."""
        return (
            self._key()
            .private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.OpenSSH,
                serialization.NoEncryption(),
            )
            .decode()
        )


async def run_command(
    command: str,
    host: str,
    key_pair: DeterministicSSHKeyPair,
    *,
    user: str = DEFAULT_SSH_USER,
    port: int = 22,
    timeout: float = 30.0,
) -> str:
    """Run a command on a worker and return its combined stdout and stderr.

    Host keys are not verified: workers are ephemeral and their keys are
    unknown in advance.

    Raises:
        asyncssh.ProcessError: If the command exits with a non-zero status.
    """
    client_key = asyncssh.import_private_key(key_pair.private_string())
    async with asyncssh.connect(
        host,
        port=port,
        username=user,
        client_keys=[client_key],
        known_hosts=None,
        connect_timeout=timeout,
    ) as conn:
        result = await conn.run(command, check=True, timeout=timeout)
    return f"{result.stdout or ''}{result.stderr or ''}"


def has_status(logs: str, status: str) -> bool:
    """Check whether a runner reported ``status`` in its JSON log lines.

    Each line may carry a JSON object among other text; lines without a
    parseable object are skipped.
    """
    for line in logs.splitlines():
        match = _JSON_RECORD.search(line)
        if match is None:
            continue
        try:
            record = json.loads(match.group())
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict) and record.get("status") == status:
            return True
    return False
