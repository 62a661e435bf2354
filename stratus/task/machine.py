"""Worker bootstrap script.

Every provider boots its workers with the same shell script: it writes the
user script and its environment under the worker directory, installs the
task's SSH key when there is one, and hands off to the worker agent, which
syncs ``/data`` and writes ``status-*``/``task-*`` reports.

The script is composed from small operations, each a string or a callable
producing one:

    >>> resolve([shell("set -e"), mkdir("/opt/stratus")])
    'set -e\\nmkdir -p /opt/stratus'
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Callable, Mapping

from stratus.config import AgentSettings
from stratus.task.model import Environment

type Op = str | Callable[[], str] | list[Op]

_HEREDOC = "END_OF_STRATUS_FILE"


def resolve(op: Op) -> str:
    """Resolve an operation to its string representation."""
    match op:
        case str(op):
            return op
        case list(op):
            return "\n".join(resolve(o) for o in op)
        case _:
            return op()


def shell(cmd: str) -> Op:
    return cmd


def mkdir(path: str) -> Op:
    return f"mkdir -p {shlex.quote(path)}"


def file(path: str, content: str, mode: str | None = None) -> Op:
    """Write content to a file with a quoted heredoc (no expansion)."""

    def generate() -> str:
        if not content.endswith("\n"):
            body = content + "\n"
        else:
            body = content
        lines = [f"cat > {shlex.quote(path)} << '{_HEREDOC}'\n{body}{_HEREDOC}"]
        if mode:
            lines.append(f"chmod {mode} {shlex.quote(path)}")
        return "\n".join(lines)

    return generate


def env_export(variables: Mapping[str, str]) -> Op:
    if not variables:
        return "# No environment variables"
    return "\n".join(f"export {k}={shlex.quote(v)}" for k, v in variables.items())


def inject_ssh_key(public_key: str, user: str = "root") -> Op:
    home = "/root" if user == "root" else f"/home/{user}"

    def generate() -> str:
        return "\n".join([
            f"mkdir -p {home}/.ssh",
            f"echo {shlex.quote(public_key.strip())} >> {home}/.ssh/authorized_keys",
            f"chmod 700 {home}/.ssh && chmod 600 {home}/.ssh/authorized_keys",
        ])

    return generate


def script_variables(
    variables: Mapping[str, str | None],
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Resolve user variables, filling None values from the caller's environment.

    Variables that are None and absent from the environment are dropped.
    """
    environ = os.environ if environ is None else environ
    resolved: dict[str, str] = {}
    for name, value in variables.items():
        if value is None:
            value = environ.get(name)
        if value is not None:
            resolved[name] = value
    return resolved


def render_script(
    environment: Environment,
    variables: Mapping[str, str] | None = None,
    *,
    agent: AgentSettings | None = None,
    public_key: str | None = None,
    ssh_user: str = "root",
    environ: Mapping[str, str] | None = None,
) -> str:
    """Render the bootstrap script for a worker.

    Args:
        environment: Task environment (script, variables, timeout).
        variables: Provider variables such as the storage remote and
            credentials. These win over user variables with the same name.
        agent: Agent command and working directory.
        public_key: Authorized SSH key to install, if any.
        ssh_user: Account receiving the key.
        environ: Source for variables declared without a value.

    Returns:
        Complete shell script.
    """
    agent = agent or AgentSettings()
    directory = agent.directory.rstrip("/")

    script = environment.script
    if not script.startswith("#!"):
        script = "#!/bin/bash\n" + script

    exported = script_variables(environment.variables, environ)
    exported.update(variables or {})
    exported["STRATUS_TIMEOUT"] = str(int(environment.timeout.total_seconds()))

    ops: list[Op] = [
        shell("#!/bin/bash"),
        shell("set -e"),
        mkdir(directory),
        file(f"{directory}/script", script, mode="0755"),
        file(f"{directory}/environment", resolve(env_export(exported)), mode="0600"),
    ]
    if public_key:
        ops.append(inject_ssh_key(public_key, ssh_user))
    ops.append(
        shell(
            f"cd {shlex.quote(directory)} && . ./environment && "
            f"exec {agent.command} {shlex.quote(directory + '/script')}"
        )
    )
    return resolve(ops) + "\n"
