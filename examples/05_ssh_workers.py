"""Named Clouds and SSH Access.

Clouds can be declared once in ``stratus.toml`` and resolved by name:

    [clouds.training]
    provider = "aws"
    region = "us-west"
    tags = { team = "research" }

Workers of virtual-machine providers accept the task's SSH key, so a command
can be run on all of them while the task is alive.
"""

import asyncio

import stratus as st
from stratus.config import resolve_cloud


async def main() -> None:
    task = st.new_task(
        resolve_cloud("training"),
        st.Identifier("ssh-demo"),
        st.TaskAttributes(
            environment=st.Environment(script="sleep 600"),
            parallelism=2,
            tags={"purpose": "demo"},
        ),
    )

    await task.create()
    try:
        for address, output in (await task.execute("nproc && uptime")).items():
            print(f"{address}:\n{output}")
    finally:
        await task.delete()


if __name__ == "__main__":
    asyncio.run(main())
