"""Kubernetes Jobs with a Persistent Volume.

On Kubernetes the directory is a volume claim, ``storageClass:sizeGiB:path``.
Files under ``path`` are copied straight into the job's pods before the
script starts, and ``directory_out`` is copied back when the task is deleted.
"""

import asyncio
from pathlib import Path

import stratus as st


async def main() -> None:
    kubeconfig = Path.home() / ".kube" / "config"
    cloud = st.Cloud(
        provider=st.Provider.K8S,
        credentials=st.KubernetesCredentials(config=kubeconfig.read_text()),
    )

    task = st.new_task(
        cloud,
        st.Identifier("volume-demo"),
        st.TaskAttributes(
            environment=st.Environment(
                image="nvidia",
                script="nvidia-smi > gpu.txt",
                directory="standard:10:./inputs",
                directory_out="gpu.txt",
            ),
            size=st.Size(machine="m+t4"),
        ),
    )

    await task.create()
    try:
        print(await task.status())
        for event in task.get_events():
            print(event.render())
    finally:
        await task.delete()

    print("tasks left:", await st.list_tasks(cloud))


if __name__ == "__main__":
    asyncio.run(main())
