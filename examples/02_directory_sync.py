"""Directory Synchronization.

The local ``./work`` directory is pushed to the task's storage on create,
every worker sees it under its working directory, and ``results/`` is pulled
back into ``./work`` when the task is deleted.

    ./work ──push──▶ bucket:/data ──▶ workers
    ./work ◀──pull── bucket:/data/results
"""

import asyncio
from pathlib import Path

import stratus as st

SCRIPT = """\
mkdir -p results
python3 train.py --shard "$SHARD" > "results/$(hostname).txt"
"""


async def main() -> None:
    work = Path("work")
    work.mkdir(exist_ok=True)
    (work / "train.py").write_text("import sys\nprint('trained', sys.argv[1:])\n")

    task = st.new_task(
        st.Cloud(provider=st.Provider.GCP, region="eu-west"),
        st.Identifier("directory-sync"),
        st.TaskAttributes(
            environment=st.Environment(
                script=SCRIPT,
                variables={"SHARD": "0"},
                directory=str(work),
                directory_out="results",
            ),
            spot=0,
            parallelism=4,
        ),
    )

    await task.create()
    try:
        while True:
            status = await task.status()
            done = status[st.StatusCode.SUCCEEDED] + status[st.StatusCode.FAILED]
            print(f"active={status[st.StatusCode.ACTIVE]} done={done}")
            if done >= 4:
                break
            await asyncio.sleep(30)
    finally:
        # delete() downloads results/ before removing the bucket
        await task.delete()

    for path in sorted((work / "results").iterdir()):
        print(path.name, path.read_text().strip())


if __name__ == "__main__":
    asyncio.run(main())
