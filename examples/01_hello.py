"""Hello Stratus.

Runs a script on two AWS workers, waits until both finish, prints what
they logged and tears everything down.

Credentials come from the usual boto3 sources (environment, profile,
instance role).
"""

import asyncio

import stratus as st


async def main() -> None:
    handlers = st.setup_logging(st.LogConfig(level="INFO"))

    task = st.new_task(
        st.Cloud(provider=st.Provider.AWS, region="us-west"),
        st.Identifier("hello"),
        st.TaskAttributes(
            environment=st.Environment(script="echo hello from $(hostname)"),
            size=st.Size(machine="s"),
            parallelism=2,
        ),
    )

    try:
        await task.create()
        while (await task.status())[st.StatusCode.SUCCEEDED] < 2:
            await asyncio.sleep(15)

        for line in await task.logs():
            print(line)
    finally:
        await task.delete()
        st.teardown_logging(handlers)


if __name__ == "__main__":
    asyncio.run(main())
