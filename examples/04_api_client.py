"""Talking to the API Server.

Start the server first:

    stratus-server --port 8080

Creation and deletion run as background jobs: the server answers with a
job id right away and the client polls ``/jobs/{id}``.
"""

import asyncio
import base64
import json
import os

import aiohttp

SERVER = "http://127.0.0.1:8080"


def headers() -> dict[str, str]:
    credentials = {
        "access_key_id": os.environ["AWS_ACCESS_KEY_ID"],
        "secret_access_key": os.environ["AWS_SECRET_ACCESS_KEY"],
    }
    return {
        "X-Cloud-Provider": "aws",
        "X-Cloud-Region": "eu-north",
        "X-Cloud-Credentials": base64.b64encode(json.dumps(credentials).encode()).decode(),
    }


async def wait(session: aiohttp.ClientSession, job_id: str) -> dict:
    while True:
        async with session.get(f"/jobs/{job_id}") as response:
            job = await response.json()
        if job["status"] != "running":
            return job
        await asyncio.sleep(5)


async def main() -> None:
    async with aiohttp.ClientSession(SERVER, headers=headers()) as session:
        definition = {"name": "api-demo", "script": "sleep 60", "parallelism": 2}
        async with session.post("/tasks", json=definition) as response:
            job = await wait(session, (await response.json())["id"])
        print("create:", job)

        async with session.get("/tasks") as response:
            [identifier, *_] = (await response.json())["tasks"]

        async with session.get(f"/tasks/{identifier}/status") as response:
            print("status:", await response.json())

        async with session.delete(f"/tasks/{identifier}") as response:
            print("delete:", await wait(session, (await response.json())["id"]))


if __name__ == "__main__":
    asyncio.run(main())
