"""HTTP API for creating, listing and destroying tasks.

Mutating operations (create, destroy) are submitted to the JobManager and
return a job id immediately; clients poll ``GET /jobs/{id}``. Read-only
queries (list, status) run within the request.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import pydantic
from aiohttp import web
from loguru import logger

from stratus.core.exceptions import NotFoundError, UnsupportedError, ValidationError
from stratus.jobs import JobManager
from stratus.server.credentials import cloud_from_headers
from stratus.server.models import (
    ErrorResponse,
    JobReference,
    JobResponse,
    TaskDefinition,
    TaskList,
    TaskStatus,
)
from stratus.task import factory
from stratus.task.model import Identifier, TaskAttributes

if TYPE_CHECKING:
    from pydantic import BaseModel

    from stratus.config import AgentSettings
    from stratus.task.cloud import Cloud, Timeouts
    from stratus.task.protocol import Task

type TaskFactory = Callable[..., Task]
type TaskLister = Callable[[Cloud], Awaitable[list[Identifier]]]

JOBS_KEY = web.AppKey("jobs", JobManager)

log = logger.bind(component="server")


def _json(model: BaseModel, status: int = 200) -> web.Response:
    return web.json_response(model.model_dump(mode="json"), status=status)


def _error(message: str, status: int) -> web.Response:
    return _json(ErrorResponse(error=message), status=status)


@web.middleware
async def error_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except (ValidationError, pydantic.ValidationError) as e:
        return _error(str(e), 400)
    except NotFoundError as e:
        return _error(str(e), 404)
    except UnsupportedError as e:
        return _error(str(e), 501)
    except Exception as e:
        log.exception("Unhandled error on {method} {path}", method=request.method, path=request.path)
        return _error(str(e) or type(e).__name__, 500)


def create_app(
    *,
    jobs: JobManager | None = None,
    timeouts: Timeouts | None = None,
    agent: AgentSettings | None = None,
    new_task: TaskFactory = factory.new_task,
    list_tasks: TaskLister = factory.list_tasks,
) -> web.Application:
    """Build the API application.

    Args:
        jobs: Job manager for background operations. A new one by default.
        timeouts: Deadlines applied to every Cloud built from headers.
        agent: Worker agent settings passed to new tasks.
        new_task: Task factory, ``stratus.task.factory.new_task`` by default.
        list_tasks: Task lister, ``stratus.task.factory.list_tasks`` by default.
    """
    app = web.Application(middlewares=[error_middleware])
    app[JOBS_KEY] = jobs or JobManager()

    def cloud_of(request: web.Request) -> Cloud:
        return cloud_from_headers(request.headers, timeouts=timeouts)

    async def create_task(request: web.Request) -> web.Response:
        cloud = cloud_of(request)
        try:
            body = await request.json()
        except ValueError as e:
            raise ValidationError("request body must be JSON") from e
        definition = TaskDefinition.model_validate(body)

        task = new_task(cloud, definition.identifier(), definition.attributes(), agent=agent)
        job_id = request.app[JOBS_KEY].submit(task.create)
        log.info("Create {task} submitted as job {job}", task=definition.name, job=job_id)
        return _json(JobReference(id=job_id))

    async def destroy_task(request: web.Request) -> web.Response:
        cloud = cloud_of(request)
        identifier = Identifier.parse(request.match_info["id"])

        task = new_task(cloud, identifier, TaskAttributes(), agent=agent)
        job_id = request.app[JOBS_KEY].submit(task.delete)
        log.info("Destroy {task} submitted as job {job}", task=identifier, job=job_id)
        return _json(JobReference(id=job_id))

    async def get_tasks(request: web.Request) -> web.Response:
        identifiers = await list_tasks(cloud_of(request))
        return _json(TaskList(tasks=[i.long() for i in identifiers]))

    async def get_task_status(request: web.Request) -> web.Response:
        cloud = cloud_of(request)
        identifier = Identifier.parse(request.match_info["id"])

        task = new_task(cloud, identifier, TaskAttributes(), agent=agent)
        return _json(TaskStatus.from_status(await task.status()))

    async def get_job(request: web.Request) -> web.Response:
        job_id = request.match_info["id"]
        status = request.app[JOBS_KEY].get_status(job_id)
        return _json(JobResponse(id=job_id, status=status.state.value, error=status.error))

    async def shutdown_jobs(app: web.Application) -> None:
        await app[JOBS_KEY].shutdown()

    app.router.add_post("/tasks", create_task)
    app.router.add_get("/tasks", get_tasks)
    app.router.add_delete("/tasks/{id}", destroy_task)
    app.router.add_get("/tasks/{id}/status", get_task_status)
    app.router.add_get("/jobs/{id}", get_job)
    app.on_cleanup.append(shutdown_jobs)
    return app
