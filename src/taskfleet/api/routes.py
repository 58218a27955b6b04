"""HTTP routes for machines, tasks and subagent runs."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from taskfleet import __version__
from taskfleet.api.schemas import (
    ClaimRequest,
    ClaimResponse,
    HealthOut,
    HeartbeatAck,
    HeartbeatRequest,
    InputAck,
    InputOut,
    InputPollResponse,
    InputRequest,
    MachineOut,
    MachineRegisterRequest,
    ResultRequest,
    ResultResponse,
    RunListResponse,
    RunOut,
    SpawnRunRequest,
    StartRequest,
    StreamAck,
    StreamEventRequest,
    TaskCreateRequest,
    TaskOut,
)
from taskfleet.dispatch.models import (
    MachineRegistration,
    MachineView,
    TaskCreate,
    TaskResultPayload,
)
from taskfleet.relay.models import StreamEvent, StreamResult, ToolUse
from taskfleet.runtime import Runtime
from taskfleet.storage.common import to_utc_aware_datetime
from taskfleet.subagents.models import SpawnRequest


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]

health_router = APIRouter(tags=["health"])
machines_router = APIRouter(prefix="/api/machines", tags=["machines"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["tasks"])
subagents_router = APIRouter(prefix="/api/subagents", tags=["subagents"])


@health_router.get("/health", response_model=HealthOut)
def health() -> HealthOut:
    return HealthOut(status="ok", version=__version__)


@machines_router.post("/register", response_model=MachineOut)
def register_machine(body: MachineRegisterRequest, runtime: RuntimeDep) -> MachineOut:
    view = runtime.registry.register(
        MachineRegistration(
            machine_id=body.machine_id,
            projects=body.projects,
            max_concurrent=body.max_concurrent,
            display_name=body.display_name,
            os=body.os,
        ),
    )
    return _machine_out(view, runtime)


@machines_router.post(
    "/heartbeat",
    response_model=HeartbeatAck,
    status_code=status.HTTP_202_ACCEPTED,
)
def heartbeat(body: HeartbeatRequest, runtime: RuntimeDep) -> HeartbeatAck:
    """Fire-and-forget: unknown machines are acknowledged but not recorded."""

    view = runtime.registry.heartbeat(body.machine_id, body.active_count, sent_at=body.sent_at)
    return HeartbeatAck(accepted=view is not None)


@machines_router.get("", response_model=list[MachineOut])
def list_machines(runtime: RuntimeDep) -> list[MachineOut]:
    return [_machine_out(view, runtime) for view in runtime.registry.list_machines()]


@tasks_router.post("", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
def create_task(body: TaskCreateRequest, runtime: RuntimeDep) -> TaskOut:
    try:
        view = runtime.tasks.create(
            TaskCreate(
                project=body.project,
                description=body.description,
                priority=body.priority,
                budget=body.budget,
            ),
        )
    except ValueError as error:
        raise HTTPException(status_code=422, detail=str(error)) from error
    return TaskOut.model_validate(view)


@tasks_router.post("/claim", response_model=ClaimResponse)
def claim_task(body: ClaimRequest, runtime: RuntimeDep) -> ClaimResponse:
    if body.task_id is not None:
        view = runtime.tasks.claim_task(body.task_id, body.machine_id)
    else:
        view = runtime.tasks.claim_next(body.machine_id)
    return ClaimResponse(task=TaskOut.model_validate(view) if view is not None else None)


@tasks_router.get("/{task_id}", response_model=TaskOut)
def get_task(task_id: str, runtime: RuntimeDep) -> TaskOut:
    return TaskOut.model_validate(runtime.tasks.get(task_id))


@tasks_router.post("/{task_id}/start", response_model=TaskOut)
def start_task(task_id: str, body: StartRequest, runtime: RuntimeDep) -> TaskOut:
    return TaskOut.model_validate(runtime.tasks.start(task_id, body.machine_id))


@tasks_router.post("/{task_id}/result", response_model=ResultResponse)
def report_result(task_id: str, body: ResultRequest, runtime: RuntimeDep) -> ResultResponse:
    report = runtime.tasks.report_result(
        task_id,
        body.outcome,
        TaskResultPayload(
            summary=body.summary,
            changed_artifacts=body.changed_artifacts,
            external_ref_url=body.external_ref_url,
            cost_units=body.cost_units,
            error_message=body.error_message,
        ),
    )
    return ResultResponse(
        task=TaskOut.model_validate(report.task),
        first_report=report.first_report,
    )


@tasks_router.post("/{task_id}/cancel", response_model=TaskOut)
def cancel_task(task_id: str, runtime: RuntimeDep) -> TaskOut:
    return TaskOut.model_validate(runtime.tasks.cancel(task_id))


@tasks_router.post(
    "/{task_id}/stream",
    response_model=StreamAck,
    status_code=status.HTTP_202_ACCEPTED,
)
def push_stream_event(task_id: str, body: StreamEventRequest, runtime: RuntimeDep) -> StreamAck:
    runtime.tasks.get(task_id)
    event = StreamEvent(
        event_type=body.event_type,
        text=body.text,
        tool_use=ToolUse(name=body.tool_use.name, input=body.tool_use.input)
        if body.tool_use is not None
        else None,
        result=StreamResult(**body.result.model_dump()) if body.result is not None else None,
    )
    return StreamAck(accepted=runtime.relay.push_event(task_id, event))


@tasks_router.post(
    "/{task_id}/input",
    response_model=InputAck,
    status_code=status.HTTP_201_CREATED,
)
def enqueue_input(task_id: str, body: InputRequest, runtime: RuntimeDep) -> InputAck:
    task = runtime.tasks.get(task_id)
    if task.status.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Task {task_id} is {task.status.value}, replies are closed",
        )
    try:
        pending = runtime.inputs.enqueue(task_id, body.text)
    except ValueError as error:
        raise HTTPException(status_code=422, detail=str(error)) from error
    return InputAck(pending=pending)


@tasks_router.get("/{task_id}/input", response_model=InputPollResponse)
def poll_input(task_id: str, runtime: RuntimeDep) -> InputPollResponse:
    entry = runtime.inputs.poll(task_id)
    if entry is None:
        return InputPollResponse(input=None)
    return InputPollResponse(input=InputOut(text=entry.text, enqueued_at=entry.enqueued_at))


@subagents_router.post("", response_model=RunOut, status_code=status.HTTP_201_CREATED)
def spawn_run(body: SpawnRunRequest, runtime: RuntimeDep) -> RunOut:
    try:
        view = runtime.runs.spawn(
            SpawnRequest(
                profile_id=body.profile_id,
                task=body.task,
                parent_run_id=body.parent_run_id,
                model=body.model,
                execution_mode=body.execution_mode,
                timeout_seconds=body.timeout_seconds,
                cleanup_policy=body.cleanup_policy,
                metadata=body.metadata,
            ),
        )
    except ValueError as error:
        raise HTTPException(status_code=422, detail=str(error)) from error
    return RunOut.model_validate(view)


@subagents_router.get("/{run_id}", response_model=RunOut)
def get_run(run_id: str, runtime: RuntimeDep) -> RunOut:
    return RunOut.model_validate(runtime.runs.get_run(run_id))


@subagents_router.post("/{run_id}/cancel", response_model=RunListResponse)
def cancel_run(
    run_id: str,
    runtime: RuntimeDep,
    cascade: Annotated[bool, Query()] = False,
) -> RunListResponse:
    cancelled = runtime.lifecycle.cancel_run(run_id, cascade=cascade)
    return RunListResponse(runs=[RunOut.model_validate(view) for view in cancelled])


@subagents_router.get("/{run_id}/descendants", response_model=RunListResponse)
def list_descendants(run_id: str, runtime: RuntimeDep) -> RunListResponse:
    return RunListResponse(
        runs=[RunOut.model_validate(view) for view in runtime.runs.descendants(run_id)],
    )


def _machine_out(view: MachineView, runtime: Runtime) -> MachineOut:
    now = to_utc_aware_datetime(runtime.registry.clock())
    return MachineOut(
        machine_id=view.machine_id,
        display_name=view.display_name,
        os=view.os,
        projects=view.projects,
        max_concurrent=view.max_concurrent,
        active_tasks=view.active_tasks,
        reported_active_tasks=view.reported_active_tasks,
        status=view.effective_status(
            now=now,
            stale_after_seconds=runtime.settings.dispatch.machine_stale_seconds,
        ),
        last_heartbeat=view.last_heartbeat,
        registered_at=view.registered_at,
    )
