"""Menu image upload progress.

Learn: The restaurant starts an upload with POST, which records it at
"uploading" 0% and seeds the status cache. The processing pipeline then
reports each step with PUT; the restaurant dashboard follows along with a
long poll, or with the SSE stream for every step. A report that only nudges
progress by a point or two doesn't wake the dashboard (see the waiter's
progress threshold), but any state change or a terminal state does.
"""

from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from sse_starlette.sse import EventSourceResponse

from orderpulse.api.deps import (
    ClientDisconnected,
    clamp_timeout,
    get_coordinator,
    get_store,
    not_found,
    polling_hint,
    wait_or_disconnect,
)
from orderpulse.auth.dependencies import Principal, require_roles
from orderpulse.config import settings
from orderpulse.db.store import RecordNotFoundError, RecordStore
from orderpulse.realtime import events as ev
from orderpulse.realtime.authorization import authorize_upload
from orderpulse.realtime.channels import SSEChannel
from orderpulse.realtime.coordinator import (
    DeliveryCoordinator,
    snapshot_from_upload,
    status_frame,
)
from orderpulse.realtime.errors import UnauthorizedError
from orderpulse.realtime.lifecycle import (
    InvalidTransitionError,
    is_terminal,
    validate_upload_transition,
)
from orderpulse.realtime.status_cache import StatusSnapshot
from orderpulse.schemas.upload import UploadProgressReport, UploadStart

router = APIRouter()


def upload_body(snapshot: StatusSnapshot) -> dict:
    return {
        "uploadId": snapshot.data.get("uploadId"),
        "status": snapshot.state,
        "progress": snapshot.progress,
        "errorMessage": snapshot.detail,
        "lastUpdated": ev.isoformat(snapshot.updated_at),
    }


@router.get("/uploads/{upload_id}/status")
async def wait_for_upload_status(
    request: Request,
    upload_id: int,
    state: Optional[str] = Query(None, description="Status the client already has"),
    progress: Optional[int] = Query(None, ge=0, le=100),
    timeout: int = Query(0, description="Max wait in ms (0 = server default)"),
    principal: Principal = Depends(require_roles("restaurant")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Long poll for the next meaningful step of an upload."""
    key = ev.upload_key(upload_id)
    current = await coordinator.poll_status(key)
    if current is None:
        raise not_found("Upload not found")
    if current.data.get("restaurantUserId") != principal.user_id:
        try:
            await authorize_upload(store, upload_id, principal.user_id, principal.role)
        except UnauthorizedError as e:
            raise not_found(str(e))

    if state is None:
        known = current
    else:
        if progress is None and state == current.state:
            progress = current.progress
        known = StatusSnapshot(resource_id=key, state=state, progress=progress)

    timeout_ms = clamp_timeout(
        timeout, settings.long_poll_default_timeout_ms, settings.long_poll_max_timeout_ms
    )
    try:
        result = await wait_or_disconnect(
            request, coordinator.wait_for_status_change(key, known, timeout_ms)
        )
    except ClientDisconnected:
        return Response(status_code=499)

    if not result.found:
        raise not_found("Upload not found")
    return {
        **upload_body(result.snapshot),
        "uploadId": upload_id,
        "completed": result.completed,
        "timeout": result.timed_out,
        "polling": polling_hint(result.completed, settings.long_poll_next_delay_ms),
    }


@router.put("/uploads/{upload_id}/status")
async def report_upload_progress(
    upload_id: int,
    body: UploadProgressReport,
    principal: Principal = Depends(require_roles("restaurant")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Pipeline step report. Validated before the store is written."""
    key = ev.upload_key(upload_id)
    async with coordinator.producer_locks.hold(key):
        try:
            upload = await authorize_upload(store, upload_id, principal.user_id, principal.role)
        except UnauthorizedError as e:
            raise not_found(str(e))
        try:
            validate_upload_transition(upload.status, body.status, upload.progress, body.progress)
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))

        updated = await store.update_upload_status(
            upload_id, body.status, body.progress, body.error_message
        )
        try:
            snapshot = await coordinator.deliver(
                ev.UploadProgressed(
                    upload_id=upload_id,
                    state=updated.status,
                    progress=updated.progress,
                    detail=updated.error_message,
                    previous_state=upload.status,
                    previous_progress=upload.progress,
                )
            )
        except InvalidTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))

    return {**upload_body(snapshot), "uploadId": upload_id}


@router.post("/uploads", status_code=202)
async def start_upload(
    body: UploadStart,
    principal: Principal = Depends(require_roles("restaurant")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Register a menu image upload and hand back where to follow it."""
    try:
        upload = await store.create_upload(
            principal.user_id, body.menu_item_id, body.original_filename, body.file_size
        )
    except RecordNotFoundError as e:
        raise not_found(str(e))

    # Nothing to transition from yet; the first pipeline report moves it on.
    snapshot = coordinator.cache.restore(snapshot_from_upload(upload))
    return {
        **upload_body(snapshot),
        "menuItemId": body.menu_item_id,
        "filename": body.original_filename,
        "fileSize": body.file_size,
        "polling": {
            "statusEndpoint": f"/api/v1/uploads/{upload.id}/status",
            "streamEndpoint": f"/api/v1/uploads/{upload.id}/stream",
            "nextPollDelay": settings.long_poll_next_delay_ms,
        },
    }


async def upload_events(
    coordinator: DeliveryCoordinator,
    upload_id: int,
    channel: SSEChannel,
) -> AsyncIterator[dict[str, str]]:
    """SSE body: the current status, then one status_update per report."""
    key = ev.upload_key(upload_id)
    async with coordinator.open_stream(key, channel):
        yield SSEChannel.encode(
            ev.make_frame(
                ev.CONNECTION_ESTABLISHED,
                {
                    "uploadId": upload_id,
                    "heartbeatInterval": coordinator.streams.heartbeat_interval,
                },
            )
        )
        current = await coordinator.poll_status(key)
        if current is not None:
            yield SSEChannel.encode(status_frame(current))
            if is_terminal(current.state):
                return

        async for frame in channel.frames():
            yield SSEChannel.encode(frame)
            if frame.get("type") == ev.STATUS_UPDATE and is_terminal(
                frame["data"].get("status")
            ):
                return


@router.get("/uploads/{upload_id}/stream")
async def stream_upload(
    upload_id: int,
    principal: Principal = Depends(require_roles("restaurant")),
    store: RecordStore = Depends(get_store),
    coordinator: DeliveryCoordinator = Depends(get_coordinator),
):
    """Server-Sent Events feed of every processing step."""
    try:
        await authorize_upload(store, upload_id, principal.user_id, principal.role)
    except UnauthorizedError as e:
        raise not_found(str(e))

    channel = SSEChannel(
        principal.identity, principal.role, queue_size=settings.stream_queue_size
    )
    return EventSourceResponse(upload_events(coordinator, upload_id, channel))
