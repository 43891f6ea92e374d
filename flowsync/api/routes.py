from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Path, Query

from flowsync.api.schemas import (
    MAX_ID_LENGTH,
    AbortExecutionResponse,
    CopyWorkspaceRequest,
    CopyWorkspaceResponse,
    Envelope,
    FlowListResponse,
    FlowResponse,
)
from flowsync.logging import get_logger
from flowsync.service.abort import execution_id
from flowsync.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@router.post("/workspace-data/copy", response_model=Envelope, tags=["workspace"])
async def copy_workspace(body: CopyWorkspaceRequest):
    """Copy tools, variables, assistants and flows into another workspace.

    Records copied before are updated in place; everything is committed in
    one transaction or not at all.
    """
    runtime = get_runtime()
    # The copy is synchronous database work; keep it off the event loop
    summary = await asyncio.to_thread(
        runtime.workspace_copy.copy_workspace,
        body.from_workspace_id,
        body.to_workspace_id,
    )
    return Envelope(
        status="ok", data=CopyWorkspaceResponse.from_summary(summary).model_dump()
    )


@router.get("/workspace-data/flows", response_model=Envelope, tags=["workspace"])
async def list_workspace_flows(
    workspace_id: Optional[str] = Query(None, max_length=MAX_ID_LENGTH),
    type: Optional[str] = Query(None, max_length=32),
):
    runtime = get_runtime()
    flows = await asyncio.to_thread(
        runtime.workspace_copy.list_flows, (workspace_id or "").strip(), type
    )
    items = [FlowResponse.from_record(flow) for flow in flows]
    return Envelope(
        status="ok", data=FlowListResponse(items=items).model_dump(mode="json")
    )


@router.put(
    "/chatmessage/abort/{chatflow_id}/{chat_id}",
    response_model=Envelope,
    tags=["chat"],
)
async def abort_chat_message(
    chatflow_id: str = Path(..., min_length=1, max_length=MAX_ID_LENGTH),
    chat_id: str = Path(..., min_length=1, max_length=MAX_ID_LENGTH),
):
    """Abort the prediction running for a chat.

    Succeeds whether or not the run is still active.
    """
    runtime = get_runtime()
    target = execution_id(chatflow_id, chat_id)
    await runtime.abort_coordinator.abort(target)
    return Envelope(
        status="ok",
        data=AbortExecutionResponse(
            execution_id=target, mode=runtime.abort_coordinator.mode.value
        ).model_dump(),
    )
