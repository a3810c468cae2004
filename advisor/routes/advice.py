from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse

from advisor.routes._deps import runtime_from_request, trace_id_from_request
from advisor.schemas import AdviceRequest, success_envelope
from advisor.stream_relay import StreamRelay, format_sse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["advice"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/advice")
async def create_advice(payload: AdviceRequest, request: Request):
    runtime = runtime_from_request(request)
    job_id = await runtime.jobs.submit(payload.as_job_input())
    return JSONResponse(
        status_code=202,
        content=success_envelope({"jobId": job_id, "status": "queued"}, trace_id_from_request(request)),
    )


@router.get("/advice/{job_id}")
async def get_advice(job_id: str, request: Request):
    status = await runtime_from_request(request).jobs.get_status(job_id)
    data = {
        "jobId": status["job_id"],
        "status": status["status"],
        "result": status["result"],
        "failureReason": status["failure_reason"],
        "attempts": status["attempts"],
    }
    return success_envelope(data, trace_id_from_request(request))


async def _sse_frames(relay: StreamRelay, job_id: str) -> AsyncIterator[str]:
    event_id = 0
    async for event in relay.subscribe(job_id):
        event_id += 1
        yield format_sse(event, event_id)
    logger.debug("advice stream closed: %s after %d frames", job_id, event_id)


@router.get("/advice/{job_id}/stream")
async def stream_advice(job_id: str, request: Request):
    runtime = runtime_from_request(request)
    await runtime.jobs.get_job(job_id)
    return StreamingResponse(
        _sse_frames(runtime.relay, job_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("/advice/{job_id}/cancel")
async def cancel_advice(job_id: str, request: Request):
    data = await runtime_from_request(request).jobs.cancel(job_id)
    return JSONResponse(
        status_code=202,
        content=success_envelope({"jobId": data["job_id"], "status": data["status"]}, trace_id_from_request(request)),
    )
