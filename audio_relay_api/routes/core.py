import asyncio
import logging
from typing import AsyncIterator, Dict

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from ..errors import MediaNotFound, RelayCancelled, RelayInterrupted, classify
from ..models import EncodingDescriptor, ErrorBody
from ..relay import RelaySession
from ..selector import select_audio_format

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stream"])


@router.get("/api/health")
def health():
    return {"ok": True}


def response_headers(encoding: EncodingDescriptor) -> Dict[str, str]:
    headers = {
        "Cache-Control": "no-store",
        "Access-Control-Allow-Origin": "*",
    }
    # no Accept-Ranges: full-stream relay only
    if encoding.content_length:
        headers["Content-Length"] = str(encoding.content_length)
    return headers


def error_response(identifier: str, exc: BaseException) -> JSONResponse:
    classified = classify(exc)
    if classified.is_client_failure:
        logger.warning("%s: %s (%s)", identifier, classified.message, classified.detail)
    else:
        logger.error("%s: %s (%s)", identifier, classified.message, classified.detail, exc_info=exc)
    body = ErrorBody(**classified.to_body(identifier))
    return JSONResponse(status_code=classified.status_code, content=body.model_dump())


async def relay_body(session: RelaySession) -> AsyncIterator[bytes]:
    try:
        async for chunk in session:
            yield chunk
    except RelayCancelled:
        return
    except RelayInterrupted as e:
        # headers are already committed; dropping the connection is the only signal left
        logger.error("%s: aborting response after %d bytes: %s",
                     session.label, session.bytes_delivered, e.detail or e.message)
        raise
    finally:
        # client went away or body finished; cancel() is a no-op after completion
        session.cancel()


@router.api_route("/stream/{identifier}", methods=["GET", "HEAD"])
async def stream(identifier: str, request: Request):
    state = request.app.state
    settings, provider, adapter = state.settings, state.provider, state.adapter
    identifier = identifier.strip()
    logger.info("Streaming %s (%s)", identifier, request.method)
    if not identifier:
        return error_response(identifier, MediaNotFound("Media not found", "empty identifier"))

    try:
        metadata = await asyncio.wait_for(
            asyncio.to_thread(provider.resolve_metadata, identifier),
            timeout=settings.resolve_timeout,
        )
        encoding = select_audio_format(metadata.candidates)
        logger.info(
            "%s: %r (%s s), selected format %s (%s, %s kbps, %s bytes)",
            identifier, metadata.title, metadata.duration_sec, encoding.format_key,
            encoding.mime_type, encoding.bitrate, encoding.content_length,
        )
        headers = response_headers(encoding)

        if request.method == "HEAD":
            return Response(status_code=200, headers=headers, media_type=encoding.media_type)

        session = await asyncio.wait_for(
            adapter.open(encoding, provider.open_stream, label=identifier),
            timeout=settings.open_timeout,
        )
    except Exception as e:
        return error_response(identifier, e)

    if session.total_length is None:
        session.total_length = metadata.total_length_hint

    return StreamingResponse(
        relay_body(session),
        status_code=200,
        headers=headers,
        media_type=encoding.media_type,
        background=BackgroundTask(session.cancel),
    )
