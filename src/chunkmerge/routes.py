import json
from typing import Optional
from urllib.parse import quote

from fastapi import FastAPI, File, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from chunkmerge.engine import UploadEngine
from chunkmerge.errors import UploadError, ValidationError


def _parse_chunk_index(raw: Optional[str]) -> int:
    if raw is None:
        raise ValidationError("Missing chunkIndex")
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"Invalid chunkIndex: {raw!r}") from None


def _parse_total_chunks(raw) -> int:
    # JSON clients sometimes send counts as strings; anything unparsable is left
    # for validate_total_chunks to reject
    if isinstance(raw, str):
        try:
            return int(raw)
        except ValueError:
            return raw
    return raw


async def _read_json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


async def _handle_upload_chunk(
    engine: UploadEngine,
    session_key: Optional[str],
    raw_index: Optional[str],
    chunk: Optional[UploadFile],
) -> JSONResponse:
    if not session_key:
        raise ValidationError("Missing filename query param")
    index = _parse_chunk_index(raw_index)
    if chunk is None:
        raise ValidationError("Missing chunk file")

    data = await chunk.read()
    await engine.upload_chunk(session_key, index, data)
    return JSONResponse({"status": "Chunk received"})


async def _handle_merge(engine: UploadEngine, request: Request) -> JSONResponse:
    body = await _read_json_body(request)

    result = await engine.merge(
        body.get("filename"),
        _parse_total_chunks(body.get("totalChunks")),
        body.get("originalFilename"),
    )
    if not result.ok:
        raise result.error

    return JSONResponse(
        {
            "message": "File merged",
            "artifactName": result.artifact_name,
            "downloadUrl": f"/download/{quote(result.artifact_name)}",
        }
    )


async def _handle_download(engine: UploadEngine, artifact_name: str) -> StreamingResponse:
    pieces = engine.fetch(artifact_name)
    return StreamingResponse(
        pieces,
        media_type="application/octet-stream",
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(artifact_name)}"
        },
    )


async def _handle_get_session(engine: UploadEngine, session_key: str) -> JSONResponse:
    info = await engine.session_info(session_key)
    return JSONResponse(info.to_dict())


async def _handle_abort_session(engine: UploadEngine, session_key: str) -> JSONResponse:
    await engine.abort(session_key)
    return JSONResponse({"session": session_key, "status": "aborted"})


async def _handle_upload_error(request: Request, exc: UploadError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.debug(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


def register_upload_routes(app: FastAPI, engine: UploadEngine):
    app.add_exception_handler(UploadError, _handle_upload_error)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.post("/upload")
    async def upload_chunk(
        filename: Optional[str] = Query(None),
        chunk_index: Optional[str] = Query(None, alias="chunkIndex"),
        chunk: Optional[UploadFile] = File(None),
    ) -> JSONResponse:
        return await _handle_upload_chunk(engine, filename, chunk_index, chunk)

    @app.post("/merge")
    async def merge(request: Request) -> JSONResponse:
        return await _handle_merge(engine, request)

    @app.get("/download/{filename}")
    async def download(filename: str):
        return await _handle_download(engine, filename)

    @app.get("/sessions/{session_key}")
    async def get_session(session_key: str) -> JSONResponse:
        return await _handle_get_session(engine, session_key)

    @app.delete("/sessions/{session_key}")
    async def abort_session(session_key: str) -> JSONResponse:
        return await _handle_abort_session(engine, session_key)
