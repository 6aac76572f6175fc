from typing import Optional

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from pixrepo.errors import PixrepoError, ValidationError
from pixrepo.gateway import Gateway


class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: Optional[str] = Field(None, alias="fileName")
    file_size: Optional[int] = Field(None, alias="fileSize")
    total_chunks: Optional[int] = Field(None, alias="totalChunks")
    mime_type: Optional[str] = Field(None, alias="mimeType")


class CompleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    skip_deploy: bool = Field(False, alias="skipDeploy")
    folder_name: Optional[str] = Field(None, alias="folderName")


def _as_bool(value: Optional[str]) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


async def _handle_pixrepo_error(request: Request, exc: PixrepoError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.error_code} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.error_code} {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def _handle_upload_chunk(
    gateway: Gateway,
    session_id: str,
    chunk_index: Optional[str],
    total_chunks: Optional[str],
    chunk: Optional[UploadFile],
) -> JSONResponse:
    data = await chunk.read() if chunk is not None else b""
    receipt = await gateway.sessions.ingest_chunk(session_id, chunk_index, total_chunks, data)
    return JSONResponse(
        {
            "success": True,
            "chunkIndex": receipt.chunk_index,
            "uploadedChunks": receipt.uploaded_chunks,
            "totalChunks": receipt.total_chunks,
            "progress": receipt.progress_percent,
            "progressPercent": receipt.progress_percent,
        }
    )


async def _handle_direct_upload(
    gateway: Gateway,
    file: Optional[UploadFile],
    folder_name: Optional[str],
    skip_deploy: Optional[str],
) -> JSONResponse:
    if file is None:
        raise ValidationError("No file uploaded", field="file")
    data = await file.read()
    result = await gateway.upload_direct(
        data,
        file.filename,
        file.content_type,
        folder_name=folder_name,
        skip_deploy=_as_bool(skip_deploy),
    )
    return JSONResponse(result.to_dict())


def register_upload_routes(app: FastAPI, gateway: Gateway):
    app.add_exception_handler(PixrepoError, _handle_pixrepo_error)

    @app.middleware("http")
    async def sweep_expired_sessions(request: Request, call_next):
        try:
            await gateway.sessions.sweep_expired()
        except Exception as e:
            logger.error(f"Sweeping expired upload sessions failed: {e}")
        return await call_next(request)

    @app.post("/api/upload/sessions")
    async def create_session(body: CreateSessionRequest) -> JSONResponse:
        session_id = await gateway.sessions.create_session(
            body.file_name, body.file_size, body.total_chunks, body.mime_type
        )
        return JSONResponse({"success": True, "sessionId": session_id})

    @app.post("/api/upload/sessions/{session_id}/chunks")
    async def upload_chunk(
        session_id: str,
        chunkIndex: Optional[str] = Form(None),
        totalChunks: Optional[str] = Form(None),
        chunk: Optional[UploadFile] = File(None),
    ) -> JSONResponse:
        return await _handle_upload_chunk(gateway, session_id, chunkIndex, totalChunks, chunk)

    @app.post("/api/upload/sessions/{session_id}/complete")
    async def complete_session(session_id: str, body: Optional[CompleteRequest] = None) -> JSONResponse:
        body = body or CompleteRequest()
        result = await gateway.complete_chunked(
            session_id, folder_name=body.folder_name, skip_deploy=body.skip_deploy
        )
        return JSONResponse(result.to_dict())

    @app.delete("/api/upload/sessions/{session_id}")
    async def cancel_session(session_id: str) -> JSONResponse:
        await gateway.sessions.cancel(session_id)
        return JSONResponse({"success": True})

    @app.post("/api/upload")
    async def direct_upload(
        file: Optional[UploadFile] = File(None),
        folderName: Optional[str] = Form(None),
        skipDeploy: Optional[str] = Form(None),
    ) -> JSONResponse:
        return await _handle_direct_upload(gateway, file, folderName, skipDeploy)

    @app.delete("/api/files/{file_id}")
    async def delete_file(file_id: int) -> JSONResponse:
        return JSONResponse(await gateway.delete_file(file_id))

    @app.post("/api/stores/reconcile")
    async def reconcile_stores() -> JSONResponse:
        results = gateway.reconciler.reconcile_all()
        return JSONResponse(
            {
                "success": all(r.success for r in results),
                "results": [r.to_dict() for r in results],
            }
        )

    @app.post("/api/deploy")
    async def trigger_deploy() -> JSONResponse:
        result = await gateway.deployer.trigger_all()
        return JSONResponse(result.to_dict())
