from __future__ import annotations
import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from ..core.errors import (
    BrokerUnavailable, JobNotFound, ResultUnavailable, SessionNotFound, UnsupportedLanguage,
)
from ..executor.base import SandboxRuntime
from ..logging import setup_logging
from ..services.job_service import Services, build_services
from ..sessions.manager import SessionManager
from ..settings import Settings, load_settings

log = structlog.get_logger(__name__)


# --------- Schemas ---------
class CodeReq(BaseModel):
    code: str
    language: str

class SubmitRes(BaseModel):
    job_id: str

class RunRes(BaseModel):
    job_id: str
    status: str
    output: str

class CancelRes(BaseModel):
    job_id: str
    cancelled: bool

class LanguageRes(BaseModel):
    id: str
    file_extension: str
    memory_limit: int
    cpu_share: float
    timeout_ms: int


def _rejected(e: UnsupportedLanguage) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"status": "REJECTED", "reason": "unsupported_language", "message": str(e)},
    )


async def _reap_idle_sessions(sessions: SessionManager, idle_s: int):
    while True:
        await asyncio.sleep(idle_s)
        await run_in_threadpool(sessions.reap_idle, idle_s)


def create_app(settings: Optional[Settings] = None, *, runtime: Optional[SandboxRuntime] = None) -> FastAPI:
    s = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(s.log_level)
        services = build_services(s, runtime=runtime)
        sessions = SessionManager(s.shell, grace_s=s.session_grace_s)
        app.state.services = services
        app.state.sessions = sessions
        services.start()
        reaper = None
        if s.session_idle_timeout_s > 0:
            reaper = asyncio.create_task(_reap_idle_sessions(sessions, s.session_idle_timeout_s))
        log.info("api_started", runtime=s.runtime, broker=bool(s.broker_url),
                 languages=sorted(s.languages))
        try:
            yield
        finally:
            if reaper is not None:
                reaper.cancel()
            await run_in_threadpool(sessions.close_all)
            await run_in_threadpool(services.stop)

    app = FastAPI(title="CollabRun Execution API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=s.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def svc(request: Request) -> Services:
        return request.app.state.services

    # --------- Endpoints ---------

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/languages", response_model=List[LanguageRes])
    def languages():
        return [
            LanguageRes(id=p.id, file_extension=p.file_extension, memory_limit=p.memory_limit,
                        cpu_share=p.cpu_share, timeout_ms=p.timeout_ms)
            for p in s.languages.values()
        ]

    @app.post("/run", response_model=RunRes)
    def run(req: CodeReq, request: Request):
        try:
            outcome = svc(request).jobs.run(req.code, req.language)
        except UnsupportedLanguage as e:
            raise _rejected(e)
        except BrokerUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        except ResultUnavailable as e:
            raise HTTPException(status_code=504, detail=str(e))
        return RunRes(**outcome.public())

    @app.post("/jobs", response_model=SubmitRes, status_code=202)
    def submit(req: CodeReq, request: Request):
        try:
            job_id = svc(request).jobs.submit(req.code, req.language)
        except UnsupportedLanguage as e:
            raise _rejected(e)
        except BrokerUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return SubmitRes(job_id=job_id)

    @app.get("/jobs/{job_id}")
    def job_status(job_id: str, request: Request):
        try:
            return svc(request).jobs.status(job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail="job_not_found")

    @app.get("/jobs/{job_id}/result")
    def job_result(job_id: str, request: Request, wait: float = Query(0, ge=0, le=300)):
        jobs = svc(request).jobs
        try:
            outcome = jobs.result(job_id, wait=wait)
            if outcome is None:
                return JSONResponse(status_code=202, content=jobs.status(job_id))
        except JobNotFound:
            raise HTTPException(status_code=404, detail="job_not_found")
        except BrokerUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return outcome.public()

    @app.delete("/jobs/{job_id}", response_model=CancelRes)
    def cancel_job(job_id: str, request: Request):
        try:
            cancelled = svc(request).jobs.cancel(job_id)
        except BrokerUnavailable as e:
            raise HTTPException(status_code=503, detail=str(e))
        return CancelRes(job_id=job_id, cancelled=cancelled)

    @app.websocket("/jobs/{job_id}/events")
    async def job_events(ws: WebSocket, job_id: str):
        await ws.accept()
        jobs = ws.app.state.services.jobs
        try:
            outcome = await run_in_threadpool(jobs.result, job_id, s.sync_wait_s)
        except JobNotFound:
            await ws.send_json({"job_id": job_id, "error": "job_not_found"})
            await ws.close(code=4404)
            return
        if outcome is None:
            await ws.send_json({"job_id": job_id, "error": "result_unavailable"})
        else:
            await ws.send_json(outcome.public())
        await ws.close()

    @app.websocket("/terminal")
    async def terminal(ws: WebSocket):
        await ws.accept()
        sessions: SessionManager = ws.app.state.sessions
        loop = asyncio.get_running_loop()
        outbox: asyncio.Queue = asyncio.Queue()
        session_id = uuid.uuid4().hex

        # called from the session's reader thread
        def emit(data: str):
            loop.call_soon_threadsafe(outbox.put_nowait, {"type": "data", "data": data})

        def on_exit(code: int):
            loop.call_soon_threadsafe(outbox.put_nowait, {"type": "exit", "code": code})

        async def forward():
            while True:
                await ws.send_json(await outbox.get())

        sessions.connect(session_id, emit, on_exit)
        sender = asyncio.create_task(forward())
        try:
            while True:
                msg = await ws.receive_json()
                kind = msg.get("type")
                if kind == "input":
                    data = str(msg.get("data", ""))
                    try:
                        await run_in_threadpool(sessions.write, session_id, data)
                    except SessionNotFound:
                        # the previous shell exited; the next keystroke starts a fresh one
                        sessions.connect(session_id, emit, on_exit)
                        await run_in_threadpool(sessions.write, session_id, data)
                elif kind == "resize":
                    sessions.resize(session_id, int(msg["cols"]), int(msg["rows"]))
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            await run_in_threadpool(sessions.disconnect, session_id)

    @app.get("/")
    def read_root():
        return {"message": "Welcome to the CollabRun execution API"}

    return app


app = create_app()
