"""FastAPI server for triggering flows and polling jobs."""

from typing import Optional, Any
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
import uvicorn
import json

from ..config import Settings
from ..errors import JobStateError
from ..engine.pipeline import Pipeline
from ..models import Flow, JobStatus, JobTrigger

logger = logging.getLogger(__name__)

# Global pipeline instance
pipeline: Optional[Pipeline] = None


# -------------------------------------------------------------------------
# Request/Response Models
# -------------------------------------------------------------------------

class RunFlowRequest(BaseModel):
    """Request to queue a flow run."""
    trigger: JobTrigger = JobTrigger.API


class StatsResponse(BaseModel):
    """Pipeline statistics response."""
    running: bool
    worker_running: bool
    active_jobs: int
    max_concurrent: int
    handlers_loaded: int
    flows: int
    jobs_by_status: dict[str, int]
    watching_flows: bool


class JobStatusResponse(BaseModel):
    """Polled job status."""
    job_id: str
    status: str
    job_steps: list[dict] = Field(default_factory=list)
    result: Optional[dict[str, Any]] = None


# -------------------------------------------------------------------------
# WebSocket Connection Manager
# -------------------------------------------------------------------------

class ConnectionManager:
    """Manages WebSocket connections for real-time job updates."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: dict):
        """Broadcast a message to all connected clients."""
        if not self.active_connections:
            return

        message_json = json.dumps(message, default=str)

        for connection in self.active_connections.copy():
            try:
                await connection.send_text(message_json)
            except Exception as e:
                logger.warning(f"Error sending WebSocket message: {e}")
                self.disconnect(connection)


manager = ConnectionManager()


# -------------------------------------------------------------------------
# App Lifecycle
# -------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the pipeline and its background worker for the app's lifetime."""
    global pipeline

    settings: Settings = app.state.settings
    logger.info("Starting PacketFlow API server...")

    pipeline = Pipeline(settings)
    await pipeline.start()

    # Register callbacks for WebSocket broadcasts
    pipeline.on("job_queued", on_job_queued)
    pipeline.on("job_started", on_job_started)
    pipeline.on("step_completed", on_step_completed)
    pipeline.on("job_completed", on_job_completed)
    pipeline.on("job_failed", on_job_failed)
    pipeline.on("flows_reloaded", on_flows_reloaded)

    await pipeline.start_background_worker()

    logger.info("PacketFlow API server started")

    yield

    logger.info("Shutting down PacketFlow API server...")
    await pipeline.stop()
    logger.info("PacketFlow API server stopped")


# -------------------------------------------------------------------------
# Event Callbacks (for WebSocket)
# -------------------------------------------------------------------------

async def on_job_queued(job):
    await manager.broadcast({"event": "job_queued", "job_id": job.id, "flow_id": job.flow_id})

async def on_job_started(job):
    await manager.broadcast({"event": "job_started", "job_id": job.id})

async def on_step_completed(job, trace):
    await manager.broadcast({
        "event": "step_completed",
        "job_id": job.id,
        "flow_step_id": trace.flow_step_id,
        "step_type": trace.step_type,
        "success": trace.success,
        "error": trace.error,
    })

async def on_job_completed(job):
    await manager.broadcast({"event": "job_completed", "job_id": job.id, "packets": len(job.packets)})

async def on_job_failed(job):
    await manager.broadcast({"event": "job_failed", "job_id": job.id, "error": job.error_message})

async def on_flows_reloaded(count):
    await manager.broadcast({"event": "flows_reloaded", "flows": count})


# -------------------------------------------------------------------------
# App Factory
# -------------------------------------------------------------------------

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Engine settings; read from ``PACKETFLOW_*`` variables when omitted
    """
    app = FastAPI(
        title="PacketFlow API",
        description="Trigger content flows and poll their jobs",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or Settings.from_env()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------------------------
    # Health Check
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/api/stats", response_model=StatsResponse)
    async def get_stats():
        """Get pipeline statistics."""
        return await pipeline.get_stats()

    # -------------------------------------------------------------------------
    # Handlers and step types
    # -------------------------------------------------------------------------

    @app.get("/api/handlers")
    async def list_handlers():
        """List loaded handlers with their tools."""
        return pipeline.get_handlers()

    @app.get("/api/step-types")
    async def list_step_types():
        """List step types and which types may follow each."""
        return pipeline.get_step_types()

    # -------------------------------------------------------------------------
    # Flow Endpoints
    # -------------------------------------------------------------------------

    @app.get("/api/flows")
    async def list_flows(project_id: Optional[str] = Query(None)):
        """List stored flows."""
        flows = await pipeline.list_flows(project_id=project_id)
        return [f.model_dump(mode="json") for f in flows]

    @app.post("/api/flows", status_code=201)
    async def save_flow(body: dict[str, Any]):
        """Create or replace a flow. Invalid step sequences are rejected with 400."""
        try:
            flow = Flow.model_validate(body)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))

        validation = pipeline.validate_flow(flow)
        if not validation.valid:
            return JSONResponse(status_code=400, content=validation.model_dump())

        await pipeline.save_flow(flow)
        return {"flow": flow.model_dump(mode="json"), "warnings": validation.warnings}

    @app.get("/api/flows/{flow_id}")
    async def get_flow(flow_id: str):
        """Get a flow by ID."""
        flow = await pipeline.get_flow(flow_id)
        if not flow:
            raise HTTPException(status_code=404, detail="Flow not found")
        return flow.model_dump(mode="json")

    @app.delete("/api/flows/{flow_id}")
    async def delete_flow(flow_id: str):
        """Delete a flow."""
        if not await pipeline.delete_flow(flow_id):
            raise HTTPException(status_code=404, detail="Flow not found")
        return {"deleted": True}

    @app.post("/api/flows/{flow_id}/validate")
    async def validate_flow(flow_id: str):
        """Re-check a stored flow against the loaded handlers."""
        flow = await pipeline.get_flow(flow_id)
        if not flow:
            raise HTTPException(status_code=404, detail="Flow not found")
        return pipeline.validate_flow(flow).model_dump()

    @app.post("/api/flows/{flow_id}/run", status_code=202)
    async def run_flow(flow_id: str, request: Optional[RunFlowRequest] = None):
        """Queue a flow for background execution."""
        trigger = request.trigger if request else JobTrigger.API
        queued = await pipeline.trigger_flow(flow_id, trigger=trigger)
        if queued["status"] == "error":
            return JSONResponse(status_code=404, content=queued)
        return queued

    # -------------------------------------------------------------------------
    # Job Endpoints
    # -------------------------------------------------------------------------

    @app.get("/api/jobs")
    async def list_jobs(
        status: Optional[str] = Query(None, description="Filter by status"),
        flow_id: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        """List jobs, newest first."""
        try:
            status_enum = JobStatus(status) if status else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        jobs = await pipeline.list_jobs(status=status_enum, flow_id=flow_id, limit=limit, offset=offset)
        return [j.model_dump(mode="json", exclude={"packets"}) for j in jobs]

    @app.get("/api/jobs/{job_id}")
    async def get_job(job_id: str):
        """Get a job by ID, including its packets."""
        job = await pipeline.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.model_dump(mode="json")

    @app.get("/api/jobs/{job_id}/status", response_model=JobStatusResponse)
    async def get_job_status(job_id: str):
        """Poll a job's progress."""
        status = await pipeline.get_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return status

    @app.post("/api/jobs/{job_id}/process")
    async def process_job(job_id: str):
        """Run a pending job now and wait for it."""
        try:
            job = await pipeline.process_job(job_id)
        except JobStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return job.model_dump(mode="json")

    @app.post("/api/jobs/sweep")
    async def sweep_jobs():
        """Fail jobs that are past their deadline."""
        failed = await pipeline.sweep_stale_jobs()
        return {"failed": failed}

    # -------------------------------------------------------------------------
    # WebSocket
    # -------------------------------------------------------------------------

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint for real-time job updates."""
        await manager.connect(websocket)
        try:
            while True:
                data = await websocket.receive_text()
                logger.debug(f"Received WebSocket message: {data}")
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app


# -------------------------------------------------------------------------
# Main Entry Point
# -------------------------------------------------------------------------

def main():
    """Run the API server."""
    import argparse

    settings = Settings.from_env()

    parser = argparse.ArgumentParser(description="PacketFlow API Server")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--log-level", default=settings.log_level, help="Log level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "packetflow.api.server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
