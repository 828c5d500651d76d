"""FastAPI server for frame ingestion and work-study monitoring."""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError
import uvicorn

from ..core.data_types import Frame

logger = logging.getLogger(__name__)


class ModelResponse(BaseModel):
    """Response model for model loading."""
    status: str
    name: str
    states: int
    transitions: int


class FramesResponse(BaseModel):
    """Response model for frame ingestion."""
    processed: int
    tracks: List[Dict[str, Any]]
    logs: List[Dict[str, Any]]
    timeline_events: List[Dict[str, Any]]


class EventsResponse(BaseModel):
    """Response model for events."""
    events: List[Dict[str, Any]]
    total_count: int
    since: Optional[float] = None


class StatisticsResponse(BaseModel):
    """Response model for statistics."""
    model: Optional[str] = None
    active_tracks: int
    frames_processed: int
    timeline_events: int
    anomalies: int
    frame_count: int
    runtime: float
    cycles: Optional[Dict[str, Any]] = None


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    timestamp: str
    model_loaded: bool
    components: Dict[str, bool]


def create_api_server(pipeline=None, port: int = 8000) -> FastAPI:
    """
    Create FastAPI server around a pipeline.

    Args:
        pipeline: Pipeline instance (optional)
        port: Server port

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="Work Study Monitor API",
        description="API for real-time work-element state monitoring",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.state.pipeline = pipeline

    def require_pipeline():
        if not app.state.pipeline:
            raise HTTPException(status_code=503, detail="Pipeline not available")
        return app.state.pipeline

    @app.get("/", response_class=JSONResponse)
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "Work Study Monitor API",
            "version": "1.0.0",
            "status": "running",
            "timestamp": datetime.now().isoformat(),
            "endpoints": {
                "health": "/health",
                "model": "/model",
                "frames": "/frames",
                "tracks": "/tracks",
                "events": "/events",
                "statistics": "/stats",
                "documentation": "/docs"
            }
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        pipeline = app.state.pipeline

        components = {
            "pipeline": pipeline is not None,
            "engine": bool(pipeline and pipeline.engine is not None),
            "event_logger": bool(pipeline and pipeline.event_logger is not None),
        }
        model_loaded = bool(pipeline and pipeline.engine and pipeline.engine.model is not None)

        return HealthResponse(
            status="healthy" if all(components.values()) else "degraded",
            timestamp=datetime.now().isoformat(),
            model_loaded=model_loaded,
            components=components
        )

    @app.post("/model", response_model=ModelResponse)
    async def load_model(definition: Dict[str, Any] = Body(...)):
        """Load a motion model definition (resets all tracks)."""
        pipeline = require_pipeline()

        if not pipeline.load_model(definition):
            raise HTTPException(status_code=422, detail="Invalid model definition")

        model = pipeline.engine.model
        return ModelResponse(
            status="loaded",
            name=model.name,
            states=len(model.states_list),
            transitions=len(model.transitions)
        )

    @app.post("/frames", response_model=FramesResponse)
    async def ingest_frames(payload: Dict[str, Any] = Body(...)):
        """Process one frame, or a batch given as ``{"frames": [...]}``."""
        pipeline = require_pipeline()

        if pipeline.engine.model is None:
            raise HTTPException(status_code=409, detail="No model loaded")

        raw_frames = payload.get("frames") if "frames" in payload else [payload]
        if not isinstance(raw_frames, list):
            raise HTTPException(status_code=400, detail="frames must be a list")

        try:
            frames = [Frame.from_dict(f) for f in raw_frames]
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid frame: {e}")

        result = None
        for frame in frames:
            result = pipeline.process_frame(frame)

        if result is None:
            return FramesResponse(processed=0, tracks=[], logs=[], timeline_events=[])

        output = result.to_dict()
        return FramesResponse(
            processed=len(frames),
            tracks=output["tracks"],
            logs=output["logs"],
            timeline_events=output["timelineEvents"]
        )

    @app.get("/tracks")
    async def get_tracks():
        """Get active tracks."""
        pipeline = require_pipeline()
        tracks = pipeline.get_tracks()
        return JSONResponse(content={"tracks": tracks, "count": len(tracks)})

    @app.get("/events", response_model=EventsResponse)
    async def get_events(
        since: Optional[float] = None,
        track_id: Optional[str] = None,
        limit: Optional[int] = 100
    ):
        """Get timeline events."""
        pipeline = require_pipeline()

        try:
            events = pipeline.event_logger.get_events(since=since, track_id=track_id, limit=limit)
            event_dicts = [event.to_dict() for event in events]

            return EventsResponse(
                events=event_dicts,
                total_count=len(event_dicts),
                since=since
            )

        except Exception as e:
            logger.error(f"Error retrieving events: {e}")
            raise HTTPException(status_code=500, detail="Error retrieving events")

    @app.get("/events/export")
    async def export_events(format: str = "json"):
        """Export events in specified format."""
        pipeline = require_pipeline()

        fmt = format.lower()
        if fmt not in ("csv", "json"):
            raise HTTPException(status_code=400, detail="Unsupported format")

        try:
            if fmt == "csv":
                return Response(
                    content=pipeline.event_logger.export("csv"),
                    media_type="text/csv",
                    headers={"Content-Disposition": "attachment; filename=events.csv"}
                )

            events = pipeline.event_logger.get_events()
            return JSONResponse(content=[event.to_dict() for event in events])

        except Exception as e:
            logger.error(f"Error exporting events: {e}")
            raise HTTPException(status_code=500, detail="Error exporting events")

    @app.get("/stats", response_model=StatisticsResponse)
    async def get_statistics():
        """Get pipeline statistics."""
        pipeline = require_pipeline()

        try:
            stats = pipeline.get_statistics()

            return StatisticsResponse(
                model=stats.get('model'),
                active_tracks=stats.get('active_tracks', 0),
                frames_processed=stats.get('frames_processed', 0),
                timeline_events=stats.get('timeline_events', 0),
                anomalies=stats.get('anomalies', 0),
                frame_count=stats.get('frame_count', 0),
                runtime=stats.get('runtime', 0.0),
                cycles=stats.get('cycles')
            )

        except (KeyError, TypeError, ValidationError) as e:
            logger.error(f"Error getting statistics: {e}")
            raise HTTPException(status_code=500, detail="Error getting statistics")

    @app.post("/control/reset")
    async def reset_tracking():
        """Reset tracking state."""
        pipeline = require_pipeline()
        pipeline.reset()

        return JSONResponse(content={
            "status": "reset",
            "message": "Tracking state reset successfully"
        })

    from fastapi.middleware.cors import CORSMiddleware

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    logger.info(f"API server created on port {port}")

    return app


def run_server(pipeline=None, host: str = "0.0.0.0", port: int = 8000) -> None:
    """
    Run the API server.

    Args:
        pipeline: Pipeline instance
        host: Server host
        port: Server port
    """
    app = create_api_server(pipeline, port)

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info"
    )
