# FastAPI Web Server for the Drone Delivery Dashboard
# File: api_server.py

"""
Run with: uvicorn api_server:app --reload --port 8000
"""

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool
from typing import List, Optional
import asyncio
import threading
from datetime import datetime
import logging

from monitoring import SimulatorMetrics
from simulator import DroneStatus, SimulationConfig, SimulationContext

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"
STATUS_PUSH_SECONDS = 1.0

# WebSocket connection manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except (WebSocketDisconnect, RuntimeError):
                self.disconnect(connection)

# ============================================================================
# REQUEST MODELS
# ============================================================================

class DroneControlRequest(BaseModel):
    drone_id: str = Field(..., min_length=1)
    status: DroneStatus
    is_online: Optional[bool] = None
    battery: Optional[float] = Field(None, ge=0, le=100)
    duration_seconds: Optional[float] = Field(None, gt=0)

# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(context: Optional[SimulationContext] = None) -> FastAPI:
    """
    Build the API around a SimulationContext.

    When no context is given one is built from the environment at startup,
    so importing this module never opens a database connection.
    """
    app = FastAPI(
        title="Drone Delivery Telemetry API",
        description="Simulated drone telemetry with manual override control",
        version=API_VERSION
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.context = context
    app.state.monitor = SimulatorMetrics(context) if context else None
    app.state.start_timer = None
    app.state.connections = ConnectionManager()

    def ctx() -> SimulationContext:
        if app.state.context is None:
            raise HTTPException(status_code=503, detail="Simulator not initialized")
        return app.state.context

    def monitor() -> SimulatorMetrics:
        ctx()
        return app.state.monitor

    # ------------------------------------------------------------------------
    # LIFECYCLE EVENTS
    # ------------------------------------------------------------------------

    @app.on_event("startup")
    async def startup_event():
        if app.state.context is None:
            app.state.context = SimulationContext.from_config(SimulationConfig.from_env())
            app.state.monitor = SimulatorMetrics(app.state.context)

        app.state.monitor.start()

        config = app.state.context.config
        if config.auto_start:
            timer = threading.Timer(config.start_delay, app.state.context.simulator.start)
            timer.daemon = True
            timer.start()
            app.state.start_timer = timer

        logger.info("✅ Telemetry API Server Started")

    @app.on_event("shutdown")
    async def shutdown_event():
        if app.state.start_timer:
            app.state.start_timer.cancel()
        if app.state.context:
            app.state.context.simulator.stop()
            if app.state.context.publisher:
                app.state.context.publisher.flush(timeout=5)
                app.state.context.publisher.close()
        if app.state.monitor:
            app.state.monitor.stop()
        if app.state.context:
            app.state.context.store.close()
        logger.info("🛑 Telemetry API Server Stopped")

    # ------------------------------------------------------------------------
    # SIMULATOR ENDPOINTS
    # ------------------------------------------------------------------------

    @app.get("/api/simulator/status")
    def get_simulator_status():
        """Fleet snapshot and running state"""
        return ctx().simulator.get_status()

    @app.post("/api/simulator/start")
    def start_simulator():
        if not ctx().simulator.start():
            raise HTTPException(status_code=503, detail="Simulator failed to start")
        return {"status": "running", "message": "Auto simulation started"}

    @app.post("/api/simulator/stop")
    def stop_simulator():
        ctx().simulator.stop()
        return {"status": "stopped", "message": "Auto simulation stopped"}

    @app.post("/api/simulator/tick")
    def run_tick():
        """Run one tick immediately"""
        records = ctx().simulator.tick()
        return {"count": len(records), "records": [r.to_dict() for r in records]}

    # ------------------------------------------------------------------------
    # TELEMETRY ENDPOINTS
    # ------------------------------------------------------------------------

    @app.get("/api/telemetry")
    def list_telemetry(drone_id: Optional[str] = None, limit: int = Query(100, ge=1, le=1000)):
        """Newest-first telemetry records"""
        try:
            records = ctx().store.find_recent(drone_id, limit)
        except PyMongoError as e:
            raise HTTPException(status_code=503, detail=f"Telemetry store unavailable: {e}")
        return {"count": len(records), "records": [r.to_dict() for r in records]}

    @app.get("/api/telemetry/{drone_id}/latest")
    def latest_telemetry(drone_id: str):
        try:
            record = ctx().store.find_latest(drone_id)
        except PyMongoError as e:
            raise HTTPException(status_code=503, detail=f"Telemetry store unavailable: {e}")
        if record is None:
            raise HTTPException(status_code=404, detail="No telemetry for drone")
        return record.to_dict()

    # ------------------------------------------------------------------------
    # ADMIN DRONE CONTROL
    # ------------------------------------------------------------------------

    @app.post("/api/admin/drone-control")
    async def set_drone_status(request: DroneControlRequest):
        """Pin a drone's status; automatic simulation skips it until expiry"""
        try:
            result = await run_in_threadpool(
                ctx().control.set_status,
                request.drone_id,
                request.status,
                is_online=request.is_online,
                battery=request.battery,
                duration_seconds=request.duration_seconds,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except PyMongoError as e:
            logger.error(f"Drone control error: {e}")
            raise HTTPException(status_code=503, detail="Failed to update drone status")

        await app.state.connections.broadcast({"type": "override_update", **result})
        return result

    @app.get("/api/admin/drone-control")
    def get_drone_states(drone_id: Optional[str] = None):
        states = ctx().control.get_states(drone_id)
        if drone_id is not None:
            if not states:
                raise HTTPException(status_code=404, detail="No override state for drone")
            return {"success": True, **states[0]}
        return {"success": True, "states": states}

    @app.delete("/api/admin/drone-control/{drone_id}")
    def release_drone(drone_id: str):
        if not ctx().control.release(drone_id):
            raise HTTPException(status_code=404, detail="Drone is not under manual override")
        return {"success": True, "drone_id": drone_id, "override_active": False}

    # ------------------------------------------------------------------------
    # MONITORING
    # ------------------------------------------------------------------------

    @app.get("/api/monitoring/health")
    def monitoring_health():
        return monitor().health_monitor.get_health_status()

    @app.get("/api/monitoring/metrics")
    def monitoring_metrics():
        return monitor().get_dashboard_data()

    @app.get("/metrics", response_class=PlainTextResponse)
    def prometheus_metrics():
        return monitor().export_prometheus()

    # ------------------------------------------------------------------------
    # WEBSOCKET
    # ------------------------------------------------------------------------

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Push the fleet snapshot once per second"""
        manager = app.state.connections
        await manager.connect(websocket)

        try:
            while True:
                # get_status waits on the tick lock, which a slow write can hold
                status = await run_in_threadpool(ctx().simulator.get_status)
                await websocket.send_json({
                    "type": "simulator_update",
                    "timestamp": datetime.now().isoformat(),
                    "simulator": status,
                })
                # Doubles as the update interval and the disconnect check
                try:
                    await asyncio.wait_for(websocket.receive_text(), timeout=STATUS_PUSH_SECONDS)
                except asyncio.TimeoutError:
                    pass

        except WebSocketDisconnect:
            manager.disconnect(websocket)

    # ------------------------------------------------------------------------
    # HEALTH CHECK
    # ------------------------------------------------------------------------

    @app.get("/")
    def root():
        context = app.state.context
        return {
            "name": "Drone Delivery Telemetry API",
            "version": API_VERSION,
            "simulator": ("running" if context.simulator.is_running else "stopped") if context else "not_initialized",
            "docs": "/docs",
        }

    @app.get("/health")
    def health_check():
        return {
            "status": "healthy",
            "simulator_running": bool(app.state.context and app.state.context.simulator.is_running),
            "timestamp": datetime.now().isoformat()
        }

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
