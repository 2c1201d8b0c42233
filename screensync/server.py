import time
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from typing import Optional
from .config import settings
from .engine import ReconciliationService
from .models import HealthStatus, ReconcileState, ReconciliationResult

app = FastAPI(title="Screen Sync")
service: Optional[ReconciliationService] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

def get_service() -> ReconciliationService:
    if service is None:
        raise HTTPException(status_code=503, detail="Service starting")
    return service

@app.get("/healthz")
def healthz():
    if not service:
        return {"status": "starting"}

    state = service.state.state
    if not settings.SWEEP_ENABLED or not state.last_sweep_started:
        return {"status": "ok"}
    # Lenient threshold: report lagging after three missed sweeps
    age = time.time() - state.last_successful_sweep
    if age > settings.SWEEP_INTERVAL_SECONDS * 3 + 60:
        return {"status": "lagging", "last_sweep_age": age}
    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    if not service:
        return {"status": "not_ready"}

    locations = service.state.state.locations.values()
    return {
        "tracked_locations": len(service.state.state.locations),
        "converged": sum(1 for s in locations if s.last_outcome == ReconcileState.CONVERGED),
        "degraded": sum(1 for s in locations if s.last_outcome == ReconcileState.DEGRADED),
        "last_sweep": service.state.state.last_successful_sweep,
        "config": {
            "sweep_interval": settings.SWEEP_INTERVAL_SECONDS,
            "max_concurrent": settings.MAX_CONCURRENT_RECONCILES,
            "baseline_source": settings.BASELINE_SOURCE,
        }
    }

@app.get("/locations/{location_id}/status", response_model=HealthStatus, dependencies=[Depends(get_token)])
async def location_status(location_id: str, live: bool = False):
    return await get_service().get_canonical_status(location_id, live=live)

@app.post("/locations/{location_id}/reconcile", response_model=ReconciliationResult, dependencies=[Depends(get_token)])
async def reconcile_location(location_id: str):
    return await get_service().reconcile(location_id)

@app.post("/locations/{location_id}/force-reset", response_model=ReconciliationResult, dependencies=[Depends(get_token)])
async def force_reset_location(location_id: str):
    return await get_service().force_reset(location_id)

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not service:
        return ""

    s = service.state.state
    snaps = list(s.locations.values())
    lines = [
        f'screensync_locations_tracked {len(snaps)}',
        f'screensync_locations_converged {sum(1 for x in snaps if x.last_outcome == ReconcileState.CONVERGED)}',
        f'screensync_locations_degraded {sum(1 for x in snaps if x.last_outcome == ReconcileState.DEGRADED)}',
        f'screensync_last_sweep_timestamp {s.last_successful_sweep}',
    ]
    return "\n".join(lines) + "\n"
