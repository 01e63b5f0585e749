from fastapi import APIRouter
from main import session_controller

router = APIRouter()


@router.get("/api/debug/speaker")
async def debug_speaker():
    engine = session_controller.engine
    return {
        "status": session_controller.status.value,
        "state": engine.debug_state(),
        "roster": [p.model_dump() for p in engine.participants],
        "pending_partials": sorted(session_controller.accumulator._pending.keys()),
        "timers": sorted(session_controller._timers.keys()),
        "raised_hands": len(session_controller.queue)
    }
