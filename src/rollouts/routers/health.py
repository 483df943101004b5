from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint for monitoring API status and component readiness.

    Returns status of the API and the deployment ledger along with the
    deployment mode and the units that currently have a rollout in flight.
    """
    settings = request.app.state.settings
    machine = request.app.state.machine

    health_status = {
        "status": "ok",
        "deployment_mode": settings.deployment_mode,
        "components": {
            "api": "ready",
            "ledger": "initializing",
        },
        "in_flight": machine.in_flight(),
        "ready": False,
    }

    try:
        machine.ledger.unfinished()
        health_status["components"]["ledger"] = "ready"
    except Exception as e:
        health_status["components"]["ledger"] = f"error: {str(e)}"
        health_status["status"] = "degraded"

    health_status["ready"] = all(state == "ready" for state in health_status["components"].values())
    return health_status
