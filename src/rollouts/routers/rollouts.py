from fastapi import APIRouter, Path, Request, status

from rollouts.machine import RolloutStateMachine
from rollouts.schemas import (
    CancelRolloutResponse,
    LedgerEntryResponse,
    RolloutHistoryResponse,
    RolloutResponse,
    StartRolloutRequest,
)

router = APIRouter()


def get_machine(request: Request) -> RolloutStateMachine:
    return request.app.state.machine


@router.post("/rollouts", status_code=status.HTTP_201_CREATED, response_model=RolloutResponse)
async def start_rollout(request: Request, body: StartRolloutRequest):
    """
    Start a rollout of a new artifact for a deployable unit.

    Responds 409 when the unit already has a rollout in flight.
    """
    machine = get_machine(request)
    rollout = await machine.start(body.unit_id, body.artifact_ref, body.size)
    return RolloutResponse(**machine.status(rollout.id))


@router.get("/rollouts/{rollout_id}", response_model=RolloutResponse)
async def get_rollout(
    request: Request,
    rollout_id: str = Path(..., description="The rollout id"),
):
    """Current state, traffic split and candidate health of a rollout."""
    return RolloutResponse(**get_machine(request).status(rollout_id))


@router.get("/rollouts/{rollout_id}/history", response_model=RolloutHistoryResponse)
async def get_rollout_history(
    request: Request,
    rollout_id: str = Path(..., description="The rollout id"),
):
    """Ledger entries of a rollout in the order they were recorded."""
    entries = get_machine(request).history(rollout_id)
    return RolloutHistoryResponse(
        rollout_id=rollout_id,
        entries=[LedgerEntryResponse.from_entry(entry) for entry in entries],
    )


@router.post("/rollouts/{rollout_id}/cancel", response_model=CancelRolloutResponse)
async def cancel_rollout(
    request: Request,
    rollout_id: str = Path(..., description="The rollout id"),
):
    """
    Request rollback of a rollout.

    Accepted while the rollout is provisioning, health checking or shifting;
    `accepted` is false once it is draining or finished.
    """
    machine = get_machine(request)
    accepted = machine.cancel(rollout_id)
    return CancelRolloutResponse(
        rollout_id=rollout_id,
        accepted=accepted,
        state=machine.get(rollout_id).state,
    )
