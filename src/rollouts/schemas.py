####################################
# --- Request/response schemas --- #
####################################

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from rollouts.models import LedgerEntry, RolloutState


class StartRolloutRequest(BaseModel):
    """Request body for `POST /v1/rollouts`."""
    unit_id: str = Field(
        min_length=1,
        description="Deployable unit to roll out.",
        json_schema_extra={"example": "svc-a"},
    )
    artifact_ref: str = Field(
        min_length=1,
        description="Artifact to deploy (ECS task definition family:revision or ARN).",
        json_schema_extra={"example": "svc-a:42"},
    )
    size: Optional[int] = Field(default=None, ge=1, description="Targets in the candidate group.")


class RolloutResponse(BaseModel):
    """Response model for a single rollout."""
    rollout_id: str
    unit_id: str
    artifact_ref: str
    state: RolloutState
    active_group_id: Optional[str]
    candidate_group_id: Optional[str]
    traffic_split: float = Field(ge=0.0, le=1.0)
    target_count: int
    started_at: datetime
    last_transition_at: datetime
    attempts: int
    failure_reason: Optional[str]
    halted: bool
    error: Optional[str]
    candidate_health: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "rollout_id": "ro-0123456789ab",
                "unit_id": "svc-a",
                "artifact_ref": "svc-a:42",
                "state": "SHIFTING",
                "active_group_id": "grp-aaaaaaaaaaaa",
                "candidate_group_id": "grp-bbbbbbbbbbbb",
                "traffic_split": 0.5,
                "target_count": 2,
                "started_at": "2024-01-01T00:00:00Z",
                "last_transition_at": "2024-01-01T00:05:00Z",
                "attempts": 1,
                "failure_reason": None,
                "halted": False,
                "error": None,
                "candidate_health": "HEALTHY",
            }
        }
    )


class LedgerEntryResponse(BaseModel):
    sequence: Optional[int]
    rollout_id: str
    unit_id: str
    from_state: Optional[RolloutState]
    to_state: RolloutState
    timestamp: datetime
    detail: Dict[str, Any]

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "LedgerEntryResponse":
        return cls(**entry.to_dict())


class RolloutHistoryResponse(BaseModel):
    """Response model for `GET /v1/rollouts/{rollout_id}/history`."""
    rollout_id: str
    entries: List[LedgerEntryResponse]


class CancelRolloutResponse(BaseModel):
    """Response model for `POST /v1/rollouts/{rollout_id}/cancel`."""
    rollout_id: str
    accepted: bool
    state: RolloutState
