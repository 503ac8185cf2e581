from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional


class SdpRequest(BaseModel):
    sdp: Optional[str] = None

class SignalResponse(BaseModel):
    sdp: str
    timestamp: int

class CandidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    candidate: Optional[Any] = None
    # "from" is a keyword, so the wire name lives in the alias
    sender: Optional[str] = Field(default=None, alias="from")

class CandidatesResponse(BaseModel):
    candidates: list[Any]

class EndRoomRequest(BaseModel):
    role: Optional[str] = None

class AckResponse(BaseModel):
    ok: bool = True

class EndRoomResponse(AckResponse):
    message: str

class RoomStatusResponse(BaseModel):
    room_id: str
    created_at: Optional[int]
    last_activity: Optional[int]
    expires_at: Optional[int]
    has_offer: bool
    has_answer: bool
    pending_host_candidates: int
    pending_guest_candidates: int
    host_last_seen: Optional[int] = None
    guest_last_seen: Optional[int] = None

class HealthResponse(BaseModel):
    status: str
    backend: str
