from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
from datetime import datetime
import enum
import uuid


class NotificationKind(str, enum.Enum):
    MATCH_FOUND = "match_found"
    MATCH_ACCEPTED = "match_accepted"
    MATCH_REJECTED = "match_rejected"
    MATCH_COMPLETED = "match_completed"


class PartyType(str, enum.Enum):
    RECIPIENT = "recipient"
    DONOR = "donor"
    RECIPIENT_HOSPITAL = "recipient_hospital"
    DONOR_HOSPITAL = "donor_hospital"


class Notification(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    match_id: uuid.UUID
    kind: NotificationKind
    party: PartyType
    address: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    delivered: bool = False
    attempts: int = 0
    error: Optional[str] = None
    created_at: datetime
    delivered_at: Optional[datetime] = None
    read: bool = False
    read_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
