from pydantic import BaseModel, Field
from typing import Optional, Dict
from datetime import datetime
import enum


class BloodType(str, enum.Enum):
    O_NEG = "O-"
    O_POS = "O+"
    A_NEG = "A-"
    A_POS = "A+"
    B_NEG = "B-"
    B_POS = "B+"
    AB_NEG = "AB-"
    AB_POS = "AB+"


class OrganType(str, enum.Enum):
    KIDNEY = "kidney"
    LIVER = "liver"
    HEART = "heart"
    LUNG = "lung"
    PANCREAS = "pancreas"
    INTESTINE = "intestine"
    CORNEA = "cornea"
    BONE_MARROW = "bone_marrow"


class OrganStatus(str, enum.Enum):
    REGISTERED = "registered"  # pledged, donor alive
    AVAILABLE = "available"
    CLAIMED = "claimed"
    DONATED = "donated"


class Urgency(str, enum.Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    CRITICAL = "critical"


class RecipientStatus(str, enum.Enum):
    WAITING = "waiting"
    MATCHED = "matched"
    TRANSPLANTED = "transplanted"


class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class MedicalHistory(BaseModel):
    chronic_disease: bool = False
    smoking_history: bool = False
    alcohol_history: bool = False


class Donor(BaseModel):
    id: str
    address: Optional[str] = None  # notification address
    hospital_id: Optional[str] = None
    organs: Dict[OrganType, OrganStatus] = Field(default_factory=dict)
    # Registry records may be incomplete; the ranker skips them.
    blood_type: Optional[BloodType] = None
    age: Optional[int] = Field(None, ge=0)
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    location: Optional[Location] = None
    medical_history: MedicalHistory = Field(default_factory=MedicalHistory)
    completed_donations: int = 0
    hospital_verifications: int = 0
    registered_at: datetime
    death_confirmed_at: Optional[datetime] = None
    death_certificate_hash: Optional[str] = None
    death_confirmed_by: Optional[str] = None

    def available_organs(self) -> list[OrganType]:
        return [organ for organ, state in self.organs.items() if state == OrganStatus.AVAILABLE]


class Recipient(BaseModel):
    id: str
    address: Optional[str] = None
    hospital_id: Optional[str] = None
    organ_needed: Optional[OrganType] = None
    blood_type: Optional[BloodType] = None
    age: Optional[int] = Field(None, ge=0)
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    location: Optional[Location] = None
    region: Optional[str] = None
    urgency: Urgency = Urgency.NORMAL
    status: RecipientStatus = RecipientStatus.WAITING
    registered_at: datetime
