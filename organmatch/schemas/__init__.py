from .donor import (
    BloodType,
    Donor,
    Location,
    MedicalHistory,
    OrganStatus,
    OrganType,
    Recipient,
    RecipientStatus,
    Urgency,
)
from .elevation import ElevationLevel, EmergencyElevation
from .match import (
    AnonymizedMatch,
    CandidateError,
    CompatibilityScore,
    DeathConfirmationSummary,
    Match,
    MatchCandidate,
    MatchState,
    Ranking,
    ScoreBreakdown,
    SkippedCandidate,
)
from .notification import Notification, NotificationKind, PartyType
