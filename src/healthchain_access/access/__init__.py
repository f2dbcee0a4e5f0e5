"""Patient-controlled access grants, temporary permissions and break-glass codes."""

from .authorization import Authorization
from .collaborators import (
    ActorDirectory,
    EmergencyProfileSource,
    StaticActorDirectory,
    StaticProfileSource,
)
from .emergency import EmergencySummaryHandle, EmergencyTokenService
from .grants import GrantStore
from .models import (
    DENIED,
    AccessDecision,
    AccessGrant,
    ActorIdentity,
    EmergencyAccessToken,
    EmergencyContact,
    EmergencyLevel,
    EmergencyProfile,
    EntityType,
    PermissionLevel,
    PermissionSource,
    TemporaryAccessPermission,
    TemporaryScope,
    TokenState,
)
from .sweeper import ExpirySweeper, SweepResult
from .temporary import TemporaryPermissionManager
from .tokens import TokenGenerator, hash_token

__all__ = [
    "DENIED",
    "AccessDecision",
    "AccessGrant",
    "ActorDirectory",
    "ActorIdentity",
    "Authorization",
    "EmergencyAccessToken",
    "EmergencyContact",
    "EmergencyLevel",
    "EmergencyProfile",
    "EmergencyProfileSource",
    "EmergencySummaryHandle",
    "EmergencyTokenService",
    "EntityType",
    "ExpirySweeper",
    "GrantStore",
    "PermissionLevel",
    "PermissionSource",
    "StaticActorDirectory",
    "StaticProfileSource",
    "SweepResult",
    "TemporaryAccessPermission",
    "TemporaryPermissionManager",
    "TemporaryScope",
    "TokenGenerator",
    "TokenState",
    "hash_token",
]
