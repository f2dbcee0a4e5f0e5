"""Interfaces to subsystems this core consumes but does not own."""

from typing import Protocol

from ..errors import NotFoundError
from .models import ActorIdentity, EmergencyProfile


class EmergencyProfileSource(Protocol):
    async def fetch_emergency_profile(self, patient_id: str) -> EmergencyProfile: ...


class ActorDirectory(Protocol):
    async def resolve_actor(self, actor_id: str) -> ActorIdentity | None: ...


class StaticProfileSource:
    """In-memory profile source for tests and local tooling."""

    def __init__(self, profiles: dict[str, EmergencyProfile] | None = None):
        self._profiles = dict(profiles or {})

    def add(self, profile: EmergencyProfile) -> None:
        self._profiles[profile.patient_id] = profile

    async def fetch_emergency_profile(self, patient_id: str) -> EmergencyProfile:
        try:
            return self._profiles[patient_id]
        except KeyError:
            raise NotFoundError(f"No emergency profile for patient {patient_id}") from None


class StaticActorDirectory:
    def __init__(self, actors: dict[str, ActorIdentity] | None = None):
        self._actors = dict(actors or {})

    def add(self, actor: ActorIdentity) -> None:
        self._actors[actor.actor_id] = actor

    async def resolve_actor(self, actor_id: str) -> ActorIdentity | None:
        return self._actors.get(actor_id)


async def describe_actor(directory: ActorDirectory | None, actor_id: str | None) -> dict[str, str]:
    """Audit metadata for an actor; empty when unknown or no directory is configured."""
    if directory is None or actor_id is None:
        return {}
    identity = await directory.resolve_actor(actor_id)
    if identity is None:
        return {}
    return {"actor_display": identity.display_name, "actor_role": identity.role}
