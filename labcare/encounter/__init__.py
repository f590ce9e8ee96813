"""Encounter workflow: phases and desk sessions.

Import the state machine from ``labcare.encounter.machine``; the repository
imports this package, so it is not re-exported here.
"""

from labcare.encounter.state import Encounter, EncounterKind, EncounterPhase
from labcare.encounter.session import EncounterSession, TransitionGuard

__all__ = [
    "Encounter",
    "EncounterKind",
    "EncounterPhase",
    "EncounterSession",
    "TransitionGuard",
]
