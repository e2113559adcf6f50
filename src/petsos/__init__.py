from petsos.errors import Forbidden, InvalidArgument, InvalidState, NotFound, PetSOSError
from petsos.models import CaseStatus, Coordinates, DistressCase, ResponseMode
from petsos.system import PetEmergencySystem, build_system

__all__ = [
    "CaseStatus",
    "Coordinates",
    "DistressCase",
    "Forbidden",
    "InvalidArgument",
    "InvalidState",
    "NotFound",
    "PetEmergencySystem",
    "PetSOSError",
    "ResponseMode",
    "build_system",
]
