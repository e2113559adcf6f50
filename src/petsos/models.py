from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaseStatus(str, Enum):
    PENDING = "pending"
    RESPONDED = "responded"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (CaseStatus.RESOLVED, CaseStatus.CANCELLED)

    @property
    def accepts_offers(self) -> bool:
        return self in (CaseStatus.PENDING, CaseStatus.RESPONDED)


class ResponseMode(str, Enum):
    RESPONDER_TRAVELS = "responder_travels"
    REPORTER_TRAVELS = "reporter_travels"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Coordinates":
        return cls(latitude=float(data["latitude"]), longitude=float(data["longitude"]))


@dataclass(frozen=True)
class Advisory:
    severity: str
    guidance: List[str]
    received_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "guidance": list(self.guidance),
            "received_at": self.received_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Advisory":
        return cls(
            severity=data["severity"],
            guidance=list(data.get("guidance", [])),
            received_at=datetime.fromisoformat(data["received_at"]),
        )


@dataclass
class ResponderOffer:
    responder_id: str
    mode: ResponseMode
    message: str = ""
    distance_meters: Optional[float] = None
    eta_minutes: Optional[float] = None
    submitted_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "responder_id": self.responder_id,
            "mode": self.mode.value,
            "message": self.message,
            "distance_meters": self.distance_meters,
            "eta_minutes": self.eta_minutes,
            "submitted_at": self.submitted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponderOffer":
        return cls(
            responder_id=data["responder_id"],
            mode=ResponseMode(data["mode"]),
            message=data.get("message", ""),
            distance_meters=data.get("distance_meters"),
            eta_minutes=data.get("eta_minutes"),
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
        )


@dataclass
class DistressCase:
    """One reported animal emergency.

    ``responses`` is keyed by responder id; dict insertion order is the
    arrival order of first offers and is kept when an offer is overwritten.
    """

    case_id: str
    reporter_id: str
    location: Coordinates
    description: str
    created_at: datetime = field(default_factory=utcnow)
    status: CaseStatus = CaseStatus.PENDING
    responses: Dict[str, ResponderOffer] = field(default_factory=dict)
    selected_responder_id: Optional[str] = None
    response_mode: Optional[ResponseMode] = None
    advisory: Optional[Advisory] = None
    live_locations: Dict[str, Coordinates] = field(default_factory=dict)
    sequence: int = 0
    updated_at: datetime = field(default_factory=utcnow)
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    def participants(self) -> List[str]:
        if self.selected_responder_id:
            return [self.reporter_id, self.selected_responder_id]
        return [self.reporter_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "case_id": self.case_id,
            "reporter_id": self.reporter_id,
            "location": self.location.to_dict(),
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "responses": [offer.to_dict() for offer in self.responses.values()],
            "selected_responder_id": self.selected_responder_id,
            "response_mode": self.response_mode.value if self.response_mode else None,
            "advisory": self.advisory.to_dict() if self.advisory else None,
            "live_locations": {actor: point.to_dict() for actor, point in self.live_locations.items()},
            "sequence": self.sequence,
            "updated_at": self.updated_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DistressCase":
        offers = [ResponderOffer.from_dict(item) for item in data.get("responses", [])]
        return cls(
            case_id=data["case_id"],
            reporter_id=data["reporter_id"],
            location=Coordinates.from_dict(data["location"]),
            description=data["description"],
            created_at=datetime.fromisoformat(data["created_at"]),
            status=CaseStatus(data["status"]),
            responses={offer.responder_id: offer for offer in offers},
            selected_responder_id=data.get("selected_responder_id"),
            response_mode=ResponseMode(data["response_mode"]) if data.get("response_mode") else None,
            advisory=Advisory.from_dict(data["advisory"]) if data.get("advisory") else None,
            live_locations={
                actor: Coordinates.from_dict(point) for actor, point in data.get("live_locations", {}).items()
            },
            sequence=int(data.get("sequence", 0)),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            closed_at=datetime.fromisoformat(data["closed_at"]) if data.get("closed_at") else None,
        )


@dataclass
class ResponderPresence:
    responder_id: str
    location: Optional[Coordinates] = None
    available: bool = False
    last_heartbeat: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "responder_id": self.responder_id,
            "location": self.location.to_dict() if self.location else None,
            "available": self.available,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponderPresence":
        return cls(
            responder_id=data["responder_id"],
            location=Coordinates.from_dict(data["location"]) if data.get("location") else None,
            available=bool(data.get("available", False)),
            last_heartbeat=datetime.fromisoformat(data["last_heartbeat"]) if data.get("last_heartbeat") else None,
        )


@dataclass(frozen=True)
class Match:
    case_id: str
    responder_id: str
    distance_meters: float
