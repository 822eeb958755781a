from enum import Enum
from dataclasses import dataclass
from datetime import datetime
import json


class EventType(str, Enum):
    # Tournament lifecycle
    TOURNAMENT_CREATED = "tournament.created"

    # State changes
    STATE_CHANGED = "state.changed"

    # Team events
    TEAM_REGISTERED = "team.registered"

    # Payment events
    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_ANOMALY = "payment.anomaly"

    # Match events
    MATCH_SCHEDULED = "match.scheduled"
    MATCH_UPDATED = "match.updated"


@dataclass
class Event:
    type: EventType
    tournament_id: str
    timestamp: str = None
    data: dict = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow().isoformat() + "Z"
        if self.data is None:
            self.data = {}

    def to_dict(self) -> dict:
        return {
            "type": self.type.value if isinstance(self.type, EventType) else self.type,
            "tournament_id": self.tournament_id,
            "timestamp": self.timestamp,
            "data": self.data
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            type=EventType(data["type"]) if data["type"] in [e.value for e in EventType] else data["type"],
            tournament_id=data["tournament_id"],
            timestamp=data.get("timestamp"),
            data=data.get("data", {})
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        return cls.from_dict(json.loads(json_str))


def state_changed_event(tournament_id: str, from_state: str, to_state: str, trigger: str = None) -> Event:
    return Event(
        type=EventType.STATE_CHANGED,
        tournament_id=tournament_id,
        data={
            "from_state": from_state,
            "to_state": to_state,
            "trigger": trigger
        }
    )


def team_registered_event(tournament_id: str, team_id: str, captain: str, registered_count: int) -> Event:
    return Event(
        type=EventType.TEAM_REGISTERED,
        tournament_id=tournament_id,
        data={
            "team_id": team_id,
            "captain": captain,
            "registered_count": registered_count
        }
    )


PAYMENT_EVENT_FOR_STATUS = {
    "pending": EventType.PAYMENT_INITIATED,
    "success": EventType.PAYMENT_SUCCEEDED,
    "failed": EventType.PAYMENT_FAILED,
    "refunded": EventType.PAYMENT_REFUNDED,
}


def payment_event(tournament_id: str, team_id: str, transaction_id: str, status: str, amount: float) -> Event:
    return Event(
        type=PAYMENT_EVENT_FOR_STATUS[status],
        tournament_id=tournament_id,
        data={
            "team_id": team_id,
            "transaction_id": transaction_id,
            "status": status,
            "amount": amount
        }
    )


def payment_anomaly_event(tournament_id: str, transaction_id: str, current: str, reported: str) -> Event:
    return Event(
        type=EventType.PAYMENT_ANOMALY,
        tournament_id=tournament_id,
        data={
            "transaction_id": transaction_id,
            "current_status": current,
            "reported_status": reported
        }
    )


def match_event(tournament_id: str, match_id: str, event_type: EventType, status: str,
                winner: str = None, score: dict = None) -> Event:
    return Event(
        type=event_type,
        tournament_id=tournament_id,
        data={
            "match_id": match_id,
            "status": status,
            "winner": winner,
            "score": score
        }
    )
