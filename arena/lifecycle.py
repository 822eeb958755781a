import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict

from .errors import ValidationError, NotFoundError, InvalidStateError
from .models import db, Tournament
from shared.state_machine import (
    TournamentStateMachine, TournamentState, TeamSize, TransitionError
)
from shared.events import Event, EventType, state_changed_event
from shared.pubsub import EventPublisher

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    'name', 'game', 'description', 'start_date', 'registration_deadline', 'end_date',
    'max_teams', 'team_size', 'custom_team_size', 'entry_fee', 'prize_pool',
}


def parse_datetime(value, field: str = 'date') -> Optional[datetime]:
    """Accept a datetime or an ISO-8601 string; aware values are normalised to naive UTC."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 datetime", field=field)
    else:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", field=field)

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def as_int(value, field: str, minimum: int = None) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field=field)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field=field)
    if minimum is not None and number < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", field=field)
    return number


def _as_amount(value, field: str) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if amount < 0:
        raise ValidationError(f"{field} must not be negative", field=field)
    return amount


class TournamentLifecycle:
    """
    Owns the tournament status field and the rules that move it:
    - organizer actions: create/update/delete drafts, publish, cancel, complete
    - admission hook: open -> full once the last slot is taken
    - sweep: open|full -> ongoing at start_date, ongoing -> completed at end_date
    - registration gate used by the admission service
    """

    def __init__(self, events: EventPublisher = None, default_duration_hours: int = 24):
        self.events = events or EventPublisher()
        self.default_duration = timedelta(hours=default_duration_hours)

    # ==================== Queries ====================

    def get_tournament(self, tournament_id: str) -> Optional[Tournament]:
        """Get tournament by its public ID, re-read from the store."""
        return (Tournament.query
                .execution_options(populate_existing=True)
                .filter_by(tournament_id=tournament_id)
                .first())

    def require_tournament(self, tournament_id: str) -> Tournament:
        tournament = self.get_tournament(tournament_id)
        if tournament is None:
            raise NotFoundError(f"Tournament {tournament_id} not found")
        return tournament

    def list_tournaments(
        self,
        status: str = None,
        game: str = None,
        organizer_id: str = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Tournament]:
        """List tournaments with optional filtering."""
        query = Tournament.query

        if status:
            try:
                query = query.filter(Tournament.status == TournamentState(status))
            except ValueError:
                raise ValidationError(f"Unknown status '{status}'", field='status')
        if game:
            query = query.filter_by(game=game)
        if organizer_id:
            query = query.filter_by(organizer_id=organizer_id)

        query = query.order_by(Tournament.created_at.desc(), Tournament.id.desc())
        return query.offset(offset).limit(limit).all()

    @staticmethod
    def accepts_registrations(tournament: Tournament, now: datetime = None) -> bool:
        now = now or datetime.utcnow()
        sm = TournamentStateMachine(tournament.status)
        if not sm.accepts_registrations:
            return False
        return tournament.registration_deadline is not None and now < tournament.registration_deadline

    def can_accept_registrations(self, tournament_id: str, now: datetime = None) -> bool:
        """True while the tournament is open and its registration deadline has not passed."""
        return self.accepts_registrations(self.require_tournament(tournament_id), now)

    # ==================== Organizer actions ====================

    def create_tournament(self, name: str, organizer_id: str = None, **fields) -> Tournament:
        """Create a new tournament in draft state."""
        if not name or not str(name).strip():
            raise ValidationError("Tournament name is required", field='name')

        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

        values = self._clean_fields(fields)
        values.setdefault('max_teams', 16)
        values.setdefault('team_size', TeamSize.SQUAD)
        values.setdefault('entry_fee', 0.0)

        tournament = Tournament(
            tournament_id=f"t_{uuid.uuid4().hex[:12]}",
            name=str(name).strip(),
            organizer_id=organizer_id,
            status=TournamentState.DRAFT,
            registered_count=0,
            **values
        )
        self._check_team_size(tournament)
        if tournament.start_date and not tournament.end_date:
            tournament.end_date = tournament.start_date + self.default_duration

        db.session.add(tournament)
        db.session.commit()
        logger.info("Created tournament %s (%s)", tournament.tournament_id, tournament.name)

        self.events.publish_tournament_event(
            tournament.tournament_id,
            Event(type=EventType.TOURNAMENT_CREATED, tournament_id=tournament.tournament_id,
                  data={'name': tournament.name, 'organizer_id': organizer_id})
        )
        return tournament

    def update_tournament(self, tournament_id: str, fields: Dict) -> Tournament:
        """Edit a draft tournament."""
        tournament = self.require_tournament(tournament_id)
        if tournament.status != TournamentState.DRAFT:
            raise InvalidStateError(
                f"Cannot edit tournament in {tournament.status.value} state",
                status=tournament.status.value
            )

        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        values = self._clean_fields(fields)
        if 'name' in values and not values['name']:
            raise ValidationError("Tournament name is required", field='name')
        for key, value in values.items():
            setattr(tournament, key, value)
        self._check_team_size(tournament)
        if 'start_date' in values and 'end_date' not in values and tournament.start_date:
            tournament.end_date = tournament.start_date + self.default_duration

        db.session.commit()
        return tournament

    def delete_tournament(self, tournament_id: str) -> None:
        """Delete a tournament (only allowed in draft state)."""
        tournament = self.require_tournament(tournament_id)
        if tournament.status != TournamentState.DRAFT:
            raise InvalidStateError("Can only delete tournaments in draft state",
                                    status=tournament.status.value)
        db.session.delete(tournament)
        db.session.commit()
        logger.info("Deleted tournament %s", tournament_id)

    def publish_tournament(self, tournament_id: str, now: datetime = None) -> Tournament:
        """Move tournament from draft to open once it passes required-field validation."""
        tournament = self.require_tournament(tournament_id)
        if tournament.status != TournamentState.DRAFT:
            raise InvalidStateError(
                f"Cannot publish tournament in {tournament.status.value} state",
                status=tournament.status.value
            )

        errors = tournament.validation_errors(now)
        if errors:
            raise ValidationError("Tournament is not ready to open", errors=errors)

        if tournament.end_date is None:
            tournament.end_date = tournament.start_date + self.default_duration
            db.session.flush()
        return self._transition(tournament, 'publish', {'errors': errors}, trigger='organizer')

    def cancel_tournament(self, tournament_id: str) -> Tournament:
        """Cancel any tournament that has not already finished."""
        tournament = self.require_tournament(tournament_id)
        return self._transition(tournament, 'cancel', trigger='organizer')

    def complete_tournament(self, tournament_id: str) -> Tournament:
        """Organizer-driven completion, ahead of the sweep's end_date rule."""
        tournament = self.require_tournament(tournament_id)
        return self._transition(tournament, 'complete', trigger='organizer')

    # ==================== Admission hook ====================

    def mark_full(self, tournament: Tournament) -> bool:
        """
        Conditionally move open -> full when every slot is taken.

        Runs inside the caller's transaction and does not commit; the caller
        announces the change once its own commit succeeds.
        """
        target = TournamentStateMachine(TournamentState.OPEN).target_of('fill')
        updated = Tournament.query.filter(
            Tournament.id == tournament.id,
            Tournament.status == TournamentState.OPEN,
            Tournament.registered_count >= Tournament.max_teams
        ).update({Tournament.status: target}, synchronize_session=False)
        return updated == 1

    def announce(self, tournament_id: str, from_state, to_state, trigger: str) -> None:
        self.events.publish_tournament_event(
            tournament_id,
            state_changed_event(tournament_id, _value(from_state), _value(to_state), trigger)
        )

    # ==================== Sweep ====================

    def advance_pending(self, now: datetime = None) -> Dict[str, int]:
        """
        Apply the time-driven transitions.

        Every row is moved with an UPDATE that repeats the status and date
        predicates, so a re-run or an overlapping writer leaves already
        migrated rows untouched.
        """
        now = now or datetime.utcnow()
        started = self._advance('start', Tournament.start_date <= now)
        completed = self._advance('complete', Tournament.end_date <= now)

        result = {'open_to_ongoing': started, 'ongoing_to_completed': completed}
        if started or completed:
            logger.info("Sweep at %s advanced tournaments: %s", now.isoformat(), result)
        return result

    def _advance(self, action: str, predicate) -> int:
        sources = TournamentStateMachine.sources_of(action)
        target = TournamentStateMachine(sources[0]).target_of(action)

        candidates = Tournament.query.filter(Tournament.status.in_(sources), predicate).all()
        moved = []
        for tournament in candidates:
            old_state = tournament.status
            updated = Tournament.query.filter(
                Tournament.id == tournament.id,
                Tournament.status == old_state,
                predicate
            ).update({Tournament.status: target}, synchronize_session=False)
            if updated:
                moved.append((tournament.tournament_id, old_state))
        db.session.commit()

        for tournament_id, old_state in moved:
            self.announce(tournament_id, old_state, target, trigger='sweep')
        return len(moved)

    # ==================== Internals ====================

    def _transition(self, tournament: Tournament, action: str, guard_context: dict = None,
                    trigger: str = None) -> Tournament:
        sm = TournamentStateMachine.from_state_string(tournament.status)
        old_state = sm.state
        try:
            new_state = sm.transition(action, guard_context)
        except TransitionError as e:
            raise InvalidStateError(str(e), status=old_state.value, action=action)

        # Conditional on the status we validated against
        updated = Tournament.query.filter(
            Tournament.id == tournament.id,
            Tournament.status == old_state
        ).update({Tournament.status: new_state}, synchronize_session=False)
        if not updated:
            db.session.rollback()
            raise InvalidStateError(
                f"Tournament {tournament.tournament_id} changed state concurrently",
                action=action
            )
        db.session.commit()
        db.session.refresh(tournament)

        logger.info("Tournament %s: %s -> %s (%s)",
                    tournament.tournament_id, old_state.value, new_state.value, trigger)
        self.announce(tournament.tournament_id, old_state, new_state, trigger)
        return tournament

    @staticmethod
    def _clean_fields(fields: Dict) -> Dict:
        values = {}
        for key, value in fields.items():
            if key in ('start_date', 'registration_deadline', 'end_date'):
                values[key] = parse_datetime(value, key)
            elif key == 'max_teams':
                values[key] = as_int(value, key, minimum=2)
            elif key == 'custom_team_size':
                values[key] = as_int(value, key, minimum=1)
            elif key == 'entry_fee':
                values[key] = _as_amount(value if value is not None else 0, key)
            elif key == 'team_size':
                try:
                    values[key] = TeamSize(value)
                except ValueError:
                    raise ValidationError(
                        f"team_size must be one of {', '.join(s.value for s in TeamSize)}",
                        field=key
                    )
            elif key in ('name', 'game'):
                values[key] = str(value).strip() if value is not None else None
            else:
                values[key] = value
        return values

    @staticmethod
    def _check_team_size(tournament: Tournament) -> None:
        try:
            tournament.required_team_size
        except ValueError as e:
            raise ValidationError(str(e), field='custom_team_size')


def _value(state) -> str:
    return state.value if isinstance(state, TournamentState) else str(state)
