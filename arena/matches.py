import logging
import uuid
from datetime import datetime
from typing import Dict, List

from sqlalchemy.exc import IntegrityError as StoreIntegrityError

from .errors import ValidationError, NotFoundError, ConflictError, InvalidStateError
from .lifecycle import TournamentLifecycle, parse_datetime, as_int
from .models import db, Tournament, Team, Match
from shared.state_machine import (
    TournamentState, MatchState, MatchStateMachine, PaymentStatus, TransitionError
)
from shared.events import EventType, match_event

logger = logging.getLogger(__name__)

SCHEDULABLE_STATES = (TournamentState.OPEN, TournamentState.FULL, TournamentState.ONGOING)

MATCH_FIELDS = {
    'match_number', 'round', 'team1', 'team2', 'start_time', 'end_time', 'location', 'notes',
}
REQUIRED_MATCH_FIELDS = ('match_number', 'round', 'team1', 'team2', 'start_time')


class MatchService:
    """
    Schedules matches between a tournament's teams and records their results.

    A match moves scheduled -> ongoing -> completed (or cancelled); completed
    and cancelled matches are frozen. Result writes are conditional on the
    status they were validated against.
    """

    def __init__(self, lifecycle: TournamentLifecycle):
        self.lifecycle = lifecycle
        self.events = lifecycle.events

    # ==================== Queries ====================

    def get_match(self, match_id: str) -> Match:
        match = (Match.query
                 .execution_options(populate_existing=True)
                 .filter_by(match_id=match_id)
                 .first())
        if match is None:
            raise NotFoundError(f"Match {match_id} not found")
        return match

    def list_matches(self, tournament_id: str, status: str = None, round_num=None) -> List[Match]:
        """Matches of a tournament in match-number order, optionally by status and round."""
        tournament = self.lifecycle.require_tournament(tournament_id)
        query = Match.query.filter_by(tournament_id=tournament.id)

        if status:
            try:
                query = query.filter(Match.status == MatchState(status))
            except ValueError:
                raise ValidationError(f"Unknown match status '{status}'", field='status')
        if round_num is not None and round_num != '':
            query = query.filter(Match.round_num == as_int(round_num, 'round', minimum=1))

        return query.order_by(Match.match_number).all()

    # ==================== Scheduling ====================

    def create_match(self, tournament_id: str, fields: Dict, created_by: str = None) -> Match:
        """Schedule a match between two teams registered in the tournament."""
        tournament = self.lifecycle.require_tournament(tournament_id)
        if tournament.status not in SCHEDULABLE_STATES:
            raise InvalidStateError(
                f"Cannot schedule matches while the tournament is {tournament.status.value}",
                status=tournament.status.value
            )

        self._check_known_fields(fields)
        missing = [f for f in REQUIRED_MATCH_FIELDS if fields.get(f) in (None, '')]
        if missing:
            raise ValidationError("All required fields must be provided", missing=missing)

        values = self._clean_fields(tournament, fields)
        self._check_sides(values['team1'], values['team2'])
        self._check_times(values['start_time'], values.get('end_time'))
        self._check_number_free(tournament, values['match_number'])

        match = Match(
            match_id=f"match_{uuid.uuid4().hex[:12]}",
            tournament_id=tournament.id,
            status=MatchState.SCHEDULED,
            created_by=created_by,
            **values
        )
        db.session.add(match)
        self._commit(values['match_number'])

        logger.info("Scheduled match %s (#%d, round %d) in %s",
                    match.match_id, match.match_number, match.round_num, tournament_id)
        self._announce(match, EventType.MATCH_SCHEDULED)
        return match

    def update_match(self, match_id: str, fields: Dict) -> Match:
        """Edit schedule details; results go through ``record_result``."""
        match = self.get_match(match_id)
        self._check_not_frozen(match)
        self._check_known_fields(fields)

        values = self._clean_fields(match.tournament, fields)
        for key in REQUIRED_MATCH_FIELDS:
            attr = 'round_num' if key == 'round' else key
            if attr in values and values[attr] is None:
                raise ValidationError(f"{key} cannot be cleared", field=key)
        if ('team1' in values or 'team2' in values) and match.status != MatchState.SCHEDULED:
            raise InvalidStateError("Teams can only be changed before the match starts",
                                    status=match.status.value)

        self._check_sides(values.get('team1', match.team1), values.get('team2', match.team2))
        self._check_times(values.get('start_time', match.start_time),
                          values.get('end_time', match.end_time))
        number = values.get('match_number')
        if number is not None and number != match.match_number:
            self._check_number_free(match.tournament, number)

        for key, value in values.items():
            setattr(match, key, value)
        self._commit(match.match_number)
        return match

    def delete_match(self, match_id: str) -> None:
        match = self.get_match(match_id)
        db.session.delete(match)
        db.session.commit()
        logger.info("Deleted match %s", match_id)

    # ==================== Results ====================

    def record_result(
        self,
        match_id: str,
        team1_score=None,
        team2_score=None,
        winner: str = None,
        status: str = None,
        now: datetime = None
    ) -> Match:
        """
        Update the score and optionally move the match on.

        Completing a match needs both scores and a winner that is one of
        the two teams. Scores may be posted without a status change while
        the match is scheduled or ongoing.
        """
        match = self.get_match(match_id)
        self._check_not_frozen(match)

        sm = MatchStateMachine.from_state_string(match.status)
        old_state = sm.state
        if status:
            try:
                target = MatchState(status)
            except ValueError:
                raise ValidationError(f"Unknown match status '{status}'", field='status')
            if target != old_state:
                try:
                    sm.transition(MatchStateMachine.ACTION_FOR_STATE.get(target, ''))
                except TransitionError as e:
                    raise InvalidStateError(str(e), status=old_state.value)

        values = {}
        if team1_score is not None:
            values[Match.team1_score] = as_int(team1_score, 'team1_score', minimum=0)
        if team2_score is not None:
            values[Match.team2_score] = as_int(team2_score, 'team2_score', minimum=0)

        if sm.state == MatchState.COMPLETED:
            if team1_score is None or team2_score is None or not winner:
                raise ValidationError(
                    "Both scores and a winner are required when completing a match"
                )
            if winner not in (match.team1.team_id, match.team2.team_id):
                raise ValidationError(f"Winner {winner} is not in this match", field='winner')
            values[Match.winner_id] = match.team1_id if winner == match.team1.team_id else match.team2_id
            if match.end_time is None:
                values[Match.end_time] = now or datetime.utcnow()
        elif winner:
            raise ValidationError("A winner can only be given when completing the match",
                                  field='winner')

        if not values and sm.state == old_state:
            raise ValidationError("Nothing to record")
        values[Match.status] = sm.state

        updated = Match.query.filter(
            Match.id == match.id,
            Match.status == old_state
        ).update(values, synchronize_session=False)
        if not updated:
            db.session.rollback()
            raise InvalidStateError(f"Match {match_id} changed state concurrently")
        db.session.commit()
        db.session.refresh(match)

        logger.info("Match %s: %s -> %s (%d-%d)", match_id, old_state.value, sm.state.value,
                    match.team1_score, match.team2_score)
        self._announce(match, EventType.MATCH_UPDATED)
        return match

    # ==================== Internals ====================

    @staticmethod
    def _commit(match_number: int) -> None:
        try:
            db.session.commit()
        except StoreIntegrityError:
            db.session.rollback()
            raise ConflictError(
                f"Match number {match_number} already exists in this tournament",
                match_number=match_number
            )

    def _announce(self, match: Match, event_type: EventType) -> None:
        tournament_id = match.tournament.tournament_id
        self.events.publish_tournament_event(
            tournament_id,
            match_event(tournament_id, match.match_id, event_type, match.status.value,
                        winner=match.winner.team_id if match.winner else None,
                        score={'team1': match.team1_score, 'team2': match.team2_score})
        )

    @staticmethod
    def _check_known_fields(fields: Dict) -> None:
        unknown = set(fields) - MATCH_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be set: {', '.join(sorted(unknown))}")

    @staticmethod
    def _check_not_frozen(match: Match) -> None:
        if MatchStateMachine(match.status).is_terminal:
            raise InvalidStateError(f"Match {match.match_id} is already {match.status.value}",
                                    status=match.status.value)

    @staticmethod
    def _check_sides(team1: Team, team2: Team) -> None:
        if team1.id == team2.id:
            raise ValidationError("A team cannot play against itself", field='team2')

    @staticmethod
    def _check_times(start_time: datetime, end_time: datetime) -> None:
        if end_time is not None and end_time < start_time:
            raise ValidationError("end_time must not be before start_time", field='end_time')

    @staticmethod
    def _check_number_free(tournament: Tournament, match_number: int) -> None:
        taken = Match.query.filter_by(tournament_id=tournament.id, match_number=match_number).count()
        if taken:
            raise ConflictError(
                f"Match number {match_number} already exists in this tournament",
                match_number=match_number
            )

    @staticmethod
    def _team(tournament: Tournament, team_id, field: str) -> Team:
        team = Team.query.filter_by(tournament_id=tournament.id, team_id=team_id).first()
        if team is None:
            raise NotFoundError(f"Team {team_id} is not registered in this tournament", field=field)
        # Only teams with a settled entry fee take part
        if team.payment_status != PaymentStatus.COMPLETED:
            raise InvalidStateError(f"Team {team_id} has not paid its entry fee", field=field)
        return team

    @classmethod
    def _clean_fields(cls, tournament: Tournament, fields: Dict) -> Dict:
        values = {}
        for key, value in fields.items():
            if key == 'match_number':
                values[key] = as_int(value, key, minimum=1)
            elif key == 'round':
                values['round_num'] = as_int(value, key, minimum=1)
            elif key in ('team1', 'team2'):
                values[key] = cls._team(tournament, value, key) if value is not None else None
            elif key in ('start_time', 'end_time'):
                values[key] = parse_datetime(value, key)
            else:
                values[key] = str(value).strip() if value is not None else None
        return values
