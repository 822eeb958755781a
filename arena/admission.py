import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError as StoreIntegrityError, SQLAlchemyError

from .errors import (
    ValidationError, NotFoundError, ConflictError, CapacityExceededError, InvalidStateError
)
from .lifecycle import TournamentLifecycle
from .models import db, Tournament, Team, TeamMember
from shared.state_machine import TournamentState, PaymentStatus
from shared.events import team_registered_event

logger = logging.getLogger(__name__)


class RegistrationService:
    """
    Admits teams into tournaments.

    The capacity slot is taken with one conditional UPDATE on the tournament's
    counter; the team rows are written in the same transaction, so a failure
    anywhere after the reservation gives the slot back.
    """

    def __init__(self, lifecycle: TournamentLifecycle):
        self.lifecycle = lifecycle
        self.events = lifecycle.events

    def register_team(
        self,
        tournament_id: str,
        captain: str,
        members: List[str],
        team_name: str = None,
        now: datetime = None
    ) -> Team:
        """Register a team for a tournament."""
        now = now or datetime.utcnow()
        tournament = self.lifecycle.require_tournament(tournament_id)

        if self._at_capacity(tournament):
            raise CapacityExceededError("Tournament is full", max_teams=tournament.max_teams)
        if not self.lifecycle.accepts_registrations(tournament, now):
            raise InvalidStateError(self._closed_reason(tournament, now),
                                    status=tournament.status.value)

        roster = self._validate_roster(tournament, captain, members)
        self._check_not_registered(tournament, roster)

        try:
            seq = self._reserve_slot(tournament, now)

            team = Team(
                team_id=f"team_{uuid.uuid4().hex[:12]}",
                tournament_id=tournament.id,
                name=(team_name or '').strip() or f"Team {seq}",
                captain=roster[0],
                registration_seq=seq,
                payment_status=(PaymentStatus.PENDING if tournament.requires_payment
                                else PaymentStatus.COMPLETED),
            )
            db.session.add(team)
            for index, player_id in enumerate(roster):
                team.members.append(TeamMember(
                    tournament_id=tournament.id,
                    player_id=player_id,
                    is_captain=index == 0
                ))
            db.session.flush()

            became_full = seq >= tournament.max_teams and self.lifecycle.mark_full(tournament)
            db.session.commit()
        except StoreIntegrityError:
            # A concurrent registration claimed one of these players first
            db.session.rollback()
            raise ConflictError("A player on this team is already registered for this tournament")
        except (ConflictError, InvalidStateError):
            raise
        except SQLAlchemyError:
            db.session.rollback()
            raise

        logger.info("Registered team %s in %s (slot %d/%d)",
                    team.team_id, tournament_id, seq, tournament.max_teams)
        self.events.publish_tournament_event(
            tournament_id, team_registered_event(tournament_id, team.team_id, team.captain, seq)
        )
        if became_full:
            logger.info("Tournament %s is now full", tournament_id)
            self.lifecycle.announce(tournament_id, TournamentState.OPEN, TournamentState.FULL,
                                    trigger='admission')
        return team

    def get_team(self, team_id: str) -> Team:
        team = Team.query.filter_by(team_id=team_id).first()
        if team is None:
            raise NotFoundError(f"Team {team_id} not found")
        return team

    def list_teams(self, tournament_id: str, paid_only: bool = False) -> List[Team]:
        """Teams in registration order; ``paid_only`` hides teams still owing the entry fee."""
        tournament = self.lifecycle.require_tournament(tournament_id)
        query = Team.query.filter_by(tournament_id=tournament.id)
        if paid_only:
            query = query.filter(Team.payment_status == PaymentStatus.COMPLETED)
        return query.order_by(Team.registration_seq).all()

    def teams_for_player(self, player_id: str) -> List[Team]:
        return (Team.query
                .join(TeamMember, TeamMember.team_id == Team.id)
                .filter(TeamMember.player_id == player_id)
                .order_by(Team.created_at.desc())
                .all())

    # ==================== Internals ====================

    def _reserve_slot(self, tournament: Tournament, now: datetime) -> int:
        """Take one slot, conditioned at write time on status, deadline and capacity."""
        updated = Tournament.query.filter(
            Tournament.id == tournament.id,
            Tournament.status == TournamentState.OPEN,
            Tournament.registration_deadline > now,
            Tournament.registered_count < Tournament.max_teams
        ).update(
            {Tournament.registered_count: Tournament.registered_count + 1},
            synchronize_session=False
        )

        if updated != 1:
            db.session.rollback()
            current = self.lifecycle.get_tournament(tournament.tournament_id)
            if current is not None and current.status in (TournamentState.OPEN, TournamentState.FULL) \
                    and current.registered_count >= current.max_teams:
                logger.info("Registration for %s lost the race for the last slot",
                            tournament.tournament_id)
                raise CapacityExceededError("Tournament is full",
                                            max_teams=current.max_teams)
            raise InvalidStateError("Tournament is not open for registration")

        db.session.refresh(tournament)
        return tournament.registered_count

    @staticmethod
    def _at_capacity(tournament: Tournament) -> bool:
        if tournament.status == TournamentState.FULL:
            return True
        return tournament.status == TournamentState.OPEN and \
            tournament.registered_count >= tournament.max_teams

    @staticmethod
    def _closed_reason(tournament: Tournament, now: datetime) -> str:
        if tournament.status != TournamentState.OPEN:
            return f"Tournament is not open for registration (status: {tournament.status.value})"
        return "Registration deadline has passed"

    @staticmethod
    def _validate_roster(tournament: Tournament, captain: Optional[str], members) -> List[str]:
        if not isinstance(captain, str) or not captain.strip():
            raise ValidationError("captain is required", field='captain')
        if members is None:
            members = []
        if not isinstance(members, (list, tuple)):
            raise ValidationError("members must be a list of player ids", field='members')
        if any(not isinstance(m, str) or not m.strip() for m in members):
            raise ValidationError("members must be non-empty player ids", field='members')

        roster = [captain.strip()] + [m.strip() for m in members]
        required = tournament.required_team_size
        # The captain counts as one member
        if len(roster) != required:
            raise ValidationError(
                f"This tournament requires exactly {required} players per team (including captain)",
                required=required,
                provided=len(roster)
            )
        if len(set(roster)) != len(roster):
            raise ValidationError("A player cannot appear twice on the same team", field='members')
        return roster

    @staticmethod
    def _check_not_registered(tournament: Tournament, roster: List[str]) -> None:
        taken = TeamMember.query.filter(
            TeamMember.tournament_id == tournament.id,
            TeamMember.player_id.in_(roster)
        ).all()
        if taken:
            raise ConflictError(
                "A player on this team is already registered for this tournament",
                players=sorted({m.player_id for m in taken})
            )
