import json
from datetime import datetime
from typing import List

from flask_sqlalchemy import SQLAlchemy

from shared.state_machine import (
    TournamentState, TransactionState, PaymentStatus, TeamSize, MatchState, required_team_size
)

db = SQLAlchemy()


def enum_column(enum_cls, name: str, **kwargs):
    """Closed-set column storing the enum's value and rejecting anything else."""
    return db.Column(
        db.Enum(
            enum_cls,
            name=name,
            native_enum=False,
            validate_strings=True,
            values_callable=lambda e: [m.value for m in e],
            length=20,
        ),
        **kwargs
    )


def _iso(value):
    return value.isoformat() if value else None


class Tournament(db.Model):
    __tablename__ = 'tournaments'

    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    game = db.Column(db.String(100), nullable=True)
    description = db.Column(db.Text, default='')
    organizer_id = db.Column(db.String(100), nullable=True, index=True)
    status = enum_column(TournamentState, 'tournament_status', nullable=False,
                         default=TournamentState.DRAFT, index=True)

    start_date = db.Column(db.DateTime, nullable=True)
    registration_deadline = db.Column(db.DateTime, nullable=True)
    # Sweep completes the tournament once this passes
    end_date = db.Column(db.DateTime, nullable=True)

    max_teams = db.Column(db.Integer, nullable=False, default=16)
    team_size = enum_column(TeamSize, 'team_size', nullable=False, default=TeamSize.SQUAD)
    custom_team_size = db.Column(db.Integer, nullable=True)
    entry_fee = db.Column(db.Float, nullable=False, default=0)
    prize_pool = db.Column(db.String(100), nullable=True)

    # Capacity counter, only ever changed through a conditional UPDATE
    registered_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    teams = db.relationship('Team', back_populates='tournament', cascade='all, delete-orphan',
                            order_by='Team.registration_seq')
    matches = db.relationship('Match', back_populates='tournament', cascade='all, delete-orphan',
                              order_by='Match.match_number')

    __table_args__ = (
        db.CheckConstraint('registered_count <= max_teams', name='ck_capacity'),
    )

    @property
    def required_team_size(self) -> int:
        return required_team_size(self.team_size, self.custom_team_size)

    @property
    def requires_payment(self) -> bool:
        return (self.entry_fee or 0) > 0

    def validation_errors(self, now: datetime = None) -> List[str]:
        """Required-field checks a tournament must pass before it opens."""
        now = now or datetime.utcnow()
        errors = []
        if not self.name:
            errors.append('name is required')
        if not self.game:
            errors.append('game is required')
        if self.max_teams is None or self.max_teams < 2:
            errors.append('max_teams must be at least 2')
        if self.entry_fee is None or self.entry_fee < 0:
            errors.append('entry_fee must not be negative')
        try:
            self.required_team_size
        except ValueError as e:
            errors.append(str(e))
        if not self.start_date:
            errors.append('start_date is required')
        if not self.registration_deadline:
            errors.append('registration_deadline is required')
        if self.start_date and self.registration_deadline:
            if self.registration_deadline > self.start_date:
                errors.append('registration_deadline must not be after start_date')
            if self.registration_deadline <= now:
                errors.append('registration_deadline must be in the future')
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            errors.append('end_date must be after start_date')
        return errors

    def to_dict(self):
        return {
            'tournament_id': self.tournament_id,
            'name': self.name,
            'game': self.game,
            'description': self.description,
            'organizer_id': self.organizer_id,
            'status': self.status.value if self.status else None,
            'start_date': _iso(self.start_date),
            'registration_deadline': _iso(self.registration_deadline),
            'end_date': _iso(self.end_date),
            'max_teams': self.max_teams,
            'team_size': self.team_size.value if self.team_size else None,
            'custom_team_size': self.custom_team_size,
            'entry_fee': self.entry_fee,
            'prize_pool': self.prize_pool,
            'registered_count': self.registered_count,
            'registered_teams': [t.team_id for t in self.teams],
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Team(db.Model):
    __tablename__ = 'teams'

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    captain = db.Column(db.String(100), nullable=False)
    payment_status = enum_column(PaymentStatus, 'payment_status', nullable=False,
                                 default=PaymentStatus.PENDING)
    payment_transaction_id = db.Column(db.String(64), nullable=True)
    registration_seq = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tournament = db.relationship('Tournament', back_populates='teams')
    members = db.relationship('TeamMember', back_populates='team', cascade='all, delete-orphan')
    transactions = db.relationship('PaymentTransaction', back_populates='team')

    __table_args__ = (
        db.UniqueConstraint('tournament_id', 'registration_seq', name='unique_slot_per_tournament'),
    )

    @property
    def member_ids(self) -> List[str]:
        return [m.player_id for m in self.members if not m.is_captain]

    def to_dict(self):
        return {
            'team_id': self.team_id,
            'tournament_id': self.tournament.tournament_id if self.tournament else None,
            'name': self.name,
            'captain': self.captain,
            'members': self.member_ids,
            'payment_status': self.payment_status.value if self.payment_status else None,
            'payment_transaction_id': self.payment_transaction_id,
            'registration_seq': self.registration_seq,
            'created_at': _iso(self.created_at),
        }


class TeamMember(db.Model):
    """One row per player on a team, captain included."""
    __tablename__ = 'team_members'

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False)
    player_id = db.Column(db.String(100), nullable=False, index=True)
    is_captain = db.Column(db.Boolean, default=False)

    team = db.relationship('Team', back_populates='members')

    __table_args__ = (
        db.UniqueConstraint('tournament_id', 'player_id', name='unique_player_per_tournament'),
    )


class PaymentTransaction(db.Model):
    __tablename__ = 'payment_transactions'

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    status = enum_column(TransactionState, 'transaction_status', nullable=False,
                         default=TransactionState.PENDING, index=True)
    raw_gateway_payload = db.Column(db.Text, nullable=True)

    refund_id = db.Column(db.String(64), nullable=True)
    refund_amount = db.Column(db.Float, nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    team = db.relationship('Team', back_populates='transactions')

    @property
    def gateway_payload(self) -> dict:
        if not self.raw_gateway_payload:
            return {}
        return json.loads(self.raw_gateway_payload)

    def to_dict(self):
        return {
            'transaction_id': self.transaction_id,
            'team_id': self.team.team_id if self.team else None,
            'amount': self.amount,
            'status': self.status.value if self.status else None,
            'refund_id': self.refund_id,
            'refund_amount': self.refund_amount,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Match(db.Model):
    __tablename__ = 'matches'

    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.String(50), unique=True, nullable=False, index=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournaments.id'), nullable=False)
    match_number = db.Column(db.Integer, nullable=False)
    round_num = db.Column(db.Integer, nullable=False)

    team1_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    team2_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    winner_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=True)
    team1_score = db.Column(db.Integer, nullable=False, default=0)
    team2_score = db.Column(db.Integer, nullable=False, default=0)

    status = enum_column(MatchState, 'match_status', nullable=False,
                         default=MatchState.SCHEDULED, index=True)
    start_time = db.Column(db.DateTime, nullable=False, index=True)
    end_time = db.Column(db.DateTime, nullable=True)
    location = db.Column(db.String(200), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(100), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tournament = db.relationship('Tournament', back_populates='matches')
    team1 = db.relationship('Team', foreign_keys=[team1_id])
    team2 = db.relationship('Team', foreign_keys=[team2_id])
    winner = db.relationship('Team', foreign_keys=[winner_id])

    __table_args__ = (
        db.UniqueConstraint('tournament_id', 'match_number', name='unique_match_number_per_tournament'),
        db.CheckConstraint('team1_id <> team2_id', name='ck_distinct_sides'),
    )

    def to_dict(self):
        return {
            'match_id': self.match_id,
            'tournament_id': self.tournament.tournament_id if self.tournament else None,
            'match_number': self.match_number,
            'round': self.round_num,
            'team1': self.team1.team_id if self.team1 else None,
            'team2': self.team2.team_id if self.team2 else None,
            'winner': self.winner.team_id if self.winner else None,
            'score': {'team1': self.team1_score, 'team2': self.team2_score},
            'status': self.status.value if self.status else None,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'location': self.location,
            'notes': self.notes,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
