from flask import Blueprint, request, jsonify, current_app

bp = Blueprint('tournaments', __name__, url_prefix='/api/v1')


def _int_arg(name: str, default: int) -> int:
    return request.args.get(name, default, type=int)


# ==================== Tournament CRUD ====================

@bp.route('/tournaments', methods=['GET'])
def list_tournaments():
    """List tournaments with optional filtering."""
    limit = _int_arg('limit', 50)
    offset = _int_arg('offset', 0)
    tournaments = current_app.lifecycle.list_tournaments(
        status=request.args.get('status'),
        game=request.args.get('game'),
        organizer_id=request.args.get('organizer_id'),
        limit=limit,
        offset=offset
    )
    return jsonify({
        'tournaments': [t.to_dict() for t in tournaments],
        'count': len(tournaments),
        'limit': limit,
        'offset': offset
    })


@bp.route('/tournaments', methods=['POST'])
def create_tournament():
    data = dict(request.json or {})
    name = data.pop('name', None)
    organizer_id = data.pop('organizer_id', None)
    tournament = current_app.lifecycle.create_tournament(name, organizer_id=organizer_id, **data)
    return jsonify(tournament.to_dict()), 201


@bp.route('/tournaments/<tournament_id>', methods=['GET'])
def get_tournament(tournament_id: str):
    return jsonify(current_app.lifecycle.require_tournament(tournament_id).to_dict())


@bp.route('/tournaments/<tournament_id>', methods=['PATCH'])
def update_tournament(tournament_id: str):
    """Edit a draft tournament."""
    tournament = current_app.lifecycle.update_tournament(tournament_id, request.json or {})
    return jsonify(tournament.to_dict())


@bp.route('/tournaments/<tournament_id>', methods=['DELETE'])
def delete_tournament(tournament_id: str):
    current_app.lifecycle.delete_tournament(tournament_id)
    return jsonify({'message': 'Tournament deleted'})


# ==================== Tournament Lifecycle ====================

@bp.route('/tournaments/<tournament_id>/publish', methods=['POST'])
def publish_tournament(tournament_id: str):
    tournament = current_app.lifecycle.publish_tournament(tournament_id)
    return jsonify({'message': 'Tournament is open for registration', 'tournament': tournament.to_dict()})


@bp.route('/tournaments/<tournament_id>/cancel', methods=['POST'])
def cancel_tournament(tournament_id: str):
    tournament = current_app.lifecycle.cancel_tournament(tournament_id)
    return jsonify({'message': 'Tournament cancelled', 'tournament': tournament.to_dict()})


@bp.route('/tournaments/<tournament_id>/complete', methods=['POST'])
def complete_tournament(tournament_id: str):
    tournament = current_app.lifecycle.complete_tournament(tournament_id)
    return jsonify({'message': 'Tournament completed', 'tournament': tournament.to_dict()})


@bp.route('/tournaments/<tournament_id>/registration', methods=['GET'])
def registration_state(tournament_id: str):
    return jsonify({
        'tournament_id': tournament_id,
        'accepting_registrations': current_app.lifecycle.can_accept_registrations(tournament_id)
    })


@bp.route('/sweep', methods=['POST'])
def run_sweep():
    """Run the status sweep now (operator tool)."""
    result = current_app.sweeper.run_once()
    if result is None:
        return jsonify({'message': 'Sweep skipped or failed; see logs'}), 409
    return jsonify(result)


# ==================== Team Registration ====================

@bp.route('/tournaments/<tournament_id>/teams', methods=['GET'])
def list_teams(tournament_id: str):
    paid_only = request.args.get('paid_only', 'false').lower() == 'true'
    teams = current_app.admission.list_teams(tournament_id, paid_only=paid_only)
    return jsonify({
        'teams': [t.to_dict() for t in teams],
        'count': len(teams)
    })


@bp.route('/tournaments/<tournament_id>/teams', methods=['POST'])
def register_team(tournament_id: str):
    """Register a team for a tournament."""
    data = request.json or {}
    team = current_app.admission.register_team(
        tournament_id,
        captain=data.get('captain'),
        members=data.get('members', []),
        team_name=data.get('name')
    )
    tournament = team.tournament
    return jsonify({
        'message': 'Team registered',
        'team': team.to_dict(),
        'requires_payment': tournament.requires_payment,
        'entry_fee': tournament.entry_fee
    }), 201


@bp.route('/teams/<team_id>', methods=['GET'])
def get_team(team_id: str):
    return jsonify(current_app.admission.get_team(team_id).to_dict())


@bp.route('/players/<player_id>/teams', methods=['GET'])
def player_teams(player_id: str):
    teams = current_app.admission.teams_for_player(player_id)
    return jsonify({'player_id': player_id, 'teams': [t.to_dict() for t in teams]})
