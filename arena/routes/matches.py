from flask import Blueprint, request, jsonify, current_app

bp = Blueprint('matches', __name__, url_prefix='/api/v1')


@bp.route('/tournaments/<tournament_id>/matches', methods=['GET'])
def list_matches(tournament_id: str):
    """List a tournament's matches, optionally filtered by status and round."""
    matches = current_app.matches.list_matches(
        tournament_id,
        status=request.args.get('status'),
        round_num=request.args.get('round')
    )
    return jsonify({
        'matches': [m.to_dict() for m in matches],
        'count': len(matches)
    })


@bp.route('/tournaments/<tournament_id>/matches', methods=['POST'])
def create_match(tournament_id: str):
    data = dict(request.json or {})
    created_by = data.pop('created_by', None)
    match = current_app.matches.create_match(tournament_id, data, created_by=created_by)
    return jsonify(match.to_dict()), 201


@bp.route('/matches/<match_id>', methods=['GET'])
def get_match(match_id: str):
    return jsonify(current_app.matches.get_match(match_id).to_dict())


@bp.route('/matches/<match_id>', methods=['PATCH'])
def update_match(match_id: str):
    match = current_app.matches.update_match(match_id, request.json or {})
    return jsonify(match.to_dict())


@bp.route('/matches/<match_id>/results', methods=['PATCH'])
def record_result(match_id: str):
    data = request.json or {}
    match = current_app.matches.record_result(
        match_id,
        team1_score=data.get('team1_score'),
        team2_score=data.get('team2_score'),
        winner=data.get('winner'),
        status=data.get('status')
    )
    return jsonify({'message': 'Match results updated', 'match': match.to_dict()})


@bp.route('/matches/<match_id>', methods=['DELETE'])
def delete_match(match_id: str):
    current_app.matches.delete_match(match_id)
    return jsonify({'message': 'Match deleted'})
