from datetime import datetime, timezone

from flask import Blueprint, jsonify, request, current_app

from chainplay.errors import EngineError, GameNotFound, ValidationError
from chainplay.services.games import expirations, matcher, moderation, parties, turns


games = Blueprint('games', __name__)


@games.errorhandler(EngineError)
def handle_engine_error(error):
    if error.status_code >= 500:
        current_app.logger.error(f"[api-error] {type(error).__name__}: {error}")
    return jsonify(error.to_dict()), error.status_code


def _body():
    return request.get_json(silent=True) or {}


def _required(data, key):
    value = data.get(key)
    if value in (None, ''):
        raise ValidationError(f'{key} is required')
    return value


def _optional_bool(data, key):
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('1', 'true', 'yes')


def _parse_datetime(value):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid datetime: {value}')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@games.route('/turns', methods=['POST'])
def request_turn():
    data = _body()
    turn = matcher.find_or_create_turn(
        _required(data, 'player_id'),
        is_lewd=_optional_bool(data, 'is_lewd'),
        turn_type=data.get('turn_type'),
        season_id=data.get('season_id'),
    )
    return jsonify(turn.to_dict()), 201


@games.route('/turns/pending', methods=['GET'])
def pending_turns():
    player_id = _required(request.args, 'player_id')
    party_only = _optional_bool(request.args, 'party_only') or False
    return jsonify([t.to_dict() for t in moderation.find_pending_turns(player_id, party_only=party_only)])


@games.route('/turns/<string:turn_id>/complete', methods=['POST'])
def complete_turn(turn_id):
    data = _body()
    turn = turns.complete_turn(turn_id, _required(data, 'type'), data.get('content') or '')
    return jsonify(turn.to_dict())


@games.route('/turns/<string:turn_id>/flags', methods=['POST'])
def flag_turn(turn_id):
    data = _body()
    flag = moderation.flag_turn(
        turn_id,
        _required(data, 'player_id'),
        _required(data, 'reason'),
        data.get('explanation'),
    )
    return jsonify(flag.to_dict()), 201


@games.route('/flags/<int:flag_id>/confirm', methods=['POST'])
def confirm_flag(flag_id):
    flag = moderation.confirm_flag(flag_id, _body().get('admin_id'))
    return jsonify(flag.to_dict())


@games.route('/flags/<int:flag_id>/reject', methods=['POST'])
def reject_flag(flag_id):
    flag = moderation.reject_flag(flag_id, _body().get('admin_id'))
    return jsonify(flag.to_dict())


@games.route('/games/available', methods=['GET'])
def available_games():
    player_id = _required(request.args, 'player_id')
    return jsonify(matcher.available_game_types(player_id))


@games.route('/games/<string:game_id>', methods=['GET'])
def get_game(game_id):
    game = moderation.find_game_by_id(game_id)
    if game is None:
        raise GameNotFound()
    return jsonify(game.to_dict())


@games.route('/admin/games/<string:game_id>', methods=['GET'])
def get_game_admin(game_id):
    game = moderation.find_game_by_id_admin(game_id)
    if game is None:
        raise GameNotFound()
    return jsonify(game.to_dict(include_rejected=True))


@games.route('/admin/games/<string:game_id>/poster', methods=['POST'])
def set_poster(game_id):
    game = moderation.set_game_poster(game_id, _required(_body(), 'turn_id'))
    return jsonify({'id': game.id, 'poster_turn_id': game.poster_turn_id})


@games.route('/expirations/sweep', methods=['POST'])
def sweep_expirations():
    return jsonify(expirations.perform_expirations())


@games.route('/parties', methods=['POST'])
def open_party():
    data = _body()
    try:
        min_players = int(data.get('min_players', 2))
        max_players = int(data.get('max_players', 12))
    except (TypeError, ValueError):
        raise ValidationError('min_players and max_players must be integers')
    season = parties.open_party(
        _required(data, 'creator_id'),
        data.get('title') or '',
        min_players=min_players,
        max_players=max_players,
        start_deadline=_parse_datetime(data.get('start_deadline')),
        turn_passing_algorithm=data.get('turn_passing_algorithm') or 'algorithmic',
        is_lewd=bool(_optional_bool(data, 'is_lewd')),
        invited_player_ids=data.get('invited_player_ids') or [],
        allow_player_invites=bool(_optional_bool(data, 'allow_player_invites')),
    )
    return jsonify(season.to_dict()), 201


@games.route('/parties/<string:season_id>', methods=['GET'])
def get_party(season_id):
    season = parties.get_party(season_id)
    data = season.to_dict()
    data['games'] = [g.id for g in parties.party_chains(season.id)]
    return jsonify(data)


@games.route('/parties/<string:season_id>/join', methods=['POST'])
def join_party(season_id):
    membership = parties.accept_invitation(season_id, _required(_body(), 'player_id'))
    return jsonify(membership.to_dict())




def _actor(data):
    """(user_id, admin_id) of the caller; one of the two is required."""
    user_id = data.get('user_id')
    admin_id = data.get('admin_id')
    if not user_id and not admin_id:
        raise ValidationError('user_id is required')
    return user_id, admin_id


def _optional_int(data, key):
    value = data.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{key} must be an integer')


@games.route('/parties/<string:season_id>/invite', methods=['POST'])
def invite_to_party(season_id):
    data = _body()
    user_id, admin_id = _actor(data)
    player_ids = data.get('player_ids')
    if not isinstance(player_ids, list) or not player_ids:
        raise ValidationError('player_ids must be a non-empty list')
    added = parties.invite_players(season_id, user_id, player_ids, admin_id=admin_id)
    return jsonify({'season_id': season_id, 'invited': added})


@games.route('/parties/<string:season_id>/settings', methods=['POST'])
def update_party(season_id):
    data = _body()
    user_id, admin_id = _actor(data)
    options = {}
    if 'start_deadline' in data:
        options['start_deadline'] = _parse_datetime(data.get('start_deadline'))
    season = parties.update_party_settings(
        season_id,
        user_id,
        title=data.get('title'),
        min_players=_optional_int(data, 'min_players'),
        max_players=_optional_int(data, 'max_players'),
        turn_passing_algorithm=data.get('turn_passing_algorithm'),
        allow_player_invites=_optional_bool(data, 'allow_player_invites'),
        admin_id=admin_id,
        **options,
    )
    return jsonify(season.to_dict())


@games.route('/parties/<string:season_id>/start', methods=['POST'])
def start_party(season_id):
    user_id, admin_id = _actor(_body())
    season = parties.start_party(season_id, user_id, admin_id=admin_id)
    return jsonify(season.to_dict())


@games.route('/parties/<string:season_id>/cancel', methods=['POST'])
def cancel_party(season_id):
    user_id, admin_id = _actor(_body())
    season = parties.cancel_party(season_id, user_id, admin_id=admin_id)
    return jsonify(season.to_dict())


@games.route('/admin/parties/<string:season_id>/players', methods=['POST'])
def admin_join_party(season_id):
    data = _body()
    membership = parties.admin_join_player(season_id, _required(data, 'player_id'), _required(data, 'admin_id'))
    return jsonify(membership.to_dict())
