from datetime import timedelta

import pytest

from chainplay import db
from chainplay.errors import (
    ConflictError,
    ForbiddenError,
    InvalidPartySettings,
    NotPartyCreator,
    PartyNotFound,
    PartyNotOpen,
    RotationError,
)
from chainplay.models import Game, Turn, utcnow
from chainplay.services.games import expirations, matcher, moderation, parties, turns
from chainplay.services.games.rotation import rotation_matrix, string_to_seed


def _party(size, algorithm='algorithmic', **options):
    members = [f'm{i}' for i in range(1, size)]
    season = parties.open_party('m0', 'Friday night', min_players=2, max_players=max(size, 2),
                                turn_passing_algorithm=algorithm, invited_player_ids=members, **options)
    for player_id in members:
        parties.accept_invitation(season.id, player_id)
    return season


def _pending():
    return Turn.query.filter(Turn.completed_at.is_(None)).order_by(Turn.created_at, Turn.id).all()


def _play_out(limit=200):
    for _ in range(limit):
        pending = _pending()
        if not pending:
            return
        for turn_id, is_drawing in [(t.id, t.is_drawing) for t in pending]:
            turns.complete_turn(turn_id, 'drawing' if is_drawing else 'writing', f'content {turn_id}')
    raise AssertionError('party never finished')


def test_open_party_validates_settings(flask_app):
    with pytest.raises(InvalidPartySettings):
        parties.open_party('m0', '  ')
    with pytest.raises(InvalidPartySettings):
        parties.open_party('m0', 'Party', min_players=5, max_players=3)
    with pytest.raises(InvalidPartySettings):
        parties.open_party('m0', 'Party', turn_passing_algorithm='random')


def test_open_party_roster(flask_app):
    season = parties.open_party('m0', 'Party', invited_player_ids=['m1', 'm2', 'm0', 'm1'])
    assert season.id.startswith('s_')
    assert season.status == 'open'
    assert season.roster == ['m0']
    assert [p.player_id for p in season.players] == ['m0', 'm1', 'm2']
    assert season.game_config.writing_timeout == '7d'

    parties.accept_invitation(season.id, 'm2')
    assert db.session.get(type(season), season.id).roster == ['m0', 'm2']
    with pytest.raises(PartyNotFound):
        parties.accept_invitation(season.id, 'stranger')


def test_only_the_creator_starts(flask_app):
    season = _party(3)
    with pytest.raises(NotPartyCreator):
        parties.start_party(season.id, 'm1')
    lonely = parties.open_party('m9', 'Solo')
    with pytest.raises(InvalidPartySettings):
        parties.start_party(lonely.id, 'm9')


def test_activation_creates_one_chain_per_member(flask_app):
    season = _party(4)
    parties.start_party(season.id, 'm0')

    chains = parties.party_chains(season.id)
    assert season.status == 'active'
    assert len(chains) == 4
    assert [g.rotation_row for g in chains] == [0, 1, 2, 3]
    assert len({g.created_at for g in chains}) == 1
    for row, game in enumerate(chains):
        assert game.config.min_turns == 4
        assert game.config.max_turns == 4
        assert game.expires_at - game.created_at == timedelta(days=365)
        assert [t.player_id for t in game.turns] == [season.roster[row]]

    with pytest.raises(PartyNotOpen):
        parties.start_party(season.id, 'm0')
    with pytest.raises(PartyNotOpen):
        parties.accept_invitation(season.id, 'm1')


def test_completed_turn_passes_along_the_row(flask_app):
    season = _party(5)
    parties.start_party(season.id, 'm0')
    roster = season.roster
    matrix = rotation_matrix(roster, string_to_seed(season.id))

    chain = parties.party_chains(season.id)[2]
    first = chain.turns[0]
    turns.complete_turn(first.id, 'writing', 'a lighthouse')

    chain = db.session.get(Game, chain.id)
    assert [t.player_id for t in chain.turns] == [matrix[2][0], matrix[2][1]]
    assert chain.turns[1].is_drawing is True


def test_full_party_plays_every_member_once_per_chain(flask_app):
    season = _party(4)
    parties.start_party(season.id, 'm0')
    roster = season.roster
    matrix = rotation_matrix(roster, string_to_seed(season.id))

    for chain in parties.party_chains(season.id):
        assert moderation.find_game_by_id(chain.id) is None

    _play_out()

    season = parties.get_party(season.id)
    assert season.status == 'completed'
    assert season.completed_at is not None
    for chain in parties.party_chains(season.id):
        assert chain.completed_at is not None
        assert [t.player_id for t in chain.turns] == matrix[chain.rotation_row]
        assert moderation.find_game_by_id(chain.id) is not None


def test_round_robin_party(flask_app):
    season = _party(3, algorithm='round-robin')
    parties.start_party(season.id, 'm0')
    roster = season.roster

    _play_out()

    for chain in parties.party_chains(season.id):
        players = [t.player_id for t in chain.turns]
        start = roster.index(players[0])
        assert players == [roster[(start + i) % 3] for i in range(3)]
    assert parties.get_party(season.id).status == 'completed'


def test_rotation_failure_keeps_the_completed_turn(flask_app, monkeypatch):
    season = _party(4)
    parties.start_party(season.id, 'm0')
    chain = parties.party_chains(season.id)[0]
    first_id = chain.turns[0].id

    def broken(*args, **kwargs):
        raise RotationError('no next player')
    monkeypatch.setattr(parties, 'next_party_player', broken)

    done = turns.complete_turn(first_id, 'writing', 'still counted')
    assert done.status == 'completed'
    assert Turn.query.filter_by(game_id=chain.id).count() == 1


def test_open_matching_skips_party_chains(flask_app):
    season = parties.open_party('m0', 'Party')
    chain = turns.create_game(season.game_config, season_id=season.id)

    outsider = matcher.find_or_create_turn('outsider')
    assert outsider.game_id != chain.id

    member = matcher.find_or_create_turn('m0', season_id=season.id)
    assert member.game_id == chain.id


def test_deadline_activation(flask_app):
    deadline = utcnow() - timedelta(minutes=1)
    season = parties.open_party('m0', 'Party', min_players=2, max_players=5,
                                start_deadline=deadline, invited_player_ids=['m1'])
    assert parties.activate_party_if_ready(season.id) is False

    parties.accept_invitation(season.id, 'm1')
    summary = expirations.perform_expirations()
    assert summary['parties_activated'] == 1
    assert parties.get_party(season.id).status == 'active'


def test_full_roster_activates(flask_app):
    season = parties.open_party('m0', 'Pair', min_players=2, max_players=2, invited_player_ids=['m1'])
    parties.accept_invitation(season.id, 'm1')
    assert parties.activate_party_if_ready(season.id) is True
    assert len(parties.party_chains(season.id)) == 2


def test_cancel_party(flask_app):
    season = _party(3)
    parties.start_party(season.id, 'm0')
    with pytest.raises(NotPartyCreator):
        parties.cancel_party(season.id, 'm1')

    game_ids = [g.id for g in parties.party_chains(season.id)]
    parties.cancel_party(season.id, 'm0')

    assert parties.get_party(season.id).status == 'cancelled'
    assert parties.party_chains(season.id) == []
    for game_id in game_ids:
        assert db.session.get(Game, game_id).deleted_at is not None
    assert _pending() == []
    with pytest.raises(PartyNotOpen):
        parties.cancel_party(season.id, 'm0')


def test_invite_more_players(flask_app):
    season = parties.open_party('m0', 'Party', invited_player_ids=['m1'])
    added = parties.invite_players(season.id, 'm0', ['m2', 'm1', 'm3', 'm2'])
    assert added == ['m2', 'm3']
    assert [p.player_id for p in parties.get_party(season.id).players] == ['m0', 'm1', 'm2', 'm3']

    parties.accept_invitation(season.id, 'm3')
    assert parties.get_party(season.id).roster == ['m0', 'm3']


def test_only_allowed_members_invite(flask_app):
    season = parties.open_party('m0', 'Party', invited_player_ids=['m1', 'm2'])
    # Invited but not joined
    with pytest.raises(ForbiddenError):
        parties.invite_players(season.id, 'm1', ['m5'])

    parties.accept_invitation(season.id, 'm1')
    with pytest.raises(NotPartyCreator):
        parties.invite_players(season.id, 'm1', ['m5'])
    assert parties.invite_players(season.id, None, ['m5'], admin_id='admin-1') == ['m5']

    open_invites = parties.open_party('m0', 'Open invites', invited_player_ids=['m1'], allow_player_invites=True)
    parties.accept_invitation(open_invites.id, 'm1')
    assert parties.invite_players(open_invites.id, 'm1', ['m6']) == ['m6']


def test_invites_close_once_the_party_starts(flask_app):
    season = _party(2)
    parties.start_party(season.id, 'm0')
    with pytest.raises(PartyNotOpen):
        parties.invite_players(season.id, 'm0', ['late'])


def test_update_party_settings(flask_app):
    season = parties.open_party('m0', 'Party', invited_player_ids=['m1'])
    deadline = utcnow() + timedelta(days=1)

    updated = parties.update_party_settings(season.id, 'm0', title=' Renamed ', min_players=3, max_players=6,
                                            start_deadline=deadline, turn_passing_algorithm='round-robin',
                                            allow_player_invites=True)
    assert updated.title == 'Renamed'
    assert (updated.min_players, updated.max_players) == (3, 6)
    assert (updated.game_config.min_turns, updated.game_config.max_turns) == (3, 6)
    assert updated.start_deadline == deadline
    assert updated.turn_passing_algorithm == 'round-robin'
    assert updated.allow_player_invites is True

    # Omitted fields stay as they are; an explicit None clears the deadline
    parties.update_party_settings(season.id, 'm0', title='Again')
    assert parties.get_party(season.id).start_deadline == deadline
    parties.update_party_settings(season.id, 'm0', start_deadline=None)
    assert parties.get_party(season.id).start_deadline is None


def test_update_party_settings_validation(flask_app):
    season = parties.open_party('m0', 'Party', invited_player_ids=['m1', 'm2'])
    parties.accept_invitation(season.id, 'm1')
    parties.accept_invitation(season.id, 'm2')

    with pytest.raises(NotPartyCreator):
        parties.update_party_settings(season.id, 'm1', title='Mine now')
    with pytest.raises(InvalidPartySettings):
        parties.update_party_settings(season.id, 'm0', max_players=parties.MAX_PARTY_PLAYERS + 1)
    with pytest.raises(InvalidPartySettings):
        parties.update_party_settings(season.id, 'm0', min_players=1)
    with pytest.raises(InvalidPartySettings):
        parties.update_party_settings(season.id, 'm0', max_players=2)
    with pytest.raises(InvalidPartySettings):
        parties.update_party_settings(season.id, 'm0', turn_passing_algorithm='random')

    assert parties.update_party_settings(season.id, 'm1', title='By admin', admin_id='admin-1').title == 'By admin'

    parties.start_party(season.id, 'm0')
    with pytest.raises(PartyNotOpen):
        parties.update_party_settings(season.id, 'm0', title='Too late')


def test_open_party_caps_the_roster(flask_app):
    with pytest.raises(InvalidPartySettings):
        parties.open_party('m0', 'Crowd', max_players=parties.MAX_PARTY_PLAYERS + 1)


def test_admin_joins_a_player(flask_app):
    season = parties.open_party('m0', 'Party', min_players=2, max_players=3, invited_player_ids=['m1'])

    with pytest.raises(ForbiddenError):
        parties.admin_join_player(season.id, 'm1', None)

    parties.admin_join_player(season.id, 'm1', 'admin-1')
    parties.admin_join_player(season.id, 'walk-in', 'admin-1')
    assert parties.get_party(season.id).roster == ['m0', 'm1', 'walk-in']

    with pytest.raises(ConflictError):
        parties.admin_join_player(season.id, 'one-too-many', 'admin-1')


def test_admin_may_start_and_cancel(flask_app):
    season = _party(3)
    parties.start_party(season.id, None, admin_id='admin-1')
    assert parties.get_party(season.id).status == 'active'

    parties.cancel_party(season.id, 'm2', admin_id='admin-1')
    assert parties.get_party(season.id).status == 'cancelled'
