from datetime import timedelta

import pytest

from chainplay import db
from chainplay.errors import (
    EmptyContent,
    GameAlreadyCompleted,
    GameNotFound,
    TurnExpired,
    TurnNotFound,
    WrongTurnType,
)
from chainplay.models import Game, GameConfig, Turn, utcnow
from chainplay.services.games import matcher, moderation, turns


def _expire_turn(turn_id):
    turn = db.session.get(Turn, turn_id)
    turn.expires_at = utcnow() - timedelta(seconds=1)
    db.session.commit()


def test_first_turn_starts_a_game_with_its_own_config(flask_app):
    turn = matcher.find_or_create_turn('p1')
    game = db.session.get(Game, turn.game_id)

    assert turn.order_index == 0
    assert turn.is_drawing is False
    assert turn.id.startswith(f't_{game.id[2:]}_0_')
    assert game.id.startswith('g_')
    assert game.config_id == game.id
    assert game.config.max_turns == 4
    assert game.config.is_lewd is False
    assert turn.expires_at - turn.created_at == timedelta(minutes=2)
    assert game.expires_at - game.created_at == timedelta(days=1)


def test_turns_alternate_writing_and_drawing(flask_app, play):
    first = play('p1')
    second = matcher.find_or_create_turn('p2')
    assert second.game_id == first.game_id
    assert second.order_index == 1
    assert second.is_drawing is True
    assert second.expires_at - second.created_at == timedelta(minutes=5)

    turns.complete_turn(second.id, 'drawing', 'drawings/p2.png')
    third = matcher.find_or_create_turn('p3')
    assert third.game_id == first.game_id
    assert third.is_drawing is False


def test_complete_turn_validates_type_and_content(flask_app):
    turn = matcher.find_or_create_turn('p1')
    with pytest.raises(WrongTurnType):
        turns.complete_turn(turn.id, 'drawing', 'drawings/p1.png')
    with pytest.raises(EmptyContent):
        turns.complete_turn(turn.id, 'writing', '   ')

    done = turns.complete_turn(turn.id, 'writing', 'a cat in a hat')
    assert done.status == 'completed'
    assert done.content == 'a cat in a hat'
    assert done.expires_at is None

    with pytest.raises(TurnNotFound):
        turns.complete_turn(turn.id, 'writing', 'again')


def test_unknown_turn(flask_app):
    with pytest.raises(TurnNotFound):
        turns.complete_turn('t_nope_0_xxxx', 'writing', 'hello')


def test_completion_extends_game_expiry(flask_app, play):
    turn = play('p1')
    game = db.session.get(Game, turn.game_id)
    assert game.completed_at is None
    assert game.expires_at == turn.completed_at + timedelta(days=1)


def test_game_completes_when_max_turns_reached(flask_app, play):
    played = [play(f'p{i}') for i in range(1, 5)]
    game_id = played[0].game_id
    assert all(t.game_id == game_id for t in played)

    game = db.session.get(Game, game_id)
    assert game.completed_at == played[-1].completed_at
    assert game.completed_count == 4

    # A finished chain takes no more players
    fifth = matcher.find_or_create_turn('p5')
    assert fifth.game_id != game_id


def test_completed_game_rejects_further_completion(flask_app, play):
    turn = matcher.find_or_create_turn('p1')
    game = db.session.get(Game, turn.game_id)
    game.completed_at = utcnow()
    db.session.commit()
    with pytest.raises(GameAlreadyCompleted):
        turns.complete_turn(turn.id, 'writing', 'late')


def test_expired_first_turn_deletes_the_game(flask_app):
    turn = matcher.find_or_create_turn('p1')
    _expire_turn(turn.id)

    with pytest.raises(TurnExpired):
        turns.complete_turn(turn.id, 'writing', 'too late')

    game = moderation.find_game_by_id_admin(turn.game_id)
    assert game.deleted_at is not None
    assert moderation.find_game_by_id(game.id) is None
    assert Turn.query.filter_by(game_id=game.id).count() == 0


def test_expired_later_turn_frees_the_slot(flask_app, play):
    first = play('p1')
    second = matcher.find_or_create_turn('p2')
    _expire_turn(second.id)

    assert turns.delete_turn_if_expired(second.id) == 'turn-deleted'
    assert db.session.get(Turn, second.id) is None
    game = db.session.get(Game, first.game_id)
    assert game.deleted_at is None
    assert [t.id for t in game.turns] == [first.id]

    third = matcher.find_or_create_turn('p3')
    assert third.game_id == first.game_id
    assert third.order_index == 1
    assert third.id != second.id


def test_delete_turn_if_expired_is_idempotent(flask_app):
    turn = matcher.find_or_create_turn('p1')
    assert turns.delete_turn_if_expired(turn.id) == 'rescheduled'
    assert turns.delete_turn_if_expired('t_missing_0_abcd') == 'missing'

    turns.complete_turn(turn.id, 'writing', 'done')
    assert turns.delete_turn_if_expired(turn.id) == 'completed'


def test_complete_game_if_expired(flask_app, play):
    one = play('p1')
    assert turns.complete_game_if_expired(one.game_id) == 'rescheduled'

    later = utcnow() + timedelta(days=2)
    assert turns.complete_game_if_expired(one.game_id, now=later) == 'too-short'
    assert db.session.get(Game, one.game_id).completed_at is None

    play('p2')
    later = utcnow() + timedelta(days=2)
    assert turns.complete_game_if_expired(one.game_id, now=later) == 'expired'
    assert db.session.get(Game, one.game_id).completed_at == later
    assert turns.complete_game_if_expired(one.game_id, now=later) == 'completed'


def test_complete_game_is_idempotent(flask_app, play):
    turn = play('p1')
    game = turns.complete_game(turn.game_id)
    stamp = game.completed_at
    assert turns.complete_game(turn.game_id).completed_at == stamp


def test_game_without_max_turns_only_completes_on_expiry(flask_app, play):
    config = db.session.get(GameConfig, 'default')
    config.max_turns = None
    db.session.commit()

    for i in range(1, 7):
        last = play(f'p{i}')
    game = db.session.get(Game, last.game_id)
    assert game.completed_count == 6
    assert game.completed_at is None


def test_soft_delete_removes_pending_turns(flask_app, play):
    first = play('p1')
    pending = matcher.find_or_create_turn('p2')

    turns.soft_delete_game(first.game_id)

    game = moderation.find_game_by_id_admin(first.game_id)
    assert game.deleted_at is not None
    assert db.session.get(Turn, pending.id) is None
    assert db.session.get(Turn, first.id) is not None
    assert matcher.has_pending_turn('p2') is False


def test_rejected_turn_shifts_the_drawing_parity(flask_app, play):
    play('p1')
    drawing = play('p2')
    assert drawing.is_drawing is True

    flag = moderation.flag_turn(drawing.id, 'p3', 'offensive')
    moderation.confirm_flag(flag.id)

    # One non-rejected completed turn remains, so the next slot is a drawing
    # even though its position would normally be a writing
    nxt = matcher.find_or_create_turn('p4')
    assert nxt.game_id == drawing.game_id
    assert nxt.order_index == 2
    assert nxt.is_drawing is True
    turns.complete_turn(nxt.id, 'drawing', 'drawings/p4.png')

    game = db.session.get(Game, drawing.game_id)
    counted = [t for t in game.turns if t.completed_at and not t.rejected_at]
    for t in counted:
        earlier = [u for u in counted if u.order_index < t.order_index]
        assert t.is_drawing == (len(earlier) % 2 == 1)


def test_pending_turn_in_a_flagged_game_cannot_be_completed(flask_app, play):
    play('p1')
    pending = matcher.find_or_create_turn('p2')
    moderation.flag_turn(pending.id, 'p3', 'spam')
    assert moderation.find_game_by_id(pending.game_id) is None

    with pytest.raises(GameNotFound):
        turns.complete_turn(pending.id, 'drawing', 'drawings/p2.png')
    assert db.session.get(Turn, pending.id).completed_at is None


def test_rejected_pending_turn_cannot_be_completed(flask_app, play):
    play('p1')
    pending = matcher.find_or_create_turn('p2')
    flag = moderation.flag_turn(pending.id, 'p3', 'offensive')
    moderation.confirm_flag(flag.id)

    with pytest.raises(TurnNotFound):
        turns.complete_turn(pending.id, 'drawing', 'drawings/p2.png')
    # The rejected slot no longer blocks its player
    assert matcher.has_pending_turn('p2') is False


def test_deleted_game_reads_as_missing(flask_app):
    turn = matcher.find_or_create_turn('p1')
    turns.soft_delete_game(turn.game_id)
    with pytest.raises(TurnNotFound):
        turns.complete_turn(turn.id, 'writing', 'gone')
