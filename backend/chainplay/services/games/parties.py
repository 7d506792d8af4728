"""Parties: a fixed roster playing one chain per member at the same time.

Chains are created when the party activates, each starting with a different
roster member. After that every completed turn arrives here as a
TurnCompleted event and the next player is picked by the rotation engine.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from flask import current_app

from chainplay import db
from chainplay.errors import (
    ConflictError,
    ForbiddenError,
    InvalidPartySettings,
    NotPartyCreator,
    PartyNotFound,
    PartyNotOpen,
)
from chainplay.events import GameCompleted, TurnCompleted
from chainplay.models import Game, GameConfig, PlayerInSeason, Season, generate_season_id, utcnow
from chainplay.services import notifications
from chainplay.services.games import rotation, scheduler, turns
from chainplay.services.games.durations import parse_duration

ALGORITHMS = ('round-robin', 'algorithmic')
MAX_PARTY_PLAYERS = 50

# Distinguishes "leave the deadline alone" from "clear it"
_UNSET = object()


def get_party(season_id: str) -> Season:
    season = db.session.get(Season, season_id)
    if season is None:
        raise PartyNotFound()
    return season


def _check_limits(min_players: int, max_players: int) -> None:
    if min_players < 2 or max_players < min_players or max_players > MAX_PARTY_PLAYERS:
        raise InvalidPartySettings(
            f'Player limits must satisfy 2 <= min_players <= max_players <= {MAX_PARTY_PLAYERS}'
        )


def _require_manager(season: Season, user_id: Optional[str], admin_id: Optional[str] = None) -> None:
    """The creator manages a party; an admin may act in their place."""
    if admin_id is None and season.created_by != user_id:
        raise NotPartyCreator()


def party_chains(season_id: str) -> List[Game]:
    """Live chains of a party in creation order."""
    return (
        Game.query.filter(Game.season_id == season_id, Game.deleted_at.is_(None))
        .order_by(Game.created_at.asc(), Game.rotation_row.asc(), Game.id.asc())
        .all()
    )


def open_party(creator_id: str, title: str, min_players: int = 2, max_players: int = 12,
               start_deadline: Optional[datetime] = None, turn_passing_algorithm: str = 'algorithmic',
               is_lewd: bool = False, invited_player_ids: Iterable[str] = (),
               allow_player_invites: bool = False) -> Season:
    if not title or not title.strip():
        raise InvalidPartySettings('Party title is required')
    _check_limits(min_players, max_players)
    if turn_passing_algorithm not in ALGORITHMS:
        raise InvalidPartySettings(f'Unknown turn passing algorithm: {turn_passing_algorithm}')

    cfg = current_app.config
    for key in ('PARTY_WRITING_TIMEOUT', 'PARTY_DRAWING_TIMEOUT', 'PARTY_GAME_TIMEOUT'):
        parse_duration(cfg[key])

    now = utcnow()
    season_id = generate_season_id(now)
    config = GameConfig(
        id=season_id,
        min_turns=min_players,
        max_turns=max_players,
        writing_timeout=cfg['PARTY_WRITING_TIMEOUT'],
        drawing_timeout=cfg['PARTY_DRAWING_TIMEOUT'],
        game_timeout=cfg['PARTY_GAME_TIMEOUT'],
        is_lewd=bool(is_lewd),
    )
    season = Season(
        id=season_id,
        title=title.strip(),
        status='open',
        created_by=creator_id,
        created_at=now,
        start_deadline=start_deadline,
        min_players=min_players,
        max_players=max_players,
        turn_passing_algorithm=turn_passing_algorithm,
        allow_player_invites=bool(allow_player_invites),
        game_config=config,
    )
    season.players.append(PlayerInSeason(player_id=creator_id, invited_at=now, joined_at=now))
    invited = [p for p in dict.fromkeys(invited_player_ids) if p != creator_id]
    for player_id in invited:
        season.players.append(PlayerInSeason(player_id=player_id, invited_at=now))
    db.session.add(config)
    db.session.add(season)
    db.session.commit()
    current_app.logger.info(f"[party-open] party={season.id} creator={creator_id} invited={len(invited)}")

    for player_id in invited:
        notifications.notify_player(player_id, 'party_invitation', season_id=season.id, title=season.title)
    if start_deadline is not None:
        scheduler.schedule_party_deadline(season)
    return season


def accept_invitation(season_id: str, player_id: str) -> PlayerInSeason:
    season = get_party(season_id)
    if season.status != 'open':
        raise PartyNotOpen()
    membership = PlayerInSeason.query.filter_by(season_id=season.id, player_id=player_id).first()
    if membership is None:
        raise PartyNotFound('No invitation to this party')
    if membership.joined_at is not None:
        return membership
    if len(season.roster) >= season.max_players:
        raise ConflictError('Party is full')
    membership.joined_at = utcnow()
    db.session.commit()
    current_app.logger.info(f"[party-join] party={season.id} player={player_id} joined={len(season.roster)}")
    return membership


def admin_join_player(season_id: str, player_id: str, admin_id: str) -> PlayerInSeason:
    """Join a player directly, inviting them first when needed."""
    if not admin_id:
        raise ForbiddenError('Only an admin can join players to a party')
    season = get_party(season_id)
    if season.status != 'open':
        raise PartyNotOpen()
    membership = PlayerInSeason.query.filter_by(season_id=season.id, player_id=player_id).first()
    if membership is None:
        if len(season.roster) >= season.max_players:
            raise ConflictError('Party is full')
        season.players.append(PlayerInSeason(player_id=player_id, invited_at=utcnow()))
        db.session.commit()
    current_app.logger.info(f"[party-admin-join] party={season.id} player={player_id} admin={admin_id}")
    return accept_invitation(season.id, player_id)


def invite_players(season_id: str, inviting_player_id: Optional[str], player_ids: Iterable[str],
                   admin_id: Optional[str] = None) -> List[str]:
    """Invite more players to an open party. Returns the ids actually added.

    Joined members may invite when the party allows it; otherwise only the
    creator (or an admin) can.
    """
    season = get_party(season_id)
    if season.status != 'open':
        raise PartyNotOpen()
    if admin_id is None:
        inviter = PlayerInSeason.query.filter_by(season_id=season.id, player_id=inviting_player_id).first()
        if inviter is None or inviter.joined_at is None:
            raise ForbiddenError('Only joined members can invite players')
        if season.created_by != inviting_player_id and not season.allow_player_invites:
            raise NotPartyCreator('Only the party creator can invite players to this party')

    known = {p.player_id for p in season.players}
    added = [p for p in dict.fromkeys(player_ids) if p and p not in known]
    now = utcnow()
    for player_id in added:
        season.players.append(PlayerInSeason(player_id=player_id, invited_at=now))
    db.session.commit()
    current_app.logger.info(
        f"[party-invite] party={season.id} by={admin_id or inviting_player_id} invited={len(added)}"
    )
    for player_id in added:
        notifications.notify_player(player_id, 'party_invitation', season_id=season.id, title=season.title)
    return added


def update_party_settings(season_id: str, user_id: Optional[str], title: Optional[str] = None,
                          min_players: Optional[int] = None, max_players: Optional[int] = None,
                          start_deadline=_UNSET, turn_passing_algorithm: Optional[str] = None,
                          allow_player_invites: Optional[bool] = None,
                          admin_id: Optional[str] = None) -> Season:
    season = get_party(season_id)
    _require_manager(season, user_id, admin_id)
    if season.status != 'open':
        raise PartyNotOpen()

    if title is not None and not title.strip():
        raise InvalidPartySettings('Party title is required')
    new_min = season.min_players if min_players is None else min_players
    new_max = season.max_players if max_players is None else max_players
    _check_limits(new_min, new_max)
    if new_max < len(season.roster):
        raise InvalidPartySettings('max_players is below the number of joined players')
    if turn_passing_algorithm is not None and turn_passing_algorithm not in ALGORITHMS:
        raise InvalidPartySettings(f'Unknown turn passing algorithm: {turn_passing_algorithm}')

    if title is not None:
        season.title = title.strip()
    season.min_players = new_min
    season.max_players = new_max
    season.game_config.min_turns = new_min
    season.game_config.max_turns = new_max
    if turn_passing_algorithm is not None:
        season.turn_passing_algorithm = turn_passing_algorithm
    if allow_player_invites is not None:
        season.allow_player_invites = bool(allow_player_invites)
    deadline_changed = start_deadline is not _UNSET
    if deadline_changed:
        season.start_deadline = start_deadline
    db.session.commit()
    current_app.logger.info(
        f"[party-settings] party={season.id} by={admin_id or user_id} players={new_min}-{new_max} "
        f"algorithm={season.turn_passing_algorithm} deadline={season.start_deadline}"
    )

    if deadline_changed:
        if season.start_deadline is None:
            scheduler.cancel_party_deadline(season.id)
        else:
            scheduler.schedule_party_deadline(season)
    return season


def start_party(season_id: str, user_id: Optional[str], admin_id: Optional[str] = None) -> Season:
    season = get_party(season_id)
    if season.status != 'open':
        raise PartyNotOpen()
    _require_manager(season, user_id, admin_id)
    if len(season.roster) < 2:
        raise InvalidPartySettings('A party needs at least two joined players to start')
    _activate(season)
    return season


def activate_party_if_ready(season_id: str, now: Optional[datetime] = None) -> bool:
    season = db.session.get(Season, season_id)
    if season is None or season.status != 'open':
        current_app.logger.debug(f"[party-ready] party={season_id} not open")
        return False
    now = now or utcnow()
    joined = len(season.roster)
    if joined >= season.max_players:
        current_app.logger.info(f"[party-ready] party={season.id} max players reached ({joined})")
        _activate(season, now=now)
        return True
    deadline_passed = season.start_deadline is not None and season.start_deadline <= now
    if deadline_passed and joined >= season.min_players:
        current_app.logger.info(f"[party-ready] party={season.id} deadline passed with {joined} players")
        _activate(season, now=now)
        return True
    return False


def _activate(season: Season, now: Optional[datetime] = None) -> None:
    roster = season.roster
    n = len(roster)
    created_at = now or utcnow()
    season.status = 'active'
    first_turns = []
    for row, player_id in enumerate(roster):
        # Each player contributes exactly once per chain
        game = turns.build_game(
            season.game_config,
            season_id=season.id,
            created_at=created_at,
            rotation_row=row,
            min_turns=n,
            max_turns=n,
            game_timeout=current_app.config['PARTY_GAME_TIMEOUT'],
        )
        first_turns.append(turns.build_turn(player_id, game, created_at=created_at))
    db.session.commit()
    current_app.logger.info(f"[party-activate] party={season.id} players={n} algorithm={season.turn_passing_algorithm}")

    scheduler.cancel_party_deadline(season.id)
    for turn in first_turns:
        scheduler.schedule_game_expiration(turn.game)
        scheduler.schedule_turn_expiration(turn)
    for player_id in roster:
        notifications.notify_player(player_id, 'party_started', season_id=season.id, title=season.title)
    for turn in first_turns:
        notifications.notify_turn_assigned(turn)


def cancel_party(season_id: str, user_id: Optional[str], admin_id: Optional[str] = None) -> Season:
    season = get_party(season_id)
    _require_manager(season, user_id, admin_id)
    if season.status in ('completed', 'cancelled'):
        raise PartyNotOpen(f'Party is already {season.status}')
    game_ids = [g.id for g in party_chains(season.id)]
    for game_id in game_ids:
        turns.soft_delete_game(game_id)
    season.status = 'cancelled'
    db.session.commit()
    scheduler.cancel_party_deadline(season.id)
    current_app.logger.info(
        f"[party-cancel] party={season.id} by={admin_id or user_id} games_deleted={len(game_ids)}"
    )
    for player_id in season.roster:
        notifications.notify_player(player_id, 'party_cancelled', season_id=season.id, title=season.title)
    return season


def next_party_player(game: Game, season: Season, completed_player_id: str, completed_order_index: int) -> Optional[str]:
    roster = season.roster
    if season.turn_passing_algorithm == 'round-robin':
        return rotation.next_player_round_robin(completed_player_id, roster)
    context = rotation.TurnContext(
        game_id=game.id,
        season_id=season.id,
        completed_player_id=completed_player_id,
        completed_order_index=completed_order_index,
        row=game.rotation_row,
    )
    chains = [g.id for g in party_chains(season.id)]
    return rotation.next_player(context, roster, chains)


def handle_turn_completed(event: TurnCompleted) -> None:
    """Assign the next turn of a party chain. Never raises."""
    if not event.season_id:
        return
    try:
        _advance_chain(event)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.error(f"[rotation-failed] game={event.game_id} turn={event.turn_id} error={exc!r}")


def _advance_chain(event: TurnCompleted) -> None:
    game = db.session.get(Game, event.game_id)
    if game is None or game.completed_at is not None or game.deleted_at is not None:
        return
    season = game.season
    if season is None or season.status != 'active':
        current_app.logger.warning(f"[rotation-skip] game={game.id} party={event.season_id} not active")
        return
    roster = season.roster
    if not roster:
        current_app.logger.error(f"[rotation-skip] party={season.id} has no joined players")
        return

    if turns.count_completed_turns(game.id) >= len(roster):
        turns.complete_game(game.id)
        return

    next_player_id = next_party_player(game, season, event.player_id, event.order_index)
    if next_player_id is None:
        current_app.logger.info(f"[rotation-done] game={game.id} row exhausted")
        return
    turn = turns.create_turn(next_player_id, game)
    current_app.logger.info(f"[rotation] game={game.id} {event.player_id} -> {next_player_id} turn={turn.id}")
    notifications.notify_turn_assigned(turn)


def handle_game_completed(event: GameCompleted) -> None:
    if not event.season_id:
        return
    try:
        check_party_completion(event.season_id)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.error(f"[party-complete-failed] party={event.season_id} error={exc!r}")


def check_party_completion(season_id: str) -> bool:
    season = db.session.get(Season, season_id)
    if season is None or season.status != 'active':
        return False
    chains = party_chains(season.id)
    if not chains or any(g.completed_at is None for g in chains):
        return False
    season.status = 'completed'
    season.completed_at = utcnow()
    db.session.commit()
    current_app.logger.info(f"[party-complete] party={season.id} chains={len(chains)}")
    for player_id in season.roster:
        notifications.notify_player(player_id, 'party_completed', season_id=season.id, title=season.title)
    return True
