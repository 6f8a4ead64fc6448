import copy
from datetime import timedelta
from typing import List, Optional

from flask import current_app
from sqlalchemy import func

from weatherguessr import db
from weatherguessr.models import (
    GameInvitation,
    INVITE_EXPIRED,
    INVITE_PENDING,
    INVITE_TERMINAL,
    MultiplayerGame,
    OnlinePlayer,
    OPEN_SLOT,
    ROOM_NAMES,
    Room,
    utcnow,
)
from .game_state import normalize_game_state, normalize_name
from .realtime import RealtimeHub


class StaleWrite(Exception):
    """Raised when a game_state write does not advance the stored version."""

    def __init__(self, game_id, incoming: int, stored: int):
        super().__init__(f"game {game_id}: version {incoming} <= stored {stored}")
        self.game_id = game_id
        self.incoming = incoming
        self.stored = stored


class PresenceStore:
    table = 'online_players'

    def __init__(self, realtime: RealtimeHub):
        self.hub = realtime

    def upsert(self, username: str, is_available: bool = True) -> Optional[dict]:
        try:
            row = OnlinePlayer.query.get(username)
            event_type = 'UPDATE' if row else 'INSERT'
            if not row:
                row = OnlinePlayer(username=username)
            row.last_seen = utcnow()
            row.is_available = is_available
            db.session.add(row)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(f"[presence-upsert-failed] user={username} err={exc}")
            return None
        data = row.to_dict()
        self.hub.publish_change(self.table, event_type, new=data)
        return data

    def touch(self, username: str) -> bool:
        return self._update(username, last_seen=utcnow())

    def set_available(self, username: str, is_available: bool) -> bool:
        return self._update(username, is_available=is_available, last_seen=utcnow())

    def _update(self, username: str, **fields) -> bool:
        try:
            row = OnlinePlayer.query.get(username)
            if not row:
                return False
            for key, value in fields.items():
                setattr(row, key, value)
            db.session.add(row)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(f"[presence-update-failed] user={username} err={exc}")
            return False
        self.hub.publish_change(self.table, 'UPDATE', new=row.to_dict())
        return True

    def remove(self, username: str) -> bool:
        try:
            row = OnlinePlayer.query.get(username)
            if not row:
                return False
            old = row.to_dict()
            db.session.delete(row)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(f"[presence-remove-failed] user={username} err={exc}")
            return False
        self.hub.publish_change(self.table, 'DELETE', old=old)
        return True

    def list_online(self, exclude: Optional[str] = None, window_sec: int = 1800) -> List[dict]:
        cutoff = utcnow() - timedelta(seconds=window_sec)
        try:
            query = OnlinePlayer.query.filter(OnlinePlayer.last_seen >= cutoff)
            if exclude:
                query = query.filter(func.lower(OnlinePlayer.username) != normalize_name(exclude))
            rows = query.order_by(OnlinePlayer.last_seen.desc()).all()
        except Exception as exc:
            current_app.logger.error(f"[presence-list-failed] err={exc}")
            return []
        return [r.to_dict() for r in rows]


class InvitationStore:
    table = 'game_invitations'

    def __init__(self, realtime: RealtimeHub):
        self.hub = realtime

    def create(self, from_username: str, to_username: str, ttl_sec: int = 300) -> Optional[dict]:
        try:
            invitation = GameInvitation(
                from_username=from_username,
                to_username=to_username,
                status=INVITE_PENDING,
                expires_at=utcnow() + timedelta(seconds=ttl_sec),
            )
            db.session.add(invitation)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(f"[invite-create-failed] from={from_username} to={to_username} err={exc}")
            return None
        data = invitation.to_dict()
        self.hub.publish_change(self.table, 'INSERT', new=data)
        return data

    def get(self, invitation_id) -> Optional[dict]:
        try:
            invitation = GameInvitation.query.get(int(invitation_id))
        except (TypeError, ValueError):
            return None
        except Exception as exc:
            current_app.logger.error(f"[invite-get-failed] id={invitation_id} err={exc}")
            return None
        return invitation.to_dict() if invitation else None

    def expire_overdue(self) -> int:
        """Flip every overdue pending invitation to expired."""
        try:
            overdue = GameInvitation.query.filter(
                GameInvitation.status == INVITE_PENDING,
                GameInvitation.expires_at < utcnow(),
            ).all()
            for invitation in overdue:
                invitation.status = INVITE_EXPIRED
                db.session.add(invitation)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(f"[invite-expire-failed] err={exc}")
            return 0
        for invitation in overdue:
            self.hub.publish_change(self.table, 'UPDATE', new=invitation.to_dict())
        if overdue:
            current_app.logger.info(f"[invite-expire] count={len(overdue)}")
        return len(overdue)

    def pending_for(self, username: str) -> List[dict]:
        self.expire_overdue()
        try:
            rows = GameInvitation.query.filter(
                func.lower(GameInvitation.to_username) == normalize_name(username),
                GameInvitation.status == INVITE_PENDING,
                GameInvitation.expires_at >= utcnow(),
            ).order_by(GameInvitation.created_at.desc(), GameInvitation.id.desc()).all()
        except Exception as exc:
            current_app.logger.error(f"[invite-list-failed] user={username} err={exc}")
            return []
        return [r.to_dict() for r in rows]

    def respond(self, invitation_id, status: str) -> Optional[dict]:
        """Resolve a pending invitation.

        Returns the stored row afterwards; its status differs from the
        requested one when the invitation had already expired or been
        resolved. Returns None for unknown ids or store failures.
        """
        if status not in INVITE_TERMINAL:
            raise ValueError(f"invalid invitation status: {status}")
        try:
            invitation = GameInvitation.query.get(int(invitation_id))
            if not invitation:
                return None
            if invitation.status != INVITE_PENDING:
                return invitation.to_dict()
            if invitation.is_expired():
                invitation.status = INVITE_EXPIRED
            else:
                invitation.status = status
            db.session.add(invitation)
            db.session.commit()
        except (TypeError, ValueError):
            return None
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(f"[invite-respond-failed] id={invitation_id} err={exc}")
            return None
        data = invitation.to_dict()
        self.hub.publish_change(self.table, 'UPDATE', new=data)
        return data


class GameStore:
    table = 'multiplayer_games'

    def __init__(self, realtime: RealtimeHub):
        self.hub = realtime

    def create(self, player1: str, player2: str, game_state: dict) -> Optional[dict]:
        try:
            game = MultiplayerGame(
                player1=player1,
                player2=player2,
                current_round=1,
                player1_wins=0,
                player2_wins=0,
                game_state=game_state,
                status='active',
            )
            db.session.add(game)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(f"[game-create-failed] p1={player1} p2={player2} err={exc}")
            return None
        data = game.to_dict()
        current_app.logger.info(f"[game-create] game={game.id} p1={player1} p2={player2}")
        self.hub.publish_change(self.table, 'INSERT', new=data)
        return data

    def get(self, game_id) -> Optional[dict]:
        try:
            game = MultiplayerGame.query.get(int(game_id))
        except (TypeError, ValueError):
            return None
        except Exception as exc:
            current_app.logger.error(f"[game-get-failed] game={game_id} err={exc}")
            return None
        return game.to_dict() if game else None

    def save_state(self, game_id, game_state: dict, advance_round: bool = False) -> Optional[dict]:
        """Persist ``game_state`` if its version is newer than the stored one.

        Raises StaleWrite when the stored document is at the same or a
        later version; returns None on store failures.
        """
        try:
            game = MultiplayerGame.query.get(int(game_id))
            if not game:
                return None
            stored = normalize_game_state(game.game_state)['version']
            incoming = int(game_state.get('version') or 0)
            if incoming <= stored:
                current_app.logger.info(f"[stale-write] game={game.id} incoming={incoming} stored={stored}")
                raise StaleWrite(game.id, incoming, stored)
            game.game_state = copy.deepcopy(game_state)
            game.player1_wins = int(game_state.get('player1_wins') or 0)
            game.player2_wins = int(game_state.get('player2_wins') or 0)
            if advance_round:
                game.current_round = int(game.current_round or 1) + 1
            game.updated_at = utcnow()
            db.session.add(game)
            db.session.commit()
        except StaleWrite:
            db.session.rollback()
            raise
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(f"[game-save-failed] game={game_id} err={exc}")
            return None
        data = game.to_dict()
        self.hub.publish_change(self.table, 'UPDATE', new=data)
        return data

    def claim_open_slot(self, game_id, username: str) -> Optional[dict]:
        """Take player2 in a link-created game that is still waiting for one."""
        try:
            game = MultiplayerGame.query.get(int(game_id))
            if not game or game.player2 != OPEN_SLOT:
                return None
            game.player2 = username
            game.updated_at = utcnow()
            db.session.add(game)
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(f"[game-claim-failed] game={game_id} user={username} err={exc}")
            return None
        data = game.to_dict()
        current_app.logger.info(f"[game-claim] game={game.id} player2={username}")
        self.hub.publish_change(self.table, 'UPDATE', new=data)
        return data


class RoomStore:
    table = 'rooms'

    def list_rooms(self) -> List[dict]:
        """Fixed lobby rooms; rows missing from the table read as open."""
        try:
            by_name = {r.name: r.to_dict() for r in Room.query.all()}
        except Exception as exc:
            current_app.logger.warning(f"[rooms-unavailable] err={exc}")
            by_name = {}
        return [by_name.get(name) or {'name': name, 'status': 'open'} for name in ROOM_NAMES]
