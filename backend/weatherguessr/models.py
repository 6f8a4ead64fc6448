from weatherguessr import db
from datetime import datetime, timezone

ROOM_NAMES = ['Room 1', 'Room 2', 'Room 3', 'Room 4', 'Room 5']

INVITE_PENDING = 'pending'
INVITE_ACCEPTED = 'accepted'
INVITE_DECLINED = 'declined'
INVITE_EXPIRED = 'expired'
INVITE_TERMINAL = (INVITE_ACCEPTED, INVITE_DECLINED, INVITE_EXPIRED)

# Placeholder opponent for games created from a shareable link
OPEN_SLOT = 'TBD'


def utcnow():
    """Naive UTC timestamp; SQLite drops tzinfo so we never store it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


class OnlinePlayer(db.Model):
    __tablename__ = 'online_players'
    username = db.Column(db.String(64), primary_key=True)
    last_seen = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    is_available = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            'username': self.username,
            'last_seen': _iso(self.last_seen),
            'is_available': bool(self.is_available),
        }


class GameInvitation(db.Model):
    __tablename__ = 'game_invitations'
    id = db.Column(db.Integer, primary_key=True)
    from_username = db.Column(db.String(64), nullable=False, index=True)
    to_username = db.Column(db.String(64), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=INVITE_PENDING)  # pending, accepted, declined, expired
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)

    def is_expired(self, now=None):
        return self.expires_at <= (now or utcnow())

    def to_dict(self):
        return {
            'id': self.id,
            'from_username': self.from_username,
            'to_username': self.to_username,
            'status': self.status,
            'created_at': _iso(self.created_at),
            'expires_at': _iso(self.expires_at),
        }


class MultiplayerGame(db.Model):
    __tablename__ = 'multiplayer_games'
    id = db.Column(db.Integer, primary_key=True)
    player1 = db.Column(db.String(64), nullable=False)
    player2 = db.Column(db.String(64), nullable=False)
    current_round = db.Column(db.Integer, nullable=False, default=1)
    player1_wins = db.Column(db.Integer, nullable=False, default=0)
    player2_wins = db.Column(db.Integer, nullable=False, default=0)
    game_state = db.Column(db.JSON, nullable=True)
    status = db.Column(db.String(16), nullable=False, default='active')
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'player1': self.player1,
            'player2': self.player2,
            'current_round': self.current_round,
            'player1_wins': self.player1_wins,
            'player2_wins': self.player2_wins,
            'game_state': self.game_state,
            'status': self.status,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Room(db.Model):
    __tablename__ = 'rooms'
    name = db.Column(db.String(64), primary_key=True)
    status = db.Column(db.String(16), nullable=False, default='open')

    def to_dict(self):
        return {'name': self.name, 'status': self.status}
