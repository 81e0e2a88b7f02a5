from datetime import datetime, timezone

from crash_aim import db


def utcnow():
    # Stored naive in UTC so SQLite and Postgres compare the same way
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_epoch_ms(value):
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc).replace(tzinfo=None)


class Round(db.Model):
    __tablename__ = 'rounds'
    round_id = db.Column(db.String(64), primary_key=True)
    room = db.Column(db.String(64), nullable=False, index=True)
    start_at = db.Column(db.DateTime, nullable=False)
    end_at = db.Column(db.DateTime, nullable=False)
    max_time = db.Column(db.Integer, nullable=False)
    max_mult = db.Column(db.Float, nullable=False)
    target = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(16), default='running', nullable=False)  # running, finished
    results = db.relationship('RoundResult', backref='round', lazy='dynamic')

    @classmethod
    def from_params(cls, params):
        return cls(
            round_id=params.round_id,
            room=params.room,
            start_at=from_epoch_ms(params.start_at),
            end_at=from_epoch_ms(params.end_at),
            max_time=params.max_time_ms,
            max_mult=params.max_multiplier,
            target=params.target,
            status='running',
        )

    def matches(self, params):
        return (
            self.room == params.room
            and abs((self.start_at - from_epoch_ms(params.start_at)).total_seconds()) < 0.001
            and self.max_time == params.max_time_ms
            and abs(self.max_mult - params.max_multiplier) < 1e-9
            and abs(self.target - params.target) < 1e-9
        )

    def to_dict(self):
        return {
            'roundId': self.round_id,
            'room': self.room,
            'startAt': self.start_at.isoformat(),
            'endAt': self.end_at.isoformat(),
            'maxTime': self.max_time,
            'maxMult': self.max_mult,
            'target': self.target,
            'status': self.status,
        }


class RoundResult(db.Model):
    __tablename__ = 'round_results'
    __table_args__ = (db.UniqueConstraint('round_id', 'user_id', name='uq_round_results_round_user'),)
    id = db.Column(db.Integer, primary_key=True)
    round_id = db.Column(db.String(64), db.ForeignKey('rounds.round_id'), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(32), nullable=False)
    value = db.Column(db.Float, nullable=False)
    diff = db.Column(db.Float, nullable=False)
    score = db.Column(db.Integer, nullable=False, default=0)
    crashed = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    room = db.Column(db.String(64), nullable=False)

    def to_dict(self):
        return {
            'userId': self.user_id,
            'name': self.name,
            'value': self.value,
            'diff': self.diff,
            'score': self.score,
            'crashed': self.crashed,
        }


class Score(db.Model):
    __tablename__ = 'scores'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(32), nullable=False)
    score = db.Column(db.Integer, nullable=False, default=0)
    value = db.Column(db.Float, nullable=False)
    target = db.Column(db.Float, nullable=False)
    diff = db.Column(db.Float, nullable=False)
    crashed = db.Column(db.Boolean, nullable=False, default=False)
    room = db.Column(db.String(64), nullable=True, index=True)
    round_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'name': self.name,
            'score': self.score,
            'value': self.value,
            'target': self.target,
            'diff': self.diff,
            'crashed': self.crashed,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'room': self.room,
            'round_id': self.round_id,
        }
