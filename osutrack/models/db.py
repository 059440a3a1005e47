"""SQLAlchemy database models for osu! stat snapshots and hiscores"""
import datetime

from sqlalchemy import (
    Column, Integer, SmallInteger, String, Float, DateTime, BigInteger, Boolean,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the form every DateTime column is stored in"""
    return datetime.datetime.now(datetime.UTC).replace(tzinfo=None)

class User(Base):
    """
    A tracked osu! user. The id is the osu! user id.
    first_update/last_update are the first and most recent times the user was polled.
    """
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=False)
    username = Column(String(15), nullable=False, index=True)
    first_update = Column(DateTime, nullable=False, default=utcnow)
    last_update = Column(DateTime, nullable=False, default=utcnow)

    updates = relationship('Update', back_populates='user', cascade='all, delete-orphan', passive_deletes=True)
    hiscores = relationship('Hiscore', back_populates='user', cascade='all, delete-orphan', passive_deletes=True)

class Update(Base):
    """
    A snapshot of a user's stats in one game mode at a point in time.
    Rows are only ever appended; anomaly marks a regression of a monotonic field.
    """
    __tablename__ = 'updates'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    mode = Column(SmallInteger, nullable=False)
    count300 = Column(Integer, nullable=False)
    count100 = Column(Integer, nullable=False)
    count50 = Column(Integer, nullable=False)
    playcount = Column(Integer, nullable=False)
    ranked_score = Column(BigInteger, nullable=False)
    total_score = Column(BigInteger, nullable=False)
    pp_rank = Column(Integer, nullable=False)
    level = Column(Float, nullable=False)
    pp_raw = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=False)
    count_rank_ss = Column(Integer, nullable=False)
    count_rank_s = Column(Integer, nullable=False)
    count_rank_a = Column(Integer, nullable=False)
    pp_country_rank = Column(Integer, nullable=False)
    update_time = Column(DateTime, nullable=False, default=utcnow)
    anomaly = Column(Boolean, nullable=False, default=False)
    anomaly_fields = Column(String(255), nullable=True)

    user = relationship('User', back_populates='updates')

    __table_args__ = (
        UniqueConstraint('user_id', 'mode', 'update_time', name='uq_updates_user_mode_time'),
        Index('ix_updates_user_mode_time', 'user_id', 'mode', 'update_time'),
    )

class Hiscore(Base):
    """
    A top play recorded for a user. History is kept; is_best marks the current best
    for its (user, beatmap, mode) and status records how the row was classified on ingestion.
    """
    __tablename__ = 'hiscores'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    mode = Column(SmallInteger, nullable=False)
    beatmap_id = Column(Integer, nullable=False)
    score = Column(BigInteger, nullable=False)
    pp = Column(Float, nullable=False, index=True)
    enabled_mods = Column(Integer, nullable=False)
    rank = Column(String(2), nullable=False)
    score_time = Column(DateTime, nullable=False)
    time_recorded = Column(DateTime, nullable=False, default=utcnow)
    status = Column(String(16), nullable=False)
    is_best = Column(Boolean, nullable=False, default=False)

    user = relationship('User', back_populates='hiscores')

    __table_args__ = (
        Index('ix_hiscores_user_map_mode', 'user_id', 'beatmap_id', 'mode'),
        Index('ix_hiscores_user_mode_recorded', 'user_id', 'mode', 'time_recorded'),
        # At most one current best per (user, beatmap, mode), across every writer
        Index(
            'uq_hiscores_current_best', 'user_id', 'beatmap_id', 'mode',
            unique=True,
            sqlite_where=is_best.is_(True),
            postgresql_where=is_best.is_(True)
        ),
    )

class Beatmap(Base):
    """Beatmap cache entry, avoids querying the osu! API for every score"""
    __tablename__ = 'beatmaps'

    beatmap_id = Column(Integer, primary_key=True, autoincrement=False)
    mode = Column(SmallInteger, nullable=False)
    beatmapset_id = Column(Integer, nullable=False)
    approved = Column(SmallInteger, nullable=False)
    approved_date = Column(DateTime, nullable=True)
    last_update = Column(DateTime, nullable=True)
    total_length = Column(Integer, nullable=False)
    hit_length = Column(Integer, nullable=False)
    version = Column(String(50), nullable=False)
    artist = Column(String(50), nullable=False)
    title = Column(String(50), nullable=False)
    creator = Column(String(50), nullable=False)
    bpm = Column(Float, nullable=False)
    source = Column(String(50), nullable=False)
    difficulty = Column(Float, nullable=False)
    diff_size = Column(Float, nullable=False)
    diff_overall = Column(Float, nullable=False)
    diff_approach = Column(Float, nullable=False)
    diff_drain = Column(Float, nullable=False)

class OnlineUsers(Base):
    """Number of users online in the game's chat at a point in time"""
    __tablename__ = 'online_users'

    time_recorded = Column(DateTime, primary_key=True, default=utcnow)
    users = Column(Integer, nullable=False)
    operators = Column(Integer, nullable=False)
    voiced = Column(Integer, nullable=False)
