import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from .database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String, default="host")

    sessions = relationship("WorkshopSession", back_populates="owner")


class WorkshopSession(Base):
    __tablename__ = "sessions"

    id = Column(String, primary_key=True, default=new_id)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    project_name = Column(String, nullable=False)
    title = Column(String, nullable=True)
    status = Column(String, nullable=False, default="open")  # open / playing / results
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("User", back_populates="sessions")
    features = relationship(
        "Feature",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="Feature.position",
    )
    players = relationship(
        "Player",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="Player.joined_at",
    )
    votes = relationship(
        "Vote", back_populates="session", cascade="all, delete-orphan"
    )


class Feature(Base):
    __tablename__ = "features"

    id = Column(String, primary_key=True, default=new_id)
    session_id = Column(
        String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    position = Column(Integer, nullable=False, default=0)
    title = Column(String, nullable=False)
    description = Column(String, nullable=True)
    effort = Column(Integer, nullable=True)
    impact = Column(Integer, nullable=True)
    reference_links = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)

    session = relationship("WorkshopSession", back_populates="features")


class Player(Base):
    __tablename__ = "players"

    id = Column(String, primary_key=True, default=new_id)
    session_id = Column(
        String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String, nullable=False)
    role = Column(String, nullable=True)
    joined_at = Column(DateTime, default=datetime.utcnow)

    session = relationship("WorkshopSession", back_populates="players")


class Vote(Base):
    __tablename__ = "votes"

    id = Column(String, primary_key=True, default=new_id)
    session_id = Column(
        String, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    player_id = Column(String, ForeignKey("players.id"), nullable=False)
    feature_id = Column(String, ForeignKey("features.id"), nullable=False)
    points_allocated = Column(Integer, nullable=False)
    note = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    session = relationship("WorkshopSession", back_populates="votes")
    player = relationship("Player")
    feature = relationship("Feature")
