"""Live chat: sessions, per-room pipelines and event fan-out.

Services:
    - SessionRegistry: live session to room mapping and presence.
    - RoomBroadcastRouter: routes inbound events and fans deliveries out.
"""
from .broadcast import RoomBroadcastRouter
from .registry import JoinState, Session, SessionRegistry

__all__ = ["JoinState", "RoomBroadcastRouter", "Session", "SessionRegistry"]
