"""
Instance actors: single-writer owners of an agent's tables.
"""

from .instance import InstanceActor, MessageKind, Ticket, open_actor
from .remote import RemoteWatchBridge

__all__ = ["InstanceActor", "MessageKind", "Ticket", "open_actor", "RemoteWatchBridge"]
