"""Authenticated multi-room chat session client."""

from .client import ChatClient
from .config import ClientConfig, ReconnectPolicy, load_client_config_from_env
from .connection import ConnectionCoordinator, ConnectionState
from .errors import (
    ChatClientError,
    CredentialError,
    CredentialRejected,
    NotConnectedError,
    RequestTimeout,
    RoomOperationError,
    SignOutRequired,
    TransportAuthError,
    TransportError,
)
from .media import MediaResolver
from .models import Attention, MediaRef, Message, MessageType, canonical_dm_room
from .presence import PresenceTracker
from .reconciler import DaySeparator, MessageRow, MessageStreamReconciler, ScrollCommand
from .rooms import Room, RoomSessionController
from .token_store import FileTokenStore, MemoryTokenStore, TokenPair
from .tokens import GraphQLTokenRefresher, TokenChange, TokenChangeKind, TokenLifecycleManager

__all__ = [
    "Attention",
    "ChatClient",
    "ChatClientError",
    "ClientConfig",
    "ConnectionCoordinator",
    "ConnectionState",
    "CredentialError",
    "CredentialRejected",
    "DaySeparator",
    "FileTokenStore",
    "GraphQLTokenRefresher",
    "MediaRef",
    "MediaResolver",
    "MemoryTokenStore",
    "Message",
    "MessageRow",
    "MessageStreamReconciler",
    "MessageType",
    "NotConnectedError",
    "PresenceTracker",
    "ReconnectPolicy",
    "RequestTimeout",
    "Room",
    "RoomOperationError",
    "RoomSessionController",
    "ScrollCommand",
    "SignOutRequired",
    "TokenChange",
    "TokenChangeKind",
    "TokenLifecycleManager",
    "TokenPair",
    "TransportAuthError",
    "TransportError",
    "canonical_dm_room",
    "load_client_config_from_env",
]
