"""Client side of the chat loop: transcript state plus a connection."""

from chatloop.client.chat_client import ChatClient
from chatloop.client.connections import Connection, EngineConnection, ServerSentEventsConnection

__all__ = ["ChatClient", "Connection", "EngineConnection", "ServerSentEventsConnection"]
