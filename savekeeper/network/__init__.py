from savekeeper.network.message import MessageTypes, NetworkMessage
from savekeeper.network.server import SocketServer
from savekeeper.network.client import NetworkClient

__all__ = ["MessageTypes", "NetworkMessage", "SocketServer", "NetworkClient"]
