"""Local language-server RPC: discovery and request encoding."""

from antiproxy.rpc.discovery import Discovery, LanguageServerInfo, StaticDiscovery
from antiproxy.rpc.encoder import ProtoRequestEncoder, RequestEncoder, SubmitFields

__all__ = [
    "Discovery",
    "LanguageServerInfo",
    "StaticDiscovery",
    "ProtoRequestEncoder",
    "RequestEncoder",
    "SubmitFields",
]
