"""Server-side Sign-In with Ethereum: nonces, SIWE verification, ENS and audit events."""

from .config import Settings, load_settings
from .services.auth import LoginResult, SSXServer
from .services.ens import EnsData, EnsResolveOptions
from .services.event_publisher import AuditEvent, EventType
from .siwe import ErrorKind, SiweError, SiweMessage, generate_nonce

__all__ = [
    "AuditEvent",
    "EnsData",
    "EnsResolveOptions",
    "ErrorKind",
    "EventType",
    "LoginResult",
    "SSXServer",
    "Settings",
    "SiweError",
    "SiweMessage",
    "generate_nonce",
    "load_settings",
]
