from .codec import AttributeCodec, AttrKind, SerializerRegistry, decode_name, encode_name
from .dal.session_dal import SessionStore
from .db.store import DocumentStore, InMemoryDocumentStore
from .errors import (
    ConfigurationError,
    DecodingError,
    EncodingError,
    InvalidSessionError,
    SessionError,
    StoreUnavailable,
)
from .id_manager import SessionIdManager
from .manager import SessionManager
from .purger import SessionPurger
from .session import Session, SessionActivationListener, SessionBindingListener
from .settings import RefreshPolicy, SavePolicy

__all__ = [
    "AttrKind",
    "AttributeCodec",
    "ConfigurationError",
    "DecodingError",
    "DocumentStore",
    "EncodingError",
    "InMemoryDocumentStore",
    "InvalidSessionError",
    "RefreshPolicy",
    "SavePolicy",
    "SerializerRegistry",
    "Session",
    "SessionActivationListener",
    "SessionBindingListener",
    "SessionError",
    "SessionIdManager",
    "SessionManager",
    "SessionPurger",
    "SessionStore",
    "StoreUnavailable",
    "decode_name",
    "encode_name",
]
