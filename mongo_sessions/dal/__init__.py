from .session_dal import SessionStore, context_id_for, ensure_indexes

__all__ = ["SessionStore", "context_id_for", "ensure_indexes"]
