from .session_record import SessionRecord

__all__ = ["SessionRecord"]
