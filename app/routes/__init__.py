from .session import session_bp

__all__ = ["session_bp"]
