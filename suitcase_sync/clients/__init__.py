# Client packages
from .server_session import ServerSession

__all__ = ['ServerSession']
