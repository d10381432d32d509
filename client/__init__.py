"""
client -- Async HTTP client side of SessionKeep.

ClientSessionGuard attaches bearer tokens, refreshes once on 401 no matter
how many requests failed together, and ends the local session when the
refresh itself fails.

Layer rule: no imports from api/, auth/ or core/. The client only speaks HTTP.
"""

from client.session_guard import ClientSessionGuard, GuardState, SessionExpiredError, TokenStorage
from client.singleflight import SingleFlight

__all__ = ["ClientSessionGuard", "GuardState", "SessionExpiredError", "SingleFlight", "TokenStorage"]
