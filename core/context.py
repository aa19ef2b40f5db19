"""
Construction of the client's session machinery.

Instead of a module level singleton, the owner of the application's
lifecycle builds one :class:`SessionContext` and hands it to whatever
needs it.  Tests build their own with fake collaborators.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core.services.api_gateway import ApiGateway
from core.services.session import SessionManager
from core.storage import CredentialStore, get_default_store


@dataclass
class SessionContext:
    store: CredentialStore
    gateway: ApiGateway
    manager: SessionManager


def build_session_context(
    store: Optional[CredentialStore] = None,
    gateway: Optional[ApiGateway] = None,
    **manager_options,
) -> SessionContext:
    """Wire store, gateway and session manager together.

    Missing collaborators come from settings: the store backend named in
    ``MAMACARE_SESSION['STORE_BACKEND']`` and a gateway built from
    ``MAMACARE_API``.  The manager registers itself with the gateway so
    that any 401/403 seen by the gateway invalidates the session.
    """
    store = store if store is not None else get_default_store()
    gateway = gateway if gateway is not None else ApiGateway.from_settings()
    manager = SessionManager(store, gateway, **manager_options)
    return SessionContext(store=store, gateway=gateway, manager=manager)
