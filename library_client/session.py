"""Session state: credential, identity and the login lifecycle."""
import logging
from typing import Callable, List, Optional

from library_client.async_client import AsyncLibraryClient
from library_client.credentials import CredentialStore
from library_client.errors import (
    AuthError,
    ConflictError,
    LibraryClientError,
    ValidationError,
)
from library_client.models import Identity, SessionState
from library_client.parse import parse_identity

logger = logging.getLogger(__name__)

Listener = Callable[[SessionState], None]


def landing_for(identity: Identity) -> str:
    """Where a freshly logged-in account should land."""
    return "/admin/dashboard" if identity.is_admin else "/dashboard"


def _email_taken(error: ValidationError) -> bool:
    messages = " ".join(error.fields.get("email", [])).lower()
    return any(word in messages for word in ("taken", "exists", "already"))


class SessionStore:
    """
    Single owner of the client's authentication state.

    Pass one instance to every consumer; nothing else writes the credential.
    Calls are expected to be serialized by the caller. If two overlap, the
    last one to resolve decides the state.
    """

    def __init__(self, api: AsyncLibraryClient, credentials: CredentialStore):
        """
        Args:
            api: Backend client used for the auth endpoints
            credentials: Durable storage for the bearer credential
        """
        self._api = api
        self._credentials = credentials
        self._credential: Optional[str] = None
        self._identity: Optional[Identity] = None
        self._state = SessionState.RESTORING
        self._listeners: List[Listener] = []

    @property
    def credential(self) -> Optional[str]:
        return self._credential

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Call ``listener`` with the new state after every transition.

        Returns:
            Function that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def require_credential(self) -> str:
        """Current credential, or AuthError when logged out."""
        if self._credential is None:
            raise AuthError("not authenticated")
        return self._credential

    def _transition(self, state: SessionState):
        previous, self._state = self._state, state
        if previous is not state:
            logger.info(f"Session {previous.value} -> {state.value}")
            for listener in list(self._listeners):
                listener(state)

    def _set_authenticated(self, token: str, identity: Identity):
        self._credential = token
        self._identity = identity
        self._transition(SessionState.AUTHENTICATED)

    def _set_anonymous(self, forget: bool = True):
        self._credential = None
        self._identity = None
        if forget:
            self._credentials.clear()
        self._transition(SessionState.ANONYMOUS)

    async def _fetch_identity(self, token: str) -> Identity:
        payload = await self._api.me(token)
        try:
            return parse_identity(payload)
        except (TypeError, ValueError) as e:
            raise LibraryClientError(f"Malformed identity response: {e}") from e

    async def restore(self) -> SessionState:
        """
        Resume the session from the persisted credential.

        Never raises for a missing or rejected credential: any failure drops
        the stored credential and leaves the session anonymous.
        """
        token = self._credentials.load()
        if not token:
            self._set_anonymous(forget=False)
            return self._state

        try:
            identity = await self._fetch_identity(token)
        except LibraryClientError as e:
            logger.warning(f"Could not restore session, continuing logged out: {e}")
            self._set_anonymous()
            return self._state
        except BaseException:
            # Abandoned mid-flight; keep the stored credential for next time
            self._set_anonymous(forget=False)
            raise

        self._set_authenticated(token, identity)
        return self._state

    async def login(self, email: str, password: str) -> Identity:
        """
        Log in and resolve the identity.

        Returns:
            Identity of the account, so callers can route on its role

        Raises:
            ValidationError: email or password empty (no request is made)
            AuthError: backend rejected the credentials
            NetworkError: backend unreachable
        """
        if not email or not password:
            raise ValidationError("email and password are required")

        try:
            payload = await self._api.login(email, password)
            token = payload.get("access_token") if isinstance(payload, dict) else None
            if not token:
                raise AuthError("Login failed: no access token in response")

            self._credentials.save(token)
            try:
                identity = await self._fetch_identity(token)
            except BaseException:
                if self._credentials.load() == token:
                    self._credentials.clear()
                raise
        except BaseException:
            self._set_anonymous(forget=False)
            raise

        # A racing login may have replaced the stored credential
        if self._credentials.load() != token:
            self._credentials.save(token)

        self._set_authenticated(token, identity)
        logger.info(f"Logged in as {identity.email} ({identity.role.value})")
        return identity

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        confirmation: str
    ):
        """
        Create an account. Does not log in; call ``login`` afterwards.

        Returns:
            Backend response body

        Raises:
            ValidationError: mismatched confirmation, empty fields, or
                field errors reported by the backend
            ConflictError: email already registered
            NetworkError: backend unreachable
        """
        if password != confirmation:
            raise ValidationError("passwords do not match")
        if not name or not email or not password:
            raise ValidationError("name, email and password are required")

        try:
            payload = await self._api.register(name, email, password, confirmation)
        except ValidationError as e:
            if _email_taken(e):
                raise ConflictError(e.message, e.status_code) from e
            raise

        logger.info(f"Registered account {email}")
        return payload

    async def logout(self):
        """
        Log out.

        The backend is notified on a best-effort basis; local state is
        cleared whatever that call does.
        """
        token = self._credential or self._credentials.load()
        try:
            if token:
                await self._api.logout(token)
        except LibraryClientError as e:
            logger.warning(f"Backend logout failed, clearing local session anyway: {e}")
        finally:
            self._set_anonymous()

    def invalidate(self, reason: str = "credential rejected"):
        """Forced logout after the backend rejected the credential."""
        logger.warning(f"Session invalidated: {reason}")
        self._set_anonymous()
