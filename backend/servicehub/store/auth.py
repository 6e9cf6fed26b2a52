import logging
from typing import Optional

from servicehub.errors import NotFoundError, ServiceHubError
from servicehub.models import Account, AccountRole, AccountUpdate, AuthState, Principal, Settlement
from servicehub.store.base import Container

logger = logging.getLogger(__name__)

USERS = "users"


class AuthContainer(Container[AuthState]):
    name = "auth"
    operations = frozenset(
        {
            "register",
            "sign_in",
            "sign_in_with_federated_provider",
            "sign_out",
            "set_session",
            "update_profile",
            "clear_error",
        }
    )

    def __init__(self, gateway, settings, clock=None) -> None:
        super().__init__(gateway, settings, AuthState(), clock)

    async def _read_account(self, uid: str) -> Optional[Account]:
        document = await self.gateway.get_document(USERS, uid)
        return Account.model_validate(document) if document else None

    async def register(
        self,
        email: str,
        password: str,
        display_name: str,
        user_type: AccountRole = "customer",
    ) -> Settlement:
        async def call() -> Account:
            principal = await self.gateway.create_user(email, password, display_name)
            if display_name and principal.display_name != display_name.strip():
                principal = await self.gateway.update_profile(principal.uid, display_name=display_name)
            account = Account(
                id=principal.uid,
                email=principal.email or email.strip(),
                display_name=display_name.strip(),
                photo_url=principal.photo_url,
                user_type=user_type,
                created_at=self.clock(),
            )
            await self.gateway.set_document(USERS, account.id, account.to_document())
            return account

        return await self._run("register", call, lambda state, account: {"user": account})

    async def sign_in(self, email: str, password: str) -> Settlement:
        async def call() -> Account:
            principal = await self.gateway.sign_in_with_password(email, password)
            account = await self._read_account(principal.uid)
            if account is None:
                raise NotFoundError("User data not found")
            return account

        return await self._run("sign_in", call, lambda state, account: {"user": account})

    async def sign_in_with_federated_provider(self, id_token: str, provider_id: str = "google.com") -> Settlement:
        async def call() -> Account:
            principal = await self.gateway.sign_in_with_idp(id_token, provider_id)
            account = await self._read_account(principal.uid)
            if account is not None:
                return account
            account = Account(
                id=principal.uid,
                email=principal.email,
                display_name=principal.display_name,
                photo_url=principal.photo_url,
                user_type=self.settings.default_role_for_federated_sign_in,
                created_at=self.clock(),
            )
            await self.gateway.set_document(USERS, account.id, account.to_document())
            logger.info("Created account for federated user uid=%s role=%s", account.id, account.user_type)
            return account

        return await self._run(
            "sign_in_with_federated_provider", call, lambda state, account: {"user": account}
        )

    async def sign_out(self) -> Settlement:
        return await self._run("sign_out", self.gateway.sign_out, lambda state, _: {"user": None})

    def set_session(self, account: Optional[Account]) -> None:
        self._replace(user=account)

    async def update_profile(self, display_name: Optional[str] = None, photo_url: Optional[str] = None) -> Settlement:
        async def call() -> Account:
            user = self.state.user
            if user is None:
                raise NotFoundError("No signed-in user")
            supplied = {"display_name": display_name, "photo_url": photo_url}
            changes = AccountUpdate(**{key: value for key, value in supplied.items() if value is not None})
            await self.gateway.update_profile(user.id, display_name=display_name, photo_url=photo_url)
            if changes.to_changes():
                await self.gateway.update_document(USERS, user.id, changes.to_changes())
            account = await self._read_account(user.id)
            if account is None:
                raise NotFoundError("User data not found")
            return account

        return await self._run("update_profile", call, lambda state, account: {"user": account})

    async def apply_session_change(self, principal: Optional[Principal]) -> Optional[Account]:
        """Re-read the account for a pushed session change and store it as the session."""
        if principal is None:
            self.set_session(None)
            return None
        try:
            account = await self._read_account(principal.uid)
        except ServiceHubError as exc:
            logger.warning("Session refresh failed for uid=%s: %s", principal.uid, exc)
            return self.state.user
        current = self.state.user
        if account is None and current is not None and current.id == principal.uid:
            return current
        self.set_session(account)
        return account
