from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from authkernel.logging import get_logger, hash_identifier
from authkernel.service.errors import (
    FederatedProfileMissingEmailError,
    InvalidCredentialsError,
    ProviderConflictError,
    EmailNotVerifiedError,
)
from authkernel.service.hashing import SecretHasher
from authkernel.storage.common import CredentialStore
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import AuthProvider, User, normalize_email

logger = get_logger(__name__)


@dataclass
class FederatedProfile:
    """Identity asserted by an external provider after it verified the user."""

    id: str
    email: Optional[str]
    display_name: Optional[str] = None
    email_verified: Optional[bool] = None
    provider: AuthProvider = AuthProvider.GOOGLE


class IdentityResolver:
    """Maps credentials or federated profiles onto user records."""

    def __init__(self, store: CredentialStore, hasher: SecretHasher) -> None:
        self.store = store
        self.hasher = hasher

    async def resolve_local_login(self, email: str, password: str) -> User:
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.info("login_unknown_email", email_hash_prefix=hash_identifier(email))
            raise InvalidCredentialsError()
        if user.auth_provider is AuthProvider.LOCAL:
            pass
        elif user.auth_provider is AuthProvider.GOOGLE:
            logger.info("login_wrong_provider", user_id=user.id, provider=user.auth_provider.value)
            raise InvalidCredentialsError()
        else:
            raise ValueError(f"unhandled auth provider {user.auth_provider!r}")
        if not user.password_hash:
            raise InvalidCredentialsError()
        if not await self.hasher.verify_async(user.password_hash, password):
            logger.info("login_password_mismatch", user_id=user.id)
            raise InvalidCredentialsError()
        # only reachable with the right password, so this leaks nothing
        if not user.email_verified:
            raise EmailNotVerifiedError()
        return user

    def resolve_federated_profile(self, profile: FederatedProfile) -> User:
        if not profile.email or not profile.email.strip():
            raise FederatedProfileMissingEmailError()
        email = normalize_email(profile.email)

        linked = self.store.get_user_by_provider(profile.provider, profile.id)
        if linked is not None and linked.email != email:
            # subject already owns an account under its previous address
            logger.warning("federated_subject_email_changed", user_id=linked.id)
            raise ProviderConflictError()

        user = self.store.get_user_by_email(email)
        if user is None:
            try:
                created = self.store.create_user(
                    User.new_federated(
                        profile.provider, email, profile.id, profile.display_name
                    )
                )
            except ConstraintViolation as exc:
                # another request created the same email or subject first
                user = self.store.get_user_by_email(email)
                if user is None:
                    raise ProviderConflictError() from exc
            else:
                logger.info(
                    "federated_user_created",
                    user_id=created.id,
                    provider=profile.provider.value,
                )
                return created

        if user.auth_provider is AuthProvider.LOCAL:
            logger.info("federated_login_provider_conflict", user_id=user.id)
            raise ProviderConflictError()
        elif user.auth_provider is AuthProvider.GOOGLE:
            if profile.provider is not AuthProvider.GOOGLE:
                raise ProviderConflictError()
            if user.provider_id and user.provider_id != profile.id:
                logger.warning("federated_subject_mismatch", user_id=user.id)
                raise ProviderConflictError()
        else:
            raise ValueError(f"unhandled auth provider {user.auth_provider!r}")

        changes: dict = {}
        if not user.provider_id:
            changes["provider_id"] = profile.id
        if not user.email_verified:
            changes["email_verified"] = True
        if not user.display_name and profile.display_name:
            changes["display_name"] = profile.display_name
        if changes:
            try:
                updated = self.store.update_user(user.id, **changes)
            except ConstraintViolation as exc:
                logger.warning("federated_subject_already_linked", user_id=user.id)
                raise ProviderConflictError() from exc
            if updated is not None:
                logger.info("federated_user_backfilled", user_id=user.id, fields=sorted(changes))
                user = updated
        return user
