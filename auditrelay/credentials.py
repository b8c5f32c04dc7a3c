"""Service-account credentials sealed at rest with Fernet.

A source's ``credential_ref`` holds a versioned token
(``enc:fernet:v1:<token>``) wrapping a JSON service-account document. The
registration layer seals documents with :meth:`FernetCredentialProvider.seal`;
fetch workers open them with :meth:`FernetCredentialProvider.resolve`.
"""

from __future__ import annotations

import dataclasses as dc
import os
import typing as typ

import msgspec
from cryptography.fernet import Fernet, InvalidToken

from auditrelay.errors import CredentialError

if typ.TYPE_CHECKING:
    from auditrelay.store.sources import SourceInfo

VERSION_PREFIX = "enc:fernet:v1:"
REPORTS_READONLY_SCOPE = "https://www.googleapis.com/auth/admin.reports.audit.readonly"


@dc.dataclass(frozen=True, slots=True)
class ServiceAccountCredentials:
    """Decrypted service-account identity used to mint access tokens.

    Attributes
    ----------
    client_email
        Service-account email, used as the JWT issuer.
    private_key
        PEM-encoded RSA private key.
    scopes
        OAuth scopes requested for the access token.
    subject
        Workspace administrator to impersonate via domain-wide delegation.

    """

    client_email: str
    private_key: str = dc.field(repr=False)
    scopes: tuple[str, ...] = (REPORTS_READONLY_SCOPE,)
    subject: str | None = None


class _SealedDocument(msgspec.Struct, rename="camel"):
    client_email: str
    private_key: str
    scopes: list[str] = msgspec.field(default_factory=lambda: [REPORTS_READONLY_SCOPE])
    subject: str | None = None


class CredentialProvider(typ.Protocol):
    """Resolve a source's credential reference into usable credentials."""

    async def resolve(self, source: SourceInfo) -> ServiceAccountCredentials:
        """Return decrypted credentials or raise :class:`CredentialError`."""
        ...


@dc.dataclass(frozen=True, slots=True)
class CredentialConfig:
    """Key material for the Fernet provider."""

    encryption_key: str = dc.field(repr=False)

    @classmethod
    def from_env(cls) -> CredentialConfig:
        """Read ``AUDITRELAY_ENCRYPTION_KEY``.

        Raises
        ------
        ValueError
            If the variable is unset or blank.

        """
        key = os.environ.get("AUDITRELAY_ENCRYPTION_KEY", "").strip()
        if not key:
            msg = "AUDITRELAY_ENCRYPTION_KEY must be set"
            raise ValueError(msg)
        return cls(encryption_key=key)


class FernetCredentialProvider:
    """Credential provider backed by a single Fernet key."""

    def __init__(self, encryption_key: str) -> None:
        try:
            self._fernet = Fernet(encryption_key.strip().encode())
        except ValueError as exc:
            msg = f"AUDITRELAY_ENCRYPTION_KEY must be a valid Fernet key: {exc}"
            raise ValueError(msg) from exc

    @classmethod
    def from_config(cls, config: CredentialConfig) -> FernetCredentialProvider:
        """Build a provider from :class:`CredentialConfig`."""
        return cls(config.encryption_key)

    def __repr__(self) -> str:
        """Hide key material."""
        return "<FernetCredentialProvider>"

    def seal(self, credentials: ServiceAccountCredentials) -> str:
        """Encrypt ``credentials`` into a versioned ``credential_ref`` value."""
        document = _SealedDocument(
            client_email=credentials.client_email,
            private_key=credentials.private_key,
            scopes=list(credentials.scopes),
            subject=credentials.subject,
        )
        token = self._fernet.encrypt(msgspec.json.encode(document))
        return f"{VERSION_PREFIX}{token.decode()}"

    async def resolve(self, source: SourceInfo) -> ServiceAccountCredentials:
        """Decrypt and validate the credentials of ``source``.

        Raises
        ------
        CredentialError
            If the reference has an unknown format, cannot be decrypted with
            the configured key, or does not decode to a service-account
            document.

        """
        reference = source.credential_ref
        if not reference.startswith(VERSION_PREFIX):
            raise CredentialError.malformed(source.id, "unsupported reference format")
        try:
            plaintext = self._fernet.decrypt(reference.removeprefix(VERSION_PREFIX))
        except InvalidToken as exc:
            raise CredentialError.undecryptable(source.id) from exc
        try:
            document = msgspec.json.decode(plaintext, type=_SealedDocument)
        except msgspec.DecodeError as exc:
            raise CredentialError.malformed(source.id, str(exc)) from exc
        if not document.client_email or not document.private_key:
            raise CredentialError.malformed(
                source.id, "clientEmail and privateKey are required"
            )
        return ServiceAccountCredentials(
            client_email=document.client_email,
            private_key=document.private_key,
            scopes=tuple(document.scopes),
            subject=document.subject,
        )


__all__ = [
    "REPORTS_READONLY_SCOPE",
    "VERSION_PREFIX",
    "CredentialConfig",
    "CredentialProvider",
    "FernetCredentialProvider",
    "ServiceAccountCredentials",
]
