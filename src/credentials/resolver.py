from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable

from src.config.load_config import GitHubConfig
from src.engine.errors import AuthError, CredentialExpired, CredentialNotFound, RunnerEngineError
from src.engine.models import CredentialRef, ScopeType
from src.hosting.github_client import GitHubClient
from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)

# installation_id -> short-lived installation token. Exchanging an app
# installation for a token is owned by whoever deploys the engine.
InstallationTokenSource = Callable[[str], str]
ClientFactory = Callable[..., GitHubClient]


class CredentialResolver:
    def __init__(
        self,
        *,
        db_path: str | Path | None = None,
        github: GitHubConfig | None = None,
        installation_token_source: InstallationTokenSource | None = None,
        client_factory: ClientFactory = GitHubClient,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self._github = github or GitHubConfig(
            api_url="https://api.github.com", web_url="https://github.com", timeout_s=30.0
        )
        self._installation_token_source = installation_token_source
        self._client_factory = client_factory
        self._now = now

    def get_ref(self, credential_id: str) -> CredentialRef:
        store = SQLiteStore(self._db_path)
        try:
            record = store.get_credential(credential_id=credential_id)
        finally:
            store.close()
        if record is None:
            raise CredentialNotFound(f"credential {credential_id} does not exist")
        return CredentialRef(
            credential_id=record.credential_id,
            kind=record.kind,
            scope_type=ScopeType(record.scope_type),
            target=record.target,
        )

    def resolve_credential_token(self, ref: CredentialRef) -> str:
        store = SQLiteStore(self._db_path)
        try:
            record = store.get_credential(credential_id=ref.credential_id)
            secret = store.get_credential_secret(credential_id=ref.credential_id) if record else None
        finally:
            store.close()
        if record is None:
            raise CredentialNotFound(f"credential {ref.credential_id} does not exist")

        if record.expires_at is not None and record.expires_at <= self._now():
            raise CredentialExpired(f"credential {ref.credential_id} expired at {record.expires_at}")

        if record.kind == "pat":
            if not secret:
                raise CredentialNotFound(f"credential {ref.credential_id} has no stored token")
            return secret

        if not record.installation_id:
            raise CredentialNotFound(f"credential {ref.credential_id} has no installation id")
        if self._installation_token_source is None:
            raise AuthError("no installation token source is configured")
        try:
            token = self._installation_token_source(record.installation_id)
        except RunnerEngineError:
            raise
        except Exception as e:
            raise AuthError(f"installation token exchange failed: {e}") from e
        if not token:
            raise AuthError("installation token exchange returned an empty token")
        return token

    def create_client_from_credential(self, ref: CredentialRef) -> GitHubClient:
        try:
            token = self.resolve_credential_token(ref)
        except (CredentialNotFound, CredentialExpired, AuthError):
            raise
        except Exception as e:
            raise AuthError(f"could not authenticate with credential {ref.credential_id}: {e}") from e
        logger.debug("Built hosting client for %s %s", ref.scope_type.value, ref.target)
        return self._client_factory(
            token=token,
            scope_type=ref.scope_type,
            target=ref.target,
            api_url=self._github.api_url,
            web_url=self._github.web_url,
            timeout_s=self._github.timeout_s,
        )
