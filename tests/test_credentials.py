from __future__ import annotations

import tempfile
import time
from pathlib import Path

import pytest

from src.credentials.resolver import CredentialResolver
from src.engine.errors import AuthError, CredentialExpired, CredentialNotFound
from src.engine.models import ScopeType
from src.storage.sqlite_store import SQLiteStore


def _store_credential(db_path: Path, **kwargs) -> str:
    store = SQLiteStore(db_path)
    try:
        return store.create_credential(**kwargs).credential_id
    finally:
        store.close()


def test_pat_credential_builds_scoped_client() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = Path(td) / "fleet.db"
        cred_id = _store_credential(
            db_path, name="ci", kind="pat", scope_type="org", target="octo", secret="ghp_abc"
        )
        built: list[dict] = []

        def factory(**kwargs):
            built.append(kwargs)
            return kwargs

        resolver = CredentialResolver(db_path=db_path, client_factory=factory)
        ref = resolver.get_ref(cred_id)
        assert ref.scope_type == ScopeType.ORG
        assert resolver.resolve_credential_token(ref) == "ghp_abc"

        resolver.create_client_from_credential(ref)
        assert built[0]["token"] == "ghp_abc"
        assert built[0]["target"] == "octo"
        assert built[0]["api_url"] == "https://api.github.com"


def test_unknown_and_expired_credentials() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = Path(td) / "fleet.db"
        resolver = CredentialResolver(db_path=db_path)
        with pytest.raises(CredentialNotFound):
            resolver.get_ref("cred_missing")

        cred_id = _store_credential(
            db_path,
            name="old",
            kind="pat",
            scope_type="repo",
            target="octo/widgets",
            secret="ghp_old",
            expires_at=time.time() - 60,
        )
        ref = resolver.get_ref(cred_id)
        with pytest.raises(CredentialExpired):
            resolver.resolve_credential_token(ref)
        with pytest.raises(CredentialExpired):
            resolver.create_client_from_credential(ref)


def test_installation_credential_uses_token_source() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = Path(td) / "fleet.db"
        cred_id = _store_credential(
            db_path,
            name="app",
            kind="installation",
            scope_type="org",
            target="octo",
            secret=None,
            installation_id="4242",
        )

        no_source = CredentialResolver(db_path=db_path)
        ref = no_source.get_ref(cred_id)
        with pytest.raises(AuthError):
            no_source.resolve_credential_token(ref)

        def failing(installation_id: str) -> str:
            raise ValueError("app key rejected")

        with pytest.raises(AuthError):
            CredentialResolver(db_path=db_path, installation_token_source=failing).resolve_credential_token(ref)

        seen: list[str] = []

        def source(installation_id: str) -> str:
            seen.append(installation_id)
            return "ghs_installation"

        resolver = CredentialResolver(db_path=db_path, installation_token_source=source)
        assert resolver.resolve_credential_token(ref) == "ghs_installation"
        assert seen == ["4242"]
