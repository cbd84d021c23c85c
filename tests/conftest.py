"""
Pytest configuration and fixtures for Sentinel SSO testing.

This module provides:
- Test settings built with model_construct (no environment or .env reads)
- An SSOService wired to the in-memory repository, a recording audit
  channel and an httpx.MockTransport backed identity provider
- Test client fixtures with and without authentication
- Fake OIDC and SAML identity providers

Coverage:
- Application fixtures with dependency overrides
- Authenticated test clients for admin and member roles
- Service-level fixtures for flow tests

Test types: Unit, Integration
"""

import os
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from sentinel_sso.api.app import create_application
from sentinel_sso.api.dependencies import (
    get_current_active_user,
    get_settings_dep,
    get_sso_service,
)
from sentinel_sso.config import (
    AppSettings,
    AuditSettings,
    CORSSettings,
    DatabaseSettings,
    SecuritySettings,
    SSOSettings,
)
from sentinel_sso.services.crypto import SecretCipher
from sentinel_sso.services.sso import SSOService

from fake_idp import FakeOIDCProvider, FakeSamlIdP, generate_rsa_pem, self_signed_certificate
from test_utils import (
    TEST_BASE_URL,
    TEST_SECRET_KEY,
    InMemorySSORepository,
    MockUserContext,
    RecordingAuditChannel,
    create_mock_get_current_user,
)


#                           ENVIRONMENT SETUP
# ----------------------------------------------------------------------------


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """
    Set up test environment variables before any tests run.

    Audit persistence is disabled so nothing tries to reach PostgreSQL.
    """
    original_env = {
        "TESTING": os.environ.get("TESTING"),
        "ENABLE_AUDIT_LOGGING": os.environ.get("ENABLE_AUDIT_LOGGING"),
    }

    os.environ["TESTING"] = "true"
    os.environ["ENABLE_AUDIT_LOGGING"] = "false"

    yield

    for key, value in original_env.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


#                             SETTINGS
# ----------------------------------------------------------------------------


@pytest.fixture
def sso_settings() -> SSOSettings:
    return SSOSettings.model_construct(
        base_url=TEST_BASE_URL,
        encryption_key=None,
        session_ttl_minutes=10,
        http_timeout_seconds=5.0,
        discovery_timeout_seconds=2.0,
        clock_skew_seconds=120,
        baseline_role="member",
    )


@pytest.fixture
def test_settings(sso_settings) -> AppSettings:
    return AppSettings.model_construct(
        app_name="Test App",
        app_version="1.0.0-test",
        environment="testing",
        debug=True,
        database=DatabaseSettings.model_construct(
            host="localhost",
            port=5432,
            database="test_db",
            user="test_user",
            password="test_password",
        ),
        security=SecuritySettings.model_construct(
            secret_key=TEST_SECRET_KEY,
            algorithm="HS256",
            access_token_expire_minutes=60,
        ),
        sso=sso_settings,
        audit=AuditSettings.model_construct(enabled=False, queue_size=100),
        cors=CORSSettings.model_construct(),
    )


#                          SERVICE FIXTURES
# ----------------------------------------------------------------------------


@pytest.fixture(scope="session")
def cipher() -> SecretCipher:
    """One cipher per run; key derivation is deliberately slow."""
    return SecretCipher(TEST_SECRET_KEY)


@pytest.fixture
def repository() -> InMemorySSORepository:
    return InMemorySSORepository()


@pytest.fixture
def audit() -> RecordingAuditChannel:
    return RecordingAuditChannel()


@pytest.fixture(scope="session")
def idp_signing_pem() -> str:
    return generate_rsa_pem()


@pytest.fixture(scope="session")
def saml_signing_material():
    return self_signed_certificate()


@pytest.fixture
def oidc_idp(idp_signing_pem) -> FakeOIDCProvider:
    return FakeOIDCProvider(private_pem=idp_signing_pem)


@pytest.fixture
def saml_idp(saml_signing_material) -> FakeSamlIdP:
    cert_pem, key_pem = saml_signing_material
    return FakeSamlIdP(cert_pem=cert_pem, key_pem=key_pem)


@pytest.fixture
def http_client(oidc_idp) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=oidc_idp.transport())


@pytest.fixture
def sso_service(repository, cipher, audit, http_client, sso_settings) -> SSOService:
    return SSOService(
        repository=repository,
        cipher=cipher,
        audit=audit,
        http=http_client,
        settings=sso_settings,
    )


#                         APPLICATION FIXTURES
# ----------------------------------------------------------------------------


@pytest.fixture(scope="function")
def app(sso_service, test_settings):
    """
    Fresh FastAPI application with the SSO service and settings overridden.

    Returns:
        FastAPI: Fresh application instance
    """
    application = create_application()
    application.dependency_overrides[get_sso_service] = lambda: sso_service
    application.dependency_overrides[get_settings_dep] = lambda: test_settings
    yield application
    application.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client(app) -> Generator[TestClient, None, None]:
    """
    TestClient without authentication.

    The client is not entered as a context manager so the lifespan, which
    opens the PostgreSQL pools, never runs.
    """
    yield TestClient(app)


@pytest.fixture(scope="function")
def admin_client(app) -> Generator[TestClient, None, None]:
    """TestClient authenticated as a tenant admin of the default tenant."""
    app.dependency_overrides[get_current_active_user] = create_mock_get_current_user(
        MockUserContext.create_admin()
    )
    yield TestClient(app)


@pytest.fixture(scope="function")
def user_client(app) -> Generator[TestClient, None, None]:
    """TestClient authenticated as a regular member of the default tenant."""
    app.dependency_overrides[get_current_active_user] = create_mock_get_current_user(
        MockUserContext.create_user()
    )
    yield TestClient(app)


#                           PYTEST MARKERS
# ----------------------------------------------------------------------------
#
# Markers are declared in pyproject.toml:
#   unit, integration, auth, security, saml, provisioning
#
# Run a subset with e.g.:
#   pytest -m saml
#   pytest -m "unit and not integration"
