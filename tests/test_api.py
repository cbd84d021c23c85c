"""
API tests for the Sentinel SSO HTTP surface.

Coverage:
- Health endpoints
- Provider and domain administration (admin only, tenant scoped)
- OIDC initiate -> callback with platform token issuance
- Home Realm Discovery endpoints
- SAML metadata, login redirect, ACS and logout
- Linked identities, deprovisioning and SCIM webhooks
- Error envelope for SSO failures

Test types: Integration
"""

from urllib.parse import parse_qs, urlparse
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from sentinel_sso.api.dependencies import get_current_active_user
from sentinel_sso.services.audit import SSOAction
from sentinel_sso.services.auth import verify_token
from sentinel_sso.services.sso.schemas import (
    ProviderCreate,
    ProviderType,
    ProviderUpdate,
    UserIdentity,
)

from fake_idp import CLIENT_ID, CLIENT_SECRET, ISSUER, SAML_IDP_ENTITY_ID, SAML_SSO_URL
from test_utils import MockUserContext, TestUsers, create_mock_get_current_user


TENANT = TestUsers.DEFAULT_TENANT_ID

OIDC_PAYLOAD = {
    "name": "Corporate IdP",
    "provider_type": "oidc-generic",
    "client_id": CLIENT_ID,
    "client_secret": CLIENT_SECRET,
    "issuer_url": ISSUER,
}


@pytest.fixture
def oidc_provider(sso_service):
    provider = sso_service.create_provider_config(
        TENANT, ProviderCreate(**OIDC_PAYLOAD)
    )
    return sso_service.registry.activate(provider.id)


@pytest.fixture
def saml_provider(sso_service, saml_idp):
    provider = sso_service.create_provider_config(
        TENANT,
        ProviderCreate(
            name="Corporate SAML",
            provider_type=ProviderType.SAML,
            authorization_url=SAML_SSO_URL,
            logout_url="https://idp.test.example/saml/slo",
            metadata={
                "idp_entity_id": SAML_IDP_ENTITY_ID,
                "idp_certificate": saml_idp.cert_pem,
            },
        ),
    )
    return sso_service.registry.activate(provider.id)


def link_identity(repository, user_id, provider, subject="idp-user-1", **fields):
    return repository.insert_identity(
        UserIdentity(
            user_id=user_id,
            tenant_id=provider.tenant_id,
            provider_id=provider.id,
            external_subject_id=subject,
            external_email="user@acme.com",
            **fields,
        )
    )


#                               HEALTH
# ----------------------------------------------------------------------------


@pytest.mark.integration
class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["version"] == "1.0.0-test"
        assert body["audit_enabled"] is False

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_readiness_reports_uninitialized_components(self, client):
        body = client.get("/health/ready").json()
        assert body["status"] == "degraded"
        assert set(body["components"]) == {"database", "sso", "audit"}


#                        PROVIDER ADMINISTRATION
# ----------------------------------------------------------------------------


@pytest.mark.integration
class TestProviderAdministration:
    def test_requires_authentication(self, client):
        response = client.get("/api/sso/providers")
        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"

    def test_requires_admin_role(self, user_client):
        response = user_client.post("/api/sso/providers", json=OIDC_PAYLOAD)
        assert response.status_code == 403

    def test_create_returns_masked_secret(self, admin_client, audit):
        response = admin_client.post("/api/sso/providers", json=OIDC_PAYLOAD)
        assert response.status_code == 201

        body = response.json()
        assert body["tenant_id"] == TENANT
        assert body["status"] == "inactive"
        assert body["client_secret"].endswith(CLIENT_SECRET[-4:])
        assert CLIENT_SECRET not in response.text
        assert "client_secret_encrypted" not in body
        [event] = audit.of(SSOAction.PROVIDER_CREATED)
        assert event.metadata["actor_id"] == str(TestUsers.ADMIN_USER_ID)

    def test_invalid_configuration_is_a_400(self, admin_client):
        payload = {**OIDC_PAYLOAD, "issuer_url": "http://insecure.example"}
        response = admin_client.post("/api/sso/providers", json=payload)
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "CONFIGURATION_ERROR"
        assert body["details"]["field"] == "issuer_url"

    def test_unknown_provider_type_is_a_422(self, admin_client):
        payload = {**OIDC_PAYLOAD, "provider_type": "oauth2-github"}
        response = admin_client.post("/api/sso/providers", json=payload)
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_lifecycle(self, admin_client):
        provider_id = admin_client.post("/api/sso/providers", json=OIDC_PAYLOAD).json()["id"]

        listed = admin_client.get("/api/sso/providers").json()
        assert [p["id"] for p in listed] == [provider_id]

        patched = admin_client.patch(
            f"/api/sso/providers/{provider_id}",
            json={"name": "Renamed", "allowed_domains": ["Acme.com"]},
        )
        assert patched.status_code == 200
        assert patched.json()["name"] == "Renamed"
        assert patched.json()["allowed_domains"] == ["acme.com"]

        activated = admin_client.post(f"/api/sso/providers/{provider_id}/activate")
        assert activated.json()["status"] == "active"

        default = admin_client.post(f"/api/sso/providers/{provider_id}/default")
        assert default.json()["is_default"] is True

        deactivated = admin_client.post(f"/api/sso/providers/{provider_id}/deactivate")
        assert deactivated.json()["status"] == "inactive"

        deleted = admin_client.delete(f"/api/sso/providers/{provider_id}")
        assert deleted.json() == {"provider_id": provider_id, "deleted_identities": 0}
        assert admin_client.get(f"/api/sso/providers/{provider_id}").status_code == 404

    def test_connection_test_probes_discovery(self, admin_client, oidc_provider, oidc_idp):
        response = admin_client.post(f"/api/sso/providers/{oidc_provider.id}/test")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["details"]["issuer"] == ISSUER

    def test_connection_test_reports_failure(self, admin_client, oidc_provider, oidc_idp):
        oidc_idp.discovery_status = 500
        body = admin_client.post(f"/api/sso/providers/{oidc_provider.id}/test").json()
        assert body["success"] is False
        assert body["details"]["status_code"] == 500

    def test_other_tenants_provider_is_hidden(self, admin_client, sso_service):
        foreign = sso_service.create_provider_config(
            TestUsers.SECONDARY_TENANT_ID, ProviderCreate(**OIDC_PAYLOAD)
        )
        response = admin_client.get(f"/api/sso/providers/{foreign.id}")
        assert response.status_code == 404
        assert response.json()["error"] == "PROVIDER_NOT_FOUND"

        response = admin_client.delete(f"/api/sso/providers/{foreign.id}")
        assert response.status_code == 404
        assert sso_service.registry.get(foreign.id)


#                     DOMAINS AND HOME REALM DISCOVERY
# ----------------------------------------------------------------------------


@pytest.mark.integration
class TestDomainsAndDiscovery:
    def test_mapping_lifecycle_and_discovery(self, admin_client, client, oidc_provider):
        created = admin_client.post(
            "/api/sso/domains",
            json={"domain": "Acme.com", "provider_id": str(oidc_provider.id)},
        )
        assert created.status_code == 201
        assert created.json()["domain"] == "acme.com"
        assert created.json()["verified"] is False

        discover = {"tenant_id": TENANT, "email": "jane@acme.com"}
        assert client.post("/api/sso/discover", json=discover).json() == {
            "sso_available": False,
            "provider": None,
        }

        verified = admin_client.post("/api/sso/domains/acme.com/verify")
        assert verified.json()["verified"] is True

        found = client.post("/api/sso/discover", json=discover).json()
        assert found["sso_available"] is True
        assert found["provider"]["id"] == str(oidc_provider.id)
        assert found["provider"]["provider_type"] == "oidc-generic"

        assert admin_client.delete("/api/sso/domains/acme.com").status_code == 204
        assert admin_client.get("/api/sso/domains").json() == []

    def test_check_auth_method(self, client, sso_service, oidc_provider):
        sso_service.registry.update(
            oidc_provider.id, ProviderUpdate(enforce_for_domains=True)
        )
        sso_service.discovery.add_domain_mapping(TENANT, "acme.com", oidc_provider.id)
        sso_service.discovery.verify_domain_mapping(TENANT, "acme.com")

        body = client.post(
            "/api/sso/check-auth-method",
            json={"tenant_id": TENANT, "email": "jane@acme.com"},
        ).json()
        assert body["sso_required"] is True
        assert body["allow_local_auth"] is False

    def test_invalid_email_is_a_422(self, client):
        response = client.post(
            "/api/sso/discover", json={"tenant_id": TENANT, "email": "not-an-email"}
        )
        assert response.status_code == 422

    def test_available_providers(self, client, oidc_provider):
        body = client.get("/api/sso/available-providers", params={"tenant_id": TENANT}).json()
        assert body == [
            {
                "id": str(oidc_provider.id),
                "name": "Corporate IdP",
                "provider_type": "oidc-generic",
                "is_default": False,
            }
        ]

    def test_unknown_domain_verify_is_a_404(self, admin_client):
        response = admin_client.post("/api/sso/domains/nowhere.com/verify")
        assert response.status_code == 404
        assert response.json()["error"] == "DOMAIN_MAPPING_NOT_FOUND"


#                           OIDC SIGN-IN
# ----------------------------------------------------------------------------


@pytest.mark.integration
@pytest.mark.auth
class TestOidcSignIn:
    def _initiate(self, client, repository, oidc_idp, provider, **extra):
        response = client.post(
            "/api/sso/auth/initiate",
            json={"tenant_id": TENANT, "provider_id": str(provider.id), **extra},
            headers={"User-Agent": "pytest-browser", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
        )
        assert response.status_code == 200
        body = response.json()
        session = repository.get_auth_session_by_state(body["state"])
        oidc_idp.id_token_claims["nonce"] = session.nonce
        return body, session

    def test_initiate_then_callback(
        self, client, repository, oidc_idp, oidc_provider, test_settings, audit
    ):
        body, session = self._initiate(
            client, repository, oidc_idp, oidc_provider, return_url="/welcome"
        )
        assert body["authorization_url"].startswith(f"{ISSUER}/authorize?")
        assert session.redirect_uri == "http://testserver/api/sso/callback"
        assert session.ip_address == "203.0.113.9"
        assert session.user_agent == "pytest-browser"

        callback = client.get(
            "/api/sso/callback", params={"state": body["state"], "code": "auth-code"}
        )
        assert callback.status_code == 200
        result = callback.json()
        assert result["email"] == "jane@acme.com"
        assert result["role"] == "member"
        assert result["is_new_user"] is True
        assert result["return_url"] == "/welcome"
        assert result["expires_in"] == 3600

        user = verify_token(result["access_token"], test_settings)
        assert user.email == "jane@acme.com"
        assert user.tenant_id == TENANT
        assert user.provider_id == str(oidc_provider.id)

        [token_request] = oidc_idp.requests_to("/token")
        assert parse_qs(token_request.content.decode())["redirect_uri"] == [
            "http://testserver/api/sso/callback"
        ]

    def test_callback_replay_is_rejected(self, client, repository, oidc_idp, oidc_provider):
        body, _ = self._initiate(client, repository, oidc_idp, oidc_provider)
        params = {"state": body["state"], "code": "auth-code"}
        assert client.get("/api/sso/callback", params=params).status_code == 200

        replay = client.get("/api/sso/callback", params=params)
        assert replay.status_code == 400
        assert replay.json()["error"] == "INVALID_SESSION"
        assert "try signing in again" in replay.json()["message"]

    def test_idp_error_is_reported(self, client, repository, oidc_idp, oidc_provider):
        body, _ = self._initiate(client, repository, oidc_idp, oidc_provider)
        response = client.get(
            "/api/sso/callback", params={"state": body["state"], "error": "access_denied"}
        )
        assert response.status_code == 502
        assert response.json()["error"] == "TOKEN_EXCHANGE_FAILED"

    def test_inactive_provider_cannot_initiate(self, client, sso_service, oidc_provider):
        sso_service.registry.deactivate(oidc_provider.id)
        response = client.post(
            "/api/sso/auth/initiate",
            json={"tenant_id": TENANT, "provider_id": str(oidc_provider.id)},
        )
        assert response.status_code == 409
        assert response.json()["error"] == "PROVIDER_NOT_ACTIVE"

    def test_callback_requires_state(self, client):
        assert client.get("/api/sso/callback", params={"code": "x"}).status_code == 422


#                               SAML
# ----------------------------------------------------------------------------


@pytest.mark.integration
@pytest.mark.saml
class TestSamlEndpoints:
    def test_metadata_is_xml(self, client, sso_settings):
        response = client.get("/api/sso/saml/metadata")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert sso_settings.sp_entity_id in response.text
        assert sso_settings.acs_url in response.text

    def test_login_redirects_to_idp(self, client, saml_provider):
        response = client.get(
            "/api/sso/saml/login",
            params={"tenant_id": TENANT, "provider_id": str(saml_provider.id)},
            follow_redirects=False,
        )
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(f"{SAML_SSO_URL}?")
        assert "SAMLRequest" in parse_qs(urlparse(location).query)

    def test_acs_completes_sign_in(
        self, client, repository, saml_provider, saml_idp, sso_settings, test_settings
    ):
        redirect = client.get(
            "/api/sso/saml/login",
            params={"tenant_id": TENANT, "provider_id": str(saml_provider.id)},
            follow_redirects=False,
        )
        relay_state = parse_qs(urlparse(redirect.headers["location"]).query)["RelayState"][0]
        session = repository.get_auth_session_by_state(relay_state.split(":", 1)[1])

        document = saml_idp.signed_response(
            in_response_to=session.nonce,
            audience=sso_settings.sp_entity_id,
            destination=sso_settings.acs_url,
        )
        response = client.post(
            "/api/sso/saml/acs", data={"SAMLResponse": document, "RelayState": relay_state}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["email"] == "jane@acme.com"
        assert body["provider_id"] == str(saml_provider.id)
        assert verify_token(body["access_token"], test_settings).role == "member"

    def test_acs_rejects_bad_signature(self, client, saml_provider, repository, saml_idp, sso_settings):
        redirect = client.get(
            "/api/sso/saml/login",
            params={"tenant_id": TENANT, "provider_id": str(saml_provider.id)},
            follow_redirects=False,
        )
        relay_state = parse_qs(urlparse(redirect.headers["location"]).query)["RelayState"][0]
        session = repository.get_auth_session_by_state(relay_state.split(":", 1)[1])
        unsigned = saml_idp.encode(
            saml_idp.response_xml(
                in_response_to=session.nonce,
                audience=sso_settings.sp_entity_id,
                destination=sso_settings.acs_url,
            )
        )
        response = client.post(
            "/api/sso/saml/acs", data={"SAMLResponse": unsigned, "RelayState": relay_state}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_ASSERTION"

    def test_acs_requires_form_fields(self, client):
        assert client.post("/api/sso/saml/acs", data={}).status_code == 422

    def test_logout_builds_idp_redirect(self, app, repository, saml_provider):
        link_identity(
            repository,
            TestUsers.REGULAR_USER_ID,
            saml_provider,
            subject="user@acme.com",
            profile={"session_index": "_idx-9"},
        )
        app.dependency_overrides[get_current_active_user] = create_mock_get_current_user(
            MockUserContext.create_user(provider_id=saml_provider.id)
        )
        response = TestClient(app).post("/api/sso/saml/logout", json={"relay_state": "/bye"})

        assert response.status_code == 200
        url = response.json()["logout_url"]
        assert url.startswith("https://idp.test.example/saml/slo?")
        assert parse_qs(urlparse(url).query)["RelayState"] == ["/bye"]

    def test_logout_without_saml_identity(self, user_client):
        response = user_client.post("/api/sso/saml/logout", json={})
        assert response.status_code == 404
        assert response.json()["error"] == "IDENTITY_NOT_FOUND"

    def test_slo_answers_idp_logout_request(
        self, client, repository, saml_provider, saml_idp, sso_settings
    ):
        identity = link_identity(
            repository,
            TestUsers.REGULAR_USER_ID,
            saml_provider,
            subject="user@acme.com",
            profile={"session_index": "_idx-9"},
        )
        logout = saml_idp.logout_request_xml(
            name_id="user@acme.com", destination=sso_settings.slo_url, session_index="_idx-9"
        )
        response = client.get(
            f"/api/sso/saml/slo?{saml_idp.redirect_query(logout, relay_state='r-1')}",
            follow_redirects=False,
        )

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://idp.test.example/saml/slo?SAMLResponse=")
        assert parse_qs(urlparse(location).query)["RelayState"] == ["r-1"]
        assert repository.identities[identity.id].profile["session_index"] is None

    def test_slo_completes_sp_logout(self, client, saml_provider, saml_idp, sso_settings):
        answer = saml_idp.logout_response_xml("_sp-request", sso_settings.slo_url)
        query = saml_idp.redirect_query(
            answer, parameter="SAMLResponse", relay_state="/signed-out"
        )
        response = client.get(f"/api/sso/saml/slo?{query}", follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"] == "/signed-out"

    def test_slo_without_local_relay_state(
        self, client, saml_provider, saml_idp, sso_settings
    ):
        answer = saml_idp.logout_response_xml("_sp-request", sso_settings.slo_url)
        query = saml_idp.redirect_query(answer, parameter="SAMLResponse")
        response = client.get(f"/api/sso/saml/slo?{query}", follow_redirects=False)
        assert response.status_code == 200
        assert response.json() == {
            "status": "logged_out",
            "provider_id": str(saml_provider.id),
        }

    def test_slo_rejects_unsigned_logout_request(
        self, client, saml_provider, saml_idp, sso_settings
    ):
        logout = saml_idp.logout_request_xml(
            name_id="user@acme.com", destination=sso_settings.slo_url
        )
        query = saml_idp.redirect_query(logout, signed=False)
        response = client.get(f"/api/sso/saml/slo?{query}", follow_redirects=False)
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_ASSERTION"

    def test_slo_without_message(self, client):
        response = client.get("/api/sso/saml/slo")
        assert response.status_code == 400

    def test_idp_metadata_requires_admin(self, user_client, saml_idp):
        response = user_client.post(
            "/api/sso/saml/idp-metadata", content=saml_idp.metadata_xml()
        )
        assert response.status_code == 403

    def test_idp_metadata_parsing(self, admin_client, saml_idp):
        response = admin_client.post(
            "/api/sso/saml/idp-metadata",
            content=saml_idp.metadata_xml(),
            headers={"Content-Type": "application/xml"},
        )
        assert response.status_code == 200
        assert response.json()["entity_id"] == SAML_IDP_ENTITY_ID
        assert response.json()["sso_url"] == SAML_SSO_URL


#                        IDENTITIES AND SCIM
# ----------------------------------------------------------------------------


@pytest.mark.integration
@pytest.mark.provisioning
class TestIdentities:
    def test_list_my_identities(self, user_client, repository, oidc_provider):
        mine = link_identity(repository, TestUsers.REGULAR_USER_ID, oidc_provider)
        link_identity(repository, TestUsers.ADMIN_USER_ID, oidc_provider, subject="other")

        body = user_client.get("/api/sso/identities").json()
        assert [i["id"] for i in body] == [str(mine.id)]
        assert "access_token_encrypted" not in body[0]

    def test_unlink_own_identity(self, user_client, repository, oidc_provider, audit):
        mine = link_identity(repository, TestUsers.REGULAR_USER_ID, oidc_provider)
        response = user_client.delete(f"/api/sso/identities/{mine.id}")
        assert response.status_code == 204
        assert mine.id not in repository.identities

    def test_cannot_unlink_someone_elses_identity(self, user_client, repository, oidc_provider):
        theirs = link_identity(repository, TestUsers.ADMIN_USER_ID, oidc_provider)
        response = user_client.delete(f"/api/sso/identities/{theirs.id}")
        assert response.status_code == 403
        assert theirs.id in repository.identities

    def test_admin_unlinks_within_tenant(self, admin_client, repository, oidc_provider):
        theirs = link_identity(repository, TestUsers.REGULAR_USER_ID, oidc_provider)
        assert admin_client.delete(f"/api/sso/identities/{theirs.id}").status_code == 204

    def test_unlink_unknown_identity(self, user_client):
        response = user_client.delete(f"/api/sso/identities/{uuid4()}")
        assert response.status_code == 404

    def test_admin_deprovision(self, admin_client, repository, oidc_provider):
        identity = link_identity(
            repository, TestUsers.REGULAR_USER_ID, oidc_provider, access_token_encrypted="x"
        )
        response = admin_client.post(
            "/api/sso/identities/deprovision",
            json={"provider_id": str(oidc_provider.id), "external_subject_id": "idp-user-1"},
        )
        assert response.status_code == 200
        assert response.json() == {"deprovisioned": True, "identity_id": str(identity.id)}
        assert repository.identities[identity.id].is_revoked
        assert repository.identities[identity.id].access_token_encrypted is None

    def test_scim_for_unknown_user(self, admin_client, oidc_provider):
        response = admin_client.post(
            "/api/sso/scim/deprovision",
            json={"provider_id": str(oidc_provider.id), "scim_user_id": "ghost"},
        )
        assert response.json() == {"deprovisioned": False, "identity_id": None}

    def test_scim_rejects_unknown_action(self, admin_client, oidc_provider):
        response = admin_client.post(
            "/api/sso/scim/deprovision",
            json={
                "provider_id": str(oidc_provider.id),
                "scim_user_id": "idp-user-1",
                "action": "suspend",
            },
        )
        assert response.status_code == 422

    def test_deprovision_requires_admin(self, user_client, oidc_provider):
        response = user_client.post(
            "/api/sso/identities/deprovision",
            json={"provider_id": str(oidc_provider.id), "external_subject_id": "x"},
        )
        assert response.status_code == 403
