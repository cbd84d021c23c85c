"""
Tests for sign-in challenge generation and role resolution.

Coverage:
- state / nonce / PKCE / SAML request id generation
- resolve_role priority, tie-breaking and fallbacks

Test types: Unit
"""

import base64
import hashlib
import re

import pytest

from sentinel_sso.services.sso.challenges import (
    build_code_challenge,
    generate_nonce,
    generate_pkce_pair,
    generate_saml_request_id,
    generate_state,
)
from sentinel_sso.services.sso.roles import BASELINE_ROLE, resolve_role
from sentinel_sso.services.sso.schemas import RoleMapping, RoleMappingConfig


#                            CHALLENGES
# ----------------------------------------------------------------------------


@pytest.mark.unit
@pytest.mark.security
class TestChallenges:
    def test_state_and_nonce_are_unique_and_urlsafe(self):
        values = {generate_state() for _ in range(50)} | {generate_nonce() for _ in range(50)}
        assert len(values) == 100
        assert all(re.fullmatch(r"[A-Za-z0-9_-]{43,}", v) for v in values)

    def test_state_and_nonce_do_not_repeat_at_volume(self):
        states = {generate_state() for _ in range(10_000)}
        nonces = {generate_nonce() for _ in range(10_000)}
        assert len(states) == 10_000
        assert len(nonces) == 10_000
        assert states.isdisjoint(nonces)

    def test_pkce_pair_uses_s256(self):
        pair = generate_pkce_pair()
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(pair.code_verifier.encode()).digest())
            .rstrip(b"=")
            .decode()
        )
        assert pair.method == "S256"
        assert pair.code_challenge == expected
        assert 43 <= len(pair.code_verifier) <= 128

    def test_code_challenge_matches_rfc7636_example(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert build_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_saml_request_id_is_a_valid_xml_id(self):
        request_id = generate_saml_request_id()
        assert request_id.startswith("_")
        assert not request_id[0].isdigit()
        assert generate_saml_request_id() != request_id


#                          ROLE RESOLUTION
# ----------------------------------------------------------------------------


def _mapping(*rules, default_role=None) -> RoleMappingConfig:
    return RoleMappingConfig(
        mappings=[RoleMapping(source=s, role=r, priority=p) for s, r, p in rules],
        default_role=default_role,
    )


@pytest.mark.unit
class TestResolveRole:
    def test_lowest_priority_match_wins(self):
        mapping = _mapping(("Engineering", "member", 10), ("Admins", "admin", 1))
        assert resolve_role(["Engineering", "Admins"], mapping) == "admin"

    def test_declaration_order_breaks_ties(self):
        mapping = _mapping(("A", "viewer", 5), ("B", "editor", 5))
        assert resolve_role(["B", "A"], mapping) == "viewer"

    def test_unmatched_values_fall_back_to_provider_default(self):
        mapping = _mapping(("Admins", "admin", 1), default_role="viewer")
        assert resolve_role(["Sales"], mapping) == "viewer"

    def test_no_default_falls_back_to_baseline(self):
        assert resolve_role([], RoleMappingConfig()) == BASELINE_ROLE
        assert resolve_role(["x"], RoleMappingConfig(), baseline_role="guest") == "guest"

    def test_matching_is_exact(self):
        mapping = _mapping(("Admins", "admin", 1))
        assert resolve_role(["admins"], mapping) == BASELINE_ROLE

    def test_is_pure(self):
        mapping = _mapping(("Admins", "admin", 1))
        values = ["Admins"]
        assert resolve_role(values, mapping) == resolve_role(values, mapping)
        assert values == ["Admins"]
        assert mapping.mappings[0].role == "admin"
