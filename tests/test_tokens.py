"""Unit tests for auth/tokens.py -- access-token issuer and password helpers.

Covers:
- issue(): exp == iat + TTL exactly, unique jti, roles and subject carried
- validate(): OK / EXPIRED / INVALID_SIGNATURE / MALFORMED, skew tolerance
- extract_jti() / extract_expiry() read claims without verifying
- bcrypt helpers: round trip, malformed stored hash is a non-match
"""

from datetime import timedelta

from jose import jwt

from auth.results import TokenStatus
from auth.tokens import (
    AccessTokenIssuer,
    generate_refresh_token,
    hash_password,
    verify_password,
)

TEST_SECRET = "test-secret-key-that-is-at-least-32-chars"

# ---------------------------------------------------------------------------
# issue()
# ---------------------------------------------------------------------------


def test_expiry_is_issue_time_plus_ttl_exactly(issuer, clock):
    clock.advance(microseconds=987654)  # sub-second part must not leak into exp
    token = issuer.issue(7, ["ROLE_USER"])
    assert token.expires_at - token.claims.issued_at == timedelta(seconds=900)

    claims = jwt.get_unverified_claims(token.token)
    assert claims["exp"] - claims["iat"] == 900


def test_jti_unique_across_issues(issuer):
    jtis = {issuer.issue(1, []).jti for _ in range(200)}
    assert len(jtis) == 200


def test_claims_carry_subject_and_sorted_roles(issuer):
    token = issuer.issue(42, ["ROLE_ADMIN", "ROLE_USER", "ROLE_AUDIT"])
    result = issuer.validate(token.token)
    assert result.ok
    assert result.value.principal_id == 42
    assert result.value.roles == ["ROLE_ADMIN", "ROLE_AUDIT", "ROLE_USER"]
    assert result.value.jti == token.jti


# ---------------------------------------------------------------------------
# validate()
# ---------------------------------------------------------------------------


def test_valid_until_exp_inclusive(issuer, clock):
    token = issuer.issue(1, [])
    clock.advance(seconds=900)
    assert issuer.validate(token.token).ok
    clock.advance(seconds=1)
    assert issuer.validate(token.token).status is TokenStatus.EXPIRED


def test_clock_skew_extends_acceptance(clock):
    skewed = AccessTokenIssuer(TEST_SECRET, ttl_seconds=60, clock_skew_seconds=30, clock=clock)
    token = skewed.issue(1, [])
    clock.advance(seconds=89)
    assert skewed.validate(token.token).ok
    clock.advance(seconds=2)
    assert skewed.validate(token.token).status is TokenStatus.EXPIRED


def test_wrong_key_is_invalid_signature(issuer, clock):
    other = AccessTokenIssuer("another-secret-key-that-is-32-chars-long", clock=clock)
    token = other.issue(1, [])
    assert issuer.validate(token.token).status is TokenStatus.INVALID_SIGNATURE


def test_wrong_issuer_is_invalid_signature(issuer, clock):
    other = AccessTokenIssuer(TEST_SECRET, issuer="someone-else", clock=clock)
    token = other.issue(1, [])
    assert issuer.validate(token.token).status is TokenStatus.INVALID_SIGNATURE


def test_wrong_type_is_invalid_signature(issuer, clock):
    now = int(clock().timestamp())
    forged = jwt.encode(
        {"sub": "1", "jti": "x", "iat": now, "exp": now + 60, "iss": "sessionkeeper", "type": "refresh"},
        TEST_SECRET,
        algorithm="HS256",
    )
    assert issuer.validate(forged).status is TokenStatus.INVALID_SIGNATURE


def test_garbage_is_malformed(issuer):
    assert issuer.validate("not-a-jwt").status is TokenStatus.MALFORMED
    assert issuer.validate("").status is TokenStatus.MALFORMED


def test_tampered_payload_is_rejected(issuer):
    token = issuer.issue(1, ["ROLE_USER"]).token
    header, _payload, signature = token.split(".")
    forged_payload = jwt.encode({"sub": "2"}, "x", algorithm="HS256").split(".")[1]
    result = issuer.validate(f"{header}.{forged_payload}.{signature}")
    assert not result.ok
    assert result.status is TokenStatus.INVALID_SIGNATURE


# ---------------------------------------------------------------------------
# Unverified extraction
# ---------------------------------------------------------------------------


def test_extract_reads_expired_token(issuer, clock):
    token = issuer.issue(1, [])
    clock.advance(days=1)
    assert issuer.extract_jti(token.token) == token.jti
    assert issuer.extract_expiry(token.token) == token.expires_at


def test_extract_returns_none_for_garbage(issuer):
    assert issuer.extract_jti("garbage") is None
    assert issuer.extract_expiry("garbage") is None


# ---------------------------------------------------------------------------
# Passwords and refresh token strings
# ---------------------------------------------------------------------------


def test_password_round_trip():
    hashed = hash_password("s3cret-password")
    assert verify_password("s3cret-password", hashed)
    assert not verify_password("wrong", hashed)


def test_malformed_hash_is_non_match():
    assert verify_password("anything", "not-a-bcrypt-hash") is False


def test_refresh_token_strings_are_long_and_distinct():
    tokens = {generate_refresh_token() for _ in range(100)}
    assert len(tokens) == 100
    assert all(len(t) >= 43 for t in tokens)
