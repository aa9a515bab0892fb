"""Unit tests for auth/store.py -- the credential store used by the orchestrator."""

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import Principal


def test_row_maps_to_principal_with_aware_created_at(user_store, alice):
    principal = user_store.get_by_username("alice")
    assert principal.id == alice.id
    assert principal.roles == ["ROLE_USER"]
    assert principal.created_at is not None
    assert principal.created_at.utcoffset().total_seconds() == 0


def test_email_is_stored_lowercased_and_unique(user_store, alice):
    assert user_store.exists_by_email("ALICE@Example.com")
    with pytest.raises(IntegrityError):
        user_store.create_user(Principal(username="alice2", email="Alice@example.com", hashed_password="x"))


def test_set_roles_and_active(user_store, alice):
    assert user_store.set_roles(alice.id, ["ROLE_ADMIN", "ROLE_USER", "ROLE_ADMIN"])
    assert user_store.set_active(alice.id, False)
    principal = user_store.get_by_id(alice.id)
    assert principal.roles == ["ROLE_ADMIN", "ROLE_USER"]
    assert principal.is_active is False
    assert user_store.set_roles(9999, ["ROLE_USER"]) is False
