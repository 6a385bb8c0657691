import asyncio

import pytest

from prism.access import AccessAuthorizer
from prism.errors import PanelAPIError, UserNotFound
from prism.identity import IdentityResolver, PanelUser, normalize_id

from conftest import owned_server, panel_user


def authorizer_for(panel, ownership):
    return AccessAuthorizer(IdentityResolver(panel, ownership), ownership)


def authorize(authorizer, user_id, server_id):
    return asyncio.run(authorizer.authorize(user_id, server_id))


@pytest.mark.parametrize("raw", ["abcd-1234", "abcd", "abcd-", "a-b-c", "", "0f3c2a1e-9b8d-4c7e-a6f5-1d2e3f4a5b6c"])
def test_normalize_is_idempotent(raw):
    assert normalize_id(normalize_id(raw)) == normalize_id(raw)


def test_normalize_takes_prefix_before_first_hyphen():
    assert normalize_id("abcd-1234") == normalize_id("abcd-5678") == "abcd"
    assert normalize_id("abcd") == "abcd"
    assert normalize_id(None) == ""
    assert normalize_id(42) == ""


def test_panel_user_from_attributes():
    user = PanelUser.from_attributes(panel_user("7", "alice", [owned_server("abc12345")]))
    assert user.username == "alice"
    assert user.owns("abc12345-ffff")
    assert not user.owns("zzz")


def test_scenario_owner_subuser_and_stranger(panel, ownership):
    panel.users["A"] = panel_user("A", "alice", [owned_server("abc12345", "abc12345-xxxx")])
    panel.users["B"] = panel_user("B", "bob")
    panel.users["C"] = panel_user("C", "carol")
    ownership.set_subuser_servers("bob", [{"id": "abc12345-xxxx", "name": "Survival", "ownerId": "A"}])
    authorizer = authorizer_for(panel, ownership)

    owner = authorize(authorizer, "A", "abc12345")
    assert owner.allowed and owner.path == "owner"

    subuser = authorize(authorizer, "B", "abc12345")
    assert subuser.allowed and subuser.path == "subuser"

    stranger = authorize(authorizer, "C", "abc12345")
    assert not stranger.allowed
    assert stranger.reason == "no-subuser-record"


def test_owner_path_ignores_store_contents(panel, ownership):
    panel.users["A"] = panel_user("A", "alice", [owned_server("abc12345")])
    ownership.set_subuser_servers("alice", [])
    decision = authorize(authorizer_for(panel, ownership), "A", "abc12345-0000-4000-8000-000000000000")
    assert decision.allowed and decision.path == "owner"


def test_owner_match_on_uuid_field(panel, ownership):
    panel.users["A"] = panel_user("A", "alice", [
        {"attributes": {"identifier": "zzzz9999", "id": "abc12345-0000"}},
    ])
    assert authorize(authorizer_for(panel, ownership), "A", "abc12345").allowed


def test_subuser_record_without_match_is_forbidden(panel, ownership):
    panel.users["B"] = panel_user("B", "bob")
    ownership.set_subuser_servers("bob", [{"id": "other999", "name": "x", "ownerId": "A"}])
    decision = authorize(authorizer_for(panel, ownership), "B", "abc12345")
    assert not decision.allowed
    assert decision.reason == "forbidden"


def test_missing_server_id_denied_before_remote_call(panel, ownership):
    decision = authorize(authorizer_for(panel, ownership), "A", "")
    assert not decision.allowed
    assert decision.reason == "missing-server-id"
    assert panel.user_lookups == 0


def test_panel_failure_is_not_a_denial(panel, ownership):
    panel.fail_users = True
    with pytest.raises(PanelAPIError):
        authorize(authorizer_for(panel, ownership), "A", "abc12345")


def test_unknown_user_raises_not_found(panel, ownership):
    with pytest.raises(UserNotFound):
        authorize(authorizer_for(panel, ownership), "ghost", "abc12345")


def test_resolver_follows_linked_panel_id(panel, ownership):
    panel.users["99"] = panel_user("99", "alice", [owned_server("abc12345")])
    ownership.link_panel_user("discord-1", 99)
    user = asyncio.run(IdentityResolver(panel, ownership).resolve("discord-1"))
    assert user.panel_id == "99"
    assert user.owns("abc12345")
