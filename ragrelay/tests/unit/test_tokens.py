from __future__ import annotations

from ragrelay.persistence.db import SessionLocal
from ragrelay.services.tokens import (
    SCOPE_RESOURCE,
    SCOPE_TENANT,
    TokenAuthority,
    bearer_token,
    generate_token,
    tokens_match,
)


def test_generated_tokens_are_long_and_unique() -> None:
    tokens = {generate_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all(len(token) == 64 for token in tokens)


def test_tokens_match_rejects_empty_values() -> None:
    assert tokens_match("abc", "abc")
    assert not tokens_match("abc", "abd")
    assert not tokens_match(None, "abc")
    assert not tokens_match("abc", "")


def test_bearer_token_parsing() -> None:
    assert bearer_token("Bearer tok-1") == "tok-1"
    assert bearer_token("bearer   tok-2 ") == "tok-2"
    assert bearer_token("Basic dXNlcg==") is None
    assert bearer_token("Bearer ") is None
    assert bearer_token(None) is None


async def test_resource_token_is_bound_to_its_tenant() -> None:
    authority = TokenAuthority()
    async with SessionLocal() as session:
        token = await authority.mint_resource_token(session, "t1", "doc-1", resource_type="document")
        await session.commit()

        assert await authority.verify(session, "t1", "doc-1", token, SCOPE_RESOURCE)
        # Same token presented for another tenant or resource fails closed.
        assert not await authority.verify(session, "t2", "doc-1", token, SCOPE_RESOURCE)
        assert not await authority.verify(session, "t1", "doc-2", token, SCOPE_RESOURCE)
        assert not await authority.verify(session, "t1", "doc-1", None, SCOPE_RESOURCE)
        assert not await authority.verify(session, "t1", None, token, SCOPE_RESOURCE)


async def test_reminting_rotates_resource_token() -> None:
    authority = TokenAuthority()
    async with SessionLocal() as session:
        first = await authority.mint_resource_token(session, "t1", "doc-1", resource_type="document")
        second = await authority.mint_resource_token(session, "t1", "doc-1", resource_type="document")
        await session.commit()

        assert first != second
        assert not await authority.verify(session, "t1", "doc-1", first, SCOPE_RESOURCE)
        assert await authority.verify(session, "t1", "doc-1", second, SCOPE_RESOURCE)
        assert await authority.current_resource_token(session, "t1", "doc-1") == second
        assert await authority.current_resource_token(session, "t2", "doc-1") is None


async def test_tenant_token_scope_is_separate_from_resource_scope() -> None:
    authority = TokenAuthority()
    async with SessionLocal() as session:
        tenant_token = await authority.mint_tenant_token(session, "t1")
        resource_token = await authority.mint_resource_token(session, "t1", "msg-1", resource_type="chat_message")
        await session.commit()

        assert await authority.verify(session, "t1", None, tenant_token, SCOPE_TENANT)
        assert not await authority.verify(session, "t2", None, tenant_token, SCOPE_TENANT)
        assert not await authority.verify(session, "t1", None, resource_token, SCOPE_TENANT)
        assert not await authority.verify(session, "t1", "msg-1", tenant_token, SCOPE_RESOURCE)
