"""
Tests for identity publishing and profile verification lookup
"""

from unittest.mock import AsyncMock, Mock

import pytest

from cartsync.identity import IdentityProvider, SupabaseIdentityResolver
from cartsync.models import Identity, IdentityState


class TestIdentityProvider:
    """Test identity change notification"""

    def test_starts_unresolved(self):
        assert IdentityProvider().current is None

    @pytest.mark.asyncio
    async def test_notifies_on_change(self):
        provider = IdentityProvider()
        listener = AsyncMock()
        provider.subscribe(listener)

        await provider.set(Identity.anonymous())
        await provider.set(Identity.verified("user-1"))

        assert [c.args[0].state for c in listener.await_args_list] == [
            IdentityState.ANONYMOUS,
            IdentityState.VERIFIED,
        ]

    @pytest.mark.asyncio
    async def test_same_identity_is_noop(self):
        provider = IdentityProvider(Identity.verified("user-1"))
        listener = AsyncMock()
        provider.subscribe(listener)

        await provider.set(Identity.verified("user-1"))

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        provider = IdentityProvider()
        listener = AsyncMock()
        unsubscribe = provider.subscribe(listener)

        unsubscribe()
        await provider.set(Identity.anonymous())

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self):
        provider = IdentityProvider()
        broken = AsyncMock(side_effect=RuntimeError("boom"))
        healthy = AsyncMock()
        provider.subscribe(broken)
        provider.subscribe(healthy)

        await provider.set(Identity.anonymous())

        healthy.assert_awaited_once()
        assert provider.current == Identity.anonymous()


class TestSupabaseIdentityResolver:
    """Test verification lookup against the users table"""

    @pytest.mark.asyncio
    async def test_no_auth_user_is_anonymous(self, mock_supabase_client):
        resolver = SupabaseIdentityResolver(mock_supabase_client)

        identity = await resolver.resolve(None)

        assert identity.state == IdentityState.ANONYMOUS
        mock_supabase_client.table.assert_not_called()

    @pytest.mark.asyncio
    async def test_verified_profile(self, mock_supabase_client):
        table = mock_supabase_client.table.return_value
        table.execute.return_value = Mock(data=[{"isVerified": True}])
        resolver = SupabaseIdentityResolver(mock_supabase_client)

        identity = await resolver.resolve("user-1")

        assert identity == Identity.verified("user-1")
        mock_supabase_client.table.assert_called_once_with("users")
        table.select.assert_called_once_with("isVerified")
        table.eq.assert_called_once_with("userId", "user-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rows", [[], [{"isVerified": False}], [{"isVerified": None}], [{"isVerified": "true"}]])
    async def test_not_verified_profile(self, mock_supabase_client, rows):
        table = mock_supabase_client.table.return_value
        table.execute.return_value = Mock(data=rows)
        resolver = SupabaseIdentityResolver(mock_supabase_client)

        identity = await resolver.resolve("user-1")

        assert identity == Identity.unverified("user-1")

    @pytest.mark.asyncio
    async def test_lookup_failure_fails_closed(self, mock_supabase_client):
        table = mock_supabase_client.table.return_value
        table.execute.side_effect = RuntimeError("timeout")
        resolver = SupabaseIdentityResolver(mock_supabase_client)

        identity = await resolver.resolve("user-1")

        assert identity.state == IdentityState.UNVERIFIED
