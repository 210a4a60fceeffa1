"""
Tests for product enrichment
"""

from decimal import Decimal
from unittest.mock import Mock

import pytest

from cartsync.services.enrichment import PRODUCT_COLUMNS, ProductEnrichmentService


class TestProductEnrichmentService:
    """Test batched product lookups"""

    @pytest.mark.asyncio
    async def test_empty_ids_skip_query(self, mock_supabase_client):
        service = ProductEnrichmentService(mock_supabase_client)

        assert await service.enrich([]) == {}
        mock_supabase_client.table.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_batched_query(self, mock_supabase_client, sample_products):
        table = mock_supabase_client.table.return_value
        table.execute.return_value = Mock(data=list(sample_products.values()))
        service = ProductEnrichmentService(mock_supabase_client)

        products = await service.enrich(["prod-a", "prod-b", "prod-a"])

        mock_supabase_client.table.assert_called_once_with("products")
        table.select.assert_called_once_with(PRODUCT_COLUMNS)
        table.in_.assert_called_once_with("id", ["prod-a", "prod-b"])
        assert products["prod-a"].name == "Latitude 7440"
        assert products["prod-a"].stock_quantity == 5
        assert products["prod-a"].price == Decimal("120.50")
        assert products["prod-b"].status == "Publish"

    @pytest.mark.asyncio
    async def test_unknown_ids_absent(self, mock_supabase_client, sample_products):
        table = mock_supabase_client.table.return_value
        table.execute.return_value = Mock(data=[sample_products["prod-a"]])
        service = ProductEnrichmentService(mock_supabase_client)

        products = await service.enrich(["prod-a", "prod-gone"])

        assert list(products) == ["prod-a"]

    @pytest.mark.asyncio
    async def test_failure_degrades_to_empty(self, mock_supabase_client):
        table = mock_supabase_client.table.return_value
        table.execute.side_effect = RuntimeError("timeout")
        service = ProductEnrichmentService(mock_supabase_client)

        assert await service.enrich(["prod-a"]) == {}

    @pytest.mark.asyncio
    async def test_malformed_row_skipped(self, mock_supabase_client, sample_products):
        table = mock_supabase_client.table.return_value
        table.execute.return_value = Mock(data=[{"product_name": "no id"}, sample_products["prod-b"]])
        service = ProductEnrichmentService(mock_supabase_client)

        products = await service.enrich(["prod-b"])

        assert list(products) == ["prod-b"]
