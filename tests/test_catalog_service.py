"""
Unit tests for services/catalog_service.py
Tests CatalogServiceClient for fetching the service catalog
"""
import pytest
from unittest.mock import patch, MagicMock
import httpx

from errors import Unavailable
from services.catalog_service import CatalogServiceClient


class TestCatalogServiceClient:
    """Tests for CatalogServiceClient"""

    @pytest.mark.asyncio
    async def test_fetch_services_success(self, mock_catalog_service_response):
        """Test successfully fetching services from CatalogService"""
        client = CatalogServiceClient(base_url="http://test-catalog:8000")

        with patch('httpx.AsyncClient.get') as mock_get:
            mock_response = MagicMock()
            mock_response.json.return_value = mock_catalog_service_response
            mock_response.raise_for_status = MagicMock()
            mock_get.return_value = mock_response

            services = await client.fetch_services()

            assert [s['id'] for s in services] == ["consultation", "passport"]
            mock_get.assert_called_once_with("http://test-catalog:8000/services")

    @pytest.mark.asyncio
    async def test_fetch_services_fills_defaults(self):
        """Missing or too short durations get the 5 minute minimum; price defaults to 0"""
        client = CatalogServiceClient(base_url="http://test-catalog:8000")

        incomplete = [
            {"id": "no-duration", "name": "No Duration"},
            {"id": "too-short", "name": "Too Short", "duration_minutes": 2, "price": 5.0},
        ]

        with patch('httpx.AsyncClient.get') as mock_get:
            mock_response = MagicMock()
            mock_response.json.return_value = incomplete
            mock_response.raise_for_status = MagicMock()
            mock_get.return_value = mock_response

            services = await client.fetch_services()

            assert services[0]['duration_minutes'] == 5
            assert services[0]['price'] == 0.0
            assert services[1]['duration_minutes'] == 5
            assert services[1]['price'] == 5.0

    @pytest.mark.asyncio
    async def test_fetch_services_http_error(self):
        """Transport errors surface as Unavailable"""
        client = CatalogServiceClient(base_url="http://test-catalog:8000")

        with patch('httpx.AsyncClient.get') as mock_get:
            mock_get.side_effect = httpx.ConnectError("Connection failed")

            with pytest.raises(Unavailable, match="CatalogService unavailable"):
                await client.fetch_services()

    @pytest.mark.asyncio
    async def test_fetch_services_bad_status(self):
        client = CatalogServiceClient(base_url="http://test-catalog:8000")
        request = httpx.Request("GET", "http://test-catalog:8000/services")

        with patch('httpx.AsyncClient.get') as mock_get:
            mock_get.return_value = httpx.Response(500, request=request)

            with pytest.raises(Unavailable):
                await client.fetch_services()

    @pytest.mark.asyncio
    async def test_health_check_success(self):
        client = CatalogServiceClient(base_url="http://test-catalog:8000")

        with patch('httpx.AsyncClient.get') as mock_get:
            mock_response = MagicMock()
            mock_response.status_code = 200
            mock_get.return_value = mock_response

            assert await client.health_check() is True
            mock_get.assert_called_once_with("http://test-catalog:8000/health")

    @pytest.mark.asyncio
    async def test_health_check_failure(self):
        client = CatalogServiceClient(base_url="http://test-catalog:8000")

        with patch('httpx.AsyncClient.get') as mock_get:
            mock_get.side_effect = httpx.ConnectError("Connection failed")

            assert await client.health_check() is False

    def test_defaults_from_settings(self):
        with patch('services.catalog_service.settings') as mock_settings:
            mock_settings.CATALOG_SERVICE_URL = "http://catalog:8000"
            mock_settings.CATALOG_SERVICE_TIMEOUT = 7

            client = CatalogServiceClient()

            assert client.base_url == "http://catalog:8000"
            assert client.timeout == 7
