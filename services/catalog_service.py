"""
CatalogService client for fetching the service catalog
"""
import httpx
import logging
from typing import List, Dict, Optional
from config.config import settings
from errors import Unavailable

logger = logging.getLogger(__name__)

MIN_DURATION_MINUTES = 5


class CatalogServiceClient:
    """Client for the external service catalog"""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[int] = None):
        """
        Args:
            base_url: CatalogService base URL (from env or config)
            timeout: Request timeout in seconds
        """
        self.base_url = base_url or settings.CATALOG_SERVICE_URL
        self.timeout = timeout or settings.CATALOG_SERVICE_TIMEOUT

    async def fetch_services(self) -> List[Dict]:
        """
        Fetch all service definitions from CatalogService

        Returns:
            List of service dictionaries with structure:
            {
                "id": "consultation",
                "name": "Consultation",
                "duration_minutes": 30,
                "price": 50.0,
                "is_active": true
            }

        Entries without a usable duration get the 5 minute minimum.
        """
        url = f"{self.base_url}/services"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                logger.info(f"Fetching services from CatalogService: {url}")
                response = await client.get(url)
                response.raise_for_status()

                services = response.json()
                logger.info(f"Successfully fetched {len(services)} services from CatalogService")

                for service in services:
                    duration = service.get('duration_minutes')
                    if not duration or duration < MIN_DURATION_MINUTES:
                        logger.warning(
                            f"Service {service.get('id')} has invalid duration {duration!r}, "
                            f"using default ({MIN_DURATION_MINUTES} minutes)"
                        )
                        service['duration_minutes'] = MIN_DURATION_MINUTES
                    service.setdefault('price', 0.0)

                return services

        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch services from CatalogService: {e}")
            raise Unavailable(f"CatalogService unavailable: {e}")

    async def health_check(self) -> bool:
        """
        Check if CatalogService is available

        Returns:
            True if service is healthy, False otherwise
        """
        url = f"{self.base_url}/health"

        try:
            async with httpx.AsyncClient(timeout=5) as client:
                response = await client.get(url)
                return response.status_code == 200
        except httpx.HTTPError:
            return False
