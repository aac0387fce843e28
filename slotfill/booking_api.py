"""
Booking service client - HTTP client for the appointment booking API.
Centralizes headers, error handling, and request logic.
"""

import logging
import requests
from datetime import datetime
from typing import Dict, Any, List, Optional

from slotfill.config import get_config

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "slotfill-waitlist/1.0",
}


class BookingApiClient:
    """HTTP client for the booking service"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: int = 10,
    ):
        """
        Initialize API client.

        Args:
            base_url: Booking service base URL
            api_key: Optional bearer token
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _get_headers(
        self,
        content_type: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, str]:
        headers = DEFAULT_HEADERS.copy()
        if content_type:
            headers["Content-Type"] = content_type
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def get(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Make GET request to the booking service.

        Returns:
            Response JSON data or None on error
        """
        url = f"{self.base_url}/{endpoint}"
        headers = self._get_headers()

        try:
            logger.debug(f"GET {endpoint} with params={params}")
            response = requests.get(
                url, headers=headers, params=params, timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            logger.warning(f"HTTP {e.response.status_code} error for GET {endpoint}")
            return None
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error for GET {endpoint}: {e}")
            return None

    def post(
        self,
        endpoint: str,
        data: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Make POST request to the booking service.

        Args:
            endpoint: API endpoint path (e.g., "appointments")
            data: JSON data to send
            idempotency_key: Sent as Idempotency-Key so retries never double-book

        Returns:
            Response JSON data or None on error
        """
        url = f"{self.base_url}/{endpoint}"
        headers = self._get_headers(
            content_type="application/json", idempotency_key=idempotency_key
        )

        try:
            logger.debug(f"POST {endpoint}")
            response = requests.post(
                url, headers=headers, json=data, timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout:
            logger.error(f"Timeout after {self.timeout}s for POST {endpoint}")
            return None
        except requests.exceptions.HTTPError as e:
            logger.error(f"HTTP {e.response.status_code} error for POST {endpoint}")
            try:
                error_data = e.response.json()
                logger.error(f"Error details: {error_data}")
            except ValueError:
                logger.error(f"Response text: {e.response.text[:200]}")
            return None
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error for POST {endpoint}: {e}")
            return None

    def create_appointment(
        self,
        customer_id: str,
        pet_id: str,
        service_id: str,
        slot_time: datetime,
        discount_percent: int,
        idempotency_key: str,
    ) -> Optional[str]:
        """
        Book an appointment for a waitlist winner

        Returns:
            Appointment ID, or None if the booking could not be created
        """
        data = {
            "customer_id": customer_id,
            "pet_id": pet_id,
            "service_id": service_id,
            "scheduled_at": slot_time.isoformat(),
            "discount_percentage": discount_percent,
            "source": "waitlist",
        }

        logger.info(
            f"Creating appointment: customer={customer_id}, service={service_id}, slot={slot_time.isoformat()}"
        )
        result = self.post("appointments", data, idempotency_key=idempotency_key)

        if result and result.get("id"):
            logger.info(f"Appointment created: id={result['id']}")
            return str(result["id"])

        logger.error(f"Appointment creation failed, response: {result}")
        return None

    def list_services(self) -> Optional[List[Dict[str, Any]]]:
        """Fetch the service catalog"""
        data = self.get("services")
        if data is None:
            return None
        return data.get("services", [])


# Singleton instance for convenience
_client: Optional[BookingApiClient] = None


def get_booking_client() -> BookingApiClient:
    """Get singleton booking client configured from settings"""
    global _client
    if _client is None:
        config = get_config()
        _client = BookingApiClient(
            base_url=config.booking_api_url,
            api_key=config.booking_api_key,
            timeout=config.booking_timeout_seconds,
        )
    return _client
