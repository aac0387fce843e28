"""
Service catalog for the booking system.
Fetches and caches service names and durations used in offer messages.
"""

import logging
from typing import Dict, List, Optional

from slotfill.booking_api import get_booking_client

logger = logging.getLogger(__name__)

# Cache for services
_services_cache: Optional[List[Dict]] = None


def fetch_services() -> Optional[List[Dict]]:
    """Fetch all available services from the booking service"""
    services = get_booking_client().list_services()

    if services is not None:
        logger.info(f"Fetched {len(services)} services from booking service")
        return services
    else:
        logger.error("Failed to fetch services")
        return None


def get_services() -> List[Dict]:
    """Get services (cached; a failed fetch is retried on the next call)"""
    global _services_cache
    if _services_cache is None:
        _services_cache = fetch_services()
    return _services_cache or []


def get_service_info(service_id: str) -> Optional[Dict]:
    """Get detailed information for a specific service"""
    for service in get_services():
        if str(service.get("id")) == str(service_id):
            return service
    return None


def get_service_name(service_id: str) -> str:
    """Human-readable service name, falls back to the ID"""
    service_info = get_service_info(service_id)
    if service_info and service_info.get("name"):
        return service_info["name"]
    return f"Service {service_id}"
