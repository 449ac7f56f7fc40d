"""
Geolocate measured peers using MaxMind GeoLite2 databases.

Uses the local GeoLite2-City.mmdb database (and GeoLite2-ASN.mmdb next to
it when present). No API calls, no rate limits.
"""

import logging
import os
from typing import Dict, Iterable, Optional, Any

import geoip2.database
from geoip2.errors import AddressNotFoundError

from .database import MeasurementsDatabase

logger = logging.getLogger(__name__)

DEFAULT_GEOIP_DB = os.environ.get('DCRAWL_GEOIP_DB', os.path.join('geoip', 'GeoLite2-City.mmdb'))


class MaxMindGeolocator:
    """Geolocator using MaxMind GeoLite2-City (and optionally ASN) databases."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize with GeoLite2-City database.

        Args:
            db_path: Path to GeoLite2-City.mmdb file
        """
        db_path = db_path or DEFAULT_GEOIP_DB
        if not os.path.exists(db_path):
            raise FileNotFoundError(f"GeoLite2-City database not found at: {db_path}")

        logger.info(f"Loading GeoLite2-City database from: {db_path}")
        self.reader = geoip2.database.Reader(db_path)

        self.asn_reader = None
        asn_path = os.path.join(os.path.dirname(db_path), 'GeoLite2-ASN.mmdb')
        if os.path.exists(asn_path):
            self.asn_reader = geoip2.database.Reader(asn_path)
            logger.info(f"Loaded ASN database from: {asn_path}")

    def geolocate_ip(self, ip: str) -> Optional[Dict[str, Any]]:
        """
        Geolocate a single IP address.

        Args:
            ip: IP address to geolocate

        Returns:
            Dictionary with location data or None if not found
        """
        try:
            response = self.reader.city(ip)
        except (AddressNotFoundError, ValueError):
            return None

        location = {
            'latitude': response.location.latitude,
            'longitude': response.location.longitude,
            'country': response.country.name,
            'country_code': response.country.iso_code,
            'city': response.city.name,
            'asn': None,
            'asn_org': None,
        }

        if self.asn_reader:
            try:
                asn_response = self.asn_reader.asn(ip)
                location['asn'] = f"AS{asn_response.autonomous_system_number}"
                location['asn_org'] = asn_response.autonomous_system_organization
            except AddressNotFoundError:
                pass

        return location

    def geolocate_ips(self, ips: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Geolocate many addresses; unresolvable ones are left out."""
        locations = {}
        total = 0
        for total, ip in enumerate(sorted(set(ips)), 1):
            location = self.geolocate_ip(ip)
            if location and location.get('latitude') is not None and location.get('longitude') is not None:
                locations[ip] = location

            if total % 1000 == 0:
                logger.info(f"Progress: {total} addresses - Geolocated: {len(locations)}")

        logger.info(f"Geolocation complete! {len(locations)}/{total} addresses geolocated")
        return locations

    def geolocate_crawl(self, db: MeasurementsDatabase, crawl_id: int) -> int:
        """Fill in location columns for every measurement of a crawl.

        Returns:
            Number of updated measurement rows
        """
        ips = [m['ip'] for m in db.get_measurements(crawl_id) if m.get('ip')]
        return db.update_locations(crawl_id, self.geolocate_ips(ips))

    def close(self):
        """Close the database readers."""
        self.reader.close()
        if self.asn_reader:
            self.asn_reader.close()

    def __enter__(self) -> 'MaxMindGeolocator':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
