"""Country lookup backed by a MaxMind GeoIP2/GeoLite2 database.

The rule engine only needs ``lookup(ip) -> CountryRecord | None``; anything with
that method satisfies ``CountryLookup``. ``GeoIPDatabase`` is the production
implementation and fails at construction when the database is unusable.
"""

from dataclasses import dataclass
from os import PathLike
from typing import Protocol

import geoip2.database
import geoip2.errors
from loguru import logger
from maxminddb import InvalidDatabaseError

from acl_socks_proxy.core.exceptions import GeoIPUnavailableError


@dataclass(frozen=True)
class CountryRecord:
    """Result of a country lookup.

    Attributes:
        iso_code: Two-letter ISO 3166-1 country code as stored in the database
    """

    iso_code: str


class CountryLookup(Protocol):
    """Read-only country lookup, safe for concurrent queries."""

    def lookup(self, ip: str) -> CountryRecord | None: ...


class GeoIPDatabase:
    """``CountryLookup`` over a MaxMind Country or City database."""

    def __init__(self, path: str | PathLike[str]) -> None:
        """Open the database.

        Args:
            path: Path to a ``.mmdb`` Country or City database

        Raises:
            GeoIPUnavailableError: If the file is missing, corrupt, or not a
                country-capable database
        """
        self.path = str(path)
        try:
            self._reader = geoip2.database.Reader(self.path)
        except (OSError, InvalidDatabaseError, ValueError) as e:
            msg = f"Init GeoIP database failed: {self.path}: {e}"
            logger.error(msg)
            raise GeoIPUnavailableError(msg) from e

        self.database_type = self._reader.metadata().database_type
        if "City" in self.database_type:
            self._query = self._reader.city
        elif "Country" in self.database_type:
            self._query = self._reader.country
        else:
            self._reader.close()
            msg = f"{self.path} is a {self.database_type} database, expected Country or City"
            logger.error(msg)
            raise GeoIPUnavailableError(msg)

        logger.debug(f"[geoip] Opened {self.database_type} database {self.path}")

    def lookup(self, ip: str) -> CountryRecord | None:
        """Look up the country of an IP address.

        Args:
            ip: IPv4 or IPv6 literal

        Returns:
            CountryRecord | None: The country, or None if the address is
                invalid, not in the database, or has no country assigned
        """
        if not ip:
            return None
        try:
            response = self._query(ip)
        except (geoip2.errors.AddressNotFoundError, ValueError):
            return None
        iso_code = response.country.iso_code
        return CountryRecord(iso_code) if iso_code else None

    def close(self) -> None:
        self._reader.close()

    def __enter__(self) -> "GeoIPDatabase":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
