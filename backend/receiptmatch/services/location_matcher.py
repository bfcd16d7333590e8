"""
Location Matcher - geographic proximity and address comparison.
"""
import logging
import math
import re
from typing import Optional, Dict

from receiptmatch.schemas.matching import Location, location_is_valid

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

ADDRESS_ABBREVIATIONS = {
    "street": "st",
    "avenue": "ave",
    "boulevard": "blvd",
    "drive": "dr",
    "road": "rd",
    "lane": "ln",
    "court": "ct",
    "place": "pl",
    "suite": "ste",
    "apartment": "apt",
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
}
STREET_TYPES = {"st", "ave", "blvd", "dr", "rd", "ln", "ct", "pl", "ste", "apt", "hwy", "pkwy", "sq"}

# Upper bounds (km) of each distance category, checked in order
DISTANCE_CATEGORIES = (
    (0.1, "same_location"),
    (0.5, "very_close"),
    (2.0, "nearby"),
    (10.0, "same_area"),
    (50.0, "same_city"),
)

_ZIP = re.compile(r"\b\d{5}(?:\d{4})?\b")
_STREET_NUMBER = re.compile(r"^(\d+)\s+(\S+)")


class LocationMatcher:
    """Distance and address similarity between two location records"""

    def distance_km(self, loc1: Optional[Location], loc2: Optional[Location]) -> float:
        """
        Great-circle distance in kilometres (haversine).

        Returns math.inf when either side lacks valid coordinates.
        """
        if not location_is_valid(loc1) or not location_is_valid(loc2):
            return math.inf

        lat1 = math.radians(loc1.latitude)
        lat2 = math.radians(loc2.latitude)
        delta_lat = math.radians(loc2.latitude - loc1.latitude)
        delta_lon = math.radians(loc2.longitude - loc1.longitude)

        a = (math.sin(delta_lat / 2) ** 2
             + math.cos(lat1) * math.cos(lat2) * math.sin(delta_lon / 2) ** 2)
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
        return EARTH_RADIUS_KM * c

    def normalize_address(self, address: str) -> str:
        text = address.lower().strip()
        text = re.sub(r"[^\w\s]", " ", text)
        words = [ADDRESS_ABBREVIATIONS.get(word, word) for word in text.split()]
        return " ".join(words)

    def extract_components(self, normalized: str) -> Dict[str, str]:
        components = {}
        number = _STREET_NUMBER.match(normalized)
        if number:
            components["street_number"] = number.group(1)
            components["street_name"] = number.group(2)

        zip_code = _ZIP.search(normalized)
        if zip_code:
            components["zip_code"] = zip_code.group(0)

        # Last two-letter word that is not a street type, e.g. "... seattle wa 98101"
        states = [word for word in normalized.split()
                  if len(word) == 2 and word.isalpha() and word not in STREET_TYPES]
        if states:
            components["state"] = states[-1]
        return components

    def addresses_match(self, addr1: Optional[str], addr2: Optional[str]) -> bool:
        if not addr1 or not addr2:
            return False

        normalized1 = self.normalize_address(addr1)
        normalized2 = self.normalize_address(addr2)
        if not normalized1 or not normalized2:
            return False
        if normalized1 == normalized2:
            return True

        shorter, longer = sorted((normalized1, normalized2), key=len)
        if len(shorter) > 10 and shorter in longer:
            return True

        c1 = self.extract_components(normalized1)
        c2 = self.extract_components(normalized2)

        def same(key: str) -> bool:
            return key in c1 and key in c2 and c1[key] == c2[key]

        if same("street_number") and same("street_name"):
            return True
        if same("zip_code"):
            return True
        if same("state") and (same("street_name") or same("zip_code")):
            return True
        return False

    def distance_category(self, distance_km: float) -> str:
        if distance_km is None or math.isinf(distance_km) or math.isnan(distance_km):
            return "unknown"
        for bound, category in DISTANCE_CATEGORIES:
            if distance_km < bound:
                return category
        return "distant"

    def extract_city(self, address: Optional[str]) -> Optional[str]:
        """City heuristic: the word before a "<state> <zip>" pair"""
        if not address:
            return None
        parts = self.normalize_address(address).split()
        for i in range(len(parts) - 2):
            state, zip_code = parts[i + 1], parts[i + 2]
            if len(state) == 2 and state.isalpha() and re.match(r"^\d{5}", zip_code):
                return parts[i]
        return None

    def in_same_city(self, loc1: Optional[Location], loc2: Optional[Location]) -> bool:
        if loc1 is None or loc2 is None:
            return False
        city1 = self.extract_city(loc1.address)
        city2 = self.extract_city(loc2.address)
        return city1 is not None and city1 == city2


# Singleton instance
location_matcher = LocationMatcher()
