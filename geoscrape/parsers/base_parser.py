"""
Base classes for licensing-board result parsers.
All region-specific parsers inherit from this.
"""
from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Pattern

from ..models import DEFAULT_CATEGORY, Professional

LOGGER = logging.getLogger(__name__)

COMPANY_MARKERS = ("LLC", "Inc", "Corp")
ADDRESS_RE = re.compile(r"^\d{1,5}\s+\w+")
PHONE_RE = re.compile(r"\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}")
EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")


class BaseLicenseParser(ABC):
    """
    Base class for licensing-board parsers.

    Subclasses must implement:
    - region_code: two-letter state code
    - source_identifier: stable source code (e.g. FL_DBPR)
    - search_url_template: URL with a ``{geo_code}`` placeholder
    - parse(): rendered page text -> professionals
    """

    region_code: str
    source_identifier: str
    search_url_template: str
    category: str = DEFAULT_CATEGORY

    def build_search_url(self, geo_code: str) -> str:
        return self.search_url_template.format(geo_code=geo_code)

    @abstractmethod
    def parse(self, text: str, geo_code: str) -> List[Professional]:
        """Extract zero or more professionals from rendered page text."""
        pass


class LineScanningParser(BaseLicenseParser):
    """
    Heuristic parser for table-like text output.

    A line starting with a license-number token opens a record. The first
    following line becomes the name; later lines are classified as company,
    address, city line, phone or email. A record without a name is dropped.
    Format drift silently under-extracts.
    """

    license_pattern: Pattern[str]

    def parse(self, text: str, geo_code: str) -> List[Professional]:
        professionals: List[Professional] = []
        current: Optional[Dict[str, str]] = None
        city_line = re.compile(rf",\s*{self.region_code}\s+(\d{{5}})")

        for raw_line in (text or "").splitlines():
            line = raw_line.strip()
            if not line:
                continue

            match = self.license_pattern.match(line)
            if match:
                self._flush(current, geo_code, professionals)
                current = {"license_number": match.group(0).strip()}
                rest = line[match.end():].strip(" \t-|,")
                if rest:
                    current["name"] = rest
                continue

            if current is None:
                continue

            if "name" not in current:
                current["name"] = line
                continue

            city_match = city_line.search(line)
            if city_match:
                current["city"] = line.split(",")[0].strip()
                current["postal_code"] = city_match.group(1)
            elif any(marker in line for marker in COMPANY_MARKERS):
                current["company"] = line
            elif ADDRESS_RE.match(line):
                current["address"] = line
            elif EMAIL_RE.search(line):
                current["email"] = EMAIL_RE.search(line).group(0)
            elif PHONE_RE.search(line):
                current["phone"] = PHONE_RE.search(line).group(0)

        self._flush(current, geo_code, professionals)

        LOGGER.debug(
            "Parsed %d professional(s) for %s-%s",
            len(professionals),
            self.region_code,
            geo_code,
        )
        return professionals

    def _flush(
        self,
        current: Optional[Dict[str, str]],
        geo_code: str,
        out: List[Professional],
    ) -> None:
        if not current or not current.get("name"):
            return
        fields = dict(current)
        fields.setdefault("postal_code", geo_code)
        out.append(
            Professional(
                region_code=self.region_code,
                source_identifier=self.source_identifier,
                category=self.category,
                **fields,
            )
        )
