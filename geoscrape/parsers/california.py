"""California Department of Real Estate (DRE)."""
from __future__ import annotations

import re
from typing import List

from ..models import Professional
from .base_parser import LineScanningParser


class CaliforniaDREParser(LineScanningParser):
    """DRE license ids are 8 digits with a leading zero, optionally prefixed ``DRE #``."""

    region_code = "CA"
    source_identifier = "CA_DRE"
    search_url_template = "https://www2.dre.ca.gov/PublicASP/pplinfo.asp?License_id={geo_code}"
    license_pattern = re.compile(r"^(?:DRE\s*#?\s*)?0\d{7}\b")

    def parse(self, text: str, geo_code: str) -> List[Professional]:
        professionals = super().parse(text, geo_code)
        for pro in professionals:
            # Store the bare number so the natural key matches across page layouts
            pro.license_number = re.sub(r"^DRE\s*#?\s*", "", pro.license_number)
        return professionals
