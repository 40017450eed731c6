"""Florida Department of Business and Professional Regulation (DBPR)."""
from __future__ import annotations

import re

from .base_parser import LineScanningParser


class FloridaDBPRParser(LineScanningParser):
    """License numbers look like ``SL3412345`` or ``BK123456``."""

    region_code = "FL"
    source_identifier = "FL_DBPR"
    search_url_template = (
        "https://www.myfloridalicense.com/wl11.asp"
        "?mode=2&search=NAME&SID=&brd=&typ=N&key={geo_code}"
    )
    license_pattern = re.compile(r"^[A-Z]{2}\d{4,}")
