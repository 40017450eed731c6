"""Texas Real Estate Commission (TREC)."""
from __future__ import annotations

import re

from .base_parser import LineScanningParser


class TexasTRECParser(LineScanningParser):
    # TREC license ids are 6-7 bare digits
    region_code = "TX"
    source_identifier = "TX_TREC"
    search_url_template = "https://www.trec.texas.gov/apps/license-holder-search/?zip={geo_code}"
    license_pattern = re.compile(r"^\d{6,7}\b")
