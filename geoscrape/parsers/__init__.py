"""Region-specific licensing-board parsers."""
from __future__ import annotations

from typing import Dict, List

from .base_parser import BaseLicenseParser, LineScanningParser
from .california import CaliforniaDREParser
from .florida import FloridaDBPRParser
from .texas import TexasTRECParser


class UnsupportedRegionError(ValueError):
    """No parser is registered for the region."""

    def __init__(self, region_code: str) -> None:
        super().__init__(f"Unsupported region: {region_code}")
        self.region_code = region_code


PARSERS: Dict[str, BaseLicenseParser] = {
    parser.region_code: parser
    for parser in (FloridaDBPRParser(), TexasTRECParser(), CaliforniaDREParser())
}


def get_parser(region_code: str) -> BaseLicenseParser:
    """Return the parser for a region.

    Raises
    ------
    UnsupportedRegionError
        If the region has no parser
    """
    parser = PARSERS.get((region_code or "").upper())
    if parser is None:
        raise UnsupportedRegionError(region_code)
    return parser


def supported_regions() -> List[str]:
    return sorted(PARSERS)


__all__ = [
    "BaseLicenseParser",
    "CaliforniaDREParser",
    "FloridaDBPRParser",
    "LineScanningParser",
    "PARSERS",
    "TexasTRECParser",
    "UnsupportedRegionError",
    "get_parser",
    "supported_regions",
]
