"""Static ZIP-code lists and region-to-source mapping used by the seed producer."""
from __future__ import annotations

from typing import Dict, List, Optional

from .models import SeedMode

# Small sample per region for smoke runs
TEST_ZIP_CODES: Dict[str, List[str]] = {
    "FL": ["33101", "33109", "33139", "33140", "33141"],  # Miami
    "TX": ["75001", "75201", "75202", "75203", "75204"],  # Dallas
    "CA": ["90210", "90211", "90212", "90401", "90402"],  # Los Angeles
    "WA": ["98070", "98101", "98102", "98103", "98104"],  # Vashon Island + Seattle
}

# Top ~100 ZIP codes per region by population
PRODUCTION_ZIP_CODES: Dict[str, List[str]] = {
    "FL": [
        # Miami-Dade County
        "33101", "33109", "33125", "33126", "33127", "33128", "33129", "33130", "33131", "33132",
        "33133", "33134", "33135", "33136", "33137", "33138", "33139", "33140", "33141", "33142",
        "33143", "33144", "33145", "33146", "33147", "33149", "33150", "33154", "33155", "33156",
        "33157", "33158", "33160", "33161", "33162", "33165", "33166", "33167", "33168", "33169",
        "33170", "33172", "33173", "33174", "33175", "33176", "33177", "33178", "33179", "33180",
        "33181", "33182", "33183", "33184", "33185", "33186", "33187", "33189", "33190", "33193",
        # Broward County
        "33004", "33009", "33019", "33020", "33021", "33023", "33024", "33025", "33026", "33027",
        "33028", "33029", "33060", "33062", "33063", "33064", "33065", "33066", "33067", "33068",
        "33069", "33071", "33073", "33076", "33301", "33304", "33305", "33306", "33308", "33309",
        "33311", "33312", "33313", "33314", "33315", "33316", "33317", "33319", "33321", "33322",
    ],
    "TX": [
        # Dallas County
        "75001", "75006", "75019", "75040", "75041", "75042", "75043", "75044", "75050", "75060",
        "75061", "75062", "75080", "75081", "75082", "75115", "75134", "75149", "75150", "75159",
        "75180", "75181", "75182", "75201", "75202", "75203", "75204", "75205", "75206", "75207",
        "75208", "75209", "75210", "75211", "75212", "75214", "75215", "75216", "75217", "75218",
        "75219", "75220", "75223", "75224", "75225", "75226", "75227", "75228", "75229", "75230",
        "75231", "75232", "75233", "75234", "75235", "75236", "75237", "75238", "75240", "75241",
        # Harris County
        "77001", "77002", "77003", "77004", "77005", "77006", "77007", "77008", "77009", "77010",
        "77011", "77012", "77013", "77014", "77015", "77016", "77017", "77018", "77019", "77020",
        "77021", "77022", "77023", "77024", "77025", "77026", "77027", "77028", "77029", "77030",
        "77031", "77032", "77033", "77034", "77035", "77036", "77037", "77038", "77039", "77040",
    ],
    "CA": [
        # Los Angeles County
        "90001", "90002", "90003", "90004", "90005", "90006", "90007", "90008", "90010", "90011",
        "90012", "90013", "90014", "90015", "90016", "90017", "90018", "90019", "90020", "90021",
        "90022", "90023", "90024", "90025", "90026", "90027", "90028", "90029", "90031", "90032",
        "90033", "90034", "90035", "90036", "90037", "90038", "90039", "90040", "90041", "90042",
        "90043", "90044", "90045", "90046", "90047", "90048", "90049", "90056", "90057", "90058",
        "90059", "90061", "90062", "90063", "90064", "90065", "90066", "90067", "90068", "90069",
        # Orange County
        "92602", "92603", "92604", "92606", "92610", "92612", "92614", "92617", "92618", "92620",
        "92627", "92630", "92637", "92648", "92649", "92651", "92653", "92655", "92657", "92660",
        "92661", "92662", "92663", "92677", "92679", "92683", "92688", "92691", "92692", "92694",
        "92701", "92703", "92704", "92705", "92706", "92707", "92708", "92780", "92782", "92801",
    ],
    "WA": [
        "98070",
        # Seattle
        "98101", "98102", "98103", "98104", "98105", "98106", "98107", "98108", "98109", "98112",
        "98115", "98116", "98117", "98118", "98119", "98121", "98122", "98125", "98126", "98133",
        "98134", "98136", "98144", "98146", "98154", "98155", "98158", "98161", "98164", "98166",
        "98168", "98174", "98177", "98178", "98188", "98195", "98199",
        # Bellevue / Eastside
        "98004", "98005", "98006", "98007", "98008", "98009", "98011", "98027", "98029", "98033",
        "98034", "98039", "98040", "98052", "98053", "98056", "98059", "98074", "98075", "98077",
        # Tacoma
        "98402", "98403", "98404", "98405", "98406", "98407", "98408", "98409", "98411", "98412",
        "98413", "98416", "98418", "98421", "98422", "98424", "98444", "98445", "98446", "98447",
        # Everett / North
        "98201", "98203", "98204", "98205", "98206", "98207", "98208", "98213", "98270", "98271",
        "98272", "98273", "98274", "98275", "98290", "98291", "98292", "98293", "98294", "98296",
    ],
}

REGION_SOURCE_MAP: Dict[str, str] = {
    "FL": "FL_DBPR",
    "TX": "TX_TREC",
    "CA": "CA_DRE",
    "WA": "WA_DOL",
}


def zip_codes(mode: SeedMode) -> Dict[str, List[str]]:
    """Return the region -> ZIP list mapping for a seed mode."""
    return TEST_ZIP_CODES if SeedMode(mode) == SeedMode.TEST else PRODUCTION_ZIP_CODES


def source_for_region(region_code: str) -> Optional[str]:
    return REGION_SOURCE_MAP.get(region_code.upper())
