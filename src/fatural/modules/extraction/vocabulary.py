from __future__ import annotations

import re

# Chart-of-accounts sub-categories, grouped by parent account.
CATEGORY_GROUPS: dict[str, tuple[str, ...]] = {
    "660 Shpenzime te personelit": (
        "660-01 Paga bruto",
        "660-02 Sigurimi shendetesor",
        "660-03 Kontributi pensional",
    ),
    "665 Shpenzimet e zyres": (
        "665-01 Shpenzimet e qirase",
        "665-02 Material harxhues",
        "665-03 Pastrimi",
        "665-04 Ushqim dhe pije",
        "665-05 Shpenzime te IT-se",
        "665-06 Shpenzimt e perfaqesimit",
        "665-07 Asete nen 1000 euro",
        "665-09 Te tjera",
    ),
    "667 Sherbimet profesionale": (
        "667-01 Sherbimet e kontabilitetit",
        "667-02 Sherbime ligjore",
        "667-03 Sherbime konsulente",
        "667-04 Sherbime auditimi",
    ),
    "668 Shpenzimet e udhetimit": (
        "668-01 Akomodimi",
        "668-02 Meditja",
        "668-03 Transporti",
    ),
    "669 Shpenzimet e automjetit": (
        "669-01 Shpenzimet e karburantit",
        "669-02 Mirembajtje dhe riparim",
    ),
    "675 Shpenzimet e komunikimit": (
        "675-01 Interneti",
        "675-02 Telefon mobil",
        "675-03 Dergesa postare",
        "675-04 Telefon fiks",
    ),
    "683 Shpenzimet e sigurimit": (
        "683-01 Sigurimi i automjeteve",
        "683-02 Sigurimi i nderteses",
    ),
    "686 Komunalite": (
        "686-01 Energjia elektrike",
        "686-02 Ujesjellesi",
        "686-03 Pastrimi",
        "686-04 Shpenzimet e ngrohjes",
    ),
    "690 Shpenzime tjera operative": (
        "690-01 Shpenzimet e anetaresimit",
        "690-02 Shpenzimet e perkthimit",
        "690-03 Provizion bankar",
        "690-04 Mirembajtje e webfaqes",
        "690-05 Taksa komunale",
        "690-06 Mirembajtje e llogarise bankare",
        "690-09 Te tjera",
    ),
}

CATEGORIES: tuple[str, ...] = tuple(c for group in CATEGORY_GROUPS.values() for c in group)
_CATEGORY_SET = frozenset(CATEGORIES)

DEFAULT_CATEGORY = "690-09 Te tjera"

NO_VAT = "No VAT"

VAT_CODES: tuple[str, ...] = (
    "[31] Blerjet dhe importet pa TVSH",
    "[32] Blerjet dhe importet investive pa TVSH",
    "[33] Blerjet dhe importet me TVSH jo të zbritshme",
    "[34] Blerjet dhe importet investive me TVSH jo të zbritshme",
    "[35] Importet 18%",
    "[37] Importet 8%",
    "[39] Importet investive 18%",
    "[41] Importet investive 8%",
    "[43] Blerjet vendore 18%",
    NO_VAT,
    "[45] Blerjet vendore 8%",
    "[47] Blerjet investive vendore 18%",
    "[49] Blerjet investive vendore 8%",
    "[65] E drejta e kreditimit të TVSH-së në lidhje me Ngarkesën e Kundërt 18%",
    "[28] Blerjet që i nënshtrohen ngarkesës së kundërt 18%",
)
_VAT_CODE_SET = frozenset(VAT_CODES)

DEFAULT_UNIT = "cope"

_PERCENT_RE = re.compile(r"(\d+)%")


def is_valid_category(value: object) -> bool:
    return isinstance(value, str) and value in _CATEGORY_SET


def is_valid_vat_code(value: object) -> bool:
    return isinstance(value, str) and value in _VAT_CODE_SET


def vat_percentage_for(vat_code: str | None) -> int:
    """Derive the VAT percentage from a VAT code; the code is the only input."""
    code = (vat_code or NO_VAT).strip()
    if code == NO_VAT or "pa TVSH" in code or "jo të zbritshme" in code:
        return 0
    m = _PERCENT_RE.search(code)
    return int(m.group(1)) if m else 0
