"""
Normalizador de Despachos Judiciales
====================================

Convierte el nombre libre de un despacho ("JUZGADO 03 LABORAL CIRCUITO
BOGOTA") en su forma canónica ("Juzgado 03 Laboral del Circuito de Bogotá
D.C.").

Estrategia en tres niveles:
1. Sintetizar el nombre canónico a partir de número, tipo y ciudad, y
   buscarlo en el catálogo de despachos válidos.
2. Si no está, buscar el despacho válido más cercano.
3. Si nada aplica, devolver el texto original sin tocar.

Nunca lanza excepciones: un valor raro pero correcto fuera del catálogo se
conserva tal cual.
"""

import re
from collections import namedtuple
from typing import Dict, List, Optional, Tuple

from utils import collapse_spaces, normalize_string

NormalizationResult = namedtuple("NormalizationResult", ["value", "confidence"])

EXACT = "exact"
NEAREST = "nearest"
PASSTHROUGH = "passthrough"

CITY_DEPARTMENT: Dict[str, str] = {
    "Armenia": "Quindío",
    "Barranquilla": "Atlántico",
    "Bello": "Antioquia",
    "Bogotá D.C.": "Bogotá D.C.",
    "Bucaramanga": "Santander",
    "Cali": "Valle del Cauca",
    "Cartagena": "Bolívar",
    "Chocontá": "Cundinamarca",
    "Cúcuta": "Norte de Santander",
    "Envigado": "Antioquia",
    "Girardot": "Cundinamarca",
    "Itagüí": "Antioquia",
    "Medellín": "Antioquia",
    "Montería": "Córdoba",
    "Neiva": "Huila",
    "Santa Marta": "Magdalena",
    "Villavicencio": "Meta",
}

# Número de despachos por ciudad y categoría
OFFICE_COUNTS: Dict[str, List[Tuple[str, int]]] = {
    "laboral_circuito": [
        ("Armenia", 4), ("Barranquilla", 16), ("Bello", 2), ("Bogotá D.C.", 52),
        ("Bucaramanga", 7), ("Cali", 22), ("Cartagena", 11), ("Cúcuta", 5),
        ("Envigado", 2), ("Girardot", 1), ("Itagüí", 2), ("Medellín", 29),
        ("Montería", 5), ("Neiva", 3), ("Santa Marta", 5), ("Villavicencio", 3),
    ],
    "civil_circuito": [
        ("Bogotá D.C.", 50), ("Medellín", 20), ("Cali", 20), ("Barranquilla", 15),
    ],
    "familia": [
        ("Bogotá D.C.", 37), ("Medellín", 15), ("Cali", 10),
    ],
    "civil_municipal": [
        ("Bogotá D.C.", 90), ("Medellín", 30), ("Cali", 25), ("Chocontá", 1),
    ],
    "administrativo": [
        ("Bogotá D.C.", 67), ("Medellín", 20),
    ],
    "pequenas_causas_laborales": [
        ("Bogotá D.C.", 12), ("Medellín", 5),
    ],
}

TEMPLATES: Dict[str, str] = {
    "laboral_circuito": "Juzgado {n} Laboral del Circuito de {city}",
    "civil_circuito": "Juzgado {n} Civil del Circuito de {city}",
    "familia": "Juzgado {n} de Familia de {city}",
    "civil_municipal": "Juzgado {n} Civil Municipal de {city}",
    "administrativo": "Juzgado {n} Administrativo de {city}",
    "pequenas_causas_laborales": "Juzgado {n} Municipal de Pequeñas Causas Laborales de {city}",
}


def _generate_valid_offices() -> List[str]:
    offices = []
    for category, counts in OFFICE_COUNTS.items():
        template = TEMPLATES[category]
        for city, total in counts:
            for i in range(1, total + 1):
                offices.append(template.format(n=f"{i:02d}", city=city))
    return offices


# Lista ordenada para que la búsqueda aproximada sea determinista
VALID_OFFICES: Tuple[str, ...] = tuple(_generate_valid_offices())
VALID_OFFICE_SET = frozenset(VALID_OFFICES)
_VALID_BY_UPPER = {office.upper(): office for office in VALID_OFFICES}

_OFFICE_TYPES = r"(LABORAL|CIVIL|PENAL|FAMILIA|ADMINISTRATIVO)"

# Orden importa: el primer patrón que coincide gana
_EXTRACTORS = [
    # JUZGADO 02 MUNICIPAL DE PEQUEÑAS CAUSAS LABORALES DE BOGOTA
    ("small_claims", re.compile(
        r"JUZGADO\s+(\d+)\s+.*PEQUE(?:Ñ|N)AS?\s+CAUSAS\s+(LABORALES?)\s+(?:DE\s+)?(.+)")),
    # JUZGADO 03 LABORAL (DEL) CIRCUITO (DE) BOGOTA
    ("type_after_number", re.compile(
        r"JUZGADO\s+(\d+)\s+" + _OFFICE_TYPES + r"(?:\s+(?:DEL?\s+)?CIRCUITO)?\s+(?:DE\s+)?(.+)")),
    # 03 CIRCUITO - LABORAL BOGOTA
    ("circuit_prefix", re.compile(
        r"^(\d+)\s+CIRCUITO\s*[-–]\s*" + _OFFICE_TYPES + r"\s+(?:DE\s+)?(.+)")),
    # JUZGADO LABORAL 03 DEL CIRCUITO DE BOGOTA
    ("number_after_type", re.compile(
        r"JUZGADO\s+" + _OFFICE_TYPES + r"\s+(\d+)\s+(?:(?:DEL?\s+)?CIRCUITO\s+)?(?:DE\s+)?(.+)")),
    # JUZGADO 05 DE FAMILIA DE MEDELLIN
    ("family", re.compile(r"JUZGADO\s+(\d+)\s+DE\s+(FAMILIA)\s+(?:DE\s+)?(.+)")),
    # JUZGADO 05 ADMINISTRATIVO DE BOGOTA
    ("administrative", re.compile(r"JUZGADO\s+(\d+)\s+(ADMINISTRATIVO)\s+(?:DE\s+)?(.+)")),
]

_TYPE_NAMES = {
    "LABORAL": "Laboral",
    "LABORALES": "Laborales",
    "CIVIL": "Civil",
    "PENAL": "Penal",
    "FAMILIA": "Familia",
    "ADMINISTRATIVO": "Administrativo",
}

# Variantes frecuentes en Monolegal, indexadas sin tildes
_CITY_SPECIAL_CASES = {
    "bogota": "Bogotá D.C.",
    "bogota d.c.": "Bogotá D.C.",
    "bogota d.c": "Bogotá D.C.",
    "bogota dc": "Bogotá D.C.",
    "bogota, d.c.": "Bogotá D.C.",
    "cordoba": "Córdoba",
}
_CITY_SPECIAL_CASES.update({normalize_string(city): city for city in CITY_DEPARTMENT})

_LOWERCASE_WORDS = {"de", "del", "la", "las", "los", "el"}

# Restos de categoría que a veces quedan pegados a la ciudad extraída
_CITY_PREFIX_NOISE = re.compile(r"^(?:(?:MUNICIPAL|DEL?\s+CIRCUITO|CIRCUITO|DEL?)(?:\s+|$))+")


def normalize_city_name(city: str) -> str:
    cleaned = collapse_spaces((city or "").replace("*", ""))
    if not cleaned:
        return ""

    folded = normalize_string(cleaned)
    if folded in _CITY_SPECIAL_CASES:
        return _CITY_SPECIAL_CASES[folded]

    words = []
    for index, word in enumerate(cleaned.lower().split(" ")):
        if word in ("d.c.", "dc"):
            words.append("D.C.")
        elif index > 0 and word in _LOWERCASE_WORDS:
            words.append(word)
        else:
            words.append(word[:1].upper() + word[1:])
    return " ".join(words)


def _clean_extracted_city(raw_city: str) -> str:
    city = _CITY_PREFIX_NOISE.sub("", raw_city.strip())
    # "BOGOTA - CUNDINAMARCA", "MEDELLIN (ANTIOQUIA)"
    city = re.split(r"\s+[-–]\s+|\(|,(?!\s*D\.?C)", city)[0]
    city = city.strip(" .-")
    if not city:
        return ""

    folded = normalize_string(city)
    for known in CITY_DEPARTMENT:
        known_folded = normalize_string(known).replace(" d.c.", "")
        if folded == known_folded or folded.startswith(known_folded + " "):
            return known
    return city


def resolve_city(office: str, city_hint: Optional[str] = None, extracted: str = "") -> str:
    """
    Ciudad del despacho: la extraída del texto, si no la sugerida, si no la
    primera ciudad conocida que aparezca en el texto, si no vacío.
    """
    cleaned = _clean_extracted_city(extracted or "")
    if cleaned:
        return normalize_city_name(cleaned)

    if city_hint and city_hint.strip():
        return normalize_city_name(city_hint)

    folded_office = normalize_string(office or "") or ""
    for known in CITY_DEPARTMENT:
        known_folded = normalize_string(known).replace(" d.c.", "")
        if re.search(r"\b" + re.escape(known_folded) + r"\b", folded_office):
            return known

    return ""


def department_for(city: Optional[str]) -> str:
    if not city:
        return ""
    return CITY_DEPARTMENT.get(normalize_city_name(city), "")


def _extract_components(office: str, city_hint: Optional[str]) -> Optional[dict]:
    is_circuit = "CIRCUITO" in office
    is_municipal = "MUNICIPAL" in office
    is_family = "FAMILIA" in office
    is_small_claims = re.search(r"PEQUE(?:Ñ|N)AS?\s+CAUSAS", office) is not None

    number = ""
    office_type = ""
    city = ""

    for name, pattern in _EXTRACTORS:
        match = pattern.search(office)
        if not match:
            continue
        if name == "number_after_type":
            office_type, number, city = match.group(1), match.group(2), match.group(3)
        elif name == "small_claims":
            number, office_type, city = match.group(1), "LABORALES", match.group(3)
            is_small_claims = True
        else:
            number, office_type, city = match.group(1), match.group(2), match.group(3)
            if name == "circuit_prefix":
                is_circuit = True
        break

    if not number:
        number_match = re.search(r"(\d+)", office)
        if number_match:
            number = number_match.group(1)

    if not office_type:
        if "LABORAL" in office:
            office_type = "LABORAL"
        elif "CIVIL" in office:
            office_type = "CIVIL"
        elif "PENAL" in office:
            office_type = "PENAL"
        elif "FAMILIA" in office:
            office_type = "FAMILIA"
        elif "ADMINISTRATIV" in office:
            office_type = "ADMINISTRATIVO"

    final_city = resolve_city(office, city_hint, city or "")

    if not number or not office_type or not final_city:
        return None

    return {
        "number": number,
        "type": _TYPE_NAMES.get(office_type.upper(), office_type.title()),
        "city": final_city,
        "is_circuit": is_circuit,
        "is_municipal": is_municipal,
        "is_family": is_family,
        "is_small_claims": is_small_claims,
    }


def _synthesize(parts: dict) -> Tuple[str, List[str]]:
    """Devuelve el nombre sintetizado y las variantes a consultar en el catálogo."""
    padded = parts["number"].zfill(2)
    unpadded = str(int(parts["number"]))
    office_type = parts["type"]
    city = parts["city"]

    if parts["is_small_claims"]:
        result = f"Juzgado {padded} Municipal de Pequeñas Causas Laborales de {city}"
    elif parts["is_family"] or office_type == "Familia":
        result = f"Juzgado {padded} de Familia de {city}"
    elif office_type == "Administrativo":
        result = f"Juzgado {padded} Administrativo de {city}"
    elif parts["is_circuit"]:
        result = f"Juzgado {padded} {office_type} del Circuito de {city}"
    elif parts["is_municipal"]:
        result = f"Juzgado {padded} {office_type} Municipal de {city}"
    else:
        result = f"Juzgado {padded} {office_type} del Circuito de {city}"

    variants = [
        result,
        result.replace(f"Juzgado {padded} ", f"Juzgado {unpadded} ", 1),
        f"Juzgado {unpadded} {office_type} del Circuito de {city}",
    ]
    return result, variants


def _nearest_office(candidate: str, parts: dict) -> Optional[str]:
    upper = candidate.upper()
    if upper in _VALID_BY_UPPER:
        return _VALID_BY_UPPER[upper]

    number = parts["number"]
    unpadded = str(int(number))
    if unpadded != number:
        unpadded_upper = upper.replace(number, unpadded, 1)
        if unpadded_upper in _VALID_BY_UPPER:
            return _VALID_BY_UPPER[unpadded_upper]

    for office in VALID_OFFICES:
        office_upper = office.upper()
        if upper in office_upper or office_upper in upper:
            return office

    # Mismo número, misma ciudad y mismo tipo de despacho
    number_token = re.compile(r"\b0*" + re.escape(unpadded) + r"\b")
    for office in VALID_OFFICES:
        if (
            number_token.search(office)
            and office.endswith(f"de {parts['city']}")
            and parts["type"].rstrip("s") in office
        ):
            return office

    return None


def normalize_with_confidence(raw: Optional[str], city_hint: Optional[str] = None) -> NormalizationResult:
    if raw is None or not raw.strip():
        return NormalizationResult(raw, PASSTHROUGH)

    collapsed = collapse_spaces(raw)
    if collapsed in VALID_OFFICE_SET:
        return NormalizationResult(collapsed, EXACT)

    parts = _extract_components(collapsed.upper(), city_hint)
    if parts is None:
        return NormalizationResult(raw, PASSTHROUGH)

    synthesized, variants = _synthesize(parts)
    for variant in variants:
        if variant in VALID_OFFICE_SET:
            return NormalizationResult(variant, EXACT)

    nearest = _nearest_office(synthesized, parts)
    if nearest:
        return NormalizationResult(nearest, NEAREST)

    return NormalizationResult(raw, PASSTHROUGH)


def normalize(raw: Optional[str], city_hint: Optional[str] = None) -> str:
    """Nombre canónico del despacho, o el original si no se reconoce."""
    return normalize_with_confidence(raw, city_hint).value


# Clientes frecuentes entre los demandados
CLIENT_ALIASES: Dict[str, str] = {
    "rappi": "Rappi SAS",
    "rappi s.a.s": "Rappi SAS",
    "rappi s.a.s.": "Rappi SAS",
    "rappi sas": "Rappi SAS",
    "rappi s.a": "Rappi SAS",
    "rappy s.a.s": "Rappi SAS",
    "rappy s.a.s.": "Rappi SAS",
    "r a p p i s.a.s.": "Rappi SAS",
    "r a p p i s.a.s": "Rappi SAS",
    "uber": "Uber",
    "didi": "DiDi",
    "ifood": "iFood",
    "beat": "Beat",
}


def normalize_client_type(raw: Optional[str]) -> str:
    """Nombre canónico del cliente, o el texto recortado si no es un alias conocido."""
    if not raw:
        return ""

    cleaned = collapse_spaces(raw.lower())
    if cleaned in CLIENT_ALIASES:
        return CLIENT_ALIASES[cleaned]

    if "rappi" in cleaned or "rappy" in cleaned:
        return "Rappi SAS"

    return raw.strip()


def known_client(raw: Optional[str]) -> Optional[str]:
    """Cliente canónico si el nombre corresponde a un alias conocido."""
    canonical = normalize_client_type(raw)
    if canonical in CLIENT_ALIASES.values():
        return canonical
    return None


# Identidad fija de los clientes conocidos cuando aparecen como demandados
CLIENT_IDENTITIES: Dict[str, Dict[str, str]] = {
    "Rappi SAS": {
        "document_type": "NIT",
        "document": "900843898-9",
        "email": "notificaciones@rappi.com",
    },
}
