"""Norwegian municipality (kommune) reference list.

Collection is scoped and prioritised per kommune. Priority reflects business
density: high-tier kommuner are collected first and refreshed most often.
The list is read-mostly; ``init-schema`` seeds the ``kommuner`` table from it.
"""

from typing import Dict, List, Optional

from konkurs_cli.registry.models import Kommune, PriorityTier


# Average registered entities per kommune, by priority tier.
ESTIMATED_ENTITIES_PER_TIER: Dict[PriorityTier, int] = {
    PriorityTier.HIGH: 8000,
    PriorityTier.MEDIUM: 2000,
    PriorityTier.LOW: 500,
}

# (number, name, county, region, priority)
_KOMMUNE_ROWS = [
    ("0301", "Oslo", "Oslo", "Østlandet", "high"),
    ("4601", "Bergen", "Vestland", "Vestlandet", "high"),
    ("1103", "Stavanger", "Rogaland", "Vestlandet", "high"),
    ("5001", "Trondheim", "Trøndelag", "Trøndelag", "high"),
    ("1902", "Tromsø", "Troms og Finnmark", "Nord-Norge", "high"),
    ("4204", "Kristiansand", "Agder", "Sørlandet", "high"),
    ("4201", "Risør", "Agder", "Sørlandet", "medium"),
    ("3203", "Sandefjord", "Vestfold og Telemark", "Østlandet", "high"),
    ("3024", "Bærum", "Viken", "Østlandet", "high"),
    ("3401", "Kongsberg", "Viken", "Østlandet", "medium"),
    ("3801", "Bø", "Vestfold og Telemark", "Østlandet", "medium"),
    ("3025", "Asker", "Viken", "Østlandet", "medium"),
    ("3201", "Horten", "Vestfold og Telemark", "Østlandet", "medium"),
    ("3202", "Holmestrand", "Vestfold og Telemark", "Østlandet", "medium"),
    ("3204", "Tønsberg", "Vestfold og Telemark", "Østlandet", "medium"),
    ("3205", "Larvik", "Vestfold og Telemark", "Østlandet", "medium"),
    ("3403", "Lier", "Viken", "Østlandet", "medium"),
    ("3405", "Modum", "Viken", "Østlandet", "medium"),
    ("3407", "Ringerike", "Viken", "Østlandet", "medium"),
    ("3411", "Hole", "Viken", "Østlandet", "medium"),
    ("3412", "Flå", "Viken", "Østlandet", "low"),
    ("1101", "Eigersund", "Rogaland", "Vestlandet", "medium"),
    ("1106", "Haugesund", "Rogaland", "Vestlandet", "medium"),
    ("1108", "Sandnes", "Rogaland", "Vestlandet", "high"),
    ("1111", "Sokndal", "Rogaland", "Vestlandet", "low"),
    ("1112", "Lund", "Rogaland", "Vestlandet", "low"),
    ("1114", "Bjerkreim", "Rogaland", "Vestlandet", "low"),
    ("1119", "Hå", "Rogaland", "Vestlandet", "medium"),
    ("1120", "Klepp", "Rogaland", "Vestlandet", "medium"),
    ("1121", "Time", "Rogaland", "Vestlandet", "medium"),
    ("1122", "Gjesdal", "Rogaland", "Vestlandet", "medium"),
    ("1124", "Sola", "Rogaland", "Vestlandet", "medium"),
    ("1127", "Randaberg", "Rogaland", "Vestlandet", "medium"),
    ("1129", "Forsand", "Rogaland", "Vestlandet", "low"),
    ("1130", "Strand", "Rogaland", "Vestlandet", "medium"),
    ("1133", "Hjelmeland", "Rogaland", "Vestlandet", "low"),
    ("1134", "Suldal", "Rogaland", "Vestlandet", "low"),
    ("1135", "Sauda", "Rogaland", "Vestlandet", "low"),
    ("4602", "Kinn", "Vestland", "Vestlandet", "medium"),
    ("4611", "Etne", "Vestland", "Vestlandet", "low"),
    ("4612", "Sveio", "Vestland", "Vestlandet", "low"),
    ("4613", "Bømlo", "Vestland", "Vestlandet", "medium"),
    ("4614", "Stord", "Vestland", "Vestlandet", "medium"),
    ("4615", "Fitjar", "Vestland", "Vestlandet", "low"),
    ("4616", "Tysnes", "Vestland", "Vestlandet", "low"),
    ("4617", "Kvinnherad", "Vestland", "Vestlandet", "medium"),
    ("4618", "Ullensvang", "Vestland", "Vestlandet", "medium"),
    ("4619", "Eidfjord", "Vestland", "Vestlandet", "low"),
    ("4620", "Ulvik", "Vestland", "Vestlandet", "low"),
    ("4621", "Voss", "Vestland", "Vestlandet", "medium"),
    ("4622", "Kvam", "Vestland", "Vestlandet", "medium"),
    ("4623", "Samnanger", "Vestland", "Vestlandet", "low"),
    ("4624", "Bjørnafjorden", "Vestland", "Vestlandet", "medium"),
    ("4625", "Austevoll", "Vestland", "Vestlandet", "low"),
    ("4626", "Øygarden", "Vestland", "Vestlandet", "medium"),
    ("4627", "Askøy", "Vestland", "Vestlandet", "medium"),
    ("4628", "Vaksdal", "Vestland", "Vestlandet", "low"),
    ("4629", "Modalen", "Vestland", "Vestlandet", "low"),
    ("4630", "Osterøy", "Vestland", "Vestlandet", "low"),
    ("4631", "Alver", "Vestland", "Vestlandet", "medium"),
    ("4632", "Austrheim", "Vestland", "Vestlandet", "low"),
    ("4633", "Fedje", "Vestland", "Vestlandet", "low"),
    ("4634", "Masfjorden", "Vestland", "Vestlandet", "low"),
    ("4635", "Gulen", "Vestland", "Vestlandet", "low"),
    ("4636", "Solund", "Vestland", "Vestlandet", "low"),
    ("4637", "Hyllestad", "Vestland", "Vestlandet", "low"),
    ("4638", "Høyanger", "Vestland", "Vestlandet", "low"),
    ("4639", "Vik", "Vestland", "Vestlandet", "low"),
    ("4640", "Sogndal", "Vestland", "Vestlandet", "medium"),
    ("4641", "Aurland", "Vestland", "Vestlandet", "low"),
    ("4642", "Lærdal", "Vestland", "Vestlandet", "low"),
    ("4643", "Årdal", "Vestland", "Vestlandet", "low"),
    ("4644", "Luster", "Vestland", "Vestlandet", "low"),
    ("4645", "Askvoll", "Vestland", "Vestlandet", "low"),
    ("4646", "Fjaler", "Vestland", "Vestlandet", "low"),
    ("4647", "Sunnfjord", "Vestland", "Vestlandet", "medium"),
    ("4648", "Bremanger", "Vestland", "Vestlandet", "low"),
    ("4649", "Stad", "Vestland", "Vestlandet", "low"),
    ("4650", "Gloppen", "Vestland", "Vestlandet", "low"),
    ("4651", "Stryn", "Vestland", "Vestlandet", "low"),
    ("5401", "Tromsø", "Troms og Finnmark", "Nord-Norge", "high"),
    ("5402", "Harstad", "Troms og Finnmark", "Nord-Norge", "medium"),
    ("5403", "Alta", "Troms og Finnmark", "Nord-Norge", "medium"),
    ("5404", "Vardø", "Troms og Finnmark", "Nord-Norge", "low"),
    ("5405", "Vadsø", "Troms og Finnmark", "Nord-Norge", "low"),
    ("5002", "Malvik", "Trøndelag", "Trøndelag", "medium"),
    ("5003", "Steinkjer", "Trøndelag", "Trøndelag", "medium"),
    ("5004", "Namsos", "Trøndelag", "Trøndelag", "medium"),
]

_PRIORITY_ORDER = {
    PriorityTier.HIGH: 0,
    PriorityTier.MEDIUM: 1,
    PriorityTier.LOW: 2,
}


def get_all_kommuner() -> List[Kommune]:
    """Get all known kommuner, in reference-list order."""
    return [
        Kommune(
            number=number,
            name=name,
            county=county,
            region=region,
            priority=PriorityTier(priority),
        )
        for number, name, county, region, priority in _KOMMUNE_ROWS
    ]


def get_kommune(number: str) -> Optional[Kommune]:
    """Look up a kommune by its four-digit number."""
    number = number.strip().zfill(4)
    for kommune in get_all_kommuner():
        if kommune.number == number:
            return kommune
    return None


def get_kommuner_by_priority(priority: PriorityTier) -> List[Kommune]:
    """Get kommuner of one priority tier."""
    return [k for k in get_all_kommuner() if k.priority == priority]


def get_high_priority_kommuner() -> List[Kommune]:
    """Get the major business centres."""
    return get_kommuner_by_priority(PriorityTier.HIGH)


def sort_by_priority(kommuner: List[Kommune]) -> List[Kommune]:
    """Order kommuner high tier first, keeping reference order within a tier."""
    return sorted(kommuner, key=lambda k: _PRIORITY_ORDER[k.priority])


def estimate_entities(kommune: Kommune) -> int:
    """Rough number of registered entities in a kommune."""
    return ESTIMATED_ENTITIES_PER_TIER[kommune.priority]


def estimate_total_companies() -> int:
    """Rough number of registered entities across all known kommuner."""
    return sum(estimate_entities(k) for k in get_all_kommuner())
