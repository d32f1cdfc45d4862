EUROPEAN_LANGUAGE_CATALOG: list[tuple[str, str]] = [
    ("bg", "Bulgarian"),
    ("ca", "Catalan"),
    ("cs", "Czech"),
    ("cy", "Welsh"),
    ("da", "Danish"),
    ("de", "German"),
    ("el", "Greek"),
    ("en", "English"),
    ("es", "Spanish"),
    ("et", "Estonian"),
    ("eu", "Basque"),
    ("fi", "Finnish"),
    ("fr", "French"),
    ("ga", "Irish"),
    ("gl", "Galician"),
    ("hr", "Croatian"),
    ("hu", "Hungarian"),
    ("is", "Icelandic"),
    ("it", "Italian"),
    ("lb", "Luxembourgish"),
    ("lt", "Lithuanian"),
    ("lv", "Latvian"),
    ("mk", "Macedonian"),
    ("mt", "Maltese"),
    ("nl", "Dutch"),
    ("no", "Norwegian"),
    ("pl", "Polish"),
    ("pt", "Portuguese"),
    ("ro", "Romanian"),
    ("sk", "Slovak"),
    ("sl", "Slovenian"),
    ("sq", "Albanian"),
    ("sr", "Serbian"),
    ("sv", "Swedish"),
    ("tr", "Turkish"),
    ("uk", "Ukrainian"),
]

EUROPEAN_LANGUAGE_CODES = {code for code, _name in EUROPEAN_LANGUAGE_CATALOG}
_LANGUAGE_NAMES = dict(EUROPEAN_LANGUAGE_CATALOG)


def normalize_language_code(value: str) -> str:
    return (value or "").strip().lower()


def language_name(code: str) -> str:
    return _LANGUAGE_NAMES.get(normalize_language_code(code), code)


def is_valid_language_code(code: str) -> bool:
    return normalize_language_code(code) in EUROPEAN_LANGUAGE_CODES
