# core/util_norm.py
import re

_WS = re.compile(r"\s+")

def normalize_expansion(s: str | None) -> str:
    s = _WS.sub(" ", (s or "").strip())
    if s.lower().startswith("set:"):
        s = s[4:].strip()
    return s

def normalize_card_number(s: str | None) -> str:
    # keep leading zeros: "007" and "7" are different prints
    s = (s or "").strip()
    if s.startswith("#"):
        s = s[1:].strip()
    return s

def blank_to_none(s):
    return None if s is None or str(s).strip() == "" else str(s).strip()
