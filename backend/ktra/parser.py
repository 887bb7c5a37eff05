"""Parsing helpers for the shop export.

The ``옵션명`` column is free text written by buyers through a form whose labels
changed during the sale (plain Korean first, bilingual Korean/English later),
so every field is looked up through an ordered chain of patterns. The first
pattern that matches wins; labelled patterns come before looser ones so that,
for example, a bare ``관계:`` does not shadow ``비상연락처 관계 Relationship:``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, fields
from typing import Optional

COURSE_HALF = "Half"
COURSE_10K = "10K"
COURSE_5K = "5K"
COURSES = (COURSE_HALF, COURSE_10K, COURSE_5K)

@dataclass
class ParsedOption:
    phone: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_relation: Optional[str] = None
    birth_date: Optional[str] = None
    shirt_size: Optional[str] = None
    gender: Optional[str] = None

    def as_dict(self) -> dict[str, Optional[str]]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

def _digits(value: str) -> str:
    return re.sub(r"\D", "", value)

_CLEANERS = {
    "phone": _digits,
    "emergency_contact": _digits,
    "emergency_relation": str.strip,
    "birth_date": str.strip,
    "shirt_size": str.upper,
    "gender": str.upper,
}

@dataclass(frozen=True)
class Rule:
    label: str
    pattern: re.Pattern
    captures: tuple[str, ...]  # field name per capture group

    def apply(self, text: str) -> Optional[dict[str, str]]:
        m = self.pattern.search(text)
        if not m:
            return None
        found: dict[str, str] = {}
        for i, name in enumerate(self.captures, start=1):
            raw = m.group(i)
            if raw is None:
                continue
            value = _CLEANERS[name](raw)
            if value:
                found[name] = value
        return found

def _rule(label: str, pattern: str, *captures: str, flags: int = 0) -> Rule:
    return Rule(label, re.compile(pattern, flags), captures)

PHONE_RULES = (
    _rule("연락처 (label)", r"연락처\s*\([^)]*\)\s*:\s*([\d\-]+)", "phone"),
    _rule("연락처", r"연락처\s*:\s*([\d\-]+)", "phone"),
)

EMERGENCY_RULES = (
    _rule("비상연락처 Emergency", r"비상연락처\s*Emergency[^:]*:\s*([\d\-]+)", "emergency_contact", flags=re.I),
    _rule(
        "비상연락처/관계",
        r"비상연락처\s*/?\s*관계[^:]*:\s*([\d\-]+)\s*/\s*([^\s/]+)",
        "emergency_contact",
        "emergency_relation",
    ),
    _rule("비상연락처", r"비상연락처[^:]*:\s*([\d\-]+)", "emergency_contact"),
)

RELATION_RULES = (
    _rule(
        "비상연락처 관계 Relationship",
        r"비상연락처\s*관계\s*Relationship[^:]*:\s*([^\s/]+)",
        "emergency_relation",
        flags=re.I,
    ),
    _rule("관계", r"관계[^:]*:\s*([^\s/]+)", "emergency_relation"),
)

BIRTH_DATE_RULES = (
    _rule("생년월일 (label)", r"생년월일\s*\([^)]*\)\s*:\s*(\d{6,8})", "birth_date"),
    _rule("생년월일", r"생년월일\s*:\s*(\d{6,8})", "birth_date"),
)

SHIRT_SIZE_RULES = (
    _rule("티셔츠 사이즈 (T-shirts)", r"티셔츠\s*사이즈\s*\(T-shirts[^)]*\)[^:]*:\s*([A-Z0-9]{1,3})", "shirt_size", flags=re.I),
    _rule("티셔츠 사이즈", r"티셔츠\s*사이즈[^:]*:\s*([A-Z0-9]{1,3})", "shirt_size", flags=re.I),
    _rule("T-shirts size", r"T-shirts\s*size[^:]*:\s*([A-Z0-9]{1,3})", "shirt_size", flags=re.I),
    _rule("사이즈", r"사이즈[^:]*:\s*([A-Z0-9]{1,3})", "shirt_size", flags=re.I),
)

GENDER_RULES = (
    _rule("성별 (label)", r"성별\s*\([^)]*\)\s*:\s*([MF])", "gender", flags=re.I),
    _rule("성별", r"성별\s*:\s*([MF])", "gender", flags=re.I),
)

# (target field, chain) in evaluation order; relation comes after the
# emergency chain so a combined "number / relation" match short-circuits it
CHAINS: tuple[tuple[str, tuple[Rule, ...]], ...] = (
    ("phone", PHONE_RULES),
    ("emergency_contact", EMERGENCY_RULES),
    ("emergency_relation", RELATION_RULES),
    ("birth_date", BIRTH_DATE_RULES),
    ("shirt_size", SHIRT_SIZE_RULES),
    ("gender", GENDER_RULES),
)

def parse_option(option_raw: Optional[str]) -> ParsedOption:
    """Extract participant fields from one option string. Never raises."""
    result = ParsedOption()
    if not option_raw:
        return result
    text = str(option_raw)

    for target, rules in CHAINS:
        if getattr(result, target) is not None:
            continue
        for rule in rules:
            found = rule.apply(text)
            if found is None:
                continue
            for name, value in found.items():
                if getattr(result, name) is None:
                    setattr(result, name, value)
            break
    return result

def classify_course(product_name: Optional[str]) -> str:
    name = product_name or ""
    if "하프" in name or "Half" in name:
        return COURSE_HALF
    if "10K" in name:
        return COURSE_10K
    if "5K" in name:
        return COURSE_5K
    return ""

def normalize_phone(phone) -> str:
    """Format 10/11 digit numbers as 3-3-4 / 3-4-4, anything else as bare digits."""
    if phone is None:
        return ""
    digits = _digits(str(phone))
    if len(digits) == 10:
        return f"{digits[:3]}-{digits[3:6]}-{digits[6:]}"
    if len(digits) == 11:
        return f"{digits[:3]}-{digits[3:7]}-{digits[7:]}"
    return digits

def phone_digits(phone) -> str:
    if phone is None:
        return ""
    return _digits(str(phone))
