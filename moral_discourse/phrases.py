"""Phrase lexicons that define the discourse conditions and entity tags.

Condition phrase sets are OR-combined into one compiled pattern per set. Each
phrase is a regex fragment anchored at the left word boundary; the right word
boundary is added unless the phrase ends in a wildcard (``alarmis.*``), so
inflected forms such as "alarmist", "alarmists" and "alarmism" still match.

Templates carry a ``{root}`` placeholder and are expanded over a root-phrase
list, e.g. ``"{root} hoax"`` over ``["climate change"]`` becomes
``"climate change hoax"``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

CONDITION_NAMES = ("baseline", "contrarian")

CLIMATE_ROOT_PHRASES = (
    "climate change",
    "global warming",
    "climate crisis",
    "climate emergency",
)

BASELINE_PHRASES = (
    "{root}",
    "climatechange",
    "globalwarming",
    "climatecrisis",
)

CONTRARIAN_PHRASES = (
    "{root} scam",
    "{root} hoax",
    "{root} fraud",
    "{root} lie",
    "{root} myth",
    "{root} cult",
    "{root} religion",
    "{root} hysteria",
    "{root} propaganda",
    "climatehoax",
    "climatescam",
    "climatecult",
    "climate grift.*",
    "alarmis.*",
    "warmist.*",
    "net zero scam",
)

# Entries starting with "@" are mention handles, not content phrases, and are
# dropped when the mapping is cleaned.
DEFAULT_ENTITY_PHRASES: dict[str, list[str]] = {
    "government": [
        "government",
        "govt",
        "minister",
        "parliament",
        "politician.*",
        "@AlboMP",
    ],
    "science": [
        "science",
        "scientist.*",
        "ipcc",
        "csiro",
        "bureau of meteorology",
        "@BOM_au",
    ],
    "climate change": [
        "climate change",
        "climatechange",
        "global warming",
        "globalwarming",
    ],
    "media": [
        "media",
        "journalist.*",
        "news",
        "@abcnews",
    ],
}

WILDCARD_SUFFIX = "*"


@dataclass(frozen=True)
class PhraseSets:
    baseline: tuple[str, ...]
    contrarian: tuple[str, ...]


@dataclass(frozen=True)
class ConditionPatterns:
    baseline: re.Pattern[str]
    contrarian: re.Pattern[str]


def expand_phrase_templates(phrases: Iterable[str], roots: Iterable[str]) -> list[str]:
    """Expand ``{root}`` templates over ``roots``; literal phrases pass through.

    Order is preserved and duplicates keep their first occurrence.
    """
    root_list = list(roots)
    out: list[str] = []
    for phrase in phrases:
        if "{" not in phrase and "}" not in phrase:
            out.append(phrase)
            continue
        for root in root_list:
            try:
                out.append(phrase.format(root=root))
            except (KeyError, IndexError, ValueError) as exc:
                raise ValueError(
                    f"Malformed phrase template {phrase!r}: {type(exc).__name__}: {exc}"
                ) from exc
    return list(dict.fromkeys(out))


def phrase_to_pattern(phrase: str) -> str:
    fragment = phrase.strip()
    if not fragment:
        raise ValueError("Empty phrase cannot be compiled.")
    if fragment.endswith(WILDCARD_SUFFIX):
        return rf"\b{fragment}"
    return rf"\b{fragment}\b"


def compile_phrase_set(
    name: str, phrases: Iterable[str], *, case_sensitive: bool = False
) -> re.Pattern[str]:
    fragments = [phrase_to_pattern(p) for p in phrases]
    if not fragments:
        raise ValueError(f"Phrase set {name!r} is empty.")
    flags = 0 if case_sensitive else re.IGNORECASE
    combined = "|".join(f"(?:{frag})" for frag in fragments)
    try:
        return re.compile(combined, flags)
    except re.error as exc:
        raise ValueError(f"Invalid pattern in phrase set {name!r}: {exc}") from exc


def build_phrase_sets(
    roots: Iterable[str] = CLIMATE_ROOT_PHRASES,
    baseline: Iterable[str] = BASELINE_PHRASES,
    contrarian: Iterable[str] = CONTRARIAN_PHRASES,
) -> PhraseSets:
    root_list = list(roots)
    return PhraseSets(
        baseline=tuple(expand_phrase_templates(baseline, root_list)),
        contrarian=tuple(expand_phrase_templates(contrarian, root_list)),
    )


def compile_condition_patterns(
    phrase_sets: PhraseSets, *, case_sensitive: bool = False
) -> ConditionPatterns:
    return ConditionPatterns(
        baseline=compile_phrase_set(
            "baseline", phrase_sets.baseline, case_sensitive=case_sensitive
        ),
        contrarian=compile_phrase_set(
            "contrarian", phrase_sets.contrarian, case_sensitive=case_sensitive
        ),
    )


def clean_entity_phrases(mapping: Mapping[str, Iterable[str]]) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for entity, phrases in mapping.items():
        kept = [
            str(p).strip()
            for p in phrases
            if isinstance(p, str) and p.strip() and not p.strip().startswith("@")
        ]
        if kept:
            out[str(entity)] = list(dict.fromkeys(kept))
    return out


def load_entity_phrases(path: Path | None) -> dict[str, list[str]]:
    if path is None:
        return clean_entity_phrases(DEFAULT_ENTITY_PHRASES)
    if not path.exists():
        raise FileNotFoundError(f"Entity phrase definition not found: {path}")
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict) or not all(
        isinstance(v, list) for v in payload.values()
    ):
        raise ValueError(
            f"Entity phrase definition must map entity names to phrase lists: {path}"
        )
    return clean_entity_phrases(payload)


def compile_entity_patterns(
    mapping: Mapping[str, Iterable[str]], *, case_sensitive: bool = False
) -> dict[str, re.Pattern[str]]:
    return {
        entity: compile_phrase_set(entity, phrases, case_sensitive=case_sensitive)
        for entity, phrases in sorted(mapping.items())
    }
