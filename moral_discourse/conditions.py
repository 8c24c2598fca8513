"""Condition assignment, user rollup and entity tagging over reconstructed text."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

import pandas as pd

from moral_discourse.phrases import CONDITION_NAMES, ConditionPatterns

# Ordinal: contrarian outranks baseline when a user's documents are rolled up.
CONDITION_DTYPE = pd.CategoricalDtype(categories=list(CONDITION_NAMES), ordered=True)


def require_columns(df: pd.DataFrame, columns: list[str], name: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"{name} missing required columns: {missing}")


def text_matches(text: pd.Series, pattern: re.Pattern[str]) -> pd.Series:
    return text.map(lambda t: isinstance(t, str) and pattern.search(t) is not None).astype(bool)


def match_phrase_sets(documents: pd.DataFrame, patterns: ConditionPatterns) -> pd.DataFrame:
    require_columns(documents, ["doc_id", "text"], "documents")
    out = documents.copy()
    out["matches_baseline"] = text_matches(out["text"], patterns.baseline)
    out["matches_contrarian"] = text_matches(out["text"], patterns.contrarian)
    return out


def resolve_condition(matches_baseline: pd.Series, matches_contrarian: pd.Series) -> pd.Series:
    """Resolve per-set matches into one condition; null when neither set matches.

    A document matching both sets is contrarian (the more specific condition wins).
    """
    baseline = matches_baseline.astype(bool)
    contrarian = matches_contrarian.astype(bool)
    labels = pd.Series(None, index=baseline.index, dtype="object")
    labels[baseline] = "baseline"
    labels[contrarian] = "contrarian"
    return labels.astype(CONDITION_DTYPE)


def classify_documents(documents: pd.DataFrame, patterns: ConditionPatterns) -> pd.DataFrame:
    matched = match_phrase_sets(documents, patterns)
    matched["condition"] = resolve_condition(
        matched["matches_baseline"], matched["matches_contrarian"]
    )
    classified = matched.dropna(subset=["condition"])
    return classified.sort_values("doc_id", kind="stable").reset_index(drop=True)


def roll_up_users(
    classified: pd.DataFrame, doc_users: pd.DataFrame
) -> tuple[pd.DataFrame, dict[str, Any]]:
    require_columns(classified, ["doc_id", "condition"], "classified documents")
    require_columns(doc_users, ["doc_id", "user_id"], "document metadata")

    authors = doc_users[["doc_id", "user_id"]].drop_duplicates("doc_id", keep="first")
    joined = classified[["doc_id", "condition"]].merge(
        authors, on="doc_id", how="left", validate="one_to_one"
    )
    unknown_author = joined["user_id"].isna()
    joined = joined.loc[~unknown_author].copy()
    joined["condition_code"] = joined["condition"].astype(CONDITION_DTYPE).cat.codes

    users = (
        joined.groupby("user_id", as_index=False, sort=True)
        .agg(condition_code=("condition_code", "max"), n_tweets=("doc_id", "size"))
        .copy()
    )
    users["condition"] = pd.Categorical.from_codes(
        users["condition_code"].astype(int), dtype=CONDITION_DTYPE
    )
    users["n_tweets"] = users["n_tweets"].astype(int)
    users = users[["user_id", "condition", "n_tweets"]].reset_index(drop=True)

    diagnostics = {
        "classified_documents": int(len(classified)),
        "classified_documents_without_user": int(unknown_author.sum()),
        "qualifying_users": int(len(users)),
    }
    return users, diagnostics


def tag_entities(
    documents: pd.DataFrame, entity_patterns: Mapping[str, re.Pattern[str]]
) -> pd.DataFrame:
    require_columns(documents, ["doc_id", "text"], "documents")
    frames: list[pd.DataFrame] = []
    for entity in sorted(entity_patterns):
        hits = documents.loc[text_matches(documents["text"], entity_patterns[entity]), ["doc_id"]]
        if hits.empty:
            continue
        tagged = hits.copy()
        tagged["entity"] = entity
        frames.append(tagged)
    if not frames:
        return pd.DataFrame(columns=["doc_id", "entity"], dtype="object")
    out = pd.concat(frames, ignore_index=True).drop_duplicates()
    return out.sort_values(["entity", "doc_id"], kind="stable").reset_index(drop=True)
