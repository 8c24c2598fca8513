"""Upstream snapshot readers, batched text reconstruction and record enrichment.

The word-level table is the largest input, so text is rebuilt in batches of
document ids. Batches are disjoint by ``doc_id``; a document's tokens are never
split across batches, and the merged output does not depend on the batch size.
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pandas as pd
import pyarrow.dataset as ds

from moral_discourse.conditions import require_columns

DEFAULT_BATCH_SIZE = 10_000
RECOGNITION_THRESHOLD = 0.50

FOUNDATIONS = ("care", "fairness", "loyalty", "authority", "sanctity")
VICE_COLUMNS = [f"{foundation}_vice" for foundation in FOUNDATIONS]
ELIGIBILITY_COLUMNS = ["is_analysable", "is_embeddable"]

WORD_COLUMNS = ["doc_id", "sentence_id", "token_id", "lemma"]
METADATA_COLUMNS = ["doc_id", "user_id", *ELIGIBILITY_COLUMNS]
SENTIMENT_COLUMNS = ["doc_id", *ELIGIBILITY_COLUMNS, "relevance", "polarity", *VICE_COLUMNS]

RECORD_COLUMNS = [
    "doc_id",
    "user_id",
    "condition",
    "n_tweets",
    "scored",
    "relevance",
    "recognition",
    "polarity",
    *VICE_COLUMNS,
    "text",
]


def open_dataset(path: Path) -> ds.Dataset:
    if not path.exists():
        raise FileNotFoundError(f"Input dataset not found: {path}")
    partitioning = "hive" if path.is_dir() else None
    return ds.dataset(str(path), format="parquet", partitioning=partitioning)


def read_columns(path: Path, columns: list[str], name: str) -> pd.DataFrame:
    dataset = open_dataset(path)
    missing = [c for c in columns if c not in dataset.schema.names]
    if missing:
        raise ValueError(f"{name} ({path}) missing required columns: {missing}")
    return dataset.to_table(columns=columns).to_pandas()


def batch_doc_ids(doc_ids: Iterable[Any], batch_size: int) -> list[list[Any]]:
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}.")
    unique = pd.Series(pd.unique(pd.Series(list(doc_ids)).dropna()))
    ordered = unique.sort_values(kind="stable").tolist()
    return [ordered[i : i + batch_size] for i in range(0, len(ordered), batch_size)]


def reconstruct_text(words: pd.DataFrame) -> pd.DataFrame:
    require_columns(words, WORD_COLUMNS, "word table")
    if words.empty:
        return pd.DataFrame(columns=["doc_id", "text"], dtype="object")
    ordered = words.sort_values(["doc_id", "sentence_id", "token_id"], kind="stable")
    text = ordered.groupby("doc_id", sort=True)["lemma"].agg(
        lambda lemmas: " ".join(lemmas.dropna().astype(str))
    )
    return text.rename("text").reset_index()


def read_document_text(path: Path, batch_size: int = DEFAULT_BATCH_SIZE) -> pd.DataFrame:
    dataset = open_dataset(path)
    missing = [c for c in WORD_COLUMNS if c not in dataset.schema.names]
    if missing:
        raise ValueError(f"word table ({path}) missing required columns: {missing}")

    doc_ids = dataset.to_table(columns=["doc_id"]).column("doc_id").to_pandas()
    frames: list[pd.DataFrame] = []
    for batch in batch_doc_ids(doc_ids, batch_size):
        words = dataset.to_table(
            columns=WORD_COLUMNS, filter=ds.field("doc_id").isin(batch)
        ).to_pandas()
        frames.append(reconstruct_text(words))

    if not frames:
        return reconstruct_text(pd.DataFrame(columns=WORD_COLUMNS))
    out = pd.concat(frames, ignore_index=True)
    return out.sort_values("doc_id", kind="stable").reset_index(drop=True)


def eligible_mask(df: pd.DataFrame) -> pd.Series:
    mask = pd.Series(True, index=df.index)
    for col in ELIGIBILITY_COLUMNS:
        mask &= df[col].astype("boolean").fillna(False).astype(bool)
    return mask


def filter_eligible(df: pd.DataFrame) -> tuple[pd.DataFrame, dict[str, int]]:
    keep = eligible_mask(df)
    eligible = df.loc[keep]
    deduped = eligible.drop_duplicates("doc_id", keep="first")
    stats = {
        "rows_in": int(len(df)),
        "rows_eligible": int(len(eligible)),
        "rows_out": int(len(deduped)),
        "duplicate_doc_ids_removed": int(len(eligible) - len(deduped)),
    }
    return deduped.reset_index(drop=True), stats


def read_eligible_metadata(path: Path) -> tuple[pd.DataFrame, dict[str, int]]:
    metadata = read_columns(path, METADATA_COLUMNS, "document metadata")
    eligible, stats = filter_eligible(metadata)
    return eligible[["doc_id", "user_id"]].copy(), stats


def validate_relevance(relevance: pd.Series) -> pd.Series:
    values = pd.to_numeric(relevance, errors="coerce").astype(float)
    out_of_range = values.notna() & ((values < 0.0) | (values > 1.0))
    if out_of_range.any():
        raise ValueError(
            f"Moral relevance scores must lie in [0, 1]; found {int(out_of_range.sum())} "
            "out-of-range values."
        )
    return values


def read_eligible_sentiment(path: Path) -> tuple[pd.DataFrame, dict[str, int]]:
    sentiment = read_columns(path, SENTIMENT_COLUMNS, "moral sentiment")
    eligible, stats = filter_eligible(sentiment)
    eligible = eligible.drop(columns=ELIGIBILITY_COLUMNS)
    eligible["relevance"] = validate_relevance(eligible["relevance"])
    for col in ["polarity", *VICE_COLUMNS]:
        eligible[col] = pd.to_numeric(eligible[col], errors="coerce").astype(float)
    return eligible, stats


def enrich_records(
    users: pd.DataFrame,
    metadata: pd.DataFrame,
    sentiment: pd.DataFrame,
    documents: pd.DataFrame,
    recognition_threshold: float = RECOGNITION_THRESHOLD,
) -> pd.DataFrame:
    """Expand user-level conditions back to every eligible document of each user.

    Documents without a moral-sentiment score are kept as unscored rows
    (``relevance`` null, ``recognition`` false); they are never imputed.
    """
    require_columns(users, ["user_id", "condition", "n_tweets"], "users")
    require_columns(metadata, ["doc_id", "user_id"], "document metadata")
    require_columns(sentiment, ["doc_id", "relevance", "polarity", *VICE_COLUMNS], "sentiment")
    require_columns(documents, ["doc_id", "text"], "documents")

    records = metadata[["doc_id", "user_id"]].merge(
        users[["user_id", "condition", "n_tweets"]],
        on="user_id",
        how="inner",
        validate="many_to_one",
    )
    records = records.merge(
        sentiment[["doc_id", "relevance", "polarity", *VICE_COLUMNS]],
        on="doc_id",
        how="left",
        validate="one_to_one",
    )
    records = records.merge(
        documents[["doc_id", "text"]].drop_duplicates("doc_id"),
        on="doc_id",
        how="left",
        validate="one_to_one",
    )

    relevance = pd.to_numeric(records["relevance"], errors="coerce").astype(float)
    records["relevance"] = relevance
    records["scored"] = relevance.notna()
    records["recognition"] = records["scored"] & (relevance > recognition_threshold)
    records["text"] = records["text"].astype(object).where(records["text"].notna(), None)

    records = records[RECORD_COLUMNS]
    return records.sort_values("doc_id", kind="stable").reset_index(drop=True)
