from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from moral_discourse.conditions import CONDITION_DTYPE
from moral_discourse.corpus import VICE_COLUMNS

BASELINE_RELEVANCE = [0.1, 0.3, 0.6, 0.8]
CONTRARIAN_RELEVANCE = [0.2, 0.55, 0.7, 0.9]
USERS_PER_CONDITION = 8


def write_parquet(df: pd.DataFrame, path: Path) -> Path:
    pq.write_table(pa.Table.from_pandas(df, preserve_index=False), path)
    return path


def words_for(doc_id: str, text: str) -> list[dict[str, object]]:
    rows = []
    for sentence_id, sentence in enumerate(text.split(" . ")):
        for token_id, lemma in enumerate(sentence.split()):
            rows.append(
                {"doc_id": doc_id, "sentence_id": sentence_id, "token_id": token_id, "lemma": lemma}
            )
    return rows


def build_corpus_frames() -> dict[str, pd.DataFrame]:
    """Sixteen users split evenly across conditions, plus a few edge-case documents.

    - contrarian users author one hoax document and one plain climate document;
    - ``b01-x`` is an eligible baseline-user document with no sentiment row;
    - ``x01-0`` matches neither phrase set;
    - ``z01-0`` is contrarian text whose metadata row is not analysable;
    - "government" appears in both conditions, "science" only in contrarian ones.
    """
    docs: list[dict[str, object]] = []
    for condition, relevance in (
        ("baseline", BASELINE_RELEVANCE),
        ("contrarian", CONTRARIAN_RELEVANCE),
    ):
        prefix = condition[0]
        for k in range(2 * USERS_PER_CONDITION):
            user = f"{prefix}{k // 2 + 1:02d}"
            if condition == "contrarian" and k % 2 == 0:
                text = "climate change hoax"
            else:
                text = "climate change be real"
            if k % 3 == 0:
                text += " . the government must act"
            if condition == "contrarian" and k % 5 == 0:
                text += " . the science say so"
            docs.append(
                {
                    "doc_id": f"{user}-{k % 2}",
                    "user_id": user,
                    "text": text,
                    "relevance": relevance[k % 4],
                    "eligible": True,
                }
            )
    for doc_id, text, relevance, eligible in (
        ("b01-x", "climate change", None, True),
        ("x01-0", "nice weather", 0.4, True),
        ("z01-0", "climatehoax", 0.9, False),
    ):
        docs.append(
            {
                "doc_id": doc_id,
                "user_id": doc_id.split("-")[0],
                "text": text,
                "relevance": relevance,
                "eligible": eligible,
            }
        )

    words = pd.DataFrame(
        [row for d in docs for row in words_for(str(d["doc_id"]), str(d["text"]))]
    )
    # Reverse storage order so reconstruction has to sort.
    words = words.iloc[::-1].reset_index(drop=True)

    metadata = pd.DataFrame(
        {
            "doc_id": [d["doc_id"] for d in docs],
            "user_id": [d["user_id"] for d in docs],
            "is_analysable": [d["eligible"] for d in docs],
            "is_embeddable": [True for _ in docs],
        }
    )

    scored = [d for d in docs if d["relevance"] is not None]
    sentiment = pd.DataFrame(
        {
            "doc_id": [d["doc_id"] for d in scored],
            "is_analysable": [d["eligible"] for d in scored],
            "is_embeddable": [True for _ in scored],
            "relevance": [float(d["relevance"]) for d in scored],
            "polarity": [0.5 - float(d["relevance"]) for d in scored],
        }
    )
    for i, col in enumerate(VICE_COLUMNS):
        sentiment[col] = [round(float(d["relevance"]) / (i + 2), 4) for d in scored]

    return {"words": words, "metadata": metadata, "sentiment": sentiment}


@pytest.fixture
def corpus_frames() -> dict[str, pd.DataFrame]:
    return build_corpus_frames()


@pytest.fixture
def corpus_paths(tmp_path: Path, corpus_frames: dict[str, pd.DataFrame]) -> dict[str, Path]:
    return {
        "words": write_parquet(corpus_frames["words"], tmp_path / "words.parquet"),
        "metadata": write_parquet(corpus_frames["metadata"], tmp_path / "metadata.parquet"),
        "sentiment": write_parquet(corpus_frames["sentiment"], tmp_path / "sentiment.parquet"),
    }


@pytest.fixture
def make_records() -> Callable[..., pd.DataFrame]:
    """Build enriched records from per-condition relevance lists (None = unscored)."""

    def _make(
        baseline: list[float | None],
        contrarian: list[float | None],
        threshold: float = 0.5,
    ) -> pd.DataFrame:
        rows = []
        for condition, values in (("baseline", baseline), ("contrarian", contrarian)):
            for i, value in enumerate(values):
                rows.append(
                    {
                        "doc_id": f"{condition[0]}{i:04d}",
                        "user_id": f"{condition[0]}u{i // 2:03d}",
                        "condition": condition,
                        "n_tweets": 2,
                        "relevance": float("nan") if value is None else float(value),
                        "polarity": 0.0,
                        "text": f"{condition} document {i}",
                    }
                )
        records = pd.DataFrame(rows)
        records["condition"] = records["condition"].astype(CONDITION_DTYPE)
        records["scored"] = records["relevance"].notna()
        records["recognition"] = records["scored"] & (records["relevance"] > threshold)
        for col in VICE_COLUMNS:
            records[col] = records["relevance"] / 2.0
        return records

    return _make
