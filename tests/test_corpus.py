import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from moral_discourse.conditions import CONDITION_DTYPE
from moral_discourse.corpus import (
    RECORD_COLUMNS,
    VICE_COLUMNS,
    batch_doc_ids,
    enrich_records,
    filter_eligible,
    read_document_text,
    read_eligible_metadata,
    read_eligible_sentiment,
    reconstruct_text,
)

from conftest import write_parquet


class TestTextReconstruction:
    def test_tokens_ordered_by_sentence_then_token(self):
        words = pd.DataFrame(
            {
                "doc_id": ["d1", "d1", "d1", "d1", "d0"],
                "sentence_id": [1, 0, 0, 1, 0],
                "token_id": [0, 1, 0, 1, 0],
                "lemma": ["act", "change", "climate", None, "hello"],
            }
        )
        out = reconstruct_text(words)
        assert out["doc_id"].tolist() == ["d0", "d1"]
        assert out["text"].tolist() == ["hello", "climate change act"]

    def test_batches_are_sorted_and_bounded(self):
        batches = batch_doc_ids(["c", "a", "b", "a", "d"], 2)
        assert batches == [["a", "b"], ["c", "d"]]

    def test_batch_size_below_one_is_rejected(self):
        with pytest.raises(ValueError):
            batch_doc_ids(["a"], 0)

    @pytest.mark.parametrize("batch_size", [1, 3, 7, 10_000])
    def test_batch_size_does_not_change_output(self, corpus_paths, corpus_frames, batch_size):
        expected = reconstruct_text(corpus_frames["words"])
        out = read_document_text(corpus_paths["words"], batch_size=batch_size)
        pd.testing.assert_frame_equal(out, expected, check_dtype=False)

    def test_reads_hive_partitioned_directory(self, tmp_path, corpus_frames):
        words = corpus_frames["words"].copy()
        words["shard"] = words["doc_id"].str[0]
        root = tmp_path / "words"
        pq.write_to_dataset(
            pa.Table.from_pandas(words, preserve_index=False),
            root_path=str(root),
            partition_cols=["shard"],
        )
        out = read_document_text(root, batch_size=5)
        expected = reconstruct_text(corpus_frames["words"])
        pd.testing.assert_frame_equal(out, expected, check_dtype=False)
        assert out.loc[out["doc_id"] == "b01-0", "text"].item() == (
            "climate change be real the government must act"
        )

    def test_missing_input_is_fatal(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_document_text(tmp_path / "absent.parquet")

    def test_missing_columns_are_fatal(self, tmp_path):
        words = pd.DataFrame({"doc_id": ["d1"], "lemma": ["x"]})
        path = write_parquet(words, tmp_path / "w.parquet")
        with pytest.raises(ValueError, match="missing required columns"):
            read_document_text(path)


class TestEligibility:
    def test_both_flags_required_and_duplicates_dropped(self):
        df = pd.DataFrame(
            {
                "doc_id": ["d1", "d1", "d2", "d3", "d4"],
                "user_id": ["u1", "u9", "u2", "u3", "u4"],
                "is_analysable": [True, True, False, True, None],
                "is_embeddable": [True, True, True, False, True],
            }
        )
        out, stats = filter_eligible(df)
        assert out["doc_id"].tolist() == ["d1"]
        assert out["user_id"].tolist() == ["u1"]
        assert stats == {
            "rows_in": 5,
            "rows_eligible": 2,
            "rows_out": 1,
            "duplicate_doc_ids_removed": 1,
        }

    def test_metadata_reader_drops_ineligible(self, corpus_paths):
        metadata, stats = read_eligible_metadata(corpus_paths["metadata"])
        assert "z01-0" not in set(metadata["doc_id"])
        assert list(metadata.columns) == ["doc_id", "user_id"]
        assert stats["rows_in"] - stats["rows_eligible"] == 1

    def test_sentiment_reader_rejects_out_of_range_relevance(self, tmp_path, corpus_frames):
        sentiment = corpus_frames["sentiment"].copy()
        sentiment.loc[0, "relevance"] = 1.5
        path = write_parquet(sentiment, tmp_path / "bad.parquet")
        with pytest.raises(ValueError, match=r"\[0, 1\]"):
            read_eligible_sentiment(path)

    def test_sentiment_reader_requires_vice_columns(self, tmp_path, corpus_frames):
        sentiment = corpus_frames["sentiment"].drop(columns=["care_vice"])
        path = write_parquet(sentiment, tmp_path / "s.parquet")
        with pytest.raises(ValueError, match="care_vice"):
            read_eligible_sentiment(path)


class TestEnrichment:
    @pytest.fixture
    def parts(self):
        users = pd.DataFrame(
            {
                "user_id": ["u1", "u2"],
                "condition": pd.Categorical(["baseline", "contrarian"], dtype=CONDITION_DTYPE),
                "n_tweets": [1, 2],
            }
        )
        metadata = pd.DataFrame(
            {"doc_id": ["d3", "d1", "d2", "d9"], "user_id": ["u2", "u1", "u2", "u9"]}
        )
        sentiment = pd.DataFrame(
            {
                "doc_id": ["d1", "d2"],
                "relevance": [0.5, 0.51],
                "polarity": [-0.2, 0.3],
                **{col: [0.1, 0.2] for col in VICE_COLUMNS},
            }
        )
        documents = pd.DataFrame({"doc_id": ["d1", "d2", "d3"], "text": ["a", "b", "c"]})
        return users, metadata, sentiment, documents

    def test_records_carry_user_condition_and_sorted_ids(self, parts):
        records = enrich_records(*parts)
        assert list(records.columns) == RECORD_COLUMNS
        assert records["doc_id"].tolist() == ["d1", "d2", "d3"]
        assert records["condition"].astype(str).tolist() == ["baseline", "contrarian", "contrarian"]

    def test_recognition_requires_relevance_above_threshold(self, parts):
        records = enrich_records(*parts).set_index("doc_id")
        assert not records.loc["d1", "recognition"]
        assert records.loc["d2", "recognition"]

    def test_null_relevance_is_unscored_not_imputed(self, parts):
        records = enrich_records(*parts).set_index("doc_id")
        assert not records.loc["d3", "scored"]
        assert not records.loc["d3", "recognition"]
        assert pd.isna(records.loc["d3", "relevance"])

    def test_recognition_law_holds_for_every_row(self, parts):
        records = enrich_records(*parts, recognition_threshold=0.3)
        expected = records["relevance"].notna() & (records["relevance"] > 0.3)
        assert records["recognition"].tolist() == expected.tolist()
