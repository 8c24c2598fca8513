import numpy as np
import pandas as pd
import pytest

from moral_discourse.condition_models import build_results_table
from moral_discourse.presentation import (
    build_condition_summary,
    build_entity_counts,
    build_foundation_summary,
    make_condition_probability_figure,
    make_relevance_distribution_figure,
    results_substitutions,
    write_latex_table,
)

BASELINE = [0.1, 0.3, 0.6, 0.8, 0.2, 0.7, None]
CONTRARIAN = [0.2, 0.55, 0.7, 0.9, 0.65, 0.3]


@pytest.fixture
def records(make_records):
    return make_records(BASELINE, CONTRARIAN)


@pytest.fixture
def entity_tags():
    return pd.DataFrame(
        {
            "doc_id": ["b0000", "b0001", "c0000", "c0001", "c0002", "c0003"],
            "entity": ["media", "media", "science", "science", "media", "media"],
        }
    )


@pytest.fixture
def results(records, entity_tags):
    return build_results_table(records, entity_tags)


class TestDescriptiveTables:
    def test_condition_summary(self, records):
        summary = build_condition_summary(records).set_index("condition")
        assert summary.loc["baseline", "n_documents"] == 7
        assert summary.loc["baseline", "n_scored"] == 6
        assert summary.loc["baseline", "n_users"] == 4
        assert summary.loc["baseline", "scored_share"] == pytest.approx(6 / 7)
        assert summary.loc["baseline", "recognised_share"] == pytest.approx(3 / 6)
        assert summary.loc["contrarian", "mean_relevance"] == pytest.approx(np.mean(CONTRARIAN))
        assert summary.loc["contrarian", "median_relevance"] == pytest.approx(0.6)

    def test_foundation_summary_covers_each_foundation_and_condition(self, records):
        summary = build_foundation_summary(records)
        assert len(summary) == 10
        care = summary[(summary["foundation"] == "care") & (summary["condition"] == "baseline")]
        assert care["n_scored"].item() == 6
        assert care["mean_vice"].item() == pytest.approx(np.mean([v for v in BASELINE if v]) / 2)

    def test_entity_counts_by_condition(self, records, entity_tags):
        counts = build_entity_counts(entity_tags, records)
        as_dict = {
            (row.entity, row.condition): row.n_documents for row in counts.itertuples(index=False)
        }
        assert as_dict == {
            ("media", "baseline"): 2,
            ("media", "contrarian"): 2,
            ("science", "baseline"): 0,
            ("science", "contrarian"): 2,
        }


class TestSubstitutionsAndLatex:
    def test_reliable_stratum_has_formatted_numbers(self, results):
        subs = results_substitutions(results)
        overall = results[(results["metric"] == "recognition") & (results["stratum"] == "overall")]
        expected = f"{100 * overall['contrarian_prob'].item():.1f}"
        assert subs["recognition.overall.contrarian_prob_pct"] == expected
        assert subs["recognition.overall.fit_status"] == "ok"

    def test_unreliable_stratum_renders_blank(self, results):
        subs = results_substitutions(results)
        assert subs["recognition.science.fit_status"] == "degenerate"
        assert subs["recognition.science.contrarian_prob_pct"] == ""
        assert subs["recognition.science.effect_p"] == ""
        assert subs["recognition.science.n_obs"] == "2"

    def test_latex_table_blanks_unreliable_cells(self, results, tmp_path):
        out = tmp_path / "results.tex"
        write_latex_table(results, out)
        text = out.read_text(encoding="utf-8")
        assert text.startswith(r"\begin{tabular}")
        assert r"\toprule" in text and r"\bottomrule" in text
        science_line = next(
            line for line in text.splitlines() if line.startswith("Moral recognition & science")
        )
        assert science_line == r"Moral recognition & science & 2 &  &  &  &  \\"


class TestFigures:
    def test_figures_are_written(self, results, records, tmp_path):
        prob_fig = tmp_path / "recognition.png"
        dist_fig = tmp_path / "relevance.png"
        make_condition_probability_figure(results, "recognition", prob_fig)
        make_relevance_distribution_figure(records, dist_fig)
        assert prob_fig.stat().st_size > 0
        assert dist_fig.stat().st_size > 0

    def test_probability_figure_without_reliable_strata(self, results, tmp_path):
        out = tmp_path / "empty.png"
        unreliable = results.assign(reliable=False)
        make_condition_probability_figure(unreliable, "relevance", out)
        assert out.exists()
