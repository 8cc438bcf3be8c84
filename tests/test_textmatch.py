"""
Tests for caliper plus text-similarity matching.
"""

import json
import os
import shutil

import numpy as np
import pandas as pd
import pytest
from scipy import sparse

from reviewmatch import ScoreIndex, TermMatrix, caliper_radius, match_anchor, text_caliper_match
from reviewmatch.caliper import PARTITION_COL, assign_partition
from reviewmatch.textmatch import (
    ANCHOR_DIGEST_NAME,
    MANIFEST_NAME,
    STATUS_ANCHOR_MISSING,
    STATUS_EMPTY_POOL,
    STATUS_MATCHED,
    MatchContext,
    anchor_rng,
    match_anchor_frame,
)


def _term_matrix(rows):
    """TermMatrix from {doc_id: [weights...]}."""
    ids = list(rows)
    return TermMatrix(sparse.csr_matrix(np.array([rows[i] for i in ids], dtype=float)), ids)


@pytest.fixture
def opposite_half():
    return ScoreIndex([1, 2, 3, 4], [0.30, 0.40, 0.44, 0.90])


def test_empty_pool_is_unmatched(opposite_half):
    tm = _term_matrix({5: [1, 0], 1: [1, 0], 2: [1, 0], 3: [1, 0], 4: [1, 0]})
    outcome = match_anchor(5, 0.42, opposite_half, tm, radius=0.1 * 0.05, seed=1)
    assert outcome.status == STATUS_EMPTY_POOL
    assert outcome.matched_id is None
    assert outcome.n_candidates == 0


def test_most_similar_candidate_in_caliper_wins(opposite_half):
    tm = _term_matrix({
        5: [1.0, 0.0],
        1: [1.0, 0.0],  # identical text, but outside the caliper
        2: [0.1, np.sqrt(0.99)],
        3: [0.6, 0.8],
        4: [1.0, 0.0],
    })
    outcome = match_anchor(5, 0.42, opposite_half, tm, radius=0.1 * 1.0, seed=1)
    assert outcome.status == STATUS_MATCHED
    assert outcome.matched_id == 3
    assert outcome.similarity == pytest.approx(0.6)
    assert outcome.n_candidates == 2
    assert outcome.n_tied == 1


def test_tie_is_broken_reproducibly(opposite_half):
    tm = _term_matrix({5: [1, 0], 1: [0, 1], 2: [3, 4], 3: [3, 4], 4: [0, 1]})
    first = match_anchor(5, 0.42, opposite_half, tm, radius=0.1, seed=2024)
    again = match_anchor(5, 0.42, opposite_half, tm, radius=0.1, seed=2024)

    assert first.matched_id in (2, 3)
    assert first.n_tied == 2
    assert again == first
    assert first.matched_id == anchor_rng(2024, 5).choice([2, 3])


def test_tie_break_uses_both_candidates(opposite_half):
    tm = _term_matrix({5: [1, 0], 1: [0, 1], 2: [3, 4], 3: [3, 4], 4: [0, 1]})
    chosen = {
        match_anchor(5, 0.42, opposite_half, tm, radius=0.1, seed=seed).matched_id
        for seed in range(100)
    }
    assert chosen == {2, 3}


def test_anchor_never_matches_itself():
    candidates = ScoreIndex([5, 6], [0.42, 0.43])
    tm = _term_matrix({5: [1, 0], 6: [0, 1]})
    outcome = match_anchor(5, 0.42, candidates, tm, radius=0.1, seed=0)
    assert outcome.matched_id == 6
    assert outcome.n_candidates == 1


def test_anchor_without_terms(opposite_half):
    tm = _term_matrix({1: [1, 0], 2: [1, 0]})
    outcome = match_anchor(5, 0.42, opposite_half, tm, radius=1.0, seed=0)
    assert outcome.status == STATUS_ANCHOR_MISSING
    assert outcome.matched_id is None


def test_candidates_without_terms_are_ignored(opposite_half):
    # Only id 4 has terms, and it is outside the caliper
    tm = _term_matrix({5: [1, 0], 4: [1, 0]})
    outcome = match_anchor(5, 0.42, opposite_half, tm, radius=0.1, seed=0)
    assert outcome.status == STATUS_EMPTY_POOL


def test_match_anchor_frame(opposite_half):
    tm = _term_matrix({5: [1, 0], 6: [1, 0], 2: [0.6, 0.8], 3: [1, 0]})
    context = MatchContext(
        indexes={0: ScoreIndex([5, 6], [0.42, 0.95]), 1: opposite_half},
        term_matrix=tm,
        radius=0.1,
        seed=3,
    )
    anchors = pd.DataFrame(
        {
            "anchor_id": [5, 6],
            "anchor_score": [0.42, 0.95],
            "direction": ["first_to_second", "first_to_second"],
            "chunk": [0, 0],
        }
    )
    out = match_anchor_frame(anchors, context)

    assert list(out.columns) == [
        "anchor_id", "matched_id", "similarity", "status", "n_candidates",
        "n_tied", "direction", "chunk", "task_seconds",
    ]
    assert out["status"].tolist() == [STATUS_MATCHED, STATUS_EMPTY_POOL]
    assert out["matched_id"].iloc[0] == 3
    assert pd.isna(out["matched_id"].iloc[1])


def _outcome_key(outcomes_df):
    pdf = outcomes_df.select("anchor_id", "matched_id", "status", "direction").toPandas()
    pdf["matched_id"] = pdf["matched_id"].fillna(-1).astype("int64")
    return pdf.sort_values(["direction", "anchor_id"]).reset_index(drop=True)


def test_every_anchor_has_one_outcome(scored_df, term_matrix):
    pairs, outcomes, chunk_stats = text_caliper_match(
        scored_df, term_matrix, seed=11, chunk_size=40, verbose=False
    )
    n_records = scored_df.count()
    out = outcomes.toPandas()

    # With a treatment partition every record is an anchor exactly once
    assert len(out) == n_records
    assert out["anchor_id"].is_unique
    assert set(out["status"]) <= {STATUS_MATCHED, STATUS_ANCHOR_MISSING, STATUS_EMPTY_POOL}
    assert (out.loc[out["anchor_id"].isin([1, 2]), "status"] == STATUS_ANCHOR_MISSING).all()

    stats = chunk_stats.toPandas()
    assert stats["num_anchors"].sum() == n_records
    assert (
        stats["num_matched"] + stats["num_anchor_missing_terms"] + stats["num_empty_pool"]
        == stats["num_anchors"]
    ).all()
    assert pairs.count() == int((out["status"] == STATUS_MATCHED).sum())


@pytest.mark.parametrize("method", ["treatment", "position"])
def test_pairs_respect_caliper_and_halves(scored_df, term_matrix, method):
    partitioned = assign_partition(scored_df, method=method)
    pairs, _, _ = text_caliper_match(partitioned, term_matrix, seed=11, verbose=False)
    records = partitioned.select("review_id__id", "propensity__ps", PARTITION_COL).toPandas()
    records = records.set_index("review_id__id")
    radius = caliper_radius(records["propensity__ps"].to_numpy(), 0.1)

    pdf = pairs.toPandas()
    assert len(pdf) > 0
    assert (pdf["anchor_id"] != pdf["matched_id"]).all()
    anchor = records.loc[pdf["anchor_id"]]
    matched = records.loc[pdf["matched_id"]]
    assert (anchor[PARTITION_COL].to_numpy() != matched[PARTITION_COL].to_numpy()).all()
    gap = np.abs(anchor["propensity__ps"].to_numpy() - matched["propensity__ps"].to_numpy())
    assert (gap <= radius + 1e-12).all()
    assert set(pdf["estimand"]) == {"text_caliper:first_to_second", "text_caliper:second_to_first"}
    assert (pdf["weight"] == 1.0).all()


def test_same_seed_same_matches(scored_df, term_matrix):
    _, first, _ = text_caliper_match(scored_df, term_matrix, seed=5, chunk_size=30, verbose=False)
    _, second, _ = text_caliper_match(scored_df, term_matrix, seed=5, chunk_size=1000, verbose=False)
    pd.testing.assert_frame_equal(_outcome_key(first), _outcome_key(second))


def test_single_direction(scored_df, term_matrix):
    _, outcomes, _ = text_caliper_match(
        scored_df, term_matrix, direction="first_to_second", seed=5, verbose=False
    )
    n_treated = scored_df.filter("treat__treat = 1").count()
    assert outcomes.count() == n_treated
    assert set(outcomes.toPandas()["direction"]) == {"first_to_second"}


def test_invalid_arguments(scored_df, term_matrix):
    with pytest.raises(ValueError, match="Unknown direction"):
        text_caliper_match(scored_df, term_matrix, direction="sideways", seed=1, verbose=False)
    with pytest.raises(ValueError, match="chunk_size"):
        text_caliper_match(scored_df, term_matrix, chunk_size=0, seed=1, verbose=False)


def test_checkpoint_resume(scored_df, term_matrix, tmp_path):
    checkpoint = str(tmp_path / "checkpoint")
    _, first, _ = text_caliper_match(
        scored_df, term_matrix, seed=9, chunk_size=50, checkpoint_dir=checkpoint, verbose=False
    )
    expected = _outcome_key(first)

    with open(os.path.join(checkpoint, MANIFEST_NAME)) as f:
        manifest = json.load(f)
    assert manifest["seed"] == 9
    assert manifest["chunk_size"] == 50

    kept = os.path.join(checkpoint, "first_to_second", "chunk_00000", "_SUCCESS")
    kept_mtime = os.path.getmtime(kept)
    shutil.rmtree(os.path.join(checkpoint, "second_to_first", "chunk_00000"))

    # Seed comes from the manifest when not given
    _, resumed, _ = text_caliper_match(
        scored_df, term_matrix, chunk_size=50, checkpoint_dir=checkpoint, verbose=False
    )
    pd.testing.assert_frame_equal(_outcome_key(resumed), expected)
    assert os.path.getmtime(kept) == kept_mtime
    assert os.path.exists(os.path.join(checkpoint, "second_to_first", "chunk_00000", "_SUCCESS"))


def test_checkpoint_parameter_mismatch(scored_df, term_matrix, tmp_path):
    checkpoint = str(tmp_path / "checkpoint")
    text_caliper_match(
        scored_df, term_matrix, seed=9, chunk_size=50, checkpoint_dir=checkpoint, verbose=False
    )
    with pytest.raises(ValueError, match="seed"):
        text_caliper_match(
            scored_df, term_matrix, seed=10, chunk_size=50, checkpoint_dir=checkpoint, verbose=False
        )
    with pytest.raises(ValueError, match="chunk_size"):
        text_caliper_match(
            scored_df, term_matrix, seed=9, chunk_size=60, checkpoint_dir=checkpoint, verbose=False
        )
    with pytest.raises(ValueError, match="tie_tolerance"):
        text_caliper_match(
            scored_df, term_matrix, seed=9, chunk_size=50, checkpoint_dir=checkpoint,
            tie_tolerance=1e-6, verbose=False,
        )


def test_checkpoint_rejects_changed_partition(scored_df, term_matrix, tmp_path):
    checkpoint = str(tmp_path / "checkpoint")
    text_caliper_match(
        scored_df, term_matrix, seed=9, chunk_size=50, checkpoint_dir=checkpoint, verbose=False
    )
    by_position = assign_partition(scored_df, method="position")
    with pytest.raises(ValueError, match="records"):
        text_caliper_match(
            by_position, term_matrix, seed=9, chunk_size=50, checkpoint_dir=checkpoint,
            verbose=False,
        )


def test_checkpoint_chunk_digest_is_checked(scored_df, term_matrix, tmp_path):
    checkpoint = str(tmp_path / "checkpoint")
    text_caliper_match(
        scored_df, term_matrix, seed=9, chunk_size=50, checkpoint_dir=checkpoint, verbose=False
    )
    digest_path = os.path.join(checkpoint, "first_to_second", "chunk_00000", ANCHOR_DIGEST_NAME)
    assert os.path.exists(digest_path)
    with open(digest_path, "w") as f:
        f.write("0" * 64 + "\n")

    with pytest.raises(ValueError, match="different anchors"):
        text_caliper_match(
            scored_df, term_matrix, seed=9, chunk_size=50, checkpoint_dir=checkpoint,
            verbose=False,
        )
