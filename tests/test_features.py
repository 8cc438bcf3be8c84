"""
Tests for feature generation in reviewmatch.
"""

import numpy as np
import pytest

from reviewmatch import generate_features


def test_column_naming_convention(features_df):
    """Columns follow the suffix-based naming convention."""
    cols = features_df.columns
    assert "review_id__id" in cols
    assert "treat__treat" in cols
    assert "age_days__num" in cols
    assert "length__num" in cols
    assert "length_sq__num" in cols
    assert "useful__outcome" in cols

    # Categorical dummies drop the first sorted level (Mesa)
    assert "city_Phoenix__cat" in cols
    assert "city_Tempe__cat" in cols
    assert "city_Mesa__cat" not in cols

    # Binned covariates become dummies and are not kept in raw form
    assert any(c.startswith("funny_bin") and c.endswith("__cat") for c in cols)
    assert "funny__num" not in cols
    assert "funny_bin0__cat" not in cols


def test_treatment_from_stars(features_df, reviews_pdf):
    pdf = features_df.select("review_id__id", "treat__treat").toPandas().set_index("review_id__id")
    expected = (reviews_pdf.set_index("review_id")["stars"] >= 4).astype(int)
    assert (pdf["treat__treat"] == expected.loc[pdf.index]).all()


def test_missing_numeric_values_are_imputed(features_df, reviews_pdf):
    pdf = features_df.select("review_id__id", "length__num", "length_sq__num").toPandas()
    assert not pdf["length__num"].isna().any()

    filled = pdf.set_index("review_id__id").loc[[11, 51, 91], "length__num"]
    assert filled.to_numpy() == pytest.approx([np.nanmean(reviews_pdf["length"])] * 3)
    assert pdf["length_sq__num"].to_numpy() == pytest.approx(pdf["length__num"].to_numpy() ** 2)


def test_dummies_are_zero_one(features_df):
    cat_cols = [c for c in features_df.columns if c.endswith("__cat")]
    pdf = features_df.select(cat_cols).toPandas()
    assert set(np.unique(pdf.to_numpy())) <= {0.0, 1.0}


def test_threshold_is_configurable(reviews_df):
    features = generate_features(
        reviews_df, "review_id", "stars", ["age_days"], treatment_threshold=5.0, verbose=False
    )
    treated = features.filter("treat__treat = 1").count()
    assert treated == reviews_df.filter("stars >= 5").count()


def test_unrated_reviews_are_dropped(spark):
    df = spark.createDataFrame(
        [(1, 5.0, 1.0), (2, None, 2.0), (3, 1.0, 3.0)],
        "rid long, stars double, x double",
    )
    features = generate_features(df, "rid", "stars", ["x"], verbose=False)
    assert sorted(r[0] for r in features.select("rid__id").collect()) == [1, 3]


def test_duplicate_ids_rejected(spark):
    df = spark.createDataFrame([(1, 5.0, 1.0), (1, 2.0, 2.0)], "rid long, stars double, x double")
    with pytest.raises(ValueError, match="duplicate"):
        generate_features(df, "rid", "stars", ["x"], verbose=False)


def test_column_used_twice_rejected(reviews_df):
    with pytest.raises(ValueError, match="multiple times"):
        generate_features(
            reviews_df, "review_id", "stars", ["age_days"], binned_cols=["age_days"], verbose=False
        )


def test_quadratic_requires_numeric(reviews_df):
    with pytest.raises(ValueError, match="quadratic"):
        generate_features(
            reviews_df, "review_id", "stars", ["age_days"], quadratic_cols=["length"], verbose=False
        )


def test_missing_column_rejected(reviews_df):
    with pytest.raises(ValueError, match="missing required"):
        generate_features(reviews_df, "review_id", "stars", ["nope"], verbose=False)


def test_too_many_categories(reviews_df):
    with pytest.raises(ValueError, match="max_categories"):
        generate_features(
            reviews_df, "review_id", "stars", [], categorical_cols=["city"],
            max_categories=2, verbose=False,
        )
