"""
Tests for love plot functionality in reviewmatch.
"""

import matplotlib.figure
import numpy as np
import pandas as pd
import pytest

from reviewmatch import love_plot


@pytest.fixture
def balance_df():
    return pd.DataFrame(
        {
            "display_name": ["age_days", "length", "city_Tempe"],
            "smd_unadjusted": [0.6, -0.4, 0.2],
            "smd_adjusted": [0.05, -0.02, 0.01],
            "vr_unadjusted": [1.8, 0.7, np.nan],
            "vr_adjusted": [1.1, 0.95, np.nan],
        }
    )


def test_love_plot_returns_figure(balance_df):
    fig = love_plot(balance_df)
    assert isinstance(fig, matplotlib.figure.Figure)


def test_love_plot_has_two_axes(balance_df):
    fig = love_plot(balance_df)
    axes = fig.get_axes()
    assert len(axes) == 2
    assert axes[0].get_xlabel() == "Absolute Standardized Mean Difference"
    assert axes[1].get_xlabel() == "Variance Ratio"


def test_love_plot_orders_by_improvement(balance_df):
    fig = love_plot(balance_df)
    labels = [t.get_text() for t in fig.get_axes()[0].get_yticklabels()]
    # Largest improvement ends up on top (last tick)
    assert labels == ["city_Tempe", "length", "age_days"]


def test_love_plot_custom_figsize(balance_df):
    fig = love_plot(balance_df, figsize=(8, 6))
    width, height = fig.get_size_inches()
    assert width == 8
    assert height == 6


def test_love_plot_requires_balance_columns():
    with pytest.raises(ValueError, match="missing required"):
        love_plot(pd.DataFrame({"display_name": ["x"]}))
