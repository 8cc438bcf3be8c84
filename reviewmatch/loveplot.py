"""
Love plot visualization for reviewmatch covariate balance.

This module draws covariate balance before and after matching from the table
produced by balance_report().
"""

from typing import Tuple

import matplotlib.figure
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from .utils import _require_columns

_SAMPLES = (("Unadjusted", "unadjusted"), ("Adjusted", "adjusted"))


def love_plot(
    balance_df: pd.DataFrame,
    threshold_smd: float = 0.1,
    figsize: Tuple[int, int] = (10, 12),
) -> matplotlib.figure.Figure:
    """
    Generate a love plot showing covariate balance before and after matching.

    Parameters
    ----------
    balance_df : pd.DataFrame
        Output from balance_report()
    threshold_smd : float
        Position of the SMD reference line
    figsize : Tuple[int, int]
        Figure size (width, height) in inches

    Returns
    -------
    matplotlib.figure.Figure
        Love plot figure with two panels:
        - Left: Absolute Standardized Mean Difference
        - Right: Variance Ratio (continuous covariates only)
    """
    _require_columns(
        balance_df.columns,
        ["display_name", "smd_unadjusted", "smd_adjusted", "vr_unadjusted", "vr_adjusted"],
        "Balance DataFrame",
    )

    # Covariates that improved most end up at the top
    ordered = balance_df.assign(
        improvement=balance_df["smd_unadjusted"].abs() - balance_df["smd_adjusted"].abs()
    ).sort_values("improvement")
    names = ordered["display_name"].tolist()
    positions = np.arange(len(names))

    fig, axes = plt.subplots(1, 2, figsize=figsize, sharey=True)

    for label, suffix in _SAMPLES:
        axes[0].scatter(
            ordered[f"smd_{suffix}"].abs(), positions, label=label, alpha=0.7, s=50, marker="o"
        )
    axes[0].set_xlabel("Absolute Standardized Mean Difference")
    axes[0].set_ylabel("Variable")
    axes[0].legend(title="Sample")
    axes[0].grid(True, alpha=0.3)
    axes[0].axvline(x=threshold_smd, color="red", linestyle="--", linewidth=1, alpha=0.7)
    axes[0].text(threshold_smd * 1.05, 0, f"{threshold_smd} threshold", color="red", fontsize=10,
                 verticalalignment="bottom", horizontalalignment="left")

    for label, suffix in _SAMPLES:
        values = ordered[f"vr_{suffix}"]
        keep = values.notna() & np.isfinite(values.astype(float))
        axes[1].scatter(values[keep], positions[keep.to_numpy()], label=label, alpha=0.7, s=50, marker="o")
    axes[1].set_xlabel("Variance Ratio")
    axes[1].legend(title="Sample")
    axes[1].grid(True, alpha=0.3)
    axes[1].axvline(x=1.0, color="red", linestyle="--", linewidth=1, alpha=0.7)
    axes[1].text(1.02, 0, "equal variance", color="red", fontsize=10,
                 verticalalignment="bottom", horizontalalignment="left")

    axes[0].set_yticks(positions)
    axes[0].set_yticklabels(names, fontsize=7)

    plt.tight_layout()

    return fig
