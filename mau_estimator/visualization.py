"""Figure generation: diagnostic plots for a single estimation run."""

import os

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import matplotlib.ticker as mticker
import pandas as pd
import seaborn as sns

from . import config

# ─── Global Style ─────────────────────────────────────────────────────────────

PALETTE = ["#2563eb", "#f59e0b", "#10b981", "#ef4444", "#8b5cf6", "#ec4899", "#06b6d4"]

plt.rcParams.update({
    "figure.facecolor": "white",
    "axes.facecolor": "#fafafa",
    "axes.edgecolor": "#d1d5db",
    "axes.grid": True,
    "grid.color": "#e5e7eb",
    "grid.linewidth": 0.5,
    "font.family": "sans-serif",
    "font.size": 11,
    "axes.titlesize": 14,
    "axes.titleweight": "bold",
    "axes.labelsize": 12,
    "figure.dpi": 150,
    "savefig.dpi": 300,
    "savefig.bbox": "tight",
    "savefig.pad_inches": 0.3,
})


def _ensure_dir(path: str):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)


def _fmt(n: float) -> str:
    if abs(n) >= 1e9:
        return f"{n/1e9:.2f}B"
    if abs(n) >= 1e6:
        return f"{n/1e6:.1f}M"
    if abs(n) >= 1e3:
        return f"{n/1e3:.0f}K"
    return f"{n:.0f}"


# ─── Figure 1: Top Titles per Country ────────────────────────────────────────

def plot_top_titles(estimates, country, top_n=15, output_path=None):
    if output_path is None:
        output_path = os.path.join(config.FIGURES_DIR, f"fig1_top_titles_{country}.png")
    rows = sorted(
        (r for r in estimates if r["country_code"] == country),
        key=lambda r: -r["final_mau_estimate"],
    )[:top_n]
    if not rows:
        return None
    _ensure_dir(output_path)

    names = [r["title_id"] for r in rows]
    values = [r["final_mau_estimate"] for r in rows]
    errors = [r["mau_margin_of_error"] for r in rows]

    fig, ax = plt.subplots(figsize=(10, max(4, len(rows) * 0.5)))
    y_pos = range(len(rows))
    ax.barh(y_pos, values, xerr=errors, capsize=4, color=PALETTE[0],
            edgecolor="white", alpha=0.85, height=0.6)

    for i, (v, e) in enumerate(zip(values, errors)):
        ax.text(v + e, i, f"  {_fmt(v)} ± {_fmt(e)}", va="center", fontsize=9, color="#374151")

    ax.set_yticks(y_pos)
    ax.set_yticklabels(names)
    ax.invert_yaxis()
    ax.xaxis.set_major_formatter(mticker.FuncFormatter(lambda x, _: _fmt(x)))
    ax.set_xlabel("Estimated MAU")
    ax.set_title(f"Top Titles by Estimated MAU: {country}")
    fig.savefig(output_path)
    plt.close(fig)
    return output_path


# ─── Figure 2: Sample Allocation ─────────────────────────────────────────────

def plot_country_allocation(country_targets, country_shares, output_path=None):
    if output_path is None:
        output_path = os.path.join(config.FIGURES_DIR, "fig2_country_allocation.png")
    if not country_targets:
        return None
    _ensure_dir(output_path)

    countries = sorted(country_targets, key=lambda c: -country_targets[c])
    targets = [country_targets[c] for c in countries]

    fig, ax = plt.subplots(figsize=(max(6, len(countries) * 0.7), 6))
    bars = ax.bar(range(len(countries)), targets, color=PALETTE[2],
                  edgecolor="#374151", linewidth=0.8, width=0.65)
    for bar, c in zip(bars, countries):
        ax.text(bar.get_x() + bar.get_width() / 2, bar.get_height(),
                f"{country_shares.get(c, 0):.1%}", ha="center", va="bottom",
                fontsize=9, color="#1f2937")

    ax.set_xticks(range(len(countries)))
    ax.set_xticklabels(countries)
    ax.set_ylabel("Target Sample Size")
    ax.set_title("Sample Allocation by Country (label: install base share)")
    fig.savefig(output_path)
    plt.close(fig)
    return output_path


# ─── Figure 3: Genre Share Heatmap ──────────────────────────────────────────

def plot_stratum_heatmap(strata, output_path=None):
    if output_path is None:
        output_path = os.path.join(config.FIGURES_DIR, "fig3_stratum_heatmap.png")
    if not strata:
        return None
    _ensure_dir(output_path)

    df = pd.DataFrame(strata).pivot_table(
        index="country_code", columns="genre", values="observed_share", aggfunc="first"
    ).fillna(0.0)

    fig, ax = plt.subplots(figsize=(max(6, len(df.columns) * 1.1), max(4, len(df) * 0.6)))
    sns.heatmap(df, annot=df.round(2).values, fmt="", cmap="YlOrRd", ax=ax,
                linewidths=1, linecolor="white",
                cbar_kws={"label": "Share of country users", "shrink": 0.8},
                annot_kws={"fontsize": 9})
    ax.set_title("Observed Genre Share by Country")
    ax.set_ylabel("")
    ax.set_xlabel("")
    fig.savefig(output_path)
    plt.close(fig)
    return output_path


# ─── Figure 4: Margin of Error vs Sample Proportion ─────────────────────────

def plot_margin_vs_proportion(estimates, output_path=None):
    if output_path is None:
        output_path = os.path.join(config.FIGURES_DIR, "fig4_margin_vs_proportion.png")
    if not estimates:
        return None
    _ensure_dir(output_path)

    df = pd.DataFrame(estimates)
    df["p_hat"] = df["sample_distinct_users"] / df["sample_size"]

    fig, ax = plt.subplots(figsize=(10, 6))
    sns.scatterplot(data=df, x="p_hat", y="margin_of_error", hue="country_code",
                    palette=sns.color_palette(PALETTE, n_colors=df["country_code"].nunique()),
                    ax=ax, s=50, edgecolor="white", linewidth=0.5)
    ax.xaxis.set_major_formatter(mticker.PercentFormatter(1.0))
    ax.set_xlabel("Sample proportion p̂")
    ax.set_ylabel("Margin of error")
    ax.set_title("Wald Margin of Error by Title")
    fig.savefig(output_path)
    plt.close(fig)
    return output_path


# ─── Generate All ────────────────────────────────────────────────────────────

def generate_all_figures(results, output_dir=None):
    if output_dir is None:
        output_dir = config.FIGURES_DIR
    os.makedirs(output_dir, exist_ok=True)

    paths = []
    estimates = results.get("estimates") or []
    allocation = results.get("allocation") or {}

    for country in sorted({r["country_code"] for r in estimates}):
        paths.append(plot_top_titles(
            estimates, country,
            output_path=os.path.join(output_dir, f"fig1_top_titles_{country}.png")))

    if allocation.get("country_targets"):
        paths.append(plot_country_allocation(
            allocation["country_targets"],
            allocation.get("country_shares", {}),
            os.path.join(output_dir, "fig2_country_allocation.png")))

    if allocation.get("strata"):
        paths.append(plot_stratum_heatmap(
            allocation["strata"],
            os.path.join(output_dir, "fig3_stratum_heatmap.png")))

    paths.append(plot_margin_vs_proportion(
        estimates,
        os.path.join(output_dir, "fig4_margin_vs_proportion.png")))

    return [p for p in paths if p]
