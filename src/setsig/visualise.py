"""
Collection of functions to visualise gene set test results
and the redundancy between gene sets.
"""

from typing import Iterable, List, Mapping, Union
from pathlib import Path

import numpy as np
import polars as pl
import matplotlib.pyplot as plt
import seaborn as sns

from setsig.cluster import pairwise_similarity


def plot_camera_results(
    results: pl.DataFrame,
    output_path: Union[str, Path],
    top_n: int = 20,
    fdr_threshold: float = 0.05
) -> List[Path]:
    """
    Plot the most significant sets of each contrast.

    Bars show -log10(p-value), coloured by direction of change. Sets with an
    FDR below ``fdr_threshold`` are marked with an asterisk.

    Args:
        results: Output of camera_pr
        output_path: Directory to save one PNG per contrast
        top_n: Number of sets to show per contrast
        fdr_threshold: FDR threshold used to mark significant sets

    Returns:
        List of paths of the saved plots
    """
    if results.height == 0:
        raise ValueError("Input data cannot be empty")

    output_path = Path(output_path)
    output_path.mkdir(parents=True, exist_ok=True)
    palette = {'Up': '#c0392b', 'Down': '#2471a3'}

    saved = []
    for contrast in results['Contrast'].unique(maintain_order=True).to_list():
        subset = (
            results
            .filter(pl.col('Contrast').cast(pl.Utf8) == contrast)
            .sort('PValue', nulls_last=True)
            .head(top_n)
        )
        scores = -np.log10(np.clip(subset['PValue'].to_numpy(), 1e-300, 1))
        labels = subset['GeneSet'].to_list()
        if 'FDR' in subset.columns:
            labels = [
                f"{label} *" if fdr < fdr_threshold else label
                for label, fdr in zip(labels, subset['FDR'].to_list())
            ]

        fig, ax = plt.subplots(figsize=(8, max(3, 0.35 * subset.height + 1)))
        ax.barh(
            np.arange(subset.height),
            scores,
            color=[palette[d] for d in subset['Direction'].to_list()]
        )
        ax.set_yticks(np.arange(subset.height))
        ax.set_yticklabels(labels)
        ax.invert_yaxis()
        ax.set_xlabel('-log10(p-value)')
        ax.set_title(f'CAMERA-PR: {contrast}')
        handles = [plt.Rectangle((0, 0), 1, 1, color=color) for color in palette.values()]
        ax.legend(handles, palette.keys(), title='Direction', loc='lower right')
        fig.tight_layout()

        file_name = output_path / f"camera_pr_{''.join(c if c.isalnum() else '_' for c in contrast)}.png"
        fig.savefig(file_name, dpi=150)
        plt.close(fig)
        saved.append(file_name)

    return saved


def plot_set_similarity(
    sets: Mapping[str, Iterable[str]],
    output_file: Union[str, Path],
    type: str = 'jaccard'
) -> Path:
    """
    Plot a heatmap of pairwise set similarity.

    Args:
        sets: Mapping from set name to element identifiers
        output_file: Path of the PNG to write
        type: Similarity coefficient ('jaccard', 'overlap' or 'otsuka')

    Returns:
        Path of the saved plot
    """
    similarity, set_names = pairwise_similarity(sets, type=type)
    if len(set_names) == 0:
        raise ValueError("Input data cannot be empty")

    size = min(20, max(4, 0.3 * len(set_names) + 2))
    fig, ax = plt.subplots(figsize=(size, size))
    sns.heatmap(
        similarity,
        xticklabels=set_names,
        yticklabels=set_names,
        vmin=0,
        vmax=1,
        cmap='viridis',
        square=True,
        cbar_kws={'label': f'{type} similarity'},
        ax=ax
    )
    fig.tight_layout()

    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_file, dpi=150)
    plt.close(fig)
    return output_file
